from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any

from fieldsync.models import AgentSnapshot, RegistrationPayload, SyncStatus
from fieldsync.queue import SqliteQueue, new_pending_id


def _payload(name: str = "Jane Wanjiku", **overrides: Any) -> RegistrationPayload:
    data: dict[str, Any] = {
        "customerName": name,
        "airtelNumber": "0733123456",
        "email": "jane@example.com",
        "preferredPackage": "standard",
        "installationTown": "Homa Bay",
        "visitDate": "3/14/2026",
        "visitTime": "2:30 PM",
    }
    data.update(overrides)
    return RegistrationPayload.from_mapping(data)


AGENT = AgentSnapshot(name="Agent Smith", mobile="0700000001")


def test_queue_applies_sqlite_pragmas(tmp_path: Path) -> None:
    queue = SqliteQueue(str(tmp_path / "queue.sqlite"), journal_mode="wal", synchronous="normal")

    with queue._conn() as conn:  # noqa: SLF001 - test verifies configured pragmas
        (journal_mode,) = conn.execute("PRAGMA journal_mode").fetchone()
        (synchronous,) = conn.execute("PRAGMA synchronous").fetchone()

    assert str(journal_mode).lower() == "wal"
    assert int(synchronous) == 1


def test_invalid_pragma_falls_back_to_default(tmp_path: Path) -> None:
    queue = SqliteQueue(str(tmp_path / "queue.sqlite"), journal_mode="bogus", synchronous="??")
    assert queue.journal_mode == "WAL"
    assert queue.synchronous == "NORMAL"


def test_enqueue_opens_lazily_and_creates_pending_entry(tmp_path: Path) -> None:
    queue = SqliteQueue(str(tmp_path / "nested" / "queue.sqlite"))
    assert queue.is_open is False

    entry_id = queue.enqueue("A1", _payload(), AGENT)

    assert entry_id is not None
    assert entry_id.startswith("pending_")
    assert queue.is_open is True

    entry = queue.get(entry_id)
    assert entry is not None
    assert entry.agent_id == "A1"
    assert entry.status == SyncStatus.PENDING
    assert entry.retry_count == 0
    assert entry.error is None
    assert entry.remote_id is None
    assert entry.customer.customer_name == "Jane Wanjiku"
    assert entry.agent == AGENT


def test_pending_ids_are_unique() -> None:
    ids = {new_pending_id() for _ in range(200)}
    assert len(ids) == 200


def test_list_pending_is_oldest_first_and_filters_by_agent(tmp_path: Path) -> None:
    queue = SqliteQueue(str(tmp_path / "queue.sqlite"))
    first = queue.enqueue("A1", _payload("First"), AGENT)
    other = queue.enqueue("A2", _payload("Other agent"), AGENT)
    second = queue.enqueue("A1", _payload("Second"), AGENT)

    assert [e.id for e in queue.list_pending()] == [first, other, second]
    assert [e.id for e in queue.list_pending("A1")] == [first, second]
    assert queue.count() == 3
    assert queue.count("A2") == 1


def test_list_pending_includes_failed_but_not_syncing(tmp_path: Path) -> None:
    queue = SqliteQueue(str(tmp_path / "queue.sqlite"))
    failed = queue.enqueue("A1", _payload("Failed"), AGENT)
    syncing = queue.enqueue("A1", _payload("Syncing"), AGENT)
    assert failed is not None and syncing is not None

    queue.update_status(failed, SyncStatus.FAILED, "boom")
    queue.update_status(syncing, SyncStatus.SYNCING)

    pending = queue.list_pending("A1")
    assert [e.id for e in pending] == [failed]
    assert pending[0].status == SyncStatus.FAILED
    assert pending[0].error == "boom"
    assert queue.count("A1") == 1


def test_update_status_counts_one_retry_per_failure(tmp_path: Path) -> None:
    queue = SqliteQueue(str(tmp_path / "queue.sqlite"))
    entry_id = queue.enqueue("A1", _payload(), AGENT)
    assert entry_id is not None

    for attempt in range(1, 4):
        queue.update_status(entry_id, SyncStatus.SYNCING)
        queue.update_status(entry_id, SyncStatus.FAILED, f"attempt {attempt}")
        entry = queue.get(entry_id)
        assert entry is not None
        assert entry.retry_count == attempt
        assert entry.error == f"attempt {attempt}"


def test_attach_remote_id_and_remove(tmp_path: Path) -> None:
    queue = SqliteQueue(str(tmp_path / "queue.sqlite"))
    entry_id = queue.enqueue("A1", _payload(), AGENT)
    assert entry_id is not None

    queue.attach_remote_id(entry_id, "reg-123")
    entry = queue.get(entry_id)
    assert entry is not None and entry.remote_id == "reg-123"

    queue.remove(entry_id)
    assert queue.get(entry_id) is None
    assert queue.list_pending() == []


def test_requeue_stale_moves_stuck_syncing_entries(tmp_path: Path) -> None:
    path = tmp_path / "queue.sqlite"
    queue = SqliteQueue(str(path))
    stuck = queue.enqueue("A1", _payload("Stuck"), AGENT)
    fresh = queue.enqueue("A1", _payload("Fresh"), AGENT)
    assert stuck is not None and fresh is not None
    queue.update_status(stuck, SyncStatus.SYNCING)
    queue.update_status(fresh, SyncStatus.SYNCING)

    with sqlite3.connect(str(path)) as conn:
        conn.execute(
            "UPDATE pending_registrations SET updated_at = ? WHERE id = ?",
            ("2020-01-01T00:00:00+00:00", stuck),
        )
        conn.commit()

    assert queue.requeue_stale(older_than_s=300) == 1

    entry = queue.get(stuck)
    assert entry is not None
    assert entry.status == SyncStatus.FAILED
    assert entry.error == "Interrupted during sync"
    assert entry.retry_count == 0
    assert [e.id for e in queue.list_pending()] == [stuck]


def test_unreadable_rows_are_skipped(tmp_path: Path) -> None:
    path = tmp_path / "queue.sqlite"
    queue = SqliteQueue(str(path))
    good = queue.enqueue("A1", _payload(), AGENT)

    with sqlite3.connect(str(path)) as conn:
        conn.execute(
            "INSERT INTO pending_registrations"
            "(id, agent_id, customer_data, agent_data, status, retry_count, created_at, updated_at)"
            " VALUES('bad', 'A1', '{not json', '{}', 'pending', 0, '2000-01-01', '2000-01-01')"
        )
        conn.commit()

    assert [e.id for e in queue.list_pending()] == [good]


def test_queue_recovers_from_corrupt_file(tmp_path: Path) -> None:
    path = tmp_path / "queue.sqlite"
    path.write_bytes(b"not-a-sqlite-db")

    queue = SqliteQueue(str(path), recover_corruption=True)
    assert queue.enqueue("A1", _payload(), AGENT) is not None

    backups = list(tmp_path.glob("queue.sqlite.corrupt-*"))
    assert backups
    assert queue.count() == 1


def test_unavailable_store_degrades_to_fallbacks(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("a file, not a directory", encoding="utf-8")
    queue = SqliteQueue(str(blocker / "queue.sqlite"))

    assert queue.ensure_open() is False
    assert queue.enqueue("A1", _payload(), AGENT) is None
    assert queue.list_pending() == []
    assert queue.count() == 0
    assert queue.get("missing") is None
    assert queue.requeue_stale(older_than_s=0) == 0
    queue.update_status("missing", SyncStatus.FAILED, "x")
    queue.remove("missing")
