from __future__ import annotations

import json
import logging
import secrets
import sqlite3
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, List, TypeVar

from .models import (
    AgentSnapshot,
    PendingRegistration,
    RegistrationPayload,
    RegistrationValidationError,
    SyncStatus,
    utcnow,
)


logger = logging.getLogger("fieldsync.queue")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pending_registrations (
  id TEXT PRIMARY KEY,
  agent_id TEXT NOT NULL,
  customer_data TEXT NOT NULL,
  agent_data TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'pending',
  error TEXT,
  retry_count INTEGER NOT NULL DEFAULT 0,
  remote_id TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_pending_registrations_status ON pending_registrations(status);
CREATE INDEX IF NOT EXISTS idx_pending_registrations_agent_id ON pending_registrations(agent_id);
"""

_COLUMNS = "id, agent_id, customer_data, agent_data, status, error, retry_count, remote_id, created_at, updated_at"
_OPEN_STATUSES = (SyncStatus.PENDING.value, SyncStatus.FAILED.value)

_T = TypeVar("_T")

_CORRUPTION_MARKERS = (
    "database disk image is malformed",
    "malformed database schema",
    "file is not a database",
    "not a database",
    "database corrupt",
)

_ALLOWED_JOURNAL_MODES = {"DELETE", "TRUNCATE", "PERSIST", "MEMORY", "WAL", "OFF"}
_ALLOWED_SYNCHRONOUS = {"OFF", "NORMAL", "FULL", "EXTRA"}


def _looks_corrupt(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _CORRUPTION_MARKERS)


def _unused_sibling(source: Path, suffix: str) -> Path:
    target = source.with_name(f"{source.name}.{suffix}")
    n = 0
    while target.exists():
        n += 1
        target = source.with_name(f"{source.name}.{suffix}-{n}")
    return target


class QueueStorageError(RuntimeError):
    """Raised by `SqliteQueue.open()` when the embedded store is unusable."""


def new_pending_id() -> str:
    """Time-ordered, collision-resistant local id."""

    return f"pending_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


class SqliteQueue:
    """Local durable queue of registrations awaiting remote confirmation.

    An entry exists until the registration is both stored remotely and
    submitted to the forms endpoint; it is a work-remaining set, not a log.

    Every public operation lazily opens the store and turns sqlite failures into
    a fallback value (empty list, 0, None, no-op). Only `open()` raises.
    """

    def __init__(
        self,
        path: str,
        *,
        journal_mode: str = "WAL",
        synchronous: str = "NORMAL",
        recover_corruption: bool = True,
    ) -> None:
        self.path = Path(path)
        self.journal_mode = self._normalize_pragma(
            "journal_mode",
            journal_mode,
            allowed=_ALLOWED_JOURNAL_MODES,
            default="WAL",
        )
        self.synchronous = self._normalize_pragma(
            "synchronous",
            synchronous,
            allowed=_ALLOWED_SYNCHRONOUS,
            default="NORMAL",
        )
        self.recover_corruption = bool(recover_corruption)
        self._opened = False

    @staticmethod
    def _normalize_pragma(name: str, value: str, *, allowed: set[str], default: str) -> str:
        candidate = (value or "").strip().upper()
        if candidate in allowed:
            return candidate
        logger.warning("invalid %s=%r; using %s", name, value, default)
        return default

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._opened

    def open(self) -> None:
        if self._opened:
            return
        try:
            self._init_db()
        except (sqlite3.Error, OSError) as exc:
            raise QueueStorageError(f"offline queue unavailable at {self.path}: {exc}") from exc
        self._opened = True
        logger.info("Offline queue initialized (path=%s)", self.path)

    def ensure_open(self) -> bool:
        if self._opened:
            return True
        try:
            self.open()
        except QueueStorageError as exc:
            logger.warning("%s", exc)
            return False
        return True

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.path))
        conn.execute(f"PRAGMA journal_mode={self.journal_mode}")
        conn.execute(f"PRAGMA synchronous={self.synchronous}")
        return conn

    def _create_schema(self) -> None:
        with self._conn() as conn:
            conn.executescript(SCHEMA_SQL)

    def _init_db(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._create_schema()
        except sqlite3.DatabaseError as exc:
            if not (_looks_corrupt(exc) and self._quarantine_and_reset()):
                raise

    def _quarantine_and_reset(self) -> bool:
        """Move the damaged database aside and start an empty queue in its place.

        Entries in the quarantined file are lost to the sync loop but stay on
        disk for manual inspection.
        """

        if not self.recover_corruption:
            return False

        suffix = datetime.now(timezone.utc).strftime("corrupt-%Y%m%dT%H%M%SZ")
        quarantined: list[str] = []
        for companion in ("", "-wal", "-shm"):
            source = self.path.with_name(self.path.name + companion)
            if not source.exists():
                continue
            target = _unused_sibling(source, suffix)
            try:
                source.replace(target)
            except OSError as exc:
                logger.error("could not quarantine %s: %r", source, exc)
                return False
            quarantined.append(target.name)

        logger.error(
            "offline queue was corrupt; starting fresh",
            extra={"fields": {"path": str(self.path), "quarantined": quarantined}},
        )
        try:
            self._create_schema()
        except sqlite3.Error as exc:
            logger.error("offline queue reset failed: %r", exc)
            return False
        return True

    def _run_db(self, fn: Callable[[sqlite3.Connection], _T], *, fallback: _T) -> _T:
        if not self.ensure_open():
            return fallback
        try:
            with self._conn() as conn:
                return fn(conn)
        except sqlite3.DatabaseError as exc:
            if not (_looks_corrupt(exc) and self._quarantine_and_reset()):
                logger.error("offline queue operation failed: %r", exc)
                return fallback
        except sqlite3.Error as exc:
            logger.error("offline queue error: %r", exc)
            return fallback

        # One retry against the freshly reset database.
        try:
            with self._conn() as conn:
                return fn(conn)
        except sqlite3.Error as exc:
            logger.error("offline queue operation failed after reset: %r", exc)
            return fallback

    # ------------------------------------------------------------------
    # Row decoding
    # ------------------------------------------------------------------

    @staticmethod
    def _decode_row(row: tuple[Any, ...]) -> PendingRegistration | None:
        (
            entry_id,
            agent_id,
            customer_json,
            agent_json,
            status,
            error,
            retry_count,
            remote_id,
            created_at,
            updated_at,
        ) = row
        try:
            customer = RegistrationPayload.from_mapping(json.loads(customer_json))
            agent_obj = json.loads(agent_json)
            status_enum = SyncStatus(status)
        except (json.JSONDecodeError, RegistrationValidationError, ValueError) as exc:
            logger.error("skipping unreadable queue entry %s: %s", entry_id, exc)
            return None
        return PendingRegistration(
            id=entry_id,
            agent_id=agent_id,
            customer=customer,
            agent=AgentSnapshot.from_mapping(agent_obj if isinstance(agent_obj, dict) else {}),
            status=status_enum,
            retry_count=int(retry_count),
            created_at=created_at,
            updated_at=updated_at,
            error=error or None,
            remote_id=remote_id or None,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def enqueue(self, agent_id: str, customer: RegistrationPayload, agent: AgentSnapshot) -> str | None:
        entry_id = new_pending_id()
        now = utcnow().isoformat()
        customer_json = json.dumps(customer.to_dict(), separators=(",", ":"))
        agent_json = json.dumps(agent.to_dict(), separators=(",", ":"))

        def _op(conn: sqlite3.Connection) -> str:
            conn.execute(
                "INSERT INTO pending_registrations"
                "(id, agent_id, customer_data, agent_data, status, retry_count, created_at, updated_at)"
                " VALUES(?,?,?,?,?,0,?,?)",
                (entry_id, agent_id, customer_json, agent_json, SyncStatus.PENDING.value, now, now),
            )
            conn.commit()
            return entry_id

        saved = self._run_db(_op, fallback=None)
        if saved:
            logger.info("Saved registration to offline queue", extra={"fields": {"id": saved, "agent_id": agent_id}})
        return saved

    def list_pending(self, agent_id: str | None = None) -> List[PendingRegistration]:
        sql = f"SELECT {_COLUMNS} FROM pending_registrations WHERE status IN (?, ?)"
        params: list[Any] = list(_OPEN_STATUSES)
        if agent_id:
            sql += " AND agent_id = ?"
            params.append(agent_id)
        sql += " ORDER BY created_at ASC, rowid ASC"

        def _op(conn: sqlite3.Connection) -> List[PendingRegistration]:
            rows = conn.execute(sql, tuple(params)).fetchall()
            out: List[PendingRegistration] = []
            for row in rows:
                entry = self._decode_row(row)
                if entry is not None:
                    out.append(entry)
            return out

        return self._run_db(_op, fallback=[])

    def get(self, entry_id: str) -> PendingRegistration | None:
        def _op(conn: sqlite3.Connection) -> PendingRegistration | None:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM pending_registrations WHERE id = ?",
                (entry_id,),
            ).fetchone()
            return self._decode_row(row) if row else None

        return self._run_db(_op, fallback=None)

    def update_status(self, entry_id: str, status: SyncStatus, error: str | None = None) -> None:
        """Transition an entry; a transition to FAILED counts one retry."""

        bump = 1 if status == SyncStatus.FAILED else 0
        now = utcnow().isoformat()

        def _op(conn: sqlite3.Connection) -> None:
            conn.execute(
                "UPDATE pending_registrations"
                " SET status = ?, error = ?, updated_at = ?, retry_count = retry_count + ?"
                " WHERE id = ?",
                (SyncStatus(status).value, error, now, bump, entry_id),
            )
            conn.commit()

        self._run_db(_op, fallback=None)
        logger.debug("queue entry %s -> %s", entry_id, SyncStatus(status).value)

    def attach_remote_id(self, entry_id: str, remote_id: str) -> None:
        now = utcnow().isoformat()

        def _op(conn: sqlite3.Connection) -> None:
            conn.execute(
                "UPDATE pending_registrations SET remote_id = ?, updated_at = ? WHERE id = ?",
                (remote_id, now, entry_id),
            )
            conn.commit()

        self._run_db(_op, fallback=None)

    def remove(self, entry_id: str) -> None:
        def _op(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM pending_registrations WHERE id = ?", (entry_id,))
            conn.commit()

        self._run_db(_op, fallback=None)
        logger.info("Removed queue entry %s", entry_id)

    def count(self, agent_id: str | None = None) -> int:
        sql = "SELECT COUNT(*) FROM pending_registrations WHERE status IN (?, ?)"
        params: list[Any] = list(_OPEN_STATUSES)
        if agent_id:
            sql += " AND agent_id = ?"
            params.append(agent_id)

        def _op(conn: sqlite3.Connection) -> int:
            (n,) = conn.execute(sql, tuple(params)).fetchone()
            return int(n)

        return int(self._run_db(_op, fallback=0))

    def requeue_stale(self, *, older_than_s: float) -> int:
        """Move entries stuck in SYNCING (crashed mid-sync) back to FAILED.

        Returns the number of rows moved.
        """

        cutoff = (utcnow() - timedelta(seconds=max(0.0, float(older_than_s)))).isoformat()
        now = utcnow().isoformat()

        def _op(conn: sqlite3.Connection) -> int:
            cur = conn.execute(
                "UPDATE pending_registrations"
                " SET status = ?, error = COALESCE(error, 'Interrupted during sync'), updated_at = ?"
                " WHERE status = ? AND updated_at <= ?",
                (SyncStatus.FAILED.value, now, SyncStatus.SYNCING.value, cutoff),
            )
            conn.commit()
            return int(cur.rowcount or 0)

        moved = int(self._run_db(_op, fallback=0))
        if moved:
            logger.warning("requeued %s queue entries stuck in syncing", moved)
        return moved
