from __future__ import annotations

import threading
from typing import Any

import pytest

from fieldsync.models import SyncResult
from fieldsync.scheduler import JOB_ID, AutoSyncScheduler


class _Orchestrator:
    def __init__(self, *, online: bool = True, result: SyncResult | None = None) -> None:
        self.online = online
        self.probe_calls = 0
        self.result = result or SyncResult(synced=1)
        self.calls: list[Any] = []
        self.gate: threading.Event | None = None
        self.entered = threading.Event()

    def sync_pending_registrations(self, agent_id: str | None = None, on_progress: Any = None) -> SyncResult:
        self.probe_calls += 1
        if not self.online:
            return SyncResult.offline()
        self.calls.append(agent_id)
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5.0)
        return self.result


class _FakeScheduler:
    def __init__(self) -> None:
        self.jobs: dict[str, dict[str, Any]] = {}
        self.running = False
        self.shutdown_calls: list[bool] = []

    def add_job(self, **kwargs: Any) -> None:
        self.jobs[kwargs["id"]] = kwargs

    def get_job(self, job_id: str) -> Any:
        return self.jobs.get(job_id)

    def remove_job(self, job_id: str) -> None:
        del self.jobs[job_id]

    def start(self) -> None:
        self.running = True

    def shutdown(self, wait: bool = True) -> None:
        self.shutdown_calls.append(wait)
        self.running = False


def test_start_registers_single_instance_interval_job() -> None:
    fake = _FakeScheduler()
    auto = AutoSyncScheduler(_Orchestrator(), agent_id="A1", interval_s=30, scheduler=fake)  # type: ignore[arg-type]

    auto.start()
    auto.start()

    job = fake.jobs[JOB_ID]
    assert job["trigger"] == "interval"
    assert job["seconds"] == 30.0
    assert job["max_instances"] == 1
    assert job["coalesce"] is True
    assert job["next_run_time"] is not None
    assert fake.running is True
    assert auto.running is True

    auto.stop()
    assert JOB_ID not in fake.jobs
    assert auto.running is False
    # Caller-owned schedulers are left running.
    assert fake.shutdown_calls == []


def test_tick_runs_sync_and_reports_completion() -> None:
    orch = _Orchestrator(result=SyncResult(synced=2, failed=1, errors=["Registration x: boom"]))
    seen: list[SyncResult] = []
    auto = AutoSyncScheduler(orch, agent_id="A1", on_complete=seen.append, scheduler=_FakeScheduler())  # type: ignore[arg-type]

    result = auto.run_once()

    assert result is orch.result
    assert orch.calls == ["A1"]
    assert seen == [orch.result]


def test_tick_is_noop_when_offline() -> None:
    orch = _Orchestrator(online=False)
    seen: list[SyncResult] = []
    auto = AutoSyncScheduler(orch, on_complete=seen.append, scheduler=_FakeScheduler())  # type: ignore[arg-type]

    assert auto.run_once() == SyncResult.offline()
    # Connectivity is checked once per tick, by the batch itself.
    assert orch.probe_calls == 1
    assert orch.calls == []
    assert seen == []


def test_overlapping_tick_is_skipped() -> None:
    orch = _Orchestrator()
    orch.gate = threading.Event()
    seen: list[SyncResult] = []
    auto = AutoSyncScheduler(orch, on_complete=seen.append, scheduler=_FakeScheduler())  # type: ignore[arg-type]

    worker = threading.Thread(target=auto.run_once)
    worker.start()
    assert orch.entered.wait(2.0)

    assert auto.run_once() is None
    orch.gate.set()
    worker.join()

    assert len(orch.calls) == 1
    assert len(seen) == 1


def test_busy_result_does_not_fire_callback() -> None:
    orch = _Orchestrator(result=SyncResult.busy())
    seen: list[SyncResult] = []
    auto = AutoSyncScheduler(orch, on_complete=seen.append, scheduler=_FakeScheduler())  # type: ignore[arg-type]

    assert auto.run_once() == SyncResult.busy()
    assert seen == []


def test_callback_errors_are_contained() -> None:
    def _boom(_result: SyncResult) -> None:
        raise RuntimeError("listener crashed")

    auto = AutoSyncScheduler(_Orchestrator(), on_complete=_boom, scheduler=_FakeScheduler())  # type: ignore[arg-type]
    assert auto.run_once() is not None


def test_owned_scheduler_starts_and_shuts_down() -> None:
    orch = _Orchestrator()
    orch.gate = threading.Event()
    auto = AutoSyncScheduler(orch, interval_s=3600)  # type: ignore[arg-type]

    auto.start()
    try:
        assert orch.entered.wait(5.0)
    finally:
        orch.gate.set()
        auto.stop()
    assert auto.running is False


def test_interval_must_be_positive() -> None:
    with pytest.raises(ValueError):
        AutoSyncScheduler(_Orchestrator(), interval_s=0)  # type: ignore[arg-type]
