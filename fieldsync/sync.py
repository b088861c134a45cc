from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Mapping

from .connectivity import ConnectivityProbe
from .datastores.base import (
    AGENTS_TABLE,
    REGISTRATIONS_TABLE,
    RESPONSE_ID_COLUMN,
    SUBMITTED_AT_COLUMN,
    Datastore,
    DatastoreError,
    fetch_one,
)
from .forms import SubmissionAdapter
from .models import (
    BUSY_ERROR,
    OFFLINE_ERROR,
    AgentSnapshot,
    ItemResult,
    PendingRegistration,
    RegistrationPayload,
    SubmissionResult,
    SyncResult,
    SyncStatus,
    utcnow,
)
from .notifications import NotificationSink, notify_safely
from .queue import SqliteQueue


logger = logging.getLogger("fieldsync.sync")

ProgressCallback = Callable[[int, int], None]

NO_ROWS_AFFECTED_ERROR = "Failed to update registration - no rows affected. Check permissions."
MAX_RETRIES_PREFIX = "Max retries reached: "
FORMS_FAILED_ERROR = "Microsoft Forms submission failed"

# Process-wide: manual actions and scheduler ticks share one lock.
_SYNC_LOCK = threading.Lock()


class SyncStepError(Exception):
    """Internal: aborts one registration attempt with a user-facing message."""


@dataclass(frozen=True)
class CaptureOutcome:
    queued: bool
    queue_id: str | None = None
    remote_id: str | None = None
    submitted: bool = False
    error: str | None = None


class RegistrationSync:
    """Syncs one registration to the datastore and the forms endpoint.

    `sync_queued` starts from a local queue entry; `sync_remote` starts from a
    row that already exists in the datastore. Both call the adapter at most
    once and only after checking that the row has no response id yet.
    """

    def __init__(
        self,
        queue: SqliteQueue,
        datastore: Datastore,
        adapter: SubmissionAdapter,
        notifier: NotificationSink | None = None,
        *,
        notify_after_retries: int = 2,
        max_retries: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.queue = queue
        self.datastore = datastore
        self.adapter = adapter
        self.notifier = notifier
        self.notify_after_retries = int(notify_after_retries)
        self.max_retries = int(max_retries)
        self.clock = clock

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    def _stamp_response(self, remote_id: str, response_id: str) -> None:
        # Both columns in one update so readers never see one without the other.
        patch = {
            RESPONSE_ID_COLUMN: str(response_id),
            SUBMITTED_AT_COLUMN: self.clock().isoformat(),
        }
        try:
            affected = self.datastore.update(REGISTRATIONS_TABLE, remote_id, patch)
        except DatastoreError as exc:
            raise SyncStepError(f"Failed to update database: {exc}") from exc
        if affected == 0:
            raise SyncStepError(NO_ROWS_AFFECTED_ERROR)
        logger.info(
            "registration stamped with forms response",
            extra={"fields": {"registration_id": remote_id, "response_id": str(response_id)}},
        )

    def _submit(self, customer: RegistrationPayload, agent: AgentSnapshot) -> str:
        try:
            result = self.adapter.submit(customer, agent)
        except Exception as exc:
            # Adapters are expected to return failures; treat a leak the same way.
            logger.exception("submission adapter raised")
            result = SubmissionResult(success=False, error=str(exc))
        if not (result.success and result.response_id):
            raise SyncStepError(result.error or FORMS_FAILED_ERROR)
        return str(result.response_id)

    # ------------------------------------------------------------------
    # (a) local queue entry
    # ------------------------------------------------------------------

    def _ensure_remote_row(self, entry: PendingRegistration) -> tuple[str, bool]:
        """Returns (remote id, already submitted)."""

        if entry.remote_id:
            try:
                row = fetch_one(self.datastore, REGISTRATIONS_TABLE, entry.remote_id)
            except DatastoreError as exc:
                raise SyncStepError(f"Database error: {exc}") from exc
            if row is not None:
                return entry.remote_id, bool(row.get(RESPONSE_ID_COLUMN))
            logger.warning("remote row %s for queue entry %s is gone; re-creating", entry.remote_id, entry.id)

        try:
            row = self.datastore.insert(REGISTRATIONS_TABLE, entry.customer.to_record(entry.agent_id))
        except DatastoreError as exc:
            raise SyncStepError(f"Database error: {exc}") from exc
        remote_id = str(row.get("id") or "")
        if not remote_id:
            raise SyncStepError("Database error: insert returned no id")
        self.queue.attach_remote_id(entry.id, remote_id)
        return remote_id, False

    def sync_queued(self, entry: PendingRegistration) -> ItemResult:
        logger.info("syncing queued registration", extra={"fields": {"id": entry.id, "retry_count": entry.retry_count}})
        self.queue.update_status(entry.id, SyncStatus.SYNCING)

        remote_id: str | None = entry.remote_id
        try:
            remote_id, already_submitted = self._ensure_remote_row(entry)
            if not already_submitted:
                response_id = self._submit(entry.customer, entry.agent)
                self._stamp_response(remote_id, response_id)
        except SyncStepError as exc:
            return self._fail_queued(entry, remote_id, str(exc))
        except Exception as exc:
            logger.exception("unexpected error syncing queue entry %s", entry.id)
            return self._fail_queued(entry, remote_id, str(exc) or "Unknown error")

        self.queue.remove(entry.id)
        logger.info("queued registration synced", extra={"fields": {"id": entry.id, "registration_id": remote_id}})
        return ItemResult(success=True, registration_id=entry.id)

    def _fail_queued(self, entry: PendingRegistration, remote_id: str | None, message: str) -> ItemResult:
        logger.warning(
            "queued registration sync failed",
            extra={"fields": {"id": entry.id, "retry_count": entry.retry_count, "error": message}},
        )
        # Earlier failures stay quiet; only repeated failures notify.
        if entry.retry_count >= self.notify_after_retries:
            notify_safely(
                self.notifier,
                agent_id=entry.agent_id,
                customer_name=entry.customer.customer_name,
                related_id=remote_id,
                error_message=message,
            )

        stored = message
        if entry.retry_count >= self.max_retries:
            stored = f"{MAX_RETRIES_PREFIX}{message}"
        # Entries are parked as failed, never dropped.
        self.queue.update_status(entry.id, SyncStatus.FAILED, stored)
        return ItemResult(success=False, registration_id=entry.id, error=stored)

    # ------------------------------------------------------------------
    # (b) existing datastore row
    # ------------------------------------------------------------------

    def _load_agent(self, agent_id: str) -> AgentSnapshot:
        try:
            row = fetch_one(self.datastore, AGENTS_TABLE, agent_id)
        except DatastoreError as exc:
            raise SyncStepError(f"Agent data not found: {exc}") from exc
        if row is None:
            raise SyncStepError("Agent data not found: Unknown error")
        agent = AgentSnapshot.from_agent_row(row)
        if not agent.mobile:
            raise SyncStepError("Agent phone number not found")
        return agent

    def sync_remote(self, registration_id: str) -> ItemResult:
        try:
            row = fetch_one(self.datastore, REGISTRATIONS_TABLE, registration_id)
        except DatastoreError as exc:
            return ItemResult(success=False, registration_id=registration_id, error=str(exc))

        if row is None:
            logger.info("registration %s no longer exists; nothing to sync", registration_id)
            return ItemResult(success=True, registration_id=registration_id)
        if row.get(RESPONSE_ID_COLUMN):
            return ItemResult(success=True, registration_id=registration_id)

        try:
            customer = RegistrationPayload.from_record(row)
            agent = self._load_agent(str(row.get("agent_id") or ""))
        except SyncStepError as exc:
            return ItemResult(success=False, registration_id=registration_id, error=str(exc))

        try:
            response_id = self._submit(customer, agent)
        except SyncStepError as exc:
            notify_safely(
                self.notifier,
                agent_id=str(row.get("agent_id") or ""),
                customer_name=customer.customer_name,
                related_id=registration_id,
                error_message=str(exc),
            )
            return ItemResult(success=False, registration_id=registration_id, error=str(exc))

        try:
            self._stamp_response(registration_id, response_id)
        except SyncStepError as exc:
            return ItemResult(success=False, registration_id=registration_id, error=str(exc))

        logger.info("registration synced", extra={"fields": {"registration_id": registration_id}})
        return ItemResult(success=True, registration_id=registration_id)

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def submit_new(self, agent_id: str, customer: RegistrationPayload, agent: AgentSnapshot) -> CaptureOutcome:
        """Online capture: store the row, then submit it once.

        A submission failure leaves the row unsynced for the remote sweep; only a
        failed insert falls back to the local queue.
        """

        try:
            row = self.datastore.insert(REGISTRATIONS_TABLE, customer.to_record(agent_id))
        except DatastoreError as exc:
            logger.warning("online capture failed; queueing locally: %s", exc)
            queue_id = self.queue.enqueue(agent_id, customer, agent)
            return CaptureOutcome(queued=queue_id is not None, queue_id=queue_id, error=f"Database error: {exc}")
        except Exception as exc:
            logger.exception("unexpected error during online capture; queueing locally")
            queue_id = self.queue.enqueue(agent_id, customer, agent)
            return CaptureOutcome(queued=queue_id is not None, queue_id=queue_id, error=str(exc))

        remote_id = str(row.get("id") or "")
        try:
            response_id = self._submit(customer, agent)
            self._stamp_response(remote_id, response_id)
        except SyncStepError as exc:
            return CaptureOutcome(queued=False, remote_id=remote_id, submitted=False, error=str(exc))
        return CaptureOutcome(queued=False, remote_id=remote_id, submitted=True)


class SyncOrchestrator:
    """Drives sequential batch syncs; at most one batch runs per process."""

    def __init__(
        self,
        queue: SqliteQueue,
        datastore: Datastore,
        routine: RegistrationSync,
        probe: ConnectivityProbe,
        *,
        pace_s: float = 0.5,
        stale_syncing_s: float = 300.0,
        sleep: Callable[[float], None] = time.sleep,
        lock: threading.Lock | None = None,
    ) -> None:
        self.queue = queue
        self.datastore = datastore
        self.routine = routine
        self.probe = probe
        self.pace_s = max(0.0, float(pace_s))
        self.stale_syncing_s = float(stale_syncing_s)
        self.sleep = sleep
        self.lock = lock or _SYNC_LOCK

    def _pace(self, index: int, total: int) -> None:
        if self.pace_s > 0 and index < total:
            self.sleep(self.pace_s)

    @staticmethod
    def _report(on_progress: ProgressCallback | None, current: int, total: int) -> None:
        if on_progress is None:
            return
        try:
            on_progress(current, total)
        except Exception:
            logger.exception("progress callback failed")

    def _run_locked(self, label: str, fn: Callable[[], SyncResult]) -> SyncResult:
        if not self.probe.is_online():
            logger.info("device is offline, skipping %s", label)
            return SyncResult.offline()
        if not self.lock.acquire(blocking=False):
            logger.info("%s skipped: another sync is running", label)
            return SyncResult.busy()
        try:
            result = fn()
        except Exception as exc:
            logger.exception("error during %s", label)
            result = SyncResult()
            result.fail(str(exc) or "Unknown error")
        finally:
            self.lock.release()
        logger.info("%s complete: %s", label, result.summary())
        return result

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def _pending_entries(self, agent_id: str | None) -> List[PendingRegistration]:
        self.queue.requeue_stale(older_than_s=self.stale_syncing_s)
        return self.queue.list_pending(agent_id)

    def _unsynced_ids(self, agent_id: str) -> List[str]:
        rows = self.datastore.select(
            REGISTRATIONS_TABLE,
            {"agent_id": agent_id, RESPONSE_ID_COLUMN: None},
            columns=["id"],
            order_by="created_at",
            descending=True,
        )
        # Rows created for a still-open queue entry are retried by the queue
        # path, under its retry count and notification rules.
        owned = {entry.remote_id for entry in self.queue.list_pending(agent_id) if entry.remote_id}
        return [str(row["id"]) for row in rows if row.get("id") and str(row["id"]) not in owned]

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def _sync_queue(
        self,
        entries: List[PendingRegistration],
        on_progress: ProgressCallback | None,
        *,
        offset: int = 0,
        total: int | None = None,
    ) -> SyncResult:
        result = SyncResult()
        total = len(entries) if total is None else total
        for i, entry in enumerate(entries, start=1):
            self._report(on_progress, offset + i, total)
            result.record(self.routine.sync_queued(entry))
            self._pace(offset + i, total)
        return result

    def _sync_remote(
        self,
        ids: List[str],
        on_progress: ProgressCallback | None,
        *,
        offset: int = 0,
        total: int | None = None,
    ) -> SyncResult:
        result = SyncResult()
        total = len(ids) if total is None else total
        for i, registration_id in enumerate(ids, start=1):
            self._report(on_progress, offset + i, total)
            result.record(self.routine.sync_remote(registration_id))
            self._pace(offset + i, total)
        return result

    def sync_pending_registrations(
        self,
        agent_id: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> SyncResult:
        def _run() -> SyncResult:
            entries = self._pending_entries(agent_id)
            logger.info("found %s pending registrations to sync", len(entries))
            return self._sync_queue(entries, on_progress)

        return self._run_locked("queue sync", _run)

    def sync_all_unsynced_registrations(
        self,
        agent_id: str,
        on_progress: ProgressCallback | None = None,
    ) -> SyncResult:
        def _run() -> SyncResult:
            try:
                ids = self._unsynced_ids(agent_id)
            except DatastoreError as exc:
                result = SyncResult()
                result.fail(str(exc))
                return result
            logger.info("found %s unsynced registrations", len(ids))
            return self._sync_remote(ids, on_progress)

        return self._run_locked("unsynced sweep", _run)

    def sync_everything(
        self,
        agent_id: str,
        on_progress: ProgressCallback | None = None,
    ) -> SyncResult:
        """Queue first, then the datastore sweep.

        Queued entries only become visible to the sweep once they are stored
        remotely, so the order matters.
        """

        def _run() -> SyncResult:
            entries = self._pending_entries(agent_id)
            try:
                unsynced_before = self._unsynced_ids(agent_id)
            except DatastoreError:
                unsynced_before = []
            # Queue entries create rows the sweep will see; estimate the total up front.
            total = len(entries) + len(unsynced_before)

            queued = self._sync_queue(entries, on_progress, total=total)

            try:
                ids = self._unsynced_ids(agent_id)
            except DatastoreError as exc:
                swept = SyncResult()
                swept.fail(str(exc))
                return queued.merge(swept)

            done = len(entries)
            total = max(total, done + len(ids))
            swept = self._sync_remote(ids, on_progress, offset=done, total=total)
            return queued.merge(swept)

        return self._run_locked("full sync", _run)

    def sync_registration(self, registration_id: str) -> ItemResult:
        """Manual per-row retry from the registrations list."""

        if not self.probe.is_online():
            return ItemResult(success=False, registration_id=registration_id, error=OFFLINE_ERROR)
        if not self.lock.acquire(blocking=False):
            return ItemResult(success=False, registration_id=registration_id, error=BUSY_ERROR)
        try:
            return self.routine.sync_remote(registration_id)
        except Exception as exc:
            logger.exception("error syncing registration %s", registration_id)
            return ItemResult(success=False, registration_id=registration_id, error=str(exc) or "Unknown error")
        finally:
            self.lock.release()

    def unsynced_count(self, agent_id: str) -> int:
        try:
            return self.datastore.count(REGISTRATIONS_TABLE, {"agent_id": agent_id, RESPONSE_ID_COLUMN: None})
        except DatastoreError as exc:
            logger.warning("could not count unsynced registrations: %s", exc)
            return 0

    def capture_registration(
        self,
        agent_id: str,
        customer: RegistrationPayload | Mapping[str, Any],
        agent: AgentSnapshot,
    ) -> CaptureOutcome:
        """Save a freshly captured registration, online or offline.

        Raises `RegistrationValidationError` for a malformed payload.
        """

        payload = customer if isinstance(customer, RegistrationPayload) else RegistrationPayload.from_mapping(customer)
        # While a batch holds the lock, new rows go through the queue so the
        # running sweep cannot pick up and submit the same row.
        if not self.probe.is_online() or not self.lock.acquire(blocking=False):
            return self._enqueue(agent_id, payload, agent)
        try:
            return self.routine.submit_new(agent_id, payload, agent)
        finally:
            self.lock.release()

    def _enqueue(self, agent_id: str, payload: RegistrationPayload, agent: AgentSnapshot) -> CaptureOutcome:
        queue_id = self.queue.enqueue(agent_id, payload, agent)
        if queue_id is None:
            return CaptureOutcome(queued=False, error="Offline queue unavailable")
        return CaptureOutcome(queued=True, queue_id=queue_id)
