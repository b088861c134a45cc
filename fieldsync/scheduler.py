from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler

from .models import BUSY_ERROR, OFFLINE_ERROR, SyncResult
from .sync import ProgressCallback, SyncOrchestrator


logger = logging.getLogger("fieldsync.scheduler")

JOB_ID = "fieldsync-auto-sync"


class AutoSyncScheduler:
    """Runs the queue sync immediately on start and then every `interval_s`.

    A tick that finds the previous one still running, or the device offline,
    does nothing. `stop()` cancels future ticks but lets a running sync finish.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        *,
        agent_id: str | None = None,
        interval_s: float = 30.0,
        on_complete: Callable[[SyncResult], None] | None = None,
        on_progress: ProgressCallback | None = None,
        scheduler: BackgroundScheduler | None = None,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        self.orchestrator = orchestrator
        self.agent_id = agent_id
        self.interval_s = float(interval_s)
        self.on_complete = on_complete
        self.on_progress = on_progress
        self._scheduler = scheduler
        self._owns_scheduler = scheduler is None
        self._in_flight = threading.Lock()
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    def start(self) -> None:
        if self._started:
            return
        if self._scheduler is None:
            self._scheduler = BackgroundScheduler(timezone="UTC")

        self._scheduler.add_job(
            func=self.run_once,
            trigger="interval",
            seconds=self.interval_s,
            id=JOB_ID,
            next_run_time=datetime.now(timezone.utc),
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        if not self._scheduler.running:
            self._scheduler.start()
        self._started = True
        logger.info("Auto-sync started (interval_s=%s, agent_id=%s)", self.interval_s, self.agent_id)

    def stop(self) -> None:
        if not self._started or self._scheduler is None:
            return
        if self._scheduler.get_job(JOB_ID) is not None:
            self._scheduler.remove_job(JOB_ID)
        if self._owns_scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        self._started = False
        logger.info("Auto-sync stopped")

    def run_once(self) -> SyncResult | None:
        """One tick. Returns the batch result, or None when the tick was skipped."""

        if not self._in_flight.acquire(blocking=False):
            logger.debug("auto-sync tick skipped: previous tick still running")
            return None
        try:
            result = self.orchestrator.sync_pending_registrations(self.agent_id, self.on_progress)
        except Exception:
            logger.exception("Error in auto-sync")
            return None
        finally:
            self._in_flight.release()

        if not result.success and result.errors in ([BUSY_ERROR], [OFFLINE_ERROR]):
            # Nothing ran.
            return result
        if self.on_complete is not None:
            try:
                self.on_complete(result)
            except Exception:
                logger.exception("auto-sync completion callback failed")
        return result
