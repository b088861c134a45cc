from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Protocol


logger = logging.getLogger("fieldsync.connectivity")


class Pingable(Protocol):
    def ping(self) -> bool: ...


class ConnectivityProbe:
    """Bounded-latency "can we reach the backend right now" check.

    The ping runs on a worker thread so a hung transport cannot hold the caller
    past `timeout_s`; a late answer is discarded.
    """

    def __init__(self, backend: Pingable, *, timeout_s: float = 2.0) -> None:
        if timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")
        self.backend = backend
        self.timeout_s = float(timeout_s)

    def is_online(self) -> bool:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="fieldsync-probe")
        try:
            future = executor.submit(self.backend.ping)
            return bool(future.result(timeout=self.timeout_s))
        except FutureTimeout:
            logger.info("connectivity probe timed out after %.1fs", self.timeout_s)
            return False
        except Exception as exc:
            logger.info("connectivity probe failed: %r", exc)
            return False
        finally:
            executor.shutdown(wait=False)
