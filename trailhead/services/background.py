"""
trailhead.services.background — Fire-and-Forget Side Effects
=============================================================

Coin credits and user-facing notifications must never hold up (or fail) a
trail operation.  They are submitted here after the operation's transaction
has committed and run on a small thread pool.  Failures are logged, never
raised back to the submitter.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any

logger = logging.getLogger(__name__)


class BackgroundDispatcher:
    """Thread pool for side effects that nobody awaits.

    - ``submit()`` returns immediately.
    - ``wait()`` blocks until everything submitted so far has finished
      (used on shutdown and by tests).
    """

    def __init__(self, max_workers: int = 4) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="trailhead-bg"
        )
        self._pending: set[Future] = set()
        self._lock = threading.Lock()

    def submit(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        name = getattr(func, "__qualname__", repr(func))

        def _run() -> Any:
            try:
                return func(*args, **kwargs)
            except Exception:
                logger.exception("Background task %s failed", name)
                return None

        future = self._executor.submit(_run)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def wait(self, timeout: float | None = 30.0) -> bool:
        """Wait for outstanding tasks.  Returns False if some are still running."""
        # Tasks may submit follow-up tasks, so loop until the set stays empty.
        while True:
            with self._lock:
                pending = {f for f in self._pending if not f.done()}
            if not pending:
                return True
            _, not_done = wait(pending, timeout=timeout)
            if not_done:
                logger.warning(
                    "%d background task(s) still running after %ss", len(not_done), timeout
                )
                return False

    def shutdown(self) -> None:
        """Drain outstanding work and stop the pool."""
        self._executor.shutdown(wait=True)
