"""Worker pool with exception handling for background propagation.

This module provides a ThreadPoolExecutor wrapper used to run best-effort
mirror updates off the request path. Task failures are logged and counted,
never raised into the submitting request.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait


class WorkerPool:
    """ThreadPoolExecutor wrapper with exception handling for ledger tasks."""

    def __init__(self, max_workers: int = 4, logger=None):
        """
        Initialize worker pool.

        Args:
            max_workers: Maximum number of concurrent worker threads (default: 4)
            logger: Optional logger instance for logging
        """
        self.max_workers = max_workers
        self.logger = logger or logging.getLogger(__name__)
        self.executor = None
        self._stats_lock = threading.Lock()  # Thread-safe stats updates
        self._pending: set[Future] = set()
        self.stats = {
            "max_workers": max_workers,
            "total_submitted": 0,
            "total_completed": 0,
            "total_successful": 0,
            "total_failed": 0,
        }

    def submit(self, func: callable, *args, **kwargs) -> Future:
        """
        Submit single task for execution.

        Args:
            func: Callable to execute
            *args: Positional arguments to func
            **kwargs: Keyword arguments to func

        Returns:
            Future object representing the pending execution
        """
        if self.executor is None:
            self.executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="ledger-propagation")

        with self._stats_lock:
            self.stats["total_submitted"] += 1
        future = self.executor.submit(func, *args, **kwargs)
        with self._stats_lock:
            self._pending.add(future)

        def _track_completion(f):
            with self._stats_lock:
                self.stats["total_completed"] += 1
                self._pending.discard(f)
            try:
                f.result()  # Will raise exception if task failed
                with self._stats_lock:
                    self.stats["total_successful"] += 1
            except Exception:
                with self._stats_lock:
                    self.stats["total_failed"] += 1
                self.logger.error(f"Task failed: {getattr(func, '__name__', func)}", exc_info=True)

        future.add_done_callback(_track_completion)
        return future

    def wait_idle(self, timeout: float | None = None) -> bool:
        """
        Block until every submitted task has finished.

        Returns:
            True if the pool drained within the timeout
        """
        with self._stats_lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        """
        Shutdown worker pool.

        Args:
            wait: If True, block until all submitted tasks complete
        """
        if self.executor is not None:
            self.logger.info(f"Shutting down worker pool (wait={wait})...")
            self.executor.shutdown(wait=wait)
            self.logger.info(
                f"Worker pool shutdown complete. Stats: "
                f"{self.stats['total_successful']} successful, "
                f"{self.stats['total_failed']} failed"
            )
            self.executor = None

    def get_stats(self) -> dict:
        """Get worker pool statistics."""
        with self._stats_lock:
            return dict(self.stats)
