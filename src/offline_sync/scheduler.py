"""Background scheduler for periodic engine jobs.

A single daemon thread tracks when each job is due and hands due jobs to a
thread pool, so a slow sync pass never delays a connectivity check. A job
whose previous run has not finished is skipped for that tick.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

__all__ = ["Scheduler", "ScheduledJob"]


@dataclass
class ScheduledJob:
    """A periodic job.

    Attributes:
        name: Unique job name
        interval: Seconds between runs
        func: Zero-argument callable
        next_run: Monotonic time of the next run
        runs: Number of runs started
        skipped: Number of ticks skipped because the previous run was active
    """

    name: str
    interval: float
    func: Callable[[], Any]
    next_run: float = 0.0
    runs: int = 0
    skipped: int = 0
    future: Optional[Future] = field(default=None, repr=False)

    @property
    def is_running(self) -> bool:
        return self.future is not None and not self.future.done()


class Scheduler:
    """Drives periodic jobs from one background thread."""

    def __init__(self, max_workers: int = 4) -> None:
        """Initialize the scheduler.

        Args:
            max_workers: Size of the worker pool running job bodies
        """
        self._max_workers = max_workers
        self._jobs: Dict[str, ScheduledJob] = {}
        self._lock = threading.Lock()
        self._wakeup = threading.Event()
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_workers, thread_name_prefix="offline-sync"
                )
            return self._executor

    def add_job(
        self,
        name: str,
        interval: float,
        func: Callable[[], Any],
        run_immediately: bool = False,
    ) -> ScheduledJob:
        """Register (or replace) a periodic job.

        Args:
            name: Unique job name
            interval: Seconds between runs (must be positive)
            func: Zero-argument callable
            run_immediately: Run on the next tick instead of after one interval

        Returns:
            The registered job
        """
        if interval <= 0:
            raise ValueError(f"Job interval must be positive, got {interval}")
        now = time.monotonic()
        job = ScheduledJob(
            name=name,
            interval=interval,
            func=func,
            next_run=now if run_immediately else now + interval,
        )
        with self._lock:
            self._jobs[name] = job
        self._wakeup.set()
        logger.debug(f"Scheduled job '{name}' every {interval}s")
        return job

    def remove_job(self, name: str) -> bool:
        """Unregister a job. An in-flight run is allowed to finish."""
        with self._lock:
            removed = self._jobs.pop(name, None)
        if removed is not None:
            logger.debug(f"Removed job '{name}'")
        return removed is not None

    def get_job(self, name: str) -> Optional[ScheduledJob]:
        with self._lock:
            return self._jobs.get(name)

    def job_names(self) -> List[str]:
        with self._lock:
            return list(self._jobs)

    def submit(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        """Run a one-off task on the worker pool."""
        return self._get_executor().submit(self._run_safely, func, *args, **kwargs)

    def start(self) -> None:
        """Start the scheduler thread. Calling start twice is a no-op."""
        if self.is_running:
            return
        self._stopping.clear()
        self._get_executor()
        self._thread = threading.Thread(
            target=self._loop, name="offline-sync-scheduler", daemon=True
        )
        self._thread.start()
        logger.info("Scheduler started")

    def stop(self, wait: bool = True) -> None:
        """Stop the scheduler thread and the worker pool."""
        self._stopping.set()
        self._wakeup.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5.0)
        self._thread = None

        with self._lock:
            executor = self._executor
            self._executor = None
        if executor is not None:
            executor.shutdown(wait=wait)
        logger.info("Scheduler stopped")

    def run_pending(self, now: Optional[float] = None) -> List[str]:
        """Dispatch every due job once.

        Returns:
            Names of the jobs dispatched
        """
        now = time.monotonic() if now is None else now
        dispatched = []
        with self._lock:
            due = [job for job in self._jobs.values() if job.next_run <= now]

        for job in due:
            job.next_run = now + job.interval
            if job.is_running:
                job.skipped += 1
                logger.debug(f"Skipping job '{job.name}': previous run still active")
                continue
            job.runs += 1
            job.future = self.submit(job.func)
            dispatched.append(job.name)
        return dispatched

    def _seconds_until_next(self) -> float:
        with self._lock:
            if not self._jobs:
                return 1.0
            next_run = min(job.next_run for job in self._jobs.values())
        return max(0.0, min(next_run - time.monotonic(), 1.0))

    def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                self.run_pending()
            except RuntimeError as e:
                # Executor shut down underneath us during stop()
                logger.debug(f"Scheduler dispatch stopped: {e}")
                break
            self._wakeup.wait(timeout=self._seconds_until_next())
            self._wakeup.clear()

    @staticmethod
    def _run_safely(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except Exception:
            logger.exception(f"Error in scheduled task {getattr(func, '__name__', func)!r}")
            raise
