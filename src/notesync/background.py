"""Background task management for notesync.

Best-effort remote legs run on daemon threads so the local result of an
operation can be reported immediately. Each task has a handle the caller may
wait on; a task's failure is logged and stored on the handle, never raised
into the thread that scheduled it.

PeriodicSync runs a callable on a fixed interval on its own daemon thread.

CRITICAL: This module must have NO third-party dependencies.
"""

from __future__ import annotations

import itertools
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

__all__ = ["BackgroundTask", "BackgroundTasks", "PeriodicSync"]


class BackgroundTask:
    """Handle for a callable running on a background thread."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.result: Any = None
        self.error: Optional[BaseException] = None
        self._done = threading.Event()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the task finishes.

        Returns:
            True if the task finished within timeout
        """
        return self._done.wait(timeout)

    def _finish(self, result: Any = None, error: Optional[BaseException] = None) -> None:
        self.result = result
        self.error = error
        self._done.set()


class BackgroundTasks:
    """Runs callables on daemon threads and tracks the ones still active."""

    def __init__(self) -> None:
        self._active_tasks: Dict[str, threading.Thread] = {}
        self._lock = threading.Lock()
        self._counter = itertools.count(1)

    def submit(
        self,
        name: str,
        func: Callable[..., Any],
        *args: Any,
        on_complete: Optional[Callable[[Any], None]] = None,
    ) -> BackgroundTask:
        """Start func(*args) in the background.

        Args:
            name: Label used in logs
            func: Callable to run
            on_complete: Called with the return value when func succeeds

        Returns:
            BackgroundTask handle
        """
        task_id = f"{name}-{next(self._counter)}"
        task = BackgroundTask(task_id)
        thread = threading.Thread(
            target=self._run,
            args=(task, func, args, on_complete),
            name=task_id,
            daemon=True,
        )
        with self._lock:
            self._active_tasks[task_id] = thread
        thread.start()
        return task

    def _run(
        self,
        task: BackgroundTask,
        func: Callable[..., Any],
        args: tuple,
        on_complete: Optional[Callable[[Any], None]],
    ) -> None:
        try:
            result = func(*args)
            if on_complete:
                try:
                    on_complete(result)
                except Exception as e:
                    logger.error(f"Error in completion callback of {task.name}: {e}")
            task._finish(result=result)
        except Exception as e:
            logger.warning(f"Background task {task.name} failed: {e}")
            task._finish(error=e)
        finally:
            with self._lock:
                self._active_tasks.pop(task.name, None)

    def get_active_tasks(self) -> List[str]:
        with self._lock:
            return list(self._active_tasks.keys())

    def wait_all(self, timeout: Optional[float] = None) -> bool:
        """Wait for every currently active task.

        Returns:
            True if all of them finished within timeout (each gets the full timeout)
        """
        with self._lock:
            threads = list(self._active_tasks.values())
        for thread in threads:
            thread.join(timeout)
        return all(not t.is_alive() for t in threads)


class PeriodicSync:
    """Calls a function every interval seconds until stopped.

    The first call happens one interval after start(). Exceptions from the
    function are logged and the timer keeps running.
    """

    def __init__(self, func: Callable[[], Any], interval: float) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.func = func
        self.interval = interval
        self.run_count = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="periodic-sync", daemon=True)
        self._thread.start()
        logger.info(f"Periodic sync every {self.interval}s started")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Periodic sync stopped")

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.func()
            except Exception as e:
                logger.error(f"Periodic sync failed: {e}")
            self.run_count += 1
