"""Timer threads for the signal worker."""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, List, Optional

from log_utils import setup_logger

logger = setup_logger(__name__)

CallableType = Callable[[], Any]


class PeriodicTask:
    """Run ``fn`` every ``interval`` seconds on its own daemon thread.

    A slow run only delays this task's next tick.  Exceptions are logged and
    the timer keeps going.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        fn: CallableType,
        *,
        initial_delay: Optional[float] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        self.name = name
        self.interval = float(interval)
        self.fn = fn
        self.initial_delay = float(initial_delay) if initial_delay is not None else self.interval
        self._stop = stop_event or threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.runs = 0

    def run_once(self) -> None:
        started = time.monotonic()
        try:
            self.fn()
        except Exception:
            logger.exception("Periodic task %s failed", self.name)
        finally:
            self.runs += 1
            logger.debug("Periodic task %s took %.2fs", self.name, time.monotonic() - started)

    def _loop(self) -> None:
        delay = self.initial_delay
        while not self._stop.wait(delay):
            self.run_once()
            delay = self.interval

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._loop, name=f"task-{self.name}", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)

    @property
    def alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


class TaskGroup:
    """Container sharing one stop event across several ``PeriodicTask`` timers."""

    def __init__(self) -> None:
        self._stop = threading.Event()
        self._tasks: List[PeriodicTask] = []
        self._lock = threading.Lock()

    @property
    def stop_event(self) -> threading.Event:
        return self._stop

    @property
    def tasks(self) -> List[PeriodicTask]:
        return list(self._tasks)

    def add(self, name: str, interval: float, fn: CallableType, *, initial_delay: Optional[float] = None) -> PeriodicTask:
        task = PeriodicTask(name, interval, fn, initial_delay=initial_delay, stop_event=self._stop)
        with self._lock:
            if self._stop.is_set():
                raise RuntimeError("TaskGroup has been shut down")
            self._tasks.append(task)
        return task

    def start(self) -> None:
        for task in self.tasks:
            task.start()

    def shutdown(self, timeout: Optional[float] = 5.0) -> None:
        with self._lock:
            self._stop.set()
        for task in self.tasks:
            task.stop(timeout)


__all__ = ["PeriodicTask", "TaskGroup"]
