"""
Cooperative scheduler for Region Remote.

Every state change in a session happens on one thread: the scheduler's.
Periodic work (transport polling, UI refresh) and one-shot deadlines
(count-in) are ScheduledTasks; work finishing on other threads (HTTP
fetches, gateway commands) is handed back with call_soon_threadsafe().

The clock is injectable. Production uses MonotonicClock and a background
thread running run_forever(); tests use VirtualClock and call run_pending()
after advancing time, so timers fire deterministically.
"""

import time
import queue
import logging
import threading
from typing import Callable, List, Optional

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
from config import SCHEDULER_TICK

logger = logging.getLogger("RegionRemote.Scheduler")


class MonotonicClock:
    def now(self) -> float:
        return time.monotonic()


class VirtualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 0.0):
        self._now = start

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> float:
        self._now += seconds
        return self._now


class ScheduledTask:
    """
    Handle for a scheduled callback.

    cancel() is synchronous: once it returns the callback never runs again,
    even if its deadline already passed.
    """

    def __init__(self, due: float, callback: Callable, args=(), interval: Optional[float] = None,
                 name: str = ""):
        self.due = due
        self.callback = callback
        self.args = args
        self.interval = interval
        self.name = name or getattr(callback, '__name__', 'task')
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    @property
    def periodic(self) -> bool:
        return self.interval is not None

    def __repr__(self):
        state = "cancelled" if self.cancelled else f"due={self.due:.3f}"
        return f"<ScheduledTask {self.name} {state}>"


class Scheduler:
    """
    Single-threaded task runner.

    Usage:
        scheduler = Scheduler()
        scheduler.call_every(0.15, poll)
        scheduler.start()                       # background thread
        scheduler.call_soon_threadsafe(fn, x)   # from any thread
        scheduler.stop()
    """

    def __init__(self, clock=None, tick: float = SCHEDULER_TICK):
        self.clock = clock or MonotonicClock()
        self.tick = tick
        self._tasks: List[ScheduledTask] = []
        self._inbox: "queue.Queue" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def now(self) -> float:
        return self.clock.now()

    # =========================================================================
    # SCHEDULING
    # =========================================================================

    def call_later(self, delay: float, callback: Callable, *args, name: str = "") -> ScheduledTask:
        """Run callback once, `delay` seconds from now."""
        task = ScheduledTask(self.now() + max(0.0, delay), callback, args, name=name)
        self._tasks.append(task)
        return task

    def call_every(self, interval: float, callback: Callable, *args, name: str = "",
                   start_delay: Optional[float] = None) -> ScheduledTask:
        """Run callback every `interval` seconds until cancelled."""
        if interval <= 0:
            raise ValueError("interval must be positive")
        delay = interval if start_delay is None else start_delay
        task = ScheduledTask(self.now() + delay, callback, args, interval=interval, name=name)
        self._tasks.append(task)
        return task

    def call_soon_threadsafe(self, callback: Callable, *args) -> None:
        """Queue a callback from any thread; it runs on the scheduler thread."""
        self._inbox.put((callback, args))

    # =========================================================================
    # RUNNING
    # =========================================================================

    def run_pending(self) -> int:
        """
        Run handed-back callbacks, then every task that is due.

        Handed-back callbacks run in the order they were queued. Due tasks
        run in deadline order. A periodic task is re-armed from its previous
        deadline, skipping missed beats instead of bursting to catch up.

        Returns:
            Number of callbacks executed
        """
        executed = 0

        while True:
            try:
                callback, args = self._inbox.get_nowait()
            except queue.Empty:
                break
            self._invoke(callback, args, "handoff")
            executed += 1

        now = self.now()
        due = sorted((t for t in self._tasks if not t.cancelled and t.due <= now),
                     key=lambda t: t.due)
        for task in due:
            # A callback earlier in this batch may have cancelled it
            if task.cancelled:
                continue
            if task.periodic:
                task.due += task.interval
                if task.due <= now:
                    missed = int((now - task.due) // task.interval) + 1
                    task.due += missed * task.interval
            else:
                task.cancelled = True
            self._invoke(task.callback, task.args, task.name)
            executed += 1

        self._tasks = [t for t in self._tasks if not t.cancelled]
        return executed

    def _invoke(self, callback: Callable, args, name: str) -> None:
        try:
            callback(*args)
        except Exception as e:
            logger.exception(f"Scheduled callback {name} failed: {e}")

    def run_forever(self) -> None:
        """Run until stop() is called."""
        logger.debug("Scheduler loop started")
        while not self._stop.is_set():
            self.run_pending()
            self._stop.wait(self.tick)
        logger.debug("Scheduler loop exiting")

    def start(self) -> None:
        """Start the scheduler thread if not already running."""
        if self._thread is None or not self._thread.is_alive():
            self._stop.clear()
            self._thread = threading.Thread(target=self.run_forever, name="RegionRemoteScheduler",
                                            daemon=True)
            self._thread.start()

    def stop(self, timeout: float = 1.0) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self._thread = None

    def cancel_all(self) -> int:
        """Cancel every scheduled task. Returns how many were still pending."""
        pending = [t for t in self._tasks if not t.cancelled]
        for task in pending:
            task.cancel()
        self._tasks = []
        return len(pending)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
