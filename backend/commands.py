"""
Asynchronous gateway commands for Region Remote.

Gateway calls block on HTTP, so they never run on the scheduler thread. The
dispatcher runs each command on a worker (a daemon thread by default) and
hands the outcome back to the scheduler thread, where the caller's
completion callback runs. A stalled command therefore never delays snapshot
processing.

Tests pass runner=inline_runner so commands complete synchronously; the
completion callback still goes through the scheduler inbox and runs on the
next run_pending().
"""

import logging
import threading
from typing import Callable, Optional

from .errors import CommandError

logger = logging.getLogger("RegionRemote.Commands")


def thread_runner(job: Callable[[], None], name: str) -> None:
    """Run a job on a fresh daemon thread."""
    threading.Thread(target=job, name=f"cmd-{name}", daemon=True).start()


def inline_runner(job: Callable[[], None], name: str) -> None:
    """Run a job immediately on the calling thread."""
    job()


class CommandDispatcher:
    """
    Fire-and-report command execution.

    Usage:
        dispatcher = CommandDispatcher(scheduler)
        dispatcher.submit("seek_to_region", lambda: gateway.seek_to_region(2),
                          on_done=lambda error: ...)

    on_done receives None on success or a CommandError on failure.
    """

    def __init__(self, scheduler, runner: Optional[Callable] = None):
        self.scheduler = scheduler
        self.runner = runner or thread_runner
        self._lock = threading.Lock()
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    def submit(self, name: str, call: Callable[[], object],
               on_done: Optional[Callable[[Optional[CommandError]], None]] = None) -> None:
        """
        Run `call` off the scheduler thread.

        Any exception other than CommandError is wrapped into one so the
        completion callback sees a single error type.
        """
        with self._lock:
            self._in_flight += 1

        def job():
            error = None
            try:
                call()
            except CommandError as e:
                error = e
            except Exception as e:
                error = CommandError(name, str(e) or e.__class__.__name__)
            finally:
                with self._lock:
                    self._in_flight -= 1

            if error is not None:
                logger.debug(f"Command failed: {error}")
            if on_done is not None:
                self.scheduler.call_soon_threadsafe(on_done, error)

        self.runner(job, name)
