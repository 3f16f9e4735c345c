"""
Registro: background scheduling for campaign ticks and delayed follow-up messages.

ThreadScheduler runs jobs on daemon threads. Each job opens and closes its own
database connection, so it can be used from request threads and management commands alike.
Tests pass a scheduler that runs jobs on demand instead.
"""

import logging
import threading
from typing import Callable

from django.db import close_old_connections

logger = logging.getLogger(__name__)


class ScheduledHandle:
    """Handle returned by the scheduler; cancel() stops future runs."""

    def __init__(self, name: str = ""):
        self.name = name
        self._stop = threading.Event()

    def cancel(self) -> None:
        self._stop.set()

    @property
    def cancelled(self) -> bool:
        return self._stop.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to seconds; True if cancelled meanwhile."""
        return self._stop.wait(seconds)


class Scheduler:
    def schedule_repeating(self, interval_seconds: float, fn: Callable[[], None], name: str = "") -> ScheduledHandle:
        raise NotImplementedError

    def schedule_once(self, delay_seconds: float, fn: Callable[[], None], name: str = "") -> ScheduledHandle:
        raise NotImplementedError


def _run_job(fn: Callable[[], None], name: str) -> None:
    close_old_connections()
    try:
        fn()
    except Exception:
        logger.exception("scheduled job failed: %s", name or fn)
    finally:
        close_old_connections()


class ThreadScheduler(Scheduler):
    def schedule_repeating(self, interval_seconds, fn, name=""):
        handle = ScheduledHandle(name)

        def loop():
            while not handle.wait(interval_seconds):
                _run_job(fn, name)
            logger.debug("repeating job stopped: %s", name)

        threading.Thread(target=loop, name=name or None, daemon=True).start()
        return handle

    def schedule_once(self, delay_seconds, fn, name=""):
        handle = ScheduledHandle(name)

        def run():
            if not handle.wait(delay_seconds):
                _run_job(fn, name)

        threading.Thread(target=run, name=name or None, daemon=True).start()
        return handle
