# catalog/dispatch.py
"""Fire-and-forget execution of side effects (audit entries, notifications).

Tasks are handed over only after the primary write has committed. Each task
is retried with backoff; a task that still fails is logged and dropped, so a
broken collaborator never fails or rolls back the request that triggered it.
"""
from typing import Callable
from apscheduler.schedulers.base import BaseScheduler
from .utils import get_logger, retry

logger = get_logger("catalog.dispatch")


def run_guarded(name: str, fn: Callable, args=(), kwargs=None, tries: int = 3, delay: float = 1.0) -> bool:
    attempt = retry(Exception, tries=tries, delay=delay, logger=logger)(fn)
    try:
        attempt(*args, **(kwargs or {}))
        return True
    except Exception:
        logger.exception("Side effect %s failed after %d attempt(s)", name, tries)
        return False


class InlineDispatcher:
    """Runs tasks synchronously in the caller's thread."""

    def __init__(self, tries: int = 1, delay: float = 0):
        self.tries = tries
        self.delay = delay

    def submit(self, name: str, fn: Callable, *args, **kwargs) -> None:
        run_guarded(name, fn, args, kwargs, tries=self.tries, delay=self.delay)


class BackgroundDispatcher:
    """Runs tasks as one-shot jobs on an APScheduler scheduler."""

    def __init__(self, scheduler: BaseScheduler, tries: int = 3, delay: float = 1.0):
        self.scheduler = scheduler
        self.tries = tries
        self.delay = delay

    def submit(self, name: str, fn: Callable, *args, **kwargs) -> None:
        # no trigger: the job runs once, as soon as an executor thread is free
        self.scheduler.add_job(
            run_guarded,
            args=[name, fn, args, kwargs],
            kwargs={"tries": self.tries, "delay": self.delay},
            name=name,
            misfire_grace_time=None,
        )
