"""Exceptions raised inside the engine. Outcomes that are not failures are not exceptions."""
from __future__ import annotations


class AutomationError(Exception):
    """Base class for engine errors."""


class LoginTimeout(AutomationError):
    def __init__(self, platform: str, waited_s: float) -> None:
        super().__init__(f"LOGIN_TIMEOUT:{platform} after {waited_s:.0f}s")
        self.platform = platform
        self.waited_s = waited_s


class TransientAutomationError(AutomationError):
    """Navigation or selector failure inside a form step; the step loop absorbs it."""


class FatalJobError(AutomationError):
    """Unrecoverable failure for one job, surfaced at the job boundary."""


class QueueConnectionError(AutomationError):
    """Lost the queue connection; the worker process must exit."""
