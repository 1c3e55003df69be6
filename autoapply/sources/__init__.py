from .arbeitnow import ArbeitnowSource
from .base import JobSource
from .browser import BrowserSearchSource
from .remotive import RemotiveSource

from autoapply.log import get_logger

log = get_logger(__name__)

__all__ = [
    "JobSource", "RemotiveSource", "ArbeitnowSource", "BrowserSearchSource",
    "get_sources",
]


def get_sources() -> list[JobSource]:
    """API sources; both are free and need no keys."""
    sources: list[JobSource] = [RemotiveSource(), ArbeitnowSource()]
    log.debug("Registered sources: %s", ", ".join(s.name for s in sources))
    return sources
