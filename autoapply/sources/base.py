from __future__ import annotations

import html
import re
from abc import ABC, abstractmethod

from autoapply.models import JobPosting, SearchPreference

_SCRIPT_STYLE_RE = re.compile(r"(?is)<(script|style).*?>.*?</\1>")
_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")


def html_to_text(value: str | None) -> str:
    if not value:
        return ""
    text = _SCRIPT_STYLE_RE.sub(" ", value)
    text = _TAG_RE.sub(" ", text)
    return _WS_RE.sub(" ", html.unescape(text)).strip()


def build_query(preference: SearchPreference) -> str:
    """First role, else the first two keywords. Long keyword lists return nothing."""
    if preference.roles and preference.roles[0].strip():
        return preference.roles[0].strip()
    return " ".join(k.strip() for k in preference.keywords[:2] if k.strip())


class JobSource(ABC):
    name: str = "source"

    @abstractmethod
    def search(self, preference: SearchPreference, limit: int = 50) -> list[JobPosting]:
        """Postings with an empty ``id`` and ``user_id``; the pipeline fills both."""
