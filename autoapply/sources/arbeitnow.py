"""Arbeitnow job board API (no API key required).

Docs: https://www.arbeitnow.com/api/job-board-api
"""
from __future__ import annotations

from datetime import datetime, timezone

import requests

from autoapply.log import get_logger
from autoapply.models import JobPosting, Platform, SearchPreference
from autoapply.retry import retry
from autoapply.sources.base import JobSource, html_to_text

log = get_logger(__name__)

API_URL = "https://www.arbeitnow.com/api/job-board-api"


def _posted_at(value) -> str | None:
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()
    return str(value)


class ArbeitnowSource(JobSource):
    name = "arbeitnow"

    @retry(max_attempts=2, base_delay=1.5, retryable=(requests.RequestException, OSError))
    def _fetch(self) -> list[dict]:
        r = requests.get(API_URL, timeout=15)
        r.raise_for_status()
        return r.json().get("data", [])

    def search(self, preference: SearchPreference, limit: int = 50) -> list[JobPosting]:
        postings: list[JobPosting] = []
        for hit in self._fetch():
            if preference.remote and not hit.get("remote"):
                continue
            url = hit.get("url", "")
            if not url:
                continue
            location = hit.get("location") or ""
            if hit.get("remote") and "remote" not in location.lower():
                location = f"Remote ({location})" if location else "Remote"
            postings.append(
                JobPosting(
                    id="",
                    external_id=f"arbeitnow_{hit.get('slug')}",
                    user_id="",
                    platform=Platform.ARBEITNOW,
                    job_url=url,
                    apply_url=url,
                    title=hit.get("title", ""),
                    company=hit.get("company_name", ""),
                    location=location or None,
                    description=html_to_text(hit.get("description")) or None,
                    posted_at=_posted_at(hit.get("created_at")),
                )
            )
            if len(postings) >= limit:
                break
        log.debug("Arbeitnow returned %d jobs", len(postings))
        return postings
