"""Remotive: free API for remote tech jobs (no API key required).

Docs: https://remotive.com/api/remote-jobs
"""
from __future__ import annotations

import requests

from autoapply.log import get_logger
from autoapply.models import JobPosting, Platform, SearchPreference
from autoapply.retry import retry
from autoapply.sources.base import JobSource, build_query, html_to_text

log = get_logger(__name__)

API_URL = "https://remotive.com/api/remote-jobs"


class RemotiveSource(JobSource):
    name = "remotive"

    @retry(max_attempts=2, base_delay=1.5, retryable=(requests.RequestException, OSError))
    def _fetch(self, search: str, limit: int) -> list[dict]:
        r = requests.get(API_URL, params={"search": search, "limit": limit}, timeout=15)
        r.raise_for_status()
        return r.json().get("jobs", [])

    def search(self, preference: SearchPreference, limit: int = 50) -> list[JobPosting]:
        query = build_query(preference)
        if not query:
            log.debug("Remotive skipped: no roles or keywords")
            return []

        postings: list[JobPosting] = []
        for hit in self._fetch(query, limit):
            url = hit.get("url", "")
            if not url:
                continue
            desc = html_to_text(hit.get("description"))
            tags = hit.get("tags") or []
            if tags:
                desc += " " + " ".join(tags)
            postings.append(
                JobPosting(
                    id="",
                    external_id=f"remotive_{hit.get('id')}",
                    user_id="",
                    platform=Platform.REMOTIVE,
                    job_url=url,
                    apply_url=url,
                    title=hit.get("title", ""),
                    company=hit.get("company_name", ""),
                    # Remotive only lists remote roles; the field holds the hiring region.
                    location=f"Remote - {hit['candidate_required_location']}"
                    if hit.get("candidate_required_location") else "Remote",
                    description=desc or None,
                    posted_at=hit.get("publication_date"),
                )
            )
        log.debug("Remotive search=%r returned %d jobs", query, len(postings))
        return postings[:limit]
