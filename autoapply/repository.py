"""Persistence boundary: profiles, postings, match results, applications.

``Repository`` is what the engine depends on. ``FileRepository`` keeps
per-user YAML profiles under ``config/profiles/`` and CSV tables under
``data/`` guarded by advisory file locks.
"""
from __future__ import annotations

import csv
import fcntl
import uuid
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from autoapply.config import DATA_DIR, PROFILES_DIR, load_yaml
from autoapply.log import get_logger
from autoapply.models import (
    ApplicationRecord,
    ApplicationState,
    CandidateProfile,
    JobPosting,
    MatchResult,
    Platform,
    SearchPreference,
)

log = get_logger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class Repository(ABC):
    @abstractmethod
    def get_profile(self, user_id: str) -> CandidateProfile | None: ...

    @abstractmethod
    def get_preference(self, user_id: str) -> SearchPreference | None: ...

    @abstractmethod
    def list_user_ids(self) -> list[str]: ...

    @abstractmethod
    def save_posting(self, posting: JobPosting) -> JobPosting | None:
        """Store a new posting; None when the user already has this external id."""

    @abstractmethod
    def get_posting(self, job_id: str) -> JobPosting | None: ...

    @abstractmethod
    def update_description(self, job_id: str, description: str) -> bool: ...

    @abstractmethod
    def save_match(self, job_id: str, match: MatchResult, ai_score: float | None = None) -> None: ...

    @abstractmethod
    def create_application(self, user_id: str, job_id: str) -> ApplicationRecord: ...

    @abstractmethod
    def get_application(self, application_id: str) -> ApplicationRecord | None: ...

    @abstractmethod
    def set_status(self, application_id: str, status: ApplicationState, error: str = "") -> bool:
        """Move an application to ``status``; False if it is unknown or already terminal."""

    @abstractmethod
    def record_attempts(self, application_id: str, attempts: int) -> None: ...

    @abstractmethod
    def get_last_run(self, user_id: str) -> datetime | None: ...

    @abstractmethod
    def set_last_run(self, user_id: str, when: datetime) -> None: ...


# ---------------------------------------------------------------------------
# CSV tables
# ---------------------------------------------------------------------------

def _lock(f, exclusive: bool = True) -> None:
    """Advisory file lock (Unix fcntl)."""
    try:
        op = fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH
        fcntl.flock(f.fileno(), op)
    except (OSError, AttributeError):
        pass


def _unlock(f) -> None:
    try:
        fcntl.flock(f.fileno(), fcntl.LOCK_UN)
    except (OSError, AttributeError):
        pass


class CsvTable:
    def __init__(self, path: Path, headers: list[str]) -> None:
        self.path = path
        self.headers = headers

    def ensure(self) -> None:
        if self.path.exists():
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", newline="", encoding="utf-8") as f:
            _lock(f)
            csv.writer(f).writerow(self.headers)
            _unlock(f)
        log.info("Created table -> %s", self.path.name)

    def rows(self) -> list[dict[str, str]]:
        self.ensure()
        with open(self.path, "r", newline="", encoding="utf-8") as f:
            _lock(f, exclusive=False)
            rows = list(csv.DictReader(f))
            _unlock(f)
        return rows

    def append(self, row: dict[str, str]) -> None:
        self.ensure()
        with open(self.path, "a", newline="", encoding="utf-8") as f:
            _lock(f)
            csv.DictWriter(f, fieldnames=self.headers).writerow(row)
            _unlock(f)

    def update(self, mutate: Callable[[list[dict[str, str]]], bool]) -> bool:
        """Read, mutate and rewrite under one exclusive lock; ``mutate`` returns whether to write."""
        self.ensure()
        with open(self.path, "r+", newline="", encoding="utf-8") as f:
            _lock(f)
            try:
                rows = list(csv.DictReader(f))
                changed = mutate(rows)
                if changed:
                    f.seek(0)
                    f.truncate()
                    w = csv.DictWriter(f, fieldnames=self.headers)
                    w.writeheader()
                    w.writerows(rows)
            finally:
                _unlock(f)
        return changed


POSTING_HEADERS = [
    "id", "external_id", "user_id", "platform", "job_url", "apply_url",
    "title", "company", "location", "description", "posted_at", "created_at",
]
MATCH_HEADERS = [
    "job_id", "score", "is_match", "confidence", "reasons", "missing_skills", "ai_score", "created_at",
]
APPLICATION_HEADERS = ["id", "user_id", "job_id", "status", "attempts", "error", "updated_at"]
RUN_HEADERS = ["user_id", "last_run"]


def _opt(value: str | None) -> str | None:
    return value or None


def _posting_from_row(r: dict[str, str]) -> JobPosting:
    return JobPosting(
        id=r["id"],
        external_id=r["external_id"],
        user_id=r["user_id"],
        platform=Platform.parse(r.get("platform")),
        job_url=r["job_url"],
        title=r.get("title", ""),
        company=r.get("company", ""),
        location=_opt(r.get("location")),
        description=_opt(r.get("description")),
        apply_url=_opt(r.get("apply_url")),
        posted_at=_opt(r.get("posted_at")),
    )


def _application_from_row(r: dict[str, str]) -> ApplicationRecord:
    return ApplicationRecord(
        id=r["id"],
        user_id=r["user_id"],
        job_id=r["job_id"],
        status=ApplicationState(r["status"]),
        attempts=int(r.get("attempts") or 0),
        error=r.get("error", ""),
        updated_at=r.get("updated_at", ""),
    )


class FileRepository(Repository):
    def __init__(self, data_dir: Path = DATA_DIR, profiles_dir: Path = PROFILES_DIR) -> None:
        self.data_dir = data_dir
        self.profiles_dir = profiles_dir
        self.postings = CsvTable(data_dir / "postings.csv", POSTING_HEADERS)
        self.matches = CsvTable(data_dir / "matches.csv", MATCH_HEADERS)
        self.applications = CsvTable(data_dir / "applications.csv", APPLICATION_HEADERS)
        self.runs = CsvTable(data_dir / "discovery_runs.csv", RUN_HEADERS)

    # -- profiles ---------------------------------------------------------

    def _profile_data(self, user_id: str) -> dict | None:
        path = self.profiles_dir / f"{user_id}.yaml"
        if not path.exists():
            log.warning("No profile for user %s (%s)", user_id, path)
            return None
        return load_yaml(path)

    def get_profile(self, user_id: str) -> CandidateProfile | None:
        data = self._profile_data(user_id)
        if data is None:
            return None
        resume_path = data.get("resume_path")
        if resume_path and not Path(resume_path).is_absolute():
            resume_path = str((self.profiles_dir / resume_path).resolve())
        return CandidateProfile(
            user_id=user_id,
            name=data.get("name") or "Applicant",
            email=data.get("email"),
            phone=str(data["phone"]) if data.get("phone") else None,
            location=data.get("location"),
            linkedin=data.get("linkedin"),
            github=data.get("github"),
            website=data.get("website"),
            skills=tuple(data.get("skills") or ()),
            experience_summary=(data.get("experience_summary") or "").strip(),
            resume_path=resume_path,
            resume_text=data.get("resume_text"),
        )

    def get_preference(self, user_id: str) -> SearchPreference | None:
        data = self._profile_data(user_id)
        if data is None:
            return None
        prefs = data.get("preferences") or {}
        return SearchPreference(
            roles=tuple(prefs.get("roles") or ()),
            keywords=tuple(prefs.get("keywords") or ()),
            locations=tuple(prefs.get("locations") or ()),
            remote=bool(prefs.get("remote", True)),
            auto_apply=bool(prefs.get("auto_apply", True)),
            score_threshold=float(prefs.get("score_threshold", 0.65)),
        )

    def list_user_ids(self) -> list[str]:
        if not self.profiles_dir.exists():
            return []
        return sorted(p.stem for p in self.profiles_dir.glob("*.yaml"))

    # -- postings ---------------------------------------------------------

    def save_posting(self, posting: JobPosting) -> JobPosting | None:
        stored = posting if posting.id else replace(posting, id=uuid.uuid4().hex)
        row = {
            "id": stored.id,
            "external_id": stored.external_id,
            "user_id": stored.user_id,
            "platform": stored.platform.value,
            "job_url": stored.job_url,
            "apply_url": stored.apply_url or "",
            "title": stored.title,
            "company": stored.company,
            "location": stored.location or "",
            "description": stored.description or "",
            "posted_at": stored.posted_at or "",
            "created_at": _now(),
        }

        def insert(rows: list[dict[str, str]]) -> bool:
            for r in rows:
                if r["user_id"] == stored.user_id and r["external_id"] == stored.external_id:
                    return False
            rows.append(row)
            return True

        if not self.postings.update(insert):
            log.debug("Duplicate posting %s for %s", stored.external_id, stored.user_id)
            return None
        return stored

    def get_posting(self, job_id: str) -> JobPosting | None:
        for r in self.postings.rows():
            if r["id"] == job_id:
                return _posting_from_row(r)
        return None

    def update_description(self, job_id: str, description: str) -> bool:
        def mutate(rows: list[dict[str, str]]) -> bool:
            for r in rows:
                if r["id"] == job_id:
                    r["description"] = description
                    return True
            return False

        return self.postings.update(mutate)

    def save_match(self, job_id: str, match: MatchResult, ai_score: float | None = None) -> None:
        self.matches.append({
            "job_id": job_id,
            "score": str(match.score),
            "is_match": "1" if match.is_match else "0",
            "confidence": match.confidence,
            "reasons": " | ".join(match.reasons),
            "missing_skills": ", ".join(match.missing_skills),
            "ai_score": f"{ai_score:.2f}" if ai_score is not None else "",
            "created_at": _now(),
        })

    # -- applications -----------------------------------------------------

    def create_application(self, user_id: str, job_id: str) -> ApplicationRecord:
        record = ApplicationRecord(
            id=uuid.uuid4().hex,
            user_id=user_id,
            job_id=job_id,
            status=ApplicationState.QUEUED,
            updated_at=_now(),
        )
        self.applications.append({
            "id": record.id,
            "user_id": user_id,
            "job_id": job_id,
            "status": record.status.value,
            "attempts": "0",
            "error": "",
            "updated_at": record.updated_at,
        })
        return record

    def get_application(self, application_id: str) -> ApplicationRecord | None:
        for r in self.applications.rows():
            if r["id"] == application_id:
                return _application_from_row(r)
        return None

    def set_status(self, application_id: str, status: ApplicationState, error: str = "") -> bool:
        def mutate(rows: list[dict[str, str]]) -> bool:
            for r in rows:
                if r["id"] != application_id:
                    continue
                current = ApplicationState(r["status"])
                if current.terminal:
                    log.warning("Application %s is already %s, not moving to %s",
                                application_id, current.value, status.value)
                    return False
                r["status"] = status.value
                r["error"] = error[:500]
                r["updated_at"] = _now()
                return True
            return False

        changed = self.applications.update(mutate)
        if changed:
            log.debug("Application %s -> %s", application_id, status.value)
        return changed

    def record_attempts(self, application_id: str, attempts: int) -> None:
        def mutate(rows: list[dict[str, str]]) -> bool:
            for r in rows:
                if r["id"] == application_id:
                    r["attempts"] = str(attempts)
                    return True
            return False

        self.applications.update(mutate)

    # -- discovery bookkeeping ----------------------------------------------

    def get_last_run(self, user_id: str) -> datetime | None:
        for r in self.runs.rows():
            if r["user_id"] == user_id and r.get("last_run"):
                return datetime.fromisoformat(r["last_run"])
        return None

    def set_last_run(self, user_id: str, when: datetime) -> None:
        stamp = when.isoformat(timespec="seconds")

        def mutate(rows: list[dict[str, str]]) -> bool:
            for r in rows:
                if r["user_id"] == user_id:
                    r["last_run"] = stamp
                    return True
            rows.append({"user_id": user_id, "last_run": stamp})
            return True

        self.runs.update(mutate)
