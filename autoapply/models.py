"""Data models for postings, applications, queue messages and events."""
from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class Platform(str, Enum):
    LINKEDIN = "LINKEDIN"
    INDEED = "INDEED"
    GLASSDOOR = "GLASSDOOR"
    REMOTIVE = "REMOTIVE"
    ARBEITNOW = "ARBEITNOW"
    OTHER = "OTHER"

    @classmethod
    def parse(cls, value: str | None) -> "Platform":
        try:
            return cls((value or "").upper())
        except ValueError:
            return cls.OTHER


class ApplicationState(str, Enum):
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    APPLIED = "APPLIED"
    FAILED = "FAILED"
    MANUAL_INTERVENTION = "MANUAL_INTERVENTION"

    @property
    def terminal(self) -> bool:
        return self in (ApplicationState.APPLIED, ApplicationState.FAILED)


class Outcome(str, Enum):
    APPLIED = "APPLIED"
    MANUAL_INTERVENTION = "MANUAL_INTERVENTION"
    FAILED = "FAILED"

    @property
    def state(self) -> ApplicationState:
        return ApplicationState(self.value)


class ErrorKind(str, Enum):
    TRANSIENT = "TRANSIENT"
    LOGIN_TIMEOUT = "LOGIN_TIMEOUT"
    FATAL = "FATAL"
    INVALID = "INVALID"

    @property
    def retryable(self) -> bool:
        return self is not ErrorKind.INVALID


class EventType(str, Enum):
    JOB_STARTED = "JOB_STARTED"
    STEP_COMPLETED = "STEP_COMPLETED"
    ERROR_OCCURRED = "ERROR_OCCURRED"
    JOB_FINISHED = "JOB_FINISHED"


@dataclass(frozen=True)
class JobPosting:
    id: str
    external_id: str
    user_id: str
    platform: Platform
    job_url: str
    title: str = ""
    company: str = ""
    location: str | None = None
    description: str | None = None
    apply_url: str | None = None
    posted_at: str | None = None

    def with_description(self, description: str) -> "JobPosting":
        return replace(self, description=description)


@dataclass(frozen=True)
class MatchResult:
    score: int
    is_match: bool
    reasons: tuple[str, ...] = ()
    missing_skills: tuple[str, ...] = ()
    confidence: str = "low"

    @property
    def primary_reason(self) -> str:
        return self.reasons[0] if self.reasons else "No reason recorded"


@dataclass(frozen=True)
class SearchPreference:
    roles: tuple[str, ...] = ()
    keywords: tuple[str, ...] = ()
    locations: tuple[str, ...] = ()
    remote: bool = True
    auto_apply: bool = True
    score_threshold: float = 0.65


@dataclass(frozen=True)
class CandidateProfile:
    user_id: str
    name: str = "Applicant"
    email: str | None = None
    phone: str | None = None
    location: str | None = None
    linkedin: str | None = None
    github: str | None = None
    website: str | None = None
    skills: tuple[str, ...] = ()
    experience_summary: str = ""
    resume_path: str | None = None
    resume_text: str | None = None


@dataclass(frozen=True)
class ApplicationRecord:
    id: str
    user_id: str
    job_id: str
    status: ApplicationState
    attempts: int = 0
    error: str = ""
    updated_at: str = ""


@dataclass(frozen=True)
class ApplicationJob:
    """Queue message. Only ``attempts`` changes, and only through ``requeued``."""

    application_id: str
    job_id: str
    user_id: str
    job_url: str
    platform: Platform
    attempts: int = 0

    def requeued(self) -> "ApplicationJob":
        return replace(self, attempts=self.attempts + 1)

    def to_json(self) -> str:
        return json.dumps({
            "applicationId": self.application_id,
            "jobId": self.job_id,
            "userId": self.user_id,
            "jobUrl": self.job_url,
            "platform": self.platform.value,
            "attempts": self.attempts,
        })

    @classmethod
    def from_json(cls, raw: str) -> "ApplicationJob":
        data = json.loads(raw)
        return cls(
            application_id=str(data["applicationId"]),
            job_id=str(data["jobId"]),
            user_id=str(data["userId"]),
            job_url=str(data["jobUrl"]),
            platform=Platform.parse(data.get("platform")),
            attempts=int(data.get("attempts") or 0),
        )


@dataclass(frozen=True)
class JobResult:
    """Explicit result of one delivery: an outcome, or an error kind to drive retry."""

    outcome: Outcome | None = None
    error: ErrorKind | None = None
    message: str = ""

    @classmethod
    def success(cls, outcome: Outcome, message: str = "") -> "JobResult":
        return cls(outcome=outcome, message=message)

    @classmethod
    def failure(cls, error: ErrorKind, message: str) -> "JobResult":
        return cls(error=error, message=message)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def retryable(self) -> bool:
        return self.error is not None and self.error.retryable


@dataclass
class LifecycleEvent:
    job_id: str
    type: EventType
    message: str
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    )
    meta: dict[str, Any] | None = None

    def to_json(self) -> str:
        payload: dict[str, Any] = {
            "jobId": self.job_id,
            "type": self.type.value,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        if self.meta:
            payload["meta"] = self.meta
        return json.dumps(payload)


@dataclass(frozen=True)
class ControlOption:
    value: str
    text: str
    handle: str = ""


@dataclass(frozen=True)
class ControlDescriptor:
    """Normalized view of one form control; ``handle`` is opaque to the resolver."""

    kind: str
    label: str
    handle: str
    name: str = ""
    options: tuple[ControlOption, ...] = ()
    required: bool = False
    value: str = ""
