"""Discovery pipeline: fetch postings, score them, queue the eligible ones."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from autoapply.classifier import MatchRules, classify
from autoapply.config import Settings
from autoapply.errors import QueueConnectionError
from autoapply.log import get_logger
from autoapply.models import (
    ApplicationJob,
    ApplicationRecord,
    CandidateProfile,
    EventType,
    JobPosting,
    MatchResult,
    SearchPreference,
)
from autoapply.sources import JobSource, get_sources

if TYPE_CHECKING:
    from autoapply.ai import AIClient
    from autoapply.events import EventPublisher
    from autoapply.queue import Dispatcher
    from autoapply.repository import Repository

log = get_logger(__name__)


@dataclass
class ScoringBudget:
    """How many AI scoring calls one discovery run may make."""

    limit: int
    used: int = 0

    def take(self) -> bool:
        if self.used >= self.limit:
            return False
        self.used += 1
        return True


@dataclass(frozen=True)
class Evaluation:
    match: MatchResult
    ai_score: float | None
    score: float
    eligible: bool
    reason: str = ""


@dataclass
class DiscoveryReport:
    user_id: str
    discovered: int = 0
    new: int = 0
    duplicates: int = 0
    queued: int = 0


class DiscoveryPipeline:
    def __init__(
        self,
        settings: Settings,
        repository: "Repository",
        dispatcher: "Dispatcher",
        ai: "AIClient | None" = None,
        publisher: "EventPublisher | None" = None,
        sources: list[JobSource] | None = None,
        rules: MatchRules | None = None,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.dispatcher = dispatcher
        self.ai = ai
        self.publisher = publisher
        self.sources = sources if sources is not None else get_sources()
        self.rules = rules

    async def evaluate(
        self,
        posting: JobPosting,
        preference: SearchPreference,
        profile: CandidateProfile,
        budget: ScoringBudget,
    ) -> Evaluation:
        match = classify(posting.title, posting.description, posting.location, self.rules)
        gate_passed = match.is_match or self.settings.force_apply
        if not gate_passed:
            log.info("SKIP %r @ %s: %s (score=%d)",
                     posting.title, posting.company or "?", match.primary_reason, match.score)
            return Evaluation(match, None, match.score / 100, False, match.primary_reason)

        ai_score = None
        if (
            self.settings.ai_scoring
            and self.ai is not None
            and self.ai.enabled
            and posting.description
            and budget.take()
        ):
            ai_score, reasoning = await self.ai.score_job_match(
                posting.description, profile.skills, profile.experience_summary, preference.roles,
            )
            log.info("AI score %.2f for %r: %s", ai_score, posting.title, reasoning[:150])

        score = ai_score if ai_score is not None else match.score / 100
        if not preference.auto_apply:
            return Evaluation(match, ai_score, score, False, "Auto-apply disabled")
        if score < preference.score_threshold:
            return Evaluation(match, ai_score, score, False,
                              f"Score {score:.2f} below threshold {preference.score_threshold:.2f}")
        log.info("MATCH %r @ %s: score=%.2f", posting.title, posting.company or "?", score)
        return Evaluation(match, ai_score, score, True, match.primary_reason)

    async def collect(self, preference: SearchPreference, limit: int = 50) -> list[JobPosting]:
        postings: list[JobPosting] = []
        for source in self.sources:
            try:
                batch = await asyncio.to_thread(source.search, preference, limit)
            except Exception as exc:
                log.warning("Source %s failed: %s", source.name, str(exc)[:150])
                continue
            log.info("Source %s returned %d postings", source.name, len(batch))
            postings.extend(batch)
        return postings

    async def enqueue(self, posting: JobPosting) -> ApplicationRecord:
        """Create a QUEUED application for a stored posting and dispatch it."""
        record = self.repository.create_application(posting.user_id, posting.id)
        job = ApplicationJob(
            application_id=record.id,
            job_id=posting.id,
            user_id=posting.user_id,
            job_url=posting.apply_url or posting.job_url,
            platform=posting.platform,
        )
        await self.dispatcher.enqueue(job)
        if self.publisher:
            await self.publisher.publish(
                record.id, EventType.JOB_STARTED,
                f"Discovered job queued: {posting.title or posting.job_url}",
            )
        return record

    def _due(self, user_id: str, now: datetime) -> bool:
        last = self.repository.get_last_run(user_id)
        if last is None:
            return True
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        return (now - last).total_seconds() >= self.settings.discovery_interval_s

    async def run_for_user(self, user_id: str, force: bool = False) -> DiscoveryReport | None:
        """One discovery pass; None when the user ran recently or has no profile."""
        now = datetime.now(timezone.utc)
        if not force and not self._due(user_id, now):
            log.debug("Discovery for %s not due yet", user_id)
            return None

        preference = self.repository.get_preference(user_id)
        profile = self.repository.get_profile(user_id)
        if preference is None or profile is None:
            return None

        postings = await self.collect(preference)
        self.repository.set_last_run(user_id, now)

        report = DiscoveryReport(user_id=user_id, discovered=len(postings))
        budget = ScoringBudget(self.settings.ai_score_limit)
        for posting in postings:
            stored = self.repository.save_posting(replace(posting, user_id=user_id))
            if stored is None:
                report.duplicates += 1
                continue
            report.new += 1
            evaluation = await self.evaluate(stored, preference, profile, budget)
            self.repository.save_match(stored.id, evaluation.match, evaluation.ai_score)
            if evaluation.eligible:
                await self.enqueue(stored)
                report.queued += 1

        log.info("Discovery for %s: %d found, %d new, %d duplicates, %d queued",
                 user_id, report.discovered, report.new, report.duplicates, report.queued)
        return report

    async def discovery_loop(self) -> None:
        """Run discovery for every user, then sleep one interval. Runs until cancelled."""
        while True:
            for user_id in self.repository.list_user_ids():
                try:
                    await self.run_for_user(user_id)
                except QueueConnectionError:
                    raise
                except Exception:
                    log.exception("Discovery failed for %s", user_id)
            await asyncio.sleep(self.settings.discovery_interval_s)
