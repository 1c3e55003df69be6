from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from autoapply.discovery import DiscoveryPipeline, ScoringBudget
from autoapply.models import ApplicationJob, JobPosting, Platform, SearchPreference
from autoapply.queue import Dispatcher
from autoapply.sources.base import JobSource

STACK = "We build web apps with React, Node.js, MongoDB and Express. Join our team."


def _posting(external_id: str, title: str, location: str = "Remote",
             description: str | None = STACK) -> JobPosting:
    return JobPosting(
        id="",
        external_id=external_id,
        user_id="",
        platform=Platform.REMOTIVE,
        job_url=f"https://remotive.com/job/{external_id}",
        title=title,
        company="Acme",
        location=location,
        description=description,
    )


class StaticSource(JobSource):
    name = "static"

    def __init__(self, postings: list[JobPosting]) -> None:
        self.postings = postings

    def search(self, preference, limit=50):
        return list(self.postings)


class BrokenSource(JobSource):
    name = "broken"

    def search(self, preference, limit=50):
        raise RuntimeError("API down")


@pytest.fixture
def dispatcher(redis, repo) -> Dispatcher:
    return Dispatcher(redis, repo, stream="apps", group="workers")


def _pipeline(settings, repo, dispatcher, ai=None, sources=(), **overrides) -> DiscoveryPipeline:
    return DiscoveryPipeline(replace(settings, **overrides), repo, dispatcher, ai, None, list(sources))


def test_scoring_budget():
    budget = ScoringBudget(2)
    assert [budget.take() for _ in range(3)] == [True, True, False]


async def test_run_queues_only_matches(settings, repo, dispatcher, redis, fake_ai):
    source = StaticSource([
        _posting("1", "Full Stack Developer"),
        _posting("2", "Java Developer"),
    ])
    pipeline = _pipeline(settings, repo, dispatcher, fake_ai, [BrokenSource(), source])

    report = await pipeline.run_for_user("u1")

    assert (report.discovered, report.new, report.duplicates, report.queued) == (2, 2, 0, 1)
    assert fake_ai.scored == 1
    entries = await redis.xrange("apps")
    assert len(entries) == 1
    job = ApplicationJob.from_json(entries[0][1]["payload"])
    assert job.user_id == "u1"
    assert job.attempts == 0
    assert repo.get_posting(job.job_id).title == "Full Stack Developer"
    assert len(repo.matches.rows()) == 2


async def test_rerun_skips_duplicates_and_respects_interval(settings, repo, dispatcher):
    pipeline = _pipeline(settings, repo, dispatcher, None, [StaticSource([_posting("1", "MERN Developer")])])
    await pipeline.run_for_user("u1")
    assert await pipeline.run_for_user("u1") is None

    report = await pipeline.run_for_user("u1", force=True)
    assert (report.new, report.duplicates, report.queued) == (0, 1, 0)


async def test_due_after_interval(settings, repo, dispatcher):
    pipeline = _pipeline(settings, repo, dispatcher, discovery_interval_s=60)
    now = datetime.now(timezone.utc)
    repo.set_last_run("u1", now - timedelta(seconds=30))
    assert not pipeline._due("u1", now)
    repo.set_last_run("u1", now - timedelta(seconds=61))
    assert pipeline._due("u1", now)


async def test_unknown_user_is_skipped(settings, repo, dispatcher):
    assert await _pipeline(settings, repo, dispatcher).run_for_user("ghost") is None


async def test_rule_score_used_without_ai(settings, repo, dispatcher, profile):
    pipeline = _pipeline(settings, repo, dispatcher)
    evaluation = await pipeline.evaluate(
        _posting("1", "Full Stack Developer"), SearchPreference(), profile, ScoringBudget(10))
    assert evaluation.ai_score is None
    assert evaluation.score == 0.65
    assert evaluation.eligible


async def test_low_ai_score_blocks_queueing(settings, repo, dispatcher, profile, fake_ai):
    fake_ai.score = 0.3
    pipeline = _pipeline(settings, repo, dispatcher, fake_ai)
    evaluation = await pipeline.evaluate(
        _posting("1", "Full Stack Developer"), SearchPreference(), profile, ScoringBudget(10))
    assert evaluation.ai_score == 0.3
    assert not evaluation.eligible
    assert "below threshold" in evaluation.reason


async def test_ai_budget_limits_calls(settings, repo, dispatcher, profile, fake_ai):
    pipeline = _pipeline(settings, repo, dispatcher, fake_ai)
    budget = ScoringBudget(1)
    first = await pipeline.evaluate(_posting("1", "MERN Developer"), SearchPreference(), profile, budget)
    second = await pipeline.evaluate(_posting("2", "MERN Developer"), SearchPreference(), profile, budget)
    assert first.ai_score == 0.9
    assert second.ai_score is None
    assert fake_ai.scored == 1


async def test_rejected_postings_never_reach_ai(settings, repo, dispatcher, profile, fake_ai):
    pipeline = _pipeline(settings, repo, dispatcher, fake_ai)
    evaluation = await pipeline.evaluate(
        _posting("1", "Full Stack Developer", location="London, UK"),
        SearchPreference(), profile, ScoringBudget(10))
    assert not evaluation.eligible
    assert evaluation.score == 0
    assert fake_ai.scored == 0


async def test_force_apply_bypasses_the_gate(settings, repo, dispatcher, profile):
    pipeline = _pipeline(settings, repo, dispatcher, force_apply=True, ai_scoring=False)
    evaluation = await pipeline.evaluate(
        _posting("1", "Office Manager"), SearchPreference(score_threshold=0), profile, ScoringBudget(10))
    assert evaluation.eligible


async def test_auto_apply_off_never_queues(settings, repo, dispatcher, profile):
    pipeline = _pipeline(settings, repo, dispatcher)
    evaluation = await pipeline.evaluate(
        _posting("1", "Full Stack Developer"), SearchPreference(auto_apply=False), profile,
        ScoringBudget(10))
    assert not evaluation.eligible
    assert evaluation.reason == "Auto-apply disabled"
