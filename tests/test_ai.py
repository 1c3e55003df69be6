from __future__ import annotations

from types import SimpleNamespace

import pytest

from autoapply.ai import NEUTRAL_SCORE, AIClient, normalize_score, parse_json
from autoapply.cover_letter import fallback_letter, generate_cover_letter, save_cover_letter
from autoapply.models import JobPosting, Platform


class FakeCompletions:
    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = 0

    async def create(self, **kwargs):
        self.calls += 1
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=reply))])


def _client(settings, *replies) -> tuple[AIClient, FakeCompletions]:
    completions = FakeCompletions(replies)
    fake = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return AIClient(settings, client=fake), completions


def test_parse_json_tolerates_fences_and_chatter():
    assert parse_json('```json\n{"match_score": 80}\n```') == {"match_score": 80}
    assert parse_json('Sure! {"a": 1} hope that helps') == {"a": 1}
    with pytest.raises(ValueError):
        parse_json("no json here")


def test_normalize_score():
    assert normalize_score(80) == 0.8
    assert normalize_score("150") == 1.0
    assert normalize_score(-5) == 0.0
    assert normalize_score(None) == NEUTRAL_SCORE
    assert normalize_score(float("nan")) == NEUTRAL_SCORE


async def test_score_job_match(settings):
    ai, _ = _client(settings, '{"match_score": 72, "is_match": true, "reason": "stack fits"}')
    score, reasoning = await ai.score_job_match("React and Node", ["React"], "2 years")
    assert score == 0.72
    assert reasoning.startswith("stack fits")


async def test_unparseable_score_is_neutral(settings):
    ai, _ = _client(settings, "I think it is a good fit")
    score, _ = await ai.score_job_match("React", ["React"], "")
    assert score == NEUTRAL_SCORE


async def test_disabled_client_is_neutral(settings):
    ai = AIClient(settings)
    assert not ai.enabled
    assert await ai.score_job_match("React", [], "") == (NEUTRAL_SCORE, "AI not configured")
    assert await ai.answer_question("Why?", None) == ""


async def test_answer_question_retries_once(settings, profile, monkeypatch):
    monkeypatch.setattr("autoapply.retry._delay", lambda *a: 0)
    ai, completions = _client(settings, RuntimeError("rate limited"), "Yes")
    assert await ai.answer_question("Are you authorized?", profile) == "Yes"
    assert completions.calls == 2


async def test_answer_question_gives_up_quietly(settings, profile, monkeypatch):
    monkeypatch.setattr("autoapply.retry._delay", lambda *a: 0)
    ai, _ = _client(settings, RuntimeError("down"), RuntimeError("down"))
    assert await ai.answer_question("Are you authorized?", profile) == ""


POSTING = JobPosting(id="j1", external_id="x", user_id="u1", platform=Platform.REMOTIVE,
                     job_url="https://x", title="MERN Developer", company="Acme/Inc")


async def test_cover_letter_falls_back_to_template(settings, profile):
    ai, _ = _client(settings, "")
    letter = await generate_cover_letter(ai, profile, POSTING)
    assert letter == fallback_letter(profile, POSTING)
    assert "MERN Developer position at Acme/Inc" in letter
    assert letter.endswith("Jane Doe")


async def test_cover_letter_from_model(settings, profile, fake_ai):
    assert await generate_cover_letter(fake_ai, profile, POSTING) == "AI cover letter"
    assert await generate_cover_letter(fake_ai, profile, POSTING, enabled=False) != "AI cover letter"


def test_save_cover_letter(tmp_path):
    path = save_cover_letter(tmp_path, POSTING, "Dear team")
    assert path.name == "cover_j1_Acme_Inc.txt"
    assert path.read_text(encoding="utf-8") == "Dear team"
