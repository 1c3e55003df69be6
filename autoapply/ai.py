"""Language-model calls: job relevance scoring, form answers, cover letters.

Any OpenAI-compatible endpoint works (set OPENAI_BASE_URL for Groq and similar).
Every public call degrades to a neutral value instead of raising.
"""
from __future__ import annotations

import json
import re
from typing import Any

from autoapply.config import Settings
from autoapply.log import get_logger
from autoapply.models import CandidateProfile
from autoapply.retry import async_retry

log = get_logger(__name__)

NEUTRAL_SCORE = 0.5

_FENCE_RE = re.compile(r"```(?:json)?\n?|\n?```")


def parse_json(text: str) -> dict[str, Any]:
    """Parse a JSON object out of a model reply, tolerating code fences and chatter."""
    if not text:
        raise ValueError("Empty response")
    cleaned = _FENCE_RE.sub("", text).strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start != -1 and end > start:
            return json.loads(cleaned[start:end + 1])
        raise ValueError("Failed to parse JSON from model reply")


def normalize_score(value: Any) -> float:
    """Model scores are 0-100; clamp into 0-1, neutral when unusable."""
    try:
        score = float(value)
    except (TypeError, ValueError):
        return NEUTRAL_SCORE
    if score != score:  # NaN
        return NEUTRAL_SCORE
    return max(0.0, min(score / 100.0, 1.0))


class AIClient:
    def __init__(self, settings: Settings, client: Any = None) -> None:
        self.settings = settings
        self._client = client

    @property
    def enabled(self) -> bool:
        return self._client is not None or self.settings.ai_enabled

    def _get_client(self) -> Any:
        if self._client is None:
            from openai import AsyncOpenAI

            kwargs: dict[str, Any] = {"api_key": self.settings.openai_api_key}
            if self.settings.openai_base_url:
                kwargs["base_url"] = self.settings.openai_base_url
            self._client = AsyncOpenAI(**kwargs)
        return self._client

    @async_retry(max_attempts=2, base_delay=2.0, retryable=(Exception,))
    async def complete(self, prompt: str, *, temperature: float, max_tokens: int) -> str:
        r = await self._get_client().chat.completions.create(
            model=self.settings.openai_model,
            messages=[{"role": "user", "content": prompt}],
            temperature=temperature,
            max_tokens=max_tokens,
        )
        return (r.choices[0].message.content or "").strip()

    async def score_job_match(
        self,
        description: str,
        skills: list[str] | tuple[str, ...],
        experience: str,
        roles: list[str] | tuple[str, ...] = (),
    ) -> tuple[float, str]:
        """Return (score 0-1, reasoning). Failures give the neutral 0.5."""
        if not self.enabled:
            return NEUTRAL_SCORE, "AI not configured"

        prompt = f"""You are a strict job selection engine.

Decide whether this job suits the candidate below. Only fully remote roles that
accept international candidates can match. Reject onsite or hybrid roles, roles
built on an unrelated technology stack, and senior roles requiring 6+ years.

TARGET ROLES: {', '.join(roles) or 'as implied by the skills'}

JOB DESCRIPTION:
{description[:2000]}

CANDIDATE SKILLS: {', '.join(skills)}
CANDIDATE EXPERIENCE: {experience[:500]}

Return ONLY this JSON:
{{
  "match_score": <number 0-100>,
  "is_match": <true/false>,
  "confidence": "low | medium | high",
  "reason": "<short explanation>"
}}"""

        try:
            text = await self.complete(prompt, temperature=0.2, max_tokens=400)
            data = parse_json(text)
        except Exception as exc:
            log.warning("AI scoring failed (%s), using neutral score", exc)
            return NEUTRAL_SCORE, "AI scoring failed"

        score = normalize_score(data.get("match_score"))
        reasoning = (
            f"{data.get('reason') or 'AI scoring'} "
            f"[confidence={data.get('confidence', 'unknown')}, is_match={data.get('is_match', '?')}]"
        )
        return score, reasoning

    async def answer_question(self, question: str, profile: CandidateProfile) -> str:
        """Raw answer text for one form question; empty string when unavailable."""
        if not self.enabled:
            return ""

        prompt = f"""You are filling in a job application form. Answer the field below.

RULES:
1. Return ONLY the answer text, plain text, single line, under 120 words.
2. Be professional and do not exaggerate experience.
3. Years of experience: if the skill is listed in the candidate's skills answer at least 1. Never answer 0 for a known skill.
4. Numeric-only fields: return only the number.
5. Yes/no questions: answer "Yes" or "No".
6. No markdown, no letter format, no greetings or signatures.

FORM FIELD QUESTION: {question}

APPLICANT:
Name: {profile.name}
Skills: {', '.join(profile.skills[:10])}
Experience: {profile.experience_summary[:400]}

Answer:"""

        try:
            return await self.complete(prompt, temperature=0.3, max_tokens=100)
        except Exception as exc:
            log.warning("Question answering failed for %r: %s", question[:60], exc)
            return ""

    async def generate_cover_letter(
        self, profile: CandidateProfile, title: str, company: str, description: str,
    ) -> str:
        if not self.enabled:
            return ""

        prompt = f"""Write a short, professional cover letter (under 200 words) for this role.
Candidate name: {profile.name}
Candidate experience: {profile.experience_summary[:800]}
Key skills: {', '.join(profile.skills[:8])}
Job title: {title}
Company: {company}
Job description (excerpt): {description[:1500]}

Mention 2-3 relevant skills. Use "I" and "my" for the candidate. End the letter with
"Best regards," followed by the candidate name: {profile.name}. Do not use placeholders."""

        try:
            return await self.complete(prompt, temperature=0.5, max_tokens=600)
        except Exception as exc:
            log.warning("Cover letter generation failed: %s", exc)
            return ""
