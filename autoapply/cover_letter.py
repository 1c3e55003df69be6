"""Tailored cover letters from the language model, with a template fallback."""
from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from autoapply.log import get_logger
from autoapply.models import CandidateProfile, JobPosting

if TYPE_CHECKING:
    from autoapply.ai import AIClient

log = get_logger(__name__)


async def generate_cover_letter(
    ai: "AIClient | None",
    profile: CandidateProfile,
    posting: JobPosting,
    enabled: bool = True,
) -> str:
    if not enabled or ai is None or not ai.enabled:
        log.debug("AI cover letters off, using template")
        return fallback_letter(profile, posting)

    letter = await ai.generate_cover_letter(
        profile, posting.title, posting.company, posting.description or "",
    )
    if not letter:
        log.warning("Empty cover letter for %s @ %s, using template", posting.title, posting.company)
        return fallback_letter(profile, posting)
    log.info("Cover letter generated for %s @ %s", posting.title, posting.company)
    return letter


def fallback_letter(profile: CandidateProfile, posting: JobPosting) -> str:
    title = posting.title or "open"
    company = posting.company or "your company"
    skills = ", ".join(profile.skills[:5])
    summary = profile.experience_summary.split("\n")[0] if profile.experience_summary else ""
    return f"""Dear Hiring Team,

I am writing to apply for the {title} position at {company}.

{summary}

My experience aligns with your requirements, including: {skills}. I am particularly interested in contributing to your team's success.

I would welcome the opportunity to discuss how my background can contribute to your team.

Best regards,
{profile.name}"""


def save_cover_letter(data_dir: Path, posting: JobPosting, content: str) -> Path:
    out_dir = data_dir / "cover_letters"
    out_dir.mkdir(parents=True, exist_ok=True)
    safe = "".join(c if c.isalnum() or c in " -_" else "_" for c in posting.company)[:40]
    path = out_dir / f"cover_{posting.id}_{safe}.txt"
    path.write_text(content, encoding="utf-8")
    return path
