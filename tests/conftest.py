from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import fakeredis.aioredis
import pytest
import yaml

from autoapply.config import Settings
from autoapply.errors import TransientAutomationError
from autoapply.models import CandidateProfile, ControlDescriptor, ControlOption, EventType
from autoapply.platforms import PlatformConfig
from autoapply.repository import FileRepository

PROFILE = {
    "name": "Jane Doe",
    "email": "jane@example.com",
    "phone": "+1 555 0100",
    "location": "Remote",
    "linkedin": "https://www.linkedin.com/in/janedoe",
    "skills": ["React", "Node.js", "MongoDB", "Express"],
    "experience_summary": "Full stack developer with two years of MERN experience.",
    "preferences": {
        "roles": ["Full Stack Developer"],
        "keywords": ["react", "node"],
        "remote": True,
        "auto_apply": True,
        "score_threshold": 0.65,
    },
}


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        data_dir=tmp_path / "data",
        profiles_dir=tmp_path / "profiles",
        sessions_dir=tmp_path / "sessions",
        settle_delay_s=0,
        manual_hold_s=0,
        login_wait_s=0.05,
        step_timeout_s=2,
        openai_api_key="",
    )


def write_profile(profiles_dir: Path, user_id: str, **overrides: Any) -> Path:
    profiles_dir.mkdir(parents=True, exist_ok=True)
    path = profiles_dir / f"{user_id}.yaml"
    path.write_text(yaml.safe_dump({**PROFILE, **overrides}), encoding="utf-8")
    return path


@pytest.fixture
def repo(settings: Settings) -> FileRepository:
    write_profile(settings.profiles_dir, "u1")
    return FileRepository(settings.data_dir, settings.profiles_dir)


@pytest.fixture
def profile() -> CandidateProfile:
    return CandidateProfile(
        user_id="u1",
        name="Jane Doe",
        email="jane@example.com",
        phone="+1 555 0100",
        location="Remote",
        skills=("React", "Node.js"),
        experience_summary="Full stack developer with two years of MERN experience.",
    )


@pytest.fixture
async def redis():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


class FakeAI:
    """Stands in for AIClient: canned answers keyed by a substring of the question."""

    def __init__(self, answers: dict[str, str] | None = None, score: float = 0.9,
                 letter: str = "AI cover letter") -> None:
        self.answers = answers or {}
        self.score = score
        self.letter = letter
        self.questions: list[str] = []
        self.scored = 0
        self.enabled = True

    async def answer_question(self, question: str, profile: CandidateProfile) -> str:
        self.questions.append(question)
        for key, answer in self.answers.items():
            if key.lower() in question.lower():
                return answer
        return ""

    async def score_job_match(self, description, skills, experience, roles):
        self.scored += 1
        return self.score, "fits"

    async def generate_cover_letter(self, profile, title, company, description) -> str:
        return self.letter


class RecordingPublisher:
    def __init__(self) -> None:
        self.events: list[tuple[str, EventType, str]] = []

    async def publish(self, job_id, type, message, meta=None) -> bool:
        self.events.append((job_id, type, message))
        return True


@pytest.fixture
def fake_ai() -> FakeAI:
    return FakeAI()


@dataclass
class FakeFormPage:
    """Scripted page: visibility, hrefs and texts are plain lookups.

    ``on_click`` maps a selector to a callback run after the click, so a test
    can move the page to its next state.
    """

    url: str = "https://www.linkedin.com/jobs/view/123/"
    body: str = ""
    visible: set[str] = field(default_factory=set)
    hrefs: dict[str, str] = field(default_factory=dict)
    texts: dict[str, str] = field(default_factory=dict)
    counts: dict[str, int] = field(default_factory=dict)
    controls: list[ControlDescriptor] = field(default_factory=list)
    blocking: bool = False
    goto_failures: int = 0
    describe_delay: float = 0
    on_click: dict[str, Callable[["FakeFormPage"], None]] = field(default_factory=dict)
    on_goto: Callable[["FakeFormPage", str], None] | None = None

    clicks: list[str] = field(default_factory=list)
    gotos: list[tuple[str, str]] = field(default_factory=list)
    filled: dict[str, str] = field(default_factory=dict)
    chosen: list[tuple[str, str]] = field(default_factory=list)
    uploads: list[tuple[str, str]] = field(default_factory=list)
    describe_calls: int = 0
    closed: bool = False

    async def goto(self, url: str, *, wait_until: str = "domcontentloaded",
                   timeout_ms: float = 60000) -> None:
        self.gotos.append((url, wait_until))
        if self.goto_failures:
            self.goto_failures -= 1
            raise TransientAutomationError(f"Navigation to {url} failed")
        self.url = url
        if self.on_goto:
            self.on_goto(self, url)

    async def is_visible(self, selector: str, *, wait_ms: float = 0) -> bool:
        return selector in self.visible

    async def count(self, selector: str) -> int:
        return self.counts.get(selector, 0)

    async def attribute(self, selector: str, name: str) -> str:
        return self.hrefs.get(selector, "") if name == "href" else ""

    async def text_of(self, selector: str) -> str:
        return self.texts.get(selector, "")

    async def click(self, selector: str) -> None:
        self.clicks.append(selector)
        hook = self.on_click.get(selector)
        if hook:
            hook(self)

    async def body_text(self) -> str:
        return self.body

    async def describe_controls(self) -> list[ControlDescriptor]:
        self.describe_calls += 1
        if self.describe_delay:
            await asyncio.sleep(self.describe_delay)
        return list(self.controls)

    async def fill_control(self, handle: str, value: str) -> None:
        self.filled[handle] = value

    async def choose_option(self, control: ControlDescriptor, option: ControlOption) -> None:
        self.chosen.append((control.label, option.value))

    async def upload(self, handle: str, path: str) -> None:
        self.uploads.append((handle, path))

    async def has_blocking_errors(self) -> bool:
        return self.blocking

    async def pause(self, seconds: float) -> None:
        await asyncio.sleep(0)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def page() -> FakeFormPage:
    return FakeFormPage()


@pytest.fixture
def platform() -> PlatformConfig:
    return PlatformConfig(
        name="TEST",
        entry=("#easy-apply", "#apply"),
        submit=("#submit",),
        review=("#review",),
        next=("#next",),
        closed_markers=("No longer accepting applications",),
        applied_markers=("Application submitted",),
        entry_reject_href=("similar-jobs",),
        entry_follow_href=("openSDUIApplyFlow",),
        submit_reject_text=("continue",),
        description=("#description",),
        page_title=("h1",),
        valid_url_fragments=("/jobs/",),
    )
