"""Load process settings from the environment and YAML tables from config/."""
from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from autoapply.log import get_logger

log = get_logger(__name__)

ROOT_DIR: Path = Path(__file__).resolve().parent.parent
CONFIG_DIR: Path = ROOT_DIR / "config"
PROFILES_DIR: Path = CONFIG_DIR / "profiles"
MATCH_RULES_PATH: Path = CONFIG_DIR / "match_rules.yaml"
PLATFORMS_PATH: Path = CONFIG_DIR / "platforms.yaml"
DATA_DIR: Path = ROOT_DIR / "data"
ARTIFACTS_DIR: Path = ROOT_DIR / "artifacts"
SESSIONS_DIR: Path = ARTIFACTS_DIR / "sessions"

# Fixed by the queue contract, not configurable.
MAX_ATTEMPTS = 3

load_dotenv(ROOT_DIR / ".env")


def get_env(key: str, default: str = "") -> str:
    return os.environ.get(key, default).strip()


def get_bool(key: str, default: bool) -> bool:
    raw = get_env(key)
    if not raw:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


def get_number(key: str, default: float) -> float:
    raw = get_env(key)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        log.warning("Ignoring non-numeric %s=%r, using %s", key, raw, default)
        return default


def load_yaml(path: Path) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _can_run_headed() -> bool:
    return sys.platform in ("darwin", "win32") or bool(os.environ.get("DISPLAY"))


@dataclass(frozen=True)
class Settings:
    redis_url: str = "redis://localhost:6379/0"
    application_stream: str = "applications"
    worker_group: str = "apply-workers"
    events_channel: str = "job-events"
    automation_channel: str = "automation:start"
    consume_block_ms: int = 5000
    discovery_interval_s: float = 24 * 60 * 60
    headless: bool = True
    slow_mo_ms: float = 0
    browser_channel: str | None = None
    auto_submit: bool = True
    force_apply: bool = False
    manual_hold_s: float = 10 * 60
    login_wait_s: float = 5 * 60
    step_timeout_s: float = 15
    max_steps: int = 7
    settle_delay_s: float = 2.0
    ai_scoring: bool = True
    ai_score_limit: int = 10
    ai_answer_enabled: bool = True
    ai_answer_limit: int = 10
    cover_letter_enabled: bool = True
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_base_url: str = ""
    sessions_dir: Path = SESSIONS_DIR
    data_dir: Path = DATA_DIR
    profiles_dir: Path = PROFILES_DIR

    @property
    def ai_enabled(self) -> bool:
        return bool(self.openai_api_key)


def load_settings() -> Settings:
    """Read the environment once; the result is passed to every component."""
    requested_headless = get_bool("HEADLESS", True)
    headless = requested_headless or not _can_run_headed()
    if headless and not requested_headless:
        log.warning("HEADLESS=false requested but no display is available; running headless")

    settings = Settings(
        redis_url=get_env("REDIS_URL", "redis://localhost:6379/0"),
        application_stream=get_env("APPLICATION_STREAM", "applications"),
        worker_group=get_env("WORKER_GROUP", "apply-workers"),
        events_channel=get_env("JOB_EVENTS_CHANNEL", "job-events"),
        automation_channel=get_env("AUTOMATION_CHANNEL", "automation:start"),
        discovery_interval_s=get_number("DISCOVERY_INTERVAL_S", 24 * 60 * 60),
        headless=headless,
        slow_mo_ms=get_number("BROWSER_SLOWMO_MS", 0),
        browser_channel=get_env("BROWSER_CHANNEL") or None,
        auto_submit=get_bool("AUTO_SUBMIT", True),
        force_apply=get_bool("FORCE_APPLY", False),
        manual_hold_s=get_number("MANUAL_HOLD_S", 10 * 60),
        login_wait_s=get_number("LOGIN_WAIT_S", 5 * 60),
        step_timeout_s=get_number("STEP_TIMEOUT_S", 15),
        max_steps=int(get_number("MAX_STEPS", 7)),
        ai_scoring=get_bool("AI_SCORING", True),
        ai_score_limit=int(get_number("AI_SCORE_LIMIT", 10)),
        ai_answer_enabled=get_bool("AI_ANSWER_ENABLED", True),
        ai_answer_limit=int(get_number("AI_ANSWER_LIMIT", 10)),
        cover_letter_enabled=get_bool("COVER_LETTER_ENABLED", True),
        openai_api_key=get_env("OPENAI_API_KEY"),
        openai_model=get_env("OPENAI_MODEL", "gpt-4o-mini"),
        openai_base_url=get_env("OPENAI_BASE_URL"),
    )
    log.info(
        "Settings loaded: headless=%s auto_submit=%s max_steps=%d step_timeout=%.0fs ai=%s",
        settings.headless, settings.auto_submit, settings.max_steps,
        settings.step_timeout_s, settings.ai_enabled,
    )
    return settings


def ensure_dirs(settings: Settings) -> None:
    for d in (settings.data_dir, settings.sessions_dir, ARTIFACTS_DIR):
        d.mkdir(parents=True, exist_ok=True)
