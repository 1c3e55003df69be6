"""Per-platform selector tables and the manual-login wait."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Any

from autoapply.config import PLATFORMS_PATH, load_yaml
from autoapply.errors import LoginTimeout
from autoapply.log import get_logger
from autoapply.models import EventType, Platform

if TYPE_CHECKING:
    from autoapply.events import EventPublisher
    from autoapply.page import FormPage

log = get_logger(__name__)


@dataclass(frozen=True)
class LoginConfig:
    check_url: str
    login_url: str
    login_inputs: str
    logged_in_url_fragments: tuple[str, ...] = ()


@dataclass(frozen=True)
class SearchConfig:
    url: str
    cards: tuple[str, ...]
    link: tuple[str, ...]
    title: tuple[str, ...] = ()
    company: tuple[str, ...] = ()
    location: tuple[str, ...] = ()
    params: dict[str, str] = field(default_factory=dict)
    fixed_params: dict[str, str] = field(default_factory=dict)
    id_pattern: str = ""


@dataclass(frozen=True)
class PlatformConfig:
    name: str
    entry: tuple[str, ...]
    submit: tuple[str, ...]
    review: tuple[str, ...]
    next: tuple[str, ...]
    closed_markers: tuple[str, ...] = ()
    applied_markers: tuple[str, ...] = ()
    entry_reject_href: tuple[str, ...] = ()
    entry_follow_href: tuple[str, ...] = ()
    submit_reject_text: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()
    description: tuple[str, ...] = ()
    page_title: tuple[str, ...] = ()
    valid_url_fragments: tuple[str, ...] = ()
    strip_query: bool = False
    login: LoginConfig | None = None
    search: SearchConfig | None = None


def _tuple(value: Any) -> tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


def _build(name: str, data: dict[str, Any]) -> PlatformConfig:
    login = data.get("login")
    search = data.get("search")
    return PlatformConfig(
        name=name,
        entry=_tuple(data.get("entry")),
        submit=_tuple(data.get("submit")),
        review=_tuple(data.get("review")),
        next=_tuple(data.get("next")),
        closed_markers=_tuple(data.get("closed_markers")),
        applied_markers=_tuple(data.get("applied_markers")),
        entry_reject_href=_tuple(data.get("entry_reject_href")),
        entry_follow_href=_tuple(data.get("entry_follow_href")),
        submit_reject_text=_tuple(data.get("submit_reject_text")),
        errors=_tuple(data.get("errors")),
        description=_tuple(data.get("description")),
        page_title=_tuple(data.get("page_title")),
        valid_url_fragments=_tuple(data.get("valid_url_fragments")),
        strip_query=bool(data.get("strip_query", False)),
        login=LoginConfig(
            check_url=login["check_url"],
            login_url=login["login_url"],
            login_inputs=login["login_inputs"],
            logged_in_url_fragments=_tuple(login.get("logged_in_url_fragments")),
        ) if login else None,
        search=SearchConfig(
            url=search["url"],
            cards=_tuple(search.get("cards")),
            link=_tuple(search.get("link")),
            title=_tuple(search.get("title")),
            company=_tuple(search.get("company")),
            location=_tuple(search.get("location")),
            params=dict(search.get("params") or {}),
            fixed_params={k: str(v) for k, v in (search.get("fixed_params") or {}).items()},
            id_pattern=search.get("id_pattern", ""),
        ) if search else None,
    )


def load_platforms(path: Path = PLATFORMS_PATH) -> dict[str, PlatformConfig]:
    """Platform tables keyed by platform name; each inherits missing keys from ``default``."""
    data = load_yaml(path)
    default = data.get("default", {})
    tables = {"default": _build("default", default)}
    for name, table in data.items():
        if name == "default":
            continue
        tables[name] = _build(name, {**default, **(table or {})})
    return tables


@lru_cache(maxsize=1)
def _default_tables() -> dict[str, PlatformConfig]:
    return load_platforms()


def platform_config(platform: Platform,
                    tables: dict[str, PlatformConfig] | None = None) -> PlatformConfig:
    tables = tables or _default_tables()
    return tables.get(platform.value, tables["default"])


class PlatformAdapter:
    """Selector table plus the site interactions that are not part of a form."""

    def __init__(self, config: PlatformConfig, publisher: "EventPublisher | None" = None,
                 login_wait_s: float = 300, poll_s: float = 3.0) -> None:
        self.config = config
        self.publisher = publisher
        self.login_wait_s = login_wait_s
        self.poll_s = poll_s

    @property
    def name(self) -> str:
        return self.config.name

    async def _logged_in(self, page: "FormPage", login: LoginConfig) -> bool:
        on_member_page = (
            not login.logged_in_url_fragments
            or any(f in page.url for f in login.logged_in_url_fragments)
        )
        return on_member_page and await page.count(login.login_inputs) == 0

    async def ensure_login(self, page: "FormPage") -> None:
        """Return once the user is signed in; raise LoginTimeout after ``login_wait_s``."""
        login = self.config.login
        if login is None:
            return

        await page.goto(login.check_url, timeout_ms=30000)
        await page.pause(self.poll_s)
        if await self._logged_in(page, login):
            log.info("%s session already signed in", self.name)
            return

        log.info("%s login required, waiting up to %.0fs", self.name, self.login_wait_s)
        await page.goto(login.login_url)
        if self.publisher:
            await self.publisher.publish(
                self.name, EventType.STEP_COMPLETED,
                f"Login required for {self.name}. Please sign in in the opened browser.",
            )

        deadline = time.monotonic() + self.login_wait_s
        while time.monotonic() < deadline:
            if await page.count(login.login_inputs) == 0:
                log.info("%s login detected", self.name)
                return
            await page.pause(self.poll_s)
        raise LoginTimeout(self.name, self.login_wait_s)

    async def extract_description(self, page: "FormPage", limit: int = 6000) -> str:
        for selector in self.config.description:
            text = await page.text_of(selector)
            if text:
                return text
        return (await page.body_text()).strip()[:limit]

    def normalize_url(self, url: str) -> str:
        """Drop tracking query strings on platforms whose job URLs don't need them."""
        if self.config.strip_query:
            return url.split("?")[0]
        return url

    def valid_job_url(self, url: str) -> bool:
        fragments = self.config.valid_url_fragments
        return not fragments or any(f in url for f in fragments)

    async def page_title(self, page: "FormPage") -> str:
        for selector in self.config.page_title:
            text = await page.text_of(selector)
            if text:
                return text.strip()
        return ""
