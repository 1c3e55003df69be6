"""Per-user persistent browser sessions.

Each user gets one persistent Chromium profile under ``<sessions_dir>/<user_id>``
so logins survive restarts. Contexts are cached, checked before reuse, and
relaunched when the browser has gone away.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable

from playwright.async_api import BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from autoapply.config import Settings
from autoapply.log import get_logger
from autoapply.models import Outcome

log = get_logger(__name__)

Launcher = Callable[[Path], Awaitable[BrowserContext]]

LAUNCH_ARGS = ["--disable-blink-features=AutomationControlled", "--no-first-run"]
IGNORE_DEFAULT_ARGS = ["--enable-automation"]
VIEWPORT = {"width": 1400, "height": 900}


class SessionManager:
    def __init__(self, settings: Settings, launcher: Launcher | None = None) -> None:
        self.settings = settings
        self._launcher = launcher
        self._playwright: Playwright | None = None
        self._contexts: dict[str, BrowserContext] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._held: set[asyncio.Task] = set()

    def cached(self, user_id: str) -> BrowserContext | None:
        return self._contexts.get(user_id)

    async def _launch(self, user_dir: Path) -> BrowserContext:
        if self._launcher is not None:
            return await self._launcher(user_dir)
        if self._playwright is None:
            self._playwright = await async_playwright().start()
        return await self._playwright.chromium.launch_persistent_context(
            str(user_dir),
            headless=self.settings.headless,
            slow_mo=self.settings.slow_mo_ms,
            channel=self.settings.browser_channel,
            viewport=VIEWPORT,
            args=LAUNCH_ARGS,
            ignore_default_args=IGNORE_DEFAULT_ARGS,
            timeout=30000,
        )

    @staticmethod
    async def _alive(context: BrowserContext) -> bool:
        try:
            await context.cookies()
            return True
        except PlaywrightError:
            return False

    def _forget(self, user_id: str, context: BrowserContext) -> None:
        if self._contexts.get(user_id) is context:
            del self._contexts[user_id]
            log.info("Browser context closed for %s", user_id)

    async def get_context(self, user_id: str) -> BrowserContext:
        existing = self._contexts.get(user_id)
        if existing is not None:
            if await self._alive(existing):
                return existing
            log.info("Stale browser context for %s, relaunching", user_id)
            self._forget(user_id, existing)
            try:
                await existing.close()
            except PlaywrightError as e:
                log.debug("Closing stale context failed: %s", str(e)[:150])

        user_dir = self.settings.sessions_dir / user_id
        user_dir.mkdir(parents=True, exist_ok=True)
        # A crashed Chromium leaves this behind and refuses to reopen the profile.
        (user_dir / "SingletonLock").unlink(missing_ok=True)

        log.info("Launching persistent browser session at %s (headless=%s)",
                 user_dir, self.settings.headless)
        context = await self._launch(user_dir)

        def on_close(*_: Any) -> None:
            self._forget(user_id, context)

        context.on("close", on_close)
        self._contexts[user_id] = context
        return context

    @asynccontextmanager
    async def lease(self, user_id: str) -> AsyncIterator[None]:
        """Serialize browser work for one user; other users proceed independently."""
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        async with lock:
            yield

    async def new_page(self, user_id: str) -> Page:
        context = await self.get_context(user_id)
        try:
            return await context.new_page()
        except PlaywrightError as e:
            log.warning("Opening a page for %s failed (%s), relaunching once", user_id, str(e)[:150])
            self._forget(user_id, context)
            context = await self.get_context(user_id)
            return await context.new_page()

    async def release_page(self, page: Any, outcome: Outcome | None) -> None:
        """Close now, or after the manual hold so a person can finish the form."""
        hold = self.settings.manual_hold_s
        if outcome is Outcome.MANUAL_INTERVENTION and hold > 0:
            log.info("Keeping page open for %.0fs for manual review", hold)
            task = asyncio.create_task(self._close_later(page, hold))
            self._held.add(task)
            task.add_done_callback(self._held.discard)
            return
        await self._close_page(page)

    async def _close_later(self, page: Any, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._close_page(page)

    @staticmethod
    async def _close_page(page: Any) -> None:
        try:
            await page.close()
        except PlaywrightError as e:
            log.debug("Page already closed: %s", str(e)[:150])

    async def close(self, user_id: str) -> None:
        context = self._contexts.pop(user_id, None)
        if context is None:
            return
        try:
            await context.close()
        except PlaywrightError as e:
            log.debug("Closing context for %s failed: %s", user_id, str(e)[:150])

    async def close_all(self) -> None:
        for task in list(self._held):
            task.cancel()
        for user_id in list(self._contexts):
            await self.close(user_id)
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
