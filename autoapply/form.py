"""Multi-step application form driver.

Opens the apply flow, then loops over form steps: fill, refill once if the
page still shows empty required fields or validation errors, and advance by
the highest-priority visible button (Submit, then Review, then Next). A page
with no way forward, or a flow that runs out of steps, ends in
MANUAL_INTERVENTION. Nothing here raises for a stuck form.
"""
from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Sequence
from urllib.parse import urljoin

from autoapply.config import Settings
from autoapply.errors import TransientAutomationError
from autoapply.fields import FieldResolver
from autoapply.log import get_logger
from autoapply.models import EventType, Outcome
from autoapply.page import FormPage
from autoapply.platforms import PlatformConfig

if TYPE_CHECKING:
    from autoapply.events import EventPublisher

log = get_logger(__name__)


class FormStateMachine:
    def __init__(
        self,
        config: PlatformConfig,
        resolver: FieldResolver,
        *,
        auto_submit: bool = True,
        max_steps: int = 7,
        step_timeout_s: float = 15,
        settle_delay_s: float = 2.0,
        entry_wait_ms: float = 3000,
        publisher: "EventPublisher | None" = None,
        job_id: str = "",
    ) -> None:
        self.config = config
        self.resolver = resolver
        self.auto_submit = auto_submit
        self.max_steps = max_steps
        self.step_timeout_s = step_timeout_s
        self.settle_delay_s = settle_delay_s
        self.entry_wait_ms = entry_wait_ms
        self.publisher = publisher
        self.job_id = job_id
        self._submit_clicked = False

    @classmethod
    def from_settings(cls, settings: Settings, config: PlatformConfig, resolver: FieldResolver,
                      publisher: "EventPublisher | None" = None, job_id: str = "") -> "FormStateMachine":
        return cls(
            config,
            resolver,
            auto_submit=settings.auto_submit,
            max_steps=settings.max_steps,
            step_timeout_s=settings.step_timeout_s,
            settle_delay_s=settings.settle_delay_s,
            publisher=publisher,
            job_id=job_id,
        )

    async def _emit(self, type: EventType, message: str) -> None:
        if self.publisher:
            await self.publisher.publish(self.job_id, type, message)

    async def run(self, page: FormPage) -> Outcome:
        body = await page.body_text()
        marker = _find_marker(body, self.config.closed_markers)
        if marker:
            log.info("[%s] posting closed (%r)", self.job_id, marker)
            await self._emit(EventType.ERROR_OCCURRED,
                             "Job is no longer accepting applications (expired).")
            return Outcome.FAILED

        entry = await self._find_entry(page)
        if entry is None:
            if _find_marker(body, self.config.applied_markers):
                log.info("[%s] no apply button and already applied", self.job_id)
                await self._emit(EventType.STEP_COMPLETED, "Already applied to this job.")
                return Outcome.APPLIED
            log.info("[%s] apply button not found at %s", self.job_id, page.url)
            await self._emit(EventType.ERROR_OCCURRED,
                             "Apply button not found. Manual intervention required.")
            return Outcome.MANUAL_INTERVENTION

        await self._activate(page, *entry)
        await page.pause(self.settle_delay_s)

        self._submit_clicked = False
        for step in range(1, self.max_steps + 1):
            try:
                outcome = await asyncio.wait_for(self._step(page, step), timeout=self.step_timeout_s)
            except asyncio.TimeoutError:
                if self._submit_clicked:
                    log.info("[%s] submitted on step %d (step ran past %.0fs)",
                             self.job_id, step, self.step_timeout_s)
                    await self._emit(EventType.STEP_COMPLETED, "Application submitted.")
                    return Outcome.APPLIED
                log.warning("[%s] step %d/%d exceeded %.0fs, moving on",
                            self.job_id, step, self.max_steps, self.step_timeout_s)
                continue
            except TransientAutomationError as e:
                log.warning("[%s] step %d/%d failed: %s", self.job_id, step, self.max_steps, e)
                continue
            if outcome is not None:
                return outcome

        log.info("[%s] no submit after %d steps", self.job_id, self.max_steps)
        await self._emit(EventType.STEP_COMPLETED,
                         "Reached application but could not auto-submit. Please review manually.")
        return Outcome.MANUAL_INTERVENTION

    async def _step(self, page: FormPage, step: int) -> Outcome | None:
        """One form page. None means the flow advanced and the loop continues."""
        log.info("[%s] step %d/%d: filling fields", self.job_id, step, self.max_steps)
        await self.resolver.fill(page)
        if await page.has_blocking_errors():
            await self.resolver.fill(page)

        submit = await self._first_visible(page, self.config.submit, self.config.submit_reject_text)
        if submit:
            if not self.auto_submit:
                log.info("[%s] auto-submit is off, stopping at final review", self.job_id)
                await self._emit(EventType.STEP_COMPLETED,
                                 "Reached final review. Please submit manually.")
                return Outcome.MANUAL_INTERVENTION
            # Set before the click: a timeout may cancel us after it lands.
            self._submit_clicked = True
            try:
                await page.click(submit)
            except TransientAutomationError:
                self._submit_clicked = False
                raise
            await page.pause(self.settle_delay_s)
            log.info("[%s] submitted on step %d", self.job_id, step)
            await self._emit(EventType.STEP_COMPLETED, "Application submitted.")
            return Outcome.APPLIED

        for action, selectors in (("Review", self.config.review), ("Next", self.config.next)):
            button = await self._first_visible(page, selectors)
            if button:
                await page.click(button)
                await self._emit(EventType.STEP_COMPLETED, f"Step {step}: clicked {action}")
                return None

        # Nothing to click yet; the page may still be rendering.
        await page.pause(self.settle_delay_s)
        navigation = self.config.submit + self.config.review + self.config.next
        if await self._first_visible(page, navigation):
            return None
        log.info("[%s] no navigation buttons on step %d, giving up", self.job_id, step)
        await self._emit(EventType.STEP_COMPLETED,
                         "No way forward in the application form. Please finish manually.")
        return Outcome.MANUAL_INTERVENTION

    async def _find_entry(self, page: FormPage) -> tuple[str, str] | None:
        """First visible apply affordance as (selector, href)."""
        for selector in self.config.entry:
            if not await page.is_visible(selector, wait_ms=self.entry_wait_ms):
                continue
            href = await page.attribute(selector, "href")
            if href and any(part in href for part in self.config.entry_reject_href):
                log.debug("Skipping list-view link for %s: %s", selector, href[:80])
                continue
            log.info("[%s] apply button found: %s", self.job_id, selector)
            return selector, href
        return None

    async def _activate(self, page: FormPage, selector: str, href: str) -> None:
        if href and any(part in href for part in self.config.entry_follow_href):
            await page.goto(urljoin(page.url, href), timeout_ms=30000)
        else:
            await page.click(selector)

    async def _first_visible(self, page: FormPage, selectors: Sequence[str],
                             reject_text: Sequence[str] = ()) -> str | None:
        for selector in selectors:
            if not await page.is_visible(selector):
                continue
            if reject_text:
                text = (await page.text_of(selector)).lower()
                if any(word in text for word in reject_text):
                    continue
            return selector
        return None


def _find_marker(body: str, markers: Sequence[str]) -> str | None:
    return next((m for m in markers if m in body), None)
