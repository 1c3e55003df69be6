"""Worker process: consume queued applications, run triggered full automations,
and keep the periodic discovery loop going.

One job is processed to completion before its message is acknowledged. A lost
Redis connection is the only thing that stops the worker.
"""
from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable

from playwright.async_api import Page

from autoapply.ai import AIClient
from autoapply.classifier import MatchRules, classify, prescreen, screen_title
from autoapply.config import Settings, ensure_dirs, load_settings
from autoapply.cover_letter import generate_cover_letter, save_cover_letter
from autoapply.discovery import DiscoveryPipeline, ScoringBudget
from autoapply.events import EventPublisher
from autoapply.errors import (
    FatalJobError,
    LoginTimeout,
    QueueConnectionError,
    TransientAutomationError,
)
from autoapply.fields import AnswerCache, FieldResolver
from autoapply.form import FormStateMachine
from autoapply.log import get_logger
from autoapply.models import (
    ApplicationJob,
    ApplicationState,
    CandidateProfile,
    ErrorKind,
    EventType,
    JobPosting,
    JobResult,
    Outcome,
    Platform,
)
from autoapply.notifications import Notifier
from autoapply.page import FormPage, PlaywrightFormPage
from autoapply.platforms import PlatformAdapter, PlatformConfig, platform_config
from autoapply.queue import Delivery, Dispatcher, connect
from autoapply.repository import FileRepository, Repository
from autoapply.session import SessionManager
from autoapply.sources import BrowserSearchSource

log = get_logger(__name__)

PageFactory = Callable[[Any, PlatformConfig], FormPage]

# Descriptions shorter than this are too thin to classify on.
MIN_DESCRIPTION_CHARS = 50
STALE_CLAIM_MS = 15 * 60 * 1000
CLAIM_INTERVAL_S = 60.0
BROWSER_PLATFORMS = (Platform.LINKEDIN, Platform.INDEED)
BROWSER_SEARCH_LIMIT = 25


def playwright_page(raw: Page, config: PlatformConfig) -> FormPage:
    return PlaywrightFormPage(raw, config.errors)


class ApplicationProcessor:
    """Runs one application end to end and turns every exception into a JobResult."""

    def __init__(
        self,
        settings: Settings,
        repository: Repository,
        sessions: SessionManager,
        ai: AIClient | None = None,
        publisher: EventPublisher | None = None,
        notifier: Notifier | None = None,
        rules: MatchRules | None = None,
        page_factory: PageFactory = playwright_page,
        platforms: dict[str, PlatformConfig] | None = None,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.sessions = sessions
        self.ai = ai
        self.publisher = publisher
        self.notifier = notifier
        self.rules = rules
        self.page_factory = page_factory
        self.platforms = platforms

    async def _publish(self, job_id: str, type: EventType, message: str,
                       meta: dict[str, Any] | None = None) -> None:
        if self.publisher:
            await self.publisher.publish(job_id, type, message, meta)

    async def notify(self, profile: CandidateProfile | None, posting: JobPosting | None,
                     status: ApplicationState, error: str = "") -> None:
        if self.notifier is None or profile is None:
            return
        try:
            ok, msg = await asyncio.to_thread(self.notifier.notify, profile, posting, status, error)
        except Exception as e:
            log.error("Notification failed: %s", str(e)[:150])
            return
        if not ok:
            log.info("Notification skipped: %s", msg)

    async def process(self, job: ApplicationJob) -> JobResult:
        async with self.sessions.lease(job.user_id):
            return await self.run_job(job)

    async def run_job(self, job: ApplicationJob) -> JobResult:
        """Process ``job``; the caller must hold the user's session lease."""
        try:
            return await self._run_job(job)
        except QueueConnectionError:
            raise
        except FatalJobError as e:
            return await self._error(job, ErrorKind.FATAL, str(e)[:300])
        except Exception as e:
            log.exception("Application %s crashed", job.application_id)
            return await self._error(job, ErrorKind.FATAL, f"{type(e).__name__}: {str(e)[:300]}")

    def _load(self, job: ApplicationJob):
        try:
            record = self.repository.get_application(job.application_id)
            profile = self.repository.get_profile(job.user_id)
            posting = self.repository.get_posting(job.job_id)
        except Exception as e:
            raise FatalJobError(
                f"Could not load application data: {type(e).__name__}: {str(e)[:200]}"
            ) from e
        return record, profile, posting

    async def _run_job(self, job: ApplicationJob) -> JobResult:
        app_id = job.application_id
        record, profile, posting = self._load(job)
        if record is None:
            return JobResult.failure(ErrorKind.INVALID, f"Unknown application {app_id}")
        if record.status.terminal:
            log.info("Application %s already %s, skipping", app_id, record.status.value)
            return JobResult.success(Outcome(record.status.value), "Already settled")
        if profile is None:
            return JobResult.failure(ErrorKind.INVALID, f"No profile for user {job.user_id}")

        self.repository.set_status(app_id, ApplicationState.PROCESSING)
        await self._publish(app_id, EventType.JOB_STARTED,
                            f"Starting automation for {job.platform.value}",
                            {"attempt": job.attempts + 1, "url": job.job_url})

        raw = None
        outcome: Outcome | None = None
        try:
            raw = await self.sessions.new_page(job.user_id)
            config = platform_config(job.platform, self.platforms)
            page = self.page_factory(raw, config)
            outcome, reason = await self._apply(job, page, config, profile, posting)
        except LoginTimeout as e:
            return await self._error(job, ErrorKind.LOGIN_TIMEOUT, str(e))
        except TransientAutomationError as e:
            return await self._error(job, ErrorKind.TRANSIENT, str(e)[:300])
        except QueueConnectionError:
            raise
        except Exception as e:
            log.exception("Application %s crashed", app_id)
            return await self._error(job, ErrorKind.FATAL, f"{type(e).__name__}: {str(e)[:300]}")
        finally:
            if raw is not None:
                await self.sessions.release_page(raw, outcome)

        # The outcome is final here; a failed write is logged, never retried.
        try:
            self.repository.set_status(app_id, outcome.state, reason)
        except Exception:
            log.exception("Could not record %s for application %s", outcome.value, app_id)
        await self.notify(profile, posting, outcome.state, reason)
        await self._publish(app_id, EventType.JOB_FINISHED, f"Automation completed: {outcome.value}",
                            {"reason": reason} if reason else None)
        if outcome is Outcome.MANUAL_INTERVENTION and self.settings.manual_hold_s > 0:
            await self._publish(
                app_id, EventType.STEP_COMPLETED,
                f"Manual review required. Window stays open for "
                f"{self.settings.manual_hold_s / 60:.0f} minutes.",
            )
        log.info("Application %s finished: %s %s", app_id, outcome.value, reason)
        return JobResult.success(outcome, reason)

    async def _error(self, job: ApplicationJob, kind: ErrorKind, message: str) -> JobResult:
        log.warning("Application %s failed (%s): %s", job.application_id, kind.value, message)
        await self._publish(job.application_id, EventType.ERROR_OCCURRED, message,
                            {"kind": kind.value, "attempt": job.attempts + 1})
        return JobResult.failure(kind, message)

    async def _navigate(self, page: FormPage, url: str) -> None:
        try:
            await page.goto(url, wait_until="domcontentloaded", timeout_ms=45000)
        except TransientAutomationError as e:
            log.warning("Navigation failed (%s), retrying with a lighter wait", str(e)[:150])
            await page.pause(self.settings.settle_delay_s)
            await page.goto(url, wait_until="commit", timeout_ms=30000)
        await page.pause(self.settings.settle_delay_s)

    async def _screen(self, page: FormPage, adapter: PlatformAdapter,
                      posting: JobPosting | None) -> str:
        """Empty string when the opened posting still qualifies, else the reject reason."""
        if self.settings.force_apply:
            return ""

        title = await adapter.page_title(page)
        if title:
            ok, reason = screen_title(title, self.rules)
            if not ok:
                return f"Page title check failed: {reason}"

        if posting is None:
            return ""
        description = posting.description
        if not description:
            description = await adapter.extract_description(page)
            if description:
                self.repository.update_description(posting.id, description)
        if description and len(description) > MIN_DESCRIPTION_CHARS:
            match = classify(title or posting.title, description, posting.location, self.rules)
            if not match.is_match:
                return f"Not a match: {match.primary_reason}"
        return ""

    async def _apply(
        self,
        job: ApplicationJob,
        page: FormPage,
        config: PlatformConfig,
        profile: CandidateProfile,
        posting: JobPosting | None,
    ) -> tuple[Outcome, str]:
        adapter = PlatformAdapter(config, self.publisher, self.settings.login_wait_s)
        await adapter.ensure_login(page)

        url = adapter.normalize_url(job.job_url)
        if not adapter.valid_job_url(url):
            return Outcome.FAILED, f"Invalid job URL for {config.name}: {url}"
        await self._navigate(page, url)

        rejected = await self._screen(page, adapter, posting)
        if rejected:
            log.info("Application %s rejected on page: %s", job.application_id, rejected)
            await self._publish(job.application_id, EventType.ERROR_OCCURRED, rejected)
            return Outcome.FAILED, rejected

        cover = ""
        if posting is not None:
            cover = await generate_cover_letter(
                self.ai, profile, posting, self.settings.cover_letter_enabled,
            )
            save_cover_letter(self.settings.data_dir, posting, cover)

        ai = self.ai if self.settings.ai_answer_enabled else None
        answers = AnswerCache(ai, profile, self.settings.ai_answer_limit)
        resolver = FieldResolver(profile, answers, cover)
        machine = FormStateMachine.from_settings(
            self.settings, config, resolver, self.publisher, job.application_id,
        )
        outcome = await machine.run(page)
        if answers.calls:
            log.info("Application %s used %d AI answer(s)", job.application_id, answers.calls)
        reason = ""
        if outcome is Outcome.MANUAL_INTERVENTION:
            reason = "Form needs a human to finish"
        elif outcome is Outcome.FAILED:
            reason = "Posting closed"
        return outcome, reason


@dataclass
class AutomationSummary:
    user_id: str
    skipped_platforms: list[str] = field(default_factory=list)
    found: int = 0
    applied: int = 0
    manual: int = 0
    failed: int = 0
    queued: int = 0


class FullAutomation:
    """Sign in to each browser platform, search, and apply; API discovery runs after."""

    def __init__(
        self,
        settings: Settings,
        repository: Repository,
        sessions: SessionManager,
        processor: ApplicationProcessor,
        discovery: DiscoveryPipeline,
        publisher: EventPublisher | None = None,
        page_factory: PageFactory = playwright_page,
        platforms: dict[str, PlatformConfig] | None = None,
        search_limit: int = BROWSER_SEARCH_LIMIT,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.sessions = sessions
        self.processor = processor
        self.discovery = discovery
        self.publisher = publisher
        self.page_factory = page_factory
        self.platforms = platforms
        self.search_limit = search_limit

    async def _publish(self, user_id: str, message: str) -> None:
        if self.publisher:
            await self.publisher.publish(user_id, EventType.STEP_COMPLETED, message)

    async def run(self, user_id: str) -> AutomationSummary:
        summary = AutomationSummary(user_id=user_id)
        preference = self.repository.get_preference(user_id)
        profile = self.repository.get_profile(user_id)
        if preference is None or profile is None:
            log.warning("Full automation for %s skipped: no profile", user_id)
            return summary

        await self._publish(user_id, "Full automation started")
        budget = ScoringBudget(self.settings.ai_score_limit)
        async with self.sessions.lease(user_id):
            raw = await self.sessions.new_page(user_id)
            try:
                for platform in BROWSER_PLATFORMS:
                    await self._run_platform(platform, raw, user_id, preference, profile,
                                             budget, summary)
            finally:
                await self.sessions.release_page(raw, None)

        report = await self.discovery.run_for_user(user_id, force=True)
        if report:
            summary.found += report.discovered
            summary.queued += report.queued

        log.info("Full automation for %s: %d found, %d applied, %d manual, %d failed, %d queued",
                 user_id, summary.found, summary.applied, summary.manual, summary.failed,
                 summary.queued)
        await self._publish(
            user_id,
            f"Full automation finished: {summary.applied} applied, {summary.manual} manual, "
            f"{summary.queued} queued",
        )
        return summary

    async def _run_platform(self, platform, raw, user_id, preference, profile, budget, summary) -> None:
        config = platform_config(platform, self.platforms)
        if config.search is None:
            return
        page = self.page_factory(raw, config)
        adapter = PlatformAdapter(config, self.publisher, self.settings.login_wait_s)
        try:
            await adapter.ensure_login(page)
            postings = await BrowserSearchSource(platform, config.search).search(
                raw, preference, self.search_limit,
            )
        except LoginTimeout as e:
            log.warning("Skipping %s: %s", platform.value, e)
            summary.skipped_platforms.append(platform.value)
            await self._publish(user_id, f"{platform.value} login timed out, skipping")
            return
        except TransientAutomationError as e:
            log.warning("Skipping %s: %s", platform.value, str(e)[:150])
            summary.skipped_platforms.append(platform.value)
            await self._publish(user_id, f"{platform.value} could not be reached, skipping")
            return
        summary.found += len(postings)
        for posting in postings:
            if not self.settings.force_apply:
                ok, reason = prescreen(posting.title, posting.location, self.processor.rules)
                if not ok:
                    log.info("SKIP %r: %s", posting.title, reason)
                    continue
            stored = self.repository.save_posting(replace(posting, user_id=user_id))
            if stored is None:
                continue
            stored = await self._with_description(page, adapter, stored)
            evaluation = await self.discovery.evaluate(stored, preference, profile, budget)
            self.repository.save_match(stored.id, evaluation.match, evaluation.ai_score)
            if not evaluation.eligible:
                continue

            if platform is Platform.LINKEDIN:
                await self._apply_inline(stored, summary)
            else:
                await self.discovery.enqueue(stored)
                summary.queued += 1

    async def _with_description(self, page: FormPage, adapter: PlatformAdapter,
                                posting: JobPosting) -> JobPosting:
        try:
            await page.goto(adapter.normalize_url(posting.job_url), timeout_ms=30000)
            await page.pause(self.settings.settle_delay_s)
            description = await adapter.extract_description(page)
        except TransientAutomationError as e:
            log.warning("Description fetch failed for %r: %s", posting.title, str(e)[:150])
            return posting
        if not description:
            return posting
        self.repository.update_description(posting.id, description)
        return posting.with_description(description)

    async def _apply_inline(self, posting: JobPosting, summary: AutomationSummary) -> None:
        record = self.repository.create_application(posting.user_id, posting.id)
        job = ApplicationJob(
            application_id=record.id,
            job_id=posting.id,
            user_id=posting.user_id,
            job_url=posting.apply_url or posting.job_url,
            platform=posting.platform,
        )
        result = await self.processor.run_job(job)
        if not result.ok:
            self.repository.set_status(record.id, ApplicationState.FAILED, result.message)
            summary.failed += 1
        elif result.outcome is Outcome.APPLIED:
            summary.applied += 1
        elif result.outcome is Outcome.MANUAL_INTERVENTION:
            summary.manual += 1
        else:
            summary.failed += 1


class Worker:
    def __init__(
        self,
        settings: Settings,
        redis: Any,
        dispatcher: Dispatcher,
        processor: ApplicationProcessor,
        discovery: DiscoveryPipeline,
        automation: FullAutomation,
    ) -> None:
        self.settings = settings
        self.redis = redis
        self.dispatcher = dispatcher
        self.processor = processor
        self.discovery = discovery
        self.automation = automation
        self._last_claim = 0.0

    async def handle(self, delivery: Delivery) -> JobResult:
        result = await self.processor.process(delivery.job)
        if result.ok:
            await self.dispatcher.acknowledge(delivery.message_id)
            return result
        try:
            decision = await self.dispatcher.settle_failure(delivery, result)
        except QueueConnectionError:
            raise
        except Exception:
            log.exception("Could not settle application %s", delivery.job.application_id)
            return result
        if not decision.requeued:
            await self._notify_failed(delivery.job, result.message)
        return result

    async def _notify_failed(self, job: ApplicationJob, message: str) -> None:
        repository = self.processor.repository
        try:
            profile = repository.get_profile(job.user_id)
            posting = repository.get_posting(job.job_id)
        except Exception as e:
            log.warning("No failure notification for %s: %s", job.application_id, str(e)[:150])
            return
        await self.processor.notify(profile, posting, ApplicationState.FAILED, message)

    async def handle_trigger(self, data: str) -> AutomationSummary | None:
        try:
            user_id = str(json.loads(data)["userId"])
        except (ValueError, KeyError, TypeError) as e:
            log.warning("Ignoring malformed automation trigger %r: %s", data[:150], e)
            return None
        log.info("Automation trigger for %s", user_id)
        try:
            return await self.automation.run(user_id)
        except QueueConnectionError:
            raise
        except Exception:
            log.exception("Full automation failed for %s", user_id)
            return None

    async def listen_for_triggers(self) -> None:
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(self.settings.automation_channel)
        log.info("Listening for automation triggers on %s", self.settings.automation_channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                await self.handle_trigger(message["data"])
        finally:
            await pubsub.unsubscribe(self.settings.automation_channel)

    async def _reclaim(self) -> None:
        now = time.monotonic()
        if now - self._last_claim < CLAIM_INTERVAL_S:
            return
        self._last_claim = now
        for delivery in await self.dispatcher.claim_stale(STALE_CLAIM_MS):
            await self.handle(delivery)

    async def consume_forever(self, background: list[asyncio.Task] | None = None) -> None:
        while True:
            for task in background or ():
                if task.done() and not task.cancelled() and task.exception():
                    raise task.exception()
            await self._reclaim()
            delivery = await self.dispatcher.consume(self.settings.consume_block_ms)
            if delivery is None:
                continue
            log.info("Processing application %s (attempt %d)",
                     delivery.job.application_id, delivery.job.attempts + 1)
            await self.handle(delivery)

    async def run(self) -> None:
        await self.dispatcher.ensure_group()
        background = [
            asyncio.create_task(self.discovery.discovery_loop(), name="discovery"),
            asyncio.create_task(self.listen_for_triggers(), name="triggers"),
        ]
        log.info("Worker started, consuming %s as %s",
                 self.settings.application_stream, self.dispatcher.consumer)
        try:
            await self.consume_forever(background)
        finally:
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)
            await self.processor.sessions.close_all()


def build_worker(settings: Settings | None = None) -> Worker:
    """Wire every component from the environment."""
    settings = settings or load_settings()
    ensure_dirs(settings)
    redis = connect(settings.redis_url)
    repository = FileRepository(settings.data_dir, settings.profiles_dir)
    publisher = EventPublisher(redis, settings.events_channel)
    dispatcher = Dispatcher(redis, repository, publisher,
                            settings.application_stream, settings.worker_group)
    ai = AIClient(settings)
    sessions = SessionManager(settings)
    processor = ApplicationProcessor(settings, repository, sessions, ai, publisher, Notifier())
    discovery = DiscoveryPipeline(settings, repository, dispatcher, ai, publisher)
    automation = FullAutomation(settings, repository, sessions, processor, discovery, publisher)
    return Worker(settings, redis, dispatcher, processor, discovery, automation)
