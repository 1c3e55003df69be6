"""Job listings scraped from a signed-in platform search page.

Card and field selectors come from the platform's ``search`` table in
``config/platforms.yaml``; the card selector matching the most elements wins.
"""
from __future__ import annotations

import re
from urllib.parse import urlencode

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from autoapply.log import get_logger
from autoapply.models import JobPosting, Platform, SearchPreference
from autoapply.platforms import SearchConfig
from autoapply.sources.base import build_query

log = get_logger(__name__)

SCROLL_ROUNDS = 4

_EXTRACT_JS = """
([cardSel, take, sel]) => {
  const first = (root, selectors) => {
    for (const s of selectors) {
      const el = root.querySelector(s);
      if (el && (el.textContent || '').trim()) return el;
    }
    return null;
  };
  const text = (el) => (el ? el.textContent.trim() : null);
  return Array.from(document.querySelectorAll(cardSel)).slice(0, take).map((card) => {
    const link = first(card, sel.link);
    const titleEl = (link && link.querySelector('span')) || link || first(card, sel.title);
    return {
      title: text(titleEl),
      company: text(first(card, sel.company)),
      location: text(first(card, sel.location)),
      url: link ? link.href : null,
    };
  });
}
"""


def search_url(config: SearchConfig, preference: SearchPreference) -> str:
    params: dict[str, str] = {}
    query = build_query(preference)
    location = preference.locations[0] if preference.locations else ("Remote" if preference.remote else "")
    if query and "query" in config.params:
        params[config.params["query"]] = query
    if location and "location" in config.params:
        params[config.params["location"]] = location
    params.update(config.fixed_params)
    return f"{config.url}?{urlencode(params)}"


def external_id(platform: Platform, url: str, pattern: str) -> str:
    m = re.search(pattern, url) if pattern else None
    return f"{platform.value.lower()}_{m.group(1) if m else url.split('?')[0]}"


class BrowserSearchSource:
    def __init__(self, platform: Platform, config: SearchConfig) -> None:
        self.platform = platform
        self.config = config
        self.name = f"{platform.value.lower()}-browser"

    async def _best_card_selector(self, page: Page) -> tuple[str, int]:
        best, best_count = "", 0
        for selector in self.config.cards:
            count = await page.locator(selector).count()
            log.debug("Card selector %r matched %d", selector, count)
            if count > best_count:
                best, best_count = selector, count
        return best, best_count

    async def search(self, page: Page, preference: SearchPreference, limit: int = 25) -> list[JobPosting]:
        url = search_url(self.config, preference)
        log.info("Searching %s: %s", self.platform.value, url)
        try:
            await page.goto(url, wait_until="domcontentloaded", timeout=30000)
            await page.wait_for_timeout(3000)
            for _ in range(SCROLL_ROUNDS):
                await page.mouse.wheel(0, 1500)
                await page.wait_for_timeout(1200)

            selector, count = await self._best_card_selector(page)
            if not count:
                log.warning("No job cards on %s search page (%s)", self.platform.value, page.url)
                return []

            cards = await page.evaluate(_EXTRACT_JS, [
                selector, limit,
                {
                    "link": list(self.config.link),
                    "title": list(self.config.title),
                    "company": list(self.config.company),
                    "location": list(self.config.location),
                },
            ])
        except PlaywrightError as e:
            log.warning("%s browser search failed: %s", self.platform.value, str(e)[:150])
            return []

        postings = []
        for card in cards:
            if not card.get("url"):
                continue
            postings.append(
                JobPosting(
                    id="",
                    external_id=external_id(self.platform, card["url"], self.config.id_pattern),
                    user_id="",
                    platform=self.platform,
                    job_url=card["url"],
                    apply_url=card["url"],
                    title=card.get("title") or "",
                    company=card.get("company") or "",
                    location=card.get("location"),
                )
            )
        log.info("%s search: %d cards, %d with links", self.platform.value, len(cards), len(postings))
        return postings
