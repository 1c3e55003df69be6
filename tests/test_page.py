from __future__ import annotations

import pytest
from playwright.async_api import Error as PlaywrightError

from autoapply.errors import TransientAutomationError
from autoapply.page import PlaywrightFormPage, to_descriptor


def test_to_descriptor_derives_label_and_options():
    item = {
        "kind": "radio",
        "handle": '[data-autoapply-id="3"]',
        "name": "sponsorship",
        "required": True,
        "value": "",
        "raw": {"aria_label": "", "legend": "Will you   need sponsorship?", "nearby": "Yes"},
        "options": [
            {"value": "Yes", "text": "Yes", "handle": '[data-autoapply-id="3"]'},
            {"value": "No", "text": "No", "handle": '[data-autoapply-id="4"]'},
        ],
    }
    control = to_descriptor(item)
    assert control.label == "Will you need sponsorship?"
    assert control.required
    assert [o.handle for o in control.options] == ['[data-autoapply-id="3"]', '[data-autoapply-id="4"]']


class BrokenPlaywrightPage:
    url = "about:blank"

    async def goto(self, url, wait_until=None, timeout=None):
        raise PlaywrightError("net::ERR_CONNECTION_RESET")

    async def evaluate(self, script, arg=None):
        raise PlaywrightError("Execution context was destroyed")

    async def inner_text(self, selector, timeout=None):
        raise PlaywrightError("Target closed")


async def test_playwright_errors_become_transient():
    page = PlaywrightFormPage(BrokenPlaywrightPage())
    with pytest.raises(TransientAutomationError, match="ERR_CONNECTION_RESET"):
        await page.goto("https://example.com")
    with pytest.raises(TransientAutomationError):
        await page.describe_controls()
    assert await page.body_text() == ""
    assert not await page.has_blocking_errors()
