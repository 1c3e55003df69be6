"""The page capability the form machine and field resolver drive.

``FormPage`` is the narrow surface they need; ``PlaywrightFormPage`` implements
it over a Playwright async ``Page``. Playwright failures surface as
``TransientAutomationError`` so one bad selector never aborts a job.
"""
from __future__ import annotations

import asyncio
from typing import Any, Protocol, Sequence

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from autoapply.errors import TransientAutomationError
from autoapply.fields import derive_label
from autoapply.log import get_logger
from autoapply.models import ControlDescriptor, ControlOption

log = get_logger(__name__)

HANDLE_ATTR = "data-autoapply-id"

# Scope question controls to the application dialog when one is open, so
# global search bars are left alone.
FORM_SCOPE = "[class*='jobs-easy-apply'], [class*='artdeco-modal'], [role='dialog'], form"


class FormPage(Protocol):
    @property
    def url(self) -> str: ...

    async def goto(self, url: str, *, wait_until: str = "domcontentloaded",
                   timeout_ms: float = 60000) -> None: ...

    async def is_visible(self, selector: str, *, wait_ms: float = 0) -> bool: ...

    async def count(self, selector: str) -> int: ...

    async def attribute(self, selector: str, name: str) -> str: ...

    async def text_of(self, selector: str) -> str: ...

    async def click(self, selector: str) -> None: ...

    async def body_text(self) -> str: ...

    async def describe_controls(self) -> list[ControlDescriptor]: ...

    async def fill_control(self, handle: str, value: str) -> None: ...

    async def choose_option(self, control: ControlDescriptor, option: ControlOption) -> None: ...

    async def upload(self, handle: str, path: str) -> None: ...

    async def has_blocking_errors(self) -> bool: ...

    async def pause(self, seconds: float) -> None: ...


# Tags every visible control with a stable handle and returns raw metadata.
# Label candidates are returned unprocessed; derive_label picks among them.
_DESCRIBE_JS = """
([scopeSel, attr]) => {
  const scope = document.querySelector(scopeSel) || document.body;
  let seq = Number(document.body.getAttribute(attr + '-seq') || '0');
  const tag = (el) => {
    if (!el.getAttribute(attr)) { seq += 1; el.setAttribute(attr, String(seq)); }
    return `[${attr}="${el.getAttribute(attr)}"]`;
  };
  const text = (el) => (el && el.textContent ? el.textContent : '');
  const labelFor = (el) => {
    const id = el.getAttribute('id');
    return id ? text(document.querySelector(`label[for="${CSS.escape(id)}"]`)) : '';
  };
  const labelledBy = (el) => {
    const ids = (el.getAttribute('aria-labelledby') || '').split(/\\s+/).filter(Boolean);
    return ids.map((id) => text(document.getElementById(id))).join(' ');
  };
  const nearby = (el) => {
    const wrapper = el.parentElement && el.parentElement.closest('div');
    const candidate = wrapper && wrapper.querySelector('label, span, p');
    return text(candidate);
  };
  const legend = (el) => text(el.closest('fieldset') && el.closest('fieldset').querySelector('legend'));
  const raw = (el) => ({
    aria_label: el.getAttribute('aria-label') || '',
    labelledby: labelledBy(el),
    placeholder: el.getAttribute('placeholder') || '',
    label_for: labelFor(el),
    enclosing_label: text(el.closest('label')),
    legend: legend(el),
    nearby: nearby(el),
  });
  const visible = (el) => el.offsetParent !== null;
  const required = (el) => el.required || el.getAttribute('aria-required') === 'true';
  const out = [];

  scope.querySelectorAll('input, textarea, select').forEach((el) => {
    const t = (el.getAttribute('type') || 'text').toLowerCase();
    const tagName = el.tagName.toLowerCase();
    if (['hidden', 'submit', 'button', 'image', 'reset', 'search', 'radio', 'checkbox', 'password'].includes(t) && tagName === 'input') return;
    if (tagName === 'input' && t === 'file') {
      out.push({ kind: 'file', handle: tag(el), name: el.name || '', required: required(el),
                 value: el.files && el.files.length ? 'attached' : '', raw: raw(el), options: [] });
      return;
    }
    if (!visible(el) || el.disabled || el.readOnly) return;
    if (tagName === 'select') {
      const options = Array.from(el.options).map((o) => ({ value: o.value || '', text: (o.textContent || '').trim(), handle: '' }));
      out.push({ kind: 'select', handle: tag(el), name: el.name || '', required: required(el),
                 value: el.value || '', raw: raw(el), options });
      return;
    }
    const kind = tagName === 'textarea' ? 'textarea' : t;
    out.push({ kind, handle: tag(el), name: el.name || '', required: required(el),
               value: el.value || '', raw: raw(el), options: [] });
  });

  for (const kind of ['radio', 'checkbox']) {
    const groups = new Map();
    scope.querySelectorAll(`input[type="${kind}"]`).forEach((el) => {
      const key = el.getAttribute('name') || el.getAttribute('id') || '';
      if (!key) return;
      const group = groups.get(key) || { kind, handle: '', name: key, required: false, value: '', raw: {}, options: [] };
      if (el.checked) group.value = 'checked';
      if (required(el)) group.required = true;
      const optionLabel = (labelFor(el) || text(el.closest('label')) || el.getAttribute('aria-label') || '').trim();
      group.options.push({ value: optionLabel || el.value || '', text: optionLabel, handle: tag(el) });
      if (!group.handle) {
        group.handle = group.options[0].handle;
        group.raw = { legend: legend(el), labelledby: labelledBy(el.closest('[role="radiogroup"], [role="group"]') || el), nearby: optionLabel };
      }
      groups.set(key, group);
    });
    groups.forEach((g) => out.push(g));
  }

  document.body.setAttribute(attr + '-seq', String(seq));
  return out;
}
"""

_BLOCKING_JS = """
([requiredSel, errorSel]) => {
  const visible = (el) => el.offsetParent !== null;
  const empty = Array.from(document.querySelectorAll(requiredSel))
    .filter((el) => visible(el) && !String(el.value || '').trim() && el.type !== 'radio' && el.type !== 'checkbox');
  const errors = Array.from(document.querySelectorAll(errorSel))
    .filter((el) => visible(el) && (el.textContent || '').trim().length > 0);
  return { empty: empty.length, errors: errors.slice(0, 5).map((el) => el.textContent.trim().slice(0, 80)) };
}
"""

REQUIRED_SELECTOR = "input[required], select[required], textarea[required], [aria-required='true']"


def to_descriptor(item: dict[str, Any]) -> ControlDescriptor:
    return ControlDescriptor(
        kind=item.get("kind", "text"),
        label=derive_label(item.get("raw") or {}),
        handle=item["handle"],
        name=item.get("name", ""),
        options=tuple(
            ControlOption(value=o.get("value", ""), text=o.get("text", ""), handle=o.get("handle", ""))
            for o in item.get("options", [])
        ),
        required=bool(item.get("required")),
        value=item.get("value") or "",
    )


class PlaywrightFormPage:
    def __init__(self, page: Page, error_selectors: Sequence[str] = ()) -> None:
        self.page = page
        self.error_selector = ", ".join(error_selectors) or "[role='alert']"

    @property
    def url(self) -> str:
        return self.page.url

    async def goto(self, url: str, *, wait_until: str = "domcontentloaded",
                   timeout_ms: float = 60000) -> None:
        try:
            await self.page.goto(url, wait_until=wait_until, timeout=timeout_ms)
        except PlaywrightError as e:
            raise TransientAutomationError(f"Navigation to {url} failed: {str(e)[:150]}") from e

    async def is_visible(self, selector: str, *, wait_ms: float = 0) -> bool:
        loc = self.page.locator(selector).first
        try:
            if wait_ms:
                await loc.wait_for(state="visible", timeout=wait_ms)
                return True
            return await loc.is_visible()
        except PlaywrightTimeoutError:
            return False
        except PlaywrightError as e:
            log.debug("Visibility check failed for %s: %s", selector, str(e)[:150])
            return False

    async def count(self, selector: str) -> int:
        try:
            return await self.page.locator(selector).count()
        except PlaywrightError:
            return 0

    async def attribute(self, selector: str, name: str) -> str:
        try:
            return await self.page.locator(selector).first.get_attribute(name, timeout=2000) or ""
        except PlaywrightError:
            return ""

    async def text_of(self, selector: str) -> str:
        try:
            return (await self.page.locator(selector).first.inner_text(timeout=2000)).strip()
        except PlaywrightError:
            return ""

    async def click(self, selector: str) -> None:
        try:
            await self.page.locator(selector).first.click(timeout=5000)
        except PlaywrightError as e:
            raise TransientAutomationError(f"Click on {selector} failed: {str(e)[:150]}") from e

    async def body_text(self) -> str:
        try:
            return await self.page.inner_text("body", timeout=5000)
        except PlaywrightError:
            return ""

    async def describe_controls(self) -> list[ControlDescriptor]:
        try:
            items = await self.page.evaluate(_DESCRIBE_JS, [FORM_SCOPE, HANDLE_ATTR])
        except PlaywrightError as e:
            raise TransientAutomationError(f"Could not read form controls: {str(e)[:150]}") from e
        return [to_descriptor(item) for item in items]

    async def fill_control(self, handle: str, value: str) -> None:
        try:
            await self.page.locator(handle).first.fill(value, timeout=5000)
        except PlaywrightError as e:
            raise TransientAutomationError(f"Fill failed: {str(e)[:150]}") from e

    async def choose_option(self, control: ControlDescriptor, option: ControlOption) -> None:
        try:
            if control.kind == "select":
                await self.page.locator(control.handle).first.select_option(
                    value=option.value, timeout=5000
                )
            else:
                await self.page.locator(option.handle).first.click(timeout=5000)
        except PlaywrightError as e:
            raise TransientAutomationError(f"Choosing {option.text!r} failed: {str(e)[:150]}") from e

    async def upload(self, handle: str, path: str) -> None:
        try:
            await self.page.locator(handle).first.set_input_files(path, timeout=10000)
        except PlaywrightError as e:
            raise TransientAutomationError(f"Upload failed: {str(e)[:150]}") from e

    async def has_blocking_errors(self) -> bool:
        try:
            state = await self.page.evaluate(_BLOCKING_JS, [REQUIRED_SELECTOR, self.error_selector])
        except PlaywrightError:
            return False
        if state["empty"] or state["errors"]:
            log.info("Blocking form state: %d empty required, errors=%s",
                     state["empty"], state["errors"])
            return True
        return False

    async def pause(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)
