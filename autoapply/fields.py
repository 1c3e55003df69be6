"""Field resolution for application forms.

Maps each control the page reports onto an answer: profile data for contact
fields, the resume for file inputs, the cover letter for free-text areas, and
(budget permitting) a model answer for screening questions.
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import TYPE_CHECKING, Mapping, Sequence

from autoapply.errors import TransientAutomationError
from autoapply.log import get_logger
from autoapply.models import CandidateProfile, ControlDescriptor, ControlOption

if TYPE_CHECKING:
    from autoapply.ai import AIClient
    from autoapply.page import FormPage

log = get_logger(__name__)

# Order in which label candidates are tried.
LABEL_SOURCES = (
    "aria_label",
    "labelledby",
    "placeholder",
    "label_for",
    "enclosing_label",
    "legend",
    "nearby",
)

SKIP_KEYWORDS = (
    "email", "e-mail", "phone", "mobile", "name", "first name", "last name",
    "address", "city", "location", "linkedin", "github", "portfolio", "website",
    "resume", "cv", "cover letter", "cover_letter", "upload", "attach", "file",
    "search", "skip to",
)

TEXT_KINDS = ("text", "number", "url", "email", "tel")
CHOICE_KINDS = ("select", "radio", "checkbox")

_SALARY_TERMS = ("salary", "ctc", "compensation", "pay", "expected")
_EXPERIENCE_TERMS = ("years", "experience", "how long", "how many")
_NUMERIC_HINTS = ("years", "salary", "experience")
_COVER_TERMS = ("cover", "letter", "summary", "about", "why")

_YES = frozenset({"yes", "true", "y"})
_NO = frozenset({"no", "false", "n"})

_WS_RE = re.compile(r"\s+")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")
_TOKEN_RE = re.compile(r"[a-z0-9]+")

_QUESTION_WORDS = frozenset({
    "are", "can", "could", "did", "do", "does", "have", "has", "how", "is",
    "what", "when", "where", "which", "why", "will", "would",
})
_NAME_WORDS = frozenset({"name", "full", "your", "legal", "preferred", "candidate", "applicant"})

MAX_TEXT_ANSWER = 200
MAX_COVER_CHARS = 2000
MAX_FALLBACK_CHARS = 1000
MAX_TEXTAREAS = 2


def collapse(text: str | None) -> str:
    return _WS_RE.sub(" ", text or "").strip()


def derive_label(raw: Mapping[str, str | None]) -> str:
    """First non-empty label candidate, whitespace-collapsed."""
    for key in LABEL_SOURCES:
        value = collapse(raw.get(key))
        if value:
            return value
    return ""


def _tokens(text: str | None) -> list[str]:
    return _TOKEN_RE.findall((text or "").lower())


def looks_like_question(label: str) -> bool:
    text = label.strip().lower()
    if text.endswith("?"):
        return True
    words = _tokens(text)
    return bool(words) and words[0] in _QUESTION_WORDS


def is_skippable(label: str) -> bool:
    """Labels the profile fill already covers, or too short to be a question."""
    if len(label.strip()) < 4:
        return True
    if looks_like_question(label):
        return False
    phrase = f" {' '.join(_tokens(label))} "
    return any(f" {' '.join(_tokens(keyword))} " in phrase for keyword in SKIP_KEYWORDS)


def sanitize_answer(text: str | None) -> str:
    """Strip markdown emphasis, headings and links; force a single line."""
    if not text:
        return ""
    cleaned = text.replace("**", "").replace("*", "")
    cleaned = re.sub(r"#{1,6}\s", "", cleaned)
    cleaned = re.sub(r"\[([^\]]*)\]\([^)]*\)", r"\1", cleaned)
    cleaned = re.sub(r"\[([^\]]*)\]", r"\1", cleaned)
    cleaned = re.sub(r"\n+", " ", cleaned)
    return re.sub(r"\s{2,}", " ", cleaned).strip()


def extract_number(text: str) -> str:
    m = _NUMBER_RE.search(text or "")
    return m.group(0) if m else ""


def wants_number(label: str, kind: str) -> bool:
    lowered = label.lower()
    return kind == "number" or any(term in lowered for term in _NUMERIC_HINTS)


def numeric_answer(label: str, answer: str, kind: str = "text") -> str:
    """Coerce a free-text answer into the number a numeric field expects.

    Salary questions default to "0" (negotiable). Experience questions never
    answer "0": a listed skill counts as at least one year. Anything else
    defaults to "1".
    """
    lowered = label.lower()
    numeric = extract_number(answer)
    if any(term in lowered for term in _SALARY_TERMS):
        return numeric or "0"
    if any(term in lowered for term in _EXPERIENCE_TERMS):
        return "1" if not numeric or numeric == "0" else numeric
    return numeric or "1"


def normalize_text(value: str | None) -> str:
    return _NON_ALNUM_RE.sub(" ", (value or "").lower()).strip()


def is_blank_choice(value: str, text: str) -> bool:
    """Placeholder options such as "Select an option" or "--"."""
    if value == "":
        return True
    cleaned = normalize_text(text or value)
    return (
        not cleaned
        or cleaned.startswith("select")
        or cleaned == "please select"
        or "choose" in cleaned
    )


def score_option(option: ControlOption, answer: str) -> float:
    opt = normalize_text(option.text or option.value)
    ans = normalize_text(answer)
    if not opt or not ans:
        return 0.0
    if ans == opt:
        return 4.0

    ans_tokens = ans.split()
    opt_tokens = set(opt.split())
    if _YES & set(ans_tokens) and _YES & opt_tokens:
        return 3.0
    if _NO & set(ans_tokens) and _NO & opt_tokens:
        return 3.0

    if ans in opt or opt in ans:
        return 2.0

    hits = sum(1 for token in ans_tokens if token in opt)
    return hits / max(len(ans_tokens), 1)


def pick_best_option(options: Sequence[ControlOption], answer: str) -> ControlOption | None:
    """Highest-scoring option above zero; ties go to the earliest option."""
    if not normalize_text(answer):
        return None
    best: ControlOption | None = None
    best_score = 0.0
    for option in options:
        if is_blank_choice(option.value, option.text):
            continue
        score = score_option(option, answer)
        if score > best_score:
            best, best_score = option, score
    return best


class AnswerCache:
    """Per-application answers keyed by normalized label.

    ``limit`` caps how many model calls one application may spend; cached
    labels never count twice.
    """

    def __init__(self, ai: "AIClient | None", profile: CandidateProfile, limit: int = 10) -> None:
        self.ai = ai
        self.profile = profile
        self.limit = limit
        self.calls = 0
        self._answers: dict[str, str] = {}

    @property
    def exhausted(self) -> bool:
        return self.calls >= self.limit

    async def answer(self, label: str) -> str:
        key = normalize_text(label)
        if key in self._answers:
            return self._answers[key]
        if self.ai is None or not self.ai.enabled or self.exhausted:
            return ""
        self.calls += 1
        answer = sanitize_answer(await self.ai.answer_question(label, self.profile))
        self._answers[key] = answer
        return answer


def profile_value(control: ControlDescriptor, profile: CandidateProfile) -> str | None:
    """Profile data for contact-style fields, or None when the field is a question.

    Matching is on whole words of the label and the control's ``name`` so that
    e.g. "Ethnicity" never picks up "city" and "Company name" is not a name field.
    """
    if control.kind == "email":
        return profile.email
    if control.kind == "tel":
        return profile.phone
    if looks_like_question(control.label):
        return None

    label = _tokens(control.label)
    attr = _tokens(control.name)
    words = set(label) | set(attr)
    if "email" in words or "e-mail" in control.label.lower():
        return profile.email
    if words & {"phone", "mobile", "telephone"}:
        return profile.phone
    if "linkedin" in words:
        return profile.linkedin
    if "github" in words:
        return profile.github
    if words & {"portfolio", "website"}:
        return profile.website
    if words & {"city", "location"}:
        return profile.location

    # The label wins over the attribute; a bare "name" attribute is not enough
    # when the visible label says something else.
    tokens = label or attr
    phrase = f" {' '.join(tokens)} "
    if any(p in phrase for p in (" first name ", " firstname ", " given name ")):
        return profile.name.split()[0] if profile.name else None
    if any(p in phrase for p in (" last name ", " lastname ", " surname ", " family name ")):
        parts = profile.name.split()
        return " ".join(parts[1:]) if len(parts) > 1 else None
    if "name" in tokens and set(tokens) <= _NAME_WORDS:
        return profile.name
    return None


def is_cover_field(label: str) -> bool:
    lowered = label.lower()
    return not lowered or any(term in lowered for term in _COVER_TERMS)


class FieldResolver:
    def __init__(
        self,
        profile: CandidateProfile,
        answers: AnswerCache,
        cover_letter: str = "",
    ) -> None:
        self.profile = profile
        self.answers = answers
        self.cover_letter = cover_letter
        self.fallback_text = profile.experience_summary

    async def fill(self, page: "FormPage") -> int:
        """Fill every empty control on the current step; returns how many were set."""
        controls = await page.describe_controls()
        filled = 0
        textareas = 0
        cover_used = False
        uploaded = False

        for control in controls:
            try:
                if control.kind == "file":
                    if not uploaded and await self._upload(page, control):
                        uploaded = True
                        filled += 1
                elif control.kind == "textarea":
                    if control.value.strip() or textareas >= MAX_TEXTAREAS:
                        continue
                    text, cover_used = self._textarea_text(control, cover_used)
                    if text:
                        await page.fill_control(control.handle, text)
                        textareas += 1
                        filled += 1
                elif control.kind in TEXT_KINDS:
                    if await self._fill_text(page, control):
                        filled += 1
                elif control.kind in CHOICE_KINDS:
                    if await self._choose(page, control):
                        filled += 1
            except TransientAutomationError as exc:
                log.warning("Could not fill %r: %s", control.label[:40], str(exc)[:150])

        log.debug("Filled %d/%d controls", filled, len(controls))
        return filled

    async def _upload(self, page: "FormPage", control: ControlDescriptor) -> bool:
        path = self.profile.resume_path
        if not path or control.value or not Path(path).is_file():
            return False
        await page.upload(control.handle, path)
        log.info("Uploaded resume %s", Path(path).name)
        return True

    def _textarea_text(self, control: ControlDescriptor, cover_used: bool) -> tuple[str, bool]:
        if not cover_used and self.cover_letter and is_cover_field(control.label):
            return self.cover_letter[:MAX_COVER_CHARS], True
        return (self.fallback_text or "")[:MAX_FALLBACK_CHARS], cover_used

    async def _fill_text(self, page: "FormPage", control: ControlDescriptor) -> bool:
        if control.value.strip():
            return False
        value = profile_value(control, self.profile)
        if value:
            await page.fill_control(control.handle, value)
            return True
        label = control.label
        if not label or is_skippable(label):
            return False

        answer = await self.answers.answer(label)
        if not answer:
            return False
        if wants_number(label, control.kind):
            answer = numeric_answer(label, answer, control.kind)
            log.info("Field %r -> numeric %r", label[:60], answer)
        else:
            answer = answer[:MAX_TEXT_ANSWER]
            log.info("Field %r -> %r", label[:60], answer[:80])
        await page.fill_control(control.handle, answer)
        return True

    async def _choose(self, page: "FormPage", control: ControlDescriptor) -> bool:
        if control.value and not _blank_selection(control):
            return False
        label = control.label
        if not label or is_skippable(label):
            return False
        answer = await self.answers.answer(label)
        if not answer:
            return False
        choice = pick_best_option(control.options, answer)
        if choice is None:
            log.debug("No option of %r fits answer %r", label[:40], answer[:40])
            return False
        log.info("%s %r -> %r", control.kind.capitalize(), label[:40], choice.text or choice.value)
        await page.choose_option(control, choice)
        return True


def _blank_selection(control: ControlDescriptor) -> bool:
    if control.kind != "select":
        return False
    current = next((o for o in control.options if o.value == control.value), None)
    return is_blank_choice(control.value, current.text if current else "")

