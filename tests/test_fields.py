from __future__ import annotations

from dataclasses import replace

from autoapply.fields import (
    AnswerCache,
    FieldResolver,
    derive_label,
    is_blank_choice,
    is_skippable,
    numeric_answer,
    pick_best_option,
    profile_value,
    sanitize_answer,
)
from autoapply.models import ControlDescriptor, ControlOption


def _options(*pairs: tuple[str, str]) -> tuple[ControlOption, ...]:
    return tuple(ControlOption(value=v, text=t) for v, t in pairs)


def test_label_sources_are_tried_in_order():
    raw = {"aria_label": "  ", "labelledby": None, "placeholder": "Your   answer", "nearby": "x"}
    assert derive_label(raw) == "Your answer"
    assert derive_label({}) == ""


def test_skippable_labels():
    assert is_skippable("Age")
    assert is_skippable("Email address")
    assert is_skippable("Upload your CV")
    assert not is_skippable("How many years of React experience do you have?")


def test_sanitize_strips_markdown_and_newlines():
    raw = "**Yes**, see [my work](https://example.com)\n\n## thanks"
    assert sanitize_answer(raw) == "Yes, see my work thanks"
    assert sanitize_answer(None) == ""


def test_numeric_answers():
    assert numeric_answer("Expected salary (USD)", "Negotiable") == "0"
    assert numeric_answer("Expected salary (USD)", "About 50000 a year") == "50000"
    assert numeric_answer("Years of experience with Node.js", "0") == "1"
    assert numeric_answer("Years of experience with Node.js", "none") == "1"
    assert numeric_answer("Years of experience with React", "3 years") == "3"
    assert numeric_answer("Number of references", "2") == "2"
    assert numeric_answer("Number of references", "a couple") == "1"


def test_blank_choices():
    assert is_blank_choice("", "Yes")
    assert is_blank_choice("0", "Select an option")
    assert is_blank_choice("x", "-- Choose --")
    assert not is_blank_choice("yes", "Yes")


def test_pick_best_option_prefers_exact_then_yes_no():
    options = _options(("", "Select an option"), ("yes", "Yes"), ("no", "No"))
    assert pick_best_option(options, "Yes, I am authorized to work").value == "yes"
    assert pick_best_option(options, "No").value == "no"
    assert pick_best_option(options, "") is None


def test_pick_best_option_tie_goes_to_first():
    options = _options(("a", "Remote work"), ("b", "Remote office"))
    assert pick_best_option(options, "remote").value == "a"


def test_pick_best_option_no_fit():
    options = _options(("a", "Red"), ("b", "Blue"))
    assert pick_best_option(options, "green") is None


def test_profile_value_by_name_and_label(profile):
    email = ControlDescriptor(kind="text", label="Contact", handle="h", name="applicant_email")
    assert profile_value(email, profile) == "jane@example.com"
    first = ControlDescriptor(kind="text", label="First name", handle="h")
    last = ControlDescriptor(kind="text", label="Last name", handle="h")
    assert profile_value(first, profile) == "Jane"
    assert profile_value(last, profile) == "Doe"
    question = ControlDescriptor(kind="text", label="Why do you want this job?", handle="h")
    assert profile_value(question, profile) is None


def test_profile_value_matches_whole_words_only(profile):
    def value(label, name=""):
        return profile_value(ControlDescriptor(kind="text", label=label, handle="h", name=name), profile)

    assert value("Ethnicity") is None
    assert value("Company name", name="company_name") is None
    assert value("Name of your current employer") is None
    assert value("Are you willing to relocate to this location?") is None
    assert value("Current city") == "Remote"
    assert value("Full name") == "Jane Doe"
    assert value("", name="firstName") == "Jane"
    assert value("Surname") == "Doe"


def test_questions_are_never_skipped():
    assert not is_skippable("Are you willing to relocate to this location?")
    assert not is_skippable("Ethnicity")
    assert is_skippable("Current city")


async def test_answer_cache_reuses_answers_and_respects_budget(profile, fake_ai):
    fake_ai.answers = {"react": "Three years", "visa": "No"}
    cache = AnswerCache(fake_ai, profile, limit=1)
    assert await cache.answer("Years of React?") == "Three years"
    assert await cache.answer("years of react") == "Three years"
    assert cache.calls == 1
    assert cache.exhausted
    assert await cache.answer("Do you need a visa?") == ""
    assert fake_ai.questions == ["Years of React?"]


async def test_answer_cache_without_ai(profile):
    assert await AnswerCache(None, profile).answer("Anything at all?") == ""


async def test_fill_resolves_every_kind(page, profile, fake_ai, tmp_path):
    resume = tmp_path / "resume.pdf"
    resume.write_bytes(b"%PDF-1.4")
    profile = replace(profile, resume_path=str(resume))
    fake_ai.answers = {
        "years": "I have 3 years",
        "authorized": "Yes",
        "hear about": "A friend told me",
    }
    page.controls = [
        ControlDescriptor(kind="email", label="Email", handle="email"),
        ControlDescriptor(kind="text", label="Phone number", handle="phone", value="+1 000"),
        ControlDescriptor(kind="file", label="Resume", handle="resume"),
        ControlDescriptor(kind="file", label="Other document", handle="other"),
        ControlDescriptor(kind="textarea", label="Cover letter", handle="cover"),
        ControlDescriptor(kind="textarea", label="Tell us about a project", handle="about"),
        ControlDescriptor(kind="textarea", label="Anything else?", handle="extra"),
        ControlDescriptor(kind="number", label="Years of React experience", handle="years"),
        ControlDescriptor(kind="text", label="How did you hear about us?", handle="source"),
        ControlDescriptor(kind="select", label="Are you authorized to work?", handle="auth",
                          options=_options(("", "Select an option"), ("y", "Yes"), ("n", "No"))),
    ]
    resolver = FieldResolver(profile, AnswerCache(fake_ai, profile), "Dear team")

    filled = await resolver.fill(page)

    assert page.filled["email"] == "jane@example.com"
    assert "phone" not in page.filled
    assert page.uploads == [("resume", str(resume))]
    assert page.filled["cover"] == "Dear team"
    assert page.filled["about"] == profile.experience_summary
    assert "extra" not in page.filled
    assert page.filled["years"] == "3"
    assert page.filled["source"] == "A friend told me"
    assert page.chosen == [("Are you authorized to work?", "y")]
    assert filled == 7


async def test_fill_skips_upload_when_resume_missing(page, profile):
    page.controls = [ControlDescriptor(kind="file", label="Resume", handle="resume")]
    resolver = FieldResolver(profile, AnswerCache(None, profile))
    assert await resolver.fill(page) == 0
    assert page.uploads == []
