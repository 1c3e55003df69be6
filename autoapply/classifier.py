"""Deterministic eligibility classifier: remote, exclusion, seniority, title, buckets, preferences.

Rules run in a fixed order and the first failing rule rejects with score 0.
All vocabularies and weights come from ``config/match_rules.yaml``.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any

from autoapply.config import MATCH_RULES_PATH, load_yaml
from autoapply.log import get_logger
from autoapply.models import MatchResult

log = get_logger(__name__)


def _normalize(s: str | None) -> str:
    return (s or "").lower().strip()


def _compile(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


@dataclass(frozen=True)
class Weights:
    title_points: float = 35
    bucket_points: float = 7.5
    bucket_cap: float = 45
    min_buckets: int = 2
    preference_points: float = 5
    preference_cap: float = 20
    match_threshold: int = 65
    min_description_chars: int = 50
    high_confidence_buckets: int = 4
    medium_confidence_buckets: int = 2


@dataclass(frozen=True)
class MatchRules:
    title_patterns: tuple[tuple[str, re.Pattern[str]], ...]
    excluded_titles: tuple[str, ...]
    frontend_only_titles: tuple[str, ...]
    frontend_counter_terms: tuple[str, ...]
    backend_only_titles: tuple[str, ...]
    backend_counter_terms: tuple[str, ...]
    remote_positive: re.Pattern[str]
    remote_onsite: re.Pattern[str]
    remote_location_terms: tuple[str, ...]
    seniority_title: re.Pattern[str]
    seniority_years: re.Pattern[str]
    reject_years: int
    buckets: tuple[tuple[str, re.Pattern[str]], ...]
    preferences: tuple[tuple[str, re.Pattern[str]], ...]
    weights: Weights

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MatchRules":
        remote = data.get("remote", {})
        seniority = data.get("seniority", {})
        return cls(
            title_patterns=tuple(
                (p["label"], _compile(p["pattern"])) for p in data.get("title_patterns", [])
            ),
            excluded_titles=tuple(_normalize(t) for t in data.get("excluded_titles", [])),
            frontend_only_titles=tuple(_normalize(t) for t in data.get("frontend_only_titles", [])),
            frontend_counter_terms=tuple(data.get("frontend_counter_terms", [])),
            backend_only_titles=tuple(_normalize(t) for t in data.get("backend_only_titles", [])),
            backend_counter_terms=tuple(data.get("backend_counter_terms", [])),
            remote_positive=_compile(remote["positive"]),
            remote_onsite=_compile(remote["onsite"]),
            remote_location_terms=tuple(remote.get("location_terms", [])),
            seniority_title=_compile(seniority["title"]),
            seniority_years=_compile(seniority["years"]),
            reject_years=int(seniority.get("reject_years", 6)),
            buckets=tuple((b["name"], _compile(b["pattern"])) for b in data.get("buckets", [])),
            preferences=tuple(
                (p["name"], _compile(p["pattern"])) for p in data.get("preferences", [])
            ),
            weights=Weights(**data.get("weights", {})),
        )


def load_rules(path: Path) -> MatchRules:
    return MatchRules.from_dict(load_yaml(path))


@lru_cache(maxsize=1)
def default_rules() -> MatchRules:
    return load_rules(MATCH_RULES_PATH)


# ---------------------------------------------------------------------------
# Individual rules
# ---------------------------------------------------------------------------

def check_remote(title: str, location: str | None, description: str | None,
                 rules: MatchRules) -> tuple[bool, str]:
    text = f"{title} {location or ''} {description or ''}".lower()
    has_remote = bool(rules.remote_positive.search(text))
    if rules.remote_onsite.search(text):
        return False, "Job is onsite or hybrid"
    if location:
        loc = location.lower()
        location_specific = not any(term in loc for term in rules.remote_location_terms)
        if location_specific and not has_remote:
            return False, f'Location restricted: "{location}"'
    if has_remote:
        return True, "Fully remote"
    return False, "No remote indication found"


def check_exclusion(title: str, description: str | None, rules: MatchRules) -> tuple[bool, str]:
    """Return (excluded, reason)."""
    t = _normalize(title)
    everything = f"{t} {_normalize(description)}"

    for tech in rules.excluded_titles:
        if tech in t:
            return True, f'Title contains excluded tech: "{tech}"'

    if not any(term in t for term in rules.frontend_counter_terms):
        for fe in rules.frontend_only_titles:
            if fe in t:
                return True, f'Frontend-only role: "{fe}"'

    if not any(term in everything for term in rules.backend_counter_terms):
        for be in rules.backend_only_titles:
            if be in t:
                return True, f'Backend-only role without counter-evidence: "{be}"'

    return False, ""


def required_years(description: str | None, rules: MatchRules) -> int | None:
    years = [int(m.group(1)) for m in rules.seniority_years.finditer(description or "")]
    return max(years) if years else None


def is_senior_role(title: str, description: str | None, rules: MatchRules) -> bool:
    if rules.seniority_title.search(title or ""):
        return True
    years = required_years(description, rules)
    return years is not None and years >= rules.reject_years


def match_title(title: str, rules: MatchRules) -> str | None:
    for label, pattern in rules.title_patterns:
        if pattern.search(title):
            return label
    return None


def bucket_hits(description: str, rules: MatchRules) -> tuple[list[str], list[str]]:
    hits: list[str] = []
    misses: list[str] = []
    for name, pattern in rules.buckets:
        (hits if pattern.search(description) else misses).append(name)
    return hits, misses


def preference_signals(title: str, description: str | None, rules: MatchRules) -> list[str]:
    text = f"{title} {description or ''}".lower()
    return [name for name, pattern in rules.preferences if pattern.search(text)]


def _confidence(hit_count: int, w: Weights) -> str:
    if hit_count >= w.high_confidence_buckets:
        return "high"
    if hit_count >= w.medium_confidence_buckets:
        return "medium"
    return "low"


def _round(score: float) -> int:
    return int(math.floor(score + 0.5))


def _reject(reasons: list[str], missing: list[str] | None = None,
            confidence: str = "high") -> MatchResult:
    return MatchResult(
        score=0,
        is_match=False,
        reasons=tuple(reasons),
        missing_skills=tuple(missing or ()),
        confidence=confidence,
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def prescreen(title: str, location: str | None = None,
              rules: MatchRules | None = None) -> tuple[bool, str]:
    """Rules 1-4 only, for listings where no description has been fetched yet."""
    rules = rules or default_rules()
    if not (title or "").strip():
        return False, "Empty title"
    remote, reason = check_remote(title, location, None, rules)
    if not remote:
        return False, f"Not remote: {reason}"
    return screen_title(title, rules)


def screen_title(title: str, rules: MatchRules | None = None) -> tuple[bool, str]:
    """Rules 2-4 on a bare title, e.g. the heading of an opened job page."""
    rules = rules or default_rules()
    excluded, reason = check_exclusion(title, None, rules)
    if excluded:
        return False, reason
    if is_senior_role(title, None, rules):
        return False, "Senior role"
    label = match_title(title, rules)
    if not label:
        return False, f'Title "{title}" does not match any target role'
    return True, f"Title matches: {label}"


def classify(title: str, description: str | None = None, location: str | None = None,
             rules: MatchRules | None = None) -> MatchResult:
    """Score a posting 0-100. Same inputs always give the same result."""
    rules = rules or default_rules()
    w = rules.weights
    reasons: list[str] = []

    if not (title or "").strip():
        return _reject(["Empty title"])

    # 1. Remote
    remote, reason = check_remote(title, location, description, rules)
    if not remote:
        return _reject([f"Not remote: {reason}"])
    reasons.append("Fully remote")

    # 2. Exclusion
    excluded, reason = check_exclusion(title, description, rules)
    if excluded:
        return _reject([reason])

    # 3. Seniority
    if is_senior_role(title, description, rules):
        return _reject([f"Senior role (title level or {rules.reject_years}+ years required)"])

    # 4. Title (0-35)
    label = match_title(title, rules)
    if not label:
        return _reject([f'Title "{title}" does not match any target role'])
    score = float(w.title_points)
    reasons.append(f"Title matches: {label}")

    # 5. Description buckets (0-45)
    missing: list[str] = []
    desc = description or ""
    if len(desc) > w.min_description_chars:
        hits, misses = bucket_hits(desc, rules)
        missing = misses
        confidence = _confidence(len(hits), w)
        if len(hits) < w.min_buckets:
            return _reject(
                reasons + [f"Description mentions {len(hits)}/{len(rules.buckets)} "
                           f"stack technologies (need {w.min_buckets}+)"],
                missing,
                confidence,
            )
        score += min(len(hits) * w.bucket_points, w.bucket_cap)
        reasons.append(f"Description mentions: {', '.join(hits)}")
    else:
        confidence = "low"
        reasons.append("No description available for deep validation")

    # 6. Preference bonus (0-20)
    prefs = preference_signals(title, description, rules)
    if prefs:
        score += min(len(prefs) * w.preference_points, w.preference_cap)
        reasons.append(f"Preference signals: {', '.join(prefs)}")

    final = min(_round(score), 100)
    return MatchResult(
        score=final,
        is_match=final >= w.match_threshold,
        reasons=tuple(reasons),
        missing_skills=tuple(missing),
        confidence=confidence,
    )
