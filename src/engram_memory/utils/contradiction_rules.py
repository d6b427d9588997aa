"""
Heuristic contradiction detection between two memory texts.

Operates on memories that already share an entity and namespace, so the
question is not "same topic?" but "do these statements disagree?".

Design rationale:
    We can't run an LLM to detect contradictions, so we use an ordered list
    of independent lexical rules, each with a fixed confidence:

    1. Version mismatch           (0.85)
    2. Conflicting preferences    (0.80)
    3. Boolean flip               (0.75)
    4. Negation conflict          (0.70)
    5. Temporal supersession      (0.60)

    The first rule that fires decides the verdict. New rules are appended to
    the list without touching existing ones. These are *possible*
    contradictions: false positives and negatives are expected, which is why
    every hit is stored as ``unresolved`` for manual review.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

# Pre-compile tokenizer: case-insensitive \w+ tokens
_TOKEN_RE = re.compile(r"\w+")


def _normalize(text: str) -> str:
    return text.lower().replace("’", "'")


def tokenize(text: str) -> set[str]:
    """Tokenize text to lowercase word set."""
    return set(_TOKEN_RE.findall(_normalize(text)))


def jaccard_similarity(text_a: str, text_b: str) -> float:
    """|A ∩ B| / |A ∪ B| over word sets; 0.0 when both are empty."""
    words_a = tokenize(text_a)
    words_b = tokenize(text_b)
    union = words_a | words_b
    if not union:
        return 0.0
    return len(words_a & words_b) / len(union)


@dataclass(frozen=True, slots=True)
class ContradictionVerdict:
    """Outcome of running the rule list over one pair."""

    is_contradiction: bool
    confidence: float = 0.0
    reason: str = ""
    rule: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_contradiction": self.is_contradiction,
            "confidence": round(self.confidence, 3),
            "reason": self.reason,
            "rule": self.rule,
        }


NO_CONTRADICTION = ContradictionVerdict(is_contradiction=False)


@dataclass(frozen=True, slots=True)
class ContradictionRule:
    """One heuristic: returns a reason string when it fires, else None."""

    name: str
    confidence: float
    check: Callable[[str, str], str | None]


# ── Rule 1: version mismatch ──────────────────────────────────────────

_VERSION_RE = re.compile(r"\bversion\s+v?(\d+(?:\.\d+)*)", re.IGNORECASE)


def _check_version_mismatch(text_a: str, text_b: str) -> str | None:
    match_a = _VERSION_RE.search(text_a)
    match_b = _VERSION_RE.search(text_b)
    if not match_a or not match_b:
        return None
    if match_a.group(1) == match_b.group(1):
        return None
    return f"Version mismatch: version {match_a.group(1)} vs version {match_b.group(1)}"


# ── Rule 2: conflicting preference objects ─────────────────────────────

_PREFERENCE_RE = re.compile(
    r"\b(?:prefers?|preferred|preferring|uses?|used|using|chooses?|chose|choosing)\s+(\w+)",
    re.IGNORECASE,
)
_PREFERENCE_OVERLAP = 0.3


def _check_conflicting_preference(text_a: str, text_b: str) -> str | None:
    match_a = _PREFERENCE_RE.search(text_a)
    match_b = _PREFERENCE_RE.search(text_b)
    if not match_a or not match_b:
        return None
    object_a = match_a.group(1).lower()
    object_b = match_b.group(1).lower()
    if object_a == object_b:
        return None
    if jaccard_similarity(text_a, text_b) <= _PREFERENCE_OVERLAP:
        return None
    return f"Conflicting preferences: {object_a} vs {object_b}"


# ── Rule 3: boolean flip ───────────────────────────────────────────────

_ON_TERMS = frozenset({"enabled", "enable", "true", "on", "active", "activated", "yes"})
_OFF_TERMS = frozenset({"disabled", "disable", "false", "off", "inactive", "deactivated", "no"})
_BOOLEAN_OVERLAP = 0.5


def _strip_terms(text: str, terms: frozenset[str]) -> str:
    return " ".join(t for t in _TOKEN_RE.findall(_normalize(text)) if t not in terms)


def _check_boolean_flip(text_a: str, text_b: str) -> str | None:
    tokens_a = tokenize(text_a)
    tokens_b = tokenize(text_b)
    on_a, off_a = tokens_a & _ON_TERMS, tokens_a & _OFF_TERMS
    on_b, off_b = tokens_b & _ON_TERMS, tokens_b & _OFF_TERMS

    if on_a and off_b:
        flip = (sorted(on_a)[0], sorted(off_b)[0])
    elif off_a and on_b:
        flip = (sorted(off_a)[0], sorted(on_b)[0])
    else:
        return None

    boolean_terms = _ON_TERMS | _OFF_TERMS
    overlap = jaccard_similarity(_strip_terms(text_a, boolean_terms), _strip_terms(text_b, boolean_terms))
    if overlap <= _BOOLEAN_OVERLAP:
        return None
    return f"Boolean flip: {flip[0]} vs {flip[1]}"


# ── Rule 4: negation conflict ──────────────────────────────────────────

_NEGATION_RE = re.compile(
    r"\b(?:not|never|no|don't|doesn't|didn't|won't|can't|cannot|isn't|aren't|wasn't|"
    r"shouldn't|wouldn't|dont|doesnt|didnt|avoids?|avoiding|dislikes?|disliked)\b",
)
_NEGATION_OVERLAP = 0.6


def _check_negation_conflict(text_a: str, text_b: str) -> str | None:
    lower_a = _normalize(text_a)
    lower_b = _normalize(text_b)
    negated_a = bool(_NEGATION_RE.search(lower_a))
    negated_b = bool(_NEGATION_RE.search(lower_b))
    # Exactly one side negates
    if negated_a == negated_b:
        return None

    overlap = jaccard_similarity(_NEGATION_RE.sub(" ", lower_a), _NEGATION_RE.sub(" ", lower_b))
    if overlap <= _NEGATION_OVERLAP:
        return None
    negator = "first" if negated_a else "second"
    return f"Negation conflict: {negator} memory negates the other (overlap {overlap:.2f})"


# ── Rule 5: temporal supersession ──────────────────────────────────────

_SWITCH_RE = re.compile(r"\b(?:switched|migrated|moved)\s+(?:from\s+)?(\w+)\s+to\s+(\w+)", re.IGNORECASE)
_SWITCH_WORD_RE = re.compile(r"\b(?:switched|migrated|moved)\b", re.IGNORECASE)


def _mentions(text: str, word: str) -> bool:
    return re.search(rf"\b{re.escape(word)}\b", text, re.IGNORECASE) is not None


def _check_temporal_supersession(text_a: str, text_b: str) -> str | None:
    for switching, other in ((text_a, text_b), (text_b, text_a)):
        match = _SWITCH_RE.search(switching)
        if not match:
            continue
        old, new = match.group(1), match.group(2)
        if _mentions(other, old) and not _SWITCH_WORD_RE.search(other):
            return f"Temporal supersession: switched from {old.lower()} to {new.lower()}"
    return None


# ── Rule list ──────────────────────────────────────────────────────────

DEFAULT_RULES: tuple[ContradictionRule, ...] = (
    ContradictionRule("version_mismatch", 0.85, _check_version_mismatch),
    ContradictionRule("conflicting_preference", 0.8, _check_conflicting_preference),
    ContradictionRule("boolean_flip", 0.75, _check_boolean_flip),
    ContradictionRule("negation_conflict", 0.7, _check_negation_conflict),
    ContradictionRule("temporal_supersession", 0.6, _check_temporal_supersession),
)


def detect_contradiction(
    text_a: str,
    text_b: str,
    rules: Sequence[ContradictionRule] = DEFAULT_RULES,
) -> ContradictionVerdict:
    """
    Run *rules* in order over a pair of texts; the first hit wins.

    Args:
        text_a: Content of the first memory
        text_b: Content of the second memory
        rules: Ordered rule list (defaults to the five built-in heuristics)

    Returns:
        ContradictionVerdict; ``NO_CONTRADICTION`` when no rule fires
    """
    for rule in rules:
        reason = rule.check(text_a, text_b)
        if reason:
            return ContradictionVerdict(
                is_contradiction=True,
                confidence=rule.confidence,
                reason=reason,
                rule=rule.name,
            )
    return NO_CONTRADICTION
