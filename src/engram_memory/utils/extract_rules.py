"""
Rule-based enrichment for memories stored without explicit metadata.

Three independent heuristics fill in what a caller left out:

    - category: first category whose signal patterns match, else ``fact``
    - entity: first known technology keyword, else a noun phrase after
      "uses/with/via/on/for" or before "configuration/setup/server/..."
    - confidence: 0.9 for first-person statements, 0.6 for hedged ones,
      otherwise the caller's default

The entity matters most: contradiction checks only pair memories that share
an entity, so a memory left without one never takes part in them.
"""

from __future__ import annotations

import re

from ..models.validators import Category

# ---------------------------------------------------------------------------
# Category signals (checked in this order; fact is the fallback)
# ---------------------------------------------------------------------------
_CATEGORY_SIGNALS: tuple[tuple[Category, tuple[re.Pattern[str], ...]], ...] = (
    (
        Category.DECISION,
        (
            re.compile(r"\b(decided|chose|picked|went with|switched to|migrated)\b", re.IGNORECASE),
            re.compile(r"\b(because|reason|rationale|trade-?off)\b", re.IGNORECASE),
        ),
    ),
    (
        Category.PREFERENCE,
        (
            re.compile(r"\b(prefer|like|love|hate|dislike|always use|never use|favorite|avoid)\b", re.IGNORECASE),
            re.compile(r"\b(instead of|rather than|over|better than)\b", re.IGNORECASE),
        ),
    ),
    (
        Category.PATTERN,
        (
            re.compile(r"\b(usually|typically|always|every time|workflow|routine|habit)\b", re.IGNORECASE),
            re.compile(r"\b(when .+ then|if .+ then|tends to)\b", re.IGNORECASE),
        ),
    ),
    (
        Category.OUTCOME,
        (
            re.compile(r"\b(result|outcome|turned out|ended up|caused|fixed|broke|solved)\b", re.IGNORECASE),
            re.compile(r"\b(worked|failed|succeeded|improved|degraded)\b", re.IGNORECASE),
        ),
    ),
)

# Order matters: "next.js" must be tried before "node", "node.js" before "js"
TECH_KEYWORDS: tuple[str, ...] = (
    "nginx", "apache", "docker", "kubernetes", "k8s",
    "postgres", "postgresql", "mysql", "mongodb", "redis",
    "react", "vue", "angular", "svelte", "nextjs", "next.js",
    "fastify", "express", "flask", "django", "rails",
    "node.js", "nodejs", "node", "python", "java", "go", "rust",
    "aws", "azure", "gcp", "heroku", "vercel", "netlify",
    "github", "gitlab", "bitbucket",
    "tailwind", "bootstrap", "sass", "css",
    "typescript", "javascript", "js", "ts",
    "vite", "webpack", "rollup", "parcel",
    "jest", "vitest", "mocha", "cypress",
    "git", "npm", "yarn", "pnpm",
)  # fmt: skip

_KEYWORD_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = tuple(
    (kw, re.compile(rf"\b{re.escape(kw)}\b", re.IGNORECASE)) for kw in TECH_KEYWORDS
)

_ENTITY_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b(?:uses?|using|with|via|on|for)\s+([a-z][a-z0-9-]+(?:\s+[a-z][a-z0-9-]+)?)\b", re.IGNORECASE),
    re.compile(
        r"\b([a-z][a-z0-9-]+(?:\s+[a-z][a-z0-9-]+)?)\s+"
        r"(?:configuration|setup|deployment|server|database|framework|library)\b",
        re.IGNORECASE,
    ),
)

_ENTITY_STOP_WORDS = frozenset({"the", "a", "an", "this", "that", "their", "user", "users"})

_EXPLICIT_RE = re.compile(r"\b(I use|I prefer|I always|I never|my setup|my workflow)\b", re.IGNORECASE)
_HEDGED_RE = re.compile(r"\b(seems|appears|likely|probably|might|could)\b", re.IGNORECASE)

EXPLICIT_CONFIDENCE = 0.9
HEDGED_CONFIDENCE = 0.6


def detect_category(content: str) -> Category:
    """Category of the first matching signal group; ``fact`` when none match."""
    for category, patterns in _CATEGORY_SIGNALS:
        if any(p.search(content) for p in patterns):
            return category
    return Category.FACT


def extract_entity(content: str) -> str | None:
    """
    Guess what a memory is about.

    Returns a lowercase, dot-free slug (``"nodejs"``, ``"local-development"``)
    or None when nothing plausible is found.
    """
    for keyword, pattern in _KEYWORD_PATTERNS:
        if pattern.search(content):
            return keyword.lower().replace(".", "")

    for pattern in _ENTITY_PATTERNS:
        match = pattern.search(content)
        if not match:
            continue
        entity = match.group(1).lower().strip()
        if entity not in _ENTITY_STOP_WORDS and len(entity) > 2:
            return re.sub(r"\s+", "-", entity).replace(".", "")
    return None


def calculate_confidence(content: str, default: float = 0.8) -> float:
    if _EXPLICIT_RE.search(content):
        return EXPLICIT_CONFIDENCE
    if _HEDGED_RE.search(content):
        return HEDGED_CONFIDENCE
    return default
