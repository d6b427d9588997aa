"""Shared Pydantic types and validators for reuse across models.

Centralises tag normalisation, range-clamped floats, identifier
constraints, and the closed enums so every model speaks the same language.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BeforeValidator, Field

# ---------------------------------------------------------------------------
# Tag normalisation
# ---------------------------------------------------------------------------


def normalize_tags(v: Any) -> set[str]:
    """Accept ``str | Iterable | None`` and return a clean ``set[str]``.

    * ``"a, b, c"`` → ``{"a", "b", "c"}``
    * ``["a", None, " b ", "a"]`` → ``{"a", "b"}``
    * ``None`` → ``set()``
    """
    if v is None:
        return set()
    if isinstance(v, str):
        return {t.strip() for t in v.split(",") if t.strip()}
    if isinstance(v, (list, tuple, set, frozenset)):
        return {s for item in v if item is not None and (s := str(item).strip())}
    return set()


Tags = Annotated[set[str], BeforeValidator(normalize_tags)]
"""Flexible tag input: accepts str, list, set, or None and always outputs set[str]."""


# ---------------------------------------------------------------------------
# Numeric types
# ---------------------------------------------------------------------------

UnitFloat = Annotated[float, Field(ge=0.0, le=1.0)]
"""Float clamped to [0.0, 1.0] for confidences and similarities."""

SignedUnitFloat = Annotated[float, Field(ge=-1.0, le=1.0)]
"""Float in [-1.0, 1.0] for feedback scores."""

NonNegativeInt = Annotated[int, Field(ge=0)]
"""Integer ≥ 0 for counts and offsets."""

NonNegativeFloat = Annotated[float, Field(ge=0.0)]
"""Float ≥ 0 for decay rates."""


# ---------------------------------------------------------------------------
# String constraints
# ---------------------------------------------------------------------------

MemoryId = Annotated[str, Field(min_length=1)]
"""Non-empty opaque identifier."""

Namespace = Annotated[str, Field(min_length=1)]


# ---------------------------------------------------------------------------
# Closed enums
# ---------------------------------------------------------------------------


class Category(str, Enum):
    """What kind of fact a memory records. ``FACT`` is the default."""

    PREFERENCE = "preference"
    FACT = "fact"
    PATTERN = "pattern"
    DECISION = "decision"
    OUTCOME = "outcome"


# Display order used when grouping memories by category
CATEGORY_ORDER: tuple[Category, ...] = (
    Category.PREFERENCE,
    Category.FACT,
    Category.PATTERN,
    Category.DECISION,
    Category.OUTCOME,
)


class ContradictionStatus(str, Enum):
    UNRESOLVED = "unresolved"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class ResolutionAction(str, Enum):
    """How a flagged contradiction was settled."""

    KEEP_FIRST = "keep_first"  # delete memory2
    KEEP_SECOND = "keep_second"  # delete memory1
    KEEP_BOTH = "keep_both"  # acknowledge, delete nothing
    DISMISS = "dismiss"  # not a real conflict


ContextFormat = Literal["markdown", "xml", "json", "plain"]
