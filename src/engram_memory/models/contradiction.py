"""Contradiction records: flagged pairs of memories that heuristically conflict."""

import time
from typing import Any

from pydantic import BaseModel, Field, model_validator

from .memory import Memory, float_to_iso, generate_id
from .validators import Category, ContradictionStatus, MemoryId, ResolutionAction


def pair_key(id_a: str, id_b: str) -> tuple[str, str]:
    """Order-independent key for an unordered memory pair."""
    return (id_a, id_b) if id_a <= id_b else (id_b, id_a)


class Contradiction(BaseModel):
    """A flagged conflicting memory pair awaiting (or after) manual review."""

    id: MemoryId = Field(default_factory=generate_id)
    memory1_id: MemoryId
    memory2_id: MemoryId
    confidence: float = Field(ge=0.0, le=1.0)
    reason: str
    category: Category | None = None
    entity: str | None = None
    status: ContradictionStatus = ContradictionStatus.UNRESOLVED
    detected_at: float = Field(default_factory=time.time)
    resolved_at: float | None = None
    resolution_action: ResolutionAction | None = None

    @model_validator(mode="after")
    def distinct_members(self) -> "Contradiction":
        if self.memory1_id == self.memory2_id:
            raise ValueError("a contradiction needs two different memories")
        return self

    @property
    def pair(self) -> tuple[str, str]:
        return pair_key(self.memory1_id, self.memory2_id)

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "memory1_id": self.memory1_id,
            "memory2_id": self.memory2_id,
            "confidence": self.confidence,
            "reason": self.reason,
            "category": self.category.value if self.category else None,
            "entity": self.entity,
            "status": self.status.value,
            "detected_at": self.detected_at,
            "resolved_at": self.resolved_at,
            "resolution_action": self.resolution_action.value if self.resolution_action else None,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Contradiction":
        return cls(
            id=row["id"],
            memory1_id=row["memory1_id"],
            memory2_id=row["memory2_id"],
            confidence=row["confidence"],
            reason=row["reason"],
            category=row.get("category"),
            entity=row.get("entity"),
            status=row.get("status") or ContradictionStatus.UNRESOLVED,
            detected_at=row["detected_at"],
            resolved_at=row.get("resolved_at"),
            resolution_action=row.get("resolution_action"),
        )


class ConflictView(BaseModel):
    """An unresolved contradiction joined with its two memories.

    A side is ``None`` when the memory was deleted after detection.
    """

    contradiction: Contradiction
    memory1: Memory | None = None
    memory2: Memory | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.contradiction.model_dump(mode="json"),
            "detected_at_iso": float_to_iso(self.contradiction.detected_at),
            "memory1": self.memory1.to_public_dict() if self.memory1 else None,
            "memory2": self.memory2.to_public_dict() if self.memory2 else None,
        }
