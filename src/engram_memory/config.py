"""Runtime configuration.

Each concern gets its own ``BaseSettings`` class with an ``ENGRAM_<AREA>_``
environment prefix so deployments can override a single knob without a
config file. The root :class:`Settings` groups them and is exposed as the
module-level ``settings`` instance.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RecallSettings(BaseSettings):
    """Scoring weights and defaults for hybrid recall."""

    model_config = SettingsConfigDict(env_prefix="ENGRAM_RECALL_")

    limit: int = Field(default=5, ge=0)
    threshold: float = Field(default=0.3, ge=0.0)
    fts_candidates: int = Field(default=20, ge=1)
    default_namespace: str = Field(default="default", min_length=1)

    similarity_weight: float = Field(default=0.5, ge=0.0, le=1.0)
    recency_weight: float = Field(default=0.15, ge=0.0, le=1.0)
    confidence_weight: float = Field(default=0.2, ge=0.0, le=1.0)
    access_weight: float = Field(default=0.05, ge=0.0, le=1.0)
    fts_boost: float = Field(default=0.1, ge=0.0, le=1.0)


class ConsolidationSettings(BaseSettings):
    """Thresholds for dedup merge, decay and stale tagging."""

    model_config = SettingsConfigDict(env_prefix="ENGRAM_CONSOLIDATION_")

    duplicate_threshold: float = Field(default=0.92, ge=0.0, le=1.0)
    decay_floor: float = Field(default=0.1, ge=0.0, le=1.0)
    decay_min_change: float = Field(default=0.01, ge=0.0, le=1.0)
    stale_confidence: float = Field(default=0.15, ge=0.0, le=1.0)
    stale_age_days: float = Field(default=90.0, ge=0.0)
    proactive_window: int = Field(default=50, ge=1)


class AnalyticsSettings(BaseSettings):
    """Defaults for read-only reports."""

    model_config = SettingsConfigDict(env_prefix="ENGRAM_ANALYTICS_")

    cluster_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    stale_days: int = Field(default=30, ge=0)
    page_size: int = Field(default=50, ge=1, le=1000)
    trend_days: int = Field(default=30, ge=1, le=365)


class FeedbackSettings(BaseSettings):
    """Confidence nudges driven by helpful/unhelpful votes."""

    model_config = SettingsConfigDict(env_prefix="ENGRAM_FEEDBACK_")

    min_votes: int = Field(default=5, ge=1)
    penalty: float = Field(default=0.1, ge=0.0, le=1.0)
    reward: float = Field(default=0.05, ge=0.0, le=1.0)
    floor: float = Field(default=0.1, ge=0.0, le=1.0)


class EmbeddingSettings(BaseSettings):
    """Sentence-transformers model used by the default embedding provider."""

    model_config = SettingsConfigDict(env_prefix="ENGRAM_EMBEDDING_")

    model_name: str = "sentence-transformers/all-MiniLM-L6-v2"
    dimension: int = Field(default=384, ge=1)
    device: str | None = None


class StorageSettings(BaseSettings):
    """Location of the SQLite record store."""

    model_config = SettingsConfigDict(env_prefix="ENGRAM_STORAGE_")

    database_path: Path = Path.home() / ".engram" / "memory.db"


class IngestSettings(BaseSettings):
    """Insert-time dedup thresholds and defaults for new memories."""

    model_config = SettingsConfigDict(env_prefix="ENGRAM_INGEST_")

    reject_threshold: float = Field(default=0.95, ge=0.0, le=1.0)
    merge_threshold: float = Field(default=0.92, ge=0.0, le=1.0)
    default_confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    default_decay_rate: float = Field(default=0.01, ge=0.0)


class Settings(BaseSettings):
    """Root settings object grouping every concern."""

    recall: RecallSettings = Field(default_factory=RecallSettings)
    consolidation: ConsolidationSettings = Field(default_factory=ConsolidationSettings)
    analytics: AnalyticsSettings = Field(default_factory=AnalyticsSettings)
    feedback: FeedbackSettings = Field(default_factory=FeedbackSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    ingest: IngestSettings = Field(default_factory=IngestSettings)


settings = Settings()
