"""
Configuration for the token screener.

All settings are pydantic models validated once at construction. Invalid
values raise ConfigurationError before anything is started.

Environment Variables:
    SCHEDULE                     Cron expression for aggregation runs (default: */5 * * * *)
    MAX_TOKENS_PER_RUN           Cap on new candidates per run (default: 100)
    CHAIN                        Chain id to discover on (default: solana)
    HEALTH_GATE                  Minimum health to start a run: healthy|degraded (default: degraded)
    ENABLE_DATABASE_STORAGE      Persist passing analyses (default: true)
    ENABLE_REAL_TIME_EVENTS      Emit token:passed events (default: true)
    BATCH_SIZE                   Pipeline chunk size (default: 20)
    MAX_CONCURRENT               Pipeline worker pool size (default: 10)
    TIMEOUT_MS                   Per-token timeout in milliseconds (default: 90000)
    MIN_LIQUIDITY                Minimum liquidity in USD (default: 5000)
    MIN_VOLUME                   Minimum 24h volume in USD (default: 1000)
    MIN_AGE_HOURS / MAX_AGE_HOURS  Token age window in hours (default: 0.5 / 24)
    MIN_SAFETY_SCORE             Minimum RugCheck safety score 0-10 (default: 6)
    MAX_SLIPPAGE                 Maximum slippage percentage (default: 10)
    MAX_CREATOR_RUGS             Maximum creator rug count (default: 2)
    MAX_TOP_HOLDERS_PERCENTAGE   Maximum top-3 holder share (default: 60)
"""
from __future__ import annotations

import os
from typing import Any, Literal, Optional

from croniter import croniter
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator


class ConfigurationError(Exception):
    """Raised when configuration values are missing or invalid."""

    def __init__(self, message: str, errors: Optional[list[dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []


def _build(model: type[BaseModel], **values: Any) -> Any:
    """Construct a config model, converting validation failures."""
    try:
        return model(**values)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid {model.__name__}: {e}", errors=e.errors()
        ) from e


class FilterCriteria(BaseModel):
    """Pass/fail thresholds applied by the source adapters."""

    model_config = ConfigDict(frozen=True)

    # Market (DexScreener)
    min_liquidity: float = Field(default=5000.0, ge=0)
    min_volume: float = Field(default=1000.0, ge=0)
    min_age_hours: float = Field(default=0.5, ge=0)
    max_age_hours: float = Field(default=24.0, gt=0)

    # Security (RugCheck)
    min_safety_score: float = Field(default=6.0, ge=0, le=10)
    allow_honeypot: bool = False

    # Routing (Jupiter)
    require_routing: bool = True
    max_slippage: float = Field(default=10.0, ge=0, le=100)
    allow_blacklisted: bool = False

    # Ownership (Solscan)
    max_creator_rugs: int = Field(default=2, ge=0)
    max_top_holders_percentage: float = Field(default=60.0, ge=0, le=100)

    @model_validator(mode="after")
    def _check_age_window(self) -> "FilterCriteria":
        if self.min_age_hours > self.max_age_hours:
            raise ValueError(
                f"min_age_hours ({self.min_age_hours}) exceeds max_age_hours ({self.max_age_hours})"
            )
        return self

    @classmethod
    def create(cls, **values: Any) -> "FilterCriteria":
        return _build(cls, **values)


class PipelineConfig(BaseModel):
    """Worker pool and per-token limits for the pipeline orchestrator."""

    model_config = ConfigDict(frozen=True)

    batch_size: int = Field(default=20, gt=0)
    max_concurrent: int = Field(default=10, gt=0)
    timeout_ms: int = Field(default=90_000, gt=0)
    retry_attempts: int = Field(default=2, ge=0)
    cache_results: bool = True
    cache_ttl: float = Field(default=600.0, gt=0)
    pass_threshold: float = Field(default=60.0, ge=0, le=100)

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0

    @classmethod
    def create(cls, **values: Any) -> "PipelineConfig":
        return _build(cls, **values)


class AggregatorConfig(BaseModel):
    """Complete scheduler configuration."""

    model_config = ConfigDict(frozen=True)

    schedule: str = "*/5 * * * *"
    max_tokens_per_run: int = Field(default=100, gt=0)
    chain: str = "solana"
    filters: FilterCriteria = Field(default_factory=FilterCriteria)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)

    enable_real_time_events: bool = True
    enable_database_storage: bool = True
    health_gate: Literal["healthy", "degraded"] = "degraded"

    run_history_size: int = Field(default=100, gt=0)
    run_time_window: int = Field(default=50, gt=0)
    registry_ttl: float = Field(default=86_400.0, gt=0)
    stop_grace_seconds: float = Field(default=30.0, ge=0)

    @field_validator("schedule")
    @classmethod
    def _check_schedule(cls, value: str) -> str:
        if not croniter.is_valid(value):
            raise ValueError(f"Invalid cron expression: {value!r}")
        return value

    @classmethod
    def create(cls, **values: Any) -> "AggregatorConfig":
        return _build(cls, **values)

    def with_changes(self, **changes: Any) -> "AggregatorConfig":
        """
        Return a re-validated copy with the given top-level changes applied.

        Nested `filters` and `pipeline` may be passed as dicts of partial
        changes; they are merged onto the current values.
        """
        values = self.model_dump()
        for key, value in changes.items():
            if key not in values:
                raise ConfigurationError(f"Unknown configuration key: {key}")
            if key in ("filters", "pipeline"):
                if isinstance(value, BaseModel):
                    value = value.model_dump()
                merged = dict(values[key])
                merged.update(value)
                values[key] = merged
            else:
                values[key] = value
        return _build(AggregatorConfig, **values)

    @classmethod
    def from_env(cls) -> "AggregatorConfig":
        """Load configuration from environment variables."""
        env = os.environ
        try:
            filters = dict(
                min_liquidity=float(env.get("MIN_LIQUIDITY", "5000")),
                min_volume=float(env.get("MIN_VOLUME", "1000")),
                min_age_hours=float(env.get("MIN_AGE_HOURS", "0.5")),
                max_age_hours=float(env.get("MAX_AGE_HOURS", "24")),
                min_safety_score=float(env.get("MIN_SAFETY_SCORE", "6")),
                allow_honeypot=env.get("ALLOW_HONEYPOT", "false").lower() == "true",
                require_routing=env.get("REQUIRE_ROUTING", "true").lower() == "true",
                max_slippage=float(env.get("MAX_SLIPPAGE", "10")),
                allow_blacklisted=env.get("ALLOW_BLACKLISTED", "false").lower() == "true",
                max_creator_rugs=int(env.get("MAX_CREATOR_RUGS", "2")),
                max_top_holders_percentage=float(env.get("MAX_TOP_HOLDERS_PERCENTAGE", "60")),
            )
            pipeline = dict(
                batch_size=int(env.get("BATCH_SIZE", "20")),
                max_concurrent=int(env.get("MAX_CONCURRENT", "10")),
                timeout_ms=int(env.get("TIMEOUT_MS", "90000")),
                retry_attempts=int(env.get("RETRY_ATTEMPTS", "2")),
            )
            max_tokens = int(env.get("MAX_TOKENS_PER_RUN", "100"))
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric environment value: {e}") from e

        return cls.create(
            schedule=env.get("SCHEDULE", "*/5 * * * *"),
            max_tokens_per_run=max_tokens,
            chain=env.get("CHAIN", "solana"),
            filters=filters,
            pipeline=pipeline,
            enable_real_time_events=env.get("ENABLE_REAL_TIME_EVENTS", "true").lower() == "true",
            enable_database_storage=env.get("ENABLE_DATABASE_STORAGE", "true").lower() == "true",
            health_gate=env.get("HEALTH_GATE", "degraded").lower(),
        )
