"""
Row models for the storage layer.

Pydantic models matching the token_analyses table.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from token_screener.models import CombinedAnalysis

SCHEMA = """
CREATE TABLE IF NOT EXISTS token_analyses (
    id              BIGSERIAL PRIMARY KEY,
    address         TEXT NOT NULL UNIQUE,
    symbol          TEXT,
    overall_score   DOUBLE PRECISION NOT NULL,
    passed          BOOLEAN NOT NULL,
    failed_filters  JSONB NOT NULL DEFAULT '[]'::jsonb,
    stages          JSONB NOT NULL DEFAULT '{}'::jsonb,
    analyzed_at     TIMESTAMPTZ NOT NULL,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_token_analyses_analyzed_at
    ON token_analyses (analyzed_at DESC);
"""


class TokenAnalysisRecord(BaseModel):
    """A persisted CombinedAnalysis."""

    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    address: str
    symbol: Optional[str] = None
    overall_score: float
    passed: bool
    failed_filters: list[str] = []
    stages: dict[str, Any] = {}
    analyzed_at: datetime
    created_at: Optional[datetime] = None

    @field_validator("failed_filters", "stages", mode="before")
    @classmethod
    def _decode_json(cls, value: Any) -> Any:
        # asyncpg returns JSONB as text unless a codec is registered
        if isinstance(value, str):
            return json.loads(value)
        return value

    @classmethod
    def from_analysis(cls, analysis: CombinedAnalysis) -> "TokenAnalysisRecord":
        data = analysis.to_dict()
        return cls(
            address=analysis.address,
            symbol=analysis.symbol,
            overall_score=analysis.overall_score,
            passed=analysis.passed,
            failed_filters=list(analysis.failed_filters),
            stages=data["stages"],
            analyzed_at=analysis.timestamp,
        )
