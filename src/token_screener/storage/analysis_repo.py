"""
Repository for persisted token analyses.

Implements the scheduler's `store(analysis)` collaborator. Re-analysing an
address replaces its previous row.
"""
from __future__ import annotations

import json
import logging
from typing import Optional

from token_screener.models import CombinedAnalysis

from .database import Database
from .models import SCHEMA, TokenAnalysisRecord

logger = logging.getLogger(__name__)


class AnalysisRepository:
    """
    Stores passed analyses in PostgreSQL.

    Usage:
        repo = AnalysisRepository(db)
        await repo.ensure_schema()
        await repo.store(analysis)
        recent = await repo.get_recent(limit=20)
    """

    table_name = "token_analyses"

    def __init__(self, db: Database) -> None:
        self.db = db

    async def ensure_schema(self) -> None:
        await self.db.execute(SCHEMA)

    async def store(self, analysis: CombinedAnalysis) -> None:
        """Upsert one analysis. Raises on database errors."""
        record = TokenAnalysisRecord.from_analysis(analysis)
        query = """
            INSERT INTO token_analyses
            (address, symbol, overall_score, passed, failed_filters, stages, analyzed_at)
            VALUES ($1, $2, $3, $4, $5::jsonb, $6::jsonb, $7)
            ON CONFLICT (address) DO UPDATE SET
                symbol = EXCLUDED.symbol,
                overall_score = EXCLUDED.overall_score,
                passed = EXCLUDED.passed,
                failed_filters = EXCLUDED.failed_filters,
                stages = EXCLUDED.stages,
                analyzed_at = EXCLUDED.analyzed_at
        """
        await self.db.execute(
            query,
            record.address,
            record.symbol,
            record.overall_score,
            record.passed,
            json.dumps(record.failed_filters),
            json.dumps(record.stages),
            record.analyzed_at,
        )
        logger.debug(f"Stored analysis for {record.address} (score={record.overall_score:.1f})")

    async def get_by_address(self, address: str) -> Optional[TokenAnalysisRecord]:
        row = await self.db.fetchrow(
            "SELECT * FROM token_analyses WHERE address = $1", address
        )
        return TokenAnalysisRecord(**dict(row)) if row is not None else None

    async def get_recent(self, limit: int = 50, passed_only: bool = True) -> list[TokenAnalysisRecord]:
        """Newest analyses first."""
        if passed_only:
            query = """
                SELECT * FROM token_analyses
                WHERE passed = TRUE
                ORDER BY analyzed_at DESC
                LIMIT $1
            """
        else:
            query = "SELECT * FROM token_analyses ORDER BY analyzed_at DESC LIMIT $1"
        rows = await self.db.fetch(query, limit)
        return [TokenAnalysisRecord(**dict(row)) for row in rows]

    async def count(self) -> int:
        return await self.db.fetchval("SELECT COUNT(*) FROM token_analyses")
