"""
Storage Layer - Async PostgreSQL persistence for passed analyses.

Built on asyncpg. The scheduler only depends on `store(analysis)`;
AnalysisRepository is the default implementation.

Public API:
    Database, DatabaseConfig - Connection pool management
    TokenAnalysisRecord - Row model for token_analyses
    AnalysisRepository - store / get_recent / get_by_address
"""
from token_screener.storage.analysis_repo import AnalysisRepository
from token_screener.storage.database import Database, DatabaseConfig
from token_screener.storage.models import SCHEMA, TokenAnalysisRecord

__all__ = [
    "Database",
    "DatabaseConfig",
    "AnalysisRepository",
    "TokenAnalysisRecord",
    "SCHEMA",
]
