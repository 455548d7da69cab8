"""
Core Layer - Screening pipeline and scheduling.

This module provides:
    - PipelineOrchestrator: Fixed-order stages with short-circuit and timeout,
      bounded worker pool for batches
    - TokenAggregator: Cron-driven discover -> process -> persist loop with
      health gating and single-run mutual exclusion
    - TokenRegistry: Processed/blacklisted sets persisted through the cache
    - EventDispatcher: Typed notifications (run:start, token:passed, ...)

Stage order and weights:
    security 30 -> market 25 -> routing 25 -> ownership 20
"""

from .events import Event, EventDispatcher, EventType, Listener
from .pipeline import (
    STAGE_LABELS,
    STAGE_ORDER,
    STAGE_WEIGHTS,
    PipelineOrchestrator,
    PipelineStats,
    StageAnalyzer,
    TimeoutExceeded,
    compute_overall_score,
)
from .registry import BLACKLISTED_KEY, PROCESSED_KEY, TokenRegistry
from .scheduler import (
    AnalysisStore,
    DiscoverySource,
    RunCancelled,
    RunPhase,
    TokenAggregator,
    UpstreamUnhealthy,
)

__all__ = [
    # Pipeline
    "PipelineOrchestrator",
    "PipelineStats",
    "StageAnalyzer",
    "TimeoutExceeded",
    "compute_overall_score",
    "STAGE_ORDER",
    "STAGE_WEIGHTS",
    "STAGE_LABELS",
    # Scheduler
    "TokenAggregator",
    "RunPhase",
    "UpstreamUnhealthy",
    "RunCancelled",
    "DiscoverySource",
    "AnalysisStore",
    # Registry
    "TokenRegistry",
    "PROCESSED_KEY",
    "BLACKLISTED_KEY",
    # Events
    "EventDispatcher",
    "EventType",
    "Event",
    "Listener",
]
