"""
Monitoring Layer - Provider health.

This module provides:
    - HealthAggregator: Concurrent provider probes with a cached report
    - HealthStatus: Health status enum (HEALTHY, DEGRADED, UNHEALTHY)
    - SystemHealthReport: Overall health with per-service results

Each probe is contained individually: one provider raising or hanging
never prevents collecting the others' results.
"""

from .health_checker import (
    HEALTH_CACHE_KEY,
    HealthAggregator,
    HealthProbe,
    HealthStatus,
    SystemHealthReport,
)

__all__ = [
    "HealthAggregator",
    "HealthProbe",
    "HealthStatus",
    "SystemHealthReport",
    "HEALTH_CACHE_KEY",
]
