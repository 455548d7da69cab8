"""
Integration tests for the token screener.

These tests verify that the adapters, health checks, pipeline and
aggregator work together. Provider HTTP calls are answered in memory,
so no network or database is needed.

Run with:
    pytest tests/integration/ -v -m integration

Skip with:
    pytest -m "not integration"
"""
