"""Provider error taxonomy for the sources layer."""

from __future__ import annotations

from typing import Optional


class ProviderError(Exception):
    """Base exception for external provider errors. Not retried."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        service: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.service = service


class TransientProviderError(ProviderError):
    """Network failure, timeout or 5xx response. Retried with backoff."""
    pass


class RateLimitExceeded(TransientProviderError):
    """Provider answered 429."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: Optional[float] = None,
        service: Optional[str] = None,
    ):
        super().__init__(message, status_code=429, service=service)
        self.retry_after = retry_after


class ExhaustedRetries(ProviderError):
    """All retry attempts failed for a service."""

    def __init__(self, service: str, attempts: int, last_error: Optional[BaseException]):
        super().__init__(
            f"{service}: gave up after {attempts} attempts: {last_error}",
            status_code=getattr(last_error, "status_code", None),
            service=service,
        )
        self.attempts = attempts
        self.last_error = last_error
