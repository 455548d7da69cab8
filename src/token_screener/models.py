"""
Data models shared across the screener.

These models represent:
- Candidates produced by discovery
- Per-stage results from the source adapters (Ok or Unavailable)
- The combined analysis persisted and published downstream
- Run records and rolling aggregator statistics

Stage results never carry fabricated fallback data. When a provider cannot
be reached the stage is UNAVAILABLE: filtered, score 0, no payload.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_address(address: str) -> str:
    """
    Normalize a token address for comparison and set membership.

    EVM-style hex addresses are case-insensitive and are lower-cased.
    Base58 (Solana) addresses are case-sensitive and are only trimmed.
    """
    address = address.strip()
    if address.lower().startswith("0x"):
        return address.lower()
    return address


def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value):
        return {k: _serialize(v) for k, v in asdict(value).items()}
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    return value


# =============================================================================
# Discovery
# =============================================================================


@dataclass(frozen=True)
class Candidate:
    """
    A newly discovered token under evaluation.

    Attributes:
        address: Normalized chain-unique token address
        symbol: Ticker symbol, if the provider reported one
        name: Token name, if known
        listed_at: When the pair was created on the DEX
        age_hours: Age at discovery time
        chain: Chain id (e.g. "solana")
    """
    address: str
    symbol: Optional[str] = None
    name: Optional[str] = None
    listed_at: Optional[datetime] = None
    age_hours: Optional[float] = None
    chain: str = "solana"

    def __post_init__(self):
        if not self.address or not self.address.strip():
            raise ValueError("Candidate address must not be empty")
        object.__setattr__(self, "address", normalize_address(self.address))


# =============================================================================
# Stage results
# =============================================================================


class StageStatus(str, Enum):
    """Outcome variant of a stage result."""
    OK = "ok"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class StageResult(Generic[T]):
    """
    One adapter's analysis of one candidate.

    Either OK (typed payload present, may still be filtered) or
    UNAVAILABLE (provider data could not be obtained; always filtered).
    Use the `ok()` and `unavailable()` constructors.
    """
    source: str
    status: StageStatus
    data: Optional[T] = None
    filtered: bool = False
    filter_reason: Optional[str] = None
    score: float = 0.0
    processing_time_ms: float = 0.0
    error: Optional[str] = None

    def __post_init__(self):
        if not (0.0 <= self.score <= 100.0):
            raise ValueError(f"Stage score must be between 0 and 100, got {self.score}")
        if self.status == StageStatus.UNAVAILABLE and not self.filtered:
            raise ValueError("Unavailable stage results must be filtered")

    @classmethod
    def ok(
        cls,
        source: str,
        data: T,
        score: float,
        filter_reason: Optional[str] = None,
        processing_time_ms: float = 0.0,
    ) -> "StageResult[T]":
        """Build a result from provider data; filtered when a reason is given."""
        return cls(
            source=source,
            status=StageStatus.OK,
            data=data,
            filtered=filter_reason is not None,
            filter_reason=filter_reason,
            score=max(0.0, min(100.0, score)),
            processing_time_ms=processing_time_ms,
        )

    @classmethod
    def unavailable(
        cls,
        source: str,
        reason: str,
        error: Optional[str] = None,
        processing_time_ms: float = 0.0,
    ) -> "StageResult[T]":
        return cls(
            source=source,
            status=StageStatus.UNAVAILABLE,
            filtered=True,
            filter_reason=reason,
            score=0.0,
            processing_time_ms=processing_time_ms,
            error=error,
        )

    @property
    def is_available(self) -> bool:
        return self.status == StageStatus.OK

    @property
    def passed(self) -> bool:
        return self.is_available and not self.filtered

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "status": self.status.value,
            "data": _serialize(self.data),
            "filtered": self.filtered,
            "filter_reason": self.filter_reason,
            "score": self.score,
            "processing_time_ms": self.processing_time_ms,
            "error": self.error,
        }


# =============================================================================
# Typed stage payloads
# =============================================================================


@dataclass(frozen=True)
class MarketData:
    """DexScreener pair data for a token."""
    address: str
    symbol: str
    name: str
    price_usd: float
    liquidity_usd: float
    volume_24h: float
    market_cap: float
    age_hours: float
    price_change_24h: float = 0.0
    pair_address: Optional[str] = None
    dex_id: Optional[str] = None


@dataclass(frozen=True)
class SecurityReport:
    """RugCheck security assessment. `safety_score` ranges 0-10."""
    address: str
    safety_score: float
    mint_authority_renounced: bool
    freeze_authority_renounced: bool
    liquidity_locked: bool
    holder_concentration: float
    honeypot_risk: bool
    holder_count: int = 0
    risks: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class RoutingData:
    """Jupiter routing and slippage estimate."""
    address: str
    routing_available: bool
    route_count: int
    slippage_estimate: float
    spread: float
    blacklisted: bool
    price_usd: Optional[float] = None


@dataclass(frozen=True)
class CreatorProfile:
    """Track record of the wallet that created a token."""
    wallet: Optional[str]
    tokens_created: int = 0
    rug_count: int = 0
    success_rate: float = 0.0


@dataclass(frozen=True)
class HolderInfo:
    """One entry of a token's holder list."""
    owner: str
    amount: float
    percentage: float


@dataclass(frozen=True)
class OwnershipData:
    """Solscan holder distribution and creator profile."""
    address: str
    creator: CreatorProfile
    holder_count: int
    top_holders: tuple[HolderInfo, ...]
    top_holders_percentage: float
    funding_pattern: str


# =============================================================================
# Combined analysis
# =============================================================================


@dataclass
class CombinedAnalysis:
    """
    Aggregated result of running one candidate through every stage.

    Attributes:
        address: Token address
        candidate: Discovery metadata, when the token came from discovery
        security/market/routing/ownership: Stage results (None when skipped)
        overall_score: Weighted sum of passing stages, 0-100
        passed: True iff overall_score >= threshold and failed_filters is empty
        failed_filters: Ordered "<Stage>: <reason>" labels
        skipped_stages: Stages not run because an earlier stage rejected
        processing_time_ms: Wall-clock time for the whole pipeline
        timestamp: When the analysis was produced
    """
    address: str
    candidate: Optional[Candidate] = None
    security: Optional[StageResult[SecurityReport]] = None
    market: Optional[StageResult[MarketData]] = None
    routing: Optional[StageResult[RoutingData]] = None
    ownership: Optional[StageResult[OwnershipData]] = None
    overall_score: float = 0.0
    passed: bool = False
    failed_filters: list[str] = field(default_factory=list)
    skipped_stages: list[str] = field(default_factory=list)
    processing_time_ms: float = 0.0
    timestamp: datetime = field(default_factory=utc_now)

    def stage_results(self) -> dict[str, Optional[StageResult[Any]]]:
        return {
            "security": self.security,
            "market": self.market,
            "routing": self.routing,
            "ownership": self.ownership,
        }

    @property
    def symbol(self) -> Optional[str]:
        if self.market is not None and self.market.data is not None:
            return self.market.data.symbol
        if self.candidate is not None:
            return self.candidate.symbol
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "symbol": self.symbol,
            "candidate": _serialize(self.candidate),
            "stages": {
                name: result.to_dict() if result is not None else None
                for name, result in self.stage_results().items()
            },
            "overall_score": self.overall_score,
            "passed": self.passed,
            "failed_filters": list(self.failed_filters),
            "skipped_stages": list(self.skipped_stages),
            "processing_time_ms": self.processing_time_ms,
            "timestamp": self.timestamp.isoformat(),
        }


# =============================================================================
# Runs and stats
# =============================================================================


class RunStatus(str, Enum):
    """Lifecycle status of a scheduler run."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class RunRecord:
    """One scheduler tick: discover, process, persist and emit."""
    id: str
    start_time: datetime = field(default_factory=utc_now)
    end_time: Optional[datetime] = None
    tokens_discovered: int = 0
    tokens_processed: int = 0
    tokens_passed: int = 0
    tokens_stored: int = 0
    errors: list[str] = field(default_factory=list)
    status: RunStatus = RunStatus.RUNNING

    @property
    def duration_ms(self) -> Optional[float]:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds() * 1000

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_ms": self.duration_ms,
            "tokens_discovered": self.tokens_discovered,
            "tokens_processed": self.tokens_processed,
            "tokens_passed": self.tokens_passed,
            "tokens_stored": self.tokens_stored,
            "errors": list(self.errors),
            "status": self.status.value,
        }


@dataclass
class AggregatorStats:
    """Rolling counters owned by the scheduler."""
    total_runs: int = 0
    tokens_discovered: int = 0
    tokens_processed: int = 0
    tokens_passed: int = 0
    tokens_stored: int = 0
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    average_run_time_ms: float = 0.0
    is_running: bool = False
    error_count: int = 0
    skipped_ticks: int = 0
    success_rate: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return _serialize(self)
