"""
Solscan adapter: holder distribution and creator risk.

Creator history is scored by a pluggable CreatorRiskStrategy. The default
strategy is deterministic: it reports rugs only for creators it has been told
about, and zero otherwise.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Mapping, Optional, Protocol

import aiohttp

from token_screener.config import FilterCriteria
from token_screener.models import CreatorProfile, HolderInfo, OwnershipData

from .base import PROBE_RETRY, USER_AGENT, SourceAdapter

logger = logging.getLogger(__name__)

HOLDER_LIMIT = 50
TOP_HOLDER_COUNT = 3

SUSPICIOUS_WALLET_PATTERNS = (
    re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.I),
    re.compile(r"^test", re.I),
    re.compile(r"^temp", re.I),
    re.compile(r"^fake", re.I),
)

PROBE_MINT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"


class CreatorRiskStrategy(Protocol):
    """Produces a creator's track record for the ownership stage."""

    async def assess(self, creator: Optional[str]) -> CreatorProfile:
        ...


class KnownCreatorRiskStrategy:
    """
    Creator risk from an operator-supplied rug ledger.

    Creators absent from the ledger get a clean profile.
    """

    def __init__(self, rug_counts: Optional[Mapping[str, int]] = None) -> None:
        self._rug_counts = dict(rug_counts or {})

    def record_rug(self, creator: str, count: int = 1) -> None:
        self._rug_counts[creator] = self._rug_counts.get(creator, 0) + count

    async def assess(self, creator: Optional[str]) -> CreatorProfile:
        rugs = self._rug_counts.get(creator, 0) if creator else 0
        tokens_created = max(rugs, 1) if creator else 0
        success_rate = (tokens_created - rugs) / tokens_created * 100 if tokens_created else 0.0
        return CreatorProfile(
            wallet=creator,
            tokens_created=tokens_created,
            rug_count=rugs,
            success_rate=success_rate,
        )


class SolscanAdapter(SourceAdapter[OwnershipData]):
    """Ownership stage."""

    service = "solscan"
    provider = "Solscan"
    stage = "ownership"
    base_url = "https://public-api.solscan.io"
    cache_ttl = 600.0

    def __init__(
        self,
        *args,
        creator_strategy: Optional[CreatorRiskStrategy] = None,
        api_key: Optional[str] = None,
        **kwargs,
    ) -> None:
        super().__init__(*args, **kwargs)
        self._creator_strategy = creator_strategy or KnownCreatorRiskStrategy()
        self._api_key = api_key

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
            if self._api_key:
                headers["token"] = self._api_key
            self._session = aiohttp.ClientSession(headers=headers)
            self._owns_session = True
        return self._session

    async def fetch(self, address: str) -> OwnershipData:
        meta = await self._call("/token/meta", params={"tokenAddress": address})
        holders_raw = await self._call(
            "/token/holders",
            params={"tokenAddress": address, "limit": HOLDER_LIMIT, "offset": 0},
        )
        creator = (meta or {}).get("creator") or None
        profile = await self._creator_strategy.assess(creator)
        return self.build_ownership(address, meta or {}, holders_raw or {}, profile)

    def build_ownership(
        self,
        address: str,
        meta: dict[str, Any],
        holders_raw: dict[str, Any],
        profile: CreatorProfile,
    ) -> OwnershipData:
        entries = holders_raw.get("data") or []
        amounts = [(h.get("owner") or h.get("address") or "", float(h.get("amount") or 0)) for h in entries]
        amounts.sort(key=lambda item: item[1], reverse=True)

        total = sum(amount for _, amount in amounts)
        holders = tuple(
            HolderInfo(owner=owner, amount=amount, percentage=(amount / total * 100) if total else 0.0)
            for owner, amount in amounts
        )

        top = holders[:TOP_HOLDER_COUNT]
        top_pct = sum(h.percentage for h in top) if total else 100.0

        return OwnershipData(
            address=address,
            creator=profile,
            holder_count=int(holders_raw.get("total") or len(holders)),
            top_holders=top,
            top_holders_percentage=min(100.0, top_pct),
            funding_pattern=self._funding_pattern(holders),
        )

    @staticmethod
    def _funding_pattern(holders: tuple[HolderInfo, ...]) -> str:
        if len(holders) < 10:
            return "suspicious"
        if holders[0].percentage > 50:
            return "suspicious"
        suspicious = sum(
            1 for h in holders
            if any(pattern.search(h.owner) for pattern in SUSPICIOUS_WALLET_PATTERNS)
        )
        if suspicious > len(holders) * 0.3:
            return "coordinated"
        return "organic"

    def evaluate(self, data: OwnershipData, filters: FilterCriteria) -> Optional[str]:
        if data.creator.rug_count > filters.max_creator_rugs:
            return f"Creator has too many rugs: {data.creator.rug_count} > {filters.max_creator_rugs}"
        if data.top_holders_percentage > filters.max_top_holders_percentage:
            return (
                f"Top holders concentration too high: "
                f"{data.top_holders_percentage:.1f}% > {filters.max_top_holders_percentage:g}%"
            )
        return None

    def score(self, data: OwnershipData) -> float:
        score = 50.0
        if data.creator.rug_count == 0:
            score += 25
        elif data.creator.rug_count <= 1:
            score += 10
        if data.top_holders_percentage < 40:
            score += 15
        elif data.top_holders_percentage < 60:
            score += 5
        if data.funding_pattern == "organic":
            score += 10
        return score

    async def probe(self) -> None:
        await self._call(
            "/token/meta",
            params={"tokenAddress": PROBE_MINT},
            retry_config=PROBE_RETRY,
            timeout=self._health_timeout,
        )
