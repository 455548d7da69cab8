"""
RugCheck adapter: security assessment.

Safety score starts at 10 and loses points for each risk found:
    - Mint authority not renounced: -2
    - Freeze authority not renounced: -2
    - Top-10 holder concentration > 60%: -3 (> 40%: -1)
    - Liquidity not locked: -3
    - Suspicious name or symbol: -1
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from token_screener.config import FilterCriteria
from token_screener.models import SecurityReport

from .base import PROBE_RETRY, SourceAdapter

logger = logging.getLogger(__name__)

SUSPICIOUS_PATTERNS = ("scam", "fake", "copy", "duplicate", "💎", "🚀", "moon")
HONEYPOT_INDICATORS = ("selfdestruct", "blocktransfer", "maxsell", "blacklist")

# USDT mint, used as a known-good probe target
PROBE_MINT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"


class RugCheckAdapter(SourceAdapter[SecurityReport]):
    """Security stage."""

    service = "rugcheck"
    provider = "RugCheck"
    stage = "security"
    base_url = "https://api.rugcheck.xyz/v1"
    cache_ttl = 300.0

    #: LP locked percentage at or above which liquidity counts as locked
    locked_lp_threshold = 50.0

    async def fetch(self, address: str) -> SecurityReport:
        report = await self._call(f"/tokens/{address}/report")
        return self.build_report(address, report)

    def build_report(self, address: str, report: dict[str, Any]) -> SecurityReport:
        risks: list[str] = []
        warnings: list[str] = []
        safety_score = 10.0

        mint_renounced = report.get("mintAuthority") is None
        if not mint_renounced:
            risks.append("Mint authority not renounced - unlimited minting possible")
            safety_score -= 2

        freeze_renounced = report.get("freezeAuthority") is None
        if not freeze_renounced:
            risks.append("Freeze authority not renounced - accounts can be frozen")
            safety_score -= 2

        holders = report.get("topHolders") or []
        concentration = self._holder_concentration(holders)
        if concentration > 60:
            risks.append(f"High holder concentration: {concentration:.1f}%")
            safety_score -= 3
        elif concentration > 40:
            warnings.append(f"Moderate holder concentration: {concentration:.1f}%")
            safety_score -= 1

        liquidity_locked = self._liquidity_locked(report.get("markets") or [])
        if not liquidity_locked:
            risks.append("Liquidity not locked - rug pull risk")
            safety_score -= 3

        meta = report.get("tokenMeta") or {}
        name = meta.get("name") or ""
        symbol = meta.get("symbol") or ""
        if self._suspicious_name(name, symbol):
            warnings.append("Suspicious token name pattern detected")
            safety_score -= 1

        holder_count = int(report.get("totalHolders") or len(holders))
        honeypot = (
            holder_count < 5
            or concentration > 90
            or any(indicator in name.lower() for indicator in HONEYPOT_INDICATORS)
        )

        return SecurityReport(
            address=address,
            safety_score=max(0.0, safety_score),
            mint_authority_renounced=mint_renounced,
            freeze_authority_renounced=freeze_renounced,
            liquidity_locked=liquidity_locked,
            holder_concentration=concentration,
            honeypot_risk=honeypot,
            holder_count=holder_count,
            risks=tuple(risks),
            warnings=tuple(warnings),
        )

    @staticmethod
    def _holder_concentration(holders: list[dict[str, Any]]) -> float:
        """Share of supply held by the top 10 holders. 100 when unknown."""
        if not holders:
            return 100.0
        pcts = sorted((float(h.get("pct") or 0) for h in holders), reverse=True)
        return min(100.0, sum(pcts[:10]))

    def _liquidity_locked(self, markets: list[dict[str, Any]]) -> bool:
        locked = [float((m.get("lp") or {}).get("lpLockedPct") or 0) for m in markets]
        return bool(locked) and max(locked) >= self.locked_lp_threshold

    @staticmethod
    def _suspicious_name(name: str, symbol: str) -> bool:
        text = f"{name} {symbol}".lower()
        return any(pattern in text for pattern in SUSPICIOUS_PATTERNS)

    def evaluate(self, data: SecurityReport, filters: FilterCriteria) -> Optional[str]:
        if data.safety_score < filters.min_safety_score:
            return f"Safety score too low: {data.safety_score:g} < {filters.min_safety_score:g}"
        if not filters.allow_honeypot and data.honeypot_risk:
            return "Honeypot risk detected"
        return None

    def score(self, data: SecurityReport) -> float:
        return data.safety_score * 10

    async def probe(self) -> None:
        await self._call(
            f"/tokens/{PROBE_MINT}/report/summary",
            retry_config=PROBE_RETRY,
            timeout=self._health_timeout,
        )
