"""
Token Screener.

Scheduled discovery of newly listed Solana tokens and multi-source screening.
Candidates are discovered on DexScreener, then run through independent signal
sources (RugCheck, DexScreener, Jupiter, Solscan) and only the ones that pass
every configured filter are persisted and announced.
"""

__version__ = "0.1.0"
