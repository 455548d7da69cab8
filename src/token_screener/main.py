"""
Token Screener - Main Entry Point

Discovers newly listed tokens on a cron schedule and screens each one
through security, market, routing and ownership checks.

Usage:
    python -m token_screener.main            # Run on the configured schedule
    python -m token_screener.main --once     # Run a single aggregation and exit
    python -m token_screener.main --log-level DEBUG

Environment Variables:
    LOG_LEVEL                 Logging level (DEBUG/INFO/WARNING/ERROR)
    SCHEDULE                  Cron expression (default: */5 * * * *)
    MAX_TOKENS_PER_RUN        New tokens screened per run (default: 100)
    CHAIN                     Chain id for discovery (default: solana)
    HEALTH_GATE               Minimum provider health to run: healthy/degraded
    MIN_LIQUIDITY, MIN_VOLUME, MIN_AGE_HOURS, MAX_AGE_HOURS,
    MIN_SAFETY_SCORE, MAX_SLIPPAGE, MAX_CREATOR_RUGS,
    MAX_TOP_HOLDERS_PERCENTAGE, ALLOW_HONEYPOT, REQUIRE_ROUTING,
    ALLOW_BLACKLISTED         Filter thresholds
    BATCH_SIZE, MAX_CONCURRENT, TIMEOUT_MS, RETRY_ATTEMPTS
                              Pipeline tuning
    DATABASE_URL              PostgreSQL connection string (storage is
                              disabled when unset)
    SOLSCAN_API_KEY           Optional Solscan API token
    KNOWN_RUG_CREATORS        Comma separated wallet:count pairs
    PID_FILE                  Singleton lock file (default: /tmp/token-screener.pid)
"""

from __future__ import annotations

import argparse
import asyncio
import atexit
import fcntl
import logging
import os
import signal
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

import aiohttp

# Configure logging before imports
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

from token_screener.config import AggregatorConfig, ConfigurationError
from token_screener.core import (
    EventType,
    PipelineOrchestrator,
    TokenAggregator,
    TokenRegistry,
)
from token_screener.core.events import Event
from token_screener.models import RunStatus
from token_screener.monitoring import HealthAggregator
from token_screener.sources import (
    DexScreenerAdapter,
    JupiterAdapter,
    KnownCreatorRiskStrategy,
    RateLimitedExecutor,
    RetryConfig,
    RugCheckAdapter,
    SolscanAdapter,
    TTLCache,
)
from token_screener.sources.base import USER_AGENT
from token_screener.storage import AnalysisRepository, Database, DatabaseConfig

DEFAULT_PID_FILE = "/tmp/token-screener.pid"


class SingletonError(Exception):
    """Raised when another screener instance is already running."""


@contextmanager
def singleton_lock(pid_file: str = DEFAULT_PID_FILE) -> Generator[None, None, None]:
    """
    Ensure only one screener process runs at a time.

    Holds an exclusive non-blocking flock on the PID file for the lifetime
    of the context.

    Raises:
        SingletonError: If another instance holds the lock
    """
    pid_path = Path(pid_file)

    existing_pid = None
    try:
        existing_pid = pid_path.read_text().strip()
    except FileNotFoundError:
        pass

    # "a+" so the file is not truncated before we own the lock
    fp = open(pid_path, "a+")
    try:
        fcntl.flock(fp.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        fp.close()
        detail = f" (PID: {existing_pid})" if existing_pid else ""
        raise SingletonError(f"Another screener instance is already running{detail}")

    fp.seek(0)
    fp.truncate()
    fp.write(str(os.getpid()))
    fp.flush()

    def cleanup() -> None:
        if fp.closed:
            return
        try:
            fcntl.flock(fp.fileno(), fcntl.LOCK_UN)
            fp.close()
            pid_path.unlink(missing_ok=True)
        except OSError as e:
            logger.debug(f"PID file cleanup failed: {e}")

    atexit.register(cleanup)
    try:
        logger.info(f"Acquired singleton lock (PID: {os.getpid()}, file: {pid_file})")
        yield
    finally:
        cleanup()
        atexit.unregister(cleanup)


def parse_rug_ledger(raw: str) -> dict[str, int]:
    """Parse "wallet:count,wallet:count" into a mapping."""
    ledger: dict[str, int] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        wallet, _, count = item.partition(":")
        try:
            ledger[wallet.strip()] = int(count) if count else 1
        except ValueError as e:
            raise ConfigurationError(f"Invalid KNOWN_RUG_CREATORS entry: {item!r}") from e
    return ledger


class ScreenerService:
    """
    Wires and runs all screener components.

    Owns the shared cache, executor and HTTP session, the four provider
    adapters, the health aggregator, the pipeline and the aggregator.
    """

    def __init__(
        self,
        config: AggregatorConfig,
        database_url: Optional[str] = None,
        solscan_api_key: Optional[str] = None,
        rug_ledger: Optional[dict[str, int]] = None,
    ) -> None:
        self.config = config
        self._database_url = database_url
        self._solscan_api_key = solscan_api_key
        self._rug_ledger = rug_ledger or {}
        self._shutdown_event = asyncio.Event()

        self.cache: Optional[TTLCache] = None
        self.session: Optional[aiohttp.ClientSession] = None
        self.db: Optional[Database] = None
        self.aggregator: Optional[TokenAggregator] = None
        self._adapters: list = []

    async def build(self) -> TokenAggregator:
        """Create every component. Safe to call once."""
        self.cache = TTLCache(default_ttl=300.0)
        executor = RateLimitedExecutor(
            retry_config=RetryConfig(max_retries=self.config.pipeline.retry_attempts),
        )
        self.session = aiohttp.ClientSession(
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"}
        )

        market = DexScreenerAdapter(executor, self.cache, session=self.session)
        security = RugCheckAdapter(executor, self.cache, session=self.session)
        routing = JupiterAdapter(executor, self.cache, session=self.session)
        # Solscan needs its own auth header, so it owns its session
        ownership = SolscanAdapter(
            executor,
            self.cache,
            creator_strategy=KnownCreatorRiskStrategy(self._rug_ledger),
            api_key=self._solscan_api_key,
        )
        self._adapters = [security, market, routing, ownership]

        health = HealthAggregator(self._adapters, cache=self.cache)
        pipeline = PipelineOrchestrator(
            security=security,
            market=market,
            routing=routing,
            ownership=ownership,
            config=self.config.pipeline,
            cache=self.cache,
            executor=executor,
        )
        registry = TokenRegistry(self.cache, ttl=self.config.registry_ttl)

        store = None
        if self.config.enable_database_storage and self._database_url:
            self.db = Database(DatabaseConfig(url=self._database_url))
            await self.db.initialize()
            if not await self.db.health_check():
                raise RuntimeError("Database health check failed")
            store = AnalysisRepository(self.db)
            await store.ensure_schema()
            logger.info("Database: Connected")
        else:
            logger.info("Database: Disabled")

        self.aggregator = TokenAggregator(
            config=self.config,
            discovery=market,
            pipeline=pipeline,
            health=health,
            registry=registry,
            store=store,
        )
        self.aggregator.events.subscribe(
            self._log_event,
            [EventType.TOKEN_PASSED, EventType.RUN_COMPLETE],
        )
        return self.aggregator

    @staticmethod
    def _log_event(event: Event) -> None:
        if event.type == EventType.TOKEN_PASSED:
            analysis = event.payload
            logger.info(
                f"PASSED {analysis.symbol or analysis.address} "
                f"score={analysis.overall_score:.1f}"
            )
        else:
            run = event.payload
            logger.info(
                f"Run {run.id} {run.status.value}: discovered={run.tokens_discovered} "
                f"passed={run.tokens_passed} stored={run.tokens_stored}"
            )

    async def run(self, once: bool = False) -> int:
        """Run until shutdown (or a single aggregation with once=True)."""
        logger.info("=" * 60)
        logger.info("TOKEN SCREENER")
        logger.info("=" * 60)
        logger.info(f"Chain: {self.config.chain}")
        logger.info(f"Schedule: {'once' if once else self.config.schedule}")
        logger.info("=" * 60)

        self._setup_signal_handlers()
        try:
            aggregator = await self.build()
            if once:
                record = await aggregator.run_manual_aggregation()
                return 0 if record is not None and record.status == RunStatus.COMPLETED else 1

            await aggregator.start()
            logger.info("Screener started. Press Ctrl+C to stop")
            await self._shutdown_event.wait()
            return 0
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop components in reverse order."""
        logger.info("Shutting down...")
        if self.aggregator is not None and self.aggregator.is_started:
            await self.aggregator.stop()

        for adapter in self._adapters:
            await adapter.close()
        if self.session is not None:
            await self.session.close()
            self.session = None
        if self.db is not None:
            await self.db.close()
            self.db = None
        logger.info("Shutdown complete")

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def _setup_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()

        def handle_signal(sig: signal.Signals) -> None:
            logger.info(f"Received signal {sig.name}")
            self.request_shutdown()

        try:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass


def load_env_file(path: str = ".env") -> list[str]:
    """
    Apply KEY=value lines from a dotenv file without overriding the environment.

    Accepts an optional `export ` prefix and single or double quotes. Returns
    the names that were actually set.
    """
    env_path = Path(path)
    if not env_path.is_file():
        return []

    applied: list[str] = []
    for raw in env_path.read_text().splitlines():
        entry = raw.strip()
        if entry.startswith("export "):
            entry = entry[len("export "):].lstrip()
        name, sep, value = entry.partition("=")
        name = name.strip()
        if entry.startswith("#") or not sep or not name or name in os.environ:
            continue
        os.environ[name] = value.strip().strip("\"'")
        applied.append(name)

    logger.info(f"Loaded {len(applied)} setting(s) from {env_path}")
    return applied


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Token discovery and screening service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single aggregation and exit",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level",
    )
    return parser.parse_args(argv)


async def main_async(args: argparse.Namespace) -> int:
    """Async main function."""
    try:
        config = AggregatorConfig.from_env()
        rug_ledger = parse_rug_ledger(os.environ.get("KNOWN_RUG_CREATORS", ""))
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        for error in e.errors:
            logger.error(f"  {error.get('loc')}: {error.get('msg')}")
        return 1

    service = ScreenerService(
        config,
        database_url=os.environ.get("DATABASE_URL"),
        solscan_api_key=os.environ.get("SOLSCAN_API_KEY"),
        rug_ledger=rug_ledger,
    )
    try:
        return await service.run(once=args.once)
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return 1


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    load_env_file()
    args = parse_args(argv)

    if args.log_level:
        logging.getLogger().setLevel(getattr(logging, args.log_level))

    try:
        with singleton_lock(os.environ.get("PID_FILE", DEFAULT_PID_FILE)):
            try:
                return asyncio.run(main_async(args))
            except KeyboardInterrupt:
                return 0
    except SingletonError as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
