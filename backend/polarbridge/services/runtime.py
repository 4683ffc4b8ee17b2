"""
Polar Bridge - Runtime

Wires settings, store, chain clients and components, and owns start/stop
of every periodic job:

    watch:<source>       lock events          -> dispatcher
    watch:<destination>  payback events       -> dispatcher
    settlement_retry     backoff / restart sweep
    accrual              daily interest & late fees
    liquidation          health factor & deadline scan
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from polarbridge.bridges.chain import ChainClient, HttpChainClient
from polarbridge.bridges.oracle_client import CoinGeckoPriceSource
from polarbridge.core.config import Settings
from polarbridge.core.errors import ChainCallFailed, ErrorKind
from polarbridge.models.schemas import CanonicalEventType, utc_now
from polarbridge.services.accrual import AccrualScheduler
from polarbridge.services.dispatcher import SettlementDispatcher
from polarbridge.services.liquidation import LiquidationScanner
from polarbridge.services.loan_ledger import LoanLedger
from polarbridge.services.oracle import PriceOracle, PriceSource, StaticPriceSource
from polarbridge.services.scheduler import PeriodicJob
from polarbridge.services.watcher import ChainWatcher
from polarbridge.store.memory import MemoryStore

logger = logging.getLogger(__name__)


class BridgeRuntime:

    def __init__(
        self,
        settings: Settings,
        store,
        chains: dict[str, ChainClient],
        price_source: PriceSource,
        clock: Callable[[], datetime] = utc_now,
        engine=None,
    ):
        self.settings = settings
        self.store = store
        self.chains = chains
        self.price_source = price_source
        self.engine = engine
        policy = settings.LENDING

        self.oracle = PriceOracle(price_source, settings.PRICE_CACHE_TTL_SECONDS, clock)
        self.ledger = LoanLedger(
            store=store,
            oracle=self.oracle,
            policy=policy,
            asset_scales=settings.ASSET_SCALES,
            collateral_asset=settings.COLLATERAL_ASSET,
            borrowed_asset=settings.BORROWED_ASSET,
            source_chain=settings.SOURCE_CHAIN,
            treasury_address=settings.TREASURY_ADDRESS,
            liquidator_address=settings.LIQUIDATOR_ADDRESS,
            clock=clock,
        )
        self.dispatcher = SettlementDispatcher(store, chains, self.ledger, settings, clock=clock)
        self.ledger.settlements = self.dispatcher

        self.default_assets = {
            CanonicalEventType.LOCKED: settings.COLLATERAL_ASSET,
            CanonicalEventType.PAID_BACK: settings.BORROWED_ASSET,
        }
        self.watchers = [
            ChainWatcher(
                chain=chain,
                client=chains[chain],
                dispatcher=self.dispatcher,
                store=store,
                default_assets=self.default_assets,
                page_size=settings.WATCH_PAGE_SIZE,
                seen_cache_size=settings.SEEN_CACHE_SIZE,
            )
            for chain in (settings.SOURCE_CHAIN, settings.DESTINATION_CHAIN)
            if chain in chains
        ]
        self.accrual = AccrualScheduler(self.ledger, clock=clock)
        self.scanner = LiquidationScanner(self.ledger, self.oracle, clock=clock)

        self.jobs = [
            PeriodicJob(f"watch:{w.chain}", w.tick, settings.WATCH_INTERVAL_SECONDS, clock)
            for w in self.watchers
        ]
        self.jobs += [
            PeriodicJob(
                "settlement_retry",
                self.dispatcher.retry_due,
                settings.SETTLEMENT_RETRY_INTERVAL_SECONDS,
                clock,
            ),
            PeriodicJob("accrual", self.accrual.run, policy.accrual_interval_seconds, clock),
            PeriodicJob(
                "liquidation", self.scanner.scan, policy.liquidation_scan_interval_seconds, clock
            ),
        ]

    @classmethod
    def from_settings(cls, settings: Settings) -> "BridgeRuntime":
        engine = None
        if settings.DATABASE_URL:
            from polarbridge.db.session import build_engine, build_session_maker
            from polarbridge.store.sql import SqlStore

            engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)
            store = SqlStore(build_session_maker(engine))
        else:
            logger.warning("[RUNTIME] DATABASE_URL not set, using in-memory store")
            store = MemoryStore()

        chains: dict[str, ChainClient] = {
            settings.SOURCE_CHAIN: HttpChainClient(
                settings.SOURCE_CHAIN,
                settings.SOURCE_GATEWAY_URL,
                api_key=settings.GATEWAY_API_KEY,
                timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            ),
            settings.DESTINATION_CHAIN: HttpChainClient(
                settings.DESTINATION_CHAIN,
                settings.DESTINATION_GATEWAY_URL,
                api_key=settings.GATEWAY_API_KEY,
                timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            ),
        }

        if settings.STATIC_PRICES:
            price_source: PriceSource = StaticPriceSource(settings.STATIC_PRICES)
        else:
            price_source = CoinGeckoPriceSource(
                settings.ORACLE_BASE_URL,
                settings.ORACLE_ASSET_IDS,
                settings.QUOTE_CURRENCY,
                timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            )
        return cls(settings, store, chains, price_source, engine=engine)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        await self.ledger.reconcile_releases()
        for job in self.jobs:
            job.start()
        logger.info(f"[RUNTIME] Started {len(self.jobs)} jobs")

    async def stop(self) -> None:
        for job in self.jobs:
            await job.stop()
        await self.dispatcher.shutdown()
        for client in self.chains.values():
            await client.aclose()
        aclose = getattr(self.price_source, "aclose", None)
        if aclose is not None:
            await aclose()
        await self.store.close()
        if self.engine is not None:
            await self.engine.dispose()
        logger.info("[RUNTIME] Stopped")

    def job(self, name: str) -> Optional[PeriodicJob]:
        return next((j for j in self.jobs if j.name == name), None)

    def watcher(self, chain: str) -> ChainWatcher:
        watcher = next((w for w in self.watchers if w.chain == chain), None)
        if watcher is None:
            raise ChainCallFailed(f"No watcher for chain {chain}", kind=ErrorKind.PERMANENT)
        return watcher

    @property
    def healthy(self) -> bool:
        return all(job.healthy for job in self.jobs) and self.dispatcher.last_fatal is None

    def health(self) -> dict:
        fatal = self.dispatcher.last_fatal
        return {
            "status": "healthy" if self.healthy else "halted",
            "jobs": [job.health.model_dump(mode="json") for job in self.jobs],
            "dispatcher_error": repr(fatal) if fatal else None,
        }
