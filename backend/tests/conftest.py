"""
Polar Bridge - shared test fixtures.

Everything runs against in-memory fakes: FakeChain for both gateways,
MemoryStore, StaticPriceSource and a hand-driven clock.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from polarbridge.core.config import Settings
from polarbridge.models.schemas import CanonicalEvent, CanonicalEventType
from polarbridge.services.mocks import FakeChain
from polarbridge.services.oracle import StaticPriceSource
from polarbridge.services.runtime import BridgeRuntime
from polarbridge.store.memory import MemoryStore

XLM = 10_000_000
PINR = 1_000_000

BORROWER = "GBORROWER"
DESTINATION = "5DESTINATION"


class FakeClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        DATABASE_URL=None,
        VAULT_ADDRESS="GVAULT",
        POOL_ADDRESS="5POOL",
        TREASURY_ADDRESS="GTREASURY",
        LIQUIDATOR_ADDRESS="GLIQUIDATOR",
        STATIC_PRICES={"XLM": Decimal("10")},
        FINALITY_POLL_SECONDS=0.0,
        FINALITY_TIMEOUT_SECONDS=0.002,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def source(settings):
    return FakeChain(settings.SOURCE_CHAIN, sender=settings.VAULT_ADDRESS)


@pytest.fixture
def destination(settings):
    chain = FakeChain(settings.DESTINATION_CHAIN, sender=settings.POOL_ADDRESS)
    chain.set_balance(settings.POOL_ADDRESS, settings.BORROWED_ASSET, 100_000 * PINR)
    return chain


@pytest.fixture
def prices():
    return StaticPriceSource({"XLM": Decimal("10")})


@pytest.fixture
def runtime(settings, store, source, destination, prices, clock):
    chains = {settings.SOURCE_CHAIN: source, settings.DESTINATION_CHAIN: destination}
    return BridgeRuntime(settings, store, chains, prices, clock=clock)


@pytest.fixture
def ledger(runtime):
    return runtime.ledger


@pytest.fixture
def dispatcher(runtime):
    return runtime.dispatcher


async def originate(ledger, collateral=100 * XLM, borrowed=500 * PINR, duration_days=30, **kwargs):
    """Originate a loan directly on the ledger, bypassing settlement."""
    return await ledger.originate(
        borrower=BORROWER,
        collateral_amount=collateral,
        borrowed_amount=borrowed,
        duration_days=duration_days,
        destination_address=DESTINATION,
        **kwargs,
    )


def lock_event(event_id="stellar:evt-1", amount=100 * XLM, **fields) -> CanonicalEvent:
    values = dict(
        event_type=CanonicalEventType.LOCKED,
        source_chain="stellar",
        source_event_id=event_id,
        source_tx_ref="stellar-tx-lock-1",
        amount=amount,
        asset="XLM",
        source_address=BORROWER,
        dest_address=DESTINATION,
        duration_days=30,
    )
    values.update(fields)
    return CanonicalEvent(**values)


def payback_event(event_id="polkadot:evt-1", amount=500 * PINR, **fields) -> CanonicalEvent:
    values = dict(
        event_type=CanonicalEventType.PAID_BACK,
        source_chain="polkadot",
        source_event_id=event_id,
        amount=amount,
        asset="PINR",
        source_address=BORROWER,
    )
    values.update(fields)
    return CanonicalEvent(**values)
