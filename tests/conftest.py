from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from models.bidding.clock import ManualClock
from models.bidding.engine import AuctionEngine, EngineSettings
from models.bidding.events import EventBus
from models.bidding.memory import InMemoryAuctionRepository, InMemoryBidLedger

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
T1 = T0 + timedelta(hours=2)
SELLER = "seller-1"


class EventRecorder:
    """Subscriber that keeps every published event."""

    def __init__(self):
        self.events = []

    async def __call__(self, event):
        self.events.append(event)

    def of_type(self, event_type):
        return [e for e in self.events if e.type == event_type]


@pytest.fixture
def clock():
    return ManualClock(T0)


@pytest.fixture
def repository():
    return InMemoryAuctionRepository()


@pytest.fixture
def ledger():
    return InMemoryBidLedger()


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def engine(repository, ledger, clock, recorder):
    events = EventBus()
    events.subscribe(recorder)
    settings = EngineSettings(max_retries=3, retry_backoff_ms=0, store_timeout_seconds=1.0)
    return AuctionEngine(repository, ledger, clock=clock, events=events, settings=settings)


@pytest.fixture
def make_auction(engine):
    """Factory for published auctions running over [T0, T1)."""

    async def _make(
        starting_bid=1000.0,
        increment_amount=100.0,
        reserve_price=1500.0,
        start_time=T0,
        end_time=T1,
        seller_id=SELLER,
        publish=True,
    ):
        return await engine.create_auction(
            seller_id=seller_id,
            title="Vintage bicycle",
            starting_bid=starting_bid,
            reserve_price=reserve_price,
            increment_amount=increment_amount,
            start_time=start_time,
            end_time=end_time,
            publish=publish,
        )

    return _make


@pytest_asyncio.fixture
async def auction(make_auction):
    return await make_auction()
