import asyncio

import pytest

from models.bidding.engine import AuctionEngine, EngineSettings
from models.bidding.errors import AuctionConflict, AuctionUnavailable, BidTooLow
from models.entities.couchbase.auctions import AuctionStatus


async def _seed_current_bid(engine, auction_id, amount=1400):
    await engine.place_bid(auction_id, "opener", amount)


@pytest.mark.asyncio
async def test_race_higher_bid_commits_first(engine, auction, clock, repository):
    clock.advance(seconds=1)
    await _seed_current_bid(engine, auction.id)
    repository.latency = 0.001

    high = asyncio.create_task(engine.place_bid(auction.id, "bob", 1600))
    await asyncio.sleep(0)
    low = asyncio.create_task(engine.place_bid(auction.id, "alice", 1500))
    results = await asyncio.gather(high, low, return_exceptions=True)

    assert results[0].auction.data.current_bid.amount == 1600
    assert isinstance(results[1], BidTooLow)
    stored = await engine.get_auction(auction.id)
    assert [b.amount for b in stored.data.bid_history] == [1400, 1600]


@pytest.mark.asyncio
async def test_race_lower_bid_commits_first(engine, auction, clock, repository):
    clock.advance(seconds=1)
    await _seed_current_bid(engine, auction.id)
    repository.latency = 0.001

    low = asyncio.create_task(engine.place_bid(auction.id, "alice", 1500))
    await asyncio.sleep(0)
    high = asyncio.create_task(engine.place_bid(auction.id, "bob", 1600))
    results = await asyncio.gather(low, high)

    assert results[1].auction.data.current_bid.amount == 1600
    stored = await engine.get_auction(auction.id)
    assert [b.amount for b in stored.data.bid_history] == [1400, 1500, 1600]
    assert repository.write_conflicts >= 1


@pytest.mark.asyncio
async def test_many_concurrent_bidders_keep_history_monotonic(engine, make_auction, clock, repository):
    auction = await make_auction(starting_bid=100, increment_amount=10, reserve_price=0)
    clock.advance(seconds=1)
    repository.latency = 0.0005
    engine.settings = EngineSettings(max_retries=50, retry_backoff_ms=0, store_timeout_seconds=5)

    amounts = [100 + 10 * i for i in range(20)]
    results = await asyncio.gather(
        *(engine.place_bid(auction.id, f"bidder-{i}", amount) for i, amount in enumerate(amounts)),
        return_exceptions=True,
    )

    for result in results:
        assert not isinstance(result, AuctionConflict)
        if isinstance(result, Exception):
            assert isinstance(result, BidTooLow)

    stored = await engine.get_auction(auction.id)
    history = stored.data.bid_history
    assert history
    for previous, following in zip(history, history[1:]):
        assert following.amount >= previous.amount + 10
    assert stored.data.current_bid.amount == max(amounts)
    assert stored.data.current_bid.amount == history[-1].amount
    assert len({b.bid_id for b in history}) == len(history)


class AlwaysConflictingRepository:
    """Wraps a repository so every conditional write loses the race."""

    def __init__(self, inner):
        self.inner = inner
        self.attempts = 0

    def __getattr__(self, name):
        return getattr(self.inner, name)

    async def update_if_version(self, auction_id, expected_version, data):
        self.attempts += 1
        return expected_version + 1, False


@pytest.mark.asyncio
async def test_conflict_after_bounded_retries(auction, repository, ledger, clock):
    clock.advance(seconds=1)
    conflicting = AlwaysConflictingRepository(repository)
    engine = AuctionEngine(
        conflicting, ledger, clock=clock,
        settings=EngineSettings(max_retries=3, retry_backoff_ms=0),
    )

    with pytest.raises(AuctionConflict) as exc:
        await engine.place_bid(auction.id, "alice", 1000)

    assert exc.value.status_code == 409
    assert exc.value.retryable
    assert conflicting.attempts == 4
    assert (await repository.get(auction.id)).data.bid_history == []
    assert await ledger.by_auction(auction.id) == []


@pytest.mark.asyncio
async def test_slow_store_surfaces_unavailable(auction, repository, ledger, clock):
    clock.advance(seconds=1)
    repository.latency = 0.2
    engine = AuctionEngine(
        repository, ledger, clock=clock,
        settings=EngineSettings(store_timeout_seconds=0.05),
    )

    with pytest.raises(AuctionUnavailable) as exc:
        await engine.place_bid(auction.id, "alice", 1000)
    assert exc.value.status_code == 503
    assert exc.value.retryable

    repository.latency = 0
    stored = await repository.get(auction.id)
    assert stored.data.bid_history == []
    assert stored.data.status == AuctionStatus.ACTIVE


@pytest.mark.asyncio
async def test_last_second_bid_and_settlement(engine, auction, clock, repository):
    clock.advance(seconds=1)
    await engine.place_bid(auction.id, "alice", 1000)
    clock.set(auction.data.end_time)
    repository.latency = 0.001

    settle = asyncio.create_task(engine.settle_if_due(auction.id))
    late = asyncio.create_task(engine.place_bid(auction.id, "bob", 2000))
    settled, late_result = await asyncio.gather(settle, late, return_exceptions=True)

    final = await engine.get_auction(auction.id)
    assert final.data.status == AuctionStatus.UNSOLD
    assert [b.amount for b in final.data.bid_history] == [1000]
    assert isinstance(late_result, Exception)
