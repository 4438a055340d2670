from datetime import timedelta

import pytest

from models.bidding.memory import InMemoryBidLedger
from models.entities.couchbase.bids import BidData, BidOutcome

from conftest import T0


def _entry(auction_id="a-1", bidder_id="alice", amount=100.0, outcome=BidOutcome.ACCEPTED, seconds=0):
    return BidData(
        auction_id=auction_id,
        bidder_id=bidder_id,
        amount=amount,
        outcome=outcome,
        placed_at=T0 + timedelta(seconds=seconds),
    )


@pytest.mark.asyncio
async def test_append_is_insert_if_absent():
    ledger = InMemoryBidLedger()
    first = await ledger.append(_entry(amount=100), bid_id="bid-1")
    second = await ledger.append(_entry(amount=999, outcome=BidOutcome.REJECTED), bid_id="bid-1")

    assert second.data == first.data
    assert second.data.amount == 100
    assert len(await ledger.by_auction("a-1")) == 1


@pytest.mark.asyncio
async def test_mark_outbid_only_from_accepted():
    ledger = InMemoryBidLedger()
    await ledger.append(_entry(), bid_id="accepted")
    await ledger.append(_entry(outcome=BidOutcome.REJECTED), bid_id="rejected")

    assert await ledger.mark_outbid("accepted", T0) is True
    assert await ledger.mark_outbid("accepted", T0) is False
    assert await ledger.mark_outbid("rejected", T0) is False
    assert await ledger.mark_outbid("unknown", T0) is False

    assert (await ledger.get("accepted")).data.outcome == BidOutcome.OUTBID
    assert (await ledger.get("rejected")).data.outcome == BidOutcome.REJECTED


@pytest.mark.asyncio
async def test_queries_are_chronological():
    ledger = InMemoryBidLedger()
    await ledger.append(_entry(auction_id="a-2", seconds=30), bid_id="late")
    await ledger.append(_entry(auction_id="a-1", seconds=10), bid_id="early")
    await ledger.append(_entry(auction_id="a-1", bidder_id="bob", seconds=20), bid_id="middle")

    assert [b.id for b in await ledger.by_bidder("alice")] == ["early", "late"]
    assert [b.id for b in await ledger.by_auction("a-1")] == ["early", "middle"]
    assert [b.id for b in await ledger.by_auction("a-1", limit=1)] == ["early"]


@pytest.mark.asyncio
async def test_engine_bidder_history_across_auctions(engine, make_auction, clock):
    first = await make_auction(reserve_price=0)
    second = await make_auction(reserve_price=0, starting_bid=50)
    clock.advance(seconds=1)

    await engine.place_bid(first.id, "alice", 1000)
    clock.advance(seconds=1)
    await engine.place_bid(second.id, "alice", 50)
    clock.advance(seconds=1)
    await engine.place_bid(first.id, "bob", 1100)

    history = await engine.bids_by_bidder("alice")
    assert [(b.data.auction_id, b.data.outcome) for b in history] == [
        (first.id, BidOutcome.OUTBID),
        (second.id, BidOutcome.ACCEPTED),
    ]
    assert [b.data.bidder_id for b in await engine.bids_for_auction(first.id)] == ["alice", "bob"]
