import pytest

from models.bidding.errors import (
    AuctionClosed,
    AuctionConflict,
    AuctionNotFound,
    AuctionNotOpen,
    AuctionUnavailable,
    BelowStartingBid,
    BiddingError,
    BidTooLow,
    InvalidAmount,
    SelfBidForbidden,
    error_from_code,
    ledger_code,
)
from models.bidding.events import AuctionSettled, EventBus
from models.entities.couchbase.auctions import AuctionStatus

from conftest import T0


@pytest.mark.parametrize("error, status, retryable", [
    (AuctionNotFound("x"), 404, False),
    (AuctionNotOpen("x", reason=AuctionNotOpen.NOT_STARTED), 400, False),
    (AuctionNotOpen("x", reason=AuctionNotOpen.ENDED), 409, False),
    (SelfBidForbidden("x"), 403, False),
    (InvalidAmount("x"), 400, False),
    (BelowStartingBid("x"), 400, False),
    (BidTooLow("x"), 400, False),
    (AuctionConflict("x"), 409, True),
    (AuctionUnavailable("x"), 503, True),
    (AuctionClosed("x"), 400, False),
])
def test_error_taxonomy(error, status, retryable):
    assert isinstance(error, BiddingError)
    assert error.status_code == status
    assert error.retryable is retryable


def test_ledger_codes_round_trip_not_open_reason():
    error = AuctionNotOpen("Auction has not started yet", "a-1", reason=AuctionNotOpen.NOT_STARTED)
    rebuilt = error_from_code(ledger_code(error), error.message, "a-1")

    assert isinstance(rebuilt, AuctionNotOpen)
    assert rebuilt.reason == AuctionNotOpen.NOT_STARTED
    assert rebuilt.to_detail() == {
        "code": "auction_not_open",
        "message": "Auction has not started yet",
        "auction_id": "a-1",
        "reason": "not_started",
    }


def test_unknown_code_falls_back_to_base_error():
    rebuilt = error_from_code("something_new", "msg")
    assert type(rebuilt) is BiddingError


@pytest.mark.asyncio
async def test_event_bus_delivers_in_order_and_isolates_failures():
    bus = EventBus()
    seen = []

    @bus.subscribe
    async def first(event):
        seen.append(("first", event.auction_id))

    @bus.subscribe
    async def broken(event):
        raise RuntimeError("down")

    @bus.subscribe
    async def last(event):
        seen.append(("last", event.auction_id))

    await bus.publish(AuctionSettled(auction_id="a-1", occurred_at=T0, status=AuctionStatus.UNSOLD))
    assert seen == [("first", "a-1"), ("last", "a-1")]

    bus.unsubscribe(first)
    bus.unsubscribe(first)
    await bus.publish(AuctionSettled(auction_id="a-2", occurred_at=T0, status=AuctionStatus.UNSOLD))
    assert seen[-1] == ("last", "a-2")
    assert len(seen) == 3
