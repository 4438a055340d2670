"""Events emitted by the engine and the in-process bus that fans them out.

The engine never talks to a notifier directly. It publishes events on an
``EventBus`` and whatever notification service is wired in subscribes to it.
"""

import logging
from datetime import datetime
from typing import Awaitable, Callable, List, Literal, Optional, Union

from pydantic import BaseModel

from models.entities.couchbase.auctions import AuctionStatus, BidSnapshot

logger = logging.getLogger(__name__)


class AuctionEvent(BaseModel):
    auction_id: str
    occurred_at: datetime


class BidAccepted(AuctionEvent):
    type: Literal["bid_accepted"] = "bid_accepted"
    bid: BidSnapshot
    watchers: List[str] = []


class BidOutbid(AuctionEvent):
    type: Literal["bid_outbid"] = "bid_outbid"
    previous_bidder_id: str
    previous_bid_id: Optional[str] = None
    new_amount: float


class AuctionSettled(AuctionEvent):
    type: Literal["auction_settled"] = "auction_settled"
    status: AuctionStatus
    winner_id: Optional[str] = None
    final_amount: Optional[float] = None


Event = Union[BidAccepted, BidOutbid, AuctionSettled]
EventHandler = Callable[[Event], Awaitable[None]]


class EventBus:
    """Delivers each published event to every subscriber, in subscription order.

    A failing subscriber is logged and skipped; it never fails the operation
    that published the event.
    """

    def __init__(self) -> None:
        self._handlers: List[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> EventHandler:
        """Register *handler*. Can be used as a decorator."""
        self._handlers.append(handler)
        return handler

    def unsubscribe(self, handler: EventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def publish(self, event: Event) -> None:
        for handler in list(self._handlers):
            try:
                await handler(event)
            except Exception as e:
                logger.warning(
                    f"Event handler {getattr(handler, '__name__', handler)!r} failed "
                    f"for {event.type} on auction {event.auction_id}: {e}",
                    exc_info=True,
                )
