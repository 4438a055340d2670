"""Logging notifier subscribed to the engine's event bus.

Delivery to bidders (email, push, websockets) is owned by a separate
notification service; this subscriber records what would be sent.
"""

from models.bidding.events import AuctionSettled, BidAccepted, BidOutbid, Event, EventBus
from utils import log

logger = log.get_logger(__name__)


async def log_event(event: Event) -> None:
    if isinstance(event, BidAccepted):
        logger.info(
            f"[notify] auction {event.auction_id}: new high bid {event.bid.amount} by {event.bid.bidder_id} "
            f"({len(event.watchers)} watchers)"
        )
    elif isinstance(event, BidOutbid):
        logger.info(
            f"[notify] {event.previous_bidder_id}: outbid on auction {event.auction_id} "
            f"(new high bid {event.new_amount})"
        )
    elif isinstance(event, AuctionSettled):
        if event.winner_id:
            logger.info(
                f"[notify] auction {event.auction_id} sold to {event.winner_id} for {event.final_amount}"
            )
        else:
            logger.info(f"[notify] auction {event.auction_id} closed unsold")


def register(events: EventBus) -> None:
    events.subscribe(log_event)
