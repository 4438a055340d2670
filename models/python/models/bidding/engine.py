"""
Auction bidding engine: state machine, bid acceptance and settlement.

Every write to an auction goes through ``AuctionRepository.update_if_version``:
read the document, validate against what was read, then write only if the
stored ``version`` is still the one that was read. On a version conflict the
engine re-reads and re-validates, up to ``EngineSettings.max_retries`` times,
before giving up with ``AuctionConflict``.

The auction document is the commit point. Ledger entries and events follow a
committed write; a ledger failure after commit is logged and repaired the
next time the same idempotency key is replayed.
"""

import asyncio
import hashlib
import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Dict, List, Optional, Set, Tuple, TypeVar

from pydantic import BaseModel, ValidationError

from models.entities.couchbase.auctions import Auction, AuctionData, AuctionStatus, BidSnapshot
from models.entities.couchbase.bids import Bid, BidData, BidOutcome

from .clock import Clock, SystemClock
from .contracts import AuctionRepository, BidLedger
from .errors import (
    AuctionClosed,
    AuctionConflict,
    AuctionNotFound,
    AuctionNotOpen,
    AuctionUnavailable,
    BelowStartingBid,
    BiddingError,
    BidTooLow,
    InvalidAmount,
    InvalidAuction,
    InvalidTransition,
    PermissionDenied,
    SelfBidForbidden,
    error_from_code,
    ledger_code,
)
from .events import AuctionSettled, BidAccepted, BidOutbid, EventBus

logger = logging.getLogger(__name__)

R = TypeVar("R")

# Manual status changes; sold/unsold are only reachable through settlement.
_TRANSITIONS: Dict[AuctionStatus, Set[AuctionStatus]] = {
    AuctionStatus.DRAFT: {AuctionStatus.PENDING, AuctionStatus.ACTIVE},
    AuctionStatus.PENDING: {AuctionStatus.DRAFT, AuctionStatus.ACTIVE},
    AuctionStatus.ACTIVE: {AuctionStatus.ENDED},
}
_ADMIN_ONLY_TRANSITIONS = {(AuctionStatus.ACTIVE, AuctionStatus.ENDED)}

LISTING_VIEWS = ("active", "upcoming", "ending_soon", "featured", "ended", "all")

# Fields a seller may change before bidding opens.
EDITABLE_FIELDS = frozenset({
    "title",
    "description",
    "starting_bid",
    "reserve_price",
    "increment_amount",
    "start_time",
    "end_time",
})


class EngineSettings(BaseModel):
    max_retries: int = 3
    retry_backoff_ms: int = 10
    store_timeout_seconds: float = 5.0


@dataclass
class BidReceipt:
    """Result of ``place_bid``: the auction after the bid and the ledger entry."""
    auction: Auction
    bid: Bid
    replayed: bool = False


def idempotent_bid_id(auction_id: str, bidder_id: str, idempotency_key: str) -> str:
    """Deterministic ledger id for a client idempotency key."""
    digest = hashlib.sha256(f"{auction_id}:{bidder_id}:{idempotency_key}".encode()).hexdigest()
    return f"bid_{digest[:32]}"


def is_due(data: AuctionData, now: datetime) -> bool:
    """True when the auction must be settled."""
    if data.status == AuctionStatus.ENDED:
        return True
    return data.status == AuctionStatus.ACTIVE and now >= data.end_time


def check_bid(auction: Auction, bidder_id: str, amount: float, now: datetime) -> None:
    """Raise the first failing bid precondition, in the order callers rely on."""
    d = auction.data
    if d.status.is_terminal:
        raise AuctionClosed(f"Auction is closed (status: {d.status.value})", auction.id)
    if d.status == AuctionStatus.ENDED or (d.status == AuctionStatus.ACTIVE and now >= d.end_time):
        raise AuctionNotOpen("Auction has ended", auction.id, reason=AuctionNotOpen.ENDED)
    if d.status != AuctionStatus.ACTIVE:
        raise AuctionNotOpen(
            f"Auction is not active (status: {d.status.value})", auction.id, reason=AuctionNotOpen.NOT_ACTIVE
        )
    if now < d.start_time:
        raise AuctionNotOpen("Auction has not started yet", auction.id, reason=AuctionNotOpen.NOT_STARTED)
    if bidder_id == d.seller_id:
        raise SelfBidForbidden("Sellers cannot bid on their own auction", auction.id)
    if not (math.isfinite(amount) and amount > 0):
        raise InvalidAmount("Bid amount must be a finite number greater than zero", auction.id)
    if not d.has_bids:
        if amount < d.starting_bid:
            raise BelowStartingBid(f"Bid must be at least the starting bid of {d.starting_bid:.2f}", auction.id)
    elif amount < d.current_bid.amount + d.increment_amount:
        raise BidTooLow(f"Bid must be at least {d.minimum_next_bid():.2f}", auction.id)


def _validation_message(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" if err["loc"] else err["msg"]
        for err in error.errors()
    )


class AuctionEngine:
    def __init__(
        self,
        repository: AuctionRepository,
        ledger: BidLedger,
        clock: Optional[Clock] = None,
        events: Optional[EventBus] = None,
        settings: Optional[EngineSettings] = None,
    ) -> None:
        self.repository = repository
        self.ledger = ledger
        self.clock = clock or SystemClock()
        self.events = events or EventBus()
        self.settings = settings or EngineSettings()

    # ------------------------------------------------------------------
    # Store access
    # ------------------------------------------------------------------

    async def with_timeout(self, awaitable: Awaitable[R]) -> R:
        """Await a store call, bounded by the configured timeout."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.settings.store_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise AuctionUnavailable("Auction store did not respond in time, please retry") from e

    async def _load(self, auction_id: str) -> Auction:
        auction = await self.with_timeout(self.repository.get(auction_id))
        if not auction:
            raise AuctionNotFound(f"Auction not found with id {auction_id}", auction_id)
        return auction

    async def _write(self, auction: Auction, data: AuctionData) -> bool:
        _, committed = await self.with_timeout(
            self.repository.update_if_version(auction.id, auction.data.version, data)
        )
        return committed

    async def _backoff(self, attempt: int) -> None:
        await asyncio.sleep(self.settings.retry_backoff_ms * (2 ** attempt) / 1000)

    def _conflict(self, auction_id: str, action: str) -> AuctionConflict:
        logger.warning(
            f"Gave up {action} on auction {auction_id} after "
            f"{self.settings.max_retries + 1} conflicting writes"
        )
        return AuctionConflict("Concurrent update conflict, please retry", auction_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_auction(
        self,
        seller_id: str,
        title: str,
        starting_bid: float,
        end_time: datetime,
        start_time: Optional[datetime] = None,
        reserve_price: float = 0.0,
        increment_amount: float = 100.0,
        description: Optional[str] = None,
        publish: bool = True,
    ) -> Auction:
        """Create an auction; published auctions open for bids at ``start_time``."""
        try:
            data = AuctionData(
                seller_id=seller_id,
                title=title,
                description=description,
                starting_bid=starting_bid,
                reserve_price=reserve_price,
                increment_amount=increment_amount,
                start_time=start_time or self.clock.now(),
                end_time=end_time,
                status=AuctionStatus.ACTIVE if publish else AuctionStatus.DRAFT,
            )
        except ValidationError as e:
            raise InvalidAuction(_validation_message(e)) from e

        auction = await self.with_timeout(self.repository.insert(data, user_id=seller_id))
        logger.info(
            f"Auction {auction.id} created by {seller_id} "
            f"({data.status.value}, {data.start_time.isoformat()} to {data.end_time.isoformat()})"
        )
        return auction

    async def get_auction(self, auction_id: str, settle: bool = True) -> Auction:
        """Read an auction, settling it first when its end time has passed."""
        auction = await self._load(auction_id)
        if settle and is_due(auction.data, self.clock.now()):
            try:
                return await self.settle_if_due(auction_id)
            except AuctionConflict:
                return await self._load(auction_id)
        return auction

    async def transition(
        self, auction_id: str, actor_id: str, status: AuctionStatus, is_admin: bool = False
    ) -> Auction:
        """Move an auction along the manual part of the state machine.

        ``active -> ended`` closes bidding early (administrators only) and is
        immediately followed by settlement.
        """
        try:
            target = AuctionStatus(status)
        except ValueError as e:
            raise InvalidTransition(f"Unknown auction status {status!r}", auction_id) from e

        for attempt in range(self.settings.max_retries + 1):
            auction = await self._load(auction_id)
            current = auction.data.status
            if not is_admin and actor_id != auction.data.seller_id:
                raise PermissionDenied("Not authorized to update this auction", auction_id)
            if current == target:
                return auction
            if target not in _TRANSITIONS.get(current, set()):
                raise InvalidTransition(
                    f"Cannot move auction from {current.value} to {target.value}", auction_id
                )
            if (current, target) in _ADMIN_ONLY_TRANSITIONS and not is_admin:
                raise PermissionDenied("Only administrators can end an auction early", auction_id)
            if target == AuctionStatus.ACTIVE and self.clock.now() >= auction.data.end_time:
                raise InvalidTransition("Cannot activate an auction whose end time has passed", auction_id)

            data = auction.data.model_copy(deep=True)
            data.status = target
            if await self._write(auction, data):
                logger.info(f"Auction {auction_id} moved {current.value} -> {target.value} by {actor_id}")
                if target == AuctionStatus.ENDED:
                    return await self.settle_if_due(auction_id)
                return Auction(id=auction_id, data=data)
            await self._backoff(attempt)

        raise self._conflict(auction_id, "status transition")

    async def delete_auction(self, auction_id: str, actor_id: str, is_admin: bool = False) -> None:
        auction = await self._load(auction_id)
        d = auction.data
        if not is_admin and actor_id != d.seller_id:
            raise PermissionDenied("Not authorized to delete this auction", auction_id)
        if d.has_bids or d.status.is_terminal:
            raise InvalidTransition("Cannot delete an auction that has bids or is closed", auction_id)
        if not await self.with_timeout(self.repository.delete_if_version(auction_id, d.version)):
            raise AuctionConflict("Auction changed while deleting, please retry", auction_id)
        logger.info(f"Auction {auction_id} deleted by {actor_id}")

    async def update_auction(
        self, auction_id: str, actor_id: str, patch: Dict[str, object], is_admin: bool = False
    ) -> Auction:
        """Edit details, pricing or schedule of an auction that is not yet open for bids.

        Only *EDITABLE_FIELDS* may appear in *patch*. The merged document is
        validated like a new auction.
        """
        unknown = set(patch) - EDITABLE_FIELDS
        if unknown:
            raise InvalidAuction(f"Fields cannot be updated: {', '.join(sorted(unknown))}", auction_id)

        for attempt in range(self.settings.max_retries + 1):
            auction = await self._load(auction_id)
            d = auction.data
            now = self.clock.now()
            if not is_admin and actor_id != d.seller_id:
                raise PermissionDenied("Not authorized to update this auction", auction_id)
            if d.status.is_terminal or d.status == AuctionStatus.ENDED:
                raise AuctionClosed(f"Auction is closed (status: {d.status.value})", auction_id)
            if d.has_bids or (d.status == AuctionStatus.ACTIVE and now >= d.start_time):
                raise InvalidTransition("Cannot update an auction that has already started", auction_id)

            try:
                data = AuctionData.model_validate({**d.model_dump(), **patch})
            except ValidationError as e:
                raise InvalidAuction(_validation_message(e), auction_id) from e
            if data.status == AuctionStatus.ACTIVE and now >= data.end_time:
                raise InvalidAuction("end_time must be in the future for a published auction", auction_id)

            if await self._write(auction, data):
                logger.info(f"Auction {auction_id} updated by {actor_id}: {', '.join(sorted(patch))}")
                return Auction(id=auction_id, data=data)
            await self._backoff(attempt)

        raise self._conflict(auction_id, "updating auction")

    async def toggle_featured(self, auction_id: str, actor_id: str, is_admin: bool = False) -> Auction:
        if not is_admin:
            raise PermissionDenied("Not authorized to modify featured status", auction_id)

        for attempt in range(self.settings.max_retries + 1):
            auction = await self._load(auction_id)
            if auction.data.status.is_terminal:
                raise AuctionClosed(f"Auction is closed (status: {auction.data.status.value})", auction_id)

            data = auction.data.model_copy(deep=True)
            data.featured = not data.featured
            if await self._write(auction, data):
                logger.info(f"Auction {auction_id} featured={data.featured} (by {actor_id})")
                return Auction(id=auction_id, data=data)
            await self._backoff(attempt)

        raise self._conflict(auction_id, "toggling featured")

    # ------------------------------------------------------------------
    # Bidding
    # ------------------------------------------------------------------

    async def place_bid(
        self,
        auction_id: str,
        bidder_id: str,
        amount: float,
        idempotency_key: Optional[str] = None,
    ) -> BidReceipt:
        """
        Validate and commit a bid.

        Checks, first failure wins: auction exists, not closed, inside its
        bidding window and active, bidder is not the seller, amount positive,
        at least the starting bid (first bid) or the current bid plus the
        increment (later bids).

        A repeated *idempotency_key* from the same bidder on the same auction
        returns the recorded result of the first attempt without
        re-validating.
        """
        bid_id = idempotent_bid_id(auction_id, bidder_id, idempotency_key) if idempotency_key else str(uuid.uuid4())

        if idempotency_key:
            prior = await self.with_timeout(self.ledger.get(bid_id))
            if prior:
                return await self._replay(auction_id, prior, amount)

        for attempt in range(self.settings.max_retries + 1):
            auction = await self._load(auction_id)

            if idempotency_key:
                entry = auction.data.history_entry(bid_id)
                if entry:
                    return await self._recover(auction, entry, idempotency_key)

            now = self.clock.now()
            try:
                check_bid(auction, bidder_id, amount, now)
            except BiddingError as e:
                if isinstance(e, AuctionNotOpen) and e.reason == AuctionNotOpen.ENDED:
                    await self._settle_quietly(auction_id)
                await self._record_rejection(auction_id, bidder_id, amount, now, e, bid_id, idempotency_key)
                logger.info(f"Bid of {amount} by {bidder_id} on auction {auction_id} rejected: {e.code} ({e.message})")
                raise

            previous = auction.data.current_bid.model_copy()
            accepted = BidSnapshot(amount=amount, bidder_id=bidder_id, time=now, bid_id=bid_id)
            data = auction.data.model_copy(deep=True)
            data.bid_history.append(accepted)
            data.current_bid = accepted.model_copy()

            if await self._write(auction, data):
                auction = Auction(id=auction_id, data=data)
                break

            logger.debug(f"Version conflict on auction {auction_id} (attempt {attempt + 1}), re-validating bid")
            if attempt < self.settings.max_retries:
                await self._backoff(attempt)
        else:
            raise self._conflict(auction_id, "placing a bid")

        bid = await self._record_acceptance(auction_id, accepted, idempotency_key)
        logger.info(f"Bid {bid_id} of {amount} by {bidder_id} accepted on auction {auction_id}")

        if previous.bidder_id:
            await self._supersede(auction_id, previous, now)
            if previous.bidder_id != bidder_id:
                await self.events.publish(BidOutbid(
                    auction_id=auction_id,
                    occurred_at=now,
                    previous_bidder_id=previous.bidder_id,
                    previous_bid_id=previous.bid_id,
                    new_amount=amount,
                ))

        await self.events.publish(BidAccepted(
            auction_id=auction_id,
            occurred_at=now,
            bid=accepted,
            watchers=list(data.watchers),
        ))
        return BidReceipt(auction=auction, bid=bid)

    async def _replay(self, auction_id: str, prior: Bid, amount: float) -> BidReceipt:
        if prior.data.amount != amount:
            logger.warning(
                f"Idempotency key {prior.data.idempotency_key!r} reused on auction {auction_id} "
                f"with amount {amount} (recorded {prior.data.amount}); returning the recorded bid"
            )
        if prior.data.outcome == BidOutcome.REJECTED:
            raise error_from_code(prior.data.error_code, prior.data.reason or "Bid rejected", auction_id)
        auction = await self._load(auction_id)
        return BidReceipt(auction=auction, bid=prior, replayed=True)

    async def _recover(self, auction: Auction, entry: BidSnapshot, idempotency_key: str) -> BidReceipt:
        """The bid is on the auction but not (yet) in the ledger: write the entry and return it."""
        is_current = auction.data.current_bid.bid_id == entry.bid_id
        data = BidData(
            auction_id=auction.id,
            bidder_id=entry.bidder_id,
            amount=entry.amount,
            outcome=BidOutcome.ACCEPTED if is_current else BidOutcome.OUTBID,
            placed_at=entry.time,
            idempotency_key=idempotency_key,
        )
        bid = await self.with_timeout(self.ledger.append(data, bid_id=entry.bid_id))
        logger.info(f"Replayed bid {entry.bid_id} on auction {auction.id} from bid history")
        return BidReceipt(auction=auction, bid=bid, replayed=True)

    async def _record_acceptance(
        self, auction_id: str, accepted: BidSnapshot, idempotency_key: Optional[str]
    ) -> Bid:
        data = BidData(
            auction_id=auction_id,
            bidder_id=accepted.bidder_id,
            amount=accepted.amount,
            outcome=BidOutcome.ACCEPTED,
            placed_at=accepted.time,
            idempotency_key=idempotency_key,
        )
        try:
            return await self.with_timeout(self.ledger.append(data, bid_id=accepted.bid_id))
        except Exception as e:
            # The auction write already committed; the bid stands.
            logger.warning(f"Bid {accepted.bid_id} committed on auction {auction_id} but ledger append failed: {e}")
            return Bid(id=accepted.bid_id, data=data)

    async def _supersede(self, auction_id: str, previous: BidSnapshot, now: datetime) -> None:
        """Mark the previous leading bid's ledger entry ``outbid``."""
        if not previous.bid_id:
            return
        try:
            if await self.with_timeout(self.ledger.mark_outbid(previous.bid_id, now)):
                return
            # Its own ledger append may not have landed yet: record it as outbid directly.
            stored = await self.with_timeout(self.ledger.append(
                BidData(
                    auction_id=auction_id,
                    bidder_id=previous.bidder_id,
                    amount=previous.amount,
                    outcome=BidOutcome.OUTBID,
                    placed_at=previous.time,
                    outbid_at=now,
                ),
                bid_id=previous.bid_id,
            ))
            if stored.data.outcome == BidOutcome.ACCEPTED:
                await self.with_timeout(self.ledger.mark_outbid(previous.bid_id, now))
        except Exception as e:
            logger.warning(f"Failed to mark bid {previous.bid_id} as outbid: {e}")

    async def _record_rejection(
        self,
        auction_id: str,
        bidder_id: str,
        amount: float,
        now: datetime,
        error: BiddingError,
        bid_id: str,
        idempotency_key: Optional[str],
    ) -> None:
        if not math.isfinite(amount):
            # Not storable; a replay re-validates to the same error.
            return
        data = BidData(
            auction_id=auction_id,
            bidder_id=bidder_id,
            amount=amount,
            outcome=BidOutcome.REJECTED,
            reason=error.message,
            error_code=ledger_code(error),
            placed_at=now,
            idempotency_key=idempotency_key,
        )
        try:
            await self.with_timeout(self.ledger.append(data, bid_id=bid_id))
        except Exception as e:
            logger.warning(f"Failed to record rejected bid on auction {auction_id}: {e}")

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def settle_if_due(self, auction_id: str) -> Auction:
        """
        Settle the auction if its end time has passed (or it was ended early).

        No-op for terminal auctions and for auctions that are not due.
        Idempotent: concurrent callers race on the conditional write and the
        losers observe the terminal state on re-read.
        """
        for attempt in range(self.settings.max_retries + 1):
            auction = await self._load(auction_id)
            now = self.clock.now()
            if not is_due(auction.data, now):
                return auction

            data = auction.data.model_copy(deep=True)
            if data.reserve_met():
                data.status = AuctionStatus.SOLD
                data.winner_id = data.current_bid.bidder_id
            else:
                data.status = AuctionStatus.UNSOLD
                data.winner_id = None
            data.settled_at = now

            if await self._write(auction, data):
                logger.info(
                    f"Auction {auction_id} settled: {data.status.value}"
                    + (f", winner={data.winner_id}, price={data.current_bid.amount}" if data.winner_id else "")
                )
                await self.events.publish(AuctionSettled(
                    auction_id=auction_id,
                    occurred_at=now,
                    status=data.status,
                    winner_id=data.winner_id,
                    final_amount=data.current_bid.amount if data.has_bids else None,
                ))
                return Auction(id=auction_id, data=data)
            await self._backoff(attempt)

        raise self._conflict(auction_id, "settlement")

    async def _settle_quietly(self, auction_id: str) -> None:
        try:
            await self.settle_if_due(auction_id)
        except (AuctionConflict, AuctionUnavailable) as e:
            logger.warning(f"Opportunistic settlement of auction {auction_id} deferred to sweeper: {e.message}")

    # ------------------------------------------------------------------
    # Watchers
    # ------------------------------------------------------------------

    async def watch(self, auction_id: str, user_id: str) -> bool:
        return await self._set_watching(auction_id, user_id, True)

    async def unwatch(self, auction_id: str, user_id: str) -> bool:
        return await self._set_watching(auction_id, user_id, False)

    async def _set_watching(self, auction_id: str, user_id: str, watching: bool) -> bool:
        """Returns the resulting membership. Closed auctions are left untouched."""
        for attempt in range(self.settings.max_retries + 1):
            auction = await self._load(auction_id)
            present = user_id in auction.data.watchers
            if present == watching or auction.data.status.is_terminal:
                return present

            data = auction.data.model_copy(deep=True)
            if watching:
                data.watchers.append(user_id)
            else:
                data.watchers.remove(user_id)
            if await self._write(auction, data):
                return watching
            await self._backoff(attempt)

        raise self._conflict(auction_id, "updating watchers")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_auctions(
        self, view: str = "active", ending_within_hours: float = 24, limit: int = 50, offset: int = 0
    ) -> List[Auction]:
        """List auctions by view: active, upcoming, ending_soon, featured, ended or all."""
        now = self.clock.now()
        filters: Dict[str, object] = {}
        if view == "active":
            filters = dict(status=[AuctionStatus.ACTIVE], started_by=now, ends_after=now)
        elif view == "upcoming":
            filters = dict(status=[AuctionStatus.ACTIVE], starts_after=now)
        elif view == "ending_soon":
            filters = dict(
                status=[AuctionStatus.ACTIVE],
                started_by=now,
                ends_after=now,
                ends_before=now + timedelta(hours=ending_within_hours),
            )
        elif view == "featured":
            filters = dict(status=[AuctionStatus.ACTIVE], started_by=now, ends_after=now, featured=True)
        elif view == "ended":
            filters = dict(status=[AuctionStatus.ENDED, AuctionStatus.SOLD, AuctionStatus.UNSOLD])
        elif view != "all":
            raise ValueError(f"Unknown auction view {view!r}; expected one of {LISTING_VIEWS}")
        return await self.with_timeout(self.repository.search(limit=limit, offset=offset, **filters))

    async def auctions_watched_by(self, user_id: str, limit: int = 50) -> List[Auction]:
        return await self.with_timeout(self.repository.search(watcher_id=user_id, limit=limit))

    async def auctions_sold_by(self, seller_id: str, limit: int = 50) -> List[Auction]:
        return await self.with_timeout(self.repository.search(seller_id=seller_id, limit=limit))

    async def bids_for_auction(self, auction_id: str, limit: int = 100) -> List[Bid]:
        await self._load(auction_id)
        return await self.with_timeout(self.ledger.by_auction(auction_id, limit=limit))

    async def bids_by_bidder(self, bidder_id: str, limit: int = 100) -> List[Bid]:
        return await self.with_timeout(self.ledger.by_bidder(bidder_id, limit=limit))

    async def is_watching(self, auction_id: str, user_id: str) -> Tuple[Auction, bool]:
        auction = await self.get_auction(auction_id)
        return auction, user_id in auction.data.watchers
