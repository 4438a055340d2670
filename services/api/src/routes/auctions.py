"""
API endpoints for auctions and bidding.

POST   /auctions/                 create auction (seller)
GET    /auctions/                 list auctions by view (public)
GET    /auctions/me               auctions the caller sells
GET    /auctions/watching         auctions the caller watches
GET    /auctions/bids/me          the caller's bid history
GET    /auctions/{id}             auction detail (settles if due)
PUT    /auctions/{id}             edit auction before bidding opens (seller/admin)
DELETE /auctions/{id}             delete auction (seller/admin, no bids)
POST   /auctions/{id}/status      lifecycle transition
PATCH  /auctions/{id}/featured    toggle featured (admin)
GET    /auctions/{id}/bids        bid history, oldest first
POST   /auctions/{id}/bid         place a bid
GET    /auctions/{id}/watch       is the caller watching
PUT    /auctions/{id}/watch       start watching
DELETE /auctions/{id}/watch       stop watching
GET    /auctions/{id}/settle      settle now if due (admin)
"""

from datetime import datetime
from typing import List, Literal, NoReturn, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response
from pydantic import BaseModel, Field

from models.bidding.engine import AuctionEngine
from models.bidding.errors import BiddingError
from models.entities.couchbase.auctions import Auction, AuctionStatus
from models.entities.couchbase.bids import Bid
from utils import log

from .dependencies import get_engine, is_admin, require_admin, require_authenticated

logger = log.get_logger(__name__)

router = APIRouter(prefix="/auctions", tags=["auctions"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------

class CreateAuctionRequest(BaseModel):
    title: str
    description: Optional[str] = None
    starting_bid: float = Field(allow_inf_nan=False)
    reserve_price: float = Field(default=0.0, allow_inf_nan=False)
    increment_amount: float = Field(default=100.0, allow_inf_nan=False)
    start_time: Optional[datetime] = None
    end_time: datetime
    publish: bool = True


class UpdateAuctionRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    starting_bid: Optional[float] = Field(default=None, allow_inf_nan=False)
    reserve_price: Optional[float] = Field(default=None, allow_inf_nan=False)
    increment_amount: Optional[float] = Field(default=None, allow_inf_nan=False)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


class PlaceBidRequest(BaseModel):
    amount: float = Field(allow_inf_nan=False)
    idempotency_key: Optional[str] = None


class TransitionRequest(BaseModel):
    status: AuctionStatus


class CurrentBidResponse(BaseModel):
    amount: float
    bidder_id: Optional[str] = None
    time: Optional[datetime] = None


class AuctionResponse(BaseModel):
    id: str
    seller_id: str
    title: str
    description: Optional[str] = None
    starting_bid: float
    reserve_price: float
    increment_amount: float
    minimum_next_bid: float
    start_time: datetime
    end_time: datetime
    status: AuctionStatus
    featured: bool
    current_bid: CurrentBidResponse
    bid_count: int
    watcher_count: int
    winner_id: Optional[str] = None
    settled_at: Optional[datetime] = None
    version: int


class BidResponse(BaseModel):
    id: str
    auction_id: str
    bidder_id: str
    amount: float
    outcome: str
    reason: Optional[str] = None
    placed_at: datetime
    outbid_at: Optional[datetime] = None


class PlaceBidResponse(BaseModel):
    auction: AuctionResponse
    bid: BidResponse
    replayed: bool = False


class WatchResponse(BaseModel):
    auction_id: str
    is_watching: bool


def _auction_to_response(auction: Auction) -> AuctionResponse:
    d = auction.data
    return AuctionResponse(
        id=auction.id,
        seller_id=d.seller_id,
        title=d.title,
        description=d.description,
        starting_bid=d.starting_bid,
        reserve_price=d.reserve_price,
        increment_amount=d.increment_amount,
        minimum_next_bid=d.minimum_next_bid(),
        start_time=d.start_time,
        end_time=d.end_time,
        status=d.status,
        featured=d.featured,
        current_bid=CurrentBidResponse(
            amount=d.current_bid.amount,
            bidder_id=d.current_bid.bidder_id,
            time=d.current_bid.time,
        ),
        bid_count=len(d.bid_history),
        watcher_count=len(d.watchers),
        winner_id=d.winner_id,
        settled_at=d.settled_at,
        version=d.version,
    )


def _bid_to_response(bid: Bid) -> BidResponse:
    d = bid.data
    return BidResponse(
        id=bid.id,
        auction_id=d.auction_id,
        bidder_id=d.bidder_id,
        amount=d.amount,
        outcome=d.outcome.value,
        reason=d.reason,
        placed_at=d.placed_at,
        outbid_at=d.outbid_at,
    )


def _raise_http(e: BiddingError) -> NoReturn:
    headers = {"Retry-After": "1"} if e.retryable else None
    raise HTTPException(status_code=e.status_code, detail=e.to_detail(), headers=headers) from e


# ---------------------------------------------------------------------------
# POST /auctions/ create auction
# ---------------------------------------------------------------------------

@router.post("/", response_model=AuctionResponse, status_code=201)
async def route_auction_create(
    body: CreateAuctionRequest,
    user: dict = Depends(require_authenticated),
    engine: AuctionEngine = Depends(get_engine),
):
    """Create an auction owned by the caller. Published auctions open at start_time."""
    try:
        auction = await engine.create_auction(
            seller_id=user["sub"],
            title=body.title,
            description=body.description,
            starting_bid=body.starting_bid,
            reserve_price=body.reserve_price,
            increment_amount=body.increment_amount,
            start_time=body.start_time,
            end_time=body.end_time,
            publish=body.publish,
        )
    except BiddingError as e:
        _raise_http(e)
    return _auction_to_response(auction)


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------

@router.get("/", response_model=List[AuctionResponse])
async def route_auctions_list(
    view: Literal["active", "upcoming", "ending_soon", "featured", "ended", "all"] = "active",
    hours: float = Query(default=24, gt=0),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    engine: AuctionEngine = Depends(get_engine),
):
    """List auctions: active, upcoming, ending soon (within *hours*), featured, ended or all."""
    try:
        auctions = await engine.list_auctions(view, ending_within_hours=hours, limit=limit, offset=offset)
    except BiddingError as e:
        _raise_http(e)
    return [_auction_to_response(a) for a in auctions]


@router.get("/me", response_model=List[AuctionResponse])
async def route_auctions_mine(
    user: dict = Depends(require_authenticated),
    engine: AuctionEngine = Depends(get_engine),
):
    try:
        auctions = await engine.auctions_sold_by(user["sub"])
    except BiddingError as e:
        _raise_http(e)
    return [_auction_to_response(a) for a in auctions]


@router.get("/watching", response_model=List[AuctionResponse])
async def route_auctions_watching(
    user: dict = Depends(require_authenticated),
    engine: AuctionEngine = Depends(get_engine),
):
    try:
        auctions = await engine.auctions_watched_by(user["sub"])
    except BiddingError as e:
        _raise_http(e)
    return [_auction_to_response(a) for a in auctions]


@router.get("/bids/me", response_model=List[BidResponse])
async def route_bids_mine(
    limit: int = Query(default=100, ge=1, le=500),
    user: dict = Depends(require_authenticated),
    engine: AuctionEngine = Depends(get_engine),
):
    """The caller's bid attempts across auctions, oldest first."""
    try:
        bids = await engine.bids_by_bidder(user["sub"], limit=limit)
    except BiddingError as e:
        _raise_http(e)
    return [_bid_to_response(b) for b in bids]


# ---------------------------------------------------------------------------
# Single auction
# ---------------------------------------------------------------------------

@router.get("/{auction_id}", response_model=AuctionResponse)
async def route_auction_detail(auction_id: str, engine: AuctionEngine = Depends(get_engine)):
    try:
        auction = await engine.get_auction(auction_id)
    except BiddingError as e:
        _raise_http(e)
    return _auction_to_response(auction)


@router.delete("/{auction_id}", status_code=204)
async def route_auction_delete(
    auction_id: str,
    user: dict = Depends(require_authenticated),
    engine: AuctionEngine = Depends(get_engine),
):
    try:
        await engine.delete_auction(auction_id, user["sub"], is_admin=is_admin(user))
    except BiddingError as e:
        _raise_http(e)
    return Response(status_code=204)


@router.put("/{auction_id}", response_model=AuctionResponse)
async def route_auction_update(
    auction_id: str,
    body: UpdateAuctionRequest,
    user: dict = Depends(require_authenticated),
    engine: AuctionEngine = Depends(get_engine),
):
    """Edit an auction. Refused once it has bids or its bidding window has opened."""
    try:
        auction = await engine.update_auction(
            auction_id, user["sub"], body.model_dump(exclude_unset=True), is_admin=is_admin(user)
        )
    except BiddingError as e:
        _raise_http(e)
    return _auction_to_response(auction)


@router.post("/{auction_id}/status", response_model=AuctionResponse)
async def route_auction_transition(
    auction_id: str,
    body: TransitionRequest,
    user: dict = Depends(require_authenticated),
    engine: AuctionEngine = Depends(get_engine),
):
    """Publish, unpublish or (admin) end an auction early."""
    try:
        auction = await engine.transition(auction_id, user["sub"], body.status, is_admin=is_admin(user))
    except BiddingError as e:
        _raise_http(e)
    return _auction_to_response(auction)


@router.patch("/{auction_id}/featured", response_model=AuctionResponse)
async def route_auction_toggle_featured(
    auction_id: str,
    user: dict = Depends(require_admin),
    engine: AuctionEngine = Depends(get_engine),
):
    try:
        auction = await engine.toggle_featured(auction_id, user["sub"], is_admin=True)
    except BiddingError as e:
        _raise_http(e)
    return _auction_to_response(auction)


@router.get("/{auction_id}/bids", response_model=List[BidResponse])
async def route_auction_bids(
    auction_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    engine: AuctionEngine = Depends(get_engine),
):
    """Bid history for an auction in the order bids were placed."""
    try:
        bids = await engine.bids_for_auction(auction_id, limit=limit)
    except BiddingError as e:
        _raise_http(e)
    return [_bid_to_response(b) for b in bids]


# ---------------------------------------------------------------------------
# POST /auctions/{id}/bid place a bid
# ---------------------------------------------------------------------------

@router.post("/{auction_id}/bid", response_model=PlaceBidResponse, status_code=201)
async def route_place_bid(
    auction_id: str,
    body: PlaceBidRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    user: dict = Depends(require_authenticated),
    engine: AuctionEngine = Depends(get_engine),
):
    """Place a bid. Retrying with the same Idempotency-Key returns the first result."""
    try:
        receipt = await engine.place_bid(
            auction_id=auction_id,
            bidder_id=user["sub"],
            amount=body.amount,
            idempotency_key=body.idempotency_key or idempotency_key,
        )
    except BiddingError as e:
        _raise_http(e)

    return PlaceBidResponse(
        auction=_auction_to_response(receipt.auction),
        bid=_bid_to_response(receipt.bid),
        replayed=receipt.replayed,
    )


# ---------------------------------------------------------------------------
# Watchers
# ---------------------------------------------------------------------------

@router.get("/{auction_id}/watch", response_model=WatchResponse)
async def route_auction_is_watching(
    auction_id: str,
    user: dict = Depends(require_authenticated),
    engine: AuctionEngine = Depends(get_engine),
):
    try:
        _, watching = await engine.is_watching(auction_id, user["sub"])
    except BiddingError as e:
        _raise_http(e)
    return WatchResponse(auction_id=auction_id, is_watching=watching)


@router.put("/{auction_id}/watch", response_model=WatchResponse)
async def route_auction_watch(
    auction_id: str,
    user: dict = Depends(require_authenticated),
    engine: AuctionEngine = Depends(get_engine),
):
    try:
        watching = await engine.watch(auction_id, user["sub"])
    except BiddingError as e:
        _raise_http(e)
    return WatchResponse(auction_id=auction_id, is_watching=watching)


@router.delete("/{auction_id}/watch", response_model=WatchResponse)
async def route_auction_unwatch(
    auction_id: str,
    user: dict = Depends(require_authenticated),
    engine: AuctionEngine = Depends(get_engine),
):
    try:
        watching = await engine.unwatch(auction_id, user["sub"])
    except BiddingError as e:
        _raise_http(e)
    return WatchResponse(auction_id=auction_id, is_watching=watching)


# ---------------------------------------------------------------------------
# GET /auctions/{id}/settle admin
# ---------------------------------------------------------------------------

@router.get("/{auction_id}/settle", response_model=AuctionResponse)
async def route_auction_settle(
    auction_id: str,
    user: dict = Depends(require_admin),
    engine: AuctionEngine = Depends(get_engine),
):
    """Settle the auction now if its end time has passed; otherwise return it unchanged."""
    try:
        auction = await engine.settle_if_due(auction_id)
    except BiddingError as e:
        _raise_http(e)
    logger.info(f"Admin {user['sub']} requested settlement of auction {auction_id}: {auction.data.status.value}")
    return _auction_to_response(auction)
