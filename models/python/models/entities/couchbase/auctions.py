from enum import Enum
from typing import List, Optional
from datetime import datetime, timezone
from pydantic import BaseModel, Field, field_validator, model_validator
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData


class AuctionStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    ACTIVE = "active"
    ENDED = "ended"
    SOLD = "sold"
    UNSOLD = "unsold"

    @property
    def is_terminal(self) -> bool:
        return self in (AuctionStatus.SOLD, AuctionStatus.UNSOLD)


class BidSnapshot(BaseModel):
    """A bid as recorded on the auction document (``current_bid`` and ``bid_history``)."""
    amount: float = Field(default=0.0, allow_inf_nan=False)
    bidder_id: Optional[str] = None
    time: Optional[datetime] = None
    bid_id: Optional[str] = None


class AuctionData(BaseCouchbaseEntityData):
    # Ownership
    seller_id: str
    title: str
    description: Optional[str] = None

    # Pricing (editable only until bidding opens)
    starting_bid: float = Field(ge=0, allow_inf_nan=False)
    reserve_price: float = Field(default=0.0, ge=0, allow_inf_nan=False)
    increment_amount: float = Field(default=100.0, gt=0, allow_inf_nan=False)

    # Schedule (UTC)
    start_time: datetime
    end_time: datetime

    status: AuctionStatus = AuctionStatus.DRAFT
    featured: bool = False

    # Highest accepted bid; amount 0 and bidder None until the first bid
    current_bid: BidSnapshot = Field(default_factory=BidSnapshot)
    bid_history: List[BidSnapshot] = []

    watchers: List[str] = []

    # Settlement
    winner_id: Optional[str] = None
    settled_at: Optional[datetime] = None

    # Optimistic-concurrency counter, bumped by every conditional write
    version: int = 0

    @field_validator("start_time", "end_time", "settled_at")
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def _check_window(self) -> "AuctionData":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self

    @property
    def has_bids(self) -> bool:
        return bool(self.bid_history)

    def minimum_next_bid(self) -> float:
        if not self.bid_history:
            return self.starting_bid
        return self.current_bid.amount + self.increment_amount

    def reserve_met(self) -> bool:
        return self.has_bids and self.current_bid.amount >= self.reserve_price

    def history_entry(self, bid_id: str) -> Optional[BidSnapshot]:
        for entry in self.bid_history:
            if entry.bid_id == bid_id:
                return entry
        return None


class Auction(BaseModelCouchbase[AuctionData]):
    _collection_name = "auctions"
