from enum import Enum
from typing import Optional
from datetime import datetime
from pydantic import Field
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData


class BidOutcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    OUTBID = "outbid"


class BidData(BaseCouchbaseEntityData):
    auction_id: str
    bidder_id: str
    amount: float = Field(allow_inf_nan=False)
    outcome: BidOutcome
    reason: Optional[str] = None
    error_code: Optional[str] = None  # BiddingError.code of a rejection
    placed_at: datetime
    idempotency_key: Optional[str] = None
    outbid_at: Optional[datetime] = None


class Bid(BaseModelCouchbase[BidData]):
    _collection_name = "bids"
