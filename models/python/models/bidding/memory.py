"""In-process auction repository and bid ledger.

Used by the test-suite and by the API when ``AUCTION_STORE=memory``. Both keep
deep copies of the documents so callers can never mutate stored state without
going through the conditional write.
"""

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from models.entities.couchbase.auctions import Auction, AuctionData, AuctionStatus
from models.entities.couchbase.bids import Bid, BidData, BidOutcome

from .errors import AuctionNotFound

_DUE_STATUSES = (AuctionStatus.ACTIVE, AuctionStatus.ENDED)


class InMemoryAuctionRepository:
    """Dictionary-backed ``AuctionRepository``.

    *latency* (seconds) is awaited before every read and write, which lets
    tests interleave concurrent bidders deterministically.
    """

    def __init__(self, latency: float = 0.0) -> None:
        self.latency = latency
        self._docs: Dict[str, AuctionData] = {}
        self._lock = asyncio.Lock()
        self.write_attempts = 0
        self.write_conflicts = 0

    def _load(self, auction_id: str, data: AuctionData) -> Auction:
        return Auction(id=auction_id, data=data.model_copy(deep=True))

    async def get(self, auction_id: str) -> Optional[Auction]:
        await asyncio.sleep(self.latency)
        data = self._docs.get(auction_id)
        if data is None:
            return None
        return self._load(auction_id, data)

    async def insert(self, data: AuctionData, user_id: Optional[str] = None) -> Auction:
        await asyncio.sleep(self.latency)
        auction_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        if data.created_at is None:
            data.created_at = now
        data.updated_at = now
        if user_id:
            data.created_by_user_id = user_id
        async with self._lock:
            self._docs[auction_id] = data.model_copy(deep=True)
        return self._load(auction_id, data)

    async def update_if_version(
        self, auction_id: str, expected_version: int, data: AuctionData
    ) -> Tuple[int, bool]:
        await asyncio.sleep(self.latency)
        async with self._lock:
            self.write_attempts += 1
            stored = self._docs.get(auction_id)
            if stored is None:
                raise AuctionNotFound(f"Auction {auction_id} not found", auction_id)
            if stored.version != expected_version:
                self.write_conflicts += 1
                return stored.version, False
            data.version = expected_version + 1
            data.updated_at = datetime.now(timezone.utc)
            self._docs[auction_id] = data.model_copy(deep=True)
            return data.version, True

    async def delete_if_version(self, auction_id: str, expected_version: int) -> bool:
        await asyncio.sleep(self.latency)
        async with self._lock:
            stored = self._docs.get(auction_id)
            if stored is None or stored.version != expected_version:
                return False
            del self._docs[auction_id]
            return True

    async def find_due(self, now: datetime, limit: int = 100) -> List[Auction]:
        await asyncio.sleep(self.latency)
        due = [
            (auction_id, data)
            for auction_id, data in self._docs.items()
            if data.status in _DUE_STATUSES and data.end_time <= now
        ]
        due.sort(key=lambda item: item[1].end_time)
        return [self._load(auction_id, data) for auction_id, data in due[:limit]]

    async def search(
        self,
        status: Optional[List[AuctionStatus]] = None,
        seller_id: Optional[str] = None,
        watcher_id: Optional[str] = None,
        featured: Optional[bool] = None,
        started_by: Optional[datetime] = None,
        starts_after: Optional[datetime] = None,
        ends_before: Optional[datetime] = None,
        ends_after: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Auction]:
        await asyncio.sleep(self.latency)
        matches = []
        for auction_id, data in self._docs.items():
            if status and data.status not in status:
                continue
            if seller_id and data.seller_id != seller_id:
                continue
            if watcher_id and watcher_id not in data.watchers:
                continue
            if featured is not None and data.featured != featured:
                continue
            if started_by and data.start_time > started_by:
                continue
            if starts_after and data.start_time <= starts_after:
                continue
            if ends_before and data.end_time > ends_before:
                continue
            if ends_after and data.end_time <= ends_after:
                continue
            matches.append((auction_id, data))
        matches.sort(key=lambda item: item[1].created_at, reverse=True)
        return [self._load(auction_id, data) for auction_id, data in matches[offset:offset + limit]]


class InMemoryBidLedger:
    """List-backed ``BidLedger`` preserving append order."""

    def __init__(self) -> None:
        self._entries: Dict[str, BidData] = {}
        self._order: List[str] = []
        self._lock = asyncio.Lock()

    def _load(self, bid_id: str) -> Bid:
        return Bid(id=bid_id, data=self._entries[bid_id].model_copy(deep=True))

    async def append(self, data: BidData, bid_id: Optional[str] = None) -> Bid:
        bid_id = bid_id or str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        if data.created_at is None:
            data.created_at = now
        data.updated_at = now
        async with self._lock:
            if bid_id not in self._entries:
                self._order.append(bid_id)
                self._entries[bid_id] = data.model_copy(deep=True)
        return self._load(bid_id)

    async def get(self, bid_id: str) -> Optional[Bid]:
        if bid_id not in self._entries:
            return None
        return self._load(bid_id)

    async def mark_outbid(self, bid_id: str, at: datetime) -> bool:
        async with self._lock:
            entry = self._entries.get(bid_id)
            if entry is None or entry.outcome != BidOutcome.ACCEPTED:
                return False
            entry.outcome = BidOutcome.OUTBID
            entry.outbid_at = at
            entry.updated_at = datetime.now(timezone.utc)
            return True

    def _chronological(self, matches: List[str]) -> List[str]:
        position = {bid_id: index for index, bid_id in enumerate(self._order)}
        return sorted(matches, key=lambda bid_id: (self._entries[bid_id].placed_at, position[bid_id]))

    async def by_auction(self, auction_id: str, limit: int = 100) -> List[Bid]:
        matches = [bid_id for bid_id in self._order if self._entries[bid_id].auction_id == auction_id]
        return [self._load(bid_id) for bid_id in self._chronological(matches)[:limit]]

    async def by_bidder(self, bidder_id: str, limit: int = 100) -> List[Bid]:
        matches = [bid_id for bid_id in self._order if self._entries[bid_id].bidder_id == bidder_id]
        return [self._load(bid_id) for bid_id in self._chronological(matches)[:limit]]
