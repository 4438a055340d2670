"""Storage contracts the engine depends on.

Two implementations exist: the Couchbase-backed ones in
``models.operations.auctions`` / ``models.operations.bids`` and the in-process
ones in ``models.bidding.memory``.
"""

from datetime import datetime
from typing import List, Optional, Protocol, Tuple

from models.entities.couchbase.auctions import Auction, AuctionData, AuctionStatus
from models.entities.couchbase.bids import Bid, BidData


class AuctionRepository(Protocol):
    async def get(self, auction_id: str) -> Optional[Auction]:
        """Return the auction or ``None``."""

    async def insert(self, data: AuctionData, user_id: Optional[str] = None) -> Auction:
        """Persist a new auction and return it with its generated id."""

    async def update_if_version(
        self, auction_id: str, expected_version: int, data: AuctionData
    ) -> Tuple[int, bool]:
        """Replace the auction only if its stored ``version`` equals *expected_version*.

        On success ``data.version`` is set to the new version and
        ``(new_version, True)`` is returned. Otherwise nothing is written and
        ``(stored_version, False)`` is returned. Raises ``AuctionNotFound`` if
        the document is gone.
        """

    async def delete_if_version(self, auction_id: str, expected_version: int) -> bool:
        """Delete the auction only if its stored ``version`` equals *expected_version*."""

    async def find_due(self, now: datetime, limit: int = 100) -> List[Auction]:
        """Auctions with status active or ended whose ``end_time <= now``, oldest first."""

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
        """Filtered listing, newest first."""


class BidLedger(Protocol):
    async def append(self, data: BidData, bid_id: Optional[str] = None) -> Bid:
        """Record a bid attempt under *bid_id* (generated when omitted).

        If an entry with that id already exists it is returned unchanged.
        """

    async def get(self, bid_id: str) -> Optional[Bid]: ...

    async def mark_outbid(self, bid_id: str, at: datetime) -> bool:
        """Move an ``accepted`` entry to ``outbid``; returns False for any other state."""

    async def by_auction(self, auction_id: str, limit: int = 100) -> List[Bid]:
        """Entries for one auction, oldest first."""

    async def by_bidder(self, bidder_id: str, limit: int = 100) -> List[Bid]:
        """Entries for one bidder across auctions, oldest first."""
