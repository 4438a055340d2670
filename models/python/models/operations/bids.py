"""
Couchbase-backed bid ledger.

Entries are keyed by bid id. The engine derives that id from the client's
idempotency key when one is given, so a retried request lands on the same
document and ``append`` returns what is already there.
"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from clients.couchbase import CASMismatchException, DocumentExistsException
from models.entities.couchbase.bids import Bid, BidData, BidOutcome

from .auctions import parse_rows, translate_timeouts

logger = logging.getLogger(__name__)


class CouchbaseBidLedger:
    def __init__(self, max_retries: int = 5) -> None:
        self.max_retries = max_retries

    @translate_timeouts
    async def append(self, data: BidData, bid_id: Optional[str] = None) -> Bid:
        try:
            return await Bid.create(data, key=bid_id, user_id=data.bidder_id)
        except DocumentExistsException:
            existing = await Bid.get(bid_id)
            if existing:
                return existing
            raise

    @translate_timeouts
    async def get(self, bid_id: str) -> Optional[Bid]:
        return await Bid.get(bid_id)

    @translate_timeouts
    async def mark_outbid(self, bid_id: str, at: datetime) -> bool:
        """CAS-guarded ``accepted -> outbid``; any other state is left alone."""
        backoff_ms = 10
        for attempt in range(self.max_retries + 1):
            bid = await Bid.get(bid_id)
            if not bid or bid.data.outcome != BidOutcome.ACCEPTED:
                return False
            bid.data.outcome = BidOutcome.OUTBID
            bid.data.outbid_at = at
            try:
                await Bid.update(bid)
                return True
            except CASMismatchException:
                if attempt == self.max_retries:
                    break
                await asyncio.sleep(backoff_ms / 1000)
                backoff_ms *= 2

        logger.warning(f"Gave up marking bid {bid_id} outbid after {self.max_retries + 1} attempts")
        return False

    async def _query(self, field: str, value: str, limit: int) -> List[Bid]:
        keyspace = Bid.get_keyspace()
        query = (
            f"SELECT META().id, * FROM {keyspace} "
            f"WHERE {field} = $value "
            f"ORDER BY STR_TO_MILLIS(placed_at) ASC, created_at ASC "
            f"LIMIT {int(limit)}"
        )
        rows = await keyspace.query(query, value=value)
        return parse_rows(Bid, rows)

    @translate_timeouts
    async def by_auction(self, auction_id: str, limit: int = 100) -> List[Bid]:
        """Bids for an auction in the order they were placed."""
        return await self._query("auction_id", auction_id, limit)

    @translate_timeouts
    async def by_bidder(self, bidder_id: str, limit: int = 100) -> List[Bid]:
        return await self._query("bidder_id", bidder_id, limit)
