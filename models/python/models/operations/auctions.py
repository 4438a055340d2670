"""
Couchbase-backed auction repository.

The engine's conditional write (``update_if_version``) is implemented on top
of document CAS:

1. Read the auction together with its CAS
2. Compare the stored ``version`` with the one the caller validated against
3. Replace with the CAS from step 1

A ``CASMismatchException`` in step 3 means another writer got in between and
is reported as a failed conditional write, never as success.
"""

import functools
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type, TypeVar

from pydantic import ValidationError

from clients.couchbase import (
    AmbiguousTimeoutException,
    CASMismatchException,
    DocumentNotFoundException,
    TimeoutException,
    UnAmbiguousTimeoutException,
)
from models.bidding.errors import AuctionNotFound, AuctionUnavailable
from models.entities.couchbase.auctions import Auction, AuctionData, AuctionStatus
from models.entities.couchbase.bids import Bid

logger = logging.getLogger(__name__)

_TIMEOUTS = (TimeoutException, AmbiguousTimeoutException, UnAmbiguousTimeoutException)


def translate_timeouts(func):
    """Surface Couchbase timeouts as ``AuctionUnavailable``."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except _TIMEOUTS as e:
            logger.warning(f"Couchbase timeout in {func.__name__}: {e}")
            raise AuctionUnavailable("Auction store did not respond in time, please retry") from e

    return wrapper


def _millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


E = TypeVar("E", Auction, Bid)


def parse_rows(entity: Type[E], rows: Iterable[dict]) -> List[E]:
    """Build entities from query rows, skipping rows that do not parse."""
    parsed = []
    for row in rows:
        try:
            item = entity.from_row(row)
        except ValidationError as e:
            logger.error(f"Skipping unreadable {entity.__name__} document {row.get('id')}: {e}")
            continue
        if item:
            parsed.append(item)
    return parsed


class CouchbaseAuctionRepository:
    @translate_timeouts
    async def get(self, auction_id: str) -> Optional[Auction]:
        return await Auction.get(auction_id)

    @translate_timeouts
    async def insert(self, data: AuctionData, user_id: Optional[str] = None) -> Auction:
        return await Auction.create(data, user_id=user_id)

    @translate_timeouts
    async def update_if_version(
        self, auction_id: str, expected_version: int, data: AuctionData
    ) -> Tuple[int, bool]:
        stored = await Auction.get(auction_id)
        if not stored:
            raise AuctionNotFound(f"Auction {auction_id} not found", auction_id)
        if stored.data.version != expected_version:
            return stored.data.version, False

        data.version = expected_version + 1
        try:
            await Auction.update(Auction(id=auction_id, data=data, cas=stored.cas))
        except CASMismatchException:
            data.version = expected_version
            logger.debug(f"CAS mismatch writing auction {auction_id} at version {expected_version}")
            return expected_version, False
        except DocumentNotFoundException as e:
            data.version = expected_version
            raise AuctionNotFound(f"Auction {auction_id} not found", auction_id) from e
        return data.version, True

    @translate_timeouts
    async def delete_if_version(self, auction_id: str, expected_version: int) -> bool:
        stored = await Auction.get(auction_id)
        if not stored or stored.data.version != expected_version:
            return False
        try:
            return await Auction.delete(auction_id, cas=stored.cas)
        except CASMismatchException:
            return False

    @translate_timeouts
    async def find_due(self, now: datetime, limit: int = 100) -> List[Auction]:
        keyspace = Auction.get_keyspace()
        query = (
            f"SELECT META().id, * FROM {keyspace} "
            f"WHERE status IN $statuses AND STR_TO_MILLIS(end_time) <= $now_millis "
            f"ORDER BY STR_TO_MILLIS(end_time) ASC "
            f"LIMIT {int(limit)}"
        )
        rows = await keyspace.query(
            query,
            statuses=[AuctionStatus.ACTIVE.value, AuctionStatus.ENDED.value],
            now_millis=_millis(now),
        )
        return parse_rows(Auction, rows)

    @translate_timeouts
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
        """Search auctions with optional filters, newest first."""
        keyspace = Auction.get_keyspace()
        conditions = []
        params: Dict[str, Any] = {}

        if status:
            conditions.append("status IN $statuses")
            params["statuses"] = [AuctionStatus(s).value for s in status]
        if seller_id:
            conditions.append("seller_id = $seller_id")
            params["seller_id"] = seller_id
        if watcher_id:
            conditions.append("ARRAY_CONTAINS(watchers, $watcher_id)")
            params["watcher_id"] = watcher_id
        if featured is not None:
            conditions.append("featured = $featured")
            params["featured"] = featured
        if started_by:
            conditions.append("STR_TO_MILLIS(start_time) <= $started_by")
            params["started_by"] = _millis(started_by)
        if starts_after:
            conditions.append("STR_TO_MILLIS(start_time) > $starts_after")
            params["starts_after"] = _millis(starts_after)
        if ends_before:
            conditions.append("STR_TO_MILLIS(end_time) <= $ends_before")
            params["ends_before"] = _millis(ends_before)
        if ends_after:
            conditions.append("STR_TO_MILLIS(end_time) > $ends_after")
            params["ends_after"] = _millis(ends_after)

        where = " AND ".join(conditions) if conditions else "1=1"
        query = (
            f"SELECT META().id, * FROM {keyspace} "
            f"WHERE {where} "
            f"ORDER BY created_at DESC "
            f"LIMIT {int(limit)} OFFSET {int(offset)}"
        )
        rows = await keyspace.query(query, **params)
        return parse_rows(Auction, rows)
