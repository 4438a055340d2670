"""Error taxonomy for the bidding engine.

Each error kind carries the HTTP status the API layer maps it to and whether
the caller may safely retry the same request.
"""

from typing import Dict, Optional, Type


class BiddingError(Exception):
    """Base exception for auction and bid operations."""

    code: str = "bidding_error"
    status_code: int = 400
    retryable: bool = False

    def __init__(self, message: str, auction_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.auction_id = auction_id

    def to_detail(self) -> dict:
        return {"code": self.code, "message": self.message, "auction_id": self.auction_id}


class AuctionNotFound(BiddingError):
    code = "not_found"
    status_code = 404


class AuctionNotOpen(BiddingError):
    """Raised for bids outside the bidding window or on a non-active auction."""

    code = "auction_not_open"

    NOT_STARTED = "not_started"
    ENDED = "ended"
    NOT_ACTIVE = "not_active"

    def __init__(self, message: str, auction_id: Optional[str] = None, reason: str = NOT_ACTIVE) -> None:
        super().__init__(message, auction_id)
        self.reason = reason

    @property
    def status_code(self) -> int:
        return 409 if self.reason == self.ENDED else 400

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail["reason"] = self.reason
        return detail


class AuctionClosed(BiddingError):
    code = "auction_closed"


class SelfBidForbidden(BiddingError):
    code = "self_bid_forbidden"
    status_code = 403


class BidValidationError(BiddingError):
    """Amount-related rejections; the caller may resubmit a higher amount."""


class InvalidAmount(BidValidationError):
    code = "invalid_amount"


class BelowStartingBid(BidValidationError):
    code = "below_starting_bid"


class BidTooLow(BidValidationError):
    code = "bid_too_low"


class AuctionConflict(BiddingError):
    """Optimistic-concurrency retries exhausted."""

    code = "conflict"
    status_code = 409
    retryable = True


class AuctionUnavailable(BiddingError):
    """The store did not answer in time; nothing was committed."""

    code = "unavailable"
    status_code = 503
    retryable = True


class InvalidAuction(BiddingError):
    code = "invalid_auction"


class InvalidTransition(BiddingError):
    code = "invalid_transition"
    status_code = 409


class PermissionDenied(BiddingError):
    code = "permission_denied"
    status_code = 403


ERRORS_BY_CODE: Dict[str, Type[BiddingError]] = {
    cls.code: cls
    for cls in (
        AuctionNotFound,
        AuctionNotOpen,
        AuctionClosed,
        SelfBidForbidden,
        InvalidAmount,
        BelowStartingBid,
        BidTooLow,
        AuctionConflict,
        AuctionUnavailable,
    )
}


def ledger_code(error: BiddingError) -> str:
    """The code stored on a rejected ledger entry, e.g. ``auction_not_open:ended``."""
    if isinstance(error, AuctionNotOpen):
        return f"{error.code}:{error.reason}"
    return error.code


def error_from_code(code: Optional[str], message: str, auction_id: Optional[str] = None) -> BiddingError:
    """Rebuild the error a recorded rejection was raised with."""
    name, _, reason = (code or "").partition(":")
    cls = ERRORS_BY_CODE.get(name, BiddingError)
    if cls is AuctionNotOpen and reason:
        return AuctionNotOpen(message, auction_id, reason=reason)
    return cls(message, auction_id)
