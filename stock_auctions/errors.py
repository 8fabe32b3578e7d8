class AuctionError(Exception):
    """Base class for errors surfaced to callers; carries the HTTP status to answer with"""
    status_code = 400


class NotFoundError(AuctionError):
    status_code = 404


class ValidationError(AuctionError):
    """Custom exception for validation errors"""
    status_code = 400


class ForbiddenError(AuctionError):
    status_code = 403


class InvalidStateError(AuctionError):
    """The auction (or order) is not in a status that permits the operation"""
    status_code = 409


class ConcurrencyConflictError(AuctionError):
    """
    Another writer changed the row between our read and our conditional write.
    The caller must re-read the current price and retry.
    """
    status_code = 409
