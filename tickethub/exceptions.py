"""
Error taxonomy for booking, settlement and ledger operations.

Services raise these; routers translate them with ``to_http_exception`` so
every response carries the current state (for example the seats still
available) alongside the message.
"""
from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class BookingError(Exception):
    """Base class for domain errors"""
    status_code = status.HTTP_400_BAD_REQUEST
    code = "booking_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        data = {"error": self.message, "code": self.code}
        data.update(self.details)
        return data


class ValidationError(BookingError):
    """Bad input, rejected before any mutation"""
    code = "validation_error"


class VoucherError(ValidationError):
    code = "invalid_voucher"


class NotFound(BookingError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class InsufficientSeats(BookingError):
    status_code = status.HTTP_409_CONFLICT
    code = "insufficient_seats"

    def __init__(self, available: int, requested: int, message: str = "Not enough seats available"):
        super().__init__(message, available=available, requested=requested)
        self.available = available
        self.requested = requested


class DuplicateSettlement(BookingError):
    """The idempotency key was already settled; callers treat this as a no-op"""
    status_code = status.HTTP_200_OK
    code = "duplicate_settlement"

    def __init__(self, idempotency_key: str, receipt_id: Optional[str] = None):
        super().__init__("Payment already processed", idempotency_key=idempotency_key, receipt_id=receipt_id)
        self.idempotency_key = idempotency_key
        self.receipt_id = receipt_id


class DuplicateReference(BookingError):
    status_code = status.HTTP_409_CONFLICT
    code = "duplicate_reference"


class ConcurrencyConflict(BookingError):
    status_code = status.HTTP_409_CONFLICT
    code = "concurrency_conflict"


class InvalidStateTransition(BookingError):
    status_code = status.HTTP_409_CONFLICT
    code = "invalid_state"


class SessionClosed(InvalidStateTransition):
    """A payment arrived for a booking session that can no longer be settled"""
    code = "session_closed"


class PartialSettlementFailure(BookingError):
    """A later settlement step failed after seats were reserved; compensation ran"""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "partial_settlement_failure"


class SeatInventoryViolation(BookingError):
    """A release would push available seats above the trip's total"""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "seat_inventory_violation"


def to_http_exception(exc: BookingError) -> HTTPException:
    """Translate a domain error into an HTTPException"""
    return HTTPException(status_code=exc.status_code, detail=exc.to_dict())
