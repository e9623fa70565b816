from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List, Optional
import logging

from tickethub.database import get_db
from tickethub.auth.dependencies import get_current_customer, resolve_actor
from tickethub.auth.schemas import AdminActor, CustomerIdentity
from tickethub.bookings.schemas import (
    BookingStartRequest, BookingStartResponse, BookingSessionOut, ManualReceiptRequest,
    ManualReceiptResponse, SessionSweepResult, TicketOut
)
from tickethub.bookings.session_service import BookingSessionService
from tickethub.exceptions import BookingError, to_http_exception
from tickethub.models import Trip
from tickethub.vouchers.schemas import PricingQuote, VoucherPreviewRequest

logger = logging.getLogger(__name__)

router = APIRouter()

@router.post("/start", response_model=BookingStartResponse)
def start_booking(
    request: BookingStartRequest,
    customer: CustomerIdentity = Depends(get_current_customer),
    db: Session = Depends(get_db)
):
    """Start a booking attempt for the current customer"""

    service = BookingSessionService(db)

    try:
        return service.start_booking(customer.telegram_user_id, request)
    except BookingError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.exception("Booking start failed for customer %s", customer.telegram_user_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to start booking: {str(e)}"
        )

@router.post("/pricing/preview", response_model=PricingQuote)
def preview_pricing(
    request: VoucherPreviewRequest,
    customer: CustomerIdentity = Depends(get_current_customer),
    db: Session = Depends(get_db)
):
    """Preview the price of a booking with a discount code"""

    service = BookingSessionService(db)
    trip = db.query(Trip).filter(Trip.id == request.trip_id).first()
    if not trip:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trip not found")

    try:
        return service.pricing.resolve(
            trip.price_per_ticket, request.quantity, request.code, trip.id, customer.telegram_user_id
        )
    except BookingError as e:
        raise to_http_exception(e)

@router.post("/manual/complete", response_model=ManualReceiptResponse)
def submit_manual_receipt(
    request: ManualReceiptRequest,
    customer: CustomerIdentity = Depends(get_current_customer),
    db: Session = Depends(get_db)
):
    """Submit proof of a manual bank or Telebirr payment"""

    service = BookingSessionService(db)

    try:
        return service.submit_manual_receipt(customer.telegram_user_id, request)
    except BookingError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.exception("Manual receipt submission failed for customer %s", customer.telegram_user_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to submit receipt: {str(e)}"
        )

@router.get("/sessions/current", response_model=Optional[BookingSessionOut])
def get_current_session(
    customer: CustomerIdentity = Depends(get_current_customer),
    db: Session = Depends(get_db)
):
    """Get the customer's open booking session, if any"""
    return BookingSessionService(db).get_current_session(customer.telegram_user_id)

@router.post("/sessions/{session_id}/cancel", response_model=BookingSessionOut)
def cancel_session(
    session_id: str,
    customer: CustomerIdentity = Depends(get_current_customer),
    db: Session = Depends(get_db)
):
    """Cancel one of the customer's open booking sessions"""

    try:
        return BookingSessionService(db).cancel_session(customer.telegram_user_id, session_id)
    except BookingError as e:
        raise to_http_exception(e)

@router.get("/tickets", response_model=List[TicketOut])
def list_my_tickets(
    customer: CustomerIdentity = Depends(get_current_customer),
    db: Session = Depends(get_db)
):
    """List the customer's tickets, newest first"""
    return BookingSessionService(db).list_customer_tickets(customer.telegram_user_id)

@router.post("/cleanup-expired", response_model=SessionSweepResult)
def cleanup_expired_sessions(
    actor: AdminActor = Depends(resolve_actor),
    db: Session = Depends(get_db)
):
    """Cancel stale booking sessions (admin only)"""
    result = BookingSessionService(db).expire_stale_sessions()
    logger.info("Admin %s swept %s stale booking sessions", actor.id, result.cancelled)
    return result
