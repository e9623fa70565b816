from typing import List, Optional, Tuple
from datetime import datetime, timedelta
from decimal import Decimal
from urllib.parse import urlencode
import logging
import re
import time
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tickethub.bookings.schemas import (
    BookingStartRequest, BookingStartResponse, BookingSessionOut, ManualReceiptRequest,
    ManualReceiptResponse, ReceiptOut, TicketOut, SessionSweepResult, PaymentMethod,
    SessionStatus, ApprovalStatus, TicketStatus, INITIAL_SESSION_STATUS,
    OPEN_SESSION_STATUSES, SESSION_TRANSITIONS, CLOSED_TRIP_STATUSES, MANUAL_METHODS
)
from tickethub.bookings.ticket_service import TicketService
from tickethub.config import settings
from tickethub.exceptions import (
    ValidationError, NotFound, InsufficientSeats, InvalidStateTransition, DuplicateReference
)
from tickethub.models import BookingSession, Receipt, Ticket, Trip
from tickethub.utils import to_money, utcnow
from tickethub.vouchers.schemas import PricingQuote
from tickethub.vouchers.service import PricingResolver

logger = logging.getLogger(__name__)

PHONE_PATTERN = re.compile(r"^\+?[0-9]{7,20}$")
SWEEPABLE_STATUSES = [SessionStatus.AWAITING_RECEIPT.value, SessionStatus.AWAITING_AUTO_PAYMENT.value]


def normalize_phone(phone: Optional[str]) -> str:
    """Strip spaces, parentheses and dashes from a phone number"""
    return re.sub(r"[\s()\-]", "", phone or "")


def unique_reference(reference: str) -> str:
    """Suffix a customer reference with the last 6 digits of the current ms timestamp"""
    return f"{reference}-{str(int(time.time() * 1000))[-6:]}"


def quote_from_session(session: BookingSession) -> PricingQuote:
    """Rebuild the pricing snapshot agreed when the session started"""
    return PricingQuote(
        unit_price=to_money(session.unit_price),
        quantity=session.quantity,
        base_amount=to_money(session.base_amount),
        discount_percent=Decimal(str(session.discount_percent or 0)),
        discount_amount=to_money(session.discount_amount),
        final_amount=to_money(session.final_amount),
        voucher_id=session.voucher_id,
        voucher_code=session.voucher_code,
    )


class BookingSessionService:
    """Service for booking attempts and their lifecycle"""

    def __init__(self, db: Session):
        self.db = db
        self.pricing = PricingResolver(db)

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------
    def get_bookable_trip(self, trip_id: int, quantity: int) -> Trip:
        """Load a trip and check it is open and currently has enough seats"""
        trip = self.db.query(Trip).filter(Trip.id == trip_id).first()
        if not trip:
            raise NotFound("Trip not found", trip_id=trip_id)
        if (trip.status or "").lower() in CLOSED_TRIP_STATUSES:
            raise ValidationError("This trip is not open for booking", trip_status=trip.status)
        if trip.available_seats < quantity:
            raise InsufficientSeats(available=trip.available_seats, requested=quantity)
        return trip

    @staticmethod
    def validate_quantity(quantity) -> int:
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise ValidationError("Quantity must be a positive integer", quantity=quantity)
        return quantity

    @staticmethod
    def validate_phone(phone: Optional[str]) -> str:
        normalized = normalize_phone(phone)
        if not PHONE_PATTERN.match(normalized):
            raise ValidationError("Invalid phone number")
        return normalized

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def transition(self, session: BookingSession, new_status: SessionStatus) -> BookingSession:
        """Move a session to a new status, enforcing the transition table"""
        current = SessionStatus(session.status)
        if new_status not in SESSION_TRANSITIONS[current]:
            raise InvalidStateTransition(
                f"Booking session cannot move from {current.value} to {new_status.value}",
                session_id=session.id,
                status=current.value,
            )
        session.status = new_status.value
        session.updated_at = utcnow()
        return session

    def complete_session(self, session_id: Optional[str]) -> bool:
        """Mark a session completed if it is still open"""
        if not session_id:
            return False
        session = self.get_session(session_id)
        if session is None or session.status not in [s.value for s in OPEN_SESSION_STATUSES]:
            return False
        self.transition(session, SessionStatus.COMPLETED)
        self.db.commit()
        return True

    def claim_session(self, session_id: str, statuses) -> bool:
        """Atomically move a session from one of ``statuses`` to completed"""
        claimed = (
            self.db.query(BookingSession)
            .filter(
                BookingSession.id == session_id,
                BookingSession.status.in_([s.value for s in statuses]),
            )
            .update(
                {BookingSession.status: SessionStatus.COMPLETED.value, BookingSession.updated_at: utcnow()},
                synchronize_session=False,
            )
        )
        self.db.commit()
        return claimed == 1

    def reopen_session(self, session_id: str, status: SessionStatus) -> bool:
        """Undo a claim whose settlement did not go through"""
        reopened = (
            self.db.query(BookingSession)
            .filter(
                BookingSession.id == session_id,
                BookingSession.status == SessionStatus.COMPLETED.value,
            )
            .update(
                {BookingSession.status: status.value, BookingSession.updated_at: utcnow()},
                synchronize_session=False,
            )
        )
        self.db.commit()
        return reopened == 1

    def cancel_open_sessions(self, customer_id: int, exclude_id: Optional[str] = None) -> int:
        """Cancel every open session for a customer; returns how many were cancelled"""
        query = self.db.query(BookingSession).filter(
            BookingSession.customer_id == customer_id,
            BookingSession.status.in_([s.value for s in OPEN_SESSION_STATUSES]),
        )
        if exclude_id:
            query = query.filter(BookingSession.id != exclude_id)
        return query.update(
            {BookingSession.status: SessionStatus.CANCELLED.value, BookingSession.updated_at: utcnow()},
            synchronize_session=False,
        )

    def cancel_session(self, customer_id: int, session_id: str) -> BookingSession:
        session = self.get_session(session_id)
        if session is None or session.customer_id != customer_id:
            raise NotFound("Booking session not found", session_id=session_id)
        self.transition(session, SessionStatus.CANCELLED)
        self.db.commit()
        self.db.refresh(session)
        return session

    def get_session(self, session_id: str) -> Optional[BookingSession]:
        return self.db.query(BookingSession).filter(BookingSession.id == session_id).first()

    def get_current_session(self, customer_id: int) -> Optional[BookingSession]:
        return (
            self.db.query(BookingSession)
            .filter(
                BookingSession.customer_id == customer_id,
                BookingSession.status.in_([s.value for s in OPEN_SESSION_STATUSES]),
            )
            .order_by(BookingSession.created_at.desc())
            .first()
        )

    def _create_session(
        self,
        customer_id: int,
        trip: Trip,
        method: PaymentMethod,
        quote: PricingQuote,
        customer_name: Optional[str],
        phone_number: Optional[str],
    ) -> Tuple[BookingSession, int]:
        cancelled = self.cancel_open_sessions(customer_id)
        session = BookingSession(
            customer_id=customer_id,
            trip_id=trip.id,
            quantity=quote.quantity,
            payment_method=method.value,
            status=INITIAL_SESSION_STATUS[method].value,
            customer_name=customer_name,
            phone_number=phone_number,
            unit_price=quote.unit_price,
            base_amount=quote.base_amount,
            discount_percent=quote.discount_percent,
            discount_amount=quote.discount_amount,
            final_amount=quote.final_amount,
            voucher_id=quote.voucher_id,
            voucher_code=quote.voucher_code,
        )
        self.db.add(session)
        self.db.flush()
        return session, cancelled

    def start_booking(self, customer_id: int, request: BookingStartRequest) -> BookingStartResponse:
        """Start a booking attempt, superseding any open session for the customer"""
        quantity = self.validate_quantity(request.quantity)
        customer_name = (request.customer_name or "").strip()
        if not customer_name:
            raise ValidationError("Customer name is required")
        phone_number = self.validate_phone(request.phone_number)

        method = PaymentMethod(request.payment_method)
        if method not in INITIAL_SESSION_STATUS:
            raise ValidationError("This payment method is not available for online bookings", payment_method=method.value)
        trip = self.get_bookable_trip(request.trip_id, quantity)

        gnpl_service = None
        if method == PaymentMethod.GNPL:
            from tickethub.gnpl.service import GnplService
            gnpl_service = GnplService(self.db)
            gnpl_service.check_application_allowed(customer_id, trip, request)

        quote = self.pricing.resolve(trip.price_per_ticket, quantity, request.discount_code, trip.id, customer_id)
        session, cancelled = self._create_session(customer_id, trip, method, quote, customer_name, phone_number)

        checkout_url = None
        gnpl_account_id = None
        if method == PaymentMethod.GNPL:
            account = gnpl_service.submit_application(customer_id, trip, session, request, commit=False)
            gnpl_account_id = account.id
            message = "GNPL application submitted for approval"
        elif method == PaymentMethod.TELEBIRR_AUTO:
            checkout_url = self.build_checkout_url(customer_id, trip.id, session.id, quote.voucher_code)
            message = "Continue to Telebirr to complete payment"
        else:
            message = "Booking started. Submit your payment receipt to continue"

        self.db.commit()
        self.db.refresh(session)

        logger.info(
            "Booking session %s started for customer %s (trip %s, qty %s, method %s, superseded %s)",
            session.id, customer_id, trip.id, quantity, method.value, cancelled
        )

        return BookingStartResponse(
            session=BookingSessionOut.model_validate(session),
            pricing=quote,
            cancelled_sessions=cancelled,
            checkout_url=checkout_url,
            gnpl_account_id=gnpl_account_id,
            message=message,
        )

    @staticmethod
    def build_checkout_url(customer_id: int, trip_id: int, session_id: str, discount_code: Optional[str]) -> str:
        params = {
            "telegramUserId": customer_id,
            "tripId": trip_id,
            "sessionId": session_id,
        }
        if discount_code:
            params["discountCode"] = discount_code
        return f"{settings.APP_URL.rstrip('/')}/api/telebirr/checkout?{urlencode(params)}"

    # ------------------------------------------------------------------
    # Manual receipts
    # ------------------------------------------------------------------
    def reference_exists(self, reference: str) -> bool:
        """True when a receipt already uses this reference, exactly or with a suffix"""
        return (
            self.db.query(Receipt.id)
            .filter(
                (Receipt.reference_number == reference)
                | Receipt.reference_number.startswith(f"{reference}-", autoescape=True)
            )
            .first()
            is not None
        )

    def submit_manual_receipt(self, customer_id: int, request: ManualReceiptRequest) -> ManualReceiptResponse:
        """Record a customer's bank/Telebirr transfer as a pending receipt with pending tickets"""
        method = PaymentMethod(request.payment_method)
        if method not in MANUAL_METHODS:
            raise ValidationError("Manual receipts are only accepted for bank or telebirr payments")

        quantity = self.validate_quantity(request.quantity)
        reference = (request.reference_number or "").strip()
        if not reference:
            raise ValidationError("Payment reference is required")
        amount_paid = to_money(request.amount_paid)
        if amount_paid <= 0:
            raise ValidationError("Amount paid must be greater than zero")

        trip = self.get_bookable_trip(request.trip_id, quantity)

        if self.reference_exists(reference):
            raise DuplicateReference("This payment reference has already been submitted", reference=reference)

        session = (
            self.db.query(BookingSession)
            .filter(
                BookingSession.customer_id == customer_id,
                BookingSession.trip_id == trip.id,
                BookingSession.payment_method == method.value,
                BookingSession.status == SessionStatus.AWAITING_RECEIPT.value,
            )
            .order_by(BookingSession.created_at.desc())
            .first()
        )

        if session is not None and session.quantity == quantity and not request.discount_code:
            quote = quote_from_session(session)
        else:
            code = request.discount_code or (session.voucher_code if session is not None else None)
            quote = self.pricing.resolve(trip.price_per_ticket, quantity, code, trip.id, customer_id)

        if amount_paid < quote.final_amount:
            raise ValidationError(
                f"Paid amount is less than expected total ({quote.final_amount:.2f} {settings.CURRENCY})",
                expected=str(quote.final_amount),
                paid=str(amount_paid),
            )

        customer_name = (request.customer_name or (session.customer_name if session else None) or "").strip() or None
        phone_number = request.phone_number or (session.phone_number if session else None)
        if phone_number:
            phone_number = self.validate_phone(phone_number)

        if session is None:
            session, _ = self._create_session(customer_id, trip, method, quote, customer_name, phone_number)
        else:
            session.quantity = quantity
            session.base_amount = quote.base_amount
            session.discount_percent = quote.discount_percent
            session.discount_amount = quote.discount_amount
            session.final_amount = quote.final_amount
            session.voucher_id = quote.voucher_id
            session.voucher_code = quote.voucher_code

        receipt = Receipt(
            reference_number=unique_reference(reference),
            customer_id=customer_id,
            customer_name=customer_name,
            phone_number=phone_number,
            trip_id=trip.id,
            booking_session_id=session.id,
            quantity=quantity,
            payment_method=method.value,
            amount_paid=amount_paid,
            currency=settings.CURRENCY,
            base_amount=quote.base_amount,
            discount_amount=quote.discount_amount,
            final_amount=quote.final_amount,
            voucher_id=quote.voucher_id,
            voucher_code=quote.voucher_code,
            approval_status=ApprovalStatus.PENDING.value,
        )
        try:
            self.db.add(receipt)
            self.db.flush()
            tickets = TicketService(self.db).create_batch(receipt, trip, TicketStatus.PENDING.value)
            self.transition(session, SessionStatus.COMPLETED)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise DuplicateReference("This payment reference has already been submitted", reference=reference)

        self.db.refresh(receipt)
        logger.info("Manual receipt %s submitted by customer %s for trip %s", receipt.reference_number, customer_id, trip.id)

        return ManualReceiptResponse(
            receipt=ReceiptOut.model_validate(receipt),
            tickets=[TicketOut.model_validate(t) for t in tickets],
            session_id=session.id,
            message="Receipt submitted. Your tickets will be confirmed after review",
        )

    # ------------------------------------------------------------------
    # Queries & maintenance
    # ------------------------------------------------------------------
    def list_customer_tickets(self, customer_id: int) -> List[Ticket]:
        return (
            self.db.query(Ticket)
            .filter(Ticket.customer_id == customer_id)
            .order_by(Ticket.created_at.desc())
            .all()
        )

    def expire_stale_sessions(self, max_age: Optional[timedelta] = None, now: Optional[datetime] = None) -> SessionSweepResult:
        """Cancel receipt and auto-payment sessions older than the configured TTL

        GNPL sessions are left alone; they close with the application decision.
        """
        now = now or utcnow()
        max_age = max_age or timedelta(minutes=settings.BOOKING_SESSION_TTL_MINUTES)
        cutoff = now - max_age

        stale = (
            self.db.query(BookingSession)
            .filter(
                BookingSession.status.in_(SWEEPABLE_STATUSES),
                BookingSession.created_at < cutoff,
            )
            .all()
        )
        by_status = {}
        for session in stale:
            by_status[session.status] = by_status.get(session.status, 0) + 1
            self.transition(session, SessionStatus.CANCELLED)
        self.db.commit()

        if stale:
            logger.info("Expired %s stale booking sessions older than %s", len(stale), cutoff.isoformat())
        return SessionSweepResult(cancelled=len(stale), cutoff=cutoff, details=by_status)
