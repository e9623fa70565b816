from typing import Optional
import logging
from sqlalchemy.orm import Session

from tickethub.bookings.schemas import PaymentMethod, SessionStatus, SettlementRequest
from tickethub.bookings.session_service import BookingSessionService, unique_reference
from tickethub.bookings.settlement import SettlementProcessor
from tickethub.exceptions import DuplicateSettlement, NotFound, SessionClosed, ValidationError
from tickethub.models import BookingSession, Receipt
from tickethub.payments.callback_parser import extract_session_id, is_successful_payment
from tickethub.payments.schemas import CallbackInput, WebhookResult
from tickethub.vouchers.schemas import PricingQuote
from tickethub.vouchers.service import PricingResolver

logger = logging.getLogger(__name__)

# A gateway payment may settle an auto-payment session or a receipt session
# the customer ended up paying through Telebirr.
SETTLEABLE_STATUSES = (SessionStatus.AWAITING_AUTO_PAYMENT, SessionStatus.AWAITING_RECEIPT)


class PaymentWebhookHandler:
    """Settles Telebirr payment confirmations exactly once per transaction"""

    def __init__(self, db: Session, processor: Optional[SettlementProcessor] = None):
        self.db = db
        self.processor = processor or SettlementProcessor(db)
        self.sessions = BookingSessionService(db)
        self.pricing = PricingResolver(db)

    def find_processed_receipt(self, transaction_id: str) -> Optional[Receipt]:
        return (
            self.db.query(Receipt)
            .filter(
                (Receipt.idempotency_key == transaction_id)
                | Receipt.reference_number.startswith(transaction_id, autoescape=True)
            )
            .first()
        )

    def find_session_receipt(self, session_id: str) -> Optional[Receipt]:
        return (
            self.db.query(Receipt)
            .filter(Receipt.booking_session_id == session_id)
            .order_by(Receipt.created_at.desc())
            .first()
        )

    def resolve_session(self, data: CallbackInput) -> Optional[BookingSession]:
        """Explicit id, then an id embedded in the transaction id, then the latest open auto-payment session

        Sessions found by id are returned in any status so the caller can
        tell a replay for a finished booking from an unknown one.
        """
        for candidate in (data.session_id, extract_session_id(data.transaction_id)):
            if candidate:
                session = self.sessions.get_session(candidate)
                if session is not None:
                    return session

        if data.customer_id is None:
            return None

        query = self.db.query(BookingSession).filter(
            BookingSession.customer_id == data.customer_id,
            BookingSession.status == SessionStatus.AWAITING_AUTO_PAYMENT.value,
        )
        if data.trip_id is not None:
            query = query.filter(BookingSession.trip_id == data.trip_id)
        return query.order_by(BookingSession.created_at.desc()).first()

    def resolve_pricing(self, session: BookingSession, callback_code: Optional[str]) -> PricingQuote:
        """Re-resolve the session's voucher against the price agreed at session start

        The session's own voucher wins over a code echoed back by the gateway.
        A code that no longer resolves is a hard error, as at booking start.
        """
        code = session.voucher_code or callback_code
        return self.pricing.resolve(session.unit_price, session.quantity, code, session.trip_id, session.customer_id)

    def handle(self, data: CallbackInput) -> WebhookResult:
        transaction_id = (data.transaction_id or "").strip()
        if not transaction_id:
            raise ValidationError("Missing transaction ID")

        if not is_successful_payment(data.payment_status):
            logger.info("Ignoring Telebirr callback %s with status %r", transaction_id, data.payment_status)
            return WebhookResult(message="Payment not successful; callback acknowledged", ignored=True)

        existing = self.find_processed_receipt(transaction_id)
        if existing is not None:
            logger.info("Telebirr transaction %s already processed (receipt %s)", transaction_id, existing.id)
            return self._already_processed(existing)

        session = self.resolve_session(data)
        if session is None:
            raise NotFound("Booking session not found for this payment", transaction_id=transaction_id)
        if session.status not in [s.value for s in SETTLEABLE_STATUSES]:
            return self._closed_session(session, transaction_id)

        quote = self.resolve_pricing(session, data.discount_code)

        previous_status = SessionStatus(session.status)
        if not self.sessions.claim_session(session.id, SETTLEABLE_STATUSES):
            # Another callback finished or cancelled the session first
            self.db.refresh(session)
            return self._closed_session(session, transaction_id)

        request = SettlementRequest(
            trip_id=session.trip_id,
            customer_id=session.customer_id,
            quantity=session.quantity,
            pricing=quote,
            payment_method=PaymentMethod.TELEBIRR_AUTO,
            amount_paid=quote.final_amount,
            idempotency_key=transaction_id,
            reference_number=unique_reference(transaction_id),
            booking_session_id=session.id,
            customer_name=session.customer_name,
            phone_number=session.phone_number,
            approved_by="telebirr",
            approval_notes="Auto-approved via Telebirr callback",
        )

        try:
            result = self.processor.settle(request)
        except DuplicateSettlement as e:
            receipt = self.db.query(Receipt).filter(Receipt.id == e.receipt_id).first()
            if receipt is None or receipt.booking_session_id != session.id:
                self.sessions.reopen_session(session.id, previous_status)
            return self._already_processed(receipt)
        except Exception:
            self.sessions.reopen_session(session.id, previous_status)
            raise

        return WebhookResult(
            message="Payment confirmed and tickets issued",
            session_id=session.id,
            receipt_id=result.receipt_id,
            reference_number=result.reference_number,
            ticket_numbers=result.ticket_numbers,
        )

    def _closed_session(self, session: BookingSession, transaction_id: str) -> WebhookResult:
        """A completed session is a no-op; anything else needs an operator"""
        if session.status == SessionStatus.COMPLETED.value:
            receipt = self.find_session_receipt(session.id)
            if receipt is not None:
                logger.warning(
                    "Telebirr transaction %s arrived for session %s already settled by receipt %s",
                    transaction_id, session.id, receipt.reference_number
                )
                return self._already_processed(receipt)

        logger.error(
            "Telebirr transaction %s paid for session %s in status %s; needs operator attention",
            transaction_id, session.id, session.status,
            extra={"session_id": session.id, "transaction_id": transaction_id, "session_status": session.status},
        )
        raise SessionClosed(
            "Booking session is no longer open; the payment needs operator review",
            session_id=session.id,
            status=session.status,
            transaction_id=transaction_id,
        )

    @staticmethod
    def _already_processed(receipt: Optional[Receipt]) -> WebhookResult:
        return WebhookResult(
            message="Already processed",
            already_processed=True,
            session_id=receipt.booking_session_id if receipt else None,
            receipt_id=receipt.id if receipt else None,
            reference_number=receipt.reference_number if receipt else None,
        )
