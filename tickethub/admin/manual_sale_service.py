from typing import Optional
import hashlib
import logging
import re
from sqlalchemy.orm import Session

from tickethub.admin.audit_service import AuditService
from tickethub.admin.schemas import AuditAction, ManualSaleRequest, ManualSaleResult
from tickethub.auth.schemas import AdminActor
from tickethub.bookings.schemas import OFFLINE_SALE_METHODS, PaymentMethod, SettlementRequest
from tickethub.bookings.session_service import BookingSessionService, unique_reference
from tickethub.bookings.settlement import SettlementProcessor
from tickethub.config import settings
from tickethub.exceptions import DuplicateReference, ValidationError
from tickethub.utils import to_money
from tickethub.vouchers.service import PricingResolver

logger = logging.getLogger(__name__)

REFERENCE_TOKEN = re.compile(r"[A-Za-z0-9_-]{3,80}")


def normalize_sale_reference(value: Optional[str]) -> str:
    """First usable token of a typed-in reference, or empty"""
    match = REFERENCE_TOKEN.search((value or "").strip())
    return match.group(0) if match else ""


def offline_customer_id(phone_digits: str) -> int:
    """Stable negative id for walk-in customers without a Telegram account"""
    digest = hashlib.sha256((phone_digits or "offline").encode()).hexdigest()
    return -int(digest[:12], 16)


class ManualSaleService:
    """Counter sales: an admin takes payment and tickets are settled on the spot"""

    def __init__(self, db: Session, processor: Optional[SettlementProcessor] = None):
        self.db = db
        self.processor = processor or SettlementProcessor(db)
        self.sessions = BookingSessionService(db)
        self.audit = AuditService(db)

    def sell(self, request: ManualSaleRequest, actor: AdminActor) -> ManualSaleResult:
        quantity = self.sessions.validate_quantity(request.quantity)
        phone_number = self.sessions.validate_phone(request.customer_phone)
        reference = normalize_sale_reference(request.reference_number)
        if not reference:
            raise ValidationError("Valid reference number is required")

        raw_method = (request.payment_method or "cash").strip().lower()
        if raw_method not in [m.value for m in OFFLINE_SALE_METHODS]:
            raise ValidationError("Manual sales accept cash, bank or telebirr payments", payment_method=raw_method)
        method = PaymentMethod(raw_method)

        trip = self.sessions.get_bookable_trip(request.trip_id, quantity)
        if self.sessions.reference_exists(reference):
            raise DuplicateReference("Reference number already exists", reference=reference)

        quote = PricingResolver(self.db).resolve(trip.price_per_ticket, quantity, None, trip.id)
        amount_paid = to_money(request.amount_paid) if request.amount_paid else quote.final_amount
        if amount_paid < quote.final_amount:
            raise ValidationError(
                f"Amount cannot be below expected total ({quote.final_amount:.2f} {settings.CURRENCY})",
                expected=str(quote.final_amount),
                paid=str(amount_paid),
            )

        customer_id = request.customer_id or offline_customer_id(re.sub(r"\D", "", phone_number))
        reference_number = unique_reference(reference)

        result = self.processor.settle(SettlementRequest(
            trip_id=trip.id,
            customer_id=customer_id,
            quantity=quantity,
            pricing=quote,
            payment_method=method,
            amount_paid=amount_paid,
            idempotency_key=f"manual-sale:{reference_number}",
            reference_number=reference_number,
            customer_name=request.customer_name,
            phone_number=phone_number,
            approved_by=actor.id,
            approval_notes=request.notes or f"Manual sale by {actor.username or actor.id}",
            notify_customer=customer_id > 0,
        ))

        self.audit.log(
            actor, AuditAction.TICKET_MANUAL_SALE, "receipt", result.receipt_id,
            details={
                "trip_id": trip.id,
                "quantity": quantity,
                "amount_paid": str(amount_paid),
                "payment_method": method.value,
                "reference_number": reference_number,
                "customer_phone": phone_number,
                "customer_id": customer_id,
            },
        )
        logger.info("Manual sale %s: %s tickets on trip %s by %s", reference_number, quantity, trip.id, actor.id)

        return ManualSaleResult(
            message="Manual sale completed and tickets issued",
            customer_id=customer_id,
            receipt_id=result.receipt_id,
            reference_number=result.reference_number,
            amount_paid=amount_paid,
            ticket_numbers=result.ticket_numbers,
            seats_remaining=result.seats_remaining,
        )
