from typing import List, Optional
import logging
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from tickethub.bookings.inventory import SeatInventory
from tickethub.bookings.schemas import SettlementRequest, SettlementResult, ApprovalStatus, TicketStatus
from tickethub.bookings.ticket_service import TicketService
from tickethub.config import settings
from tickethub.exceptions import DuplicateSettlement, NotFound, PartialSettlementFailure, ValidationError
from tickethub.models import Receipt, Ticket, Trip
from tickethub.notifications import TelegramNotifier, format_amount
from tickethub.utils import to_money, utcnow
from tickethub.vouchers.service import PricingResolver

logger = logging.getLogger(__name__)


class SettlementProcessor:
    """
    Turns a confirmed payment into an approved receipt and confirmed tickets.

    Steps run in a fixed order: reserve seats, insert the receipt keyed by
    the idempotency key, insert the ticket batch. Every failure after the
    reservation releases the seats again; a failure after the receipt exists
    also marks it rejected. QR codes, voucher redemption and the customer
    message are best effort and never undo a committed settlement.
    """

    def __init__(
        self,
        db: Session,
        inventory: Optional[SeatInventory] = None,
        ticket_service: Optional[TicketService] = None,
        notifier: Optional[TelegramNotifier] = None,
    ):
        self.db = db
        self.inventory = inventory or SeatInventory(db)
        self.ticket_service = ticket_service or TicketService(db)
        self.notifier = notifier or TelegramNotifier()
        self.pricing = PricingResolver(db)

    def find_existing(self, idempotency_key: str) -> Optional[Receipt]:
        return self.db.query(Receipt).filter(Receipt.idempotency_key == idempotency_key).first()

    def settle(self, request: SettlementRequest) -> SettlementResult:
        if request.quantity <= 0:
            raise ValidationError("Quantity must be a positive integer", quantity=request.quantity)
        if not request.idempotency_key:
            raise ValidationError("Idempotency key is required")

        existing = self.find_existing(request.idempotency_key)
        if existing is not None:
            raise DuplicateSettlement(request.idempotency_key, existing.id)

        trip = self.db.query(Trip).filter(Trip.id == request.trip_id).first()
        if trip is None:
            raise NotFound("Trip not found", trip_id=request.trip_id)

        seats_remaining = self.inventory.reserve(trip.id, request.quantity)

        receipt = self._create_receipt(request)
        tickets = self._create_tickets(receipt, trip, request)

        logger.info(
            "Settled %s tickets for customer %s on trip %s (receipt %s, key %s)",
            len(tickets), request.customer_id, trip.id, receipt.reference_number, request.idempotency_key,
            extra={"receipt_id": receipt.id, "idempotency_key": request.idempotency_key, "trip_id": trip.id},
        )

        qr_count = self._attach_qr_codes(tickets)
        redeemed = self._redeem_voucher(receipt)
        notified = self._notify(receipt, trip, tickets) if request.notify_customer else False

        return SettlementResult(
            receipt_id=receipt.id,
            reference_number=receipt.reference_number,
            ticket_ids=[t.id for t in tickets],
            ticket_numbers=[t.ticket_number for t in tickets],
            seats_remaining=seats_remaining,
            qr_codes_generated=qr_count,
            voucher_redeemed=redeemed,
            notified=notified,
        )

    def _create_receipt(self, request: SettlementRequest) -> Receipt:
        pricing = request.pricing
        receipt = Receipt(
            reference_number=request.reference_number,
            idempotency_key=request.idempotency_key,
            customer_id=request.customer_id,
            customer_name=request.customer_name,
            phone_number=request.phone_number,
            trip_id=request.trip_id,
            booking_session_id=request.booking_session_id,
            quantity=request.quantity,
            payment_method=request.payment_method.value,
            amount_paid=to_money(request.amount_paid),
            currency=settings.CURRENCY,
            base_amount=pricing.base_amount,
            discount_amount=pricing.discount_amount,
            final_amount=pricing.final_amount,
            voucher_id=pricing.voucher_id,
            voucher_code=pricing.voucher_code,
            approval_status=ApprovalStatus.APPROVED.value,
            approval_notes=request.approval_notes,
            approved_by=request.approved_by,
            approved_at=utcnow(),
        )
        try:
            self.db.add(receipt)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            self._compensate_seats(request.trip_id, request.quantity)
            existing = self.find_existing(request.idempotency_key)
            if existing is not None:
                raise DuplicateSettlement(request.idempotency_key, existing.id)
            logger.error("Receipt insert for key %s violated a constraint", request.idempotency_key, exc_info=True)
            raise PartialSettlementFailure(
                "Failed to create receipt; reserved seats were released",
                trip_id=request.trip_id,
                quantity=request.quantity,
            )
        except SQLAlchemyError:
            self.db.rollback()
            logger.error("Receipt insert for key %s failed", request.idempotency_key, exc_info=True)
            self._compensate_seats(request.trip_id, request.quantity)
            raise PartialSettlementFailure(
                "Failed to create receipt; reserved seats were released",
                trip_id=request.trip_id,
                quantity=request.quantity,
            )
        return receipt

    def _create_tickets(self, receipt: Receipt, trip: Trip, request: SettlementRequest) -> List[Ticket]:
        error = None
        try:
            tickets = self.ticket_service.create_batch(receipt, trip, TicketStatus.CONFIRMED.value)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            tickets = []
            error = e

        created = self.ticket_service.count_receipt_tickets(receipt.id)
        if error is None and created == request.quantity:
            return tickets

        logger.error(
            "Ticket batch for receipt %s incomplete (%s of %s created); compensating",
            receipt.id, created, request.quantity, exc_info=error
        )
        self._compensate_seats(request.trip_id, request.quantity)
        self.db.query(Ticket).filter(Ticket.receipt_id == receipt.id).update(
            {Ticket.ticket_status: TicketStatus.CANCELLED.value}, synchronize_session=False
        )
        receipt.approval_status = ApprovalStatus.REJECTED.value
        receipt.rejection_reason = f"Ticket creation failed: created {created} of {request.quantity}"
        receipt.approved_at = None
        self.db.commit()
        raise PartialSettlementFailure(
            "Failed to create tickets; reserved seats were released and the receipt rejected",
            receipt_id=receipt.id,
            created=created,
            requested=request.quantity,
        )

    def _compensate_seats(self, trip_id: int, quantity: int) -> None:
        try:
            self.inventory.release(trip_id, quantity)
        except Exception:
            # Compensation itself failed; the original error still propagates
            logger.critical("Failed to release %s seats on trip %s during compensation", quantity, trip_id, exc_info=True)

    def _attach_qr_codes(self, tickets: List[Ticket]) -> int:
        try:
            return self.ticket_service.attach_qr_codes(tickets)
        except SQLAlchemyError:
            self.db.rollback()
            logger.warning("Storing QR codes failed; tickets remain valid without them", exc_info=True)
            return 0

    def _redeem_voucher(self, receipt: Receipt) -> bool:
        """Count the voucher once per receipt"""
        if not receipt.voucher_id or receipt.voucher_redeemed:
            return False
        try:
            if not self.pricing.redeem(receipt.voucher_id):
                return False
            receipt.voucher_redeemed = True
            self.db.commit()
            return True
        except SQLAlchemyError:
            self.db.rollback()
            logger.warning("Voucher usage update failed for receipt %s", receipt.id, exc_info=True)
            return False

    def _notify(self, receipt: Receipt, trip: Trip, tickets: List[Ticket]) -> bool:
        numbers = ", ".join(t.ticket_number for t in tickets)
        text = (
            f"Your payment of {format_amount(receipt.final_amount)} for {trip.name} is confirmed.\n"
            f"Tickets ({len(tickets)}): {numbers}\n"
            f"Reference: {receipt.reference_number}"
        )
        try:
            return self.notifier.send_message(receipt.customer_id, text)
        except Exception:
            logger.warning("Customer notification failed for receipt %s", receipt.id, exc_info=True)
            return False
