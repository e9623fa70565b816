from typing import Dict, List, Optional
from collections import defaultdict
import logging
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tickethub.admin.audit_service import AuditService
from tickethub.admin.schemas import AuditAction, DecisionAction, DecisionResult, TicketDecisionRequest
from tickethub.auth.schemas import AdminActor
from tickethub.bookings.inventory import SeatInventory
from tickethub.bookings.schemas import ApprovalStatus, TicketStatus
from tickethub.bookings.ticket_service import TicketService
from tickethub.exceptions import (
    InvalidStateTransition, NotFound, PartialSettlementFailure, ValidationError
)
from tickethub.models import Receipt, Ticket, Trip
from tickethub.notifications import TelegramNotifier, format_amount
from tickethub.utils import utcnow
from tickethub.vouchers.service import PricingResolver

logger = logging.getLogger(__name__)


def normalize_ticket_number(value: Optional[str]) -> str:
    return (value or "").strip().upper()


def count_by_trip(tickets: List[Ticket]) -> Dict[int, int]:
    counts = defaultdict(int)
    for ticket in tickets:
        counts[ticket.trip_id] += 1
    return dict(counts)


class DecisionService:
    """Admin approve / reject / rollback workflow over manually submitted receipts"""

    def __init__(
        self,
        db: Session,
        inventory: Optional[SeatInventory] = None,
        notifier: Optional[TelegramNotifier] = None,
    ):
        self.db = db
        self.inventory = inventory or SeatInventory(db)
        self.tickets = TicketService(db)
        self.notifier = notifier or TelegramNotifier()
        self.audit = AuditService(db)

    def decide(self, request: TicketDecisionRequest, actor: AdminActor) -> DecisionResult:
        if request.action == DecisionAction.APPROVE:
            return self.approve(request.receipt_id, actor, request.notes)
        if request.action == DecisionAction.REJECT:
            return self.reject(request.receipt_id, actor, request.reason or request.notes)
        return self.rollback(request.receipt_id, actor, request.confirmation_ticket_number, request.notes)

    def _get_receipt(self, receipt_id: str) -> Receipt:
        receipt = self.db.query(Receipt).filter(Receipt.id == receipt_id).first()
        if receipt is None:
            raise NotFound("Receipt not found", receipt_id=receipt_id)
        return receipt

    def _claim(self, receipt: Receipt, from_status: ApprovalStatus, values: Dict) -> bool:
        """Conditionally move a receipt out of ``from_status``; False when someone else got there first"""
        claimed = (
            self.db.query(Receipt)
            .filter(Receipt.id == receipt.id, Receipt.approval_status == from_status.value)
            .update(values, synchronize_session=False)
        )
        self.db.commit()
        return claimed == 1

    def _lost_claim(self, receipt: Receipt, action: DecisionAction, done_status: ApprovalStatus,
                    message: str) -> DecisionResult:
        self.db.refresh(receipt)
        if receipt.approval_status == done_status.value:
            return DecisionResult(
                action=action.value,
                receipt_id=receipt.id,
                approval_status=receipt.approval_status,
                message=message,
                already_applied=True,
            )
        raise InvalidStateTransition(
            f"Receipt changed to {receipt.approval_status} while the {action.value} was in progress",
            receipt_id=receipt.id,
            approval_status=receipt.approval_status,
        )

    # ------------------------------------------------------------------
    # Approve
    # ------------------------------------------------------------------
    def approve(self, receipt_id: str, actor: AdminActor, notes: Optional[str] = None) -> DecisionResult:
        """Claim the pending receipt, reserve seats for its tickets, then confirm them"""
        receipt = self._get_receipt(receipt_id)

        if receipt.approval_status == ApprovalStatus.APPROVED.value:
            return DecisionResult(
                action=DecisionAction.APPROVE.value,
                receipt_id=receipt.id,
                approval_status=receipt.approval_status,
                message="Receipt already approved",
                already_applied=True,
            )
        if receipt.approval_status != ApprovalStatus.PENDING.value:
            raise InvalidStateTransition(
                "Only pending receipts can be approved",
                receipt_id=receipt.id,
                approval_status=receipt.approval_status,
            )

        pending_values = {
            Receipt.approval_status: ApprovalStatus.PENDING.value,
            Receipt.approved_at: None,
            Receipt.approved_by: None,
            Receipt.approval_notes: receipt.approval_notes,
        }

        now = utcnow()
        claimed = self._claim(receipt, ApprovalStatus.PENDING, {
            Receipt.approval_status: ApprovalStatus.APPROVED.value,
            Receipt.approved_at: now,
            Receipt.approved_by: actor.id,
            Receipt.approval_notes: notes,
            Receipt.rejection_reason: None,
        })
        if not claimed:
            return self._lost_claim(receipt, DecisionAction.APPROVE, ApprovalStatus.APPROVED, "Receipt already approved")

        # Tickets are read once the receipt is claimed
        pending = [t for t in self.tickets.get_receipt_tickets(receipt.id) if t.ticket_status == TicketStatus.PENDING.value]
        if not pending:
            self._unclaim(receipt.id, ApprovalStatus.APPROVED, pending_values)
            raise ValidationError("No pending tickets found for this receipt", receipt_id=receipt.id)
        seats = count_by_trip(pending)

        try:
            self.inventory.reserve_many(seats)
        except Exception:
            self._unclaim(receipt.id, ApprovalStatus.APPROVED, pending_values)
            raise

        try:
            for ticket in pending:
                ticket.ticket_status = TicketStatus.CONFIRMED.value
                ticket.issued_at = now
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.error("Approving receipt %s failed after seats were reserved; releasing", receipt_id, exc_info=True)
            self.inventory.release_many(seats)
            self._unclaim(receipt.id, ApprovalStatus.APPROVED, pending_values)
            raise PartialSettlementFailure("Failed to approve receipt; reserved seats were released", receipt_id=receipt_id)

        self._attach_qr_codes(pending)
        self._redeem_voucher(receipt)
        self._notify_approved(receipt, pending)

        self.audit.log(
            actor, AuditAction.RECEIPT_APPROVED, "receipt", receipt.id,
            details={"notes": notes, "ticket_count": len(pending), "seats": seats},
        )
        logger.info("Receipt %s approved by %s (%s tickets)", receipt.reference_number, actor.id, len(pending))

        return DecisionResult(
            action=DecisionAction.APPROVE.value,
            receipt_id=receipt.id,
            approval_status=receipt.approval_status,
            message="Receipt approved and tickets issued",
            ticket_count=len(pending),
            seats_changed={trip_id: -count for trip_id, count in seats.items()},
        )

    def _unclaim(self, receipt_id: str, claimed: ApprovalStatus, values: Dict) -> None:
        """Put back the fields a claim replaced, unless the receipt moved on since"""
        self.db.query(Receipt).filter(
            Receipt.id == receipt_id, Receipt.approval_status == claimed.value
        ).update(values, synchronize_session=False)
        self.db.commit()

    def _attach_qr_codes(self, tickets: List[Ticket]) -> int:
        try:
            return self.tickets.attach_qr_codes(tickets)
        except SQLAlchemyError:
            self.db.rollback()
            logger.warning("Storing QR codes failed; approved tickets remain valid without them", exc_info=True)
            return 0

    def _redeem_voucher(self, receipt: Receipt) -> None:
        if not receipt.voucher_id or receipt.voucher_redeemed:
            return
        try:
            if PricingResolver(self.db).redeem(receipt.voucher_id):
                receipt.voucher_redeemed = True
                self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.warning("Voucher usage update failed for receipt %s", receipt.id, exc_info=True)

    def _notify_approved(self, receipt: Receipt, tickets: List[Ticket]) -> None:
        trip = self.db.query(Trip).filter(Trip.id == receipt.trip_id).first()
        numbers = ", ".join(t.ticket_number for t in tickets)
        self.notifier.send_message(
            receipt.customer_id,
            f"Your payment of {format_amount(receipt.final_amount)} for {trip.name if trip else 'your trip'} was approved.\n"
            f"Tickets: {numbers}",
        )

    # ------------------------------------------------------------------
    # Reject
    # ------------------------------------------------------------------
    def reject(self, receipt_id: str, actor: AdminActor, reason: Optional[str] = None) -> DecisionResult:
        """Reject a pending receipt and cancel its tickets; no seats were ever reserved"""
        receipt = self._get_receipt(receipt_id)

        if receipt.approval_status == ApprovalStatus.REJECTED.value:
            return DecisionResult(
                action=DecisionAction.REJECT.value,
                receipt_id=receipt.id,
                approval_status=receipt.approval_status,
                message="Receipt already rejected",
                already_applied=True,
            )
        if receipt.approval_status != ApprovalStatus.PENDING.value:
            raise InvalidStateTransition(
                "Approved receipts must be rolled back before they can be rejected",
                receipt_id=receipt.id,
                approval_status=receipt.approval_status,
            )

        rejection_reason = (reason or "").strip() or "No reason provided"
        claimed = self._claim(receipt, ApprovalStatus.PENDING, {
            Receipt.approval_status: ApprovalStatus.REJECTED.value,
            Receipt.rejection_reason: rejection_reason,
            Receipt.approved_at: None,
        })
        if not claimed:
            return self._lost_claim(receipt, DecisionAction.REJECT, ApprovalStatus.REJECTED, "Receipt already rejected")

        cancelled = (
            self.db.query(Ticket)
            .filter(Ticket.receipt_id == receipt.id, Ticket.ticket_status == TicketStatus.PENDING.value)
            .update({Ticket.ticket_status: TicketStatus.CANCELLED.value}, synchronize_session=False)
        )
        self.db.commit()

        self.notifier.send_message(
            receipt.customer_id,
            f"Your payment receipt {receipt.reference_number} was rejected.\nReason: {rejection_reason}",
        )
        self.audit.log(
            actor, AuditAction.RECEIPT_REJECTED, "receipt", receipt.id,
            details={"reason": rejection_reason, "cancelled_tickets": cancelled},
        )
        logger.info("Receipt %s rejected by %s", receipt.reference_number, actor.id)

        return DecisionResult(
            action=DecisionAction.REJECT.value,
            receipt_id=receipt.id,
            approval_status=receipt.approval_status,
            message="Receipt rejected",
            ticket_count=cancelled,
        )

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------
    def rollback(
        self,
        receipt_id: str,
        actor: AdminActor,
        confirmation_ticket_number: Optional[str],
        notes: Optional[str] = None
    ) -> DecisionResult:
        """Return an approved receipt to pending, restoring seats for its confirmed tickets"""
        receipt = self._get_receipt(receipt_id)

        if receipt.approval_status != ApprovalStatus.APPROVED.value:
            raise InvalidStateTransition(
                "Only approved receipts can be rolled back",
                receipt_id=receipt.id,
                approval_status=receipt.approval_status,
            )
        if receipt.payment_method == "gnpl":
            raise ValidationError("GNPL receipts are managed through the GNPL ledger", receipt_id=receipt.id)

        confirmation = normalize_ticket_number(confirmation_ticket_number)
        if not confirmation:
            raise ValidationError("confirmationTicketNumber is required for rollback")

        tickets = self.tickets.get_receipt_tickets(receipt.id)
        if not tickets:
            raise ValidationError("No tickets found for this receipt", receipt_id=receipt.id)
        if confirmation not in {normalize_ticket_number(t.ticket_number) for t in tickets}:
            raise ValidationError("Confirmation ticket number does not match this receipt")
        if any(t.ticket_status == TicketStatus.USED.value for t in tickets):
            raise ValidationError("Cannot rollback because one or more tickets are already used")

        # Decided from the statuses read before anything changes
        confirmed = [t for t in tickets if t.ticket_status == TicketStatus.CONFIRMED.value]
        seats = count_by_trip(confirmed)
        approved_values = {
            Receipt.approval_status: ApprovalStatus.APPROVED.value,
            Receipt.approved_at: receipt.approved_at,
            Receipt.approved_by: receipt.approved_by,
        }

        claimed = self._claim(receipt, ApprovalStatus.APPROVED, {
            Receipt.approval_status: ApprovalStatus.PENDING.value,
            Receipt.approved_at: None,
            Receipt.approved_by: None,
        })
        if not claimed:
            return self._lost_claim(receipt, DecisionAction.ROLLBACK, ApprovalStatus.PENDING, "Receipt already rolled back")

        try:
            self.inventory.release_many(seats)
        except Exception:
            self._unclaim(receipt.id, ApprovalStatus.PENDING, approved_values)
            raise

        try:
            for ticket in confirmed:
                ticket.ticket_status = TicketStatus.PENDING.value
                ticket.issued_at = None
                ticket.qr_code = None
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.error("Rollback of receipt %s failed after seats were restored; reserving again", receipt_id, exc_info=True)
            self.inventory.reserve_many(seats)
            self._unclaim(receipt.id, ApprovalStatus.PENDING, approved_values)
            raise PartialSettlementFailure("Failed to roll back receipt; seat counts were restored", receipt_id=receipt_id)

        self.audit.log(
            actor, AuditAction.TICKET_ROLLBACK, "receipt", receipt.id,
            details={
                "notes": notes,
                "confirmation_ticket_number": confirmation,
                "restored_tickets": len(confirmed),
                "seats": seats,
            },
        )
        logger.info("Receipt %s rolled back by %s (%s seats restored)", receipt.reference_number, actor.id, len(confirmed))

        return DecisionResult(
            action=DecisionAction.ROLLBACK.value,
            receipt_id=receipt.id,
            approval_status=receipt.approval_status,
            message="Receipt rolled back to pending",
            ticket_count=len(confirmed),
            seats_changed=seats,
        )

    def list_receipts(self, approval_status: Optional[str] = None, trip_id: Optional[int] = None,
                      limit: int = 50, offset: int = 0) -> List[Receipt]:
        query = self.db.query(Receipt)
        if approval_status:
            query = query.filter(Receipt.approval_status == approval_status)
        if trip_id:
            query = query.filter(Receipt.trip_id == trip_id)
        return query.order_by(Receipt.created_at.desc()).offset(offset).limit(limit).all()
