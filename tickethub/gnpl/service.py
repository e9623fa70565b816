from typing import List, Optional, Tuple
from datetime import datetime, timedelta
from decimal import Decimal
import base64
import binascii
import logging
import re
import time
from sqlalchemy.orm import Session

from tickethub.admin.audit_service import AuditService
from tickethub.admin.schemas import AuditAction
from tickethub.auth.schemas import AdminActor
from tickethub.bookings.schemas import BookingStartRequest, PaymentMethod, SessionStatus, SettlementRequest
from tickethub.bookings.session_service import BookingSessionService
from tickethub.bookings.settlement import SettlementProcessor
from tickethub.config import settings
from tickethub.exceptions import (
    ConcurrencyConflict, DuplicateReference, DuplicateSettlement, InvalidStateTransition,
    NotFound, ValidationError
)
from tickethub.gnpl.ledger import allocate_payment, compute_snapshot
from tickethub.gnpl.schemas import (
    GnplConfig, GnplStatus, GnplPaymentStatus, GnplAccountView, GnplPaymentOut,
    GnplDecisionResult, GnplPaymentSubmitRequest, ACTIVE_ACCOUNT_STATUSES, REPAYABLE_STATUSES
)
from tickethub.models import BookingSession, GnplAccount, GnplPayment, Receipt, Trip
from tickethub.notifications import TelegramNotifier, format_amount
from tickethub.utils import to_money, utcnow
from tickethub.vouchers.schemas import PricingQuote

logger = logging.getLogger(__name__)

ID_CARD_MIME_TYPES = {"image/jpeg", "image/jpg", "image/png", "application/pdf"}
ID_CARD_MIN_BYTES = 1024
ID_CARD_MAX_BYTES = 2 * 1024 * 1024
DATA_URL_PATTERN = re.compile(r"^data:([a-zA-Z0-9.+/-]+);base64,(.+)$", re.DOTALL)


def parse_id_card(data_url: str) -> Tuple[str, int]:
    """Validate an ID card data URL; returns (mime type, decoded size)"""
    match = DATA_URL_PATTERN.match((data_url or "").strip())
    if not match:
        raise ValidationError("ID card must be an uploaded JPG, PNG or PDF file")
    mime_type = match.group(1).lower()
    if mime_type not in ID_CARD_MIME_TYPES:
        raise ValidationError("ID card must be a JPG, PNG or PDF file", mime_type=mime_type)
    try:
        size = len(base64.b64decode(match.group(2), validate=True))
    except (binascii.Error, ValueError):
        raise ValidationError("ID card file is not valid base64")
    if size < ID_CARD_MIN_BYTES:
        raise ValidationError("ID card file is too small", size=size)
    if size > ID_CARD_MAX_BYTES:
        raise ValidationError("ID card file must be 2MB or smaller", size=size)
    return mime_type, size


def gnpl_receipt_reference(account_id: str) -> str:
    short_id = re.sub(r"[^A-Za-z0-9]", "", account_id)[:6].upper()
    return f"GNPL-{int(time.time() * 1000)}-{short_id}"


class GnplService:
    """Get Now, Pay Later applications, approvals and repayments"""

    def __init__(
        self,
        db: Session,
        config: Optional[GnplConfig] = None,
        processor: Optional[SettlementProcessor] = None,
        notifier: Optional[TelegramNotifier] = None,
    ):
        self.db = db
        self.config = config or GnplConfig.from_settings(settings)
        self.notifier = notifier or TelegramNotifier()
        self.processor = processor or SettlementProcessor(db, notifier=self.notifier)
        self.audit = AuditService(db)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_account(self, account_id: str, for_update: bool = False) -> GnplAccount:
        query = self.db.query(GnplAccount).filter(GnplAccount.id == account_id)
        if for_update:
            query = query.with_for_update()
        account = query.first()
        if account is None:
            raise NotFound("GNPL account not found", account_id=account_id)
        return account

    def to_view(self, account: GnplAccount, now: Optional[datetime] = None) -> GnplAccountView:
        return GnplAccountView(
            id=account.id,
            customer_id=account.customer_id,
            trip_id=account.trip_id,
            quantity=account.quantity,
            customer_name=account.customer_name,
            phone_number=account.phone_number,
            stored_status=account.status,
            receipt_id=account.receipt_id,
            due_date=account.due_date,
            next_penalty_at=account.next_penalty_at,
            penalty_percent=Decimal(str(account.penalty_percent or 0)),
            penalty_period_days=account.penalty_period_days,
            snapshot=compute_snapshot(account, now or utcnow()),
            payments=[GnplPaymentOut.model_validate(p) for p in account.payments],
        )

    def list_accounts(
        self,
        customer_id: Optional[int] = None,
        status: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> List[GnplAccountView]:
        query = self.db.query(GnplAccount)
        if customer_id is not None:
            query = query.filter(GnplAccount.customer_id == customer_id)
        views = [self.to_view(a, now) for a in query.order_by(GnplAccount.created_at.desc()).all()]
        if status:
            # Filter on the derived status so "overdue" includes accounts not yet swept
            views = [v for v in views if v.snapshot.status.value == status]
        return views

    # ------------------------------------------------------------------
    # Applications
    # ------------------------------------------------------------------
    def check_application_allowed(self, customer_id: int, trip: Trip, request: BookingStartRequest) -> None:
        """Raise unless this customer may apply for GNPL on this trip"""
        if not self.config.enabled:
            raise ValidationError("GNPL is currently disabled")
        if not trip.allow_gnpl:
            raise ValidationError("GNPL is not available for this trip")
        if not (request.id_number or "").strip() and request.id_card is None:
            raise ValidationError("ID card is required for GNPL")
        if request.id_card is not None:
            parse_id_card(request.id_card.data_url)

        existing = (
            self.db.query(GnplAccount.id)
            .filter(
                GnplAccount.customer_id == customer_id,
                GnplAccount.trip_id == trip.id,
                GnplAccount.status.in_([s.value for s in ACTIVE_ACCOUNT_STATUSES]),
            )
            .first()
        )
        if existing is not None:
            raise ValidationError(
                "You already have an active GNPL request for this trip",
                account_id=existing[0],
            )

    def submit_application(
        self,
        customer_id: int,
        trip: Trip,
        session: BookingSession,
        request: BookingStartRequest,
        commit: bool = True
    ) -> GnplAccount:
        """Create a pending application carrying the session's pricing and the penalty terms"""
        mime_type, size = (None, None)
        if request.id_card is not None:
            mime_type, size = parse_id_card(request.id_card.data_url)

        account = GnplAccount(
            customer_id=customer_id,
            trip_id=trip.id,
            booking_session_id=session.id,
            quantity=session.quantity,
            customer_name=session.customer_name,
            phone_number=session.phone_number,
            id_number=(request.id_number or "").strip() or None,
            id_card_file_name=request.id_card.file_name if request.id_card else None,
            id_card_mime_type=mime_type,
            id_card_size=size,
            status=GnplStatus.PENDING_APPROVAL.value,
            base_amount=session.base_amount,
            discount_amount=session.discount_amount,
            approved_amount=session.final_amount,
            principal_paid=Decimal("0"),
            penalty_accrued=Decimal("0"),
            penalty_paid=Decimal("0"),
            penalty_percent=self.config.penalty_percent if self.config.penalty_enabled else Decimal("0"),
            penalty_period_days=self.config.penalty_period_days,
            voucher_id=session.voucher_id,
        )
        self.db.add(account)
        self.db.flush()
        if commit:
            self.db.commit()
        logger.info("GNPL application %s submitted by customer %s for trip %s", account.id, customer_id, trip.id)
        return account

    def approve_application(
        self,
        account_id: str,
        actor: AdminActor,
        due_date: Optional[datetime] = None,
        term_days: Optional[int] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> GnplDecisionResult:
        """Settle the deferred purchase and open the ledger"""
        now = now or utcnow()
        account = self.get_account(account_id)
        if account.status != GnplStatus.PENDING_APPROVAL.value:
            raise InvalidStateTransition(
                "Only pending GNPL applications can be approved",
                account_id=account.id,
                status=account.status,
            )

        if due_date is None:
            days = term_days if term_days and term_days > 0 else self.config.default_term_days
            due_date = now + timedelta(days=days)
        elif due_date.tzinfo is None:
            due_date = due_date.replace(tzinfo=now.tzinfo)

        pricing = PricingQuote(
            unit_price=to_money(Decimal(account.base_amount) / account.quantity),
            quantity=account.quantity,
            base_amount=to_money(account.base_amount),
            discount_amount=to_money(account.discount_amount),
            final_amount=to_money(account.approved_amount),
            voucher_id=account.voucher_id,
        )
        idempotency_key = f"gnpl:{account.id}"
        request = SettlementRequest(
            trip_id=account.trip_id,
            customer_id=account.customer_id,
            quantity=account.quantity,
            pricing=pricing,
            payment_method=PaymentMethod.GNPL,
            amount_paid=Decimal("0"),
            idempotency_key=idempotency_key,
            reference_number=gnpl_receipt_reference(account.id),
            booking_session_id=account.booking_session_id,
            customer_name=account.customer_name,
            phone_number=account.phone_number,
            approved_by=actor.id,
            approval_notes=notes or "GNPL approved",
        )
        try:
            receipt_id = self.processor.settle(request).receipt_id
        except DuplicateSettlement as e:
            # Settled by an earlier attempt that did not finish updating the account
            receipt_id = e.receipt_id

        penalty_percent = Decimal(str(account.penalty_percent or 0))
        account.status = GnplStatus.APPROVED.value
        account.receipt_id = receipt_id
        account.due_date = due_date
        account.next_penalty_at = due_date if self.config.penalty_enabled and penalty_percent > 0 else None
        account.approved_by = actor.id
        account.approved_at = now
        account.admin_notes = notes
        self.db.commit()

        BookingSessionService(self.db).complete_session(account.booking_session_id)

        self.audit.log(
            actor, AuditAction.GNPL_APPROVED, "gnpl_account", account.id,
            details={"receipt_id": receipt_id, "due_date": due_date.isoformat(), "amount": str(account.approved_amount)},
        )
        self.notifier.send_message(
            account.customer_id,
            f"Your GNPL request was approved. Amount due: {format_amount(account.approved_amount)} "
            f"by {due_date.date().isoformat()}.",
        )
        logger.info("GNPL account %s approved by %s", account.id, actor.id)

        return GnplDecisionResult(
            action="approve_application",
            message="GNPL application approved and tickets issued",
            account=self.to_view(account, now),
            receipt_id=receipt_id,
        )

    def reject_application(
        self,
        account_id: str,
        actor: AdminActor,
        reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> GnplDecisionResult:
        """Reject a pending application; no seats were reserved for it"""
        now = now or utcnow()
        account = self.get_account(account_id)
        if account.status != GnplStatus.PENDING_APPROVAL.value:
            raise InvalidStateTransition(
                "Only pending GNPL applications can be rejected",
                account_id=account.id,
                status=account.status,
            )

        account.status = GnplStatus.REJECTED.value
        account.rejected_by = actor.id
        account.rejected_at = now
        account.rejection_reason = (reason or "").strip() or "No reason provided"

        session = self.db.query(BookingSession).filter(BookingSession.id == account.booking_session_id).first()
        if session is not None and session.status == SessionStatus.AWAITING_GNPL_APPROVAL.value:
            BookingSessionService(self.db).transition(session, SessionStatus.CANCELLED)
        self.db.commit()

        self.audit.log(
            actor, AuditAction.GNPL_REJECTED, "gnpl_account", account.id,
            details={"reason": account.rejection_reason},
        )
        self.notifier.send_message(
            account.customer_id,
            f"Your GNPL request was rejected.\nReason: {account.rejection_reason}",
        )

        return GnplDecisionResult(
            action="reject_application",
            message="GNPL application rejected",
            account=self.to_view(account, now),
        )

    # ------------------------------------------------------------------
    # Repayments
    # ------------------------------------------------------------------
    def submit_payment(
        self,
        customer_id: int,
        request: GnplPaymentSubmitRequest,
        now: Optional[datetime] = None
    ) -> GnplPayment:
        """Record a customer repayment for admin review; allocation happens on approval"""
        now = now or utcnow()
        amount = to_money(request.amount)
        if amount <= 0:
            raise ValidationError("Payment amount must be greater than zero")
        reference = (request.payment_reference or "").strip()
        if not reference:
            raise ValidationError("Payment reference is required")

        account = self.get_account(request.account_id)
        if account.customer_id != customer_id:
            raise NotFound("GNPL account not found", account_id=request.account_id)

        snapshot = compute_snapshot(account, now)
        if snapshot.status not in REPAYABLE_STATUSES:
            raise ValidationError("This GNPL account is not open for payments", status=snapshot.status.value)
        if snapshot.total_due <= 0:
            raise ValidationError("Nothing due on this GNPL account")

        duplicate = (
            self.db.query(GnplPayment.id)
            .filter(
                GnplPayment.account_id == account.id,
                GnplPayment.payment_reference == reference,
                GnplPayment.status != GnplPaymentStatus.REJECTED.value,
            )
            .first()
        )
        if duplicate is not None:
            raise DuplicateReference("This payment reference has already been submitted", reference=reference)

        payment = GnplPayment(
            account_id=account.id,
            customer_id=customer_id,
            amount=amount,
            payment_reference=reference,
            payment_method="manual",
            paid_at=request.paid_at or now,
            status=GnplPaymentStatus.PENDING.value,
        )
        self.db.add(payment)
        self.db.commit()
        self.db.refresh(payment)
        logger.info("GNPL payment %s of %s submitted for account %s", payment.id, amount, account.id)
        return payment

    def _get_pending_payment(self, payment_id: str) -> GnplPayment:
        payment = self.db.query(GnplPayment).filter(GnplPayment.id == payment_id).first()
        if payment is None:
            raise NotFound("GNPL payment not found", payment_id=payment_id)
        if payment.status != GnplPaymentStatus.PENDING.value:
            raise InvalidStateTransition(
                "Only pending GNPL payments can be reviewed",
                payment_id=payment.id,
                status=payment.status,
            )
        return payment

    def _claim_payment(self, payment: GnplPayment, values: dict) -> None:
        """Compare-and-set the payment out of pending so two reviews cannot both apply"""
        updated = (
            self.db.query(GnplPayment)
            .filter(GnplPayment.id == payment.id, GnplPayment.status == GnplPaymentStatus.PENDING.value)
            .update(values, synchronize_session=False)
        )
        if not updated:
            self.db.rollback()
            raise ConcurrencyConflict("GNPL payment was already reviewed", payment_id=payment.id)

    def approve_payment(self, payment_id: str, actor: AdminActor, now: Optional[datetime] = None) -> GnplDecisionResult:
        """Allocate a pending payment penalty-first and apply it to the account"""
        now = now or utcnow()
        payment = self._get_pending_payment(payment_id)
        account = self.get_account(payment.account_id, for_update=True)

        snapshot = compute_snapshot(account, now)
        allocation = allocate_payment(snapshot.penalty_outstanding, snapshot.principal_outstanding, payment.amount)
        if allocation.applied <= 0:
            raise ValidationError("Nothing due on this GNPL account", account_id=account.id)

        self._claim_payment(payment, {
            GnplPayment.status: GnplPaymentStatus.APPROVED.value,
            GnplPayment.penalty_component: allocation.penalty_component,
            GnplPayment.principal_component: allocation.principal_component,
            GnplPayment.unapplied_amount: allocation.unapplied_amount,
            GnplPayment.reviewed_by: actor.id,
            GnplPayment.reviewed_at: now,
        })

        account.penalty_paid = to_money(account.penalty_paid) + allocation.penalty_component
        account.principal_paid = to_money(account.principal_paid) + allocation.principal_component

        after = compute_snapshot(account, now)
        if after.total_due <= 0:
            account.status = GnplStatus.COMPLETED.value
            account.next_penalty_at = None
        elif after.status == GnplStatus.OVERDUE:
            account.status = GnplStatus.OVERDUE.value
        else:
            account.status = GnplStatus.APPROVED.value
        self.db.commit()
        self.db.refresh(payment)

        if allocation.unapplied_amount > 0:
            logger.warning(
                "GNPL payment %s left %s unapplied on account %s", payment.id, allocation.unapplied_amount, account.id
            )

        self.audit.log(
            actor, AuditAction.GNPL_PAYMENT_APPROVED, "gnpl_payment", payment.id,
            details={
                "account_id": account.id,
                "penalty_component": str(allocation.penalty_component),
                "principal_component": str(allocation.principal_component),
                "unapplied_amount": str(allocation.unapplied_amount),
            },
        )
        self.notifier.send_message(
            account.customer_id,
            f"Your GNPL payment of {format_amount(payment.amount)} was approved. "
            f"Remaining balance: {format_amount(after.total_due)}.",
        )

        return GnplDecisionResult(
            action="approve_payment",
            message="GNPL payment approved",
            account=self.to_view(account, now),
            payment=GnplPaymentOut.model_validate(payment),
            allocation=allocation,
        )

    def reject_payment(
        self,
        payment_id: str,
        actor: AdminActor,
        reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> GnplDecisionResult:
        now = now or utcnow()
        payment = self._get_pending_payment(payment_id)
        rejection_reason = (reason or "").strip() or "No reason provided"

        self._claim_payment(payment, {
            GnplPayment.status: GnplPaymentStatus.REJECTED.value,
            GnplPayment.rejection_reason: rejection_reason,
            GnplPayment.reviewed_by: actor.id,
            GnplPayment.reviewed_at: now,
        })
        self.db.commit()
        self.db.refresh(payment)

        self.audit.log(
            actor, AuditAction.GNPL_PAYMENT_REJECTED, "gnpl_payment", payment.id,
            details={"account_id": payment.account_id, "reason": rejection_reason},
        )
        self.notifier.send_message(
            payment.customer_id,
            f"Your GNPL payment {payment.payment_reference} was rejected.\nReason: {rejection_reason}",
        )

        return GnplDecisionResult(
            action="reject_payment",
            message="GNPL payment rejected",
            payment=GnplPaymentOut.model_validate(payment),
        )
