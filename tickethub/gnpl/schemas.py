from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any
from datetime import datetime, date
from decimal import Decimal
from enum import Enum

class GnplStatus(str, Enum):
    """GNPL account status enumeration"""
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    OVERDUE = "overdue"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

class GnplPaymentStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

ACTIVE_ACCOUNT_STATUSES = (GnplStatus.PENDING_APPROVAL, GnplStatus.APPROVED, GnplStatus.OVERDUE)
REPAYABLE_STATUSES = (GnplStatus.APPROVED, GnplStatus.OVERDUE)

class GnplConfig(BaseModel):
    """Deferred-payment settings"""
    enabled: bool = False
    require_admin_approval: bool = True
    default_term_days: int = 14
    penalty_enabled: bool = True
    penalty_percent: Decimal = Decimal("5")
    penalty_period_days: int = 7
    reminder_enabled: bool = True
    reminder_days_before: int = 0

    @classmethod
    def from_settings(cls, settings) -> "GnplConfig":
        return cls(
            enabled=settings.GNPL_ENABLED,
            require_admin_approval=settings.GNPL_REQUIRE_ADMIN_APPROVAL,
            default_term_days=max(1, settings.GNPL_DEFAULT_TERM_DAYS),
            penalty_enabled=settings.GNPL_PENALTY_ENABLED,
            penalty_percent=Decimal(str(max(0, settings.GNPL_PENALTY_PERCENT))),
            penalty_period_days=max(1, settings.GNPL_PENALTY_PERIOD_DAYS),
            reminder_enabled=settings.GNPL_REMINDER_ENABLED,
            reminder_days_before=max(0, settings.GNPL_REMINDER_DAYS_BEFORE),
        )

class GnplSnapshot(BaseModel):
    """Balances derived from the stored ledger fields at a point in time"""
    approved_amount: Decimal
    principal_paid: Decimal
    principal_outstanding: Decimal
    penalty_accrued: Decimal
    penalty_paid: Decimal
    penalty_outstanding: Decimal
    total_due: Decimal
    overdue_days: int = 0
    due_in_days: Optional[int] = None
    status: GnplStatus

class PaymentAllocation(BaseModel):
    """Penalty-first split of a payment"""
    penalty_component: Decimal
    principal_component: Decimal
    unapplied_amount: Decimal

    @property
    def applied(self) -> Decimal:
        return self.penalty_component + self.principal_component

class GnplPaymentOut(BaseModel):
    id: str
    account_id: str
    amount: Decimal
    payment_reference: str
    paid_at: Optional[datetime] = None
    principal_component: Optional[Decimal] = None
    penalty_component: Optional[Decimal] = None
    unapplied_amount: Optional[Decimal] = None
    status: str
    rejection_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class GnplAccountView(BaseModel):
    """Account with balances recomputed at read time"""
    id: str
    customer_id: int
    trip_id: int
    quantity: int
    customer_name: Optional[str] = None
    phone_number: Optional[str] = None
    stored_status: str
    receipt_id: Optional[str] = None
    due_date: Optional[datetime] = None
    next_penalty_at: Optional[datetime] = None
    penalty_percent: Decimal
    penalty_period_days: int
    snapshot: GnplSnapshot
    payments: List[GnplPaymentOut] = []

class GnplAdminAction(str, Enum):
    APPROVE_APPLICATION = "approve_application"
    REJECT_APPLICATION = "reject_application"
    APPROVE_PAYMENT = "approve_payment"
    REJECT_PAYMENT = "reject_payment"

class GnplAdminRequest(BaseModel):
    """Admin decision over a GNPL application or payment"""
    action: GnplAdminAction
    account_id: Optional[str] = None
    payment_id: Optional[str] = None
    due_date: Optional[datetime] = None
    term_days: Optional[int] = None
    notes: Optional[str] = None
    reason: Optional[str] = None

class GnplPaymentSubmitRequest(BaseModel):
    account_id: str
    amount: Decimal
    payment_reference: str
    paid_at: Optional[datetime] = None

class GnplDecisionResult(BaseModel):
    ok: bool = True
    action: str
    message: str
    account: Optional[GnplAccountView] = None
    payment: Optional[GnplPaymentOut] = None
    allocation: Optional[PaymentAllocation] = None
    receipt_id: Optional[str] = None

class PenaltyRunResult(BaseModel):
    run_at: datetime
    accounts_checked: int = 0
    penalties_applied: int = 0
    periods_applied: int = 0
    total_penalty: Decimal = Decimal("0.00")
    marked_overdue: int = 0
    reminders_sent: int = 0
    skipped_conflicts: int = 0
    details: List[Dict[str, Any]] = Field(default_factory=list)
