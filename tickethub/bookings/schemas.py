from pydantic import BaseModel, Field, validator
from typing import List, Optional, Dict, Any
from datetime import datetime
from decimal import Decimal
from enum import Enum

from tickethub.vouchers.schemas import PricingQuote

class PaymentMethod(str, Enum):
    """How the customer pays for a booking"""
    BANK = "bank"
    TELEBIRR = "telebirr"
    TELEBIRR_AUTO = "telebirr_auto"
    GNPL = "gnpl"
    CASH = "cash"

class SessionStatus(str, Enum):
    """Booking session status enumeration"""
    AWAITING_RECEIPT = "awaiting_receipt"
    AWAITING_AUTO_PAYMENT = "awaiting_auto_payment"
    AWAITING_GNPL_APPROVAL = "awaiting_gnpl_approval"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

class ApprovalStatus(str, Enum):
    """Receipt approval status enumeration"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

class TicketStatus(str, Enum):
    """Ticket status enumeration"""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    USED = "used"
    CANCELLED = "cancelled"

MANUAL_METHODS = (PaymentMethod.BANK, PaymentMethod.TELEBIRR)

OFFLINE_SALE_METHODS = (PaymentMethod.CASH, PaymentMethod.BANK, PaymentMethod.TELEBIRR)

INITIAL_SESSION_STATUS = {
    PaymentMethod.BANK: SessionStatus.AWAITING_RECEIPT,
    PaymentMethod.TELEBIRR: SessionStatus.AWAITING_RECEIPT,
    PaymentMethod.TELEBIRR_AUTO: SessionStatus.AWAITING_AUTO_PAYMENT,
    PaymentMethod.GNPL: SessionStatus.AWAITING_GNPL_APPROVAL,
}

OPEN_SESSION_STATUSES = (
    SessionStatus.AWAITING_RECEIPT,
    SessionStatus.AWAITING_AUTO_PAYMENT,
    SessionStatus.AWAITING_GNPL_APPROVAL,
)

SESSION_TRANSITIONS = {
    SessionStatus.AWAITING_RECEIPT: {SessionStatus.COMPLETED, SessionStatus.CANCELLED},
    SessionStatus.AWAITING_AUTO_PAYMENT: {SessionStatus.COMPLETED, SessionStatus.CANCELLED},
    SessionStatus.AWAITING_GNPL_APPROVAL: {SessionStatus.COMPLETED, SessionStatus.CANCELLED},
    SessionStatus.COMPLETED: set(),
    SessionStatus.CANCELLED: set(),
}

CLOSED_TRIP_STATUSES = {"cancelled", "canceled", "completed", "inactive", "archived", "closed"}

# Booking Request Models
class IdCardUpload(BaseModel):
    """Identity document evidence for deferred-payment applications"""
    file_name: Optional[str] = None
    data_url: str

class BookingStartRequest(BaseModel):
    """Request to start a booking attempt"""
    trip_id: int
    payment_method: PaymentMethod
    quantity: int = 1
    customer_name: str
    phone_number: str
    discount_code: Optional[str] = None
    id_number: Optional[str] = None
    id_card: Optional[IdCardUpload] = None

    @validator('customer_name')
    def validate_customer_name(cls, v):
        if not v or not v.strip():
            raise ValueError('Customer name is required')
        return v.strip()

class ManualReceiptRequest(BaseModel):
    """Customer-submitted proof of a bank or Telebirr transfer"""
    trip_id: int
    payment_method: PaymentMethod = PaymentMethod.BANK
    quantity: int = 1
    amount_paid: Decimal
    reference_number: str
    customer_name: Optional[str] = None
    phone_number: Optional[str] = None
    discount_code: Optional[str] = None
    receipt_file_name: Optional[str] = None

# Booking Response Models
class BookingSessionOut(BaseModel):
    """Booking session details"""
    id: str
    customer_id: int
    trip_id: int
    quantity: int
    payment_method: str
    status: str
    unit_price: Decimal
    base_amount: Decimal
    discount_percent: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    voucher_id: Optional[str] = None
    voucher_code: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class TicketOut(BaseModel):
    id: str
    trip_id: int
    serial_number: str
    ticket_number: str
    purchase_price: Decimal
    ticket_status: str
    issued_at: Optional[datetime] = None
    qr_code: Optional[str] = None

    class Config:
        from_attributes = True

class ReceiptOut(BaseModel):
    id: str
    reference_number: str
    customer_id: int
    trip_id: int
    quantity: int
    payment_method: str
    amount_paid: Decimal
    base_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    approval_status: str
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class BookingStartResponse(BaseModel):
    """Result of starting a booking"""
    session: BookingSessionOut
    pricing: PricingQuote
    cancelled_sessions: int = 0
    checkout_url: Optional[str] = None
    gnpl_account_id: Optional[str] = None
    message: str

class ManualReceiptResponse(BaseModel):
    receipt: ReceiptOut
    tickets: List[TicketOut]
    session_id: str
    message: str

class SettlementRequest(BaseModel):
    """Everything the settlement processor needs to issue confirmed tickets"""
    trip_id: int
    customer_id: int
    quantity: int
    pricing: PricingQuote
    payment_method: PaymentMethod
    amount_paid: Decimal
    idempotency_key: str
    reference_number: str
    booking_session_id: Optional[str] = None
    customer_name: Optional[str] = None
    phone_number: Optional[str] = None
    approved_by: Optional[str] = None
    approval_notes: Optional[str] = None
    notify_customer: bool = True

class SettlementResult(BaseModel):
    receipt_id: str
    reference_number: str
    ticket_ids: List[str]
    ticket_numbers: List[str]
    seats_remaining: int
    qr_codes_generated: int = 0
    voucher_redeemed: bool = False
    notified: bool = False
    already_processed: bool = False

class SessionSweepResult(BaseModel):
    cancelled: int
    cutoff: datetime
    details: Dict[str, Any] = Field(default_factory=dict)
