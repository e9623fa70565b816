from pydantic import BaseModel, validator
from typing import List, Optional, Dict, Any
from datetime import date, datetime
from decimal import Decimal
from enum import Enum

class DecisionAction(str, Enum):
    """Admin decisions over a manually submitted receipt"""
    APPROVE = "approve"
    REJECT = "reject"
    ROLLBACK = "rollback"

class AuditAction(str, Enum):
    """Audit action types"""
    RECEIPT_APPROVED = "receipt_approved"
    RECEIPT_REJECTED = "receipt_rejected"
    TICKET_ROLLBACK = "ticket_rollback"
    TICKET_CHECKIN = "ticket_checkin"
    TICKET_MANUAL_SALE = "ticket_manual_sale"
    GNPL_APPROVED = "gnpl_approved"
    GNPL_REJECTED = "gnpl_rejected"
    GNPL_PAYMENT_APPROVED = "gnpl_payment_approved"
    GNPL_PAYMENT_REJECTED = "gnpl_payment_rejected"
    GNPL_PENALTY_RUN = "gnpl_penalty_run"

class TicketDecisionRequest(BaseModel):
    """Approve, reject or roll back a receipt"""
    receipt_id: str
    action: DecisionAction
    notes: Optional[str] = None
    reason: Optional[str] = None
    confirmation_ticket_number: Optional[str] = None

    @validator('receipt_id')
    def validate_receipt_id(cls, v):
        if not v or not v.strip():
            raise ValueError('receipt_id is required')
        return v.strip()

class DecisionResult(BaseModel):
    """Outcome of an admin decision"""
    ok: bool = True
    action: str
    receipt_id: str
    approval_status: str
    message: str
    ticket_count: int = 0
    seats_changed: Dict[int, int] = {}
    already_applied: bool = False

class AuditLogOut(BaseModel):
    """Audit log entry"""
    id: int
    timestamp: Optional[datetime] = None
    admin_user_id: Optional[str] = None
    admin_username: Optional[str] = None
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    details: Dict[str, Any] = {}
    success: bool = True
    error_message: Optional[str] = None

    class Config:
        from_attributes = True

class ReceiptListFilter(BaseModel):
    approval_status: Optional[str] = None
    trip_id: Optional[int] = None
    limit: int = 50
    offset: int = 0

class ReceiptWithTickets(BaseModel):
    id: str
    reference_number: str
    customer_id: int
    customer_name: Optional[str] = None
    trip_id: int
    quantity: int
    payment_method: str
    amount_paid: Any
    final_amount: Any
    approval_status: str
    created_at: Optional[datetime] = None
    ticket_numbers: List[str] = []
    ticket_statuses: List[str] = []

# Check-in
class CheckinRequest(BaseModel):
    """Mark a confirmed ticket as used at boarding"""
    ticket_id: str
    trip_date: Optional[date] = None

class CheckinTicketOut(BaseModel):
    ticket_id: str
    ticket_number: str
    serial_number: str
    status: str
    trip_id: int
    trip_name: str
    destination: Optional[str] = None
    departure_date: Optional[date] = None
    customer_id: int
    customer_name: Optional[str] = None
    phone_number: Optional[str] = None
    reference_number: Optional[str] = None
    checked_in_at: Optional[datetime] = None

class CheckinResult(BaseModel):
    ok: bool = True
    message: str
    already_checked_in: bool = False
    ticket: CheckinTicketOut

# Manual sales
class ManualSaleRequest(BaseModel):
    """Counter sale recorded by an admin; tickets are issued immediately"""
    trip_id: int
    quantity: int = 1
    customer_name: str
    customer_phone: str
    payment_method: str = "cash"
    reference_number: str
    amount_paid: Optional[Decimal] = None
    customer_id: Optional[int] = None
    notes: Optional[str] = None

    @validator('customer_name')
    def validate_customer_name(cls, v):
        v = " ".join((v or "").split())
        if not v:
            raise ValueError('customerName is required')
        return v

class ManualSaleResult(BaseModel):
    ok: bool = True
    message: str
    customer_id: int
    receipt_id: str
    reference_number: str
    amount_paid: Decimal
    ticket_numbers: List[str] = []
    seats_remaining: int
