import uuid

from sqlalchemy import (
    Column, Integer, BigInteger, String, Boolean, DateTime, Date, Text,
    ForeignKey, Numeric, JSON, CheckConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from tickethub.database import Base
from tickethub.utils import utcnow


def _uuid() -> str:
    return str(uuid.uuid4())

# ================================
# Trips & Vouchers
# ================================
class Trip(Base):
    __tablename__ = "trips"
    __table_args__ = (
        CheckConstraint("available_seats >= 0", name="ck_trips_available_non_negative"),
        CheckConstraint("available_seats <= total_seats", name="ck_trips_available_le_total"),
    )

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    destination = Column(String(255))
    departure_date = Column(Date)
    price_per_ticket = Column(Numeric(12, 2), nullable=False)
    total_seats = Column(Integer, nullable=False)
    available_seats = Column(Integer, nullable=False)
    status = Column(String(30), nullable=False, default="active")
    allow_gnpl = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    tickets = relationship("Ticket", back_populates="trip")
    receipts = relationship("Receipt", back_populates="trip")

class DiscountVoucher(Base):
    __tablename__ = "discount_vouchers"

    id = Column(String(36), primary_key=True, default=_uuid)
    code = Column(String(64), unique=True, nullable=False, index=True)
    discount_percent = Column(Numeric(5, 2), nullable=False)
    max_uses = Column(Integer)
    current_uses = Column(Integer, nullable=False, default=0)
    trip_id = Column(BigInteger().with_variant(Integer, "sqlite"), ForeignKey("trips.id"))
    customer_id = Column(BigInteger)
    valid_from = Column(DateTime(timezone=True))
    expires_at = Column(DateTime(timezone=True))
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

# ================================
# Booking Sessions
# ================================
class BookingSession(Base):
    __tablename__ = "booking_sessions"

    id = Column(String(36), primary_key=True, default=_uuid)
    customer_id = Column(BigInteger, nullable=False, index=True)
    trip_id = Column(BigInteger().with_variant(Integer, "sqlite"), ForeignKey("trips.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    payment_method = Column(String(30), nullable=False)
    status = Column(String(30), nullable=False, index=True)
    customer_name = Column(String(255))
    phone_number = Column(String(32))

    # Pricing snapshot taken at session start
    unit_price = Column(Numeric(12, 2), nullable=False)
    base_amount = Column(Numeric(12, 2), nullable=False)
    discount_percent = Column(Numeric(5, 2), nullable=False, default=0)
    discount_amount = Column(Numeric(12, 2), nullable=False, default=0)
    final_amount = Column(Numeric(12, 2), nullable=False)
    voucher_id = Column(String(36), ForeignKey("discount_vouchers.id"))
    voucher_code = Column(String(64))

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

# ================================
# Receipts & Tickets
# ================================
class Receipt(Base):
    __tablename__ = "receipts"

    id = Column(String(36), primary_key=True, default=_uuid)
    reference_number = Column(String(128), unique=True, nullable=False, index=True)
    idempotency_key = Column(String(128), unique=True, index=True)
    customer_id = Column(BigInteger, nullable=False, index=True)
    customer_name = Column(String(255))
    phone_number = Column(String(32))
    trip_id = Column(BigInteger().with_variant(Integer, "sqlite"), ForeignKey("trips.id"), nullable=False)
    booking_session_id = Column(String(36), ForeignKey("booking_sessions.id"))
    quantity = Column(Integer, nullable=False)
    payment_method = Column(String(30), nullable=False)
    amount_paid = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(8), nullable=False, default="ETB")
    base_amount = Column(Numeric(12, 2), nullable=False)
    discount_amount = Column(Numeric(12, 2), nullable=False, default=0)
    final_amount = Column(Numeric(12, 2), nullable=False)
    voucher_id = Column(String(36), ForeignKey("discount_vouchers.id"))
    voucher_code = Column(String(64))
    voucher_redeemed = Column(Boolean, nullable=False, default=False)
    approval_status = Column(String(20), nullable=False, default="pending", index=True)
    approval_notes = Column(Text)
    rejection_reason = Column(Text)
    approved_by = Column(String(64))
    approved_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    trip = relationship("Trip", back_populates="receipts")
    tickets = relationship("Ticket", back_populates="receipt", order_by="Ticket.created_at")

class Ticket(Base):
    __tablename__ = "tickets"

    id = Column(String(36), primary_key=True, default=_uuid)
    receipt_id = Column(String(36), ForeignKey("receipts.id"), nullable=False, index=True)
    trip_id = Column(BigInteger().with_variant(Integer, "sqlite"), ForeignKey("trips.id"), nullable=False)
    customer_id = Column(BigInteger, nullable=False)
    serial_number = Column(String(64), unique=True, nullable=False)
    ticket_number = Column(String(64), unique=True, nullable=False, index=True)
    purchase_price = Column(Numeric(12, 2), nullable=False)
    ticket_status = Column(String(20), nullable=False, default="pending", index=True)
    issued_at = Column(DateTime(timezone=True))
    checked_in_at = Column(DateTime(timezone=True))
    qr_code = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    receipt = relationship("Receipt", back_populates="tickets")
    trip = relationship("Trip", back_populates="tickets")

# ================================
# Get Now, Pay Later Ledger
# ================================
class GnplAccount(Base):
    __tablename__ = "gnpl_accounts"

    id = Column(String(36), primary_key=True, default=_uuid)
    customer_id = Column(BigInteger, nullable=False, index=True)
    trip_id = Column(BigInteger().with_variant(Integer, "sqlite"), ForeignKey("trips.id"), nullable=False)
    booking_session_id = Column(String(36), ForeignKey("booking_sessions.id"))
    receipt_id = Column(String(36), ForeignKey("receipts.id"))
    quantity = Column(Integer, nullable=False)
    customer_name = Column(String(255))
    phone_number = Column(String(32))
    id_number = Column(String(64))
    id_card_file_name = Column(String(255))
    id_card_mime_type = Column(String(64))
    id_card_size = Column(Integer)
    status = Column(String(30), nullable=False, default="pending_approval", index=True)

    base_amount = Column(Numeric(12, 2), nullable=False)
    discount_amount = Column(Numeric(12, 2), nullable=False, default=0)
    approved_amount = Column(Numeric(12, 2), nullable=False)
    principal_paid = Column(Numeric(12, 2), nullable=False, default=0)
    penalty_accrued = Column(Numeric(12, 2), nullable=False, default=0)
    penalty_paid = Column(Numeric(12, 2), nullable=False, default=0)
    penalty_percent = Column(Numeric(5, 2), nullable=False, default=0)
    penalty_period_days = Column(Integer, nullable=False, default=7)
    voucher_id = Column(String(36), ForeignKey("discount_vouchers.id"))

    due_date = Column(DateTime(timezone=True))
    next_penalty_at = Column(DateTime(timezone=True))
    last_penalty_applied_at = Column(DateTime(timezone=True))
    reminder_last_sent_on = Column(Date)

    approved_by = Column(String(64))
    approved_at = Column(DateTime(timezone=True))
    rejected_by = Column(String(64))
    rejected_at = Column(DateTime(timezone=True))
    rejection_reason = Column(Text)
    admin_notes = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    payments = relationship("GnplPayment", back_populates="account", order_by="GnplPayment.created_at")

class GnplPayment(Base):
    __tablename__ = "gnpl_payments"

    id = Column(String(36), primary_key=True, default=_uuid)
    account_id = Column(String(36), ForeignKey("gnpl_accounts.id"), nullable=False, index=True)
    customer_id = Column(BigInteger, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    payment_reference = Column(String(128), nullable=False)
    payment_method = Column(String(30), nullable=False, default="manual")
    paid_at = Column(DateTime(timezone=True))
    principal_component = Column(Numeric(12, 2))
    penalty_component = Column(Numeric(12, 2))
    unapplied_amount = Column(Numeric(12, 2))
    status = Column(String(20), nullable=False, default="pending", index=True)
    reviewed_by = Column(String(64))
    reviewed_at = Column(DateTime(timezone=True))
    rejection_reason = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    # Relationships
    account = relationship("GnplAccount", back_populates="payments")

# ================================
# Audit
# ================================
class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, index=True)
    admin_user_id = Column(String(64), index=True)
    admin_username = Column(String(100))
    action = Column(String(50), nullable=False, index=True)
    resource_type = Column(String(50), nullable=False, index=True)
    resource_id = Column(String(64))
    details = Column(JSON, default=dict)
    success = Column(Boolean, default=True, index=True)
    error_message = Column(Text)
    timestamp = Column(DateTime(timezone=True), default=utcnow, index=True)
