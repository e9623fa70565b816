from datetime import timedelta
from decimal import Decimal

import pytest

from tickethub.bookings.schemas import ManualReceiptRequest, PaymentMethod, SessionStatus
from tickethub.bookings.session_service import BookingSessionService, normalize_phone
from tickethub.exceptions import (
    DuplicateReference, InsufficientSeats, InvalidStateTransition, ValidationError
)
from tickethub.models import BookingSession, Receipt, Ticket

from conftest import CUSTOMER_ID, make_trip, make_voucher, start_booking


def test_normalize_phone():
    assert normalize_phone("+251 (911) 234-567") == "+251911234567"
    assert normalize_phone(None) == ""


def test_start_booking_snapshots_pricing(db):
    trip = make_trip(db, seats=10, price="120")
    make_voucher(db, code="HALF", percent="50")

    response = start_booking(db, trip, PaymentMethod.BANK, quantity=2, discount_code="half")

    assert response.session.status == SessionStatus.AWAITING_RECEIPT.value
    assert response.session.final_amount == Decimal("120.00")
    assert response.pricing.discount_amount == Decimal("120.00")
    assert response.checkout_url is None
    # Starting a booking does not touch the seat counter
    db.refresh(trip)
    assert trip.available_seats == 10


def test_start_booking_supersedes_open_sessions(db):
    trip = make_trip(db)

    first = start_booking(db, trip, PaymentMethod.BANK)
    second = start_booking(db, trip, PaymentMethod.TELEBIRR_AUTO)

    assert second.cancelled_sessions == 1
    assert second.session.status == SessionStatus.AWAITING_AUTO_PAYMENT.value
    assert "sessionId=" + second.session.id in second.checkout_url
    assert db.get(BookingSession, first.session.id).status == SessionStatus.CANCELLED.value

    current = BookingSessionService(db).get_current_session(CUSTOMER_ID)
    assert current.id == second.session.id


def test_start_booking_rejects_oversized_request_without_side_effects(db):
    trip = make_trip(db, seats=5)

    with pytest.raises(InsufficientSeats) as exc:
        start_booking(db, trip, PaymentMethod.BANK, quantity=6)

    assert exc.value.available == 5
    assert db.query(BookingSession).count() == 0


def test_start_booking_validation(db):
    trip = make_trip(db)
    closed = make_trip(db, name="Past Trip", status="completed")

    with pytest.raises(ValidationError, match="phone"):
        start_booking(db, trip, phone_number="12-ab")
    with pytest.raises(ValidationError, match="positive"):
        start_booking(db, trip, quantity=0)
    with pytest.raises(ValidationError, match="not open"):
        start_booking(db, closed)


def test_terminal_sessions_cannot_transition(db):
    trip = make_trip(db)
    response = start_booking(db, trip)
    service = BookingSessionService(db)

    cancelled = service.cancel_session(CUSTOMER_ID, response.session.id)
    assert cancelled.status == SessionStatus.CANCELLED.value

    with pytest.raises(InvalidStateTransition):
        service.transition(cancelled, SessionStatus.COMPLETED)
    assert service.complete_session(response.session.id) is False


def _manual_request(trip, **kwargs):
    data = {"trip_id": trip.id, "payment_method": "bank", "quantity": 2, "amount_paid": "200", "reference_number": "FT2401"}
    data.update(kwargs)
    return ManualReceiptRequest(**data)


def test_manual_receipt_creates_pending_receipt_and_tickets(db):
    trip = make_trip(db, seats=5)
    session = start_booking(db, trip, PaymentMethod.BANK, quantity=2).session

    response = BookingSessionService(db).submit_manual_receipt(CUSTOMER_ID, _manual_request(trip))

    assert response.session_id == session.id
    assert response.receipt.approval_status == "pending"
    assert response.receipt.reference_number.startswith("FT2401-")
    assert [t.ticket_status for t in response.tickets] == ["pending", "pending"]
    assert db.get(BookingSession, session.id).status == SessionStatus.COMPLETED.value
    # Seats are only taken when an admin approves
    db.refresh(trip)
    assert trip.available_seats == 5


def test_manual_receipt_underpayment_rejected(db):
    trip = make_trip(db)
    start_booking(db, trip, PaymentMethod.BANK, quantity=2)

    with pytest.raises(ValidationError, match="less than expected"):
        BookingSessionService(db).submit_manual_receipt(CUSTOMER_ID, _manual_request(trip, amount_paid="150"))
    assert db.query(Receipt).count() == 0


def test_manual_receipt_duplicate_reference(db):
    trip = make_trip(db)
    service = BookingSessionService(db)
    service.submit_manual_receipt(CUSTOMER_ID, _manual_request(trip))

    with pytest.raises(DuplicateReference) as exc:
        service.submit_manual_receipt(CUSTOMER_ID + 1, _manual_request(trip))

    assert exc.value.status_code == 409
    assert db.query(Receipt).count() == 1
    assert db.query(Ticket).count() == 2


def test_manual_receipt_without_session_creates_one(db):
    trip = make_trip(db)

    response = BookingSessionService(db).submit_manual_receipt(
        CUSTOMER_ID, _manual_request(trip, quantity=1, amount_paid="100", customer_name="Hana")
    )

    session = db.get(BookingSession, response.session_id)
    assert session.status == SessionStatus.COMPLETED.value
    assert response.receipt.final_amount == Decimal("100.00")


def test_sweep_cancels_only_stale_receipt_and_auto_sessions(db, now):
    trip = make_trip(db, allow_gnpl=True)
    old = now - timedelta(hours=3)
    for customer, status in [(1, "awaiting_receipt"), (2, "awaiting_auto_payment"), (3, "awaiting_gnpl_approval")]:
        db.add(BookingSession(
            customer_id=customer, trip_id=trip.id, quantity=1, payment_method="bank", status=status,
            unit_price=100, base_amount=100, final_amount=100, created_at=old,
        ))
    db.add(BookingSession(
        customer_id=4, trip_id=trip.id, quantity=1, payment_method="bank", status="awaiting_receipt",
        unit_price=100, base_amount=100, final_amount=100, created_at=now - timedelta(minutes=5),
    ))
    db.commit()

    result = BookingSessionService(db).expire_stale_sessions(timedelta(minutes=120), now=now)

    assert result.cancelled == 2
    assert result.details == {"awaiting_receipt": 1, "awaiting_auto_payment": 1}
    statuses = {s.customer_id: s.status for s in db.query(BookingSession).all()}
    assert statuses == {1: "cancelled", 2: "cancelled", 3: "awaiting_gnpl_approval", 4: "awaiting_receipt"}
