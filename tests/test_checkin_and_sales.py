from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from tickethub.admin.checkin_service import CheckinService
from tickethub.admin.decision_service import DecisionService
from tickethub.admin.manual_sale_service import ManualSaleService, normalize_sale_reference, offline_customer_id
from tickethub.admin.schemas import ManualSaleRequest
from tickethub.bookings.schemas import ManualReceiptRequest, PaymentMethod
from tickethub.bookings.session_service import BookingSessionService
from tickethub.bookings.settlement import SettlementProcessor
from tickethub.exceptions import DuplicateReference, InvalidStateTransition, NotFound, ValidationError
from tickethub.models import AuditLog, Receipt, Ticket

from conftest import CUSTOMER_ID, make_trip, start_booking


def _approved_tickets(db, trip, actor, notifier, quantity=2):
    start_booking(db, trip, PaymentMethod.BANK, quantity=quantity)
    submitted = BookingSessionService(db).submit_manual_receipt(CUSTOMER_ID, ManualReceiptRequest(
        trip_id=trip.id,
        quantity=quantity,
        amount_paid=trip.price_per_ticket * quantity,
        reference_number="FT-100",
    ))
    DecisionService(db, notifier=notifier).approve(submitted.receipt.id, actor)
    return db.query(Ticket).filter(Ticket.receipt_id == submitted.receipt.id).all()


# ---------------------------------------------------------------------------
# Check-in
# ---------------------------------------------------------------------------

def test_check_in_marks_ticket_used_once(db, actor, notifier):
    trip = make_trip(db, seats=5)
    ticket = _approved_tickets(db, trip, actor, notifier)[0]
    checkins = CheckinService(db)

    first = checkins.check_in(ticket.id, actor)
    second = checkins.check_in(ticket.id, actor)

    assert first.ticket.status == "used"
    assert first.ticket.checked_in_at is not None
    assert first.already_checked_in is False
    assert second.already_checked_in is True
    assert db.query(AuditLog).filter(AuditLog.action == "ticket_checkin").count() == 1


def test_check_in_refuses_pending_and_cancelled_tickets(db, actor):
    trip = make_trip(db, seats=5)
    start_booking(db, trip, PaymentMethod.BANK, quantity=2)
    submitted = BookingSessionService(db).submit_manual_receipt(CUSTOMER_ID, ManualReceiptRequest(
        trip_id=trip.id, quantity=2, amount_paid=Decimal("200"), reference_number="FT-200",
    ))
    pending, cancelled = db.query(Ticket).filter(Ticket.receipt_id == submitted.receipt.id).all()
    cancelled.ticket_status = "cancelled"
    db.commit()

    with pytest.raises(InvalidStateTransition, match="Only confirmed"):
        CheckinService(db).check_in(pending.id, actor)
    with pytest.raises(InvalidStateTransition):
        CheckinService(db).check_in(cancelled.id, actor)
    with pytest.raises(NotFound):
        CheckinService(db).check_in("missing", actor)


def test_check_in_only_on_trip_day(db, actor, notifier):
    trip = make_trip(db, seats=5)
    trip.departure_date = date(2026, 3, 1)
    db.commit()
    ticket = _approved_tickets(db, trip, actor, notifier)[0]
    checkins = CheckinService(db)

    with pytest.raises(ValidationError, match="2026-03-01"):
        checkins.check_in(ticket.id, actor, now=datetime(2026, 2, 28, 9, 0, tzinfo=timezone.utc))

    result = checkins.check_in(ticket.id, actor, trip_date=date(2026, 3, 1))
    assert result.ticket.status == "used"


def test_check_in_search_by_phone(db, actor, notifier):
    trip = make_trip(db, seats=5)
    tickets = _approved_tickets(db, trip, actor, notifier)

    found = CheckinService(db).search(phone="911 234 567")

    assert {t.ticket_id for t in found} == {t.id for t in tickets}
    assert all(t.phone_number == "+251911234567" for t in found)
    assert CheckinService(db).search(phone="700000000") == []
    with pytest.raises(ValidationError):
        CheckinService(db).search(phone="  ")


# ---------------------------------------------------------------------------
# Manual sales
# ---------------------------------------------------------------------------

def _sale(trip, **kwargs):
    data = {
        "trip_id": trip.id,
        "quantity": 2,
        "customer_name": "  Abebe   Kebede ",
        "customer_phone": "+251 922 000 111",
        "reference_number": "CASH-0042",
    }
    data.update(kwargs)
    return ManualSaleRequest(**data)


@pytest.fixture()
def sales(db, notifier):
    return ManualSaleService(db, SettlementProcessor(db, notifier=notifier))


def test_manual_sale_issues_confirmed_tickets(db, sales, actor, notifier):
    trip = make_trip(db, seats=5)

    result = sales.sell(_sale(trip), actor)

    db.refresh(trip)
    assert trip.available_seats == 3
    assert result.seats_remaining == 3
    assert len(result.ticket_numbers) == 2
    assert result.amount_paid == Decimal("200.00")
    assert result.customer_id == offline_customer_id("251922000111") < 0
    assert result.reference_number.startswith("CASH-0042-")

    receipt = db.get(Receipt, result.receipt_id)
    assert receipt.approval_status == "approved"
    assert receipt.payment_method == "cash"
    assert receipt.customer_name == "Abebe Kebede"
    assert {t.ticket_status for t in db.query(Ticket)} == {"confirmed"}
    assert notifier.messages == []
    assert db.query(AuditLog).filter(AuditLog.action == "ticket_manual_sale").count() == 1


def test_manual_sale_for_known_customer_notifies(db, sales, actor, notifier):
    trip = make_trip(db, seats=5)

    sales.sell(_sale(trip, customer_id=CUSTOMER_ID, payment_method="Bank"), actor)

    assert notifier.messages[0][0] == CUSTOMER_ID


def test_manual_sale_refuses_reused_reference(db, sales, actor):
    trip = make_trip(db, seats=5)
    sales.sell(_sale(trip, quantity=1), actor)

    with pytest.raises(DuplicateReference):
        sales.sell(_sale(trip, quantity=1, reference_number="  CASH-0042 "), actor)

    db.refresh(trip)
    assert trip.available_seats == 4


def test_manual_sale_validation(db, sales, actor):
    trip = make_trip(db, seats=5)

    with pytest.raises(ValidationError, match="below expected total"):
        sales.sell(_sale(trip, amount_paid=Decimal("150")), actor)
    with pytest.raises(ValidationError, match="cash, bank or telebirr"):
        sales.sell(_sale(trip, payment_method="gnpl"), actor)
    with pytest.raises(ValidationError, match="reference"):
        sales.sell(_sale(trip, reference_number="#!"), actor)

    db.refresh(trip)
    assert trip.available_seats == 5
    assert db.query(Receipt).count() == 0


def test_normalize_sale_reference():
    assert normalize_sale_reference("  ref: FT2407-99 ") == "ref"
    assert normalize_sale_reference("FT2407-99") == "FT2407-99"
    assert normalize_sale_reference("!!") == ""
