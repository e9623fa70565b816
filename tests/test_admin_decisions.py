import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tickethub.admin.checkin_service import CheckinService
from tickethub.admin.decision_service import DecisionService
from tickethub.admin.schemas import DecisionAction, TicketDecisionRequest
from tickethub.bookings.schemas import ManualReceiptRequest, PaymentMethod
from tickethub.bookings.session_service import BookingSessionService
from tickethub.bookings.ticket_service import TicketService
from tickethub.exceptions import InsufficientSeats, InvalidStateTransition, SeatInventoryViolation, ValidationError
from tickethub.database import init_db
from tickethub.models import AuditLog, Receipt, Ticket, Trip

from conftest import CUSTOMER_ID, FakeNotifier, make_trip, start_booking


def _submit_receipt(db, trip, quantity=3, reference="BANK-1", customer_id=CUSTOMER_ID):
    start_booking(db, trip, PaymentMethod.BANK, quantity=quantity, customer_id=customer_id)
    request = ManualReceiptRequest(
        trip_id=trip.id,
        payment_method="bank",
        quantity=quantity,
        amount_paid=trip.price_per_ticket * quantity,
        reference_number=reference,
    )
    return BookingSessionService(db).submit_manual_receipt(customer_id, request)


@pytest.fixture()
def decisions(db, notifier):
    return DecisionService(db, notifier=notifier)


def _ticket_statuses(db, receipt_id):
    return sorted(t.ticket_status for t in db.query(Ticket).filter(Ticket.receipt_id == receipt_id))


def test_approve_then_rollback_restores_seats(db, decisions, actor):
    trip = make_trip(db, seats=5)
    submitted = _submit_receipt(db, trip, quantity=3)
    receipt_id = submitted.receipt.id

    approved = decisions.approve(receipt_id, actor, notes="transfer verified")

    assert approved.ticket_count == 3
    assert approved.seats_changed == {trip.id: -3}
    db.refresh(trip)
    assert trip.available_seats == 2
    assert db.get(Receipt, receipt_id).approval_status == "approved"
    assert _ticket_statuses(db, receipt_id) == ["confirmed"] * 3

    confirmation = submitted.tickets[0].ticket_number.lower()
    rolled_back = decisions.rollback(receipt_id, actor, confirmation)

    assert rolled_back.seats_changed == {trip.id: 3}
    db.refresh(trip)
    assert trip.available_seats == 5
    receipt = db.get(Receipt, receipt_id)
    assert receipt.approval_status == "pending"
    assert receipt.approved_by is None
    assert _ticket_statuses(db, receipt_id) == ["pending"] * 3

    actions = [entry.action for entry in db.query(AuditLog).order_by(AuditLog.id)]
    assert actions == ["receipt_approved", "ticket_rollback"]


def test_approve_is_a_no_op_when_already_approved(db, decisions, actor):
    trip = make_trip(db, seats=5)
    receipt_id = _submit_receipt(db, trip, quantity=2).receipt.id
    decisions.approve(receipt_id, actor)

    again = decisions.approve(receipt_id, actor)

    assert again.already_applied is True
    db.refresh(trip)
    assert trip.available_seats == 3


def test_approve_without_enough_seats_changes_nothing(db, decisions, actor):
    trip = make_trip(db, seats=3)
    first = _submit_receipt(db, trip, quantity=2, reference="A-1", customer_id=1)
    second = _submit_receipt(db, trip, quantity=2, reference="B-1", customer_id=2)
    decisions.approve(first.receipt.id, actor)

    with pytest.raises(InsufficientSeats):
        decisions.approve(second.receipt.id, actor)

    db.refresh(trip)
    assert trip.available_seats == 1
    assert db.get(Receipt, second.receipt.id).approval_status == "pending"
    assert _ticket_statuses(db, second.receipt.id) == ["pending", "pending"]


def test_rollback_refused_when_a_ticket_is_used(db, decisions, actor):
    trip = make_trip(db, seats=5)
    submitted = _submit_receipt(db, trip, quantity=2)
    receipt_id = submitted.receipt.id
    decisions.approve(receipt_id, actor)
    boarded = db.query(Ticket).filter(Ticket.receipt_id == receipt_id).first()
    CheckinService(db).check_in(boarded.id, actor)

    with pytest.raises(ValidationError, match="already used"):
        decisions.rollback(receipt_id, actor, submitted.tickets[0].ticket_number)

    db.refresh(trip)
    assert trip.available_seats == 3
    assert db.get(Receipt, receipt_id).approval_status == "approved"


def test_rollback_requires_matching_ticket_number(db, decisions, actor):
    trip = make_trip(db, seats=5)
    receipt_id = _submit_receipt(db, trip, quantity=1).receipt.id
    decisions.approve(receipt_id, actor)

    with pytest.raises(ValidationError, match="does not match"):
        decisions.rollback(receipt_id, actor, "NOPE-0000-1-00")
    with pytest.raises(ValidationError, match="required"):
        decisions.rollback(receipt_id, actor, "  ")

    db.refresh(trip)
    assert trip.available_seats == 4


def test_rollback_only_restores_confirmed_tickets(db, decisions, actor):
    trip = make_trip(db, seats=5)
    submitted = _submit_receipt(db, trip, quantity=3)
    receipt_id = submitted.receipt.id
    decisions.approve(receipt_id, actor)
    cancelled = db.query(Ticket).filter(Ticket.receipt_id == receipt_id).first()
    cancelled.ticket_status = "cancelled"
    db.commit()

    result = decisions.rollback(receipt_id, actor, submitted.tickets[0].ticket_number)

    assert result.ticket_count == 2
    db.refresh(trip)
    assert trip.available_seats == 4
    assert _ticket_statuses(db, receipt_id) == ["cancelled", "pending", "pending"]


def test_rollback_of_pending_receipt_is_invalid(db, decisions, actor):
    trip = make_trip(db)
    submitted = _submit_receipt(db, trip, quantity=1)

    with pytest.raises(InvalidStateTransition):
        decisions.rollback(submitted.receipt.id, actor, submitted.tickets[0].ticket_number)


def test_reject_pending_receipt(db, decisions, actor, notifier):
    trip = make_trip(db, seats=5)
    receipt_id = _submit_receipt(db, trip, quantity=2).receipt.id

    result = decisions.decide(TicketDecisionRequest(receipt_id=receipt_id, action=DecisionAction.REJECT), actor)

    assert result.ticket_count == 2
    receipt = db.get(Receipt, receipt_id)
    assert receipt.approval_status == "rejected"
    assert receipt.rejection_reason == "No reason provided"
    assert _ticket_statuses(db, receipt_id) == ["cancelled", "cancelled"]
    db.refresh(trip)
    assert trip.available_seats == 5
    assert "rejected" in notifier.messages[-1][1]

    again = decisions.reject(receipt_id, actor, "duplicate")
    assert again.already_applied is True


def test_reject_approved_receipt_requires_rollback_first(db, decisions, actor):
    trip = make_trip(db, seats=5)
    receipt_id = _submit_receipt(db, trip, quantity=1).receipt.id
    decisions.approve(receipt_id, actor)

    with pytest.raises(InvalidStateTransition):
        decisions.reject(receipt_id, actor, "wrong amount")


def test_admins_with_stale_reads_take_seats_once(tmp_path, actor):
    engine = create_engine(f"sqlite:///{tmp_path / 'decisions.db'}", connect_args={"check_same_thread": False})
    init_db(engine)

    with Session(engine) as setup:
        trip = make_trip(setup, seats=5)
        trip_id = trip.id
        receipt_id = _submit_receipt(setup, trip, quantity=3).receipt.id

    first = Session(engine)
    second = Session(engine)
    try:
        # Both admins have the receipt open as pending before either acts
        assert first.get(Receipt, receipt_id).approval_status == "pending"
        assert second.get(Receipt, receipt_id).approval_status == "pending"

        approved = DecisionService(first, notifier=FakeNotifier()).approve(receipt_id, actor)
        again = DecisionService(second, notifier=FakeNotifier()).approve(receipt_id, actor)

        assert approved.already_applied is False
        assert again.already_applied is True
        second.expire_all()
        assert second.get(Trip, trip_id).available_seats == 2
    finally:
        first.close()
        second.close()
        engine.dispose()


def test_stale_reject_cannot_override_approval(tmp_path, actor):
    engine = create_engine(f"sqlite:///{tmp_path / 'reject.db'}", connect_args={"check_same_thread": False})
    init_db(engine)

    with Session(engine) as setup:
        trip = make_trip(setup, seats=5)
        receipt_id = _submit_receipt(setup, trip, quantity=2).receipt.id

    first = Session(engine)
    second = Session(engine)
    try:
        assert second.get(Receipt, receipt_id).approval_status == "pending"
        DecisionService(first, notifier=FakeNotifier()).approve(receipt_id, actor)

        with pytest.raises(InvalidStateTransition):
            DecisionService(second, notifier=FakeNotifier()).reject(receipt_id, actor, "late reject")

        second.expire_all()
        assert second.get(Receipt, receipt_id).approval_status == "approved"
        assert sorted(t.ticket_status for t in second.query(Ticket)) == ["confirmed", "confirmed"]
    finally:
        first.close()
        second.close()
        engine.dispose()


def test_qr_storage_failure_keeps_approval(db, decisions, actor, monkeypatch):
    trip = make_trip(db, seats=5)
    receipt_id = _submit_receipt(db, trip, quantity=2).receipt.id

    def failing_qr(self, tickets):
        raise SQLAlchemyError("database is locked")

    monkeypatch.setattr(TicketService, "attach_qr_codes", failing_qr)

    result = decisions.approve(receipt_id, actor)

    assert result.ticket_count == 2
    assert db.get(Receipt, receipt_id).approval_status == "approved"
    assert _ticket_statuses(db, receipt_id) == ["confirmed", "confirmed"]
    db.refresh(trip)
    assert trip.available_seats == 3


def test_failed_seat_release_keeps_receipt_approved(db, decisions, actor):
    trip = make_trip(db, seats=5)
    submitted = _submit_receipt(db, trip, quantity=2)
    receipt_id = submitted.receipt.id
    decisions.approve(receipt_id, actor)
    # Seats were handed back out of band, so releasing again would overflow
    db.query(Trip).filter(Trip.id == trip.id).update({Trip.available_seats: 5})
    db.commit()

    with pytest.raises(SeatInventoryViolation):
        decisions.rollback(receipt_id, actor, submitted.tickets[0].ticket_number)

    receipt = db.get(Receipt, receipt_id)
    db.refresh(receipt)
    assert receipt.approval_status == "approved"
    assert receipt.approved_by == actor.id
    assert _ticket_statuses(db, receipt_id) == ["confirmed", "confirmed"]
