import base64
from datetime import timedelta
from decimal import Decimal

import pytest

from tickethub.bookings.schemas import PaymentMethod
from tickethub.config import settings
from tickethub.exceptions import (
    ConcurrencyConflict, DuplicateReference, InvalidStateTransition, NotFound, ValidationError
)
from tickethub.gnpl.penalty_job import PenaltyJob
from tickethub.gnpl.schemas import GnplConfig, GnplPaymentSubmitRequest
from tickethub.gnpl.service import GnplService, parse_id_card
from tickethub.models import BookingSession, GnplAccount, GnplPayment, Receipt, Ticket
from tickethub.utils import as_utc

from conftest import CUSTOMER_ID, make_trip, start_booking

ID_CARD = "data:image/png;base64," + base64.b64encode(b"\x89PNG" + b"\x00" * 2044).decode()


@pytest.fixture()
def config():
    return GnplConfig(enabled=True)


@pytest.fixture()
def service(db, config, notifier):
    return GnplService(db, config, notifier=notifier)


@pytest.fixture()
def gnpl_enabled(monkeypatch):
    monkeypatch.setattr(settings, "GNPL_ENABLED", True)


def make_account(db, trip, now, due_in_days=-10, approved="1000", penalty_accrued="0", status="approved"):
    due = now + timedelta(days=due_in_days)
    account = GnplAccount(
        customer_id=CUSTOMER_ID,
        trip_id=trip.id,
        quantity=1,
        status=status,
        base_amount=Decimal(approved),
        approved_amount=Decimal(approved),
        penalty_accrued=Decimal(penalty_accrued),
        penalty_percent=Decimal("5"),
        penalty_period_days=7,
        due_date=due,
        next_penalty_at=due,
    )
    db.add(account)
    db.commit()
    db.refresh(account)
    return account


def test_parse_id_card():
    assert parse_id_card(ID_CARD) == ("image/png", 2048)

    with pytest.raises(ValidationError, match="JPG, PNG or PDF"):
        parse_id_card("data:image/gif;base64," + base64.b64encode(b"x" * 2048).decode())
    with pytest.raises(ValidationError, match="too small"):
        parse_id_card("data:image/png;base64," + base64.b64encode(b"x" * 10).decode())
    with pytest.raises(ValidationError, match="base64"):
        parse_id_card("data:image/png;base64,@@@@")
    with pytest.raises(ValidationError):
        parse_id_card("not a data url")


def test_gnpl_disabled_by_default(db):
    trip = make_trip(db, allow_gnpl=True)

    with pytest.raises(ValidationError, match="disabled"):
        start_booking(db, trip, PaymentMethod.GNPL, id_number="ET-123")
    assert db.query(BookingSession).count() == 0


def test_application_requires_identity_evidence(db, gnpl_enabled):
    trip = make_trip(db, allow_gnpl=True)

    with pytest.raises(ValidationError, match="ID card is required"):
        start_booking(db, trip, PaymentMethod.GNPL)


def test_application_approval_issues_tickets_on_credit(db, gnpl_enabled, service, actor, now, notifier):
    trip = make_trip(db, seats=5, allow_gnpl=True)
    response = start_booking(
        db, trip, PaymentMethod.GNPL, quantity=2, id_card={"file_name": "id.png", "data_url": ID_CARD}
    )
    assert response.session.status == "awaiting_gnpl_approval"
    db.refresh(trip)
    assert trip.available_seats == 5

    result = service.approve_application(response.gnpl_account_id, actor, now=now)

    db.refresh(trip)
    assert trip.available_seats == 3
    receipt = db.get(Receipt, result.receipt_id)
    assert receipt.payment_method == "gnpl"
    assert receipt.approval_status == "approved"
    assert float(receipt.amount_paid) == 0.0
    assert receipt.idempotency_key == f"gnpl:{response.gnpl_account_id}"
    assert {t.ticket_status for t in db.query(Ticket)} == {"confirmed"}

    account = db.get(GnplAccount, response.gnpl_account_id)
    assert account.status == "approved"
    assert account.id_card_mime_type == "image/png"
    assert as_utc(account.due_date) == now + timedelta(days=14)
    assert as_utc(account.next_penalty_at) == as_utc(account.due_date)
    assert result.account.snapshot.total_due == Decimal("200.00")
    assert db.get(BookingSession, response.session.id).status == "completed"

    with pytest.raises(InvalidStateTransition):
        service.approve_application(response.gnpl_account_id, actor, now=now)


def test_second_active_application_for_same_trip_refused(db, gnpl_enabled):
    trip = make_trip(db, allow_gnpl=True)
    start_booking(db, trip, PaymentMethod.GNPL, id_number="ET-123")

    with pytest.raises(ValidationError, match="already have an active GNPL request"):
        start_booking(db, trip, PaymentMethod.GNPL, id_number="ET-123")


def test_reject_application_cancels_session(db, gnpl_enabled, service, actor):
    trip = make_trip(db, seats=5, allow_gnpl=True)
    response = start_booking(db, trip, PaymentMethod.GNPL, id_number="ET-123")

    result = service.reject_application(response.gnpl_account_id, actor, "ID unreadable")

    assert result.account.stored_status == "rejected"
    assert db.get(BookingSession, response.session.id).status == "cancelled"
    db.refresh(trip)
    assert trip.available_seats == 5


def test_payment_allocation_penalty_first_until_completed(db, service, actor, now):
    trip = make_trip(db)
    account = make_account(db, trip, now, penalty_accrued="100")

    first = service.submit_payment(
        CUSTOMER_ID, GnplPaymentSubmitRequest(account_id=account.id, amount="150", payment_reference="TB-1"), now=now
    )
    result = service.approve_payment(first.id, actor, now=now)

    assert result.allocation.penalty_component == Decimal("100.00")
    assert result.allocation.principal_component == Decimal("50.00")
    assert result.account.stored_status == "overdue"
    assert result.account.snapshot.total_due == Decimal("950.00")

    second = service.submit_payment(
        CUSTOMER_ID, GnplPaymentSubmitRequest(account_id=account.id, amount="950", payment_reference="TB-2"), now=now
    )
    result = service.approve_payment(second.id, actor, now=now)

    assert result.account.stored_status == "completed"
    assert result.account.next_penalty_at is None
    assert result.account.snapshot.total_due == Decimal("0.00")

    with pytest.raises(ValidationError, match="not open for payments"):
        service.submit_payment(
            CUSTOMER_ID, GnplPaymentSubmitRequest(account_id=account.id, amount="10", payment_reference="TB-3"), now=now
        )


def test_payment_reference_reuse_and_review_once(db, service, actor, now):
    trip = make_trip(db)
    account = make_account(db, trip, now, due_in_days=5)
    request = GnplPaymentSubmitRequest(account_id=account.id, amount="100", payment_reference="TB-9")
    payment = service.submit_payment(CUSTOMER_ID, request, now=now)

    with pytest.raises(DuplicateReference):
        service.submit_payment(CUSTOMER_ID, request, now=now)

    rejected = service.reject_payment(payment.id, actor, "Amount not received")
    assert rejected.payment.status == "rejected"
    with pytest.raises(InvalidStateTransition):
        service.approve_payment(payment.id, actor, now=now)

    # A rejected reference may be submitted again
    assert service.submit_payment(CUSTOMER_ID, request, now=now).status == "pending"


def test_concurrent_review_is_detected(db, service, actor, now):
    trip = make_trip(db)
    account = make_account(db, trip, now, due_in_days=5)
    payment = service.submit_payment(
        CUSTOMER_ID, GnplPaymentSubmitRequest(account_id=account.id, amount="100", payment_reference="TB-7"), now=now
    )
    stale = service._get_pending_payment(payment.id)
    db.query(GnplPayment).filter(GnplPayment.id == payment.id).update({GnplPayment.status: "approved"})
    db.commit()

    with pytest.raises(ConcurrencyConflict):
        service._claim_payment(stale, {GnplPayment.status: "rejected"})


def test_other_customers_cannot_pay_an_account(db, service, now):
    trip = make_trip(db)
    account = make_account(db, trip, now)

    with pytest.raises(NotFound) as exc:
        service.submit_payment(
            CUSTOMER_ID + 1, GnplPaymentSubmitRequest(account_id=account.id, amount="10", payment_reference="X"), now=now
        )
    assert exc.value.status_code == 404


def test_penalty_job_is_idempotent(db, config, notifier, now):
    trip = make_trip(db)
    account = make_account(db, trip, now, due_in_days=-10)
    due = as_utc(account.due_date)
    job = PenaltyJob(db, config, notifier)

    first = job.run(now=now)
    second = job.run(now=now)

    assert first.penalties_applied == 1
    assert first.periods_applied == 2
    assert first.total_penalty == Decimal("100.00")
    assert second.penalties_applied == 0

    db.expire_all()
    account = db.get(GnplAccount, account.id)
    assert Decimal(str(account.penalty_accrued)) == Decimal("100")
    assert account.status == "overdue"
    assert as_utc(account.next_penalty_at) == due + timedelta(days=14)

    later = job.run(now=now + timedelta(days=7))
    assert later.periods_applied == 1
    assert later.total_penalty == Decimal("50.00")


def test_penalty_skipped_when_cursor_moved(db, config, notifier, now):
    trip = make_trip(db)
    account = make_account(db, trip, now, due_in_days=-10)
    job = PenaltyJob(db, config, notifier)
    result = job.run(now=now)
    assert result.penalties_applied == 1

    # A second worker still holding the old cursor must not charge again
    stale = GnplAccount(
        id=account.id, next_penalty_at=now - timedelta(days=10), penalty_percent=Decimal("5"),
        penalty_period_days=7, approved_amount=Decimal("1000"), principal_paid=Decimal("0"),
        penalty_accrued=Decimal("0"), penalty_paid=Decimal("0"), status="approved", due_date=now - timedelta(days=10),
    )
    job._apply_penalty(stale, now, result)

    assert result.skipped_conflicts == 1
    db.expire_all()
    assert Decimal(str(db.get(GnplAccount, account.id).penalty_accrued)) == Decimal("100")


def test_reminders_are_sent_once_per_day(db, config, notifier, now):
    trip = make_trip(db)
    make_account(db, trip, now, due_in_days=-2)
    job = PenaltyJob(db, config, notifier)

    assert job.run(now=now).reminders_sent == 1
    assert job.run(now=now + timedelta(hours=2)).reminders_sent == 0
    assert job.run(now=now + timedelta(days=1)).reminders_sent == 1
    assert "overdue" in notifier.messages[0][1]


def test_pending_and_completed_accounts_are_not_penalised(db, config, notifier, now):
    trip = make_trip(db)
    make_account(db, trip, now, status="pending_approval")
    make_account(db, trip, now, status="completed")

    result = PenaltyJob(db, config, notifier).run(now=now)

    assert result.accounts_checked == 0
    assert notifier.messages == []
