from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

from tickethub.gnpl.ledger import (
    allocate_payment, calculate_penalty_applications, compute_snapshot, penalty_per_period
)
from tickethub.gnpl.schemas import GnplStatus

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def account(**overrides):
    values = dict(
        status="approved",
        approved_amount=Decimal("1000"),
        principal_paid=Decimal("0"),
        penalty_accrued=Decimal("0"),
        penalty_paid=Decimal("0"),
        due_date=NOW + timedelta(days=3),
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def test_snapshot_before_due_date():
    snapshot = compute_snapshot(account(), NOW)

    assert snapshot.total_due == Decimal("1000.00")
    assert snapshot.due_in_days == 3
    assert snapshot.overdue_days == 0
    assert snapshot.status == GnplStatus.APPROVED


def test_snapshot_past_due_is_overdue():
    snapshot = compute_snapshot(
        account(due_date=NOW - timedelta(days=10), penalty_accrued=Decimal("100"), penalty_paid=Decimal("40")),
        NOW,
    )

    assert snapshot.status == GnplStatus.OVERDUE
    assert snapshot.overdue_days == 10
    assert snapshot.penalty_outstanding == Decimal("60.00")
    assert snapshot.total_due == Decimal("1060.00")


def test_snapshot_nothing_owed_is_completed():
    snapshot = compute_snapshot(
        account(status="overdue", principal_paid=Decimal("1000"), due_date=NOW - timedelta(days=1)), NOW
    )

    assert snapshot.status == GnplStatus.COMPLETED
    assert snapshot.total_due == Decimal("0.00")


def test_snapshot_accepts_naive_stored_dates():
    naive_due = (NOW - timedelta(days=2)).replace(tzinfo=None)
    assert compute_snapshot(account(due_date=naive_due), NOW).overdue_days == 2


def test_pending_application_keeps_its_status():
    assert compute_snapshot(account(status="pending_approval", due_date=None), NOW).status == GnplStatus.PENDING_APPROVAL


def test_payment_pays_penalty_before_principal():
    allocation = allocate_payment(Decimal("100"), Decimal("1000"), Decimal("1200"))

    assert allocation.penalty_component == Decimal("100.00")
    assert allocation.principal_component == Decimal("1000.00")
    assert allocation.unapplied_amount == Decimal("100.00")
    assert allocation.applied == Decimal("1100.00")


def test_partial_payment_only_covers_penalty():
    allocation = allocate_payment(Decimal("100"), Decimal("1000"), Decimal("60"))

    assert allocation.penalty_component == Decimal("60.00")
    assert allocation.principal_component == Decimal("0.00")
    assert allocation.unapplied_amount == Decimal("0.00")


def test_ten_days_overdue_charges_two_periods():
    due = NOW - timedelta(days=10)

    periods, next_at = calculate_penalty_applications(due, NOW, 7)
    amount = penalty_per_period(Decimal("1000"), Decimal("5")) * periods

    assert periods == 2
    assert next_at == due + timedelta(days=14)
    assert amount == Decimal("100.00")


def test_penalty_cursor_in_future_applies_nothing():
    future = NOW + timedelta(hours=1)

    assert calculate_penalty_applications(future, NOW, 7) == (0, future)
    assert calculate_penalty_applications(None, NOW, 7) == (0, None)


def test_penalty_at_cursor_boundary_counts_one_period():
    periods, next_at = calculate_penalty_applications(NOW, NOW, 7)

    assert periods == 1
    assert next_at == NOW + timedelta(days=7)


def test_penalty_per_period_rounds_half_up():
    assert penalty_per_period(Decimal("333.30"), Decimal("5")) == Decimal("16.67")
