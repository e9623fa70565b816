"""
Pure ledger arithmetic for GNPL accounts.

Balances are never stored as running totals. Every read derives them from
approved_amount, principal_paid, penalty_accrued and penalty_paid plus the
current time, so nothing here touches the database.
"""
from typing import Optional, Tuple
from datetime import datetime, timedelta
from decimal import Decimal
import math

from tickethub.gnpl.schemas import GnplSnapshot, GnplStatus, PaymentAllocation
from tickethub.utils import as_utc, percent_of, to_money

DAY = timedelta(days=1)
ZERO = Decimal("0.00")


def compute_snapshot(account, now: datetime) -> GnplSnapshot:
    """Derive outstanding balances and the effective status of an account"""
    now = as_utc(now)
    approved = to_money(account.approved_amount)
    principal_paid = to_money(account.principal_paid)
    penalty_accrued = to_money(account.penalty_accrued)
    penalty_paid = to_money(account.penalty_paid)

    principal_outstanding = max(ZERO, approved - principal_paid)
    penalty_outstanding = max(ZERO, penalty_accrued - penalty_paid)
    total_due = principal_outstanding + penalty_outstanding

    due_date = as_utc(account.due_date)
    overdue_days = 0
    due_in_days = None
    if due_date is not None and total_due > 0:
        if now > due_date:
            overdue_days = int((now - due_date) // DAY)
        else:
            due_in_days = math.ceil((due_date - now) / DAY)

    status = GnplStatus(account.status)
    if status in (GnplStatus.APPROVED, GnplStatus.OVERDUE, GnplStatus.COMPLETED) and total_due <= 0:
        status = GnplStatus.COMPLETED
    elif status == GnplStatus.APPROVED and due_date is not None and now > due_date:
        status = GnplStatus.OVERDUE

    return GnplSnapshot(
        approved_amount=approved,
        principal_paid=principal_paid,
        principal_outstanding=principal_outstanding,
        penalty_accrued=penalty_accrued,
        penalty_paid=penalty_paid,
        penalty_outstanding=penalty_outstanding,
        total_due=total_due,
        overdue_days=overdue_days,
        due_in_days=due_in_days,
        status=status,
    )


def allocate_payment(penalty_outstanding, principal_outstanding, amount) -> PaymentAllocation:
    """Penalty first, then principal; anything left over is reported, not absorbed"""
    amount = max(ZERO, to_money(amount))
    penalty = min(amount, max(ZERO, to_money(penalty_outstanding)))
    principal = min(amount - penalty, max(ZERO, to_money(principal_outstanding)))
    return PaymentAllocation(
        penalty_component=penalty,
        principal_component=principal,
        unapplied_amount=amount - penalty - principal,
    )


def calculate_penalty_applications(
    next_penalty_at: Optional[datetime],
    now: datetime,
    period_days: int
) -> Tuple[int, Optional[datetime]]:
    """Number of elapsed penalty periods and the advanced cursor"""
    if next_penalty_at is None:
        return 0, None
    next_penalty_at = as_utc(next_penalty_at)
    now = as_utc(now)
    if now < next_penalty_at:
        return 0, next_penalty_at

    period = timedelta(days=max(1, int(period_days)))
    periods = int((now - next_penalty_at) // period) + 1
    return periods, next_penalty_at + period * periods


def penalty_per_period(principal_outstanding, penalty_percent) -> Decimal:
    return percent_of(principal_outstanding, penalty_percent)
