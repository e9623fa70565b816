from typing import Optional
from datetime import datetime
from decimal import Decimal
import logging
from sqlalchemy.orm import Session

from tickethub.admin.audit_service import AuditService
from tickethub.admin.schemas import AuditAction
from tickethub.auth.schemas import AdminActor
from tickethub.config import settings
from tickethub.gnpl.ledger import calculate_penalty_applications, compute_snapshot, penalty_per_period
from tickethub.gnpl.schemas import GnplConfig, GnplStatus, PenaltyRunResult, REPAYABLE_STATUSES
from tickethub.models import GnplAccount
from tickethub.notifications import TelegramNotifier, format_amount
from tickethub.utils import as_utc, to_money, utcnow

logger = logging.getLogger(__name__)


class PenaltyJob:
    """
    Periodic penalty accrual and payment reminders for GNPL accounts.

    Each account's penalty is applied with a compare-and-set on
    ``next_penalty_at``: the update only matches while the cursor still
    holds the value this run read, so overlapping runs cannot charge the
    same period twice.
    """

    def __init__(self, db: Session, config: Optional[GnplConfig] = None, notifier: Optional[TelegramNotifier] = None):
        self.db = db
        self.config = config or GnplConfig.from_settings(settings)
        self.notifier = notifier or TelegramNotifier()

    def run(self, now: Optional[datetime] = None, actor: Optional[AdminActor] = None) -> PenaltyRunResult:
        now = as_utc(now) if now else utcnow()
        result = PenaltyRunResult(run_at=now)

        accounts = (
            self.db.query(GnplAccount)
            .filter(GnplAccount.status.in_([s.value for s in REPAYABLE_STATUSES]))
            .all()
        )
        for account in accounts:
            result.accounts_checked += 1
            self._apply_penalty(account, now, result)
            self._mark_overdue(account, now, result)
            if self.config.reminder_enabled:
                self._send_reminder(account, now, result)

        if actor is not None:
            AuditService(self.db).log(
                actor, AuditAction.GNPL_PENALTY_RUN, "gnpl_penalty_job", None,
                details={
                    "penalties_applied": result.penalties_applied,
                    "total_penalty": str(result.total_penalty),
                    "reminders_sent": result.reminders_sent,
                },
            )
        logger.info(
            "GNPL penalty run: %s accounts checked, %s penalised (%s), %s reminders",
            result.accounts_checked, result.penalties_applied, result.total_penalty, result.reminders_sent
        )
        return result

    def _apply_penalty(self, account: GnplAccount, now: datetime, result: PenaltyRunResult) -> None:
        if not self.config.penalty_enabled or account.next_penalty_at is None:
            return
        percent = Decimal(str(account.penalty_percent or 0))
        if percent <= 0:
            return

        snapshot = compute_snapshot(account, now)
        if snapshot.principal_outstanding <= 0:
            return

        periods, next_at = calculate_penalty_applications(account.next_penalty_at, now, account.penalty_period_days)
        if periods <= 0:
            return

        amount = penalty_per_period(snapshot.principal_outstanding, percent) * periods
        cursor = account.next_penalty_at
        updated = (
            self.db.query(GnplAccount)
            .filter(GnplAccount.id == account.id, GnplAccount.next_penalty_at == cursor)
            .update(
                {
                    GnplAccount.penalty_accrued: GnplAccount.penalty_accrued + amount,
                    GnplAccount.next_penalty_at: next_at,
                    GnplAccount.last_penalty_applied_at: now,
                    GnplAccount.status: GnplStatus.OVERDUE.value,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()

        if not updated:
            result.skipped_conflicts += 1
            logger.info("Penalty for GNPL account %s already applied by a concurrent run", account.id)
            return

        result.penalties_applied += 1
        result.periods_applied += periods
        result.total_penalty = to_money(result.total_penalty + amount)
        result.details.append({"account_id": account.id, "periods": periods, "penalty": str(amount)})
        logger.info("Applied %s penalty period(s) of %s to GNPL account %s", periods, amount, account.id)

    def _mark_overdue(self, account: GnplAccount, now: datetime, result: PenaltyRunResult) -> None:
        snapshot = compute_snapshot(account, now)
        if account.status == GnplStatus.APPROVED.value and snapshot.status == GnplStatus.OVERDUE:
            account.status = GnplStatus.OVERDUE.value
            self.db.commit()
            result.marked_overdue += 1

    def _send_reminder(self, account: GnplAccount, now: datetime, result: PenaltyRunResult) -> None:
        snapshot = compute_snapshot(account, now)
        if snapshot.total_due <= 0 or account.due_date is None:
            return
        today = now.date()
        if account.reminder_last_sent_on == today:
            return

        overdue = snapshot.status == GnplStatus.OVERDUE
        due_soon = snapshot.due_in_days is not None and snapshot.due_in_days <= self.config.reminder_days_before
        if not (overdue or due_soon):
            return

        if overdue:
            text = (
                f"Your GNPL payment is {snapshot.overdue_days} day(s) overdue. "
                f"Amount due: {format_amount(snapshot.total_due)} "
                f"(penalty {format_amount(snapshot.penalty_outstanding)})."
            )
        else:
            text = (
                f"Reminder: your GNPL payment of {format_amount(snapshot.total_due)} "
                f"is due on {as_utc(account.due_date).date().isoformat()}."
            )
        if self.notifier.send_message(account.customer_id, text):
            account.reminder_last_sent_on = today
            self.db.commit()
            result.reminders_sent += 1
