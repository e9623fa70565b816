"""
Get Now, Pay Later (GNPL) Module

A deferred-payment settlement path: admin-approved purchases on credit,
periodic penalty accrual and penalty-first repayment allocation.

Key Components:
- ledger.py: Pure balance, allocation and penalty-period arithmetic
- service.py: GnplService (applications, approvals, repayments)
- penalty_job.py: PenaltyJob (idempotent accrual and reminders)
- router.py: Customer and admin endpoints
- schemas.py: Status enums, settings, snapshots and request models

Ledger rules:
- Outstanding balances are derived on every read, never stored
- approved becomes overdue after the due date while anything is owed
- Any repayable account becomes completed once nothing is owed
- Each penalty period is charged once, guarded by the next_penalty_at cursor
"""

from .router import router, admin_router
from .ledger import compute_snapshot, allocate_payment, calculate_penalty_applications
from .service import GnplService
from .penalty_job import PenaltyJob
from .schemas import GnplConfig, GnplStatus, GnplSnapshot, PaymentAllocation

__all__ = [
    "router",
    "admin_router",
    "compute_snapshot",
    "allocate_payment",
    "calculate_penalty_applications",
    "GnplService",
    "PenaltyJob",
    "GnplConfig",
    "GnplStatus",
    "GnplSnapshot",
    "PaymentAllocation",
]
