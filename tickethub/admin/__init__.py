"""
Admin Decision Module

Admin-driven approve / reject / rollback workflow over manually submitted
receipts, with compensating seat and ticket updates and an audit trail.

Key Components:
- decision_service.py: DecisionService state machine over receipts
- checkin_service.py: CheckinService marking confirmed tickets used at boarding
- manual_sale_service.py: ManualSaleService for counter sales settled on the spot
- audit_service.py: AuditService persisting every decision
- router.py: Admin endpoints (decisions, receipt review, audit logs)
- schemas.py: Decision requests/results and audit models

Rules:
- approve reserves seats for pending tickets before confirming them
- reject applies to pending receipts only and cancels their tickets
- every decision first claims the receipt with a conditional update, so two
  admins acting at once cannot both move seats
- rollback requires one ticket number from the batch, is blocked by any
  used ticket, and restores seats for confirmed tickets only
- check-in moves confirmed tickets to used on the trip day only
"""

from .router import router
from .decision_service import DecisionService
from .checkin_service import CheckinService
from .manual_sale_service import ManualSaleService
from .audit_service import AuditService
from .schemas import DecisionAction, AuditAction, TicketDecisionRequest, DecisionResult

__all__ = [
    "router",
    "DecisionService",
    "CheckinService",
    "ManualSaleService",
    "AuditService",
    "DecisionAction",
    "AuditAction",
    "TicketDecisionRequest",
    "DecisionResult",
]
