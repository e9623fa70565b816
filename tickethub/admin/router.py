from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import date
import logging

from .schemas import (
    TicketDecisionRequest, DecisionResult, AuditLogOut, ReceiptWithTickets,
    CheckinRequest, CheckinResult, CheckinTicketOut, ManualSaleRequest, ManualSaleResult
)
from .decision_service import DecisionService
from .checkin_service import CheckinService
from .manual_sale_service import ManualSaleService
from .audit_service import AuditService
from ..auth.dependencies import resolve_actor
from ..auth.schemas import AdminActor
from ..config import settings
from ..database import get_db
from ..exceptions import BookingError, to_http_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{settings.API_V1_STR}/admin", tags=["Admin Decisions"])

@router.post("/tickets/decision", response_model=DecisionResult)
def decide_receipt(
    request: TicketDecisionRequest,
    actor: AdminActor = Depends(resolve_actor),
    db: Session = Depends(get_db)
):
    """Approve, reject or roll back a manually submitted receipt"""

    service = DecisionService(db)

    try:
        return service.decide(request, actor)
    except BookingError as e:
        if e.status_code >= 500:
            logger.error("Decision %s on receipt %s failed: %s", request.action.value, request.receipt_id, e.message)
        raise to_http_exception(e)
    except Exception as e:
        logger.exception("Decision %s on receipt %s failed", request.action.value, request.receipt_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to apply decision: {str(e)}"
        )

@router.get("/tickets/checkin", response_model=List[CheckinTicketOut])
def search_checkin_tickets(
    phone: Optional[str] = Query(None),
    ticket_id: Optional[str] = Query(None),
    trip_date: Optional[date] = Query(None),
    actor: AdminActor = Depends(resolve_actor),
    db: Session = Depends(get_db)
):
    """Look up boardable tickets by ticket id or buyer phone"""
    try:
        return CheckinService(db).search(phone=phone, ticket_id=ticket_id, trip_date=trip_date)
    except BookingError as e:
        raise to_http_exception(e)

@router.post("/tickets/checkin", response_model=CheckinResult)
def check_in_ticket(
    request: CheckinRequest,
    actor: AdminActor = Depends(resolve_actor),
    db: Session = Depends(get_db)
):
    """Mark a confirmed ticket as used"""
    try:
        return CheckinService(db).check_in(request.ticket_id, actor, request.trip_date)
    except BookingError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.exception("Check-in of ticket %s failed", request.ticket_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to check in ticket: {str(e)}"
        )

@router.post("/tickets/manual-sale", response_model=ManualSaleResult)
def manual_sale(
    request: ManualSaleRequest,
    actor: AdminActor = Depends(resolve_actor),
    db: Session = Depends(get_db)
):
    """Record a counter sale and issue confirmed tickets"""
    try:
        return ManualSaleService(db).sell(request, actor)
    except BookingError as e:
        if e.status_code >= 500:
            logger.error("Manual sale %s failed: %s", request.reference_number, e.message)
        raise to_http_exception(e)
    except Exception as e:
        logger.exception("Manual sale %s failed", request.reference_number)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to record manual sale: {str(e)}"
        )

@router.get("/receipts", response_model=List[ReceiptWithTickets])
def list_receipts(
    approval_status: Optional[str] = Query(None, description="pending, approved or rejected"),
    trip_id: Optional[int] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    actor: AdminActor = Depends(resolve_actor),
    db: Session = Depends(get_db)
):
    """List receipts for review"""
    receipts = DecisionService(db).list_receipts(approval_status, trip_id, limit, offset)
    return [
        ReceiptWithTickets(
            id=r.id,
            reference_number=r.reference_number,
            customer_id=r.customer_id,
            customer_name=r.customer_name,
            trip_id=r.trip_id,
            quantity=r.quantity,
            payment_method=r.payment_method,
            amount_paid=r.amount_paid,
            final_amount=r.final_amount,
            approval_status=r.approval_status,
            created_at=r.created_at,
            ticket_numbers=[t.ticket_number for t in r.tickets],
            ticket_statuses=[t.ticket_status for t in r.tickets],
        )
        for r in receipts
    ]

@router.get("/audit-logs", response_model=List[AuditLogOut])
def list_audit_logs(
    action: Optional[str] = Query(None),
    resource_type: Optional[str] = Query(None),
    resource_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    actor: AdminActor = Depends(resolve_actor),
    db: Session = Depends(get_db)
):
    """Get audit logs"""
    return AuditService(db).list(action, resource_type, resource_id, limit)
