from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session
from typing import List, Optional
import logging

from tickethub.auth.dependencies import get_current_customer, resolve_actor
from tickethub.auth.schemas import AdminActor, CustomerIdentity
from tickethub.database import get_db
from tickethub.exceptions import BookingError, ValidationError, to_http_exception
from tickethub.gnpl.penalty_job import PenaltyJob
from tickethub.gnpl.schemas import (
    GnplAccountView, GnplAdminAction, GnplAdminRequest, GnplDecisionResult,
    GnplPaymentOut, GnplPaymentSubmitRequest, PenaltyRunResult
)
from tickethub.gnpl.service import GnplService

logger = logging.getLogger(__name__)

router = APIRouter()
admin_router = APIRouter()

# Customer Endpoints
@router.get("", response_model=List[GnplAccountView])
def list_my_accounts(
    customer: CustomerIdentity = Depends(get_current_customer),
    db: Session = Depends(get_db)
):
    """List the customer's GNPL accounts with current balances"""
    return GnplService(db).list_accounts(customer_id=customer.telegram_user_id)

@router.post("/payments", response_model=GnplPaymentOut)
def submit_payment(
    request: GnplPaymentSubmitRequest,
    customer: CustomerIdentity = Depends(get_current_customer),
    db: Session = Depends(get_db)
):
    """Submit a GNPL repayment for review"""

    service = GnplService(db)

    try:
        return service.submit_payment(customer.telegram_user_id, request)
    except BookingError as e:
        raise to_http_exception(e)

# Admin Endpoints
@admin_router.get("", response_model=List[GnplAccountView])
def list_accounts(
    status_filter: Optional[str] = Query(None, alias="status"),
    customer_id: Optional[int] = Query(None),
    actor: AdminActor = Depends(resolve_actor),
    db: Session = Depends(get_db)
):
    """List GNPL accounts for review"""
    return GnplService(db).list_accounts(customer_id=customer_id, status=status_filter)

@admin_router.post("", response_model=GnplDecisionResult)
def decide(
    request: GnplAdminRequest,
    actor: AdminActor = Depends(resolve_actor),
    db: Session = Depends(get_db)
):
    """Approve or reject a GNPL application or repayment"""

    service = GnplService(db)

    try:
        if request.action in (GnplAdminAction.APPROVE_APPLICATION, GnplAdminAction.REJECT_APPLICATION):
            if not request.account_id:
                raise ValidationError("account_id is required")
            if request.action == GnplAdminAction.APPROVE_APPLICATION:
                return service.approve_application(
                    request.account_id, actor,
                    due_date=request.due_date, term_days=request.term_days, notes=request.notes
                )
            return service.reject_application(request.account_id, actor, request.reason or request.notes)

        if not request.payment_id:
            raise ValidationError("payment_id is required")
        if request.action == GnplAdminAction.APPROVE_PAYMENT:
            return service.approve_payment(request.payment_id, actor)
        return service.reject_payment(request.payment_id, actor, request.reason or request.notes)
    except BookingError as e:
        if e.status_code >= 500:
            logger.error("GNPL %s failed: %s", request.action.value, e.message)
        raise to_http_exception(e)
    except Exception as e:
        logger.exception("GNPL %s failed", request.action.value)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to apply GNPL decision: {str(e)}"
        )

@admin_router.post("/penalty-run", response_model=PenaltyRunResult)
def run_penalty_job(
    actor: AdminActor = Depends(resolve_actor),
    db: Session = Depends(get_db)
):
    """Apply due penalties and send payment reminders"""
    return PenaltyJob(db).run(actor=actor)
