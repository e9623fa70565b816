from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session
import hmac
import logging

from tickethub.config import settings
from tickethub.database import get_db
from tickethub.exceptions import BookingError, to_http_exception
from tickethub.payments.callback_parser import CallbackParser, decode_body
from tickethub.payments.schemas import CallbackInput, WebhookResult
from tickethub.payments.webhook import PaymentWebhookHandler

logger = logging.getLogger(__name__)

router = APIRouter()

parser = CallbackParser()

def verify_callback_secret(request: Request):
    """Check the shared callback secret when one is configured"""
    expected = settings.TELEBIRR_CALLBACK_SECRET
    if not expected:
        return
    provided = request.headers.get("x-telebirr-secret") or request.query_params.get("secret") or ""
    if not hmac.compare_digest(provided, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized callback"
        )

def _handle(data: CallbackInput, db: Session) -> WebhookResult:
    handler = PaymentWebhookHandler(db)
    try:
        return handler.handle(data)
    except BookingError as e:
        if e.status_code >= 500:
            logger.error("Telebirr callback %s failed: %s", data.transaction_id, e.message)
        raise to_http_exception(e)
    except Exception as e:
        logger.exception("Telebirr callback %s failed", data.transaction_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to process callback: {str(e)}"
        )

@router.post("/telebirr/callback", response_model=WebhookResult, dependencies=[Depends(verify_callback_secret)])
async def telebirr_callback(request: Request, db: Session = Depends(get_db)):
    """Receive a Telebirr payment notification (JSON or form encoded)"""
    payload = decode_body(await request.body())
    data = parser.parse(payload, dict(request.query_params))
    return _handle(data, db)

@router.get("/telebirr/callback", response_model=WebhookResult, dependencies=[Depends(verify_callback_secret)])
def telebirr_return(request: Request, db: Session = Depends(get_db)):
    """Handle the customer's return redirect from Telebirr"""
    query = dict(request.query_params)
    data = parser.parse(query, query)
    if not data.transaction_id:
        return WebhookResult(
            message="Payment return received. Waiting for payment confirmation callback.",
            ignored=True,
            session_id=data.session_id,
        )
    return _handle(data, db)
