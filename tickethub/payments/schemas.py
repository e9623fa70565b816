from pydantic import BaseModel
from typing import List, Optional

class CallbackInput(BaseModel):
    """Normalized view of a payment gateway callback"""
    transaction_id: str = ""
    payment_status: str = ""
    session_id: Optional[str] = None
    customer_id: Optional[int] = None
    trip_id: Optional[int] = None
    discount_code: Optional[str] = None

class WebhookResult(BaseModel):
    """Outcome reported back to the gateway"""
    ok: bool = True
    message: str
    ignored: bool = False
    already_processed: bool = False
    session_id: Optional[str] = None
    receipt_id: Optional[str] = None
    reference_number: Optional[str] = None
    ticket_numbers: List[str] = []
