from pydantic import BaseModel
from typing import Optional
from decimal import Decimal

class PricingQuote(BaseModel):
    """Agreed price for a booking attempt"""
    unit_price: Decimal
    quantity: int
    base_amount: Decimal
    discount_percent: Decimal = Decimal("0")
    discount_amount: Decimal = Decimal("0")
    final_amount: Decimal
    voucher_id: Optional[str] = None
    voucher_code: Optional[str] = None

    class Config:
        from_attributes = True

class VoucherPreviewRequest(BaseModel):
    trip_id: int
    quantity: int = 1
    code: str
