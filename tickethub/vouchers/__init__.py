"""
Discount Voucher Module

Resolves customer-entered discount codes into an agreed booking price and
counts voucher usage once per settlement.

Key Components:
- service.py: PricingResolver (code normalization, validation, pricing, redemption)
- schemas.py: PricingQuote snapshot carried by booking sessions

Rules:
- A non-empty code that cannot be applied is always an error, never ignored
- Discount = base x percent / 100 rounded to 2 decimals, capped at the base
- Usage is incremented with an atomic conditional update bounded by max uses
"""

from .service import PricingResolver, normalize_discount_code, calculate_discount_amount
from .schemas import PricingQuote

__all__ = [
    "PricingResolver",
    "normalize_discount_code",
    "calculate_discount_amount",
    "PricingQuote",
]
