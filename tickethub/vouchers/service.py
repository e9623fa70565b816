from typing import Optional, Tuple
from datetime import datetime
from decimal import Decimal
import logging
import re
from sqlalchemy import or_
from sqlalchemy.orm import Session

from tickethub.exceptions import ValidationError, VoucherError
from tickethub.models import DiscountVoucher
from tickethub.utils import as_utc, to_money, utcnow
from tickethub.vouchers.schemas import PricingQuote

logger = logging.getLogger(__name__)


def normalize_discount_code(code: Optional[str]) -> str:
    """Trim, upper-case and drop anything outside A-Z, 0-9, underscore and dash"""
    return re.sub(r"[^A-Z0-9_-]", "", (code or "").strip().upper())


def calculate_discount_amount(base_amount, discount_percent) -> Tuple[Decimal, Decimal]:
    """Return (discount, final) for a base amount; the discount never exceeds the base"""
    base = to_money(base_amount)
    percent = Decimal(str(discount_percent or 0))
    if base <= 0 or percent <= 0:
        return Decimal("0.00"), max(base, Decimal("0.00"))
    discount = min(base, to_money(base * percent / Decimal("100")))
    final = max(Decimal("0.00"), base - discount)
    return discount, final


class PricingResolver:
    """Resolves vouchers and computes the payable amount for a booking"""

    def __init__(self, db: Session):
        self.db = db

    def find_voucher(self, code: str) -> Optional[DiscountVoucher]:
        return self.db.query(DiscountVoucher).filter(DiscountVoucher.code == code).first()

    def validate_voucher(
        self,
        voucher: Optional[DiscountVoucher],
        trip_id: int,
        customer_id: Optional[int],
        now: Optional[datetime] = None
    ) -> DiscountVoucher:
        """Check a voucher can be applied; raises VoucherError otherwise"""
        now = now or utcnow()

        if voucher is None:
            raise VoucherError("Discount code not found")
        if not voucher.is_active:
            raise VoucherError("Discount code is inactive", code_value=voucher.code)
        if voucher.trip_id is not None and voucher.trip_id != trip_id:
            raise VoucherError("Discount code is not valid for this trip", code_value=voucher.code)
        if voucher.customer_id is not None and voucher.customer_id != customer_id:
            raise VoucherError("Discount code is not valid for this customer", code_value=voucher.code)
        valid_from = as_utc(voucher.valid_from)
        if valid_from and now < valid_from:
            raise VoucherError("Discount code is not active yet", code_value=voucher.code)
        expires_at = as_utc(voucher.expires_at)
        if expires_at and now > expires_at:
            raise VoucherError("Discount code has expired", code_value=voucher.code)
        if voucher.max_uses is not None and (voucher.current_uses or 0) >= voucher.max_uses:
            raise VoucherError("Discount code usage limit reached", code_value=voucher.code)
        if Decimal(str(voucher.discount_percent or 0)) <= 0:
            raise VoucherError("Discount code has zero discount value", code_value=voucher.code)
        return voucher

    def resolve(
        self,
        unit_price,
        quantity: int,
        code: Optional[str],
        trip_id: int,
        customer_id: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> PricingQuote:
        """Compute base, discount and final amounts for a booking attempt"""
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise ValidationError("Quantity must be a positive integer", quantity=quantity)

        unit = to_money(unit_price)
        base = to_money(unit * quantity)
        normalized = normalize_discount_code(code)

        if not normalized:
            if code and code.strip():
                raise VoucherError("Discount code is invalid")
            return PricingQuote(
                unit_price=unit,
                quantity=quantity,
                base_amount=base,
                final_amount=base,
            )

        voucher = self.validate_voucher(self.find_voucher(normalized), trip_id, customer_id, now)
        percent = Decimal(str(voucher.discount_percent))
        discount, final = calculate_discount_amount(base, percent)

        return PricingQuote(
            unit_price=unit,
            quantity=quantity,
            base_amount=base,
            discount_percent=percent,
            discount_amount=discount,
            final_amount=final,
            voucher_id=voucher.id,
            voucher_code=voucher.code,
        )

    def redeem(self, voucher_id: str) -> bool:
        """Atomically count one use; False when the voucher is exhausted or gone"""
        updated = (
            self.db.query(DiscountVoucher)
            .filter(
                DiscountVoucher.id == voucher_id,
                or_(DiscountVoucher.max_uses.is_(None), DiscountVoucher.current_uses < DiscountVoucher.max_uses),
            )
            .update(
                {DiscountVoucher.current_uses: DiscountVoucher.current_uses + 1},
                synchronize_session=False,
            )
        )
        self.db.commit()
        if not updated:
            logger.warning("Voucher %s could not be redeemed (limit reached or missing)", voucher_id)
        return bool(updated)
