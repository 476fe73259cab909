"""
VOUCHERS

An order names a voucher code; the discount is always priced here, never
taken from the request.

- validate(): voucher active, started, not expired, minimum purchase met,
  uses left, category allowed; returns the discount for the amount
- redeem(): consumes one use inside the order's transaction. The usage
  limit is re-checked by the conditional $inc, so two orders racing for
  the last use cannot both get it.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
import logging

from fulfillment.errors import NotFoundError, ValidationError
from fulfillment.financial_precision import (
    to_decimal, to_float, safe_subtract, calculate_percentage, round_amount
)
from models import DiscountType, VoucherUsage

logger = logging.getLogger(__name__)


@dataclass
class VoucherQuote:
    voucher: Dict[str, Any]
    amount: float
    discount_amount: float
    final_amount: float


def calculate_discount(voucher: Dict[str, Any], amount) -> Decimal:
    """Discount for an amount, capped by max_discount and by the amount itself."""
    amount = to_decimal(amount)
    value = to_decimal(voucher.get("discount_value") or 0)

    if voucher.get("discount_type") == DiscountType.PERCENTAGE.value:
        discount = round_amount(calculate_percentage(amount, value))
        if voucher.get("max_discount"):
            discount = min(discount, to_decimal(voucher["max_discount"]))
    elif voucher.get("discount_type") == DiscountType.FIXED.value:
        discount = value
    else:
        discount = Decimal('0')

    return max(min(discount, amount), Decimal('0'))


class VoucherService:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def validate(
        self,
        code: str,
        amount,
        category_id: Optional[str] = None,
        now: Optional[datetime] = None,
        session=None
    ) -> VoucherQuote:
        voucher = await self.db.vouchers.find_one({"code": code}, session=session)
        if not voucher:
            raise NotFoundError("Voucher not found", {"code": code})

        if not voucher.get("is_active"):
            raise ValidationError("Voucher is not active", details={"code": code})

        now = now or datetime.utcnow()
        if voucher.get("start_date") and now < voucher["start_date"]:
            raise ValidationError("Voucher is not yet active", details={"code": code})
        if voucher.get("expiry_date") and now > voucher["expiry_date"]:
            raise ValidationError("Voucher has expired", details={"code": code})

        if voucher.get("min_purchase") and to_decimal(amount) < to_decimal(voucher["min_purchase"]):
            raise ValidationError(
                f"Minimum purchase amount is {voucher['min_purchase']}", details={"code": code}
            )

        limit = voucher.get("usage_limit")
        if limit and (voucher.get("usage_count") or 0) >= limit:
            raise ValidationError("Voucher usage limit exceeded", details={"code": code})

        if not voucher.get("is_for_all_categories", True) and category_id:
            if category_id not in (voucher.get("category_ids") or []):
                raise ValidationError(
                    "Voucher is not applicable for this category",
                    details={"code": code, "category_id": category_id}
                )

        discount = calculate_discount(voucher, amount)
        return VoucherQuote(
            voucher=voucher,
            amount=to_float(amount),
            discount_amount=to_float(discount),
            final_amount=to_float(safe_subtract(amount, discount))
        )

    async def redeem(
        self,
        quote: VoucherQuote,
        order_id: str,
        username: Optional[str] = None,
        whatsapp: Optional[str] = None,
        session=None
    ) -> Dict[str, Any]:
        voucher = quote.voucher
        query: Dict[str, Any] = {"_id": voucher["_id"], "is_active": True}
        if voucher.get("usage_limit"):
            query["usage_count"] = {"$lt": voucher["usage_limit"]}

        updated = await self.db.vouchers.find_one_and_update(
            query,
            {"$inc": {"usage_count": 1}, "$set": {"updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
            session=session
        )
        if not updated:
            raise ValidationError("Voucher usage limit exceeded", details={"code": voucher["code"]})

        usage = VoucherUsage(
            voucher_code=voucher["code"],
            order_id=order_id,
            amount=quote.amount,
            discount_amount=quote.discount_amount,
            username=username,
            whatsapp=whatsapp
        )
        await self.db.voucher_usages.insert_one(usage.model_dump(), session=session)

        logger.info(
            f"[VOUCHER] {voucher['code']} used for {order_id}: -{quote.discount_amount} "
            f"({updated['usage_count']}/{voucher.get('usage_limit') or 'unlimited'})"
        )
        return updated
