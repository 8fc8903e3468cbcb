"""
Coupon evaluation and redemption.

Validation is a read-only preview. Usage is consumed only when an order is
fulfilled, through `redeem_coupon`, which folds the usage-limit check into a
single conditional update so concurrent redemptions cannot overshoot.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel
from pymongo import ReturnDocument
from pymongo.database import Database

from pricing import round_half_up
from schemas import Coupon

logger = logging.getLogger(__name__)

COLLECTION = "coupon"

REASON_MESSAGES = {
    "not_found": "Invalid coupon code",
    "inactive": "Coupon is not active",
    "expired": "Coupon expired",
    "usage_limit_reached": "Coupon usage limit reached",
}


class CouponCheck(BaseModel):
    valid: bool
    discount_amount: float = 0
    reason: Optional[str] = None
    code: Optional[str] = None
    discount_type: Optional[str] = None

    @property
    def message(self) -> Optional[str]:
        return REASON_MESSAGES.get(self.reason) if self.reason else None


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def _aware(value: datetime) -> datetime:
    # pymongo hands back naive datetimes that are UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def check_redeemable(coupon: Coupon, now: Optional[datetime] = None) -> Optional[str]:
    """Return None when the coupon can be redeemed, else the reason it cannot."""
    now = _aware(now or datetime.now(timezone.utc))
    if not coupon.is_active:
        return "inactive"
    if coupon.expiration_date is not None and _aware(coupon.expiration_date) < now:
        return "expired"
    if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
        return "usage_limit_reached"
    return None


def compute_discount(coupon: Coupon, subtotal: float) -> float:
    """Discount for `subtotal`. Never exceeds the subtotal."""
    subtotal = max(0.0, subtotal)
    if coupon.discount_type == "fixed":
        return min(coupon.discount_amount, subtotal)
    discount = round_half_up(subtotal * coupon.discount_amount / 100)
    return min(discount, subtotal)


def find_coupon(database: Database, code: str) -> Optional[Coupon]:
    normalized = normalize_code(code)
    if not normalized:
        return None
    doc = database[COLLECTION].find_one({"code": normalized})
    if not doc:
        return None
    return Coupon.model_validate(doc)


def validate_coupon(database: Database, code: Optional[str], subtotal: float, now: Optional[datetime] = None) -> CouponCheck:
    coupon = find_coupon(database, code or "")
    if coupon is None:
        return CouponCheck(valid=False, reason="not_found")
    reason = check_redeemable(coupon, now)
    if reason:
        return CouponCheck(valid=False, reason=reason, code=coupon.code)
    return CouponCheck(
        valid=True,
        discount_amount=compute_discount(coupon, subtotal),
        code=coupon.code,
        discount_type=coupon.discount_type,
    )


REDEEMED = "redeemed"
EXHAUSTED = "exhausted"
MISSING = "missing"


def redeem_coupon(database: Database, code: str, now: Optional[datetime] = None) -> str:
    """
    Consume one use of `code`. The usage-limit check is part of the update
    filter, so the read and the increment are one atomic operation. Expiry
    and activity were checked when the order was priced and are not
    re-applied here.

    Returns REDEEMED, EXHAUSTED (limit reached) or MISSING (coupon deleted).
    """
    normalized = normalize_code(code)
    coupon = find_coupon(database, normalized)
    if coupon is None:
        return MISSING
    now = now or datetime.now(timezone.utc)
    query = {"code": normalized}
    if coupon.usage_limit is not None:
        query["used_count"] = {"$lt": coupon.usage_limit}
    updated = database[COLLECTION].find_one_and_update(
        query,
        {"$inc": {"used_count": 1}, "$set": {"updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        # deleted between the lookup and the update
        if database[COLLECTION].find_one({"code": normalized}, {"_id": 1}) is None:
            return MISSING
        logger.info("Coupon %s could not be redeemed", normalized)
        return EXHAUSTED
    logger.info("Coupon %s redeemed (%s used)", normalized, updated["used_count"])
    return REDEEMED


def release_coupon(database: Database, code: str) -> None:
    """Give back one use, never dropping below zero."""
    database[COLLECTION].update_one(
        {"code": normalize_code(code), "used_count": {"$gt": 0}},
        {"$inc": {"used_count": -1}},
    )
