import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

import config
from errors import ConstraintError, DependencyError, NotFoundError, is_unique_violation
from policies import Caller, authorize, is_allowed
from schemas import Coupon

logger = logging.getLogger("storefront.coupons")


class AppliedCoupon(BaseModel):
    code: str
    discount_type: str
    discount: float


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def compute_discount(coupon: Coupon, subtotal: float) -> float:
    if coupon.discount_type == "percentage":
        cap = coupon.max_discount_amount or math.inf
        discount = min(subtotal * coupon.discount_value / 100.0, cap)
    else:
        # a fixed discount may exceed the subtotal unless clamping is configured
        discount = coupon.discount_value
        if config.CLAMP_FIXED_DISCOUNT:
            discount = min(discount, subtotal)
    return round(discount, 2)


def evaluate_coupon(store, code: Optional[str], subtotal: float,
                    now: Optional[datetime] = None) -> AppliedCoupon:
    """Validate ``code`` against ``subtotal``; the first failing check wins."""
    normalized = normalize_code(code)
    rows = store.query("coupon", {"code": normalized, "is_active": True}, limit=1) if normalized else []
    if not rows:
        logger.warning("Rejected coupon %r: unknown or inactive", normalized)
        raise NotFoundError("Invalid coupon code")
    coupon = Coupon(**rows[0])

    if coupon.min_order_amount is not None and subtotal < coupon.min_order_amount:
        logger.warning("Rejected coupon %s: subtotal %.2f below minimum", normalized, subtotal)
        raise ConstraintError(
            f"Minimum order amount is {config.PRIMARY_CURRENCY} {coupon.min_order_amount:.2f}"
        )

    now = now or datetime.now(timezone.utc)
    if coupon.valid_until is not None and _as_utc(coupon.valid_until) < _as_utc(now):
        logger.warning("Rejected coupon %s: expired", normalized)
        raise ConstraintError("Coupon has expired")

    return AppliedCoupon(code=coupon.code, discount_type=coupon.discount_type,
                         discount=compute_discount(coupon, subtotal))


def create_coupon(store, caller: Caller, data: Coupon) -> Dict[str, Any]:
    record = data.model_dump(exclude={"id"})
    record["code"] = normalize_code(data.code)
    authorize(caller, "coupon", "insert", record)
    try:
        created = store.insert("coupon", record)
    except DependencyError as exc:
        if is_unique_violation(exc):
            raise ConstraintError("Coupon code already exists")
        raise
    logger.info("Coupon %s created", record["code"])
    return created


def list_coupons(store, caller: Caller) -> List[Dict[str, Any]]:
    rows = store.query("coupon", {}, sort=[("created_at", -1)])
    return [row for row in rows if is_allowed(caller, "coupon", "select", row)]


def deactivate_coupon(store, caller: Caller, coupon_id: str) -> None:
    rows = store.query("coupon", {"id": coupon_id}, limit=1)
    if not rows:
        raise NotFoundError("Coupon not found")
    authorize(caller, "coupon", "update", rows[0])
    store.update("coupon", coupon_id, {"is_active": False})
    logger.info("Coupon %s deactivated", rows[0]["code"])
