"""
Order composition and lifecycle.

Checkout turns the caller's cart into one order record plus one order item
per cart line. Items copy the unit price, product name and option labels at
that moment; nothing reads the live catalog for an order afterwards.

Order status and payment status are two independent state machines. A
combination such as (cancelled, paid) is representable; settling it is the
job of fulfillment, not of this module.
"""
import logging
import random
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

import config
from cart import clear_cart, list_cart
from coupons import AppliedCoupon, evaluate_coupon
from errors import ConstraintError, DependencyError, NotFoundError, StorefrontError, ValidationError, is_unique_violation
from options import option_label, parse_option
from policies import Caller, authorize
from pricing import PricedLine, cart_subtotal, line_unit_price
from schemas import Order, OrderItem

logger = logging.getLogger("storefront.orders")

ORDER_TRANSITIONS = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"processing", "cancelled"},
    "processing": {"shipped", "cancelled"},
    "shipped": {"delivered", "cancelled"},
    "delivered": set(),
    "cancelled": set(),
}

PAYMENT_TRANSITIONS = {
    "pending": {"paid", "failed"},
    "paid": {"refunded"},
    "failed": set(),
    "refunded": set(),
}

ORDER_NUMBER_ATTEMPTS = 3


class ComposedOrder(BaseModel):
    order: Order
    items: List[OrderItem]


def generate_order_number(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"ORD-{now:%Y%m%d}-{random.randint(0, 9999):04d}"


def validate_address(address: Optional[str]) -> str:
    address = (address or "").strip()
    if len(address) < config.MIN_ADDRESS_LENGTH:
        raise ValidationError(f"Address must be at least {config.MIN_ADDRESS_LENGTH} characters")
    return address


def _order_item(order_id: str, priced: PricedLine) -> OrderItem:
    line, product = priced.line, priced.product
    unit_price = line_unit_price(line, product)
    variant = parse_option(line.variant_selection)
    measurement = option_label(line.measurement_value)
    return OrderItem(
        order_id=order_id,
        product_id=line.product_id,
        product_name=product.name,
        quantity=line.quantity,
        unit_price=unit_price,
        total_price=round(unit_price * line.quantity, 2),
        variant_selection=variant.model_dump() if variant else None,
        measurement_title=(line.measurement_title or product.measurement_title) if measurement else None,
        measurement_value=measurement,
    )


def compose_order(user_id: str, shipping_address: str, lines: List[PricedLine],
                  coupon: Optional[AppliedCoupon] = None,
                  order_number: Optional[str] = None) -> ComposedOrder:
    if not lines:
        raise ValidationError("Cart is empty")
    address = validate_address(shipping_address)

    order_id = str(uuid.uuid4())
    items = [_order_item(order_id, pl) for pl in lines]
    subtotal = round(sum(item.unit_price * item.quantity for item in items), 2)
    discount = coupon.discount if coupon else 0.0
    order = Order(
        id=order_id,
        user_id=user_id,
        order_number=order_number or generate_order_number(),
        subtotal=subtotal,
        discount_amount=discount,
        final_amount=round(subtotal - discount, 2),
        coupon_code=coupon.code if coupon else None,
        shipping_address=address,
        status="pending",
        payment_status="pending",
    )
    return ComposedOrder(order=order, items=items)


def _insert_order(store, composed: ComposedOrder) -> Dict[str, Any]:
    for _ in range(ORDER_NUMBER_ATTEMPTS):
        try:
            return store.insert("order", composed.order.model_dump())
        except DependencyError as exc:
            if not is_unique_violation(exc):
                raise
            logger.warning("Order number %s already taken, retrying", composed.order.order_number)
            composed.order.order_number = generate_order_number()
    raise ConstraintError("Could not allocate an order number, please try again")


def _roll_back(store, order: Dict[str, Any], items: List[Dict[str, Any]]) -> None:
    targets = [("order_item", created["id"]) for created in items] + [("order", order["id"])]
    for collection, record_id in targets:
        try:
            store.delete(collection, record_id)
        except StorefrontError as exc:
            logger.error("Rollback of %s %s for order %s failed: %s",
                         collection, record_id, order["order_number"], exc.message)


def place_order(store, caller: Caller, shipping_address: str,
                coupon_code: Optional[str] = None) -> Dict[str, Any]:
    lines = list_cart(store, caller)
    if not lines:
        raise ValidationError("Cart is empty")
    validate_address(shipping_address)
    coupon = evaluate_coupon(store, coupon_code, cart_subtotal(lines)) if coupon_code else None

    composed = compose_order(caller.user_id, shipping_address, lines, coupon)
    authorize(caller, "order", "insert", composed.order.model_dump())
    order = _insert_order(store, composed)

    items = []
    try:
        for item in composed.items:
            authorize(caller, "order_item", "insert", order)
            items.append(store.insert("order_item", item.model_dump()))
    except StorefrontError:
        logger.error("Order %s items failed, rolling back", order["order_number"])
        _roll_back(store, order, items)
        raise

    # the order is durable; only now does the cart go away
    try:
        clear_cart(store, caller)
    except StorefrontError as exc:
        logger.error("Order %s placed but cart of %s not cleared: %s",
                     order["order_number"], caller.user_id, exc.message)
    logger.info("Order %s placed by %s: final %.2f", order["order_number"], caller.user_id, order["final_amount"])
    return {**order, "items": items}


def _load_order(store, order_id: str) -> Dict[str, Any]:
    rows = store.query("order", {"id": order_id}, limit=1)
    if not rows:
        raise NotFoundError("Order not found")
    return rows[0]


def list_orders(store, caller: Caller, limit: int = 100) -> List[Dict[str, Any]]:
    filt = {} if caller.is_admin else {"user_id": caller.user_id}
    authorize(caller, "order", "select", {"user_id": caller.user_id})
    return store.query("order", filt, sort=[("created_at", -1)], limit=limit)


def get_order(store, caller: Caller, order_id: str) -> Dict[str, Any]:
    order = _load_order(store, order_id)
    authorize(caller, "order", "select", order)
    authorize(caller, "order_item", "select", order)
    items = store.query("order_item", {"order_id": order_id}, sort=[("created_at", 1)])
    return {**order, "items": items}


def _transition(store, caller: Caller, order_id: str, field: str,
                machine: Dict[str, set], new_state: str) -> Dict[str, Any]:
    if new_state not in machine:
        raise ValidationError(f"Unknown {field.replace('_', ' ')}: {new_state}")
    order = _load_order(store, order_id)
    authorize(caller, "order", "update", order)
    current = order.get(field)
    if new_state not in machine.get(current, set()):
        raise ConstraintError(f"Cannot change {field.replace('_', ' ')} from {current} to {new_state}")
    store.update("order", order_id, {field: new_state})
    logger.info("Order %s %s: %s -> %s", order["order_number"], field, current, new_state)
    return {**order, field: new_state}


def update_status(store, caller: Caller, order_id: str, status: str) -> Dict[str, Any]:
    return _transition(store, caller, order_id, "status", ORDER_TRANSITIONS, status)


def update_payment_status(store, caller: Caller, order_id: str, payment_status: str) -> Dict[str, Any]:
    return _transition(store, caller, order_id, "payment_status", PAYMENT_TRANSITIONS, payment_status)
