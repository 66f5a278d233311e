"""
Cart lines.

A user holds at most one line per (product, variant label, measurement
label). Adding a combination that already has a line merges into it by
quantity; otherwise a new line is inserted with the selected options and
their prices captured at that moment, so later catalog edits do not reprice
the line.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from catalog import load_product, measurement_options, variant_options
from errors import ConstraintError, DependencyError, NotFoundError, ValidationError, is_unique_violation
from options import find_option, option_label
from policies import Caller, authorize
from pricing import PricedLine, price_line
from schemas import CartItem, Option, Product

logger = logging.getLogger("storefront.cart")


def line_variant_label(line: Dict[str, Any]) -> Optional[str]:
    return option_label(line.get("variant_selection")) or line.get("variant_label")


def line_measurement_label(line: Dict[str, Any]) -> Optional[str]:
    # stored either as a bare label or as a JSON/object form carrying one
    return option_label(line.get("measurement_value"))


def find_matching_line(lines: Iterable[Dict[str, Any]], variant_label: Optional[str],
                       measurement_label: Optional[str]) -> Optional[Dict[str, Any]]:
    for line in lines:
        if line_variant_label(line) == variant_label and line_measurement_label(line) == measurement_label:
            return line
    return None


def _resolve_selection(options: List[Option], label: Optional[str], title: str) -> Optional[Option]:
    if not options:
        return None
    if label is None or not label.strip():
        raise ValidationError(f"Please select a {title}")
    option = find_option(options, label)
    if option is None:
        raise ValidationError(f"Unknown {title}: {label}")
    return option


def _new_line(user_id: str, product: Product, quantity: float, variant: Optional[Option],
              measurement: Optional[Option]) -> Dict[str, Any]:
    line = CartItem(
        user_id=user_id,
        product_id=product.id,
        quantity=quantity,
        variant_selection=variant.model_dump() if variant else None,
        variant_label=variant.label if variant else None,
        variant_price=variant.price if variant else None,
        measurement_title=(product.measurement_title or None) if measurement else None,
        measurement_value=measurement.label if measurement else None,
        measurement_price=measurement.price if measurement else None,
    )
    return line.model_dump(exclude={"id"})


def add_to_cart(store, caller: Caller, product_id: str, quantity: float = 1,
                variant_label: Optional[str] = None,
                measurement_label: Optional[str] = None) -> Dict[str, Any]:
    authorize(caller, "cart_item", "insert", {"user_id": caller.user_id})
    if quantity <= 0:
        raise ValidationError("Quantity must be greater than zero")
    product = load_product(store, product_id)
    if product is None or not product.is_active:
        raise NotFoundError("Product not found")
    if product.stock_qty <= 0:
        raise ConstraintError("Product is out of stock")

    variant = _resolve_selection(variant_options(product), variant_label, product.variant_title or "variant")
    measurement = _resolve_selection(measurement_options(product), measurement_label,
                                     product.measurement_title or "measurement")

    existing = store.query("cart_item", {"user_id": caller.user_id, "product_id": product_id})
    match = find_matching_line(existing, variant.label if variant else None,
                               measurement.label if measurement else None)
    if match:
        authorize(caller, "cart_item", "update", match)
        new_quantity = match["quantity"] + quantity
        store.update("cart_item", match["id"], {"quantity": new_quantity})
        logger.info("Cart line %s merged, quantity now %s", match["id"], new_quantity)
        return {**match, "quantity": new_quantity}

    record = _new_line(caller.user_id, product, quantity, variant, measurement)
    authorize(caller, "cart_item", "insert", record)
    try:
        created = store.insert("cart_item", record)
    except DependencyError as exc:
        if is_unique_violation(exc):
            logger.warning("Concurrent add-to-cart conflict for user %s product %s", caller.user_id, product_id)
            raise ConstraintError("This item is already in your cart, please refresh and try again")
        raise
    logger.info("Cart line %s added for product %s", created["id"], product_id)
    return created


def _load_line(store, line_id: str) -> Dict[str, Any]:
    rows = store.query("cart_item", {"id": line_id}, limit=1)
    if not rows:
        raise NotFoundError("Cart item not found")
    return rows[0]


def list_cart(store, caller: Caller) -> List[PricedLine]:
    """The caller's lines joined with their products; lines of deleted products are skipped."""
    authorize(caller, "cart_item", "select", {"user_id": caller.user_id})
    lines = store.query("cart_item", {"user_id": caller.user_id}, sort=[("created_at", 1)])
    if not lines:
        return []
    product_ids = list({line["product_id"] for line in lines})
    products = {p["id"]: Product(**p) for p in store.query("product", {"id": {"$in": product_ids}})}
    priced = []
    for line in lines:
        product = products.get(line["product_id"])
        if product is not None:
            priced.append(price_line(CartItem(**line), product))
    return priced


def update_quantity(store, caller: Caller, line_id: str, quantity: float) -> None:
    if quantity <= 0:
        raise ValidationError("Quantity must be greater than zero")
    line = _load_line(store, line_id)
    authorize(caller, "cart_item", "update", line)
    store.update("cart_item", line_id, {"quantity": quantity})


def remove_line(store, caller: Caller, line_id: str) -> None:
    line = _load_line(store, line_id)
    authorize(caller, "cart_item", "delete", line)
    store.delete("cart_item", line_id)
    logger.info("Cart line %s removed", line_id)


def clear_cart(store, caller: Caller) -> int:
    lines = store.query("cart_item", {"user_id": caller.user_id})
    for line in lines:
        authorize(caller, "cart_item", "delete", line)
        store.delete("cart_item", line["id"])
    return len(lines)
