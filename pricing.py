"""
Unit price derivation.

Option pricing takes precedence over product pricing: when the selected
variant and/or measurement carries a price, the unit price is the sum of
those prices and the product's sale price is ignored entirely. Only when no
selection is priced does the catalog price (sale price, else base price)
apply.
"""
import math
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional

from pydantic import BaseModel

from options import coerce_price
from schemas import CartItem, Option, Product


class PriceQuote(BaseModel):
    unit_price: float
    base_price: float
    has_discount: bool = False
    discount_percentage: int = 0


class PricedLine(BaseModel):
    line: CartItem
    product: Product
    unit_price: float

    @property
    def line_total(self) -> float:
        return round(self.unit_price * self.line.quantity, 2)


def _option_price(option: Optional[Option]) -> Optional[float]:
    if option is None or option.price is None or not math.isfinite(option.price):
        return None
    return option.price


def _selection_price(variant_price: Optional[float], measurement_price: Optional[float]) -> Optional[float]:
    if variant_price is None and measurement_price is None:
        return None
    return (variant_price or 0.0) + (measurement_price or 0.0)


def catalog_price(product: Product) -> float:
    return product.sale_price if product.sale_price is not None else product.base_price


def discount_percentage(base_price: float, effective_price: float) -> int:
    if base_price <= 0 or effective_price >= base_price:
        return 0
    ratio = Decimal(str(100 * (base_price - effective_price) / base_price))
    return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def resolve_price(product: Product, variant: Optional[Option] = None,
                  measurement: Optional[Option] = None) -> PriceQuote:
    selected = _selection_price(_option_price(variant), _option_price(measurement))
    effective = selected if selected is not None else catalog_price(product)
    return PriceQuote(
        unit_price=effective,
        base_price=product.base_price,
        has_discount=effective < product.base_price,
        discount_percentage=discount_percentage(product.base_price, effective),
    )


def line_unit_price(line: CartItem, product: Product) -> float:
    """Unit price of a cart line from its add-time snapshots, else the live catalog."""
    variant_price = line.variant_price
    if variant_price is None and line.variant_selection:
        variant_price = coerce_price(line.variant_selection.get("price"))
    selected = _selection_price(variant_price, line.measurement_price)
    return selected if selected is not None else catalog_price(product)


def price_line(line: CartItem, product: Product) -> PricedLine:
    return PricedLine(line=line, product=product, unit_price=line_unit_price(line, product))


def cart_subtotal(lines: Iterable[PricedLine]) -> float:
    return round(sum(pl.unit_price * pl.line.quantity for pl in lines), 2)
