import logging
import re
from typing import Any, Dict, List, Optional

from config import RELATED_PRODUCTS_LIMIT
from errors import ConstraintError, DependencyError, NotFoundError, is_unique_violation
from options import parse_options
from policies import Caller, authorize, is_allowed
from schemas import Category, Option, Product

logger = logging.getLogger("storefront.catalog")

NEWEST_FIRST = [("created_at", -1)]


def load_product(store, product_id: str) -> Optional[Product]:
    rows = store.query("product", {"id": product_id}, limit=1)
    return Product(**rows[0]) if rows else None


def get_product(store, caller: Caller, product_id: str) -> Product:
    product = load_product(store, product_id)
    # inactive products are hidden rather than forbidden
    if product is None or not is_allowed(caller, "product", "select", product.model_dump()):
        raise NotFoundError("Product not found")
    return product


def variant_options(product: Product) -> List[Option]:
    return parse_options(product.variant_values) if product.variant_enabled else []


def measurement_options(product: Product) -> List[Option]:
    return parse_options(product.measurement_values) if product.measurement_enabled else []


def list_products(store, q: Optional[str] = None, category_id: Optional[str] = None,
                  limit: Optional[int] = None) -> List[Product]:
    filt: Dict[str, Any] = {"is_active": True}
    if q and q.strip():
        filt["name"] = {"$regex": re.escape(q.strip()), "$options": "i"}
    if category_id:
        filt["category_id"] = category_id
    return [Product(**p) for p in store.query("product", filt, sort=NEWEST_FIRST, limit=limit)]


def related_products(store, product: Product, limit: int = RELATED_PRODUCTS_LIMIT) -> List[Product]:
    """Same-category products first, then others; newest first within each group."""
    if not product.category_id:
        return []
    related = store.query(
        "product",
        {"category_id": product.category_id, "is_active": True, "id": {"$ne": product.id}},
        sort=NEWEST_FIRST,
        limit=limit,
    )
    if len(related) < limit:
        related += store.query(
            "product",
            {"category_id": {"$ne": product.category_id}, "is_active": True, "id": {"$ne": product.id}},
            sort=NEWEST_FIRST,
            limit=limit - len(related),
        )
    return [Product(**p) for p in related[:limit]]


def list_categories(store) -> List[Dict[str, Any]]:
    return store.query("category", {"is_active": True}, sort=[("name", 1)])


def create_category(store, caller: Caller, data: Category) -> Dict[str, Any]:
    record = data.model_dump()
    authorize(caller, "category", "insert", record)
    try:
        return store.insert("category", record)
    except DependencyError as exc:
        if is_unique_violation(exc):
            raise ConstraintError("Category already exists")
        raise


def create_product(store, caller: Caller, data: Product) -> Dict[str, Any]:
    record = data.model_dump(exclude={"id", "created_at"})
    authorize(caller, "product", "insert", record)
    created = store.insert("product", record)
    logger.info("Product %s created: %s", created["id"], data.name)
    return created


def update_product(store, caller: Caller, product_id: str, data: Product) -> None:
    existing = load_product(store, product_id)
    if existing is None:
        raise NotFoundError("Product not found")
    authorize(caller, "product", "update", existing.model_dump())
    store.update("product", product_id, data.model_dump(exclude={"id", "created_at"}))
    logger.info("Product %s updated", product_id)


def delete_product(store, caller: Caller, product_id: str) -> None:
    existing = load_product(store, product_id)
    if existing is None:
        raise NotFoundError("Product not found")
    authorize(caller, "product", "delete", existing.model_dump())
    store.delete("product", product_id)
    logger.info("Product %s deleted", product_id)
