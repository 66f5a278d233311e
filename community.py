"""Reviews, wishlist and user profiles."""
import logging
from typing import Any, Dict, List, Optional

from catalog import load_product
from errors import ConstraintError, DependencyError, NotFoundError, ValidationError, is_unique_violation
from policies import Caller, authorize
from schemas import Product, Review, UserProfile, Wishlist

logger = logging.getLogger("storefront.community")


# Reviews

def list_reviews(store, product_id: str) -> List[Dict[str, Any]]:
    reviews = store.query("review", {"product_id": product_id}, sort=[("created_at", -1)])
    if not reviews:
        return []
    user_ids = list({r["user_id"] for r in reviews})
    names = {p["user_id"]: p.get("full_name") for p in store.query("user_profile", {"user_id": {"$in": user_ids}})}
    return [{**r, "full_name": names.get(r["user_id"])} for r in reviews]


def review_summary(reviews: List[Dict[str, Any]]) -> Dict[str, Any]:
    count = len(reviews)
    average = sum(r["rating"] for r in reviews) / count if count else 0.0
    return {"count": count, "average_rating": round(average, 2)}


def add_review(store, caller: Caller, product_id: str, rating: int, comment: Optional[str]) -> Dict[str, Any]:
    if load_product(store, product_id) is None:
        raise NotFoundError("Product not found")
    if not rating or not 1 <= rating <= 5:
        raise ValidationError("Please select a rating")
    comment = (comment or "").strip()
    if not comment:
        raise ValidationError("Please write a comment")
    record = Review(product_id=product_id, user_id=caller.user_id or "", rating=rating, comment=comment).model_dump()
    authorize(caller, "review", "insert", record)
    try:
        return store.insert("review", record)
    except DependencyError as exc:
        if is_unique_violation(exc):
            raise ConstraintError("You already reviewed this product")
        raise


def delete_review(store, caller: Caller, review_id: str) -> None:
    rows = store.query("review", {"id": review_id}, limit=1)
    if not rows:
        raise NotFoundError("Review not found")
    authorize(caller, "review", "delete", rows[0])
    store.delete("review", review_id)


# Wishlist

def _wishlist_entry(store, caller: Caller, product_id: str) -> Optional[Dict[str, Any]]:
    rows = store.query("wishlist", {"user_id": caller.user_id, "product_id": product_id}, limit=1)
    return rows[0] if rows else None


def is_wishlisted(store, caller: Caller, product_id: str) -> bool:
    if not caller.is_authenticated:
        return False
    return _wishlist_entry(store, caller, product_id) is not None


def toggle_wishlist(store, caller: Caller, product_id: str) -> bool:
    """Add the product to the caller's wishlist or remove it; returns the new state."""
    entry = _wishlist_entry(store, caller, product_id)
    if entry is not None:
        authorize(caller, "wishlist", "delete", entry)
        store.delete("wishlist", entry["id"])
        return False
    if load_product(store, product_id) is None:
        raise NotFoundError("Product not found")
    record = Wishlist(user_id=caller.user_id or "", product_id=product_id).model_dump()
    authorize(caller, "wishlist", "insert", record)
    try:
        store.insert("wishlist", record)
    except DependencyError as exc:
        if is_unique_violation(exc):
            raise ConstraintError("Product is already in your wishlist")
        raise
    return True


def list_wishlist(store, caller: Caller) -> List[Product]:
    authorize(caller, "wishlist", "select", {"user_id": caller.user_id})
    entries = store.query("wishlist", {"user_id": caller.user_id}, sort=[("created_at", -1)])
    if not entries:
        return []
    products = {p["id"]: Product(**p) for p in
                store.query("product", {"id": {"$in": [e["product_id"] for e in entries]}})}
    return [products[e["product_id"]] for e in entries if e["product_id"] in products]


# Profiles

def get_profile(store, caller: Caller) -> Dict[str, Any]:
    rows = store.query("user_profile", {"user_id": caller.user_id}, limit=1)
    return rows[0] if rows else UserProfile(user_id=caller.user_id or "").model_dump()


def save_profile(store, caller: Caller, full_name: Optional[str]) -> Dict[str, Any]:
    full_name = (full_name or "").strip()
    if not full_name:
        raise ValidationError("Please enter a name")
    rows = store.query("user_profile", {"user_id": caller.user_id}, limit=1)
    if rows:
        authorize(caller, "user_profile", "update", rows[0])
        store.update("user_profile", rows[0]["id"], {"full_name": full_name})
        return {**rows[0], "full_name": full_name}
    record = UserProfile(user_id=caller.user_id or "", full_name=full_name).model_dump()
    authorize(caller, "user_profile", "insert", record)
    return store.insert("user_profile", record)
