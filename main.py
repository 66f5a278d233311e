import os
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Depends, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field, ValidationError as PydanticValidationError
import jwt

import cart
import catalog
import community
import coupons
import orders
from config import (
    ALLOWED_ORIGINS,
    CLAMP_FIXED_DISCOUNT,
    JWT_ALGORITHM,
    JWT_AUDIENCE,
    JWT_SECRET,
    LOG_LEVEL,
    PRIMARY_CURRENCY,
    STORE_NAME,
)
from database import DataStore, db, ensure_indexes
from errors import DependencyError, StorefrontError, ValidationError
from options import find_option
from policies import ANONYMOUS, Caller, caller_for, grant_role, list_roles
from pricing import PricedLine, cart_subtotal, resolve_price
from schemas import Category, Coupon, Product

# Logging
logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger("storefront")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        ensure_indexes(db)
    else:
        logger.warning("DATABASE_URL not set; data endpoints will answer 503")
    yield


app = FastAPI(title=f"{STORE_NAME} API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in ALLOWED_ORIGINS] if ALLOWED_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Utilities
class TokenData(BaseModel):
    user_id: str
    email: Optional[EmailStr] = None


def decode_token(token: str) -> TokenData:
    try:
        payload = jwt.decode(
            token,
            JWT_SECRET,
            algorithms=[JWT_ALGORITHM],
            audience=JWT_AUDIENCE,
            options={"verify_aud": JWT_AUDIENCE is not None},
        )
        return TokenData(user_id=payload["sub"], email=payload.get("email"))
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except (jwt.InvalidTokenError, KeyError, PydanticValidationError):
        raise HTTPException(status_code=401, detail="Invalid token")


def get_store() -> DataStore:
    if db is None:
        raise DependencyError("Database not configured")
    return DataStore(db)


def get_token(authorization: Optional[str] = Header(default=None)) -> Optional[TokenData]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid authorization header")
    return decode_token(token)


def get_caller(token: Optional[TokenData] = Depends(get_token),
               store: DataStore = Depends(get_store)) -> Caller:
    if token is None:
        return ANONYMOUS
    return caller_for(store, token.user_id)


def require_user(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_authenticated:
        raise HTTPException(status_code=401, detail="Please login")
    return caller


def require_admin(caller: Caller = Depends(require_user)) -> Caller:
    if not caller.is_admin:
        raise HTTPException(status_code=403, detail="Forbidden")
    return caller


# Error handlers
@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    if isinstance(exc, DependencyError):
        logger.warning("Dependency failure on %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error: %s", exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def serialize_line(pl: PricedLine) -> Dict[str, Any]:
    return {
        **pl.line.model_dump(),
        "product": pl.product.model_dump(),
        "unit_price": pl.unit_price,
        "line_total": pl.line_total,
    }


# Health and config
@app.get("/")
def root():
    return {"name": STORE_NAME, "status": "ok"}


@app.get("/config")
def get_config():
    return {
        "storeName": STORE_NAME,
        "currency": PRIMARY_CURRENCY,
        "clampFixedDiscount": CLAMP_FIXED_DISCOUNT,
    }


# Catalog
@app.get("/categories")
def list_categories(store: DataStore = Depends(get_store)):
    return catalog.list_categories(store)


@app.get("/products")
def list_products(q: Optional[str] = None, category: Optional[str] = None, limit: Optional[int] = None,
                  store: DataStore = Depends(get_store)):
    return catalog.list_products(store, q=q, category_id=category, limit=limit)


@app.get("/products/{product_id}")
def product_detail(product_id: str, caller: Caller = Depends(get_caller), store: DataStore = Depends(get_store)):
    product = catalog.get_product(store, caller, product_id)
    variants = catalog.variant_options(product)
    measurements = catalog.measurement_options(product)
    # the first option of each list is preselected
    quote = resolve_price(product, variants[0] if variants else None, measurements[0] if measurements else None)
    reviews = community.list_reviews(store, product_id)
    return {
        "product": product,
        "variants": variants,
        "measurements": measurements,
        "price": quote,
        "reviews": reviews,
        "review_summary": community.review_summary(reviews),
        "related": catalog.related_products(store, product),
        "wishlisted": community.is_wishlisted(store, caller, product_id),
    }


class QuoteDTO(BaseModel):
    variant: Optional[str] = None
    measurement: Optional[str] = None


@app.post("/products/{product_id}/quote")
def quote_product(product_id: str, data: QuoteDTO, caller: Caller = Depends(get_caller),
                  store: DataStore = Depends(get_store)):
    product = catalog.get_product(store, caller, product_id)
    variant = find_option(catalog.variant_options(product), data.variant)
    measurement = find_option(catalog.measurement_options(product), data.measurement)
    if data.variant is not None and variant is None:
        raise ValidationError(f"Unknown {product.variant_title or 'variant'}: {data.variant}")
    if data.measurement is not None and measurement is None:
        raise ValidationError(f"Unknown {product.measurement_title or 'measurement'}: {data.measurement}")
    return resolve_price(product, variant, measurement)


@app.post("/admin/categories")
def create_category(data: Category, caller: Caller = Depends(require_admin), store: DataStore = Depends(get_store)):
    return {"id": catalog.create_category(store, caller, data)["id"]}


@app.post("/admin/products")
def create_product(data: Product, caller: Caller = Depends(require_admin), store: DataStore = Depends(get_store)):
    return {"id": catalog.create_product(store, caller, data)["id"]}


@app.put("/admin/products/{product_id}")
def update_product(product_id: str, data: Product, caller: Caller = Depends(require_admin),
                   store: DataStore = Depends(get_store)):
    catalog.update_product(store, caller, product_id, data)
    return {"id": product_id, "updated": True}


@app.delete("/admin/products/{product_id}")
def delete_product(product_id: str, caller: Caller = Depends(require_admin), store: DataStore = Depends(get_store)):
    catalog.delete_product(store, caller, product_id)
    return {"id": product_id, "deleted": True}


# Reviews
class ReviewDTO(BaseModel):
    rating: int = 5
    comment: Optional[str] = None


@app.get("/products/{product_id}/reviews")
def list_reviews(product_id: str, store: DataStore = Depends(get_store)):
    reviews = community.list_reviews(store, product_id)
    return {"items": reviews, "summary": community.review_summary(reviews)}


@app.post("/products/{product_id}/reviews")
def add_review(product_id: str, data: ReviewDTO, caller: Caller = Depends(require_user),
               store: DataStore = Depends(get_store)):
    review = community.add_review(store, caller, product_id, data.rating, data.comment)
    return {"id": review["id"]}


@app.delete("/reviews/{review_id}")
def delete_review(review_id: str, caller: Caller = Depends(require_user), store: DataStore = Depends(get_store)):
    community.delete_review(store, caller, review_id)
    return {"id": review_id, "deleted": True}


# Wishlist
@app.get("/wishlist")
def wishlist(caller: Caller = Depends(require_user), store: DataStore = Depends(get_store)):
    return community.list_wishlist(store, caller)


@app.post("/wishlist/{product_id}/toggle")
def toggle_wishlist(product_id: str, caller: Caller = Depends(require_user), store: DataStore = Depends(get_store)):
    return {"product_id": product_id, "wishlisted": community.toggle_wishlist(store, caller, product_id)}


# Profile
class ProfileDTO(BaseModel):
    full_name: str


@app.get("/profile")
def get_profile(caller: Caller = Depends(require_user), token: Optional[TokenData] = Depends(get_token),
                store: DataStore = Depends(get_store)):
    profile = community.get_profile(store, caller)
    return {
        **profile,
        "email": token.email if token else None,
        "roles": list_roles(store, caller, caller.user_id),
    }


@app.put("/profile")
def save_profile(data: ProfileDTO, caller: Caller = Depends(require_user), store: DataStore = Depends(get_store)):
    return community.save_profile(store, caller, data.full_name)


# Cart
class CartItemDTO(BaseModel):
    product_id: str
    quantity: float = Field(1, gt=0)
    variant: Optional[str] = None
    measurement: Optional[str] = None


class CartQuantityDTO(BaseModel):
    quantity: float = Field(..., gt=0)


@app.get("/cart")
def cart_get(caller: Caller = Depends(require_user), store: DataStore = Depends(get_store)):
    lines = cart.list_cart(store, caller)
    return {"items": [serialize_line(pl) for pl in lines], "subtotal": cart_subtotal(lines)}


@app.post("/cart/items")
def cart_add(item: CartItemDTO, caller: Caller = Depends(require_user), store: DataStore = Depends(get_store)):
    line = cart.add_to_cart(store, caller, item.product_id, item.quantity, item.variant, item.measurement)
    return {"id": line["id"], "quantity": line["quantity"]}


@app.patch("/cart/items/{line_id}")
def cart_update(line_id: str, data: CartQuantityDTO, caller: Caller = Depends(require_user),
                store: DataStore = Depends(get_store)):
    cart.update_quantity(store, caller, line_id, data.quantity)
    return {"id": line_id, "quantity": data.quantity}


@app.delete("/cart/items/{line_id}")
def cart_remove(line_id: str, caller: Caller = Depends(require_user), store: DataStore = Depends(get_store)):
    cart.remove_line(store, caller, line_id)
    return {"id": line_id, "deleted": True}


# Coupons
class CouponApplyDTO(BaseModel):
    code: str


@app.post("/coupons/apply")
def apply_coupon(data: CouponApplyDTO, caller: Caller = Depends(require_user), store: DataStore = Depends(get_store)):
    subtotal = cart_subtotal(cart.list_cart(store, caller))
    applied = coupons.evaluate_coupon(store, data.code, subtotal)
    return {
        "code": applied.code,
        "discount": applied.discount,
        "subtotal": subtotal,
        "total": round(subtotal - applied.discount, 2),
    }


@app.get("/admin/coupons")
def admin_list_coupons(caller: Caller = Depends(require_admin), store: DataStore = Depends(get_store)):
    return coupons.list_coupons(store, caller)


@app.post("/admin/coupons")
def admin_create_coupon(data: Coupon, caller: Caller = Depends(require_admin), store: DataStore = Depends(get_store)):
    created = coupons.create_coupon(store, caller, data)
    return {"id": created["id"], "code": created["code"]}


@app.post("/admin/coupons/{coupon_id}/deactivate")
def admin_deactivate_coupon(coupon_id: str, caller: Caller = Depends(require_admin),
                            store: DataStore = Depends(get_store)):
    coupons.deactivate_coupon(store, caller, coupon_id)
    return {"id": coupon_id, "is_active": False}


# Checkout
class CheckoutDTO(BaseModel):
    shipping_address: str
    coupon_code: Optional[str] = None


@app.post("/checkout")
def checkout(data: CheckoutDTO, caller: Caller = Depends(require_user), store: DataStore = Depends(get_store)):
    order = orders.place_order(store, caller, data.shipping_address, data.coupon_code or None)
    return {
        "order_id": order["id"],
        "order_number": order["order_number"],
        "subtotal": order["subtotal"],
        "discount": order["discount_amount"],
        "total": order["final_amount"],
        "currency": PRIMARY_CURRENCY,
    }


# Orders
@app.get("/orders")
def list_orders(caller: Caller = Depends(require_user), store: DataStore = Depends(get_store)):
    return orders.list_orders(store, caller)


@app.get("/orders/{order_id}")
def get_order(order_id: str, caller: Caller = Depends(require_user), store: DataStore = Depends(get_store)):
    return orders.get_order(store, caller, order_id)


class OrderStatusDTO(BaseModel):
    status: str


class PaymentStatusDTO(BaseModel):
    payment_status: str


@app.post("/admin/orders/{order_id}/status")
def update_order_status(order_id: str, data: OrderStatusDTO, caller: Caller = Depends(require_admin),
                        store: DataStore = Depends(get_store)):
    order = orders.update_status(store, caller, order_id, data.status)
    return {"id": order_id, "status": order["status"], "payment_status": order["payment_status"]}


@app.post("/admin/orders/{order_id}/payment-status")
def update_payment_status(order_id: str, data: PaymentStatusDTO, caller: Caller = Depends(require_admin),
                          store: DataStore = Depends(get_store)):
    order = orders.update_payment_status(store, caller, order_id, data.payment_status)
    return {"id": order_id, "status": order["status"], "payment_status": order["payment_status"]}


# Roles
class RoleDTO(BaseModel):
    role: str


@app.get("/admin/users/{user_id}/roles")
def admin_list_roles(user_id: str, caller: Caller = Depends(require_admin), store: DataStore = Depends(get_store)):
    return {"user_id": user_id, "roles": list_roles(store, caller, user_id)}


@app.post("/admin/users/{user_id}/roles")
def admin_grant_role(user_id: str, data: RoleDTO, caller: Caller = Depends(require_admin),
                     store: DataStore = Depends(get_store)):
    grant_role(store, caller, user_id, data.role)
    return {"user_id": user_id, "role": data.role}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
