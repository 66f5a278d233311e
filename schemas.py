"""
Storefront Database Schemas

Each Pydantic model below represents one MongoDB collection. The collection name is the
lowercase snake_case class name. Example: class CartItem -> collection "cart_item".

These schemas are used for validation before inserting/updating documents.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Option(BaseModel):
    """A parsed variant or measurement choice."""
    label: str
    image_url: Optional[str] = None
    price: Optional[float] = None


class Category(BaseModel):
    name: str
    slug: str
    description: Optional[str] = None
    is_active: bool = True


class Product(BaseModel):
    id: Optional[str] = None
    name: str
    description: Optional[str] = None
    image_url: Optional[str] = None
    category_id: Optional[str] = None
    base_price: float = Field(..., ge=0, description="Price per litre")
    sale_price: Optional[float] = Field(None, ge=0, description="Offer price per litre")
    stock_qty: int = Field(0, ge=0)
    is_active: bool = True
    variant_enabled: bool = False
    variant_title: Optional[str] = Field(None, description="e.g., Color, Size")
    variant_values: List[Any] = Field(default_factory=list, description="Raw variant options")
    measurement_enabled: bool = False
    measurement_title: Optional[str] = Field(None, description="e.g., Litre, Kg")
    measurement_values: List[Any] = Field(default_factory=list, description="Raw measurement options")
    litres_per_unit: float = Field(1.0, gt=0)
    featured_in_offers: bool = False
    keywords: List[str] = []
    created_at: Optional[datetime] = None


class CartItem(BaseModel):
    id: Optional[str] = None
    user_id: str
    product_id: str
    quantity: float = Field(..., gt=0, description="Quantity in litres")
    variant_selection: Optional[Dict[str, Any]] = None
    variant_label: Optional[str] = None
    variant_price: Optional[float] = None  # captured at add-to-cart time
    measurement_title: Optional[str] = None
    measurement_value: Optional[Any] = None
    measurement_price: Optional[float] = None  # captured at add-to-cart time


class Coupon(BaseModel):
    id: Optional[str] = None
    code: str
    discount_type: Literal["percentage", "fixed"] = "percentage"
    discount_value: float = Field(..., ge=0)
    min_order_amount: Optional[float] = Field(None, ge=0)
    max_discount_amount: Optional[float] = Field(None, ge=0)
    valid_from: datetime = Field(default_factory=_utcnow)
    valid_until: Optional[datetime] = None
    is_active: bool = True


class Order(BaseModel):
    id: Optional[str] = None
    user_id: str
    order_number: str
    subtotal: float
    discount_amount: float = 0.0
    final_amount: float
    coupon_code: Optional[str] = None
    shipping_address: str
    status: str = Field("pending", description="pending|confirmed|processing|shipped|delivered|cancelled")
    payment_status: str = Field("pending", description="pending|paid|failed|refunded")


class OrderItem(BaseModel):
    order_id: str
    product_id: str
    product_name: str
    quantity: float
    unit_price: float
    total_price: float
    variant_selection: Optional[Dict[str, Any]] = None
    measurement_title: Optional[str] = None
    measurement_value: Optional[str] = None


class Review(BaseModel):
    product_id: str
    user_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: str


class Wishlist(BaseModel):
    user_id: str
    product_id: str


class UserProfile(BaseModel):
    user_id: str
    full_name: Optional[str] = None


class UserRole(BaseModel):
    user_id: str
    role: str = Field("customer", description="customer | admin")
