"""
Database Schemas for the Skincare Storefront

Each Pydantic model represents a MongoDB collection (or an embedded document).
The collection name is the lowercase of the class name.

- Product -> "product"
- Cart -> "cart"
- Order -> "order"
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Category = Literal["Serums", "Moisturizers", "Cleansers", "Treatments", "Eye Care", "Masks"]
Badge = Literal["Best Seller", "New", "Limited", "Popular"]
PaymentStatus = Literal["pending", "completed", "failed"]


class Product(BaseModel):
    name: str = Field(..., min_length=1, description="Product name")
    category: Category = Field(..., description="Product category")
    price: float = Field(..., ge=0, description="Unit price")
    image: str = Field(..., description="Image URL")
    description: str = Field("", description="Product description")
    badge: Optional[Badge] = Field(None, description="Merchandising badge")
    stock: int = Field(0, ge=0, description="Units in stock")
    in_stock: bool = Field(True, description="Whether product is available")


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = []


class ShippingAddress(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)


class OrderItem(BaseModel):
    """Line item copied from the catalog when the order is placed."""

    model_config = ConfigDict(frozen=True)

    product_id: str
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    image: Optional[str] = None


class Order(BaseModel):
    user_id: str
    items: List[OrderItem]
    shipping_address: ShippingAddress
    subtotal: float = Field(..., ge=0)
    shipping: float = Field(..., ge=0)
    total: float = Field(..., ge=0)
    currency: str = "INR"
    payment_method: str = Field("card", description="Payment method tag")
    payment_status: PaymentStatus = Field("pending", description="Payment status")
    payment_intent_id: Optional[str] = None
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None
