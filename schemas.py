"""
Database Schemas for the Storefront API

Each Pydantic model represents a MongoDB collection. The collection name is the lowercase
of the class name (e.g., Product -> "product"). Request payloads used by the routes live
at the bottom of the module.
"""
from __future__ import annotations
import math
from decimal import Decimal
from enum import Enum
from pydantic import AfterValidator, BaseModel, Field, EmailStr
from typing import Annotated, List, Optional
from datetime import datetime


def _whole_cents(value: float) -> float:
    """Money is stored in base units with at most two decimal places."""
    if not math.isfinite(value):
        raise ValueError("must be a finite amount")
    if Decimal(str(value)).as_tuple().exponent < -2:
        raise ValueError("must have at most 2 decimal places")
    return value


Money = Annotated[float, AfterValidator(_whole_cents)]


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    RETURNED = "RETURNED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, Enum):
    COD = "COD"
    ONLINE = "ONLINE"
    WALLET = "WALLET"


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


# Collections

class Category(BaseModel):
    name: str = Field(..., min_length=1, description="Unique category name")
    description: Optional[str] = Field(None, description="Short description")
    image: Optional[str] = Field(None, description="Category image URL")
    is_active: bool = True
    parent_id: Optional[str] = Field(None, description="Optional parent category id")


class Product(BaseModel):
    name: str = Field(..., min_length=1, description="Product name")
    description: str = Field("", description="Product description")
    price: Money = Field(..., ge=0, description="Price in base currency")
    discounted_price: Money = Field(0, ge=0, description="Overrides price when greater than zero")
    category_id: str = Field(..., description="Category this product belongs to")
    stock: int = Field(0, ge=0, description="Units in stock")
    images: List[str] = Field(default_factory=list, description="Image URLs")
    ratings: float = Field(0, ge=0, le=5, description="Average rating")
    num_reviews: int = Field(0, ge=0)
    featured: bool = False
    is_active: bool = True


class CartItem(BaseModel):
    item_id: str
    product_id: str
    quantity: int = Field(1, ge=1)
    price: float = Field(..., ge=0, description="Unit price captured when the item was added")
    total_price: float


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    total_items: int = 0
    total_amount: float = 0.0
    discount_amount: float = 0.0
    final_amount: float = 0.0
    version: int = 0


class ShippingAddress(BaseModel):
    full_name: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: str
    postal_code: str
    country: str = "India"
    phone_number: str


class PaymentResult(BaseModel):
    id: Optional[str] = None
    status: Optional[str] = None
    update_time: Optional[str] = None
    email_address: Optional[str] = None


class OrderItem(BaseModel):
    item_id: str
    product_id: str
    name: str
    quantity: int = Field(..., ge=1)
    price: float
    image: str = ""
    total_price: float


class Order(BaseModel):
    user_id: str
    order_items: List[OrderItem]
    shipping_address: ShippingAddress
    payment_method: PaymentMethod = PaymentMethod.COD
    payment_result: Optional[PaymentResult] = None
    payment_intent_id: Optional[str] = Field(None, description="Gateway order created for this order")
    items_price: float = 0.0
    shipping_price: Money = 0.0
    tax_price: Money = 0.0
    discount_price: float = 0.0
    total_price: float = 0.0
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None
    order_status: OrderStatus = OrderStatus.PENDING
    tracking_number: Optional[str] = None
    cancel_reason: Optional[str] = None
    return_reason: Optional[str] = None
    notes: Optional[str] = None
    restocked_items: List[str] = Field(default_factory=list)


# Request payloads

class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    image: Optional[str] = None
    is_active: Optional[bool] = None
    parent_id: Optional[str] = Field(None, description='Category id, or "null" to clear')


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[Money] = Field(None, ge=0)
    discounted_price: Optional[Money] = Field(None, ge=0)
    category_id: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    images: Optional[List[str]] = None
    featured: Optional[bool] = None
    is_active: Optional[bool] = None


class ProductStatusUpdate(BaseModel):
    is_active: Optional[bool] = None


class StockEntry(BaseModel):
    id: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)


class StockUpdatePayload(BaseModel):
    products: List[StockEntry]


class AddToCartPayload(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class UpdateCartItemPayload(BaseModel):
    item_id: str
    # range is checked by the cart engine so the error kind stays InvalidQuantity
    quantity: int


class CreateOrderPayload(BaseModel):
    shipping_address: ShippingAddress
    payment_method: PaymentMethod = PaymentMethod.COD
    shipping_price: Money = Field(0, ge=0)
    tax_price: Money = Field(0, ge=0)
    notes: Optional[str] = None


class OrderStatusUpdate(BaseModel):
    order_status: OrderStatus
    cancel_reason: Optional[str] = None
    return_reason: Optional[str] = None


class CancelOrderPayload(BaseModel):
    cancel_reason: Optional[str] = None


class MarkPaidPayload(BaseModel):
    payment_result: Optional[PaymentResult] = None


class TrackingPayload(BaseModel):
    tracking_number: Optional[str] = None


class VerifyPaymentPayload(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str
    order_id: str


class CurrentUser(BaseModel):
    id: str
    role: Role = Role.USER
    email: Optional[EmailStr] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN
