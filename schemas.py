"""
Database Schemas for the Online Store

Each Pydantic model in the first half represents a collection in MongoDB.
Collection name is the snake_case class name (OrderItem -> "order_item").
The second half holds the request payloads accepted by the API.
"""

from datetime import datetime
from enum import Enum, IntEnum
from typing import List, Optional

from pydantic import BaseModel, Field


class Role(str, Enum):
    CUSTOMER = "Customer"
    ADMIN = "Admin"


class OrderStatus(IntEnum):
    PENDING = 1
    PROCESSING = 2
    SHIPPED = 3
    DELIVERED = 4
    CANCELLED = 5
    COMPLETED = 6

    @property
    def label(self) -> str:
        return self.name.capitalize()


class ShippingStatus(IntEnum):
    PROCESSING = 1
    OUT_FOR_DELIVERY = 2
    DELIVERED = 3
    RETURN_TO_SENDER = 4
    ON_HOLD = 5
    DELAYED = 6
    LOST = 7


# -----------------------------
# COLLECTIONS
# -----------------------------
class Customer(BaseModel):
    name: str = Field(..., description="Full name")
    email: str = Field(..., description="Email address")
    phone: str = Field("", description="Phone number")
    address: str = Field("", description="Default shipping address")
    username: str = Field(..., description="Unique login name")
    password_hash: str = Field(..., description="salt$pbkdf2-sha256 hex digest")
    role: Role = Field(Role.CUSTOMER, description="Customer or Admin")


class Category(BaseModel):
    name: str = Field(..., description="Category name")


class Product(BaseModel):
    name: str = Field(..., description="Product name")
    description: Optional[str] = Field(None, description="Product description")
    price: float = Field(..., ge=0, description="Unit price in dollars")
    stock: int = Field(0, ge=0, description="Quantity available to sell")
    category_id: Optional[str] = Field(None, description="Category reference")
    image_url: Optional[str] = Field(None, description="Image URL")


class ProductImage(BaseModel):
    product_id: str
    image_url: str = Field(..., description="Gallery image URL")
    image_order: Optional[int] = Field(None, ge=0, description="Position in the gallery")


class Order(BaseModel):
    customer_id: str
    order_date: datetime
    total_amount: float = Field(..., ge=0, description="Sum of the items' line totals")
    status: OrderStatus = Field(OrderStatus.PENDING)


class OrderItem(BaseModel):
    order_id: str
    product_id: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price at time of purchase")
    total_items_price: float = Field(..., ge=0)


class Payment(BaseModel):
    order_id: str
    amount: float = Field(..., ge=0)
    payment_method: str
    transaction_date: datetime


class Shipping(BaseModel):
    order_id: str
    carrier_name: str
    tracking_number: str
    shipping_status: ShippingStatus = Field(ShippingStatus.PROCESSING)
    shipping_address: str
    estimated_delivery_date: Optional[datetime] = None
    actual_delivery_date: Optional[datetime] = None


class Review(BaseModel):
    product_id: str
    customer_id: str
    rating: int = Field(..., ge=1, le=5)
    review_text: str = ""
    review_date: datetime


COLLECTIONS = [Customer, Category, Product, ProductImage, Order, OrderItem, Payment, Shipping, Review]


# -----------------------------
# REQUEST PAYLOADS
# -----------------------------
class RegisterRequest(BaseModel):
    name: str
    email: str
    username: str
    password: str
    phone: Optional[str] = None
    address: Optional[str] = None


class LoginRequest(BaseModel):
    username: str
    password: str


class CustomerUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    role: Optional[Role] = None


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1)


class ProductIn(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    category_id: Optional[str] = None
    image_url: Optional[str] = None


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    category_id: Optional[str] = None
    image_url: Optional[str] = None


# Cart lines carry no price: the server reads it from the product record.
class OrderItemIn(BaseModel):
    product_id: str
    quantity: int


class CompleteOrderRequest(BaseModel):
    customer_id: str
    items: List[OrderItemIn] = []
    payment_method: str = ""
    shipping_address: str = ""
    carrier_name: str = ""
    estimated_delivery_date: Optional[datetime] = None


class ProductImageIn(BaseModel):
    image_url: str = Field(..., min_length=1)
    image_order: Optional[int] = Field(None, ge=0)


# Amount is not editable: it always equals the order total.
class PaymentUpdate(BaseModel):
    payment_method: str = Field(..., min_length=1)


class StatusUpdate(BaseModel):
    status: int


class ShippingUpdate(BaseModel):
    carrier_name: Optional[str] = None
    shipping_status: Optional[ShippingStatus] = None
    estimated_delivery_date: Optional[datetime] = None
    actual_delivery_date: Optional[datetime] = None


class ReviewIn(BaseModel):
    product_id: str
    rating: int = Field(..., ge=1, le=5)
    review_text: str = ""
