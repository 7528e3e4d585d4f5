"""
Database Schemas

MongoDB collection schemas for the Ferrari store, as Pydantic models.
Model name lowercased is the collection name (User -> "user",
Product -> "product"). Address, PaymentMethod, CartItem and Order are
embedded in the user document.
"""

from datetime import datetime, timezone
from typing import List, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field

PRODUCT_TYPES = ("car", "helmet", "formula1")
ProductType = Literal["car", "helmet", "formula1"]
CardType = Literal["credit", "debit"]


class Address(BaseModel):
    street: str = Field(..., min_length=1)
    number: str = Field(..., min_length=1)
    complement: str = ""
    neighborhood: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)


class CardSnapshot(BaseModel):
    """Card details copied into an order. The security code is never kept."""
    type: CardType
    card_number: str = Field(..., min_length=1)
    card_holder_name: str = Field(..., min_length=1)
    expiration_date: str = Field(..., min_length=1)


class PaymentMethod(CardSnapshot):
    cvv: str = Field(..., min_length=1)


class CartItem(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: ObjectId = Field(default_factory=ObjectId, alias="_id")
    product_id: ObjectId
    quantity: int = Field(1, ge=1)


class OrderItem(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    product_id: ObjectId
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0)


class Order(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: ObjectId = Field(default_factory=ObjectId, alias="_id")
    order_items: List[OrderItem]
    total_price: float = Field(..., ge=0)
    payment_method: CardSnapshot
    shipping_address: Address
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address, stored lowercased")
    phone: str
    national_id: str = Field(..., description="National id number (CPF), unique")
    password_hash: str = Field(..., description="BCrypt hashed password")
    admin: bool = False
    image: Optional[str] = None
    address: Optional[Address] = None
    payment_method: Optional[PaymentMethod] = None
    cart: List[CartItem] = Field(default_factory=list)
    orders: List[Order] = Field(default_factory=list)


class Product(BaseModel):
    name: str = Field(..., min_length=1)
    type: ProductType
    price: float = Field(..., ge=0)
    images: List[str] = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    featured: bool = False
    stock: int = Field(0, ge=0)
    sold: int = Field(0, ge=0)
    sound_file: Optional[str] = None
