"""
Database Schemas for the Storefront API

MongoDB collections are defined below using Pydantic models. Each class name is
converted to lowercase for the collection name (User -> "user"). References to
other documents are stored as string ids.

We will use these collections:
- user: customers and administrators
- product: catalogue entries with denormalized rating and review count
- review: one review per user and product
- order: orders placed by a user
- preferences: at most one delivery preferences record per user

The *Input models are request payloads accepted by the operation layer.
"""

from datetime import datetime
from typing import Any, ClassVar, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, EmailStr, Field, ValidationInfo, field_validator

Role = Literal["admin", "customer"]
ProductType = Literal["regular", "custom"]

RATING_MIN = 1
RATING_MAX = 10


class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None


class User(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    email: EmailStr
    role: Role = Field("customer")
    address: Optional[Address] = None
    password_hash: str = Field(..., description="BCrypt hash of password")
    reset_password_token: Optional[str] = Field(None, description="SHA-256 of the emailed reset token")
    reset_password_expire: Optional[datetime] = None


class Product(BaseModel):
    user: str = Field(..., description="Reference to the creating user _id")
    name: str = Field(..., min_length=1, max_length=200)
    image_url: str
    type: ProductType = Field("regular")
    category: Optional[str] = None
    description: str
    price: float = Field(0, ge=0)
    count_in_stock: int = Field(0, ge=0)
    reviews: List[str] = Field(default_factory=list, description="Review ids")
    rating: float = Field(0, ge=0)
    num_reviews: int = Field(0, ge=0)


class Review(BaseModel):
    title: str = Field(..., min_length=1, max_length=100)
    comment: str = Field(..., min_length=1)
    rating: int = Field(..., ge=RATING_MIN, le=RATING_MAX)
    product: str
    user: str
    is_sanctioned: bool = False


class OrderItem(BaseModel):
    product: str
    name: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    image_url: Optional[str] = None


class Order(BaseModel):
    user: str
    order_items: List[OrderItem]
    shipping_address: Address
    payment_method: str
    payment_result: Optional[Dict[str, Any]] = None
    total_price: float = Field(0, ge=0)
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None


class Preferences(BaseModel):
    user: str
    monthly_delivery: bool
    do_not_add: List[str] = Field(default_factory=list)
    order: Optional[str] = None


# Request payloads

class RegisterInput(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    email: EmailStr
    password: str = Field(..., min_length=6)
    address: Optional[Address] = None


class LoginInput(BaseModel):
    email: EmailStr
    password: str


class ForgotPasswordInput(BaseModel):
    email: EmailStr


class ResetPasswordInput(BaseModel):
    password: str = Field(..., min_length=6)


class UpdatePasswordInput(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=6)


class UpdateInput(BaseModel):
    """Partial update: omitted fields are left alone, explicit nulls are refused.

    Fields listed in ``nullable`` are optional on the stored document too and
    may be cleared with null.
    """

    nullable: ClassVar[Tuple[str, ...]] = ()

    @field_validator("*", mode="before")
    @classmethod
    def reject_null(cls, value, info: ValidationInfo):
        if value is None and info.field_name not in cls.nullable:
            raise ValueError(f"{info.field_name} may not be null")
        return value


class UpdateUserInput(UpdateInput):
    nullable = ("address",)

    name: Optional[str] = Field(None, min_length=1, max_length=120)
    email: Optional[EmailStr] = None
    address: Optional[Address] = None
    role: Optional[Role] = None


class ProductInput(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    image_url: str
    type: ProductType = "regular"
    category: Optional[str] = None
    description: str
    price: float = Field(0, ge=0)
    count_in_stock: int = Field(0, ge=0)


class ProductUpdateInput(UpdateInput):
    nullable = ("category",)

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    image_url: Optional[str] = None
    type: Optional[ProductType] = None
    category: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    count_in_stock: Optional[int] = Field(None, ge=0)


class ReviewInput(BaseModel):
    title: str = Field(..., min_length=1, max_length=100)
    comment: str = Field(..., min_length=1)
    rating: int = Field(..., ge=RATING_MIN, le=RATING_MAX)


class ReviewUpdateInput(UpdateInput):
    title: Optional[str] = Field(None, min_length=1, max_length=100)
    comment: Optional[str] = Field(None, min_length=1)
    rating: Optional[int] = Field(None, ge=RATING_MIN, le=RATING_MAX)


class OrderItemInput(BaseModel):
    product: str
    quantity: int = Field(..., ge=1)


class OrderInput(BaseModel):
    order_items: List[OrderItemInput] = Field(..., min_length=1)
    shipping_address: Address
    payment_method: str = Field(..., description="e.g. card, paypal")


class OrderUpdateInput(UpdateInput):
    nullable = ("payment_result",)

    shipping_address: Optional[Address] = None
    payment_result: Optional[Dict[str, Any]] = None
    is_paid: Optional[bool] = None
    is_delivered: Optional[bool] = None


class PreferencesInput(BaseModel):
    monthly_delivery: bool
    do_not_add: List[str] = Field(default_factory=list)
    order: Optional[str] = None


class PreferencesUpdateInput(UpdateInput):
    nullable = ("order",)

    monthly_delivery: Optional[bool] = None
    do_not_add: Optional[List[str]] = None
    order: Optional[str] = None


class PaymentIntentInput(BaseModel):
    amount: int = Field(..., gt=0, description="Amount in the smallest currency unit")
    currency: str = Field("usd", min_length=3, max_length=3)
    customer: Optional[str] = Field(None, description="Payment provider customer id")
    description: Optional[str] = None
