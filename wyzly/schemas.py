"""
Request models and the closed sets of values shared across services.

Request bodies use camelCase keys on the wire (``boxId``, ``paymentMethod``)
and snake_case attributes in Python.
"""

from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

from . import config


# ============================================
# ENUMS
# ============================================
class Role(str, Enum):
    CUSTOMER = "customer"
    RESTAURANT = "restaurant"
    ADMIN = "admin"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Statuses a customer may still cancel from
CUSTOMER_CANCELLABLE = (OrderStatus.PENDING.value, OrderStatus.CONFIRMED.value)
ACTIVE_STATUSES = ("pending", "confirmed", "preparing", "ready")


class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    PAYPAL = "paypal"
    CASH = "cash"
    MOCK = "mock"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class InventoryType(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


PRIORITY_RANK = {Priority.HIGH.value: 3, Priority.MEDIUM.value: 2, Priority.LOW.value: 1}


class FeedCategory(str, Enum):
    ALL = "all"
    AVAILABLE = "available"
    SOLD_OUT = "sold-out"


# ============================================
# BASE
# ============================================
class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _strip_or_none(value):
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


# ============================================
# AUTH
# ============================================
class LoginRequest(ApiModel):
    email: str
    password: str
    role: Role


class RegisterRequest(ApiModel):
    email: EmailStr
    username: str = Field(..., min_length=3, max_length=100)
    password: str = Field(..., min_length=6)
    confirm_password: str
    role: Role = Role.CUSTOMER
    phone_number: Optional[str] = Field(None, max_length=20)
    age: Optional[int] = Field(None, ge=13, le=120)
    gender: Optional[str] = Field(None, max_length=10)
    address: Optional[str] = None
    restaurant_name: Optional[str] = Field(None, max_length=255)
    restaurant_description: Optional[str] = None

    @field_validator("username")
    @classmethod
    def username_not_blank(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 3:
            raise ValueError("Username must be at least 3 characters long")
        return v

    @field_validator("phone_number", "gender", "address", "restaurant_name", "restaurant_description")
    @classmethod
    def strip_optional(cls, v):
        return _strip_or_none(v)


# ============================================
# BOXES
# ============================================
class BoxCreate(ApiModel):
    title: str = Field(..., max_length=255)
    price: Decimal = Field(..., ge=0)
    quantity: int = Field(..., ge=0)
    image: Optional[str] = Field(None, max_length=500)
    is_available: bool = True

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Title must be a non-empty string")
        return v

    @field_validator("image")
    @classmethod
    def strip_image(cls, v):
        return _strip_or_none(v)


class BoxUpdate(ApiModel):
    title: Optional[str] = Field(None, max_length=255)
    price: Optional[Decimal] = Field(None, ge=0)
    quantity: Optional[int] = Field(None, ge=0)
    image: Optional[str] = Field(None, max_length=500)
    is_available: Optional[bool] = None

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v):
        if v is None:
            return v
        v = v.strip()
        if not v:
            raise ValueError("Title must be a non-empty string")
        return v


class InventoryAdjustment(ApiModel):
    type: InventoryType
    quantity: int = Field(..., gt=0)


class BoxIdsRequest(ApiModel):
    box_ids: List[int] = Field(..., max_length=config.MAX_LOOKUP_IDS)


# ============================================
# ORDERS
# ============================================
class OrderLine(ApiModel):
    box_id: int = Field(..., gt=0)
    quantity: int = Field(..., gt=0)


class BulkOrderRequest(ApiModel):
    items: List[OrderLine] = Field(..., min_length=1, max_length=config.MAX_ORDER_LINES)
    payment_method: PaymentMethod = PaymentMethod.MOCK


class OrderCreateRequest(OrderLine):
    payment_method: PaymentMethod = PaymentMethod.MOCK


class CancelOrderRequest(ApiModel):
    reason: Optional[str] = Field(None, max_length=config.MAX_NOTES_LENGTH)


# ============================================
# WISHLIST
# ============================================
class WishlistItemCreate(ApiModel):
    box_id: int = Field(..., gt=0)
    priority: Priority = Priority.MEDIUM
    notes: Optional[str] = Field(None, max_length=config.MAX_NOTES_LENGTH)
    quantity: int = Field(1, ge=1)


class WishlistItemUpdate(ApiModel):
    priority: Optional[Priority] = None
    notes: Optional[str] = Field(None, max_length=config.MAX_NOTES_LENGTH)
    quantity: Optional[int] = Field(None, ge=1)


class WishlistSyncItem(ApiModel):
    box_id: int = Field(..., gt=0)
    priority: Priority = Priority.MEDIUM
    notes: Optional[str] = Field(None, max_length=config.MAX_NOTES_LENGTH)
    quantity: int = Field(1, ge=1)


class WishlistSyncRequest(ApiModel):
    local_items: List[WishlistSyncItem] = Field(default_factory=list)
