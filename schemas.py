"""
Schemas for the Storefront API

Stored entities (User, Address, Product, Order) and the request bodies that
create or change them. JSON uses camelCase keys; Python attributes stay
snake_case. Each stored entity maps to one collection named after the
lowercase class name.
"""
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Annotated, List, Literal, Optional, Union, get_args

from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

PHONE_RE = re.compile(r"^\+91\d{10}$")
OTP_RE = re.compile(r"^\d{6}$")
PINCODE_RE = re.compile(r"^\d{6}$")
PRICE_RE = re.compile(r"^\d+(\.\d{1,2})?$")

Category = Literal["kurta", "shirt", "hoodie", "tshirt", "other"]
OrderStatus = Literal["pending", "confirmed", "packed", "shipped", "delivered", "cancelled"]
PaymentStatus = Literal["pending", "completed", "failed"]

ORDER_STATUSES = get_args(OrderStatus)


def check_phone(value: str) -> str:
    value = value.strip()
    if not PHONE_RE.match(value):
        raise ValueError("Phone must be +91 followed by 10 digits")
    return value


def to_money(value: Union[str, int, float, Decimal]) -> str:
    """Normalise a price to a 2dp decimal string, e.g. 1299 -> "1299.00"."""
    text = str(value).strip()
    if not PRICE_RE.match(text):
        raise ValueError("Invalid price format")
    try:
        return str(Decimal(text).quantize(Decimal("0.01")))
    except InvalidOperation:
        raise ValueError("Invalid price format")


def check_pincode(value: str) -> str:
    value = value.strip()
    if not PINCODE_RE.match(value):
        raise ValueError("Pincode must be 6 digits")
    return value


Phone = Annotated[str, AfterValidator(check_phone)]
Pincode = Annotated[str, AfterValidator(check_pincode)]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ----------------------- Stored entities -----------------------
class User(CamelModel):
    id: str
    phone: str
    name: Optional[str] = None
    email: Optional[str] = None
    is_admin: bool = False
    otp_code: Optional[str] = None
    otp_expires_at: Optional[datetime] = None
    otp_attempts: int = 0
    otp_failures: int = 0
    created_at: datetime

    @property
    def is_registered(self) -> bool:
        return self.name is not None


class Address(CamelModel):
    id: str
    user_id: str
    label: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: str
    pincode: Pincode
    is_default: bool = False
    created_at: datetime

    def as_text(self) -> str:
        lines = [self.address_line1]
        if self.address_line2:
            lines.append(self.address_line2)
        lines.append(self.city)
        return f"{self.label}: {', '.join(lines)}, {self.state} - {self.pincode}"


class Product(CamelModel):
    id: str
    name: str
    description: str
    price: str
    image: str
    category: Category
    sizes: List[str]
    in_stock: bool = True
    featured: bool = False
    created_at: datetime


class OrderItem(CamelModel):
    product_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    size: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)
    price: str

    @field_validator("price", mode="before")
    @classmethod
    def _price(cls, v):
        return to_money(v)


class Order(CamelModel):
    id: str
    user_id: str
    items: List[OrderItem]
    total_amount: str
    status: OrderStatus = "pending"
    address_id: Optional[str] = None
    shipping_address: str
    payment_status: PaymentStatus = "pending"
    created_at: datetime


# ----------------------- Public projections -----------------------
class UserOut(CamelModel):
    """User as returned to clients; OTP state never leaves the server."""
    id: str
    phone: str
    name: Optional[str] = None
    email: Optional[str] = None
    is_admin: bool = False
    created_at: datetime


# ----------------------- Request bodies -----------------------
class OTPRequest(CamelModel):
    phone: Phone


class OTPVerify(CamelModel):
    phone: Phone
    otp_code: str

    @field_validator("otp_code")
    @classmethod
    def _otp(cls, v: str) -> str:
        v = v.strip()
        if not OTP_RE.match(v):
            raise ValueError("OTP must be 6 digits")
        return v


class ProfileUpdate(CamelModel):
    name: str
    email: Optional[EmailStr] = None

    @field_validator("name")
    @classmethod
    def _name(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 2:
            raise ValueError("Name must be at least 2 characters")
        if len(v) > 100:
            raise ValueError("Name must be at most 100 characters")
        return v


class AddressCreate(CamelModel):
    label: str = Field(..., min_length=1, max_length=50)
    address_line1: str = Field(..., min_length=1, max_length=200)
    address_line2: Optional[str] = Field(None, max_length=200)
    city: str = Field(..., min_length=1, max_length=100)
    state: str = Field(..., min_length=1, max_length=100)
    pincode: Pincode
    is_default: bool = False


class AddressUpdate(CamelModel):
    label: Optional[str] = Field(None, min_length=1, max_length=50)
    address_line1: Optional[str] = Field(None, min_length=1, max_length=200)
    address_line2: Optional[str] = Field(None, max_length=200)
    city: Optional[str] = Field(None, min_length=1, max_length=100)
    state: Optional[str] = Field(None, min_length=1, max_length=100)
    pincode: Optional[Pincode] = None
    is_default: Optional[bool] = None

    @field_validator("label", "address_line1", "city", "state", "pincode", "is_default", mode="before")
    @classmethod
    def _required_not_null(cls, v):
        # omitted means unchanged; an explicit null cannot clear a required field
        if v is None:
            raise ValueError("Field cannot be null")
        return v


class ProductCreate(CamelModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=10)
    price: str
    image: str = Field(..., min_length=1)
    category: Category
    sizes: List[str] = Field(..., min_length=1)
    in_stock: bool = True
    featured: bool = False

    @field_validator("price", mode="before")
    @classmethod
    def _price(cls, v):
        return to_money(v)


class ProductUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = Field(None, min_length=10)
    price: Optional[str] = None
    image: Optional[str] = Field(None, min_length=1)
    category: Optional[Category] = None
    sizes: Optional[List[str]] = Field(None, min_length=1)
    in_stock: Optional[bool] = None
    featured: Optional[bool] = None

    @field_validator("price", mode="before")
    @classmethod
    def _price(cls, v):
        return None if v is None else to_money(v)


class OrderCreate(CamelModel):
    items: List[OrderItem] = Field(..., min_length=1)
    address_id: Optional[str] = None
    shipping_address: Optional[str] = Field(None, min_length=10)
    total_amount: Optional[str] = None

    @field_validator("total_amount", mode="before")
    @classmethod
    def _total(cls, v):
        return None if v is None else to_money(v)


class OrderStatusUpdate(CamelModel):
    status: OrderStatus
