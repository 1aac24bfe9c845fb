"""
Database Schemas for the storefront

Each Pydantic model represents a MongoDB collection or a request body.
Collection name is the lowercase class name (e.g., Product -> "product").
"""
from __future__ import annotations
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field, EmailStr
from enum import Enum


class Role(str, Enum):
    user = "user"
    admin = "admin"


class User(BaseModel):
    email: EmailStr
    full_name: str
    password_hash: str
    role: Role = Role.user


class Category(BaseModel):
    name: str
    description: Optional[str] = None
    icon_url: Optional[str] = None
    sort_order: int = 0


class Product(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    image_url: Optional[str] = None
    price: float = Field(ge=0)
    original_price: Optional[float] = Field(default=None, ge=0)
    stock: int = Field(ge=0)
    category: Optional[str] = None
    brand: Optional[str] = None
    shipping_info: str = "Free shipping"
    tags: List[str] = []


class ProductUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    image_url: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    original_price: Optional[float] = Field(default=None, ge=0)
    stock: Optional[int] = Field(default=None, ge=0)
    category: Optional[str] = None
    brand: Optional[str] = None
    shipping_info: Optional[str] = None
    tags: Optional[List[str]] = None


class CartLineIn(BaseModel):
    product_id: str
    quantity: int = Field(default=1, ge=1)


class CartLineUpdate(BaseModel):
    quantity: int = Field(ge=1)


class OrderStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    shipped = "shipped"
    delivered = "delivered"
    cancelled = "cancelled"


class PaymentStatus(str, Enum):
    pending = "pending"
    paid = "paid"
    failed = "failed"
    refunded = "refunded"


class ShippingAddress(BaseModel):
    full_name: str = Field(..., min_length=1)
    address_line_1: str = Field(..., min_length=1)
    address_line_2: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=1)
    country: str = "US"
    phone: str = Field(..., min_length=1)


class OrderItemIn(BaseModel):
    product_id: str
    quantity: int = Field(ge=1)


# Frozen copy stored inside order.items
class OrderItem(BaseModel):
    product_id: str
    product_title: str
    product_image: Optional[str] = None
    price: float
    quantity: int = Field(ge=1)
    total: float


class OrderCreate(BaseModel):
    items: Optional[List[OrderItemIn]] = None
    shipping_address: ShippingAddress
    payment_method: str = "card"


class StatusChange(BaseModel):
    status: str
    tracking_number: Optional[str] = None
    reason: Optional[str] = None


class PaymentStatusChange(BaseModel):
    payment_status: str


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class ReviewCreate(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class RegisterPayload(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    full_name: str = Field(..., min_length=1)


class LoginPayload(BaseModel):
    email: EmailStr
    password: str


class ForgotPasswordPayload(BaseModel):
    email: EmailStr


class ResetPasswordPayload(BaseModel):
    token: str
    new_password: str = Field(..., min_length=6)


class ListingData(BaseModel):
    id: str
    title: str
    description: str = ""
    price: float = Field(ge=0)
    images: List[str] = []
    category: Optional[str] = None
    supplier: Dict[str, Any] = {}


class ImportRequest(BaseModel):
    markup: float = Field(default=100.0, ge=0)


class CampaignCreate(BaseModel):
    product_id: str
    campaign_name: str = Field(..., min_length=1)
    budget: float = Field(..., gt=0)
    target_audience: Dict[str, Any] = {}


class CampaignUpdate(BaseModel):
    campaign_name: Optional[str] = Field(default=None, min_length=1)
    budget: Optional[float] = Field(default=None, gt=0)
    target_audience: Optional[Dict[str, Any]] = None


class BulkImportRequest(BaseModel):
    product_ids: List[str] = Field(..., min_length=1)
    markup: float = Field(default=100.0, ge=0)


class AnalysisSettingsUpdate(BaseModel):
    """Admin-tunable AI settings; unset fields keep their stored value."""
    auto_approval_threshold: Optional[float] = Field(default=None, ge=0, le=1)
    import_approval_threshold: Optional[float] = Field(default=None, ge=0, le=1)
    enable_auto_product_analysis: Optional[bool] = None
