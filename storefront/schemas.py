from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from decimal import Decimal
from datetime import datetime
from shared.security_config import sanitize_input, blank_to_none

SALE_STATUSES = ("pending", "paid", "cancelled")

# --- Products ---
class ProductBase(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    price: Decimal = Field(..., gt=0)
    category: Optional[str] = None
    image_url: Optional[str] = None

class ProductCreate(ProductBase):
    @field_validator('name', 'description', 'category', 'image_url')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Decimal] = Field(None, gt=0)
    category: Optional[str] = None
    image_url: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator('name', 'description', 'category', 'image_url')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class ProductResponse(ProductBase):
    # Stored values were escaped on the way in; reading them back must not escape again
    id: str
    is_active: bool
    created_at: datetime
    updated_at: Optional[datetime] = None

class ProductListResponse(BaseModel):
    products: List[ProductResponse]
    total: int
    page: int
    limit: int

# --- Cart ---
class CartItemAdd(BaseModel):
    product_id: str
    quantity: int = Field(1, gt=0)

class CartItemUpdate(BaseModel):
    # 0 removes the line, same as the "-" stepper reaching zero
    quantity: int = Field(..., ge=0)

class CartItemResponse(BaseModel):
    product_id: str
    name: str
    price: Decimal
    quantity: int
    subtotal: Decimal
    image_url: Optional[str] = None

class CartResponse(BaseModel):
    session_id: str
    items: List[CartItemResponse]
    total_quantity: int
    total: Decimal

# --- Checkout ---
class CheckoutRequest(BaseModel):
    customer_name: Optional[str] = Field(None, max_length=120)
    customer_phone: Optional[str] = Field(None, max_length=40)

    @field_validator('customer_name', 'customer_phone')
    def strip_fields(cls, v):
        if isinstance(v, str):
            v = v.strip()
        return blank_to_none(v)

class NotificationResponse(BaseModel):
    level: str
    message: str

class CheckoutResponse(BaseModel):
    state: str
    cart: CartResponse
    sale_id: Optional[str] = None
    total: Optional[Decimal] = None
    items_description: Optional[str] = None
    qr_code_url: Optional[str] = None
    whatsapp_link: Optional[str] = None
    primary_color: Optional[str] = None
    notifications: List[NotificationResponse] = []

# --- Sales ---
class SaleResponse(BaseModel):
    id: str
    product_name: str
    quantity: int
    total_amount: Decimal
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    status: str
    product_id: Optional[str] = None
    unit_price: Decimal = Decimal(0)
    created_at: datetime
    updated_at: Optional[datetime] = None

class SaleStatusUpdate(BaseModel):
    status: str = Field(..., pattern="^(paid|cancelled)$")

# --- Settings ---
class SiteSettingsResponse(BaseModel):
    pix_key: Optional[str] = None
    primary_color: str
    store_name: str
    whatsapp_number: Optional[str] = None

class SiteSettingsUpdate(BaseModel):
    pix_key: Optional[str] = None
    primary_color: Optional[str] = Field(None, pattern="^#[0-9a-fA-F]{6}$")
    store_name: Optional[str] = None
    whatsapp_number: Optional[str] = Field(None, pattern="^[0-9]{8,15}$")

    @field_validator('pix_key', 'store_name')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

# --- Admin auth ---
class AdminLogin(BaseModel):
    email: str
    password: str

class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
