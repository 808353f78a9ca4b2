from datetime import datetime
from typing import Optional
from decimal import Decimal
from pydantic import BaseModel, Field

class ProductDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    name: str
    description: str = ""
    price: Decimal
    category: Optional[str] = None
    image_url: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True

class SaleDB(BaseModel):
    # One row per checkout; the table predates multi-item carts, so product_id
    # and unit_price are placeholders and product_name carries the item list.
    id: Optional[str] = Field(None, alias="_id")
    product_name: str
    quantity: int
    total_amount: Decimal
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    status: str = "pending" # pending, paid, cancelled
    product_id: Optional[str] = None
    unit_price: Decimal = Decimal(0)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True

class SiteSettingsDB(BaseModel):
    pix_key: Optional[str] = None
    primary_color: str = "#16a34a"
    store_name: str = "Catálogo"
    whatsapp_number: Optional[str] = None
    updated_at: Optional[datetime] = None
