from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime


class RawBuyer(BaseModel):
    name: str = ""
    email: str = ""


class RawItem(BaseModel):
    # None when the marketplace exposes no stable line identifier.
    item_id: Optional[str] = None
    title: str = Field(min_length=1)
    unit_price: float
    quantity: int = Field(ge=0)


class RawOrder(BaseModel):
    """Marketplace-independent shape every adapter must emit."""

    order_id: str = Field(min_length=1)
    shipping_total: float = 0.0
    currency: str = "USD"
    status: Optional[str] = None
    buyer: RawBuyer = Field(default_factory=RawBuyer)
    created_at: datetime
    items: List[RawItem] = Field(min_length=1)
    shipping_address: Optional[Dict[str, Any]] = None
    tracking_number: Optional[str] = None
