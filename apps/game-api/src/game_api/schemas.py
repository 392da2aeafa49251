"""Request bodies. Value checks are left to the engines so errors stay typed."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel


class AdvanceProgressRequest(BaseModel):
    delta: int


class UpdateEventSettingsRequest(BaseModel):
    enabled_types: Optional[list[str]] = None
    disabled_events: Optional[list[str]] = None
    priority_events: Optional[list[str]] = None


class CreateOfferRequest(BaseModel):
    item_type: str
    amount: Decimal
    price: Decimal
    currency: str
    offer_type: str = "P2P"
    item_id: Optional[int] = None
    resource: Optional[str] = None
    expires_at: Optional[datetime] = None


class CancelOfferRequest(BaseModel):
    reason: Optional[str] = None
