from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from freight_escrow.models import BidStatus, EquipmentType, LoadStatus


class LoadRead(BaseModel):
    id: str
    shipper_id: str
    carrier_id: Optional[str] = None
    origin_city: str
    origin_state: str
    destination_city: str
    destination_state: str
    equipment_type: EquipmentType
    posted_rate: Optional[Decimal] = None
    status: LoadStatus

    class Config:
        from_attributes = True


class LoadStatusUpdate(BaseModel):
    status: str


class BidCreate(BaseModel):
    bid_amount: Decimal
    expires_at: Optional[datetime] = None
    notes: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("expires_at")
    @classmethod
    def expires_at_as_naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        # Stored timestamps are naive UTC; sweeps compare against utcnow().
        if v is None or v.tzinfo is None:
            return v
        return v.astimezone(timezone.utc).replace(tzinfo=None)


class BidRead(BaseModel):
    id: str
    load_id: str
    carrier_id: str
    bid_amount: Decimal
    status: BidStatus
    expires_at: Optional[datetime] = None
    notes: Optional[str] = None

    class Config:
        from_attributes = True
