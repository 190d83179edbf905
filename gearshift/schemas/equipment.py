import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class DateRangeIn(BaseModel):
    start_date: date
    end_date: date  # inclusive


class EquipmentCreate(BaseModel):
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    price_per_day: Decimal = Field(gt=0)
    service_fee_percent: Optional[Decimal] = Field(default=None, ge=0)
    security_deposit: Optional[Decimal] = Field(default=None, ge=0)
    min_rental_days: int = 1
    buffer_days: int = 0
    blocked_dates: List[date] = []
    available_ranges: List[DateRangeIn] = []

    @field_validator("name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        return v.strip()


class AvailabilityUpdate(BaseModel):
    """Omitted fields keep their current value; lists replace the stored ones wholesale."""
    blocked_dates: Optional[List[date]] = None
    min_rental_days: Optional[int] = None
    buffer_days: Optional[int] = None
    available_ranges: Optional[List[DateRangeIn]] = None


class DateRangeOut(BaseModel):
    start_date: date
    end_date: date

    class Config:
        from_attributes = True


class EquipmentResponse(BaseModel):
    id: uuid.UUID
    owner_id: uuid.UUID
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    price_per_day: Decimal
    service_fee_percent: Decimal
    security_deposit: Optional[Decimal] = None
    min_rental_days: int
    buffer_days: int
    blocked_dates: List[date]
    available_ranges: List[DateRangeOut]
    created_at: datetime
    updated_at: Optional[datetime] = None


class AvailabilityCheckRequest(BaseModel):
    start_date: date
    end_date: date


class UnavailableDate(BaseModel):
    day: date
    reason: str


class AvailabilityCheckResponse(BaseModel):
    available: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    failed_on: Optional[date] = None
    conflicting_rental_id: Optional[uuid.UUID] = None
    total_days: int
    rental_fee: Optional[Decimal] = None
    service_fee: Optional[Decimal] = None
    total_price: Optional[Decimal] = None
    unavailable_dates: List[UnavailableDate] = []


class NextAvailableResponse(BaseModel):
    equipment_id: uuid.UUID
    next_available_date: Optional[date] = None
    available_now: bool
