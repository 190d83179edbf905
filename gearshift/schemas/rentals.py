import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from ..models.enums import ChecklistAssessment, ExtensionStatus, RentalStatus


class RentalRole(str, Enum):
    renter = "renter"
    owner = "owner"


class RentalCreate(BaseModel):
    equipment_id: uuid.UUID
    start_date: date
    end_date: date
    purpose: Optional[str] = None
    destination: Optional[str] = None
    notes: Optional[str] = None


class ApproveRequest(BaseModel):
    notes: Optional[str] = None


class ChecklistItemIn(BaseModel):
    id: str
    label: str
    checked: bool = False
    assessment: Optional[ChecklistAssessment] = None
    notes: Optional[str] = None


class ChecklistSubmit(BaseModel):
    # None means "use the default checklist, nothing ticked"
    checklist: Optional[List[ChecklistItemIn]] = None


class ReturnSubmit(ChecklistSubmit):
    require_return_log: Optional[bool] = None


class ExtensionCreate(BaseModel):
    new_end_date: date


class ExtensionDecision(BaseModel):
    decision: ExtensionStatus


class ChecklistSummary(BaseModel):
    checked: int
    total: int
    attention: int
    critical: int


class ExtensionResponse(BaseModel):
    new_end_date: date
    additional_days: int
    additional_cost: Decimal
    status: ExtensionStatus
    requested_at: Optional[datetime] = None
    requested_by: Optional[uuid.UUID] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[uuid.UUID] = None

    class Config:
        from_attributes = True


class RentalResponse(BaseModel):
    id: uuid.UUID
    equipment_id: uuid.UUID
    equipment_name: str
    renter_id: uuid.UUID
    owner_id: uuid.UUID
    start_date: date
    end_date: date
    total_days: int
    status: RentalStatus
    price_per_day: Decimal
    rental_fee: Decimal
    service_fee: Decimal
    total_price: Decimal
    purpose: Optional[str] = None
    destination: Optional[str] = None
    notes: Optional[str] = None
    owner_notes: Optional[str] = None
    pickup_checklist: Optional[List[Dict[str, Any]]] = None
    return_checklist: Optional[List[Dict[str, Any]]] = None
    pickup_checklist_summary: Optional[ChecklistSummary] = None
    return_checklist_summary: Optional[ChecklistSummary] = None
    extension: Optional[ExtensionResponse] = None
    has_pickup_log: bool = False
    has_return_log: bool = False
    open_flag_count: int = 0
    has_critical_open_flag: bool = False
    created_at: datetime
    approved_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None


class HistoryEntry(BaseModel):
    id: uuid.UUID
    entity_type: str
    entity_id: uuid.UUID
    action: str
    actor_id: Optional[uuid.UUID] = None
    changes: Optional[Dict[str, Any]] = None
    context: Optional[Dict[str, Any]] = None
    timestamp_utc: datetime
