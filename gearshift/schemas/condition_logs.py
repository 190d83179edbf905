import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel

from ..models.enums import ConditionLogType, EquipmentCondition, PhotoType


class ConditionPhotoIn(BaseModel):
    url: str
    caption: str = ""
    type: Optional[PhotoType] = None  # defaults to the log type
    timestamp: Optional[datetime] = None


class ConditionLogCreate(BaseModel):
    """Photo count, acknowledgement and damage rules are enforced by ConditionLogStore."""
    type: ConditionLogType
    condition: EquipmentCondition
    notes: str = ""
    photos: List[ConditionPhotoIn] = []
    damage_reported: bool = False
    damage_description: Optional[str] = None
    acknowledged: bool = False
    equipment_id: Optional[uuid.UUID] = None


class ConditionPhotoResponse(BaseModel):
    id: uuid.UUID
    url: str
    caption: str
    type: PhotoType
    timestamp: datetime

    class Config:
        from_attributes = True


class ConditionLogResponse(BaseModel):
    id: uuid.UUID
    rental_id: uuid.UUID
    equipment_id: uuid.UUID
    type: ConditionLogType
    condition: EquipmentCondition
    notes: str
    photos: List[ConditionPhotoResponse]
    verified_by: uuid.UUID
    damage_reported: bool
    damage_description: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class ConditionLogSubmitted(BaseModel):
    id: uuid.UUID
    rental_id: uuid.UUID
    has_pickup_log: bool
    has_return_log: bool
