import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel

from ..models.enums import FlagCategory, FlagSeverity, FlagStatus


class FlagCreate(BaseModel):
    category: FlagCategory
    severity: Optional[FlagSeverity] = None  # defaults to the category's severity
    selected_issue: Optional[str] = None
    additional_context: Optional[str] = None


class FlagResolve(BaseModel):
    note: Optional[str] = None


class FlagResponse(BaseModel):
    id: uuid.UUID
    rental_id: uuid.UUID
    category: FlagCategory
    severity: FlagSeverity
    selected_issue: str
    additional_context: Optional[str] = None
    status: FlagStatus
    created_at: datetime
    created_by: uuid.UUID
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[uuid.UUID] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[uuid.UUID] = None
    resolution_note: Optional[str] = None

    class Config:
        from_attributes = True


class FlagCategoryResponse(BaseModel):
    category: FlagCategory
    label: str
    description: str
    default_severity: FlagSeverity
    quick_actions: List[str]
