"""
Condition log store.
Append-only photographic evidence of equipment state at pickup and return.
There is deliberately no update or delete: a correction is a new log.
"""
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Union

import structlog
from sqlalchemy.orm import Session, selectinload

from ..config import settings
from ..errors import IllegalTransitionError, NotFoundError, ValidationError
from ..models.enums import ConditionLogType, EquipmentCondition, PhotoType, RentalStatus
from ..models.models import ConditionLog, ConditionPhoto, RentalRequest
from ..schemas.condition_logs import ConditionLogCreate
from .audit import create_audit_log

logger = structlog.get_logger(__name__)

# Rentals in these states have had (or are having) a physical handoff
DOCUMENTABLE_STATUSES = frozenset({
    RentalStatus.approved.value,
    RentalStatus.active.value,
    RentalStatus.completed.value,
})


def _enum_value(enum_cls, value, field: str) -> str:
    try:
        return enum_cls(getattr(value, "value", value)).value
    except ValueError:
        raise ValidationError(f"Invalid {field} '{value}'", field=field)


class ConditionLogStore:
    def __init__(self, db: Session):
        self.db = db

    def _validate(self, log: ConditionLogCreate) -> None:
        photo_count = len(log.photos or [])
        if photo_count < settings.min_condition_photos:
            raise ValidationError(
                f"At least {settings.min_condition_photos} photos are required, got {photo_count}",
                field="photos",
                minimum=settings.min_condition_photos,
                received=photo_count,
            )
        if photo_count > settings.max_condition_photos:
            raise ValidationError(
                f"At most {settings.max_condition_photos} photos are allowed, got {photo_count}",
                field="photos",
                maximum=settings.max_condition_photos,
                received=photo_count,
            )
        for index, photo in enumerate(log.photos):
            if not (photo.url or "").strip():
                raise ValidationError(f"Photo {index + 1} has no url", field="photos")
        if not log.acknowledged:
            raise ValidationError("The condition report must be acknowledged before submission", field="acknowledged")
        if log.damage_reported and not (log.damage_description or "").strip():
            raise ValidationError("Describe the damage when damage is reported", field="damage_description")

    def submit(self, rental_id: uuid.UUID, log: ConditionLogCreate, verified_by: uuid.UUID) -> uuid.UUID:
        """Validate and append a log; returns the new log id."""
        self._validate(log)
        log_type = _enum_value(ConditionLogType, log.type, "type")
        condition = _enum_value(EquipmentCondition, log.condition, "condition")

        rental = self.db.query(RentalRequest).filter(RentalRequest.id == rental_id).first()
        if not rental:
            raise NotFoundError("Rental not found", rental_id=rental_id)
        if log.equipment_id is not None and log.equipment_id != rental.equipment_id:
            raise ValidationError("Log equipment does not match the rental", field="equipment_id")
        if rental.status not in DOCUMENTABLE_STATUSES:
            raise IllegalTransitionError(rental.status, "document the condition of")

        now = datetime.now(timezone.utc)
        entry = ConditionLog(
            rental_id=rental.id,
            equipment_id=rental.equipment_id,
            type=log_type,
            condition=condition,
            notes=log.notes or "",
            verified_by=verified_by,
            acknowledged=True,
            damage_reported=log.damage_reported,
            damage_description=(log.damage_description or "").strip() or None,
            created_at=now,
        )
        entry.photos = [
            ConditionPhoto(
                position=index,
                url=photo.url.strip(),
                caption=photo.caption or "",
                type=_enum_value(PhotoType, photo.type or log_type, "photo type"),
                timestamp=photo.timestamp or now,
            )
            for index, photo in enumerate(log.photos)
        ]
        self.db.add(entry)
        self.db.flush()
        create_audit_log(
            self.db,
            entity_type="condition_log",
            entity_id=entry.id,
            action="SUBMIT",
            actor_id=verified_by,
            source="api",
            context={
                "rental_id": str(rental.id),
                "equipment_id": str(rental.equipment_id),
                "type": log_type,
                "condition": condition,
                "damage_reported": log.damage_reported,
                "photo_count": len(entry.photos),
            },
        )
        self.db.commit()
        logger.info(
            "condition_log_submitted",
            log_id=str(entry.id),
            rental_id=str(rental.id),
            type=log_type,
            damage_reported=log.damage_reported,
        )
        return entry.id

    def get(self, log_id: uuid.UUID) -> ConditionLog:
        entry = (
            self.db.query(ConditionLog)
            .options(selectinload(ConditionLog.photos))
            .filter(ConditionLog.id == log_id)
            .first()
        )
        if not entry:
            raise NotFoundError("Condition log not found", log_id=log_id)
        return entry

    def list_for_rental(self, rental_id: uuid.UUID) -> List[ConditionLog]:
        return (
            self.db.query(ConditionLog)
            .options(selectinload(ConditionLog.photos))
            .filter(ConditionLog.rental_id == rental_id)
            .order_by(ConditionLog.created_at.asc())
            .all()
        )

    def has_type(self, rental_id: uuid.UUID, log_type: Union[ConditionLogType, str]) -> bool:
        value = _enum_value(ConditionLogType, log_type, "type")
        return (
            self.db.query(ConditionLog.id)
            .filter(ConditionLog.rental_id == rental_id, ConditionLog.type == value)
            .first()
            is not None
        )

    def latest(self, rental_id: uuid.UUID, log_type: Union[ConditionLogType, str]) -> Optional[ConditionLog]:
        value = _enum_value(ConditionLogType, log_type, "type")
        return (
            self.db.query(ConditionLog)
            .options(selectinload(ConditionLog.photos))
            .filter(ConditionLog.rental_id == rental_id, ConditionLog.type == value)
            .order_by(ConditionLog.created_at.desc())
            .first()
        )
