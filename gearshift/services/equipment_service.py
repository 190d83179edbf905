import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterable, Optional, Sequence, Tuple

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import ForbiddenError, NotFoundError, ValidationError
from ..models.models import Equipment, EquipmentAvailableRange, EquipmentBlockedDate
from .audit import create_audit_log, compute_diff
from .pricing import to_money
from .time_rules import today_local

logger = structlog.get_logger(__name__)

DEFAULT_AVAILABILITY_HORIZON_DAYS = 365


def get_equipment(db: Session, equipment_id: uuid.UUID) -> Equipment:
    equipment = db.query(Equipment).filter(Equipment.id == equipment_id).first()
    if not equipment:
        raise NotFoundError("Equipment not found", equipment_id=equipment_id)
    return equipment


def _validate_rules(min_rental_days: Optional[int], buffer_days: Optional[int]) -> None:
    if min_rental_days is not None and min_rental_days < 1:
        raise ValidationError("Minimum rental must be at least 1 day", field="min_rental_days")
    if buffer_days is not None and buffer_days < 0:
        raise ValidationError("Buffer days cannot be negative", field="buffer_days")


def _normalize_ranges(ranges: Iterable[Tuple[date, date]]) -> Sequence[Tuple[date, date]]:
    normalized = []
    for start, end in ranges:
        if end < start:
            raise ValidationError(
                f"Available range {start.isoformat()}..{end.isoformat()} ends before it starts",
                field="available_ranges",
            )
        normalized.append((start, end))
    return sorted(normalized)


def _replace_blocked_dates(equipment: Equipment, blocked_dates: Iterable[date]) -> None:
    # Keep rows for dates that stay blocked; the flush inserts before it deletes,
    # so re-creating them would trip uq_equipment_blocked_date
    wanted = set(blocked_dates)
    kept = [row for row in equipment.blocked_dates if row.blocked_date in wanted]
    existing = {row.blocked_date for row in kept}
    kept.extend(EquipmentBlockedDate(blocked_date=d) for d in sorted(wanted - existing))
    equipment.blocked_dates = kept


def _availability_snapshot(equipment: Equipment) -> dict:
    return {
        "min_rental_days": equipment.min_rental_days,
        "buffer_days": equipment.buffer_days,
        "blocked_dates": sorted(b.blocked_date.isoformat() for b in equipment.blocked_dates),
        "available_ranges": [
            [r.start_date.isoformat(), r.end_date.isoformat()] for r in equipment.available_ranges
        ],
    }


def register_equipment(
    db: Session,
    *,
    owner_id: uuid.UUID,
    name: str,
    price_per_day: Decimal,
    service_fee_percent: Optional[Decimal] = None,
    description: Optional[str] = None,
    category: Optional[str] = None,
    security_deposit: Optional[Decimal] = None,
    min_rental_days: int = 1,
    buffer_days: int = 0,
    blocked_dates: Iterable[date] = (),
    available_ranges: Iterable[Tuple[date, date]] = (),
    today: Optional[date] = None,
) -> Equipment:
    if not (name or "").strip():
        raise ValidationError("Equipment name is required", field="name")
    if Decimal(str(price_per_day)) <= 0:
        raise ValidationError("Price per day must be positive", field="price_per_day")
    fee = Decimal(str(settings.service_fee_percent_default if service_fee_percent is None else service_fee_percent))
    if fee < 0:
        raise ValidationError("Service fee cannot be negative", field="service_fee_percent")
    _validate_rules(min_rental_days, buffer_days)

    ranges = _normalize_ranges(available_ranges)
    if not ranges:
        # Listings without explicit windows are rentable for the next year
        start = today or today_local()
        ranges = [(start, start + timedelta(days=DEFAULT_AVAILABILITY_HORIZON_DAYS))]

    equipment = Equipment(
        owner_id=owner_id,
        name=name.strip(),
        description=description,
        category=category,
        price_per_day=to_money(price_per_day),
        service_fee_percent=fee,
        security_deposit=to_money(security_deposit) if security_deposit is not None else None,
        min_rental_days=min_rental_days,
        buffer_days=buffer_days,
    )
    equipment.blocked_dates = [EquipmentBlockedDate(blocked_date=d) for d in sorted(set(blocked_dates))]
    equipment.available_ranges = [EquipmentAvailableRange(start_date=s, end_date=e) for s, e in ranges]
    db.add(equipment)
    db.flush()

    create_audit_log(
        db,
        entity_type="equipment",
        entity_id=equipment.id,
        action="CREATE",
        actor_id=owner_id,
        source="api",
        context={"equipment_id": str(equipment.id)},
    )
    db.commit()
    db.refresh(equipment)
    logger.info("equipment_registered", equipment_id=str(equipment.id), owner_id=str(owner_id))
    return equipment


def update_availability(
    db: Session,
    equipment_id: uuid.UUID,
    actor_id: uuid.UUID,
    *,
    blocked_dates: Optional[Iterable[date]] = None,
    min_rental_days: Optional[int] = None,
    buffer_days: Optional[int] = None,
    available_ranges: Optional[Iterable[Tuple[date, date]]] = None,
) -> Equipment:
    """Replace the owner's availability rules; omitted fields keep their current value."""
    equipment = get_equipment(db, equipment_id)
    if equipment.owner_id != actor_id:
        raise ForbiddenError("Only the owner can change availability", equipment_id=equipment_id)
    _validate_rules(min_rental_days, buffer_days)

    before = _availability_snapshot(equipment)
    if min_rental_days is not None:
        equipment.min_rental_days = min_rental_days
    if buffer_days is not None:
        equipment.buffer_days = buffer_days
    if blocked_dates is not None:
        _replace_blocked_dates(equipment, blocked_dates)
    if available_ranges is not None:
        equipment.available_ranges = [
            EquipmentAvailableRange(start_date=s, end_date=e) for s, e in _normalize_ranges(available_ranges)
        ]
    equipment.updated_at = datetime.now(timezone.utc)
    db.flush()

    changes = compute_diff(before, _availability_snapshot(equipment))
    if changes:
        create_audit_log(
            db,
            entity_type="equipment",
            entity_id=equipment.id,
            action="UPDATE_AVAILABILITY",
            actor_id=actor_id,
            source="api",
            changes_json=changes,
            context={"equipment_id": str(equipment.id)},
        )
    db.commit()
    db.refresh(equipment)
    logger.info("availability_updated", equipment_id=str(equipment.id), fields=sorted(changes))
    return equipment
