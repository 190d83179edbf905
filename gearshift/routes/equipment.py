import uuid
from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import get_current_actor
from ..db import get_db
from ..errors import AvailabilityError, AvailabilityReason
from ..models.models import Equipment
from ..schemas.equipment import (
    AvailabilityCheckRequest,
    AvailabilityCheckResponse,
    AvailabilityUpdate,
    EquipmentCreate,
    EquipmentResponse,
    NextAvailableResponse,
)
from ..services.availability import (
    bookings_for_equipment,
    check_range,
    compute_next_available,
    settings_from_equipment,
    total_days,
    unavailable_dates_between,
)
from ..services.equipment_service import get_equipment, register_equipment, update_availability
from ..services.pricing import quote
from ..services.time_rules import today_local


router = APIRouter(prefix="/equipment", tags=["equipment"])

# Longest window the calendar check will enumerate day by day
MAX_CHECK_WINDOW_DAYS = 366


def _serialize_equipment(equipment: Equipment) -> Dict[str, Any]:
    return {
        "id": equipment.id,
        "owner_id": equipment.owner_id,
        "name": equipment.name,
        "description": equipment.description,
        "category": equipment.category,
        "price_per_day": equipment.price_per_day,
        "service_fee_percent": equipment.service_fee_percent,
        "security_deposit": equipment.security_deposit,
        "min_rental_days": equipment.min_rental_days,
        "buffer_days": equipment.buffer_days,
        "blocked_dates": sorted(b.blocked_date for b in equipment.blocked_dates),
        "available_ranges": [
            {"start_date": r.start_date, "end_date": r.end_date} for r in equipment.available_ranges
        ],
        "created_at": equipment.created_at,
        "updated_at": equipment.updated_at,
    }


@router.post("", response_model=EquipmentResponse, status_code=201)
def create_equipment(
    body: EquipmentCreate,
    db: Session = Depends(get_db),
    actor_id: uuid.UUID = Depends(get_current_actor),
):
    equipment = register_equipment(
        db,
        owner_id=actor_id,
        name=body.name,
        price_per_day=body.price_per_day,
        service_fee_percent=body.service_fee_percent,
        description=body.description,
        category=body.category,
        security_deposit=body.security_deposit,
        min_rental_days=body.min_rental_days,
        buffer_days=body.buffer_days,
        blocked_dates=body.blocked_dates,
        available_ranges=[(r.start_date, r.end_date) for r in body.available_ranges],
    )
    return _serialize_equipment(equipment)


@router.get("/{equipment_id}", response_model=EquipmentResponse)
def read_equipment(
    equipment_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor_id: uuid.UUID = Depends(get_current_actor),
):
    return _serialize_equipment(get_equipment(db, equipment_id))


@router.put("/{equipment_id}/availability", response_model=EquipmentResponse)
def put_availability(
    equipment_id: uuid.UUID,
    body: AvailabilityUpdate,
    db: Session = Depends(get_db),
    actor_id: uuid.UUID = Depends(get_current_actor),
):
    ranges = None
    if body.available_ranges is not None:
        ranges = [(r.start_date, r.end_date) for r in body.available_ranges]
    equipment = update_availability(
        db,
        equipment_id,
        actor_id,
        blocked_dates=body.blocked_dates,
        min_rental_days=body.min_rental_days,
        buffer_days=body.buffer_days,
        available_ranges=ranges,
    )
    return _serialize_equipment(equipment)


@router.get("/{equipment_id}/next-available", response_model=NextAvailableResponse)
def next_available(
    equipment_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor_id: uuid.UUID = Depends(get_current_actor),
):
    equipment = get_equipment(db, equipment_id)
    next_date = compute_next_available(
        settings_from_equipment(equipment),
        bookings_for_equipment(db, equipment.id),
        today_local(),
    )
    return {"equipment_id": equipment.id, "next_available_date": next_date, "available_now": next_date is None}


@router.post("/{equipment_id}/availability/check", response_model=AvailabilityCheckResponse)
def check_availability(
    equipment_id: uuid.UUID,
    body: AvailabilityCheckRequest,
    db: Session = Depends(get_db),
    actor_id: uuid.UUID = Depends(get_current_actor),
):
    """Dry run of a rental request: would these dates be accepted, and at what price?"""
    equipment = get_equipment(db, equipment_id)
    if body.end_date < body.start_date:
        raise AvailabilityError(AvailabilityReason.invalid_range, start_date=body.start_date, end_date=body.end_date)

    availability = settings_from_equipment(equipment)
    bookings = bookings_for_equipment(db, equipment.id)
    today = today_local()
    days = total_days(body.start_date, body.end_date)
    result: Dict[str, Any] = {"available": True, "total_days": days}
    try:
        check_range(availability, body.start_date, body.end_date, bookings, today)
    except AvailabilityError as exc:
        result.update(
            available=False,
            reason=exc.reason.value,
            message=exc.message,
            failed_on=exc.date,
            conflicting_rental_id=exc.conflicting_rental_id,
        )
    else:
        price = quote(equipment.price_per_day, equipment.service_fee_percent, days)
        result.update(rental_fee=price.rental_fee, service_fee=price.service_fee, total_price=price.total)

    if days <= MAX_CHECK_WINDOW_DAYS:
        result["unavailable_dates"] = [
            {"day": day, "reason": reason.value}
            for day, reason in unavailable_dates_between(availability, body.start_date, body.end_date, bookings, today)
        ]
    return result
