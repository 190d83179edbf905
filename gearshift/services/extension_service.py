"""
Extension sub-workflow.

A renter asks to push the end date of an active rental; the owner approves or
declines. The rental stays `active` throughout, only the nested extension
status changes. Each rental has a single extension slot: a new request
replaces a pending one rather than queueing behind it.
"""
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional, Sequence, Union

import structlog
from sqlalchemy.orm import Session

from ..errors import DateConflictError, ForbiddenError, IllegalTransitionError, ValidationError
from ..models.enums import ExtensionStatus, RentalStatus
from ..models.models import RentalRequest
from .audit import create_audit_log
from .availability import (
    AvailabilitySettings,
    Booking,
    bookings_for_equipment,
    check_range,
    find_conflicting_booking,
    settings_from_equipment,
)
from .equipment_lock import equipment_guard
from .equipment_service import get_equipment
from .pricing import quote
from .rental_service import ensure_owner, get_rental
from .time_rules import today_local

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ExtensionRequest:
    rental_id: uuid.UUID
    new_end_date: date
    additional_days: int
    additional_cost: Decimal
    status: ExtensionStatus
    requested_at: Optional[datetime] = None
    requested_by: Optional[uuid.UUID] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[uuid.UUID] = None


def extension_of(rental: RentalRequest) -> Optional[ExtensionRequest]:
    if not rental.extension_status:
        return None
    return ExtensionRequest(
        rental_id=rental.id,
        new_end_date=rental.extension_new_end_date,
        additional_days=rental.extension_additional_days,
        additional_cost=rental.extension_additional_cost,
        status=ExtensionStatus(rental.extension_status),
        requested_at=rental.extension_requested_at,
        requested_by=rental.extension_requested_by,
        resolved_at=rental.extension_resolved_at,
        resolved_by=rental.extension_resolved_by,
    )


def _extension_context(rental: RentalRequest) -> dict:
    return {
        "rental_id": str(rental.id),
        "equipment_id": str(rental.equipment_id),
        "new_end_date": rental.extension_new_end_date.isoformat() if rental.extension_new_end_date else None,
        "additional_days": rental.extension_additional_days,
        "additional_cost": str(rental.extension_additional_cost),
    }


def _check_appended_days(
    availability: AvailabilitySettings,
    rental: RentalRequest,
    new_end_date: date,
    bookings: Sequence[Booking],
) -> None:
    """
    The extra days are a second booking appended to the first.

    An overdue rental is still out with the renter, so days before today are
    not rejected as past; blocked dates, ranges and other bookings still apply.
    """
    window_start = rental.end_date + timedelta(days=1)
    check_range(
        availability,
        window_start,
        new_end_date,
        bookings,
        window_start,
        exclude_rental_id=rental.id,
        enforce_minimum=False,
    )


def request_extension(
    db: Session,
    rental_id: uuid.UUID,
    actor_id: uuid.UUID,
    new_end_date: date,
    today: Optional[date] = None,
) -> ExtensionRequest:
    rental = get_rental(db, rental_id)
    if rental.renter_id != actor_id:
        raise ForbiddenError("Only the renter can request an extension", rental_id=rental.id)
    if rental.status != RentalStatus.active.value:
        raise IllegalTransitionError(rental.status, "request an extension for")

    additional_days = (new_end_date - rental.end_date).days
    if additional_days <= 0:
        raise ValidationError(
            "New end date must be after the current end date",
            field="new_end_date",
            current_end_date=rental.end_date,
        )

    today = today or today_local()
    if new_end_date < today:
        raise ValidationError(
            "New end date cannot be in the past",
            field="new_end_date",
            today=today,
        )

    equipment = get_equipment(db, rental.equipment_id)
    _check_appended_days(
        settings_from_equipment(equipment),
        rental,
        new_end_date,
        bookings_for_equipment(db, equipment.id),
    )

    superseded = rental.extension_status == ExtensionStatus.pending.value
    if superseded:
        logger.info(
            "extension_superseded",
            rental_id=str(rental.id),
            previous_new_end_date=rental.extension_new_end_date.isoformat(),
            new_end_date=new_end_date.isoformat(),
        )

    price = quote(rental.price_per_day, rental.service_fee_percent, additional_days)
    rental.extension_new_end_date = new_end_date
    rental.extension_additional_days = additional_days
    rental.extension_additional_cost = price.total
    rental.extension_status = ExtensionStatus.pending.value
    rental.extension_requested_at = datetime.now(timezone.utc)
    rental.extension_requested_by = actor_id
    rental.extension_resolved_at = None
    rental.extension_resolved_by = None
    rental.updated_at = rental.extension_requested_at

    create_audit_log(
        db,
        entity_type="extension",
        entity_id=rental.id,
        action="SUPERSEDE" if superseded else "REQUEST",
        actor_id=actor_id,
        source="api",
        context=_extension_context(rental),
    )
    db.commit()
    logger.info(
        "extension_requested",
        rental_id=str(rental.id),
        actor_id=str(actor_id),
        additional_days=additional_days,
        additional_cost=str(price.total),
    )
    return extension_of(rental)


def resolve_extension(
    db: Session,
    rental_id: uuid.UUID,
    actor_id: uuid.UUID,
    decision: Union[ExtensionStatus, str],
) -> RentalRequest:
    try:
        decision = ExtensionStatus(getattr(decision, "value", decision))
    except ValueError:
        raise ValidationError(f"Unknown extension decision '{decision}'", field="decision")
    if decision == ExtensionStatus.pending:
        raise ValidationError("Decision must be approved or declined", field="decision")

    rental = get_rental(db, rental_id)
    ensure_owner(rental, actor_id, "resolve an extension")
    _require_pending(rental)

    if decision == ExtensionStatus.declined:
        _finish(db, rental, actor_id, decision)
        db.commit()
        return rental

    with equipment_guard(db, rental.equipment_id) as guard:
        _require_pending(rental)
        availability = settings_from_equipment(guard.equipment)
        bookings = bookings_for_equipment(db, rental.equipment_id)
        window_start = rental.end_date + timedelta(days=1)
        conflict = find_conflicting_booking(
            availability, window_start, rental.extension_new_end_date, bookings, exclude_rental_id=rental.id
        )
        if conflict is not None:
            logger.warning(
                "extension_conflict",
                rental_id=str(rental.id),
                conflicting_rental_id=str(conflict.rental_id),
            )
            raise DateConflictError(
                "Extension dates conflict with another approved booking",
                conflicting_rental_id=conflict.rental_id,
                conflicting_start=conflict.start_date,
                conflicting_end=conflict.end_date,
                rental_id=rental.id,
            )
        _check_appended_days(availability, rental, rental.extension_new_end_date, bookings)
        guard.bump_version()

        price = quote(rental.price_per_day, rental.service_fee_percent, rental.extension_additional_days)
        before_end = rental.end_date
        rental.end_date = rental.extension_new_end_date
        rental.total_days = rental.total_days + rental.extension_additional_days
        rental.rental_fee = rental.rental_fee + price.rental_fee
        rental.service_fee = rental.service_fee + price.service_fee
        rental.total_price = rental.total_price + price.total
        _finish(db, rental, actor_id, decision, {"end_date": {"before": before_end, "after": rental.end_date}})
    return rental


def _require_pending(rental: RentalRequest) -> None:
    if rental.status != RentalStatus.active.value:
        raise IllegalTransitionError(rental.status, "resolve an extension for")
    if rental.extension_status != ExtensionStatus.pending.value:
        raise IllegalTransitionError(
            f"extension {rental.extension_status or 'none'}",
            "resolve extension",
            "There is no pending extension request",
        )


def _finish(db: Session, rental: RentalRequest, actor_id: uuid.UUID, decision: ExtensionStatus, changes=None) -> None:
    now = datetime.now(timezone.utc)
    rental.extension_status = decision.value
    rental.extension_resolved_at = now
    rental.extension_resolved_by = actor_id
    rental.updated_at = now
    create_audit_log(
        db,
        entity_type="extension",
        entity_id=rental.id,
        action="APPROVE" if decision == ExtensionStatus.approved else "DECLINE",
        actor_id=actor_id,
        source="api",
        changes_json=changes,
        context=_extension_context(rental),
    )
    logger.info(
        f"extension_{decision.value}",
        rental_id=str(rental.id),
        actor_id=str(actor_id),
        end_date=rental.end_date.isoformat(),
    )
