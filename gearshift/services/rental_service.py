"""
Rental state machine.

Owns RentalRequest.status. Legal transitions:

    requested --approve--> approved
    requested --decline--> declined
    approved  --begin_pickup--> active
    active    --complete_return--> completed

completed and declined are terminal. Every transition is written to the audit
log in the same transaction as the status change. The status write is
conditional on the status the caller read, so of two racing transitions out
of the same state only one lands.
"""
import uuid
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import (
    DateConflictError,
    ForbiddenError,
    IllegalTransitionError,
    NotFoundError,
    ValidationError,
)
from ..models.enums import ChecklistAssessment, ConditionLogType, ExtensionStatus, RentalStatus
from ..models.models import RentalRequest
from .audit import create_audit_log
from .availability import (
    bookings_for_equipment,
    check_range,
    find_conflicting_booking,
    settings_from_equipment,
    total_days,
)
from .condition_logs import ConditionLogStore
from .equipment_lock import equipment_guard
from .equipment_service import get_equipment
from .pricing import quote
from .time_rules import today_local

logger = structlog.get_logger(__name__)


DEFAULT_PICKUP_CHECKLIST = (
    ("p1", "Equipment matches listing photos"),
    ("p2", "All accessories and attachments present"),
    ("p3", "Fuel/power level noted"),
    ("p4", "Any existing damage documented"),
    ("p5", "Operating instructions received"),
)

DEFAULT_RETURN_CHECKLIST = (
    ("r1", "Equipment cleaned and ready"),
    ("r2", "All accessories returned"),
    ("r3", "Fuel/power level restored"),
    ("r4", "Any new damage reported"),
    ("r5", "Keys/access returned"),
)

# action -> (allowed source statuses, target status)
TRANSITIONS = {
    "approve": ({RentalStatus.requested}, RentalStatus.approved),
    "decline": ({RentalStatus.requested}, RentalStatus.declined),
    "begin_pickup": ({RentalStatus.approved}, RentalStatus.active),
    "complete_return": ({RentalStatus.active}, RentalStatus.completed),
}

_AUDIT_ACTIONS = {
    "approve": "APPROVE",
    "decline": "DECLINE",
    "begin_pickup": "PICKUP",
    "complete_return": "RETURN",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def get_rental(db: Session, rental_id: uuid.UUID) -> RentalRequest:
    rental = db.query(RentalRequest).filter(RentalRequest.id == rental_id).first()
    if not rental:
        raise NotFoundError("Rental not found", rental_id=rental_id)
    return rental


def is_party(rental: RentalRequest, actor_id: uuid.UUID) -> bool:
    return actor_id in (rental.renter_id, rental.owner_id)


def ensure_party(rental: RentalRequest, actor_id: uuid.UUID) -> None:
    if not is_party(rental, actor_id):
        raise ForbiddenError("Only the renter or the owner can access this rental", rental_id=rental.id)


def ensure_owner(rental: RentalRequest, actor_id: uuid.UUID, action: str) -> None:
    if rental.owner_id != actor_id:
        raise ForbiddenError(f"Only the equipment owner can {action}", rental_id=rental.id)


def display_status(rental: RentalRequest) -> str:
    if rental.status == RentalStatus.active.value and rental.extension_status == ExtensionStatus.pending.value:
        return RentalStatus.extension_requested.value
    return rental.status


def list_rentals_for_user(db: Session, user_id: uuid.UUID, role: Optional[str] = None) -> List[RentalRequest]:
    query = db.query(RentalRequest)
    if role == "renter":
        query = query.filter(RentalRequest.renter_id == user_id)
    elif role == "owner":
        query = query.filter(RentalRequest.owner_id == user_id)
    else:
        query = query.filter(or_(RentalRequest.renter_id == user_id, RentalRequest.owner_id == user_id))
    return query.order_by(RentalRequest.created_at.desc()).all()


def normalize_checklist(items: Optional[Iterable[Any]], defaults) -> List[Dict[str, Any]]:
    """Coerce checklist items (dicts or pydantic models) to plain JSON-able dicts."""
    if items is None:
        return [{"id": item_id, "label": label, "checked": False} for item_id, label in defaults]

    normalized = []
    for raw in items:
        data = raw.model_dump(exclude_none=True) if hasattr(raw, "model_dump") else dict(raw)
        if not data.get("id") or not data.get("label"):
            raise ValidationError("Checklist items need an id and a label", field="checklist")
        item = {"id": str(data["id"]), "label": str(data["label"]), "checked": bool(data.get("checked", False))}
        assessment = data.get("assessment")
        if assessment is not None:
            try:
                item["assessment"] = ChecklistAssessment(getattr(assessment, "value", assessment)).value
            except ValueError:
                raise ValidationError(f"Unknown checklist assessment '{assessment}'", field="checklist")
        if data.get("notes"):
            item["notes"] = str(data["notes"])
        normalized.append(item)
    return normalized


def checklist_summary(items: Optional[List[Dict[str, Any]]]) -> Optional[Dict[str, int]]:
    if items is None:
        return None
    return {
        "checked": sum(1 for i in items if i.get("checked")),
        "total": len(items),
        "attention": sum(1 for i in items if i.get("assessment") == ChecklistAssessment.attention.value),
        "critical": sum(1 for i in items if i.get("assessment") == ChecklistAssessment.critical.value),
    }


def _require_transition(rental: RentalRequest, action: str) -> RentalStatus:
    allowed, target = TRANSITIONS[action]
    if RentalStatus(rental.status) not in allowed:
        raise IllegalTransitionError(rental.status, action.replace("_", " "))
    return target


def _apply_transition(
    db: Session,
    rental: RentalRequest,
    action: str,
    actor_id: uuid.UUID,
    extra_changes: Optional[Dict[str, Any]] = None,
) -> None:
    target = _require_transition(rental, action)
    before = rental.status
    now = _now()
    # Status only moves if nobody else moved it since we read the row
    result = db.execute(
        update(RentalRequest)
        .where(RentalRequest.id == rental.id, RentalRequest.status == before)
        .values(status=target.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        current = db.query(RentalRequest.status).filter(RentalRequest.id == rental.id).scalar()
        logger.warning(
            "rental_transition_lost",
            rental_id=str(rental.id),
            action=action,
            expected_status=before,
            current_status=current,
        )
        raise IllegalTransitionError(current or before, action.replace("_", " "))
    rental.status = target.value
    rental.updated_at = now
    changes = {"status": {"before": before, "after": target.value}}
    if extra_changes:
        changes.update(extra_changes)
    create_audit_log(
        db,
        entity_type="rental",
        entity_id=rental.id,
        action=_AUDIT_ACTIONS[action],
        actor_id=actor_id,
        source="api",
        changes_json=changes,
        context={"rental_id": str(rental.id), "equipment_id": str(rental.equipment_id)},
    )
    logger.info(
        f"rental_{target.value}",
        rental_id=str(rental.id),
        equipment_id=str(rental.equipment_id),
        actor_id=str(actor_id),
        from_status=before,
    )


def create_rental_request(
    db: Session,
    *,
    equipment_id: uuid.UUID,
    renter_id: uuid.UUID,
    start_date: date,
    end_date: date,
    purpose: Optional[str] = None,
    destination: Optional[str] = None,
    notes: Optional[str] = None,
    today: Optional[date] = None,
) -> RentalRequest:
    equipment = get_equipment(db, equipment_id)
    if equipment.owner_id == renter_id:
        raise ForbiddenError("Owners cannot rent their own equipment", equipment_id=equipment_id)

    check_range(
        settings_from_equipment(equipment),
        start_date,
        end_date,
        bookings_for_equipment(db, equipment.id),
        today or today_local(),
    )

    days = total_days(start_date, end_date)
    price = quote(equipment.price_per_day, equipment.service_fee_percent, days)
    rental = RentalRequest(
        equipment_id=equipment.id,
        renter_id=renter_id,
        owner_id=equipment.owner_id,
        equipment_name=equipment.name,
        price_per_day=equipment.price_per_day,
        service_fee_percent=equipment.service_fee_percent,
        start_date=start_date,
        end_date=end_date,
        total_days=days,
        status=RentalStatus.requested.value,
        rental_fee=price.rental_fee,
        service_fee=price.service_fee,
        total_price=price.total,
        purpose=purpose,
        destination=destination,
        notes=notes,
    )
    db.add(rental)
    db.flush()
    create_audit_log(
        db,
        entity_type="rental",
        entity_id=rental.id,
        action="CREATE",
        actor_id=renter_id,
        source="api",
        changes_json={"status": {"before": None, "after": rental.status}},
        context={
            "rental_id": str(rental.id),
            "equipment_id": str(equipment.id),
            "start_date": start_date.isoformat(),
            "end_date": end_date.isoformat(),
            "total_price": str(price.total),
        },
    )
    db.commit()
    db.refresh(rental)
    logger.info(
        "rental_requested",
        rental_id=str(rental.id),
        equipment_id=str(equipment.id),
        actor_id=str(renter_id),
        total_days=days,
    )
    return rental


def approve(
    db: Session,
    rental_id: uuid.UUID,
    actor_id: uuid.UUID,
    notes: Optional[str] = None,
    today: Optional[date] = None,
) -> RentalRequest:
    """
    Approve a requested rental.

    The window is re-validated under the equipment guard: another rental may
    have been approved since this one was requested. A competing booking
    raises DateConflictError; any other availability change (a newly blocked
    date, a shrunk available range) raises AvailabilityError.
    """
    rental = get_rental(db, rental_id)
    ensure_owner(rental, actor_id, "approve this rental")
    _require_transition(rental, "approve")

    with equipment_guard(db, rental.equipment_id) as guard:
        # Status may have moved while we waited for the guard
        _require_transition(rental, "approve")
        availability = settings_from_equipment(guard.equipment)
        bookings = bookings_for_equipment(db, rental.equipment_id)
        conflict = find_conflicting_booking(
            availability, rental.start_date, rental.end_date, bookings, exclude_rental_id=rental.id
        )
        if conflict is not None:
            logger.warning(
                "approval_conflict",
                rental_id=str(rental.id),
                equipment_id=str(rental.equipment_id),
                conflicting_rental_id=str(conflict.rental_id),
            )
            raise DateConflictError(
                conflicting_rental_id=conflict.rental_id,
                conflicting_start=conflict.start_date,
                conflicting_end=conflict.end_date,
                rental_id=rental.id,
            )
        check_range(
            availability,
            rental.start_date,
            rental.end_date,
            bookings,
            today or today_local(),
            exclude_rental_id=rental.id,
            enforce_minimum=False,
        )
        guard.bump_version()

        rental.owner_notes = notes if notes is not None else rental.owner_notes
        rental.approved_at = _now()
        rental.approved_by = actor_id
        _apply_transition(
            db, rental, "approve", actor_id,
            {"owner_notes": {"before": None, "after": notes}} if notes else None,
        )
    return rental


def decline(db: Session, rental_id: uuid.UUID, actor_id: uuid.UUID) -> RentalRequest:
    """Owner rejects, or renter withdraws, a pending request. Frees nothing: it never held a slot."""
    rental = get_rental(db, rental_id)
    ensure_party(rental, actor_id)
    _require_transition(rental, "decline")
    rental.declined_at = _now()
    rental.declined_by = actor_id
    _apply_transition(db, rental, "decline", actor_id)
    db.commit()
    return rental


def begin_pickup(
    db: Session,
    rental_id: uuid.UUID,
    actor_id: uuid.UUID,
    checklist: Optional[Iterable[Any]] = None,
) -> RentalRequest:
    rental = get_rental(db, rental_id)
    ensure_party(rental, actor_id)
    _require_transition(rental, "begin_pickup")
    rental.pickup_checklist = normalize_checklist(checklist, DEFAULT_PICKUP_CHECKLIST)
    rental.picked_up_at = _now()
    rental.picked_up_by = actor_id
    _apply_transition(
        db, rental, "begin_pickup", actor_id,
        {"pickup_checklist": checklist_summary(rental.pickup_checklist)},
    )
    db.commit()
    return rental


def complete_return(
    db: Session,
    rental_id: uuid.UUID,
    actor_id: uuid.UUID,
    checklist: Optional[Iterable[Any]] = None,
    require_return_log: Optional[bool] = None,
) -> RentalRequest:
    """
    Close an active rental.

    Whether a return condition log must exist first is a deployment policy
    (REQUIRE_RETURN_LOG); callers can override it per call.
    """
    rental = get_rental(db, rental_id)
    ensure_party(rental, actor_id)
    _require_transition(rental, "complete_return")

    strict = settings.require_return_log if require_return_log is None else require_return_log
    if strict and not ConditionLogStore(db).has_type(rental.id, ConditionLogType.return_):
        raise ValidationError(
            "A return condition log must be submitted before completing the rental",
            field="return_condition_log",
        )

    rental.return_checklist = normalize_checklist(checklist, DEFAULT_RETURN_CHECKLIST)
    rental.returned_at = _now()
    rental.returned_by = actor_id
    _apply_transition(
        db, rental, "complete_return", actor_id,
        {"return_checklist": checklist_summary(rental.return_checklist)},
    )
    db.commit()
    return rental
