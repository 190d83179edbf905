import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from gearshift.errors import (
    AvailabilityError,
    AvailabilityReason,
    DateConflictError,
    ForbiddenError,
    IllegalTransitionError,
    ValidationError,
)
from gearshift.models.enums import RentalStatus
from gearshift.models.models import AuditLog
from gearshift.schemas.condition_logs import ConditionLogCreate, ConditionPhotoIn
from gearshift.services import rental_service
from gearshift.services.condition_logs import ConditionLogStore


def _return_log():
    return ConditionLogCreate(
        type="return",
        condition="good",
        photos=[ConditionPhotoIn(url="https://cdn.example.com/r1.jpg"), ConditionPhotoIn(url="https://cdn.example.com/r2.jpg")],
        acknowledged=True,
    )


def test_request_prices_the_window(make_equipment, make_rental):
    rental = make_rental(make_equipment(), 5, 7)
    assert rental.status == RentalStatus.requested.value
    assert rental.total_days == 3
    assert rental.rental_fee == Decimal("300.00")
    assert rental.service_fee == Decimal("30.00")
    assert rental.total_price == Decimal("330.00")


def test_request_rejects_unavailable_dates(make_equipment, make_rental, today):
    equipment = make_equipment(blocked_dates=[today + timedelta(days=6)])
    with pytest.raises(AvailabilityError) as exc:
        make_rental(equipment, 5, 7)
    assert exc.value.reason == AvailabilityReason.blocked_date


def test_owner_cannot_rent_own_equipment(make_equipment, make_rental, owner_id):
    with pytest.raises(ForbiddenError):
        make_rental(make_equipment(), 5, 7, renter=owner_id)


def test_full_lifecycle(db, make_equipment, make_rental, owner_id, renter_id, today):
    rental = make_rental(make_equipment(), 5, 7)

    rental_service.approve(db, rental.id, owner_id, notes="Pick up at the side gate", today=today)
    assert rental.status == RentalStatus.approved.value
    assert rental.owner_notes == "Pick up at the side gate"

    rental_service.begin_pickup(db, rental.id, renter_id)
    assert rental.status == RentalStatus.active.value
    assert [item["id"] for item in rental.pickup_checklist] == ["p1", "p2", "p3", "p4", "p5"]

    rental_service.complete_return(db, rental.id, renter_id)
    assert rental.status == RentalStatus.completed.value
    assert rental.returned_by == renter_id

    actions = [
        a.action for a in db.query(AuditLog)
        .filter(AuditLog.entity_id == rental.id)
        .order_by(AuditLog.timestamp_utc.asc())
        .all()
    ]
    assert actions == ["CREATE", "APPROVE", "PICKUP", "RETURN"]


def test_only_owner_can_approve(db, make_equipment, make_rental, renter_id, today):
    rental = make_rental(make_equipment(), 5, 7)
    with pytest.raises(ForbiddenError):
        rental_service.approve(db, rental.id, renter_id, today=today)
    assert rental_service.get_rental(db, rental.id).status == RentalStatus.requested.value


def test_illegal_transitions_leave_status_unchanged(db, make_equipment, make_rental, owner_id, renter_id, today):
    rental = make_rental(make_equipment(), 5, 7)

    with pytest.raises(IllegalTransitionError):
        rental_service.begin_pickup(db, rental.id, renter_id)
    with pytest.raises(IllegalTransitionError):
        rental_service.complete_return(db, rental.id, renter_id)
    assert rental_service.get_rental(db, rental.id).status == RentalStatus.requested.value

    rental_service.approve(db, rental.id, owner_id, today=today)
    with pytest.raises(IllegalTransitionError) as exc:
        rental_service.approve(db, rental.id, owner_id, today=today)
    assert exc.value.current == RentalStatus.approved.value
    with pytest.raises(IllegalTransitionError):
        rental_service.decline(db, rental.id, owner_id)


def test_decline_is_terminal(db, make_equipment, make_rental, owner_id, renter_id, today):
    rental = make_rental(make_equipment(), 5, 7)
    rental_service.decline(db, rental.id, renter_id)
    assert rental.status == RentalStatus.declined.value
    assert rental.declined_by == renter_id

    with pytest.raises(IllegalTransitionError):
        rental_service.approve(db, rental.id, owner_id, today=today)


def test_declined_request_never_held_the_dates(db, make_equipment, make_rental, owner_id, today):
    equipment = make_equipment()
    first = make_rental(equipment, 5, 7)
    second = make_rental(equipment, 5, 7, renter=uuid.uuid4())
    rental_service.decline(db, first.id, owner_id)
    rental_service.approve(db, second.id, owner_id, today=today)
    assert second.status == RentalStatus.approved.value


def test_approval_rejects_window_taken_after_request(db, make_equipment, make_rental, owner_id, today):
    equipment = make_equipment(buffer_days=1)
    first = make_rental(equipment, 5, 7)
    second = make_rental(equipment, 8, 9, renter=uuid.uuid4())

    rental_service.approve(db, first.id, owner_id, today=today)
    with pytest.raises(DateConflictError) as exc:
        rental_service.approve(db, second.id, owner_id, today=today)
    assert exc.value.conflicting_rental_id == first.id
    assert rental_service.get_rental(db, second.id).status == RentalStatus.requested.value


def test_pickup_accepts_assessed_checklist(db, make_equipment, make_rental, owner_id, renter_id, today):
    rental = make_rental(make_equipment(), 5, 7)
    rental_service.approve(db, rental.id, owner_id, today=today)
    checklist = [
        {"id": "p1", "label": "Equipment matches listing photos", "checked": True, "assessment": "pass"},
        {"id": "p2", "label": "All accessories present", "checked": False, "assessment": "attention", "notes": "Missing chuck key"},
    ]
    rental_service.begin_pickup(db, rental.id, renter_id, checklist=checklist)
    assert rental_service.checklist_summary(rental.pickup_checklist) == {
        "checked": 1,
        "total": 2,
        "attention": 1,
        "critical": 0,
    }


def test_return_log_required_when_policy_is_strict(db, active_rental, renter_id):
    with pytest.raises(ValidationError) as exc:
        rental_service.complete_return(db, active_rental.id, renter_id, require_return_log=True)
    assert exc.value.field == "return_condition_log"
    assert rental_service.get_rental(db, active_rental.id).status == RentalStatus.active.value

    ConditionLogStore(db).submit(active_rental.id, _return_log(), verified_by=renter_id)
    rental = rental_service.complete_return(db, active_rental.id, renter_id, require_return_log=True)
    assert rental.status == RentalStatus.completed.value


def test_return_without_log_allowed_by_default(db, active_rental, owner_id):
    rental = rental_service.complete_return(db, active_rental.id, owner_id)
    assert rental.status == RentalStatus.completed.value


def test_strangers_cannot_drive_transitions(db, active_rental):
    with pytest.raises(ForbiddenError):
        rental_service.complete_return(db, active_rental.id, uuid.uuid4())


def test_list_rentals_by_role(db, make_equipment, make_rental, owner_id, renter_id):
    rental = make_rental(make_equipment(), 5, 7)
    assert [r.id for r in rental_service.list_rentals_for_user(db, renter_id, "renter")] == [rental.id]
    assert rental_service.list_rentals_for_user(db, renter_id, "owner") == []
    assert [r.id for r in rental_service.list_rentals_for_user(db, owner_id)] == [rental.id]
