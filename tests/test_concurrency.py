"""
Two owners' devices approving overlapping requests at the same moment: exactly
one approval may win. Uses a file-backed database so each thread gets its own
connection, as request handlers would.
"""
import threading
import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from gearshift.db import Base
from gearshift.errors import DateConflictError, IllegalTransitionError
from gearshift.models.enums import RentalStatus
from gearshift.models.models import Equipment
from gearshift.services import rental_service
from gearshift.services.equipment_lock import EquipmentGuard
from gearshift.services.equipment_service import register_equipment


@pytest.fixture
def file_sessions(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    engine.dispose()


def _seed(Session, owner_id, today, windows, buffer_days=0):
    db = Session()
    try:
        equipment = register_equipment(
            db,
            owner_id=owner_id,
            name="Mini excavator",
            price_per_day=Decimal("250"),
            buffer_days=buffer_days,
            available_ranges=[(today, today + timedelta(days=60))],
            today=today,
        )
        rental_ids = [
            rental_service.create_rental_request(
                db,
                equipment_id=equipment.id,
                renter_id=uuid.uuid4(),
                start_date=today + timedelta(days=start),
                end_date=today + timedelta(days=end),
                today=today,
            ).id
            for start, end in windows
        ]
        return equipment.id, rental_ids
    finally:
        db.close()


def _race(Session, owner_id, rental_ids, today):
    barrier = threading.Barrier(len(rental_ids))
    outcomes = {}

    def approve(rental_id):
        db = Session()
        try:
            barrier.wait()
            rental_service.approve(db, rental_id, owner_id, today=today)
            outcomes[rental_id] = "approved"
        except DateConflictError:
            outcomes[rental_id] = "conflict"
        finally:
            db.close()

    threads = [threading.Thread(target=approve, args=(rid,)) for rid in rental_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return outcomes


@pytest.mark.parametrize("attempt", range(5))
def test_overlapping_approvals_exactly_one_wins(file_sessions, today, attempt):
    owner_id = uuid.uuid4()
    equipment_id, rental_ids = _seed(file_sessions, owner_id, today, [(5, 8), (7, 10)])

    outcomes = _race(file_sessions, owner_id, rental_ids, today)

    assert sorted(outcomes.values()) == ["approved", "conflict"]
    db = file_sessions()
    try:
        statuses = sorted(rental_service.get_rental(db, rid).status for rid in rental_ids)
        assert statuses == [RentalStatus.approved.value, RentalStatus.requested.value]
        assert db.get(Equipment, equipment_id).booking_version == 1
    finally:
        db.close()


def test_buffer_overlap_counts_as_conflict_under_race(file_sessions, today):
    owner_id = uuid.uuid4()
    _, rental_ids = _seed(file_sessions, owner_id, today, [(5, 8), (10, 12)], buffer_days=2)

    outcomes = _race(file_sessions, owner_id, rental_ids, today)
    assert sorted(outcomes.values()) == ["approved", "conflict"]


def test_disjoint_windows_both_approve(file_sessions, today):
    owner_id = uuid.uuid4()
    equipment_id, rental_ids = _seed(file_sessions, owner_id, today, [(5, 6), (20, 21)])

    outcomes = _race(file_sessions, owner_id, rental_ids, today)
    assert sorted(outcomes.values()) == ["approved", "approved"]

    db = file_sessions()
    try:
        assert db.get(Equipment, equipment_id).booking_version == 2
    finally:
        db.close()


def _interleave_before_bump(monkeypatch, interloper):
    """Run `interloper` in its own session after the guard has read the equipment."""
    original = EquipmentGuard.bump_version

    def bump_after_interloper(self):
        interloper()
        return original(self)

    monkeypatch.setattr(EquipmentGuard, "bump_version", bump_after_interloper)


def test_version_moved_by_another_process_is_a_conflict(file_sessions, monkeypatch, today):
    owner_id = uuid.uuid4()
    equipment_id, (rental_id,) = _seed(file_sessions, owner_id, today, [(5, 8)])

    def other_writer():
        other = file_sessions()
        try:
            equipment = other.get(Equipment, equipment_id)
            equipment.booking_version += 1
            other.commit()
        finally:
            other.close()

    _interleave_before_bump(monkeypatch, other_writer)

    db = file_sessions()
    try:
        with pytest.raises(DateConflictError):
            rental_service.approve(db, rental_id, owner_id, today=today)
    finally:
        db.close()

    db = file_sessions()
    try:
        assert rental_service.get_rental(db, rental_id).status == RentalStatus.requested.value
        assert db.get(Equipment, equipment_id).booking_version == 1
    finally:
        db.close()


def test_withdrawal_during_approval_wins(file_sessions, monkeypatch, today):
    owner_id = uuid.uuid4()
    _, (rental_id,) = _seed(file_sessions, owner_id, today, [(5, 8)])
    db = file_sessions()
    renter_id = rental_service.get_rental(db, rental_id).renter_id
    db.close()

    def renter_withdraws():
        other = file_sessions()
        try:
            rental_service.decline(other, rental_id, renter_id)
        finally:
            other.close()

    _interleave_before_bump(monkeypatch, renter_withdraws)

    db = file_sessions()
    try:
        with pytest.raises(IllegalTransitionError) as exc:
            rental_service.approve(db, rental_id, owner_id, today=today)
        assert exc.value.current == RentalStatus.declined.value
    finally:
        db.close()

    db = file_sessions()
    try:
        assert rental_service.get_rental(db, rental_id).status == RentalStatus.declined.value
    finally:
        db.close()


def test_approval_landing_first_blocks_withdrawal(file_sessions, today):
    owner_id = uuid.uuid4()
    _, (rental_id,) = _seed(file_sessions, owner_id, today, [(5, 8)])

    stale = file_sessions()
    try:
        rental = rental_service.get_rental(stale, rental_id)
        renter_id = rental.renter_id

        db = file_sessions()
        try:
            rental_service.approve(db, rental_id, owner_id, today=today)
        finally:
            db.close()

        # `stale` still believes the rental is requested
        assert rental.status == RentalStatus.requested.value
        with pytest.raises(IllegalTransitionError):
            rental_service.decline(stale, rental_id, renter_id)
    finally:
        stale.close()

    db = file_sessions()
    try:
        assert rental_service.get_rental(db, rental_id).status == RentalStatus.approved.value
    finally:
        db.close()
