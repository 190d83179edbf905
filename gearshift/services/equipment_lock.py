"""
Per-equipment serialization for booking decisions.

Approving a rental (or an extension) is a check-then-write against the
equipment's approved/active bookings. Three layers keep two overlapping
approvals from both succeeding:

1. a process-local lock per equipment id, so threads in one worker queue up;
2. SELECT ... FOR UPDATE on the equipment row, which makes other database
   sessions wait on PostgreSQL (SQLite ignores it);
3. a compare-and-swap on Equipment.booking_version at write time, which
   catches writers in other processes that slipped past both.

Locks are scoped to one equipment; approvals for different equipment never
wait on each other.
"""
import threading
import uuid
from contextlib import contextmanager
from typing import Dict

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..errors import DateConflictError, NotFoundError
from ..models.models import Equipment


_registry_lock = threading.Lock()
_equipment_locks: Dict[uuid.UUID, threading.Lock] = {}


def _lock_for(equipment_id: uuid.UUID) -> threading.Lock:
    with _registry_lock:
        lock = _equipment_locks.get(equipment_id)
        if lock is None:
            lock = threading.Lock()
            _equipment_locks[equipment_id] = lock
        return lock


class EquipmentGuard:
    def __init__(self, db: Session, equipment: Equipment):
        self.db = db
        self.equipment = equipment
        self.version = equipment.booking_version or 0

    def bump_version(self) -> None:
        """Claim the next booking version; fails if another writer got there first."""
        result = self.db.execute(
            update(Equipment)
            .where(Equipment.id == self.equipment.id, Equipment.booking_version == self.version)
            .values(booking_version=self.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise DateConflictError(
                "Equipment bookings changed while this decision was being made",
                equipment_id=self.equipment.id,
            )
        self.version += 1


@contextmanager
def equipment_guard(db: Session, equipment_id: uuid.UUID):
    lock = _lock_for(equipment_id)
    with lock:
        # Drop cached state so reads inside the guard see other sessions' commits
        db.expire_all()
        equipment = (
            db.query(Equipment)
            .filter(Equipment.id == equipment_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if equipment is None:
            raise NotFoundError("Equipment not found", equipment_id=equipment_id)
        try:
            yield EquipmentGuard(db, equipment)
            db.commit()
        except Exception:
            db.rollback()
            raise
