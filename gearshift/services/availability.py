"""
Availability calculator.

Pure functions over an equipment's availability settings and its existing
bookings. Only the two snapshot builders at the bottom
(`settings_from_equipment`, `bookings_for_equipment`) read from the database;
every check takes the snapshots as arguments, so the same input always
produces the same answer.

A booking occupies its own window plus `buffer_days` after its end (the
maintenance window). A candidate window [s, e] conflicts with a booking
[bs, be] when s <= be + buffer and bs <= e + buffer, i.e. the buffer applies
after both the existing booking and the candidate.
"""
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import FrozenSet, Iterable, List, Optional, Sequence, Tuple
import uuid

from sqlalchemy.orm import Session

from ..errors import AvailabilityError, AvailabilityReason
from ..models.enums import BOOKED_STATUSES
from ..models.models import Equipment, RentalRequest


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


@dataclass(frozen=True)
class AvailabilitySettings:
    blocked_dates: FrozenSet[date] = field(default_factory=frozenset)
    min_rental_days: int = 1
    buffer_days: int = 0
    available_ranges: Tuple[DateRange, ...] = ()


@dataclass(frozen=True)
class Booking:
    start_date: date
    end_date: date
    status: str
    rental_id: Optional[uuid.UUID] = None

    @property
    def occupies_calendar(self) -> bool:
        return self.status in BOOKED_STATUSES


def total_days(start: date, end: date) -> int:
    """Inclusive day count: a rental from day 5 to day 7 is 3 days."""
    return (end - start).days + 1


def ranges_conflict(start: date, end: date, booking: Booking, buffer_days: int) -> bool:
    buffer = timedelta(days=buffer_days)
    return start <= booking.end_date + buffer and booking.start_date <= end + buffer


def _active_bookings(bookings: Iterable[Booking], exclude_rental_id=None) -> List[Booking]:
    return [
        b for b in bookings
        if b.occupies_calendar and (exclude_rental_id is None or b.rental_id != exclude_rental_id)
    ]


def check_date(
    availability: AvailabilitySettings,
    candidate_date: date,
    existing_bookings: Sequence[Booking],
    now: date,
    exclude_rental_id=None,
) -> Optional[AvailabilityReason]:
    """Return why `candidate_date` cannot be booked, or None when it can."""
    if candidate_date < now:
        return AvailabilityReason.past_date
    if candidate_date in availability.blocked_dates:
        return AvailabilityReason.blocked_date
    if not any(r.contains(candidate_date) for r in availability.available_ranges):
        return AvailabilityReason.out_of_range
    buffer = timedelta(days=availability.buffer_days)
    for booking in _active_bookings(existing_bookings, exclude_rental_id):
        if booking.start_date <= candidate_date <= booking.end_date:
            return AvailabilityReason.already_booked
        if booking.end_date < candidate_date <= booking.end_date + buffer:
            return AvailabilityReason.buffer_conflict
    return None


def is_bookable(
    availability: AvailabilitySettings,
    candidate_date: date,
    existing_bookings: Sequence[Booking],
    now: date,
) -> bool:
    return check_date(availability, candidate_date, existing_bookings, now) is None


def validate_duration(availability: AvailabilitySettings, start: date, end: date) -> None:
    days = total_days(start, end)
    if days < availability.min_rental_days:
        raise AvailabilityError(
            AvailabilityReason.below_minimum_duration,
            f"Minimum rental is {availability.min_rental_days} days, requested {days}",
            min_rental_days=availability.min_rental_days,
            requested_days=days,
        )


def find_conflicting_booking(
    availability: AvailabilitySettings,
    start: date,
    end: date,
    existing_bookings: Sequence[Booking],
    exclude_rental_id=None,
) -> Optional[Booking]:
    for booking in _active_bookings(existing_bookings, exclude_rental_id):
        if ranges_conflict(start, end, booking, availability.buffer_days):
            return booking
    return None


def check_range(
    availability: AvailabilitySettings,
    start: date,
    end: date,
    existing_bookings: Sequence[Booking],
    now: date,
    *,
    exclude_rental_id=None,
    enforce_minimum: bool = True,
) -> None:
    """
    Validate a whole window, raising AvailabilityError with the first failure.

    Duration is checked before dates so a short request is always reported as
    below_minimum_duration. The trailing buffer of the candidate itself is
    checked last, against bookings that start after it.
    """
    if end < start:
        raise AvailabilityError(AvailabilityReason.invalid_range, start_date=start, end_date=end)
    if enforce_minimum:
        validate_duration(availability, start, end)

    day = start
    while day <= end:
        reason = check_date(availability, day, existing_bookings, now, exclude_rental_id)
        if reason is not None:
            conflicting = None
            if reason in (AvailabilityReason.already_booked, AvailabilityReason.buffer_conflict):
                booking = find_conflicting_booking(availability, day, day, existing_bookings, exclude_rental_id)
                conflicting = booking.rental_id if booking else None
            raise AvailabilityError(reason, date=day, conflicting_rental_id=conflicting)
        day += timedelta(days=1)

    booking = find_conflicting_booking(availability, start, end, existing_bookings, exclude_rental_id)
    if booking is not None:
        raise AvailabilityError(
            AvailabilityReason.buffer_conflict,
            "Rental would end inside the maintenance buffer before another booking",
            date=booking.start_date,
            conflicting_rental_id=booking.rental_id,
        )


def compute_next_available(
    availability: AvailabilitySettings,
    existing_bookings: Sequence[Booking],
    now: date,
) -> Optional[date]:
    """
    First date a new rental may start, if a booking currently holds the equipment.

    Only approved/active bookings whose window contains `now` are considered;
    returns None when the equipment is not held today.
    """
    free_dates = [
        b.end_date + timedelta(days=availability.buffer_days + 1)
        for b in _active_bookings(existing_bookings)
        if b.start_date <= now <= b.end_date
    ]
    if not free_dates:
        return None
    return max(free_dates)


def unavailable_dates_between(
    availability: AvailabilitySettings,
    start: date,
    end: date,
    existing_bookings: Sequence[Booking],
    now: date,
) -> List[Tuple[date, AvailabilityReason]]:
    """Every unbookable date in [start, end] with its reason, for calendar rendering."""
    result = []
    day = start
    while day <= end:
        reason = check_date(availability, day, existing_bookings, now)
        if reason is not None:
            result.append((day, reason))
        day += timedelta(days=1)
    return result


def settings_from_equipment(equipment: Equipment) -> AvailabilitySettings:
    return AvailabilitySettings(
        blocked_dates=frozenset(b.blocked_date for b in equipment.blocked_dates),
        min_rental_days=equipment.min_rental_days or 1,
        buffer_days=equipment.buffer_days or 0,
        available_ranges=tuple(DateRange(r.start_date, r.end_date) for r in equipment.available_ranges),
    )


def bookings_for_equipment(db: Session, equipment_id: uuid.UUID) -> List[Booking]:
    rows = (
        db.query(RentalRequest)
        .filter(
            RentalRequest.equipment_id == equipment_id,
            RentalRequest.status.in_(list(BOOKED_STATUSES)),
        )
        .order_by(RentalRequest.start_date)
        .all()
    )
    return [Booking(r.start_date, r.end_date, r.status, r.id) for r in rows]
