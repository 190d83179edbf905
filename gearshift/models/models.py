import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Date,
    Boolean,
    ForeignKey,
    Integer,
    Numeric,
    JSON,
    UniqueConstraint,
    Text,
    Index,
    Uuid,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Equipment(Base):
    """Rentable item listed by an owner, with its availability rules"""
    __tablename__ = "equipment"

    id: Mapped[uuid.UUID] = uuid_pk()
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    category: Mapped[Optional[str]] = mapped_column(String(50))
    price_per_day: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    service_fee_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("10"))
    security_deposit: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))

    min_rental_days: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    buffer_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Bumped on every approval touching this equipment; compare-and-swap guard for concurrent approvals
    booking_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    blocked_dates = relationship(
        "EquipmentBlockedDate",
        back_populates="equipment",
        cascade="all, delete-orphan",
        order_by="EquipmentBlockedDate.blocked_date",
    )
    available_ranges = relationship(
        "EquipmentAvailableRange",
        back_populates="equipment",
        cascade="all, delete-orphan",
        order_by="EquipmentAvailableRange.start_date",
    )
    rentals = relationship("RentalRequest", back_populates="equipment")


class EquipmentBlockedDate(Base):
    __tablename__ = "equipment_blocked_dates"

    id: Mapped[uuid.UUID] = uuid_pk()
    equipment_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("equipment.id", ondelete="CASCADE"), nullable=False, index=True)
    blocked_date: Mapped[date] = mapped_column(Date, nullable=False)

    equipment = relationship("Equipment", back_populates="blocked_dates")

    __table_args__ = (
        UniqueConstraint("equipment_id", "blocked_date", name="uq_equipment_blocked_date"),
    )


class EquipmentAvailableRange(Base):
    __tablename__ = "equipment_available_ranges"

    id: Mapped[uuid.UUID] = uuid_pk()
    equipment_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("equipment.id", ondelete="CASCADE"), nullable=False, index=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)  # inclusive

    equipment = relationship("Equipment", back_populates="available_ranges")


class RentalRequest(Base):
    __tablename__ = "rental_requests"

    id: Mapped[uuid.UUID] = uuid_pk()
    equipment_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("equipment.id", ondelete="RESTRICT"), nullable=False, index=True)
    renter_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)

    # Equipment snapshot taken at request time
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    equipment_name: Mapped[str] = mapped_column(String(255), nullable=False)
    price_per_day: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    service_fee_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)

    start_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    end_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    total_days: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[str] = mapped_column(String(30), default="requested", nullable=False, index=True)  # requested|approved|active|completed|declined

    rental_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    service_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    purpose: Mapped[Optional[str]] = mapped_column(Text)
    destination: Mapped[Optional[str]] = mapped_column(String(255))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    owner_notes: Mapped[Optional[str]] = mapped_column(Text)
    pickup_checklist: Mapped[Optional[list]] = mapped_column(JSON)  # [{id, label, checked, assessment, notes}]
    return_checklist: Mapped[Optional[list]] = mapped_column(JSON)

    # Single extension slot; a new request supersedes the previous one
    extension_new_end_date: Mapped[Optional[date]] = mapped_column(Date)
    extension_additional_days: Mapped[Optional[int]] = mapped_column(Integer)
    extension_additional_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    extension_status: Mapped[Optional[str]] = mapped_column(String(20))  # pending|approved|declined
    extension_requested_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    extension_requested_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True))
    extension_resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    extension_resolved_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    approved_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True))
    declined_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    declined_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True))
    picked_up_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    picked_up_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True))
    returned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    returned_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True))

    equipment = relationship("Equipment", back_populates="rentals")
    condition_logs = relationship(
        "ConditionLog",
        back_populates="rental",
        order_by="ConditionLog.created_at",
    )
    flags = relationship(
        "TaskFlag",
        back_populates="rental",
        order_by="TaskFlag.created_at",
    )

    __table_args__ = (
        Index("idx_rental_equipment_status", "equipment_id", "status"),
        Index("idx_rental_equipment_window", "equipment_id", "start_date", "end_date"),
    )


class ConditionLog(Base):
    """Append-only condition evidence captured at pickup or return"""
    __tablename__ = "condition_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    rental_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("rental_requests.id", ondelete="CASCADE"), nullable=False, index=True)
    equipment_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("equipment.id", ondelete="CASCADE"), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False)  # pickup|return
    condition: Mapped[str] = mapped_column(String(20), nullable=False)  # excellent|good|fair|damaged
    notes: Mapped[str] = mapped_column(Text, default="")
    verified_by: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    acknowledged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    damage_reported: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    damage_description: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)

    rental = relationship("RentalRequest", back_populates="condition_logs")
    photos = relationship(
        "ConditionPhoto",
        back_populates="log",
        cascade="all, delete-orphan",
        order_by="ConditionPhoto.position",
    )

    __table_args__ = (
        Index("idx_condition_log_rental_type", "rental_id", "type"),
    )


class ConditionPhoto(Base):
    __tablename__ = "condition_photos"

    id: Mapped[uuid.UUID] = uuid_pk()
    log_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("condition_logs.id", ondelete="CASCADE"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    caption: Mapped[str] = mapped_column(String(500), default="")
    type: Mapped[str] = mapped_column(String(20), nullable=False)  # pickup|return|damage
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    log = relationship("ConditionLog", back_populates="photos")


class TaskFlag(Base):
    """Categorized in-rental issue report"""
    __tablename__ = "task_flags"

    id: Mapped[uuid.UUID] = uuid_pk()
    rental_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("rental_requests.id", ondelete="CASCADE"), nullable=False, index=True)
    category: Mapped[str] = mapped_column(String(40), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)  # low|medium|high|critical
    selected_issue: Mapped[str] = mapped_column(String(255), nullable=False)
    additional_context: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open", index=True)  # open|acknowledged|resolved
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    created_by: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    acknowledged_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True))
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    resolved_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True))
    resolution_note: Mapped[Optional[str]] = mapped_column(Text)

    rental = relationship("RentalRequest", back_populates="flags")

    __table_args__ = (
        Index("idx_flag_rental_status", "rental_id", "status"),
    )


class AuditLog(Base):
    """Append-only audit log for rental lifecycle actions"""
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # rental|extension|flag|condition_log|equipment
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # CREATE|APPROVE|DECLINE|PICKUP|RETURN|...
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), index=True)
    source: Mapped[Optional[str]] = mapped_column(String(50))  # api|system
    changes_json: Mapped[Optional[dict]] = mapped_column(JSON)  # Before/after diff
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    rental_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True))  # set for anything that belongs to a rental
    context: Mapped[Optional[dict]] = mapped_column(JSON)  # {rental_id, equipment_id, ...}
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))

    __table_args__ = (
        Index('idx_audit_entity', 'entity_type', 'entity_id'),
        Index('idx_audit_actor', 'actor_id', 'timestamp_utc'),
        Index('idx_audit_rental', 'rental_id', 'timestamp_utc'),
    )
