"""
Issue flag store.

Structured, categorized reports of problems during a rental. Flags never gate
rental transitions; they only need to be visible to both parties, with any
critical open flag surfaced in summaries.

Lifecycle is monotonic: open -> acknowledged -> resolved (acknowledged may be
skipped). Resolving twice is a no-op so two coordinators racing to close the
same flag both succeed.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple, Union

import structlog
from sqlalchemy.orm import Session

from ..errors import IllegalTransitionError, NotFoundError, ValidationError
from ..models.enums import FlagCategory, FlagSeverity, FlagStatus, RentalStatus
from ..models.models import RentalRequest, TaskFlag
from .audit import create_audit_log

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class FlagOption:
    label: str
    description: str
    default_severity: FlagSeverity
    quick_actions: Tuple[str, ...] = ()


FLAG_OPTIONS: Mapping[FlagCategory, FlagOption] = MappingProxyType({
    FlagCategory.equipment_issue: FlagOption(
        "Equipment Issue",
        "Problem with the equipment itself",
        FlagSeverity.medium,
        (
            "Equipment not starting",
            "Missing parts or accessories",
            "Damage found on arrival",
            "Performance issue",
            "Different from listing",
        ),
    ),
    FlagCategory.schedule_conflict: FlagOption(
        "Schedule Conflict",
        "Timing or availability issues",
        FlagSeverity.high,
        (
            "Cannot make pickup time",
            "Need to return early",
            "Need extension",
            "Owner unavailable",
            "Location closed",
        ),
    ),
    FlagCategory.access_problem: FlagOption(
        "Access Problem",
        "Cannot access equipment or location",
        FlagSeverity.high,
        (
            "Gate/door locked",
            "Wrong address provided",
            "No one available to meet",
            "Access code not working",
            "Parking not available",
        ),
    ),
    FlagCategory.documentation_needed: FlagOption(
        "Documentation Needed",
        "Missing paperwork or information",
        FlagSeverity.low,
        (
            "Need operating manual",
            "Insurance document missing",
            "Need receipt/invoice",
            "Condition report unclear",
            "Contact info needed",
        ),
    ),
    FlagCategory.safety_concern: FlagOption(
        "Safety Concern",
        "Safety-related issues requiring attention",
        FlagSeverity.critical,
        (
            "Equipment seems unsafe",
            "Missing safety features",
            "Unclear safety procedures",
            "Environmental hazard",
            "Injury risk identified",
        ),
    ),
    FlagCategory.payment_issue: FlagOption(
        "Payment Issue",
        "Billing or payment concerns",
        FlagSeverity.medium,
        (
            "Incorrect charge amount",
            "Deposit not processed",
            "Refund needed",
            "Payment declined",
            "Invoice discrepancy",
        ),
    ),
    FlagCategory.communication_needed: FlagOption(
        "Need to Contact",
        "Need to reach the other party",
        FlagSeverity.low,
        (
            "Confirm pickup details",
            "Ask a question",
            "Clarify instructions",
            "Report status update",
            "Request callback",
        ),
    ),
    FlagCategory.other: FlagOption(
        "Other",
        "Issue not listed above",
        FlagSeverity.low,
    ),
})

FLAGGABLE_STATUSES = frozenset({RentalStatus.approved.value, RentalStatus.active.value})


def _coerce(enum_cls, value, field: str):
    try:
        return enum_cls(getattr(value, "value", value))
    except ValueError:
        raise ValidationError(f"Invalid {field} '{value}'", field=field)


def _context(flag: TaskFlag) -> Dict[str, str]:
    return {"rental_id": str(flag.rental_id), "category": flag.category, "severity": flag.severity}


class FlagStore:
    def __init__(self, db: Session):
        self.db = db

    def raise_flag(
        self,
        rental_id: uuid.UUID,
        created_by: uuid.UUID,
        category: Union[FlagCategory, str],
        severity: Optional[Union[FlagSeverity, str]] = None,
        selected_issue: Optional[str] = None,
        additional_context: Optional[str] = None,
    ) -> uuid.UUID:
        category = _coerce(FlagCategory, category, "category")
        option = FLAG_OPTIONS[category]
        severity = option.default_severity if severity is None else _coerce(FlagSeverity, severity, "severity")

        rental = self.db.query(RentalRequest).filter(RentalRequest.id == rental_id).first()
        if not rental:
            raise NotFoundError("Rental not found", rental_id=rental_id)
        if rental.status not in FLAGGABLE_STATUSES:
            raise IllegalTransitionError(rental.status, "flag an issue on")

        issue = (selected_issue or "").strip() or option.label
        flag = TaskFlag(
            rental_id=rental.id,
            category=category.value,
            severity=severity.value,
            selected_issue=issue[:255],
            additional_context=(additional_context or "").strip() or None,
            status=FlagStatus.open.value,
            created_at=datetime.now(timezone.utc),
            created_by=created_by,
        )
        self.db.add(flag)
        self.db.flush()
        create_audit_log(
            self.db,
            entity_type="flag",
            entity_id=flag.id,
            action="RAISE",
            actor_id=created_by,
            source="api",
            context=_context(flag),
        )
        self.db.commit()
        logger.info(
            "flag_raised",
            flag_id=str(flag.id),
            rental_id=str(rental.id),
            category=flag.category,
            severity=flag.severity,
        )
        return flag.id

    def get(self, flag_id: uuid.UUID) -> TaskFlag:
        flag = self.db.query(TaskFlag).filter(TaskFlag.id == flag_id).first()
        if not flag:
            raise NotFoundError("Flag not found", flag_id=flag_id)
        return flag

    def acknowledge(self, flag_id: uuid.UUID, actor_id: Optional[uuid.UUID] = None) -> TaskFlag:
        flag = self.get(flag_id)
        if flag.status == FlagStatus.resolved.value:
            raise IllegalTransitionError(flag.status, "acknowledge", "Resolved flags cannot be reopened or acknowledged")
        if flag.status == FlagStatus.acknowledged.value:
            return flag

        flag.status = FlagStatus.acknowledged.value
        flag.acknowledged_at = datetime.now(timezone.utc)
        flag.acknowledged_by = actor_id
        create_audit_log(
            self.db,
            entity_type="flag",
            entity_id=flag.id,
            action="ACKNOWLEDGE",
            actor_id=actor_id,
            source="api",
            changes_json={"status": {"before": FlagStatus.open.value, "after": flag.status}},
            context=_context(flag),
        )
        self.db.commit()
        logger.info("flag_acknowledged", flag_id=str(flag.id), rental_id=str(flag.rental_id))
        return flag

    def resolve(self, flag_id: uuid.UUID, resolved_by: uuid.UUID, note: Optional[str] = None) -> TaskFlag:
        flag = self.get(flag_id)
        if flag.status == FlagStatus.resolved.value:
            logger.info("flag_already_resolved", flag_id=str(flag.id))
            return flag

        before = flag.status
        flag.status = FlagStatus.resolved.value
        flag.resolved_at = datetime.now(timezone.utc)
        flag.resolved_by = resolved_by
        flag.resolution_note = (note or "").strip() or None
        create_audit_log(
            self.db,
            entity_type="flag",
            entity_id=flag.id,
            action="RESOLVE",
            actor_id=resolved_by,
            source="api",
            changes_json={"status": {"before": before, "after": flag.status}},
            context=_context(flag),
        )
        self.db.commit()
        logger.info("flag_resolved", flag_id=str(flag.id), rental_id=str(flag.rental_id), from_status=before)
        return flag

    def list_all(self, rental_id: uuid.UUID) -> List[TaskFlag]:
        return (
            self.db.query(TaskFlag)
            .filter(TaskFlag.rental_id == rental_id)
            .order_by(TaskFlag.created_at.asc())
            .all()
        )

    def list_open(self, rental_id: uuid.UUID) -> List[TaskFlag]:
        """Flags still needing attention: open or acknowledged."""
        return (
            self.db.query(TaskFlag)
            .filter(TaskFlag.rental_id == rental_id, TaskFlag.status != FlagStatus.resolved.value)
            .order_by(TaskFlag.created_at.asc())
            .all()
        )

    def has_critical_open_flag(self, rental_id: uuid.UUID) -> bool:
        return (
            self.db.query(TaskFlag.id)
            .filter(
                TaskFlag.rental_id == rental_id,
                TaskFlag.status != FlagStatus.resolved.value,
                TaskFlag.severity == FlagSeverity.critical.value,
            )
            .first()
            is not None
        )

    def summary(self, rental_id: uuid.UUID) -> Dict[str, object]:
        flags = self.list_all(rental_id)
        by_status = {s.value: 0 for s in FlagStatus}
        open_by_severity = {s.value: 0 for s in FlagSeverity}
        for flag in flags:
            by_status[flag.status] += 1
            if flag.status != FlagStatus.resolved.value:
                open_by_severity[flag.severity] += 1
        return {
            "total": len(flags),
            "by_status": by_status,
            "open_by_severity": open_by_severity,
            "has_critical_open": open_by_severity[FlagSeverity.critical.value] > 0,
        }
