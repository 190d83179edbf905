from enum import Enum


class RentalStatus(str, Enum):
    requested = "requested"
    approved = "approved"
    active = "active"
    completed = "completed"
    declined = "declined"
    # Display-only marker; persisted status stays "active" while an extension is pending
    extension_requested = "extension_requested"


class ExtensionStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    declined = "declined"


class ConditionLogType(str, Enum):
    pickup = "pickup"
    return_ = "return"


class EquipmentCondition(str, Enum):
    excellent = "excellent"
    good = "good"
    fair = "fair"
    damaged = "damaged"


class PhotoType(str, Enum):
    pickup = "pickup"
    return_ = "return"
    damage = "damage"


class ChecklistAssessment(str, Enum):
    pass_ = "pass"
    attention = "attention"
    critical = "critical"


class FlagCategory(str, Enum):
    equipment_issue = "equipment_issue"
    schedule_conflict = "schedule_conflict"
    access_problem = "access_problem"
    documentation_needed = "documentation_needed"
    safety_concern = "safety_concern"
    payment_issue = "payment_issue"
    communication_needed = "communication_needed"
    other = "other"


class FlagSeverity(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


class FlagStatus(str, Enum):
    open = "open"
    acknowledged = "acknowledged"
    resolved = "resolved"


# Statuses whose window occupies the equipment calendar
BOOKED_STATUSES = frozenset({RentalStatus.approved.value, RentalStatus.active.value})
TERMINAL_STATUSES = frozenset({RentalStatus.completed.value, RentalStatus.declined.value})
