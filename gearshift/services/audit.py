"""
Audit logging service.
Append-only audit log with integrity hashing. Entries are added to the
caller's session so they commit (or roll back) together with the change
they describe.
"""
import hashlib
import json
import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from sqlalchemy.orm import Session

from ..models.models import AuditLog
from ..config import settings


def _integrity_hash(canonical_data: Dict[str, Any], secret: str) -> str:
    # Remove None values and sort keys for consistency
    canonical_data = {k: v for k, v in canonical_data.items() if v is not None}
    canonical_json = json.dumps(canonical_data, sort_keys=True, default=str)
    hash_input = f"{canonical_json}:{secret}"
    return hashlib.sha256(hash_input.encode()).hexdigest()


def create_audit_log(
    db: Session,
    entity_type: str,
    entity_id: uuid.UUID,
    action: str,
    actor_id: Optional[uuid.UUID] = None,
    source: Optional[str] = None,
    changes_json: Optional[Dict] = None,
    context: Optional[Dict] = None,
    integrity_secret: Optional[str] = None,
    rental_id: Optional[uuid.UUID] = None,
) -> AuditLog:
    """
    Create an append-only audit log entry.

    Args:
        db: Database session
        entity_type: Type of entity (rental|extension|flag|condition_log|equipment)
        entity_id: Entity ID
        action: Action performed (CREATE|APPROVE|DECLINE|PICKUP|RETURN|...)
        actor_id: User ID who performed the action
        source: Source of the action (api|system)
        changes_json: Before/after diff
        context: Additional context (rental_id, equipment_id, ...)
        integrity_secret: Secret for integrity hash (defaults to AUDIT_INTEGRITY_SECRET, then JWT_SECRET)
        rental_id: Rental the entry belongs to (defaults to context["rental_id"])

    Returns:
        Created AuditLog object (flushed, not committed)
    """
    timestamp_utc = datetime.now(timezone.utc)
    if rental_id is None and context and context.get("rental_id"):
        rental_id = uuid.UUID(str(context["rental_id"]))
    if integrity_secret is None:
        integrity_secret = settings.audit_integrity_secret or settings.jwt_secret

    integrity_hash = None
    if integrity_secret:
        integrity_hash = _integrity_hash(
            {
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": action,
                "actor_id": str(actor_id) if actor_id else None,
                "source": source,
                "timestamp_utc": timestamp_utc.isoformat(),
                "changes": changes_json,
                "context": context,
            },
            integrity_secret,
        )

    audit_log = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_id=actor_id,
        source=source or "system",
        changes_json=_jsonable(changes_json),
        timestamp_utc=timestamp_utc,
        rental_id=rental_id,
        context=_jsonable(context),
        integrity_hash=integrity_hash,
    )

    db.add(audit_log)
    db.flush()
    return audit_log


def get_audit_logs(
    db: Session,
    entity_type: Optional[str] = None,
    entity_id: Optional[uuid.UUID] = None,
    rental_id: Optional[uuid.UUID] = None,
    limit: int = 100,
    offset: int = 0
) -> list:
    """
    Get audit logs in chronological order with optional filtering.

    `rental_id` matches every entry that belongs to the rental: its own
    transitions plus its extension, flag and condition log entries.
    """
    query = db.query(AuditLog)

    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)

    if entity_id:
        query = query.filter(AuditLog.entity_id == entity_id)

    if rental_id:
        query = query.filter(AuditLog.rental_id == rental_id)

    query = query.order_by(AuditLog.timestamp_utc.asc())
    query = query.limit(limit).offset(offset)

    return query.all()


def compute_diff(before: Dict, after: Dict) -> Dict:
    """
    Compute a diff between two dictionaries.

    Returns:
        Dict with before/after values for changed fields
    """
    diff = {}
    all_keys = set(before.keys()) | set(after.keys())

    for key in all_keys:
        before_val = before.get(key)
        after_val = after.get(key)

        if before_val != after_val:
            diff[key] = {
                "before": before_val,
                "after": after_val,
            }

    return diff


def _jsonable(value: Optional[Dict]) -> Optional[Dict]:
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))
