import uuid
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
from sqlalchemy.orm import Session

from ..auth.security import actor_from_token, get_current_actor
from ..db import get_db
from ..models.enums import ConditionLogType
from ..models.models import RentalRequest
from ..schemas.rentals import (
    ApproveRequest,
    ChecklistSubmit,
    ExtensionCreate,
    ExtensionDecision,
    ExtensionResponse,
    HistoryEntry,
    RentalCreate,
    RentalResponse,
    RentalRole,
    ReturnSubmit,
)
from ..services import extension_service, rental_service
from ..services.audit import get_audit_logs
from ..services.condition_logs import ConditionLogStore
from ..services.flags import FlagStore
from ..services.rental_hub import hub, notify


logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/rentals", tags=["rentals"])
ws_router = APIRouter(tags=["rentals"])


def serialize_rental(db: Session, rental: RentalRequest) -> Dict[str, Any]:
    logs = ConditionLogStore(db)
    flags = FlagStore(db).summary(rental.id)
    extension = extension_service.extension_of(rental)
    return {
        "id": rental.id,
        "equipment_id": rental.equipment_id,
        "equipment_name": rental.equipment_name,
        "renter_id": rental.renter_id,
        "owner_id": rental.owner_id,
        "start_date": rental.start_date,
        "end_date": rental.end_date,
        "total_days": rental.total_days,
        "status": rental_service.display_status(rental),
        "price_per_day": rental.price_per_day,
        "rental_fee": rental.rental_fee,
        "service_fee": rental.service_fee,
        "total_price": rental.total_price,
        "purpose": rental.purpose,
        "destination": rental.destination,
        "notes": rental.notes,
        "owner_notes": rental.owner_notes,
        "pickup_checklist": rental.pickup_checklist,
        "return_checklist": rental.return_checklist,
        "pickup_checklist_summary": rental_service.checklist_summary(rental.pickup_checklist),
        "return_checklist_summary": rental_service.checklist_summary(rental.return_checklist),
        "extension": ExtensionResponse.model_validate(extension) if extension else None,
        "has_pickup_log": logs.has_type(rental.id, ConditionLogType.pickup),
        "has_return_log": logs.has_type(rental.id, ConditionLogType.return_),
        "open_flag_count": flags["total"] - flags["by_status"]["resolved"],
        "has_critical_open_flag": flags["has_critical_open"],
        "created_at": rental.created_at,
        "approved_at": rental.approved_at,
        "declined_at": rental.declined_at,
        "picked_up_at": rental.picked_up_at,
        "returned_at": rental.returned_at,
    }


def _changed(db: Session, rental: RentalRequest, event: str) -> Dict[str, Any]:
    payload = serialize_rental(db, rental)
    notify(rental.id, event, payload)
    return payload


def _load_for_party(db: Session, rental_id: uuid.UUID, actor_id: uuid.UUID) -> RentalRequest:
    rental = rental_service.get_rental(db, rental_id)
    rental_service.ensure_party(rental, actor_id)
    return rental


@router.post("", response_model=RentalResponse, status_code=201)
def create_rental(
    body: RentalCreate,
    db: Session = Depends(get_db),
    actor_id: uuid.UUID = Depends(get_current_actor),
):
    rental = rental_service.create_rental_request(
        db,
        equipment_id=body.equipment_id,
        renter_id=actor_id,
        start_date=body.start_date,
        end_date=body.end_date,
        purpose=body.purpose,
        destination=body.destination,
        notes=body.notes,
    )
    return serialize_rental(db, rental)


@router.get("", response_model=List[RentalResponse])
def list_rentals(
    role: Optional[RentalRole] = Query(default=None),
    db: Session = Depends(get_db),
    actor_id: uuid.UUID = Depends(get_current_actor),
):
    rentals = rental_service.list_rentals_for_user(db, actor_id, role.value if role else None)
    return [serialize_rental(db, r) for r in rentals]


@router.get("/{rental_id}", response_model=RentalResponse)
def read_rental(
    rental_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor_id: uuid.UUID = Depends(get_current_actor),
):
    return serialize_rental(db, _load_for_party(db, rental_id, actor_id))


@router.post("/{rental_id}/approve", response_model=RentalResponse)
def approve_rental(
    rental_id: uuid.UUID,
    body: Optional[ApproveRequest] = None,
    db: Session = Depends(get_db),
    actor_id: uuid.UUID = Depends(get_current_actor),
):
    rental = rental_service.approve(db, rental_id, actor_id, notes=body.notes if body else None)
    return _changed(db, rental, "rental_approved")


@router.post("/{rental_id}/decline", response_model=RentalResponse)
def decline_rental(
    rental_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor_id: uuid.UUID = Depends(get_current_actor),
):
    rental = rental_service.decline(db, rental_id, actor_id)
    return _changed(db, rental, "rental_declined")


@router.post("/{rental_id}/pickup", response_model=RentalResponse)
def pickup_rental(
    rental_id: uuid.UUID,
    body: Optional[ChecklistSubmit] = None,
    db: Session = Depends(get_db),
    actor_id: uuid.UUID = Depends(get_current_actor),
):
    rental = rental_service.begin_pickup(db, rental_id, actor_id, checklist=body.checklist if body else None)
    return _changed(db, rental, "rental_active")


@router.post("/{rental_id}/return", response_model=RentalResponse)
def return_rental(
    rental_id: uuid.UUID,
    body: Optional[ReturnSubmit] = None,
    db: Session = Depends(get_db),
    actor_id: uuid.UUID = Depends(get_current_actor),
):
    rental = rental_service.complete_return(
        db,
        rental_id,
        actor_id,
        checklist=body.checklist if body else None,
        require_return_log=body.require_return_log if body else None,
    )
    return _changed(db, rental, "rental_completed")


@router.post("/{rental_id}/extension", response_model=ExtensionResponse, status_code=201)
def request_extension(
    rental_id: uuid.UUID,
    body: ExtensionCreate,
    db: Session = Depends(get_db),
    actor_id: uuid.UUID = Depends(get_current_actor),
):
    extension = extension_service.request_extension(db, rental_id, actor_id, body.new_end_date)
    _changed(db, rental_service.get_rental(db, rental_id), "extension_requested")
    return extension


@router.post("/{rental_id}/extension/resolve", response_model=RentalResponse)
def resolve_extension(
    rental_id: uuid.UUID,
    body: ExtensionDecision,
    db: Session = Depends(get_db),
    actor_id: uuid.UUID = Depends(get_current_actor),
):
    rental = extension_service.resolve_extension(db, rental_id, actor_id, body.decision)
    return _changed(db, rental, f"extension_{body.decision.value}")


@router.get("/{rental_id}/history", response_model=List[HistoryEntry])
def rental_history(
    rental_id: uuid.UUID,
    limit: int = Query(default=200, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    actor_id: uuid.UUID = Depends(get_current_actor),
):
    rental = _load_for_party(db, rental_id, actor_id)
    logs = get_audit_logs(db, rental_id=rental.id, limit=limit, offset=offset)
    return [
        {
            "id": log.id,
            "entity_type": log.entity_type,
            "entity_id": log.entity_id,
            "action": log.action,
            "actor_id": log.actor_id,
            "changes": log.changes_json,
            "context": log.context,
            "timestamp_utc": log.timestamp_utc,
        }
        for log in logs
    ]


@ws_router.websocket("/ws/rentals/{rental_id}")
async def ws_rental(websocket: WebSocket, rental_id: uuid.UUID, token: Optional[str] = None, db: Session = Depends(get_db)):
    if not token:
        await websocket.close(code=4401)
        return
    try:
        actor_id = actor_from_token(token)
    except HTTPException:
        await websocket.close(code=4401)
        return
    rental = db.query(RentalRequest).filter(RentalRequest.id == rental_id).first()
    if rental is None or not rental_service.is_party(rental, actor_id):
        await websocket.close(code=4403)
        return

    key = str(rental_id)
    await websocket.accept()
    await hub.subscribe(key, websocket)
    logger.info("rental_ws_connected", rental_id=key, actor_id=str(actor_id))
    try:
        while True:
            data = await websocket.receive_text()
            if data and data.strip().lower() in {"ping", "keepalive"}:
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        pass
    finally:
        await hub.unsubscribe(key, websocket)
