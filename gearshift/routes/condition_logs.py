import uuid
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import get_current_actor
from ..db import get_db
from ..models.enums import ConditionLogType
from ..schemas.condition_logs import ConditionLogCreate, ConditionLogResponse, ConditionLogSubmitted
from ..services import rental_service
from ..services.condition_logs import ConditionLogStore
from ..services.rental_hub import notify


router = APIRouter(prefix="/rentals", tags=["condition-logs"])


@router.post("/{rental_id}/condition-logs", response_model=ConditionLogSubmitted, status_code=201)
def submit_condition_log(
    rental_id: uuid.UUID,
    body: ConditionLogCreate,
    db: Session = Depends(get_db),
    actor_id: uuid.UUID = Depends(get_current_actor),
):
    rental = rental_service.get_rental(db, rental_id)
    rental_service.ensure_party(rental, actor_id)
    store = ConditionLogStore(db)
    log_id = store.submit(rental.id, body, verified_by=actor_id)
    payload = {
        "id": log_id,
        "rental_id": rental.id,
        "has_pickup_log": store.has_type(rental.id, ConditionLogType.pickup),
        "has_return_log": store.has_type(rental.id, ConditionLogType.return_),
    }
    notify(rental.id, "condition_log_submitted", {**payload, "type": body.type.value})
    return payload


@router.get("/{rental_id}/condition-logs", response_model=List[ConditionLogResponse])
def list_condition_logs(
    rental_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor_id: uuid.UUID = Depends(get_current_actor),
):
    rental = rental_service.get_rental(db, rental_id)
    rental_service.ensure_party(rental, actor_id)
    return ConditionLogStore(db).list_for_rental(rental.id)
