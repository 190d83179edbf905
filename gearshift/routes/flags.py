import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import get_current_actor
from ..db import get_db
from ..schemas.flags import FlagCategoryResponse, FlagCreate, FlagResolve, FlagResponse
from ..services import rental_service
from ..services.flags import FLAG_OPTIONS, FlagStore
from ..services.rental_hub import notify


router = APIRouter(tags=["flags"])


def _party_flag(db: Session, flag_id: uuid.UUID, actor_id: uuid.UUID):
    store = FlagStore(db)
    flag = store.get(flag_id)
    rental_service.ensure_party(rental_service.get_rental(db, flag.rental_id), actor_id)
    return store, flag


@router.get("/flags/categories", response_model=List[FlagCategoryResponse])
def list_flag_categories():
    return [
        {
            "category": category,
            "label": option.label,
            "description": option.description,
            "default_severity": option.default_severity,
            "quick_actions": list(option.quick_actions),
        }
        for category, option in FLAG_OPTIONS.items()
    ]


@router.post("/rentals/{rental_id}/flags", response_model=FlagResponse, status_code=201)
def raise_flag(
    rental_id: uuid.UUID,
    body: FlagCreate,
    db: Session = Depends(get_db),
    actor_id: uuid.UUID = Depends(get_current_actor),
):
    rental = rental_service.get_rental(db, rental_id)
    rental_service.ensure_party(rental, actor_id)
    store = FlagStore(db)
    flag = store.get(
        store.raise_flag(
            rental.id,
            actor_id,
            body.category,
            severity=body.severity,
            selected_issue=body.selected_issue,
            additional_context=body.additional_context,
        )
    )
    result = FlagResponse.model_validate(flag)
    notify(rental.id, "flag_raised", result.model_dump())
    return result


@router.get("/rentals/{rental_id}/flags", response_model=List[FlagResponse])
def list_flags(
    rental_id: uuid.UUID,
    open_only: bool = Query(default=False),
    db: Session = Depends(get_db),
    actor_id: uuid.UUID = Depends(get_current_actor),
):
    rental = rental_service.get_rental(db, rental_id)
    rental_service.ensure_party(rental, actor_id)
    store = FlagStore(db)
    return store.list_open(rental.id) if open_only else store.list_all(rental.id)


@router.post("/flags/{flag_id}/acknowledge", response_model=FlagResponse)
def acknowledge_flag(
    flag_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor_id: uuid.UUID = Depends(get_current_actor),
):
    store, flag = _party_flag(db, flag_id, actor_id)
    result = FlagResponse.model_validate(store.acknowledge(flag.id, actor_id))
    notify(flag.rental_id, "flag_acknowledged", result.model_dump())
    return result


@router.post("/flags/{flag_id}/resolve", response_model=FlagResponse)
def resolve_flag(
    flag_id: uuid.UUID,
    body: Optional[FlagResolve] = None,
    db: Session = Depends(get_db),
    actor_id: uuid.UUID = Depends(get_current_actor),
):
    store, flag = _party_flag(db, flag_id, actor_id)
    result = FlagResponse.model_validate(store.resolve(flag.id, actor_id, note=body.note if body else None))
    notify(flag.rental_id, "flag_resolved", result.model_dump())
    return result
