from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from freight_escrow import models
from freight_escrow.api.deps import require_roles
from freight_escrow.core.security import Principal
from freight_escrow.database import get_db
from freight_escrow.schemas.loads import BidCreate, BidRead, LoadRead, LoadStatusUpdate
from freight_escrow.services import load_state
from freight_escrow.services.audit import audit_event

router = APIRouter(prefix="/loads", tags=["loads"])

_DB_DEP = Depends(get_db)
_CARRIER_DEP = Depends(require_roles(models.RoleName.carrier))
_SHIPPER_DEP = Depends(require_roles(models.RoleName.shipper))
_ANY_ROLE_DEP = Depends(
    require_roles(models.RoleName.shipper, models.RoleName.carrier, models.RoleName.admin)
)


@router.post("/{load_id}/status", response_model=LoadRead)
def transition_load(
    load_id: str,
    payload: LoadStatusUpdate,
    request: Request,
    db: Session = _DB_DEP,
    principal: Principal = _ANY_ROLE_DEP,
):
    load = load_state.get_load(db, load_id)
    from_status = load.status.value
    try:
        load = load_state.transition_load(
            db, load_id=load_id, to_status=payload.status, actor=principal
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(load)

    audit_event(
        "load.status_changed",
        principal.user_id,
        {"from_status": from_status, "to_status": load.status.value},
        db=db,
        load_id=load_id,
        request_id=getattr(request.state, "request_id", None),
    )
    return load


@router.post("/{load_id}/bids", response_model=BidRead, status_code=status.HTTP_201_CREATED)
def submit_bid(
    load_id: str,
    payload: BidCreate,
    request: Request,
    db: Session = _DB_DEP,
    principal: Principal = _CARRIER_DEP,
):
    try:
        bid = load_state.submit_bid(
            db,
            load_id=load_id,
            carrier_id=principal.user_id,
            bid_amount=payload.bid_amount,
            expires_at=payload.expires_at,
            notes=payload.notes,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(bid)

    audit_event(
        "bid.submitted",
        principal.user_id,
        {"bid_id": bid.id, "bid_amount": str(bid.bid_amount)},
        db=db,
        load_id=load_id,
        request_id=getattr(request.state, "request_id", None),
    )
    return bid


@router.post("/{load_id}/bids/{bid_id}/reject", response_model=BidRead)
def reject_bid(
    load_id: str,
    bid_id: str,
    request: Request,
    db: Session = _DB_DEP,
    principal: Principal = _SHIPPER_DEP,
):
    try:
        bid = load_state.reject_bid(db, load_id=load_id, bid_id=bid_id, actor=principal)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(bid)

    audit_event(
        "bid.rejected",
        principal.user_id,
        {"bid_id": bid.id},
        db=db,
        load_id=load_id,
        idempotency_key=f"bid_rejected:{bid.id}",
        request_id=getattr(request.state, "request_id", None),
    )
    return bid
