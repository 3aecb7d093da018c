"""Bid/Load state machine.

Every write here is a status-gated conditional UPDATE; callers own the
transaction (commit/rollback).
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import exists, or_
from sqlalchemy.orm import Session, aliased

from freight_escrow import models
from freight_escrow.config import settings
from freight_escrow.core.security import Principal
from freight_escrow.models import BidStatus, LoadStatus, RoleName
from freight_escrow.services.errors import (
    BidAcceptFailed,
    BidNotFound,
    InvalidState,
    InvalidTransition,
    LoadNotFound,
    LoadUpdateFailed,
    Unauthorized,
)
from freight_escrow.services.money import from_minor_units, to_minor_units
from freight_escrow.services.transitions import (
    assert_transition,
    atomic_transition,
    coerce_status,
)

logger = logging.getLogger("freight_escrow.load_state")

# These targets have dedicated workflows and are never set directly.
_WORKFLOW_ONLY_TARGETS = {
    LoadStatus.booked: "loads are booked by confirming a payment hold",
    LoadStatus.completed: "loads are completed by payment settlement",
}

_CARRIER_TARGETS = frozenset({LoadStatus.in_transit, LoadStatus.delivered})


def get_load(db: Session, load_id: str) -> models.Load:
    load = db.get(models.Load, load_id)
    if load is None:
        raise LoadNotFound(load_id=load_id)
    return load


def get_bid_for_load(db: Session, load_id: str, bid_id: str) -> models.Bid:
    bid = db.get(models.Bid, bid_id)
    if bid is None or bid.load_id != load_id:
        raise BidNotFound(load_id=load_id, bid_id=bid_id)
    return bid


def _authorize_transition(load: models.Load, actor: Principal, target: LoadStatus) -> None:
    if actor.is_admin:
        return
    if actor.role == RoleName.shipper and load.shipper_id == actor.user_id:
        return
    if (
        actor.role == RoleName.carrier
        and load.carrier_id == actor.user_id
        and target in _CARRIER_TARGETS
    ):
        return
    raise Unauthorized(
        "caller may not change this load status",
        load_id=load.id,
        user_id=actor.user_id,
        to_status=target.value,
    )


def transition_load(
    db: Session,
    *,
    load_id: str,
    to_status: Any,
    actor: Principal,
) -> models.Load:
    """Move a load along the transition table.

    Cancelling a booked load clears ``carrier_id``. Unlisted transitions raise
    ``InvalidTransition`` and write nothing.
    """

    target = coerce_status(LoadStatus, to_status)
    if target in _WORKFLOW_ONLY_TARGETS:
        raise InvalidTransition(_WORKFLOW_ONLY_TARGETS[target], load_id=load_id)

    load = get_load(db, load_id)
    _authorize_transition(load, actor, target)

    current = load.status
    assert_transition(current, target)

    updates: dict[str, Any] = {}
    if target not in models.CARRIER_ASSIGNED_STATUSES:
        updates["carrier_id"] = None

    result = atomic_transition(
        db=db,
        model=models.Load,
        row_id=load.id,
        to_status=target,
        allowed_from={current},
        updates=updates,
    )
    if not result.updated:
        raise InvalidTransition(
            "load status changed concurrently",
            load_id=load.id,
            from_status=current.value,
            to_status=target.value,
        )

    db.refresh(load)
    logger.info(
        "load_status_changed",
        extra={"load_id": load.id, "from_status": current.value, "to_status": target.value},
    )
    return load


def submit_bid(
    db: Session,
    *,
    load_id: str,
    carrier_id: str,
    bid_amount: Any,
    expires_at: Optional[datetime] = None,
    notes: Optional[str] = None,
) -> models.Bid:
    """Record a carrier's bid; the first bid on a posted load opens bidding."""

    load = get_load(db, load_id)
    if load.status not in {LoadStatus.posted, LoadStatus.bidding}:
        raise InvalidState(
            "load is not open for bids", load_id=load.id, status=load.status.value
        )

    cents = to_minor_units(bid_amount, max_amount=settings.max_payment_amount)

    duplicate = (
        db.query(models.Bid.id)
        .filter(models.Bid.load_id == load.id)
        .filter(models.Bid.carrier_id == carrier_id)
        .filter(models.Bid.status == BidStatus.pending)
        .first()
    )
    if duplicate is not None:
        raise InvalidState(
            "carrier already has a pending bid on this load",
            load_id=load.id,
            bid_id=duplicate[0],
        )

    if load.status == LoadStatus.posted:
        result = atomic_transition(
            db=db,
            model=models.Load,
            row_id=load.id,
            to_status=LoadStatus.bidding,
            allowed_from={LoadStatus.posted, LoadStatus.bidding},
        )
        if not result.updated:
            raise InvalidState("load is not open for bids", load_id=load.id)

    bid = models.Bid(
        load_id=load.id,
        carrier_id=carrier_id,
        bid_amount=from_minor_units(cents) or Decimal("0"),
        status=BidStatus.pending,
        expires_at=expires_at,
        notes=notes,
    )
    db.add(bid)
    db.flush()
    return bid


def reject_bid(db: Session, *, load_id: str, bid_id: str, actor: Principal) -> models.Bid:
    load = get_load(db, load_id)
    if not actor.is_admin and load.shipper_id != actor.user_id:
        raise Unauthorized("only the load's shipper may reject bids", load_id=load_id)

    bid = get_bid_for_load(db, load_id, bid_id)
    result = atomic_transition(
        db=db,
        model=models.Bid,
        row_id=bid.id,
        to_status=BidStatus.rejected,
        allowed_from={BidStatus.pending, BidStatus.rejected},
    )
    if not result.updated:
        raise InvalidTransition(
            "bid is no longer pending", bid_id=bid.id, status=bid.status.value
        )
    db.refresh(bid)
    return bid


def accept_bid(db: Session, *, load_id: str, bid_id: str, carrier_id: str) -> None:
    """pending -> accepted, unless another bid on the load is already accepted.

    Re-accepting the same bid is a no-op so confirmation retries converge.
    """

    other = aliased(models.Bid)
    another_accepted = exists().where(
        other.load_id == load_id,
        other.status == BidStatus.accepted,
        other.id != bid_id,
    )
    result = atomic_transition(
        db=db,
        model=models.Bid,
        row_id=bid_id,
        to_status=BidStatus.accepted,
        allowed_from={BidStatus.pending, BidStatus.accepted},
        extra_filters=(
            models.Bid.load_id == load_id,
            models.Bid.carrier_id == carrier_id,
            ~another_accepted,
        ),
    )
    if not result.updated:
        raise BidAcceptFailed(load_id=load_id, bid_id=bid_id)


def reject_other_pending_bids(db: Session, *, load_id: str, accepted_bid_id: str) -> int:
    assert_transition(BidStatus.pending, BidStatus.rejected)
    return (
        db.query(models.Bid)
        .filter(models.Bid.load_id == load_id)
        .filter(models.Bid.id != accepted_bid_id)
        .filter(models.Bid.status == BidStatus.pending)
        .update({"status": BidStatus.rejected}, synchronize_session=False)
    )


def book_load(db: Session, *, load_id: str, carrier_id: str) -> None:
    """bidding -> booked with the carrier assigned.

    A load already booked to the same carrier counts as success.
    """

    result = atomic_transition(
        db=db,
        model=models.Load,
        row_id=load_id,
        to_status=LoadStatus.booked,
        allowed_from={LoadStatus.bidding, LoadStatus.booked},
        updates={"carrier_id": carrier_id},
        extra_filters=(
            or_(
                models.Load.status == LoadStatus.bidding,
                models.Load.carrier_id == carrier_id,
            ),
        ),
    )
    if not result.updated:
        raise LoadUpdateFailed(load_id=load_id, carrier_id=carrier_id)


def complete_load(db: Session, load_id: str) -> bool:
    """delivered -> completed; an already completed load is left as is."""

    result = atomic_transition(
        db=db,
        model=models.Load,
        row_id=load_id,
        to_status=LoadStatus.completed,
        allowed_from={LoadStatus.delivered, LoadStatus.completed},
    )
    return result.updated


def expire_stale_bids(db: Session, *, now: datetime) -> int:
    """Move pending bids whose ``expires_at`` has passed to expired.

    Gated on ``pending`` so a booking that committed first keeps its accepted
    or rejected bids, and a second run finds nothing to do.
    """

    assert_transition(BidStatus.pending, BidStatus.expired)
    return (
        db.query(models.Bid)
        .filter(models.Bid.status == BidStatus.pending)
        .filter(models.Bid.expires_at.is_not(None))
        .filter(models.Bid.expires_at < now)
        .update({"status": BidStatus.expired}, synchronize_session=False)
    )
