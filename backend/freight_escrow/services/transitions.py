from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping

from sqlalchemy import func
from sqlalchemy.orm import Session

from freight_escrow import models
from freight_escrow.models import BidStatus, LoadStatus, PaymentStatus
from freight_escrow.services.errors import InvalidTransition

LOAD_TRANSITIONS: Mapping[LoadStatus, frozenset[LoadStatus]] = {
    LoadStatus.draft: frozenset({LoadStatus.posted}),
    LoadStatus.posted: frozenset({LoadStatus.bidding, LoadStatus.cancelled}),
    LoadStatus.bidding: frozenset({LoadStatus.booked, LoadStatus.cancelled}),
    LoadStatus.booked: frozenset({LoadStatus.in_transit, LoadStatus.cancelled}),
    LoadStatus.in_transit: frozenset({LoadStatus.delivered}),
    LoadStatus.delivered: frozenset({LoadStatus.completed}),
    LoadStatus.completed: frozenset(),
    LoadStatus.cancelled: frozenset(),
}

BID_TRANSITIONS: Mapping[BidStatus, frozenset[BidStatus]] = {
    BidStatus.pending: frozenset({BidStatus.accepted, BidStatus.rejected, BidStatus.expired}),
    BidStatus.accepted: frozenset(),
    BidStatus.rejected: frozenset(),
    BidStatus.expired: frozenset(),
}

PAYMENT_TRANSITIONS: Mapping[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.pending: frozenset({PaymentStatus.held_in_escrow, PaymentStatus.failed}),
    PaymentStatus.held_in_escrow: frozenset(
        {PaymentStatus.released, PaymentStatus.disputed, PaymentStatus.failed}
    ),
    PaymentStatus.released: frozenset(
        {PaymentStatus.completed, PaymentStatus.disputed, PaymentStatus.failed}
    ),
    PaymentStatus.disputed: frozenset(
        {PaymentStatus.released, PaymentStatus.completed, PaymentStatus.failed}
    ),
    PaymentStatus.completed: frozenset(),
    PaymentStatus.failed: frozenset(),
}

_TABLES: dict[type, Mapping[Any, frozenset]] = {
    LoadStatus: LOAD_TRANSITIONS,
    BidStatus: BID_TRANSITIONS,
    PaymentStatus: PAYMENT_TRANSITIONS,
}


def _table_for(status: Enum) -> Mapping[Any, frozenset]:
    return _TABLES[type(status)]


def coerce_status(enum_cls: type[Enum], value: Any) -> Enum:
    """Parse a caller-supplied status into the closed enum, or reject it."""

    if isinstance(value, enum_cls):
        return value
    raw = str(value or "").split(".")[-1].strip().lower()
    try:
        return enum_cls(raw)
    except ValueError:
        raise InvalidTransition(f"unknown {enum_cls.__name__} {value!r}", status=value) from None


def is_allowed(from_status: Enum, to_status: Enum) -> bool:
    return to_status in _table_for(from_status).get(from_status, frozenset())


def allowed_sources(to_status: Enum) -> frozenset:
    """All statuses from which ``to_status`` is a listed transition."""

    table = _table_for(to_status)
    return frozenset(src for src, targets in table.items() if to_status in targets)


def assert_transition(from_status: Enum, to_status: Enum) -> None:
    if not is_allowed(from_status, to_status):
        raise InvalidTransition(
            f"{type(from_status).__name__} {from_status.value} -> {to_status.value} is not allowed",
            from_status=from_status.value,
            to_status=to_status.value,
        )


@dataclass(frozen=True)
class TransitionResult:
    updated: bool
    rowcount: int


def atomic_transition(
    *,
    db: Session,
    model: type,
    row_id: str,
    to_status: Enum,
    allowed_from: Iterable[Enum],
    updates: dict[str, Any] | None = None,
    extra_filters: Iterable[Any] = (),
) -> TransitionResult:
    """Apply a status transition with an atomic DB guard.

    Performs a single conditional UPDATE so that out-of-order or concurrent
    transitions cannot be persisted:

        UPDATE <table>
        SET status = :to_status, ...
        WHERE id = :row_id AND status IN (:allowed_from)

    Notes:
    - Callers control commit/rollback.
    - Include ``to_status`` in ``allowed_from`` to make a repeat a successful no-op.
    - Every source in ``allowed_from`` other than ``to_status`` itself must be a
      listed transition; the table is never bypassed.
    """

    sources = set(allowed_from)
    for src in sources:
        if src != to_status:
            assert_transition(src, to_status)

    update_values: dict[str, Any] = {"status": to_status}
    if updates:
        update_values.update(updates)

    query = db.query(model).filter(model.id == row_id).filter(model.status.in_(sources))
    for clause in extra_filters:
        query = query.filter(clause)
    rowcount = query.update(update_values, synchronize_session=False)

    return TransitionResult(updated=rowcount > 0, rowcount=int(rowcount or 0))


def coalesce_datetime(existing_column, value):
    """SQL-side coalesce so a timestamp is only ever set once."""

    return func.coalesce(existing_column, value)


def transition_payment(
    db: Session,
    payment_id: str,
    to_status: PaymentStatus,
    *,
    allowed_from: Iterable[PaymentStatus],
    updates: dict[str, Any] | None = None,
) -> TransitionResult:
    return atomic_transition(
        db=db,
        model=models.Payment,
        row_id=payment_id,
        to_status=to_status,
        allowed_from=allowed_from,
        updates=updates,
    )
