"""Scheduled batch jobs shared by the HTTP trigger and the CLI."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from freight_escrow.services import load_state
from freight_escrow.services.errors import PartialFailure
from freight_escrow.services.payment_gateway import PaymentGateway
from freight_escrow.services.settlement import AutoReleaseResult, auto_release_sweep

logger = logging.getLogger("freight_escrow.sweeps")


@dataclass(frozen=True)
class ExpireBidsResult:
    expired: int


def run_expire_bids(db: Session, *, now: Optional[datetime] = None) -> ExpireBidsResult:
    now = now or datetime.utcnow()
    expired = load_state.expire_stale_bids(db, now=now)
    db.commit()
    logger.info("bids_expired", extra={"expired": expired})
    return ExpireBidsResult(expired=int(expired or 0))


def run_auto_release(
    db: Session,
    gateway: PaymentGateway,
    *,
    now: Optional[datetime] = None,
    limit: Optional[int] = None,
) -> AutoReleaseResult:
    return auto_release_sweep(db, gateway, now=now, limit=limit)


def raise_for_partial_failure(result: AutoReleaseResult) -> None:
    if result.partial_failure:
        raise PartialFailure(
            released=result.released,
            failed=result.failed,
            failures=result.failures,
        )
