from __future__ import annotations

import argparse
import json
import logging
from typing import Any

from freight_escrow.database import SessionLocal
from freight_escrow.services.audit import audit_event
from freight_escrow.services.errors import PartialFailure
from freight_escrow.services.payment_gateway import PaymentGateway
from freight_escrow.services.sweeps import (
    raise_for_partial_failure,
    run_auto_release,
    run_expire_bids,
)

SWEEPS = ("auto-release", "expire-bids")


def _positive_int(value: str) -> int:
    try:
        n = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("expected an integer") from exc
    if n <= 0:
        raise argparse.ArgumentTypeError("expected a positive integer")
    return n


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Scheduled escrow sweeps: auto-release old escrow holds, expire stale bids."
    )
    parser.add_argument(
        "--sweep",
        dest="sweeps",
        action="append",
        choices=SWEEPS,
        help="Sweep to run; repeatable (default: all)",
    )
    parser.add_argument("--limit", type=_positive_int, default=None)
    args = parser.parse_args()
    selected = set(args.sweeps or SWEEPS)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    summary: dict[str, Any] = {}
    exit_code = 0

    db = SessionLocal()
    try:
        if "expire-bids" in selected:
            expired = run_expire_bids(db)
            summary["expire_bids"] = {"expired": expired.expired}
            if expired.expired:
                audit_event("sweep.expire_bids", "scheduler", summary["expire_bids"], db=db)

        if "auto-release" in selected:
            released = run_auto_release(db, PaymentGateway(), limit=args.limit)
            summary["auto_release"] = {
                "eligible": released.eligible,
                "released": released.released,
                "skipped": released.skipped,
                "failed": released.failed,
                "failures": released.failures,
            }
            audit_event("sweep.auto_release", "scheduler", summary["auto_release"], db=db)
            try:
                raise_for_partial_failure(released)
            except PartialFailure:
                exit_code = 2

        print(json.dumps(summary, ensure_ascii=False, indent=2, default=str))
        return exit_code
    finally:
        db.close()


if __name__ == "__main__":
    raise SystemExit(main())
