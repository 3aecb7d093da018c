from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from freight_escrow.api.deps import require_sweep_auth
from freight_escrow.database import get_db
from freight_escrow.schemas.sweeps import AutoReleaseResponse, ExpireBidsResponse
from freight_escrow.services import sweeps
from freight_escrow.services.audit import audit_event
from freight_escrow.services.payment_gateway import PaymentGateway, get_payment_gateway

router = APIRouter(prefix="/sweeps", tags=["sweeps"])


@router.post("/auto-release", response_model=AutoReleaseResponse)
def auto_release(
    request: Request,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    actor: str = Depends(require_sweep_auth),
):
    """Capture escrowed payments past the auto-release window.

    Always answers 200 with counts; ``partial_failure`` flags failed items.
    """
    result = sweeps.run_auto_release(db, gateway)
    audit_event(
        "sweep.auto_release",
        actor,
        {
            "eligible": result.eligible,
            "released": result.released,
            "skipped": result.skipped,
            "failed": result.failed,
            "failures": result.failures,
        },
        db=db,
        request_id=getattr(request.state, "request_id", None),
    )
    return AutoReleaseResponse(
        eligible=result.eligible,
        released=result.released,
        skipped=result.skipped,
        failed=result.failed,
        partial_failure=result.partial_failure,
    )


@router.post("/expire-bids", response_model=ExpireBidsResponse)
def expire_bids(
    request: Request,
    db: Session = Depends(get_db),
    actor: str = Depends(require_sweep_auth),
):
    result = sweeps.run_expire_bids(db)
    if result.expired:
        audit_event(
            "sweep.expire_bids",
            actor,
            {"expired": result.expired},
            db=db,
            request_id=getattr(request.state, "request_id", None),
        )
    return ExpireBidsResponse(expired=result.expired)
