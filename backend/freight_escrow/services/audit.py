import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

logger = logging.getLogger("freight_escrow.audit")


def audit_event(
    action: str,
    user_id: Optional[str],
    payload: Dict[str, Any],
    *,
    db: Session | None = None,
    load_id: str | None = None,
    idempotency_key: str | None = None,
    request_id: str | None = None,
) -> Optional[int]:
    """
    Persist audit event to database; if DB write fails, fallback to the log.

    Returns the created audit log id when available. Commits ``db``, so call it
    only after the audited change has been committed.
    """
    event = {
        "action": action,
        "user_id": user_id,
        "load_id": load_id,
        "payload": payload,
        "timestamp": datetime.utcnow().isoformat(),
    }

    created_session = False
    session: Session | None = db
    try:
        from freight_escrow import models

        if session is None:
            from freight_escrow.database import SessionLocal

            session = SessionLocal()
            created_session = True

        if idempotency_key:
            existing = (
                session.query(models.AuditLog)
                .filter(models.AuditLog.idempotency_key == idempotency_key)
                .first()
            )
            if existing is not None:
                return existing.id

        log = models.AuditLog(
            action=action,
            user_id=user_id,
            load_id=load_id,
            payload_json=json.dumps(payload or {}, default=str),
            idempotency_key=idempotency_key,
            request_id=request_id,
        )
        session.add(log)
        session.commit()
        session.refresh(log)
        return log.id
    except SQLAlchemyError:
        if session is not None:
            session.rollback()
        logger.warning("audit_write_failed", extra={"audit_event": event})
        return None
    finally:
        if created_session and session is not None:
            session.close()
