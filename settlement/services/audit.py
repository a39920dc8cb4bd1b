import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from settlement import models

logger = logging.getLogger("settlement.audit")


def audit_event(
    action: str,
    payload: Dict[str, Any],
    *,
    db: Session,
    idempotency_key: str | None = None,
    request_id: str | None = None,
) -> Optional[int]:
    """
    Stage an audit row in the caller's transaction.

    The caller owns commit/rollback, so an aborted engine step leaves no audit
    trail for work that never happened. Rows sharing an idempotency key are
    written once.
    """
    if idempotency_key:
        existing = (
            db.query(models.AuditLog)
            .filter(models.AuditLog.idempotency_key == idempotency_key)
            .first()
        )
        if existing is not None:
            return existing.id

    log = models.AuditLog(
        action=action,
        payload_json=json.dumps(payload or {}, default=str, sort_keys=True),
        idempotency_key=idempotency_key,
        request_id=request_id,
    )
    db.add(log)
    db.flush()
    logger.info(action, extra={"audit_id": log.id, "request_id": request_id})
    return log.id
