from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from settlement import models

logger = logging.getLogger("settlement.notifications")


def enqueue_notification(
    db: Session,
    *,
    kind: models.NotificationKind,
    payee_id: int,
    idempotency_key: str,
    payment_id: int | None = None,
    payload: dict[str, Any] | None = None,
) -> models.Notification:
    """Stage an outbox row; delivery (mailer) happens out of band.

    Callers guard the enqueue with the state transition that triggers it; the
    unique idempotency key only keeps a replayed enqueue from writing twice.
    """

    existing = (
        db.query(models.Notification)
        .filter(models.Notification.idempotency_key == idempotency_key)
        .first()
    )
    if existing is not None:
        return existing

    notification = models.Notification(
        kind=kind,
        payee_id=int(payee_id),
        payment_id=payment_id,
        idempotency_key=idempotency_key,
        payload=payload or {},
    )
    db.add(notification)
    db.flush()
    logger.info(
        "notification_enqueued",
        extra={"kind": kind.value, "payee_id": payee_id, "payment_id": payment_id},
    )
    return notification
