from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from sqlalchemy.orm import Session

from settlement import models
from settlement.models.domain import ObligationStatus, PaymentStatus


@dataclass(frozen=True)
class TransitionResult:
    updated: bool
    rowcount: int


def atomic_transition_obligations(
    *,
    db: Session,
    obligation_ids: Iterable[int],
    to_status: ObligationStatus,
    allowed_from: Iterable[ObligationStatus],
    updates: dict[str, Any] | None = None,
    extra_filters: Iterable[Any] = (),
) -> TransitionResult:
    """Apply an obligation status transition with an atomic DB guard.

    A single conditional UPDATE:

        UPDATE obligations
        SET status = :to_status, ...
        WHERE id IN (:ids) AND status IN (:allowed_from)

    keeps out-of-order or concurrent callers from persisting an invalid
    transition. Callers control commit/rollback. Rows already in ``to_status``
    are left alone unless ``to_status`` is part of ``allowed_from``.
    """

    ids = [int(i) for i in obligation_ids]
    if not ids:
        return TransitionResult(updated=False, rowcount=0)

    update_values: dict[str, Any] = {"status": to_status}
    if updates:
        update_values.update(updates)

    q = (
        db.query(models.Obligation)
        .filter(models.Obligation.id.in_(ids))
        .filter(models.Obligation.status.in_(set(allowed_from)))
    )
    for f in extra_filters:
        q = q.filter(f)
    rowcount = q.update(update_values, synchronize_session="fetch")

    return TransitionResult(updated=rowcount > 0, rowcount=int(rowcount or 0))


def atomic_transition_payment(
    *,
    db: Session,
    payment_id: int,
    to_status: PaymentStatus,
    allowed_from: Iterable[PaymentStatus],
    updates: dict[str, Any] | None = None,
) -> TransitionResult:
    """Same guard as obligations, for a single payment row.

    ``updated`` is the exactly-once signal for side effects tied to the
    transition (notifications, paid-at stamping).
    """

    update_values: dict[str, Any] = {"status": to_status}
    if updates:
        update_values.update(updates)

    rowcount = (
        db.query(models.Payment)
        .filter(models.Payment.id == int(payment_id))
        .filter(models.Payment.status.in_(set(allowed_from)))
        .update(update_values, synchronize_session="fetch")
    )

    return TransitionResult(updated=rowcount > 0, rowcount=int(rowcount or 0))
