"""
Provider transfer-state events -> Payment and Obligation state.

Delivery is at-least-once and unordered. Every mutation below is a guarded
conditional UPDATE, so replays converge on the same final state and side
effects (notifications, paid stamps) fire only for the call whose UPDATE
actually moved the row. The raw provider status is always overwritten with the
latest event seen.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from settlement import models
from settlement.core.errors import MalformedEventError
from settlement.models.domain import (
    BatchStatus,
    NotificationKind,
    ObligationStatus,
    PaymentStatus,
    TransferBucket,
)
from settlement.services.audit import audit_event
from settlement.services.batch_aggregator import unlink_batch_members
from settlement.services.notifications import enqueue_notification
from settlement.services.obligation_state import KIND_SETTLEMENT
from settlement.services.transfer_provider import TransferProviderClient
from settlement.services.transitions import atomic_transition_payment

logger = logging.getLogger("settlement.reconciler")

REFUND_EVENT_TYPE = "transfers#refund"

SUCCESS_STATES = {"outgoing_payment_sent"}
FAILURE_STATES = {"cancelled", "funds_refunded", "charged_back"}
FUNDS_REFUNDED = "funds_refunded"

IN_FLIGHT_PAYMENT_STATES = {PaymentStatus.initialized, PaymentStatus.processing}


def classify(current_state: str) -> TransferBucket:
    state = (current_state or "").strip().lower()
    if state in SUCCESS_STATES:
        return TransferBucket.success
    if state in FAILURE_STATES:
        return TransferBucket.failure
    return TransferBucket.intermediate


def _to_naive_utc(value: Any) -> datetime:
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError as e:
            raise MalformedEventError(
                "occurredAt is not an ISO-8601 timestamp", context={"occurredAt": value}
            ) from e
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


@dataclass(frozen=True)
class TransferEvent:
    resource_id: str
    profile_id: str
    current_state: str
    occurred_at: datetime
    event_type: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TransferEvent":
        """Accept the flat event shape or the provider's nested webhook envelope."""

        if not isinstance(payload, dict):
            raise MalformedEventError("event payload must be an object")

        data = payload.get("data") if isinstance(payload.get("data"), dict) else None
        if data is not None:
            resource = data.get("resource") or {}
            raw = {
                "resourceId": resource.get("id"),
                "profileId": resource.get("profile_id"),
                "currentState": data.get("current_state"),
                "occurredAt": data.get("occurred_at"),
                "eventType": payload.get("event_type"),
            }
        else:
            raw = payload

        missing = [
            k
            for k in ("resourceId", "profileId", "currentState", "occurredAt")
            if raw.get(k) in (None, "")
        ]
        if missing:
            raise MalformedEventError(
                "transfer event is missing required fields", context={"missing": missing}
            )

        return cls(
            resource_id=str(raw["resourceId"]),
            profile_id=str(raw["profileId"]),
            current_state=str(raw["currentState"]),
            occurred_at=_to_naive_utc(raw["occurredAt"]),
            event_type=raw.get("eventType"),
        )


@dataclass(frozen=True)
class ReconcileResult:
    payment_id: int | None
    bucket: TransferBucket | None
    transitioned: bool
    ignored: bool = False


def _find_payment(db: Session, event: TransferEvent) -> models.Payment | None:
    return (
        db.query(models.Payment)
        .filter(models.Payment.transfer_id == event.resource_id)
        .filter(models.Payment.provider_profile_id == event.profile_id)
        .order_by(models.Payment.id.desc())
        .first()
    )


def _on_success(
    db: Session,
    payment: models.Payment,
    event: TransferEvent,
    provider: TransferProviderClient,
    request_id: str | None,
) -> bool:
    if payment.status not in IN_FLIGHT_PAYMENT_STATES:
        return False

    # The event carries no amounts; ask the provider for the settled values.
    transfer = provider.get_transfer(transfer_id=event.resource_id)
    estimate = provider.delivery_estimate(transfer_id=event.resource_id)
    estimated = estimate.estimated_delivery_date
    if estimated is not None:
        estimated = _to_naive_utc(estimated)

    result = atomic_transition_payment(
        db=db,
        payment_id=payment.id,
        to_status=PaymentStatus.succeeded,
        allowed_from=IN_FLIGHT_PAYMENT_STATES,
        updates={
            "transfer_bucket": TransferBucket.success,
            "transfer_amount": transfer.target_value if transfer else None,
            "transfer_estimate": estimated,
            "succeeded_at": event.occurred_at,
        },
    )
    if not result.updated:
        return False

    handler = KIND_SETTLEMENT[payment.kind]
    ids = [o.id for o in payment.obligations]
    paid = handler.mark_paid(db, ids, paid_at=event.occurred_at)
    enqueue_notification(
        db,
        kind=NotificationKind.payment_sent,
        payee_id=payment.payee_id,
        payment_id=payment.id,
        idempotency_key=f"payment:{payment.id}:sent",
        payload={
            "template": handler.sent_template,
            "amount": str(transfer.target_value) if transfer and transfer.target_value else None,
            "currency": payment.transfer_currency,
            "estimated_delivery": estimated.isoformat() if estimated else None,
        },
    )
    audit_event(
        "payment.succeeded",
        {
            "payment_id": payment.id,
            "obligation_ids": ids,
            "obligations_paid": paid.rowcount,
            "source_value": str(transfer.source_value) if transfer else None,
        },
        db=db,
        idempotency_key=f"payment:{payment.id}:succeeded",
        request_id=request_id,
    )
    return True


def _on_refund(
    db: Session, payment: models.Payment, event: TransferEvent, request_id: str | None
) -> bool:
    result = atomic_transition_payment(
        db=db,
        payment_id=payment.id,
        to_status=PaymentStatus.refunded,
        allowed_from={PaymentStatus.succeeded},
        updates={"transfer_bucket": TransferBucket.failure},
    )
    if not result.updated:
        return False

    if payment.batch_id is not None:
        (
            db.query(models.Batch)
            .filter(models.Batch.id == payment.batch_id)
            .filter(models.Batch.status != BatchStatus.refunded)
            .update({"status": BatchStatus.refunded}, synchronize_session="fetch")
        )
        unlink_batch_members(
            db,
            batch_id=payment.batch_id,
            to_failed_from={ObligationStatus.payment_pending, ObligationStatus.processing},
            keep_paid=True,
        )
    KIND_SETTLEMENT[payment.kind].mark_failed(db, [o.id for o in payment.obligations])
    audit_event(
        "payment.refunded",
        {"payment_id": payment.id, "batch_id": payment.batch_id},
        db=db,
        idempotency_key=f"payment:{payment.id}:refunded",
        request_id=request_id,
    )
    return True


def _on_failure(
    db: Session, payment: models.Payment, event: TransferEvent, request_id: str | None
) -> bool:
    is_refund = event.event_type == REFUND_EVENT_TYPE or (
        event.current_state == FUNDS_REFUNDED and payment.status == PaymentStatus.succeeded
    )
    if is_refund:
        return _on_refund(db, payment, event, request_id)

    result = atomic_transition_payment(
        db=db,
        payment_id=payment.id,
        to_status=PaymentStatus.failed,
        allowed_from=IN_FLIGHT_PAYMENT_STATES,
        updates={"transfer_bucket": TransferBucket.failure},
    )
    if not result.updated:
        return False

    handler = KIND_SETTLEMENT[payment.kind]
    ids = [o.id for o in payment.obligations]
    handler.mark_failed(db, ids)
    enqueue_notification(
        db,
        kind=NotificationKind.payment_failed,
        payee_id=payment.payee_id,
        payment_id=payment.id,
        idempotency_key=f"payment:{payment.id}:failed",
        payload={"template": handler.failed_template, "state": event.current_state},
    )
    audit_event(
        "payment.failed",
        {"payment_id": payment.id, "obligation_ids": ids, "state": event.current_state},
        db=db,
        idempotency_key=f"payment:{payment.id}:failed",
        request_id=request_id,
    )
    return True


def _on_intermediate(db: Session, payment: models.Payment) -> bool:
    result = atomic_transition_payment(
        db=db,
        payment_id=payment.id,
        to_status=PaymentStatus.processing,
        allowed_from=IN_FLIGHT_PAYMENT_STATES,
        updates={"transfer_bucket": TransferBucket.intermediate},
    )
    if not result.updated:
        return False
    KIND_SETTLEMENT[payment.kind].mark_processing(db, [o.id for o in payment.obligations])
    return True


def process_transfer_event(
    db: Session,
    event: TransferEvent,
    *,
    provider: TransferProviderClient,
    request_id: str | None = None,
) -> ReconcileResult:
    """Apply one provider event. Safe to call any number of times, in any order."""

    payment = _find_payment(db, event)
    if payment is None:
        logger.info(
            "transfer_event_ignored",
            extra={"transfer_id": event.resource_id, "profile_id": event.profile_id},
        )
        return ReconcileResult(payment_id=None, bucket=None, transitioned=False, ignored=True)

    bucket = classify(event.current_state)
    (
        db.query(models.Payment)
        .filter(models.Payment.id == payment.id)
        .update(
            {"transfer_status": event.current_state, "last_event_at": event.occurred_at},
            synchronize_session="fetch",
        )
    )

    try:
        if bucket == TransferBucket.success:
            transitioned = _on_success(db, payment, event, provider, request_id)
        elif bucket == TransferBucket.failure:
            transitioned = _on_failure(db, payment, event, request_id)
        else:
            transitioned = _on_intermediate(db, payment)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(payment)
    logger.info(
        "transfer_event_processed",
        extra={
            "payment_id": payment.id,
            "state": event.current_state,
            "bucket": bucket.value,
            "transitioned": transitioned,
            "payment_status": payment.status.value,
        },
    )
    return ReconcileResult(payment_id=payment.id, bucket=bucket, transitioned=transitioned)
