from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Iterable

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from settlement import models
from settlement.core.errors import CompanyInactiveError, InvariantViolation, NotFoundError
from settlement.models.domain import PAID_OR_PAYING_STATES, BatchStatus, ObligationStatus
from settlement.services.audit import audit_event
from settlement.services.lock_manager import LockManager, batch_lock_key
from settlement.services.obligation_state import CHARGEABLE_STATES, mark_chargeable

logger = logging.getLogger("settlement.batches")

# Trusted companies may have payees paid once the batch is sent.
CHARGED_BATCH_STATES = {BatchStatus.sent, BatchStatus.paid}


def eligible_obligations_query(db: Session, *, company_id: int):
    """Invoices that belong on the company's next batch.

    Fully approved (or failed) invoices never charged, plus the edge case of
    invoices already paid or mid payment without ever being charged.
    """

    o = models.Obligation
    return (
        db.query(o)
        .filter(o.company_id == int(company_id))
        .filter(o.kind == models.ObligationKind.invoice)
        .filter(o.batch_id.is_(None))
        .filter(
            or_(
                and_(
                    o.status.in_(CHARGEABLE_STATES),
                    o.approval_count >= o.required_approvals,
                ),
                o.status.in_(PAID_OR_PAYING_STATES),
            )
        )
        .order_by(o.obligation_date.asc(), o.id.asc())
    )


def _build_batch(
    db: Session,
    *,
    company_id: int,
    obligation_ids: list[int] | None,
    invoice_date: date | None,
    request_id: str | None,
) -> models.Batch | None:
    company = db.get(models.Company, int(company_id))
    if company is None:
        raise NotFoundError("Company not found", context={"company_id": company_id})
    if not company.active:
        raise CompanyInactiveError(company.id)

    q = eligible_obligations_query(db, company_id=company.id)
    if obligation_ids is not None:
        q = q.filter(models.Obligation.id.in_([int(i) for i in obligation_ids]))
    candidates = q.all()

    if not candidates:
        logger.info("batch_nothing_to_do", extra={"company_id": company.id})
        return None

    principal = sum(int(o.cash_amount_cents) for o in candidates)
    fee = sum(int(o.fee_cents or 0) for o in candidates)
    dates = [o.obligation_date for o in candidates]

    batch = models.Batch(
        company_id=company.id,
        invoice_date=invoice_date or datetime.utcnow().date(),
        period_start=min(dates),
        period_end=max(dates),
        principal_cents=principal,
        fee_cents=fee,
        total_cents=principal + fee,
        status=BatchStatus.sent,
    )
    db.add(batch)
    db.flush()

    batch.obligations = list(candidates)
    db.flush()

    ids = [o.id for o in candidates]
    linked = mark_chargeable(db, ids, batch_id=batch.id)
    if linked != len(ids):
        raise InvariantViolation(
            "Obligation changed while being aggregated",
            context={"batch_id": batch.id, "expected": len(ids), "linked": linked},
        )

    member_cash = sum(int(o.cash_amount_cents) for o in batch.obligations)
    if member_cash != batch.principal_cents or batch.total_cents != principal + fee:
        raise InvariantViolation(
            "Batch totals do not reconcile to members",
            context={"batch_id": batch.id, "principal_cents": principal, "member_cash": member_cash},
        )

    audit_event(
        "batch.created",
        {
            "batch_id": batch.id,
            "company_id": company.id,
            "obligation_ids": ids,
            "principal_cents": principal,
            "fee_cents": fee,
        },
        db=db,
        idempotency_key=f"batch:{batch.external_id}:created",
        request_id=request_id,
    )
    return batch


def aggregate_company_batch(
    db: Session,
    *,
    company_id: int,
    lock_manager: LockManager,
    obligation_ids: Iterable[int] | None = None,
    invoice_date: date | None = None,
    request_id: str | None = None,
) -> models.Batch | None:
    """Create the company's next batch under the per-company lock.

    Returns ``None`` when there is nothing to aggregate. Batch creation and
    every obligation link commit together or not at all.
    """

    ids = [int(i) for i in obligation_ids] if obligation_ids is not None else None

    def _run() -> models.Batch | None:
        try:
            batch = _build_batch(
                db,
                company_id=company_id,
                obligation_ids=ids,
                invoice_date=invoice_date,
                request_id=request_id,
            )
            if batch is None:
                db.rollback()
                return None
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(batch)
        return batch

    batch = lock_manager.with_lock(batch_lock_key(company_id), _run)
    if batch is not None:
        logger.info(
            "batch_created",
            extra={
                "batch_id": batch.id,
                "company_id": batch.company_id,
                "obligations": len(batch.obligations),
                "total_cents": batch.total_cents,
            },
        )
    return batch


def mark_batch_paid(
    db: Session,
    batch: models.Batch,
    *,
    paid_at: datetime | None = None,
    request_id: str | None = None,
) -> models.Batch:
    """Record that the company charge settled. Repeat calls are no-ops."""

    rowcount = (
        db.query(models.Batch)
        .filter(models.Batch.id == batch.id)
        .filter(models.Batch.status == BatchStatus.sent)
        .update(
            {"status": BatchStatus.paid, "paid_at": paid_at or datetime.utcnow()},
            synchronize_session="fetch",
        )
    )
    if rowcount:
        audit_event("batch.paid", {"batch_id": batch.id}, db=db, request_id=request_id)
        db.commit()
        logger.info("batch_paid", extra={"batch_id": batch.id})
    else:
        db.rollback()
    db.refresh(batch)
    return batch


def mark_batch_failed(
    db: Session,
    batch: models.Batch,
    *,
    request_id: str | None = None,
) -> models.Batch:
    """Record that the company charge failed.

    Members waiting on the charge go back to ``failed``; every member is
    unlinked so the next aggregation charges it again.
    """

    rowcount = (
        db.query(models.Batch)
        .filter(models.Batch.id == batch.id)
        .filter(models.Batch.status == BatchStatus.sent)
        .update({"status": BatchStatus.failed}, synchronize_session="fetch")
    )
    if not rowcount:
        db.rollback()
        db.refresh(batch)
        return batch

    unlink_batch_members(
        db,
        batch_id=batch.id,
        to_failed_from={ObligationStatus.payment_pending},
        keep_paid=False,
    )
    audit_event("batch.failed", {"batch_id": batch.id}, db=db, request_id=request_id)
    db.commit()
    db.refresh(batch)
    logger.warning("batch_failed", extra={"batch_id": batch.id})
    return batch


def unlink_batch_members(
    db: Session,
    *,
    batch_id: int,
    to_failed_from: set[ObligationStatus],
    keep_paid: bool,
) -> None:
    """Drop live batch links; membership history stays in batch_obligations.

    Unlinked paid or mid-payment members are picked up again by the next
    aggregation as never-charged obligations.
    """

    o = models.Obligation
    (
        db.query(o)
        .filter(o.batch_id == int(batch_id))
        .filter(o.status.in_(to_failed_from))
        .update({"status": ObligationStatus.failed}, synchronize_session="fetch")
    )
    q = db.query(o).filter(o.batch_id == int(batch_id))
    if keep_paid:
        q = q.filter(o.status != ObligationStatus.paid)
    q.update({"batch_id": None}, synchronize_session="fetch")


def batch_is_charged(batch: models.Batch | None, *, trusted: bool) -> bool:
    if batch is None:
        return False
    if trusted:
        return batch.status in CHARGED_BATCH_STATES
    return batch.status == BatchStatus.paid
