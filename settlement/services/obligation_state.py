"""Obligation approval state machine and settlement transitions.

Approvers call :func:`approve` / :func:`reject`. Aggregation calls
:func:`mark_chargeable`. Payment execution and reconciliation call the
``mark_*`` helpers, usually through :data:`KIND_SETTLEMENT` so that the same
code path serves invoices, dividends and equity buybacks.

The ``mark_*`` helpers only stage changes; the caller owns the transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement import models
from settlement.core.errors import InvalidTransitionError
from settlement.models.domain import (
    PAID_OR_PAYING_STATES,
    ObligationKind,
    ObligationStatus,
    RetainedReason,
)
from settlement.services.audit import audit_event
from settlement.services.transitions import TransitionResult, atomic_transition_obligations

logger = logging.getLogger("settlement.obligations")

APPROVABLE_STATES = {ObligationStatus.received, ObligationStatus.approved}
REJECTABLE_STATES = {
    ObligationStatus.received,
    ObligationStatus.approved,
    ObligationStatus.failed,
    ObligationStatus.retained,
}
PAYABLE_STATES = {
    ObligationStatus.approved,
    ObligationStatus.failed,
    ObligationStatus.payment_pending,
    ObligationStatus.retained,
}
CHARGEABLE_STATES = {ObligationStatus.approved, ObligationStatus.failed}


class PayabilityReason:
    COMPANY_INACTIVE = "company_inactive"
    NOT_APPROVED = "not_approved"
    INSUFFICIENT_APPROVALS = "insufficient_approvals"
    TAX_INFORMATION_MISSING = "tax_information_missing"
    EQUITY_ELECTION_NOT_LOCKED = "equity_election_not_locked"


@dataclass(frozen=True)
class ApprovalResult:
    changed: bool
    approval_count: int
    payable: bool


@dataclass(frozen=True)
class PayabilityResult:
    payable: bool
    reason_code: str | None = None


def _approval_result(obligation: models.Obligation, *, changed: bool) -> ApprovalResult:
    return ApprovalResult(
        changed=changed,
        approval_count=int(obligation.approval_count or 0),
        payable=obligation.status == ObligationStatus.approved and obligation.fully_approved,
    )


def approve(
    db: Session,
    obligation: models.Obligation,
    *,
    approver_id: int,
    request_id: str | None = None,
) -> ApprovalResult:
    """Count one approval per distinct approver.

    Approving a rejected, paid or already in-flight obligation is a no-op.
    Reaching ``required_approvals`` makes the obligation payable but moves no
    money.
    """

    if obligation.status not in APPROVABLE_STATES:
        logger.info(
            "obligation_approve_noop",
            extra={"obligation_id": obligation.id, "status": obligation.status.value},
        )
        return _approval_result(obligation, changed=False)

    already = (
        db.query(models.ObligationApproval)
        .filter(models.ObligationApproval.obligation_id == obligation.id)
        .filter(models.ObligationApproval.approver_id == int(approver_id))
        .first()
    )
    if already is not None:
        return _approval_result(obligation, changed=False)

    db.add(models.ObligationApproval(obligation_id=obligation.id, approver_id=int(approver_id)))
    try:
        db.flush()
    except IntegrityError:
        # Concurrent approval by the same approver won the unique key.
        db.rollback()
        db.refresh(obligation)
        return _approval_result(obligation, changed=False)

    result = atomic_transition_obligations(
        db=db,
        obligation_ids=[obligation.id],
        to_status=ObligationStatus.approved,
        allowed_from=APPROVABLE_STATES,
        updates={"approval_count": models.Obligation.approval_count + 1},
    )
    if not result.updated:
        # Rejected between the status check and the update.
        db.rollback()
        db.refresh(obligation)
        return _approval_result(obligation, changed=False)

    audit_event(
        "obligation.approved",
        {"obligation_id": obligation.id, "approver_id": int(approver_id)},
        db=db,
        idempotency_key=f"obligation:{obligation.id}:approved_by:{int(approver_id)}",
        request_id=request_id,
    )
    db.commit()
    db.refresh(obligation)

    logger.info(
        "obligation_approved",
        extra={
            "obligation_id": obligation.id,
            "approval_count": obligation.approval_count,
            "required_approvals": obligation.required_approvals,
        },
    )
    return _approval_result(obligation, changed=True)


def reject(
    db: Session,
    obligation: models.Obligation,
    *,
    reason: str | None = None,
    request_id: str | None = None,
) -> models.Obligation:
    """Move an obligation to ``rejected`` and drop every approval.

    Obligations with money in flight (``payment_pending``/``processing``) or
    already terminal cannot be rejected.
    """

    now = datetime.utcnow()
    result = atomic_transition_obligations(
        db=db,
        obligation_ids=[obligation.id],
        to_status=ObligationStatus.rejected,
        allowed_from=REJECTABLE_STATES,
        updates={"approval_count": 0, "rejection_reason": reason, "rejected_at": now},
    )
    if not result.updated:
        db.rollback()
        db.refresh(obligation)
        raise InvalidTransitionError(
            f"Cannot reject obligation in status {obligation.status.value}",
            context={"obligation_id": obligation.id, "status": obligation.status.value},
        )

    (
        db.query(models.ObligationApproval)
        .filter(models.ObligationApproval.obligation_id == obligation.id)
        .delete(synchronize_session="fetch")
    )
    audit_event(
        "obligation.rejected",
        {"obligation_id": obligation.id, "reason": reason},
        db=db,
        request_id=request_id,
    )
    db.commit()
    db.refresh(obligation)
    logger.info("obligation_rejected", extra={"obligation_id": obligation.id})
    return obligation


def evaluate_payability(obligation: models.Obligation) -> PayabilityResult:
    """Policy-driven payable predicate.

    Beyond state and approvals, an obligation carrying equity also needs the
    payee's election for that year to be locked.
    """

    company = obligation.company
    if company is not None and not company.active:
        return PayabilityResult(False, PayabilityReason.COMPANY_INACTIVE)
    if obligation.status not in PAYABLE_STATES:
        return PayabilityResult(False, PayabilityReason.NOT_APPROVED)
    if not obligation.fully_approved:
        return PayabilityResult(False, PayabilityReason.INSUFFICIENT_APPROVALS)

    payee = obligation.payee
    if payee is None or payee.tax_information_confirmed_at is None:
        return PayabilityResult(False, PayabilityReason.TAX_INFORMATION_MISSING)

    if int(obligation.equity_amount_cents or 0) > 0:
        election = payee.equity_election_for(obligation.obligation_date.year)
        if election is None or not election.locked:
            return PayabilityResult(False, PayabilityReason.EQUITY_ELECTION_NOT_LOCKED)

    return PayabilityResult(True)


def mark_chargeable(db: Session, obligation_ids: Iterable[int], *, batch_id: int) -> int:
    """Link obligations to a batch; only the aggregator calls this.

    Payable or failed obligations move to ``payment_pending``. Obligations that
    were paid (or are mid payment) without ever being charged keep their
    status and only gain the link. Returns the number of rows linked.
    """

    ids = [int(i) for i in obligation_ids]
    moved = atomic_transition_obligations(
        db=db,
        obligation_ids=ids,
        to_status=ObligationStatus.payment_pending,
        allowed_from=CHARGEABLE_STATES,
        updates={"batch_id": int(batch_id)},
        extra_filters=[models.Obligation.batch_id.is_(None)],
    )
    linked = (
        db.query(models.Obligation)
        .filter(models.Obligation.id.in_(ids))
        .filter(models.Obligation.status.in_(PAID_OR_PAYING_STATES))
        .filter(models.Obligation.batch_id.is_(None))
        .update({"batch_id": int(batch_id)}, synchronize_session="fetch")
    )
    return moved.rowcount + int(linked or 0)


def claim_for_payment(
    db: Session, obligation_ids: Iterable[int], *, payment_id: int
) -> TransitionResult:
    """Reserve obligations for one payment.

    Rows already held by another payment are skipped, so a rowcount below
    the number of ids means some other run is paying them.
    """

    return atomic_transition_obligations(
        db=db,
        obligation_ids=obligation_ids,
        to_status=ObligationStatus.payment_pending,
        allowed_from=PAYABLE_STATES,
        updates={"retained_reason": None, "active_payment_id": int(payment_id)},
        extra_filters=[models.Obligation.active_payment_id.is_(None)],
    )


def mark_processing(db: Session, obligation_ids: Iterable[int]) -> TransitionResult:
    return atomic_transition_obligations(
        db=db,
        obligation_ids=obligation_ids,
        to_status=ObligationStatus.processing,
        allowed_from={
            ObligationStatus.approved,
            ObligationStatus.payment_pending,
            ObligationStatus.failed,
            ObligationStatus.retained,
        },
    )


def mark_paid(db: Session, obligation_ids: Iterable[int], *, paid_at: datetime) -> TransitionResult:
    """Idempotent: rows already paid are left untouched, paid_at included."""

    return atomic_transition_obligations(
        db=db,
        obligation_ids=obligation_ids,
        to_status=ObligationStatus.paid,
        allowed_from={
            ObligationStatus.approved,
            ObligationStatus.payment_pending,
            ObligationStatus.processing,
            ObligationStatus.failed,
            ObligationStatus.retained,
        },
        updates={
            "paid_at": paid_at,
            "retained_reason": None,
            "active_payment_id": None,
        },
    )


def mark_failed(db: Session, obligation_ids: Iterable[int]) -> TransitionResult:
    return atomic_transition_obligations(
        db=db,
        obligation_ids=obligation_ids,
        to_status=ObligationStatus.failed,
        allowed_from={
            ObligationStatus.approved,
            ObligationStatus.payment_pending,
            ObligationStatus.processing,
        },
        updates={"active_payment_id": None},
    )


def mark_retained(
    db: Session, obligation_ids: Iterable[int], *, reason: RetainedReason
) -> TransitionResult:
    return atomic_transition_obligations(
        db=db,
        obligation_ids=obligation_ids,
        to_status=ObligationStatus.retained,
        allowed_from={
            ObligationStatus.approved,
            ObligationStatus.payment_pending,
            ObligationStatus.processing,
            ObligationStatus.failed,
            ObligationStatus.retained,
        },
        updates={"retained_reason": reason},
    )


@dataclass(frozen=True)
class KindSettlement:
    """Per-kind callbacks driven by payment execution and reconciliation."""

    mark_paid: Callable[..., TransitionResult]
    mark_processing: Callable[..., TransitionResult]
    mark_failed: Callable[..., TransitionResult]
    sent_template: str
    failed_template: str


KIND_SETTLEMENT: dict[ObligationKind, KindSettlement] = {
    ObligationKind.invoice: KindSettlement(
        mark_paid=mark_paid,
        mark_processing=mark_processing,
        mark_failed=mark_failed,
        sent_template="invoice_payment_sent",
        failed_template="invoice_payment_failed",
    ),
    ObligationKind.dividend: KindSettlement(
        mark_paid=mark_paid,
        mark_processing=mark_processing,
        mark_failed=mark_failed,
        sent_template="dividend_payment_sent",
        failed_template="dividend_payment_failed",
    ),
    ObligationKind.equity_buyback: KindSettlement(
        mark_paid=mark_paid,
        mark_processing=mark_processing,
        mark_failed=mark_failed,
        sent_template="equity_buyback_payment_sent",
        failed_template="equity_buyback_payment_failed",
    ),
}
