"""
Money movement for one payee: quote -> transfer -> fund.

A Payment row is committed before the first provider call and after every
step, so a crash mid-sequence still leaves an auditable attempt. Failures are
recorded on the Payment and raised; a retry is a new call that creates a new
Payment.

The Payment row and its claim on the obligations (``active_payment_id``) commit
together. While that claim is held, other runs for the same obligations return
``payment_in_flight`` instead of starting a second transfer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from sqlalchemy.orm import Session

from settlement import models
from settlement.config import settings
from settlement.core.errors import (
    InsufficientBalanceError,
    InvariantViolation,
    NotFoundError,
    ProviderError,
    RecipientInactiveError,
)
from settlement.models.domain import ObligationKind, PaymentStatus, RetainedReason
from settlement.services.audit import audit_event
from settlement.services.batch_aggregator import batch_is_charged
from settlement.services.jurisdiction_policy import policy_for
from settlement.services.notifications import enqueue_notification
from settlement.services.obligation_state import (
    KIND_SETTLEMENT,
    claim_for_payment,
    evaluate_payability,
    mark_paid,
    mark_retained,
)
from settlement.services.transfer_provider import (
    SOURCE_CURRENCY,
    FundRequest,
    QuoteRequest,
    TransferProviderClient,
    TransferRequest,
)
from settlement.services.transitions import atomic_transition_payment

logger = logging.getLogger("settlement.payments")

INSUFFICIENT_BALANCE_CODES = {"balance.payment-option-unavailable", "insufficient_funds"}


class OutcomeStatus:
    PROCESSING = "processing"
    PAID = "paid"
    RETAINED = "retained"
    NOT_PAYABLE = "not_payable"


class NotPayableReason:
    BATCH_NOT_CHARGED = "batch_not_charged"
    RECIPIENT_MISSING = "recipient_missing"
    INSUFFICIENT_PLATFORM_BALANCE = "insufficient_platform_balance"
    PAYMENT_IN_FLIGHT = "payment_in_flight"


@dataclass(frozen=True)
class PaymentOutcome:
    status: str
    payment: models.Payment | None = None
    reason_code: str | None = None
    obligation_ids: tuple[int, ...] = field(default_factory=tuple)


def _load_obligations(db: Session, obligation_ids: Iterable[int]) -> list[models.Obligation]:
    ids = sorted({int(i) for i in obligation_ids})
    if not ids:
        raise InvariantViolation("No obligations given")
    rows = (
        db.query(models.Obligation)
        .filter(models.Obligation.id.in_(ids))
        .order_by(models.Obligation.id.asc())
        .all()
    )
    missing = set(ids) - {o.id for o in rows}
    if missing:
        raise NotFoundError("Obligation not found", context={"obligation_ids": sorted(missing)})

    first = rows[0]
    for o in rows[1:]:
        if o.payee_id != first.payee_id or o.kind != first.kind:
            raise InvariantViolation(
                "A payment covers one payee and one obligation kind",
                context={"obligation_ids": ids},
            )
        if first.kind == ObligationKind.invoice and o.batch_id != first.batch_id:
            raise InvariantViolation(
                "An invoice payment covers a single batch", context={"obligation_ids": ids}
            )
    return rows


def _target_amount(
    provider: TransferProviderClient, *, amount_cents: int, currency: str
) -> Decimal:
    amount = Decimal(int(amount_cents)) / Decimal(100)
    if currency != SOURCE_CURRENCY:
        rate = provider.get_exchange_rate(target_currency=currency).rate
        amount = amount * rate
    return amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _retain(
    db: Session,
    obligations: list[models.Obligation],
    reason: RetainedReason,
    request_id: str | None,
) -> PaymentOutcome:
    ids = [o.id for o in obligations]
    mark_retained(db, ids, reason=reason)
    audit_event(
        "obligation.retained",
        {"obligation_ids": ids, "reason": reason.value},
        db=db,
        request_id=request_id,
    )
    db.commit()
    logger.info("obligations_retained", extra={"obligation_ids": ids, "reason": reason.value})
    return PaymentOutcome(
        status=OutcomeStatus.RETAINED, reason_code=reason.value, obligation_ids=tuple(ids)
    )


def _preflight(
    db: Session,
    obligations: list[models.Obligation],
    provider: TransferProviderClient,
    request_id: str | None,
) -> PaymentOutcome | None:
    ids = tuple(o.id for o in obligations)
    first = obligations[0]
    payee = first.payee

    if any(o.active_payment_id is not None for o in obligations):
        return PaymentOutcome(
            status=OutcomeStatus.NOT_PAYABLE,
            reason_code=NotPayableReason.PAYMENT_IN_FLIGHT,
            obligation_ids=ids,
        )

    for o in obligations:
        check = evaluate_payability(o)
        if not check.payable:
            return PaymentOutcome(
                status=OutcomeStatus.NOT_PAYABLE, reason_code=check.reason_code, obligation_ids=ids
            )

    if first.kind == ObligationKind.invoice and not batch_is_charged(
        first.batch, trusted=bool(first.company.is_trusted)
    ):
        return PaymentOutcome(
            status=OutcomeStatus.NOT_PAYABLE,
            reason_code=NotPayableReason.BATCH_NOT_CHARGED,
            obligation_ids=ids,
        )

    if policy_for(payee).disallowed:
        return _retain(db, obligations, RetainedReason.ofac_sanctioned_country, request_id)

    amount = sum(o.payout_amount_cents for o in obligations)
    if first.kind == ObligationKind.dividend:
        threshold = max(
            int(payee.minimum_dividend_payment_cents or 0),
            int(settings.minimum_dividend_payment_cents_floor),
        )
        if amount < threshold:
            return _retain(
                db, obligations, RetainedReason.below_minimum_payment_threshold, request_id
            )

    if amount == 0 and first.kind == ObligationKind.invoice:
        # Equity-only invoices settle without moving cash.
        mark_paid(db, list(ids), paid_at=datetime.utcnow())
        audit_event("obligation.paid_without_transfer", {"obligation_ids": list(ids)}, db=db)
        db.commit()
        return PaymentOutcome(status=OutcomeStatus.PAID, obligation_ids=ids)

    if payee.recipient_for(first.kind) is None:
        return PaymentOutcome(
            status=OutcomeStatus.NOT_PAYABLE,
            reason_code=NotPayableReason.RECIPIENT_MISSING,
            obligation_ids=ids,
        )

    if provider.available_balance_cents() < amount:
        logger.warning(
            "payment_preflight_insufficient_balance",
            extra={"obligation_ids": list(ids), "amount_cents": amount},
        )
        return PaymentOutcome(
            status=OutcomeStatus.NOT_PAYABLE,
            reason_code=NotPayableReason.INSUFFICIENT_PLATFORM_BALANCE,
            obligation_ids=ids,
        )

    return None


def _fail_payment(
    db: Session,
    payment: models.Payment,
    error: ProviderError,
    request_id: str | None,
) -> None:
    db.rollback()
    atomic_transition_payment(
        db=db,
        payment_id=payment.id,
        to_status=PaymentStatus.failed,
        allowed_from={PaymentStatus.initialized, PaymentStatus.processing},
        updates={"error": error.message},
    )
    KIND_SETTLEMENT[payment.kind].mark_failed(db, [o.id for o in payment.obligations])
    audit_event(
        "payment.failed",
        {"payment_id": payment.id, "step": error.step, "error": error.message},
        db=db,
        request_id=request_id,
    )
    db.commit()
    db.refresh(payment)
    logger.warning(
        "payment_failed",
        extra={"payment_id": payment.id, "step": error.step, "error": error.message},
    )


def execute_payment(
    db: Session,
    *,
    obligation_ids: Iterable[int],
    provider: TransferProviderClient,
    request_id: str | None = None,
) -> PaymentOutcome:
    """Pay one payee's obligations through the transfer provider.

    Pre-flight rejections return a typed outcome without creating a Payment.
    Provider failures mark the Payment and its obligations failed and raise.
    """

    obligations = _load_obligations(db, obligation_ids)
    short_circuit = _preflight(db, obligations, provider, request_id)
    if short_circuit is not None:
        return short_circuit

    first = obligations[0]
    payee = first.payee
    recipient = payee.recipient_for(first.kind)
    ids = [o.id for o in obligations]
    amount = sum(o.payout_amount_cents for o in obligations)

    payment = models.Payment(
        kind=first.kind,
        batch_id=first.batch_id if first.kind == ObligationKind.invoice else None,
        payee_id=payee.id,
        recipient_id=recipient.id,
        provider_profile_id=provider.profile_id,
        principal_cents=amount,
        status=PaymentStatus.initialized,
    )
    payment.obligations = list(obligations)
    db.add(payment)
    db.flush()
    claimed = claim_for_payment(db, ids, payment_id=payment.id)
    if claimed.rowcount < len(ids):
        db.rollback()
        logger.warning("payment_in_flight", extra={"obligation_ids": ids})
        return PaymentOutcome(
            status=OutcomeStatus.NOT_PAYABLE,
            reason_code=NotPayableReason.PAYMENT_IN_FLIGHT,
            obligation_ids=tuple(ids),
        )
    audit_event(
        "payment.initialized",
        {"payment_id": payment.id, "obligation_ids": ids, "principal_cents": amount},
        db=db,
        request_id=request_id,
    )
    db.commit()
    db.refresh(payment)
    logger.info("payment_initialized", extra={"payment_id": payment.id, "amount_cents": amount})

    try:
        target_amount = _target_amount(provider, amount_cents=amount, currency=recipient.currency)

        account = provider.get_recipient_account(recipient_id=recipient.provider_recipient_id)
        if not account.active:
            recipient.deleted_at = datetime.utcnow()
            enqueue_notification(
                db,
                kind=models.NotificationKind.recipient_invalid,
                payee_id=payee.id,
                payment_id=payment.id,
                idempotency_key=f"payment:{payment.id}:recipient_invalid",
                payload={
                    "amount": str(target_amount),
                    "currency": recipient.currency,
                    "recipient_id": recipient.id,
                },
            )
            db.commit()
            raise RecipientInactiveError(
                f"Bank account is no longer active for payment {payment.id}",
                step="recipient",
                payment_id=payment.id,
            )

        quote = provider.create_quote(
            QuoteRequest(
                profile_id=provider.profile_id,
                recipient_id=recipient.provider_recipient_id,
                target_currency=recipient.currency,
                target_amount=target_amount,
            )
        )
        if quote is None:
            raise ProviderError(
                f"Creating quote failed for payment {payment.id}", step="quote", payment_id=payment.id
            )
        payment.quote_id = quote.id
        payment.transfer_currency = quote.target_currency or recipient.currency
        payment.fee_cents = int(quote.fee_cents or 0)
        payment.total_transaction_cents = payment.principal_cents + payment.fee_cents
        db.commit()

        transfer = provider.create_transfer(
            TransferRequest(
                quote_id=quote.id,
                recipient_id=recipient.provider_recipient_id,
                customer_transaction_id=payment.processor_reference,
                reference=payment.transfer_reference,
            )
        )
        if transfer is None:
            raise ProviderError(
                f"Creating transfer failed for payment {payment.id}",
                step="transfer",
                payment_id=payment.id,
            )
        payment.transfer_id = transfer.id
        payment.conversion_rate = transfer.rate
        payment.recipient_last4 = recipient.last_four_digits
        KIND_SETTLEMENT[payment.kind].mark_processing(db, ids)
        db.commit()

        funded = provider.fund_transfer(FundRequest(transfer_id=transfer.id))
        if not funded.completed:
            if (funded.error_code or "").lower() in INSUFFICIENT_BALANCE_CODES:
                raise InsufficientBalanceError(
                    f"Insufficient balance to fund payment {payment.id}",
                    step="fund",
                    payment_id=payment.id,
                )
            raise ProviderError(
                f"Funding transfer failed for payment {payment.id}",
                step="fund",
                payment_id=payment.id,
                context={"fund_status": funded.status, "error_code": funded.error_code},
            )
    except ProviderError as e:
        if e.payment_id is None:
            e.payment_id = payment.id
            e.context["payment_id"] = payment.id
        _fail_payment(db, payment, e, request_id)
        raise

    atomic_transition_payment(
        db=db,
        payment_id=payment.id,
        to_status=PaymentStatus.processing,
        allowed_from={PaymentStatus.initialized},
    )
    audit_event(
        "payment.funded",
        {"payment_id": payment.id, "transfer_id": payment.transfer_id},
        db=db,
        request_id=request_id,
    )
    db.commit()
    db.refresh(payment)
    logger.info(
        "payment_funded",
        extra={"payment_id": payment.id, "transfer_id": payment.transfer_id},
    )
    return PaymentOutcome(
        status=OutcomeStatus.PROCESSING, payment=payment, obligation_ids=tuple(ids)
    )
