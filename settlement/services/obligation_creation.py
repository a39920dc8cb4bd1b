from __future__ import annotations

import logging
from datetime import date

from sqlalchemy.orm import Session

from settlement import models
from settlement.config import settings
from settlement.core.errors import InvariantViolation
from settlement.services.audit import audit_event
from settlement.services.jurisdiction_policy import policy_for, withholding_cents
from settlement.services.split_calculator import calculate_service_fee_cents, calculate_split

logger = logging.getLogger("settlement.obligations")


def _required_approvals(payee: models.Payee) -> int:
    company = payee.company
    if company is None:
        raise InvariantViolation("Payee has no company", context={"payee_id": payee.id})
    return int(company.required_approvals or 1)


def _elected_percentage(payee: models.Payee, year: int) -> int:
    if not payee.company.equity_compensation_enabled:
        return 0
    election = payee.equity_election_for(year)
    return int(election.equity_percentage) if election is not None else 0


def create_invoice_obligation(
    db: Session,
    *,
    payee: models.Payee,
    gross_cents: int,
    invoice_date: date,
    share_price_cents: int | None = None,
    floor_resets_election: bool | None = None,
    request_id: str | None = None,
) -> models.Obligation:
    """Persist a contractor invoice with its cash/equity split and service fee.

    When the equity component rounds to zero units the invoice is paid in cash.
    With ``floor_resets_election`` (defaults to the configured flag) the payee's
    election for that year is also reset to 0% and unlocked.
    """

    if floor_resets_election is None:
        floor_resets_election = settings.equity_floor_resets_election

    pct = _elected_percentage(payee, invoice_date.year)
    split = calculate_split(gross_cents, pct, share_price_cents)

    obligation = models.Obligation(
        kind=models.ObligationKind.invoice,
        company_id=payee.company_id,
        payee_id=payee.id,
        obligation_date=invoice_date,
        gross_amount_cents=int(gross_cents),
        cash_amount_cents=split.cash_cents,
        equity_amount_cents=split.equity_cents,
        equity_units=split.equity_units,
        equity_percentage=split.equity_percentage,
        fee_cents=calculate_service_fee_cents(gross_cents),
        status=models.ObligationStatus.received,
        required_approvals=_required_approvals(payee),
    )
    db.add(obligation)

    if split.floored_to_cash and floor_resets_election:
        election = payee.equity_election_for(invoice_date.year)
        if election is not None:
            election.equity_percentage = 0
            election.locked = False
            logger.info(
                "equity_election_reset",
                extra={"payee_id": payee.id, "year": invoice_date.year},
            )

    db.flush()
    audit_event(
        "obligation.created",
        {
            "obligation_id": obligation.id,
            "kind": obligation.kind.value,
            "gross_cents": obligation.gross_amount_cents,
            "cash_cents": obligation.cash_amount_cents,
            "equity_cents": obligation.equity_amount_cents,
            "floored_to_cash": split.floored_to_cash,
        },
        db=db,
        request_id=request_id,
    )
    db.commit()
    db.refresh(obligation)
    return obligation


def _create_cash_only(
    db: Session,
    *,
    kind: models.ObligationKind,
    payee: models.Payee,
    gross_cents: int,
    issued_on: date,
    withheld: int,
    request_id: str | None,
) -> models.Obligation:
    obligation = models.Obligation(
        kind=kind,
        company_id=payee.company_id,
        payee_id=payee.id,
        obligation_date=issued_on,
        gross_amount_cents=int(gross_cents),
        cash_amount_cents=int(gross_cents),
        equity_amount_cents=0,
        equity_units=0,
        equity_percentage=0,
        withheld_cents=int(withheld),
        fee_cents=0,
        status=models.ObligationStatus.received,
        required_approvals=_required_approvals(payee),
    )
    db.add(obligation)
    db.flush()
    audit_event(
        "obligation.created",
        {
            "obligation_id": obligation.id,
            "kind": kind.value,
            "gross_cents": obligation.gross_amount_cents,
            "withheld_cents": obligation.withheld_cents,
        },
        db=db,
        request_id=request_id,
    )
    db.commit()
    db.refresh(obligation)
    return obligation


def create_dividend_obligation(
    db: Session,
    *,
    payee: models.Payee,
    gross_cents: int,
    issued_on: date,
    request_id: str | None = None,
) -> models.Obligation:
    policy = policy_for(payee)
    withheld = 0 if policy.disallowed else withholding_cents(gross_cents, policy.withholding_percentage)
    return _create_cash_only(
        db,
        kind=models.ObligationKind.dividend,
        payee=payee,
        gross_cents=gross_cents,
        issued_on=issued_on,
        withheld=withheld,
        request_id=request_id,
    )


def create_buyback_obligation(
    db: Session,
    *,
    payee: models.Payee,
    gross_cents: int,
    issued_on: date,
    request_id: str | None = None,
) -> models.Obligation:
    return _create_cash_only(
        db,
        kind=models.ObligationKind.equity_buyback,
        payee=payee,
        gross_cents=gross_cents,
        issued_on=issued_on,
        withheld=0,
        request_id=request_id,
    )
