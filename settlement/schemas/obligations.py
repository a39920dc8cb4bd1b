from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field

from settlement.models.domain import ObligationKind, ObligationStatus, RetainedReason


class InvoiceObligationCreate(BaseModel):
    payee_id: int
    gross_amount_cents: int = Field(..., ge=0)
    invoice_date: date
    share_price_cents: int | None = Field(default=None, gt=0)


class CashObligationCreate(BaseModel):
    payee_id: int
    gross_amount_cents: int = Field(..., ge=0)
    issued_on: date


class ObligationApprove(BaseModel):
    approver_id: int


class ObligationReject(BaseModel):
    reason: str | None = Field(default=None, max_length=4000)


class ObligationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    external_id: str
    kind: ObligationKind
    company_id: int
    payee_id: int
    obligation_date: date

    gross_amount_cents: int
    cash_amount_cents: int
    equity_amount_cents: int
    equity_units: int
    equity_percentage: int
    withheld_cents: int
    fee_cents: int
    payout_amount_cents: int

    status: ObligationStatus
    approval_count: int
    required_approvals: int
    retained_reason: RetainedReason | None = None
    rejection_reason: str | None = None
    batch_id: int | None = None
    paid_at: datetime | None = None


class ApprovalRead(BaseModel):
    changed: bool
    approval_count: int
    payable: bool
    obligation: ObligationRead
