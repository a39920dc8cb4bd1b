from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from settlement.models.domain import ObligationKind, PaymentStatus, TransferBucket


class PaymentCreate(BaseModel):
    obligation_ids: list[int] = Field(..., min_length=1)


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    external_id: str
    kind: ObligationKind
    batch_id: int | None = None
    payee_id: int
    processor_reference: str
    quote_id: str | None = None
    transfer_id: str | None = None
    transfer_status: str | None = None
    transfer_bucket: TransferBucket | None = None
    transfer_currency: str | None = None
    conversion_rate: Decimal | None = None
    transfer_amount: Decimal | None = None
    transfer_estimate: datetime | None = None
    principal_cents: int
    fee_cents: int | None = None
    total_transaction_cents: int | None = None
    status: PaymentStatus
    error: str | None = None
    succeeded_at: datetime | None = None
    obligation_ids: list[int] = []


class PaymentOutcomeRead(BaseModel):
    status: str
    reason_code: str | None = None
    obligation_ids: list[int] = []
    payment: PaymentRead | None = None
