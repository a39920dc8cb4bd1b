from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict

from settlement.models.domain import BatchStatus


class BatchCreate(BaseModel):
    obligation_ids: list[int] | None = None
    invoice_date: date | None = None


class BatchMarkPaid(BaseModel):
    paid_at: datetime | None = None


class BatchRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    external_id: str
    company_id: int
    invoice_date: date
    period_start: date
    period_end: date
    principal_cents: int
    fee_cents: int
    total_cents: int
    status: BatchStatus
    paid_at: datetime | None = None
    obligation_ids: list[int] = []


class BatchRunResponse(BaseModel):
    batch: BatchRead | None = None
