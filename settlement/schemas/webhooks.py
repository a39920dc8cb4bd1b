from __future__ import annotations

from pydantic import BaseModel


class TransferEventAck(BaseModel):
    status: str
    payment_id: int | None = None
    bucket: str | None = None
    transitioned: bool = False
