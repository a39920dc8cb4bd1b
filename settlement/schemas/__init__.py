from settlement.schemas.batches import BatchCreate, BatchMarkPaid, BatchRead, BatchRunResponse
from settlement.schemas.obligations import (
    ApprovalRead,
    CashObligationCreate,
    InvoiceObligationCreate,
    ObligationApprove,
    ObligationRead,
    ObligationReject,
)
from settlement.schemas.payments import PaymentCreate, PaymentOutcomeRead, PaymentRead
from settlement.schemas.webhooks import TransferEventAck

__all__ = [
    "ApprovalRead",
    "BatchCreate",
    "BatchMarkPaid",
    "BatchRead",
    "BatchRunResponse",
    "CashObligationCreate",
    "InvoiceObligationCreate",
    "ObligationApprove",
    "ObligationRead",
    "ObligationReject",
    "PaymentCreate",
    "PaymentOutcomeRead",
    "PaymentRead",
    "TransferEventAck",
]
