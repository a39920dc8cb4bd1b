from settlement.models.domain import (
    OPEN_OBLIGATION_STATES,
    PAID_OR_PAYING_STATES,
    TERMINAL_OBLIGATION_STATES,
    AuditLog,
    Batch,
    BatchStatus,
    Company,
    EquityElection,
    Notification,
    NotificationKind,
    Obligation,
    ObligationApproval,
    ObligationKind,
    ObligationStatus,
    Payee,
    Payment,
    PaymentStatus,
    Recipient,
    RetainedReason,
    TransferBucket,
    batch_obligations,
    payment_obligations,
)

__all__ = [
    "OPEN_OBLIGATION_STATES",
    "PAID_OR_PAYING_STATES",
    "TERMINAL_OBLIGATION_STATES",
    "AuditLog",
    "Batch",
    "BatchStatus",
    "Company",
    "EquityElection",
    "Notification",
    "NotificationKind",
    "Obligation",
    "ObligationApproval",
    "ObligationKind",
    "ObligationStatus",
    "Payee",
    "Payment",
    "PaymentStatus",
    "Recipient",
    "RetainedReason",
    "TransferBucket",
    "batch_obligations",
    "payment_obligations",
]
