from settlement.services import batch_aggregator, payment_executor, transfer_reconciler
from settlement.services.audit import audit_event
from settlement.services.lock_manager import LockManager
from settlement.services.split_calculator import calculate_service_fee_cents, calculate_split
from settlement.services.transfer_provider import TransferProviderClient

__all__ = [
    "audit_event",
    "batch_aggregator",
    "calculate_service_fee_cents",
    "calculate_split",
    "LockManager",
    "payment_executor",
    "transfer_reconciler",
    "TransferProviderClient",
]
