from functools import lru_cache

from settlement.database import get_db
from settlement.services.lock_manager import LockManager
from settlement.services.transfer_provider import TransferProviderClient

__all__ = ["get_db", "get_lock_manager", "get_transfer_provider"]


@lru_cache(maxsize=1)
def get_lock_manager() -> LockManager:
    return LockManager()


@lru_cache(maxsize=1)
def get_transfer_provider() -> TransferProviderClient:
    return TransferProviderClient()
