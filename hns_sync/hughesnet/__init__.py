"""HughesNet portal crawler, reconciliation and trip derivation."""

from .errors import HardLimitExceeded, HughesNetError, SessionExpiredError, SyncFailedError, SyncLockError
from .models import ConflictInfo, OrderRecord, PayRates, SyncResult, TripRecord
from .service import HughesNetService, SyncStores

__all__ = [
    "ConflictInfo",
    "HardLimitExceeded",
    "HughesNetError",
    "HughesNetService",
    "OrderRecord",
    "PayRates",
    "SessionExpiredError",
    "SyncFailedError",
    "SyncLockError",
    "SyncResult",
    "SyncStores",
    "TripRecord",
]
