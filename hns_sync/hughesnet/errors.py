from __future__ import annotations


class HughesNetError(RuntimeError):
    """Base class for sync engine failures surfaced to callers."""


class SessionExpiredError(HughesNetError):
    def __init__(self, message: str = "Session expired. Please reconnect.") -> None:
        super().__init__(message)


class SyncLockError(HughesNetError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"Could not acquire sync lock for user {user_id}; another sync is running")
        self.user_id = user_id


class SyncFailedError(HughesNetError):
    """Raised when the download or trip stage fails after the crawl started.

    ``rolled_back`` tells the caller whether the order snapshot captured at
    sync start was written back.
    """

    def __init__(self, message: str, *, rolled_back: bool) -> None:
        super().__init__(message)
        self.rolled_back = rolled_back


class HardLimitExceeded(Exception):
    """Raised by the fetcher when the hard request budget is spent."""

    def __init__(self, count: int, limit: int) -> None:
        super().__init__(f"request budget exhausted ({count}/{limit})")
        self.count = count
        self.limit = limit
