"""Work-order portal sync engine and trip derivation."""

from typing import Any

__all__ = ["HughesNetService"]


def __getattr__(name: str) -> Any:
    if name == "HughesNetService":
        from hns_sync.hughesnet.service import HughesNetService as _HughesNetService

        return _HughesNetService
    raise AttributeError(name)
