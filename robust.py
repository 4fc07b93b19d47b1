"""Cancellation primitive shared by scan, verify and sync batches."""

from __future__ import annotations

import threading
from typing import Optional


class CancellationToken:
    """Advisory stop flag owned by a single batch run.

    Workers poll :meth:`is_set` before claiming new work; subprocess runners
    use :meth:`wait` as an interruptible sleep while a child is alive.
    """

    def __init__(self) -> None:
        self._evt = threading.Event()
        self._reason: Optional[str] = None

    def set(self, reason: Optional[str] = None) -> None:
        if reason and self._reason is None:
            self._reason = reason
        self._evt.set()

    cancel = set

    def is_set(self) -> bool:
        return self._evt.is_set()

    def is_cancelled(self) -> bool:
        return self._evt.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def wait(self, timeout: float) -> bool:
        return self._evt.wait(timeout)


def is_cancelled(token: Optional[CancellationToken]) -> bool:
    return token is not None and token.is_set()


__all__ = [
    "CancellationToken",
    "is_cancelled",
]
