"""
Exception hierarchy for the GIB registry sync.

Fetch errors are split by retryability; everything raised inside the locked
unit of work propagates and rolls the transaction back.
"""

import threading
from typing import Optional


class GibSyncError(Exception):
    """Base exception for GIB sync errors."""
    pass


class GibFetchError(GibSyncError):
    """Origin list download failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientFetchError(GibFetchError):
    """Retryable download failure (timeouts, connection errors, 408, 429, 5xx)."""
    pass


class FatalFetchError(GibFetchError):
    """Non-retryable download failure (4xx other than 408/429, bad archive)."""
    pass


class SyncCancelledError(GibSyncError):
    """Run was cancelled cooperatively between steps or batches."""
    pass


class ViewRefreshError(GibSyncError):
    """Derived views could not be refreshed after all retries."""
    pass


class ArchiveStorageError(GibSyncError):
    """Archive storage rejected an operation (e.g. path outside base dir)."""
    pass


def raise_if_cancelled(cancel_event: Optional[threading.Event], stage: str) -> None:
    """Raise SyncCancelledError if the cancellation event is set."""
    if cancel_event is not None and cancel_event.is_set():
        raise SyncCancelledError(f"Sync cancelled before {stage}")
