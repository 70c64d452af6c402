# errors.py
"""Error taxonomy for the append-only KV store.

Recovery errors are diagnostics: the store reports them and keeps loading.
Write errors go to the mutation's callback when one exists, otherwise to the
store-level error channel.
"""

from __future__ import annotations

from typing import Optional


class KVStoreError(Exception):
    """Base class for every error the store reports."""


class StartupIOError(KVStoreError):
    """The log exists but could not be opened or read (anything but ENOENT)."""


class CorruptedRecordError(KVStoreError):
    """A replayed line was empty, undecodable, not JSON, or had no usable ``key``."""

    def __init__(self, message: str, row: str = "", lineno: Optional[int] = None) -> None:
        super().__init__(message)
        self.row = row
        self.lineno = lineno


class TruncatedTailError(CorruptedRecordError):
    """The log ends with a fragment that has no terminating newline."""

    def __init__(self, fragment: str) -> None:
        super().__init__(f"Corrupted row at the end of the db: {fragment}", row=fragment)
        self.fragment = fragment


class WriteError(KVStoreError):
    """A physical append to the log failed."""


class StoreClosedError(KVStoreError):
    """The store was closed; it accepts no further mutations."""
