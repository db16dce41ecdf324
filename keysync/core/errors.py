from __future__ import annotations


class KeysyncError(Exception):
    """Base error for keysync."""


class LockUnavailableError(KeysyncError):
    """A run-level lock is held elsewhere or its backend is unreachable."""


class LockHeldError(LockUnavailableError):
    """Another run currently holds the lock."""


class InvalidPayloadError(KeysyncError):
    """Job payload failed validation at enqueue time."""
