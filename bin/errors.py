"""
FLOW-UL error taxonomy.

Per-transfer network failures are NOT exceptions: they end up as a
TransferOutcome with `error` set and are counted like any status code.
"""

from __future__ import annotations

from typing import Optional


class UploadBenchError(Exception):
    """Base class for every error raised by FLOW-UL."""


class ArgumentError(UploadBenchError):
    """Malformed or out-of-range command line input."""


class InitializationError(UploadBenchError):
    """The transport stack or a transfer slot could not be set up."""

    def __init__(self, message: str, slot: Optional[int] = None):
        super().__init__(message)
        self.slot = slot


class FatalEngineError(UploadBenchError):
    """The drive loop itself cannot make progress."""


class TransferStateError(UploadBenchError):
    """A transfer was completed or recorded more than once."""
