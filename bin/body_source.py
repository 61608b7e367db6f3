"""
FLOW-UL Body Source and Transfer Descriptors

The request body is one immutable buffer shared read-only by every transfer.
Each transfer pulls it chunk by chunk through its own TransferState cursor,
so the buffer is never copied per transfer and never needs a lock.

Two pull flavours are provided:
- `stream()` / `next_chunk()`: async, the delay is an `asyncio.sleep` that
  suspends only the coroutine producing that transfer's body.
- `reader()`: a file-like object for the threaded transport; its delay is a
  `time.sleep` inside the worker thread that owns the transfer.

Author: FLOW-UL Team
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, AsyncIterator, Optional

from errors import TransferStateError


DEFAULT_BODY_SIZE = 1024 * 1024     # 1 MiB
DEFAULT_CHUNK_SIZE = 64 * 1024      # Matches curl's default upload buffer
FILL_BYTE = b"a"


# =============================================================================
# TRANSFER DESCRIPTORS
# =============================================================================

class TransferStatus(Enum):
    """Per-transfer lifecycle."""
    PENDING = auto()
    IN_FLIGHT = auto()
    COMPLETED = auto()


@dataclass(frozen=True)
class TransferOutcome:
    """Terminal result of one transfer: a status code or a transport error."""
    status_code: Optional[int] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    bytes_sent: int = 0
    elapsed_sec: float = 0.0

    def __post_init__(self):
        if (self.status_code is None) == (self.error is None):
            raise ValueError("outcome needs exactly one of status_code or error")

    @classmethod
    def failure(cls, exc: BaseException, bytes_sent: int = 0, elapsed_sec: float = 0.0) -> "TransferOutcome":
        return cls(
            error=str(exc) or type(exc).__name__,
            error_type=type(exc).__name__,
            bytes_sent=bytes_sent,
            elapsed_sec=elapsed_sec,
        )

    @property
    def success(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300

    @property
    def code(self) -> int | str:
        """Bucket key for the result table."""
        if self.status_code is not None:
            return self.status_code
        return f"error:{self.error_type or 'TransportError'}"


@dataclass
class TransferState:
    """
    Per-transfer state bundle.

    `bytes_sent` is advanced only by the Body Source on behalf of this
    transfer. `outcome` is set exactly once, by `complete()`.
    """
    index: int
    url: str = ""
    delay: float = 0.0
    bytes_sent: int = 0
    status: TransferStatus = TransferStatus.PENDING
    outcome: Optional[TransferOutcome] = None
    handle: Any = field(default=None, repr=False)
    started_at: Optional[float] = None

    def start(self) -> None:
        if self.status is not TransferStatus.PENDING:
            raise TransferStateError(f"transfer {self.index} already started ({self.status.name})")
        self.status = TransferStatus.IN_FLIGHT
        self.started_at = time.monotonic()

    def complete(self, outcome: TransferOutcome) -> None:
        if self.status is not TransferStatus.IN_FLIGHT:
            raise TransferStateError(f"transfer {self.index} cannot complete from {self.status.name}")
        self.outcome = outcome
        self.status = TransferStatus.COMPLETED

    def elapsed(self) -> float:
        if self.started_at is None:
            return 0.0
        return time.monotonic() - self.started_at


# =============================================================================
# BODY SOURCE
# =============================================================================

class BodySource:
    """Immutable request body shared by all transfers."""

    def __init__(self, size: int = DEFAULT_BODY_SIZE, fill: bytes = FILL_BYTE):
        if size < 1:
            raise ValueError("body size must be at least 1 byte")
        if len(fill) != 1:
            raise ValueError("fill must be a single byte")
        self._buf = fill * size
        self._view = memoryview(self._buf)

    def __len__(self) -> int:
        return len(self._buf)

    @property
    def content_length(self) -> int:
        return len(self._buf)

    def remaining(self, state: TransferState) -> int:
        return len(self._buf) - state.bytes_sent

    def take(self, state: TransferState, requested_size: int) -> bytes:
        """Copy the next chunk for `state` and advance its cursor."""
        n = max(0, min(requested_size, self.remaining(state)))
        if n == 0:
            return b""
        start = state.bytes_sent
        chunk = self._view[start:start + n].tobytes()
        state.bytes_sent = start + n
        return chunk

    async def next_chunk(self, state: TransferState, requested_size: int) -> bytes:
        """Async pull; sleeps `state.delay` before each non-empty chunk."""
        if state.delay > 0 and self.remaining(state) > 0:
            await asyncio.sleep(state.delay)
        return self.take(state, requested_size)

    async def stream(self, state: TransferState, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
        """Async generator used as the aiohttp request body."""
        while True:
            chunk = await self.next_chunk(state, chunk_size)
            if not chunk:
                return
            yield chunk

    def reader(self, state: TransferState, chunk_size: int = DEFAULT_CHUNK_SIZE) -> "BodyReader":
        return BodyReader(self, state, chunk_size)


class BodyReader:
    """
    Blocking file-like view of the body for one transfer.

    `__len__` lets requests declare Content-Length up front; http.client then
    pulls the body through `read()` block by block.
    """

    def __init__(self, source: BodySource, state: TransferState, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self._source = source
        self._state = state
        self._chunk_size = chunk_size

    def __len__(self) -> int:
        return self._source.content_length

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            size = self._chunk_size
        size = min(size, self._chunk_size)
        if self._state.delay > 0 and self._source.remaining(self._state) > 0:
            time.sleep(self._state.delay)
        return self._source.take(self._state, size)
