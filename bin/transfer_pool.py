"""
FLOW-UL Transfer Pool

Owns the N TransferStates of a run and the transport handle bound to each.
Every handle goes on an AsyncExitStack the moment it is acquired, so a
failure at slot k releases slots 0..k-1 and nothing else.

Author: FLOW-UL Team
"""

from __future__ import annotations

from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Optional

from body_source import TransferState
from errors import InitializationError


MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 511


@dataclass(frozen=True)
class PoolConfig:
    """Everything every slot is configured with."""
    concurrency: int
    url: str
    delay_sec: float = 0.0

    def __post_init__(self):
        if not MIN_CONCURRENCY <= self.concurrency <= MAX_CONCURRENCY:
            raise ValueError(
                f"concurrency must be integer between {MIN_CONCURRENCY} and {MAX_CONCURRENCY}."
            )
        if self.delay_sec < 0:
            raise ValueError("delay must be non-negative")


class TransferPool:
    """Fixed-size set of identically configured transfers."""

    def __init__(self, config: PoolConfig, transport):
        self.config = config
        self.transport = transport
        self.states: list[TransferState] = []
        self._stack: Optional[AsyncExitStack] = None

    @property
    def is_open(self) -> bool:
        return self._stack is not None

    def __len__(self) -> int:
        return len(self.states)

    async def __aenter__(self) -> "TransferPool":
        await self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def open(self) -> list[TransferState]:
        """
        Initialize all slots.

        Raises:
            InitializationError: If any slot fails; already bound slots are released first
        """
        if self._stack is not None:
            raise InitializationError("transfer pool is already open")

        stack = AsyncExitStack()
        states: list[TransferState] = []
        try:
            for i in range(self.config.concurrency):
                state = TransferState(index=i, url=self.config.url, delay=self.config.delay_sec)
                await stack.enter_async_context(self.transport.bind(state))
                states.append(state)
        except InitializationError as e:
            await stack.aclose()
            if e.slot is None:
                e.slot = len(states)
            raise
        except Exception as e:
            await stack.aclose()
            raise InitializationError(f"cannot initialize transfer {len(states)}: {e}", slot=len(states)) from e
        except BaseException:
            await stack.aclose()
            raise

        self._stack = stack
        self.states = states
        return states

    async def close(self) -> None:
        """Release every bound handle. Safe to call more than once."""
        stack, self._stack = self._stack, None
        if stack is not None:
            await stack.aclose()
        self.states = []
