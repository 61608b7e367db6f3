"""
FLOW-UL Concurrency Engine

Drives every transfer of an open TransferPool at once on the running event
loop:

    Idle → Running → Drained
              ↓
            Failed   (fatal drive-loop error; in-flight work is cancelled)

Each transfer is one asyncio task. The task -> slot index map is filled when
the task is created, so a finished task is always resolved to its own
TransferState. Completions are handled on the loop thread one at a time,
which keeps the ResultAggregator single-writer.

Author: FLOW-UL Team
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum, auto
from typing import Callable, Optional

from tqdm.asyncio import tqdm

from body_source import TransferOutcome, TransferState, TransferStatus
from errors import FatalEngineError
from result_stats import ResultAggregator, RunReport, format_completion
from transfer_pool import TransferPool


DEFAULT_POLL_INTERVAL = 1.0


class EngineState(Enum):
    IDLE = auto()
    RUNNING = auto()
    DRAINED = auto()
    FAILED = auto()


CompletionCallback = Callable[[int, TransferOutcome], None]


def _print_completion(index: int, outcome: TransferOutcome) -> None:
    tqdm.write(format_completion(index, outcome))


class TransferEngine:
    """
    Runs all transfers of a pool concurrently and aggregates their outcomes.

    There is no backlog: the pool size is the concurrency, and every slot is
    in flight from the start.
    """

    def __init__(
        self,
        pool: TransferPool,
        aggregator: Optional[ResultAggregator] = None,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        progress: bool = True,
        on_complete: Optional[CompletionCallback] = _print_completion,
    ):
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self.pool = pool
        self.transport = pool.transport
        self.aggregator = aggregator if aggregator is not None else ResultAggregator(len(pool))
        self.poll_interval = poll_interval
        self.progress = progress
        self.on_complete = on_complete

        self.state = EngineState.IDLE
        self.fatal_error: Optional[BaseException] = None
        self.elapsed_sec = 0.0
        self._inflight: dict[asyncio.Task, int] = {}
        self._states: dict[int, TransferState] = {}

    @property
    def in_flight(self) -> int:
        return len(self._inflight)

    def completions(self) -> list[tuple[int, TransferOutcome]]:
        return list(self.aggregator.completions)

    def report(self) -> RunReport:
        fatal = f"{type(self.fatal_error).__name__}: {self.fatal_error}" if self.fatal_error else None
        return self.aggregator.report(self.elapsed_sec, fatal)

    async def _run_one(self, state: TransferState) -> TransferOutcome:
        return await self.transport.send(state)

    def _start(self) -> None:
        if self.state is not EngineState.IDLE:
            raise FatalEngineError(f"engine cannot start from {self.state.name}")
        if not self.pool.is_open:
            raise FatalEngineError("transfer pool is not open")

        self.state = EngineState.RUNNING
        for state in self.pool.states:
            state.start()
            task = asyncio.create_task(self._run_one(state), name=f"transfer-{state.index}")
            self._inflight[task] = state.index
            self._states[state.index] = state

    def _finish(self, task: asyncio.Task) -> None:
        index = self._inflight.pop(task)
        state = self._states[index]
        # Anything the transport did not turn into an outcome is an engine bug
        outcome = task.result()
        state.complete(outcome)
        self.aggregator.record(index, outcome)
        if self.on_complete is not None:
            self.on_complete(index, outcome)

    async def _cancel_inflight(self) -> None:
        tasks = list(self._inflight)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()

    async def run(self) -> RunReport:
        """
        Drive every transfer to completion.

        Returns:
            RunReport with counts and the completion-ordered (index, outcome) list

        Raises:
            FatalEngineError: If the drive loop cannot continue; completed
                transfers stay recorded in the aggregator
        """
        self._start()
        start = time.monotonic()
        pbar = tqdm(total=len(self._inflight), desc="Uploading", unit="xfer", disable=not self.progress)

        try:
            while self._inflight:
                done, _ = await asyncio.wait(
                    self._inflight,
                    timeout=self.poll_interval,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                # Record the whole batch before giving up on a failed task
                error: Optional[Exception] = None
                for task in done:
                    try:
                        self._finish(task)
                    except Exception as e:
                        if error is None:
                            error = e
                        continue
                    pbar.update(1)
                if error is not None:
                    raise error
                pbar.set_postfix(sent_MB=f"{self._bytes_sent() / 1e6:.1f}", refresh=False)
        except Exception as e:
            self.state = EngineState.FAILED
            self.fatal_error = e
            raise FatalEngineError(f"cannot drive transfers: {e}") from e
        finally:
            if self._inflight:
                await self._cancel_inflight()
            pbar.close()
            self.elapsed_sec = time.monotonic() - start

        self.state = EngineState.DRAINED
        return self.report()

    def _bytes_sent(self) -> int:
        return sum(s.bytes_sent for s in self._states.values())

    def pending_states(self) -> list[TransferState]:
        return [s for s in self._states.values() if s.status is not TransferStatus.COMPLETED]
