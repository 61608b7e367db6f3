"""
Tests for the Concurrency Engine.

Covers draining every transfer, completion-to-slot correlation, tallying of
statuses and transport errors, fatal loop errors and per-transfer delay.
"""

from __future__ import annotations

import asyncio

import pytest

from body_source import BodySource, TransferOutcome, TransferStatus
from errors import FatalEngineError
from result_stats import ResultAggregator
from transfer_engine import EngineState, TransferEngine
from transfer_pool import PoolConfig, TransferPool
from transports import AiohttpTransport, RequestsTransport
from upload_sink import STATS_KEY


def make_engine(pool: TransferPool, **kwargs) -> TransferEngine:
    kwargs.setdefault("poll_interval", 0.05)
    kwargs.setdefault("progress", False)
    kwargs.setdefault("on_complete", None)
    return TransferEngine(pool, ResultAggregator(len(pool)), **kwargs)


# ── draining ──


class TestDrain:
    async def test_all_transfers_complete(self, fake_transport) -> None:
        transport = fake_transport()
        async with TransferPool(PoolConfig(concurrency=16, url="http://x/"), transport) as pool:
            engine = make_engine(pool)
            report = await engine.run()

            assert engine.state is EngineState.DRAINED
            assert engine.in_flight == 0
            assert engine.pending_states() == []
            assert all(s.status is TransferStatus.COMPLETED for s in pool.states)

        assert report.counts == {200: 16}
        assert report.completed == report.total_transfers == 16
        assert sorted(i for i, _ in report.completions) == list(range(16))
        assert report.bytes_sent == 16 * 1024
        assert sorted(transport.sent) == list(range(16))

    async def test_out_of_order_completions_map_to_their_own_slot(self, fake_transport) -> None:
        n = 8

        async def behaviour(state):
            # Later slots finish first
            await asyncio.sleep((n - state.index) * 0.02)
            return TransferOutcome(status_code=200 + state.index, bytes_sent=state.index)

        async with TransferPool(PoolConfig(concurrency=n, url="http://x/"),
                                fake_transport(behaviour=behaviour)) as pool:
            engine = make_engine(pool, poll_interval=0.01)
            report = await engine.run()

            for index, outcome in report.completions:
                assert outcome.bytes_sent == index
                assert outcome.status_code == 200 + index
                assert pool.states[index].outcome is outcome

        assert report.completions[0][0] == n - 1
        assert report.completions[-1][0] == 0

    async def test_single_transfer(self, start_sink) -> None:
        server = await start_sink()
        transport = AiohttpTransport(BodySource(16 * 1024), chunk_size=4096)
        async with TransferPool(PoolConfig(concurrency=1, url=str(server.make_url("/upload"))), transport) as pool:
            report = await make_engine(pool).run()

        assert report.counts == {200: 1}
        assert report.bytes_sent == 16 * 1024

    async def test_callback_sees_every_completion(self, fake_transport) -> None:
        seen: list[tuple[int, int]] = []
        async with TransferPool(PoolConfig(concurrency=5, url="http://x/"), fake_transport()) as pool:
            engine = make_engine(pool, on_complete=lambda i, o: seen.append((i, o.status_code)))
            await engine.run()

        assert sorted(seen) == [(i, 200) for i in range(5)]


# ── tallying ──


class TestTally:
    async def test_mixed_statuses_from_sink(self, start_sink) -> None:
        server = await start_sink([200] * 7 + [500] * 3)
        transport = AiohttpTransport(BodySource(16 * 1024), chunk_size=4096)
        async with TransferPool(PoolConfig(concurrency=10, url=str(server.make_url("/upload"))), transport) as pool:
            report = await make_engine(pool).run()

        assert report.counts == {200: 7, 500: 3}
        assert report.successes == 7
        assert server.app[STATS_KEY].requests == 10

    async def test_transport_failures_are_tallied_not_fatal(self, fake_transport) -> None:
        def behaviour(state):
            if state.index % 2:
                return TransferOutcome.failure(ConnectionResetError("connection reset by peer"))
            return TransferOutcome(status_code=204)

        async with TransferPool(PoolConfig(concurrency=6, url="http://x/"),
                                fake_transport(behaviour=behaviour)) as pool:
            engine = make_engine(pool)
            report = await engine.run()

        assert engine.state is EngineState.DRAINED
        assert report.counts == {204: 3, "error:ConnectionResetError": 3}
        assert report.fatal_error is None

    async def test_unreachable_target_yields_error_buckets(self, closed_port) -> None:
        transport = AiohttpTransport(BodySource(1024))
        async with TransferPool(PoolConfig(concurrency=3, url=f"http://127.0.0.1:{closed_port}/"), transport) as pool:
            report = await make_engine(pool).run()

        assert report.completed == 3
        assert all(isinstance(code, str) and code.startswith("error:") for code in report.counts)
        assert sum(report.counts.values()) == 3

    async def test_threads_engine(self, start_sink) -> None:
        server = await start_sink([201])
        body = BodySource(16 * 1024)
        async with RequestsTransport(body, chunk_size=4096, max_workers=4) as transport:
            async with TransferPool(PoolConfig(concurrency=4, url=str(server.make_url("/upload"))),
                                    transport) as pool:
                report = await make_engine(pool).run()

        assert report.counts == {201: 4}
        assert report.bytes_sent == 4 * 16 * 1024


# ── failure and misuse ──


class TestFatal:
    async def test_fatal_error_cancels_in_flight_and_keeps_completions(self, fake_transport) -> None:
        async def behaviour(state):
            if state.index < 2:
                return TransferOutcome(status_code=200)
            if state.index == 2:
                await asyncio.sleep(0.05)
                raise RuntimeError("event loop wait failed")
            await asyncio.sleep(30)
            return TransferOutcome(status_code=200)

        async with TransferPool(PoolConfig(concurrency=5, url="http://x/"),
                                fake_transport(behaviour=behaviour)) as pool:
            engine = make_engine(pool, poll_interval=0.01)
            with pytest.raises(FatalEngineError, match="cannot drive transfers"):
                await engine.run()

            assert engine.state is EngineState.FAILED
            assert engine.in_flight == 0
            assert sorted(i for i, _ in engine.completions()) == [0, 1]
            assert {s.index for s in engine.pending_states()} == {2, 3, 4}

        report = engine.report()
        assert report.counts == {200: 2}
        assert report.fatal_error == "RuntimeError: event loop wait failed"

    async def test_completions_in_the_failing_batch_are_kept(self, fake_transport) -> None:
        for _ in range(5):
            # One event releases every transfer in the same loop iteration
            gate = asyncio.Event()

            async def behaviour(state):
                await gate.wait()
                if state.index == 0:
                    raise RuntimeError("transfer 0 blew up")
                return TransferOutcome(status_code=200)

            async with TransferPool(PoolConfig(concurrency=8, url="http://x/"),
                                    fake_transport(behaviour=behaviour)) as pool:
                engine = make_engine(pool, poll_interval=1.0)
                asyncio.get_running_loop().call_later(0.02, gate.set)
                with pytest.raises(FatalEngineError):
                    await engine.run()

                assert sorted(i for i, _ in engine.completions()) == list(range(1, 8))
                assert [s.index for s in engine.pending_states()] == [0]
                assert all(s.status is TransferStatus.COMPLETED for s in pool.states[1:])

            assert engine.report().counts == {200: 7}

    async def test_cannot_run_twice(self, fake_transport) -> None:
        async with TransferPool(PoolConfig(concurrency=2, url="http://x/"), fake_transport()) as pool:
            engine = make_engine(pool)
            await engine.run()
            with pytest.raises(FatalEngineError):
                await engine.run()
            assert engine.state is EngineState.DRAINED

    async def test_pool_must_be_open(self, fake_transport) -> None:
        pool = TransferPool(PoolConfig(concurrency=2, url="http://x/"), fake_transport())
        engine = make_engine(pool)
        with pytest.raises(FatalEngineError, match="not open"):
            await engine.run()
        assert engine.state is EngineState.IDLE

    def test_rejects_non_positive_poll_interval(self, fake_transport) -> None:
        pool = TransferPool(PoolConfig(concurrency=1, url="http://x/"), fake_transport())
        with pytest.raises(ValueError):
            TransferEngine(pool, poll_interval=0)


# ── delay ──


async def test_delay_slows_only_its_own_transfer(fake_transport) -> None:
    # 1024-byte body pulled in 256-byte chunks: four sleeps per transfer
    async with TransferPool(PoolConfig(concurrency=4, url="http://x/"), fake_transport()) as pool:
        pool.states[0].delay = 0.1
        report = await make_engine(pool, poll_interval=0.01).run()

    outcomes = dict(report.completions)
    assert outcomes[0].elapsed_sec >= 0.35
    assert all(outcomes[i].elapsed_sec < 0.3 for i in (1, 2, 3))
    assert report.completions[-1][0] == 0


async def test_delay_slows_only_its_own_upload_over_aiohttp(start_sink) -> None:
    # 4 KiB body in 1 KiB chunks: four sleeps inside aiohttp's payload writer
    server = await start_sink()
    transport = AiohttpTransport(BodySource(4096), chunk_size=1024)
    async with TransferPool(PoolConfig(concurrency=4, url=str(server.make_url("/upload"))), transport) as pool:
        pool.states[0].delay = 0.1
        report = await make_engine(pool, poll_interval=0.01).run()

    assert report.counts == {200: 4}
    outcomes = dict(report.completions)
    assert outcomes[0].elapsed_sec >= 0.35
    assert all(outcomes[i].elapsed_sec < 0.3 for i in (1, 2, 3))
    assert report.completions[-1][0] == 0
    assert server.app[STATS_KEY].body_sizes == [4096] * 4
