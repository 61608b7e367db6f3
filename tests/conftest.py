"""Shared fixtures for FLOW-UL tests."""

from __future__ import annotations

import asyncio
import socket
from contextlib import asynccontextmanager
from typing import Callable, Optional

import pytest
from aiohttp.test_utils import TestServer

from body_source import BodySource, TransferOutcome, TransferState
from errors import InitializationError
from upload_sink import create_app


SMALL_BODY = 256 * 1024
SMALL_CHUNK = 64 * 1024


class FakeTransport:
    """
    In-memory transport.

    `bind` records acquisition/release per slot and can fail at one slot.
    `send` delegates to `behaviour(state)` (sync or async) for the outcome.
    """

    name = "fake"

    def __init__(self, body: Optional[BodySource] = None, *, fail_at: Optional[int] = None,
                 behaviour: Optional[Callable] = None):
        self.body = body or BodySource(1024)
        self.fail_at = fail_at
        self.behaviour = behaviour
        self.bound: list[int] = []
        self.released: list[int] = []
        self.sent: list[int] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return None

    @asynccontextmanager
    async def bind(self, state: TransferState):
        if state.index == self.fail_at:
            raise InitializationError("cannot set request header: boom", slot=state.index)
        self.bound.append(state.index)
        state.handle = f"handle-{state.index}"
        try:
            yield state.handle
        finally:
            state.handle = None
            self.released.append(state.index)

    async def send(self, state: TransferState) -> TransferOutcome:
        self.sent.append(state.index)
        if self.behaviour is not None:
            result = self.behaviour(state)
            if asyncio.iscoroutine(result):
                result = await result
            return result
        while await self.body.next_chunk(state, 256):
            pass
        return TransferOutcome(status_code=200, bytes_sent=state.bytes_sent, elapsed_sec=state.elapsed())


@pytest.fixture
def fake_transport() -> type[FakeTransport]:
    return FakeTransport


@pytest.fixture
def small_body() -> BodySource:
    return BodySource(SMALL_BODY)


@pytest.fixture
async def start_sink():
    """Start in-process upload sinks; all are closed after the test."""
    servers: list[TestServer] = []

    async def _start(statuses: Optional[list[int]] = None, **kwargs) -> TestServer:
        server = TestServer(create_app(statuses, **kwargs))
        await server.start_server()
        servers.append(server)
        return server

    yield _start

    for server in servers:
        await server.close()


@pytest.fixture
def closed_port() -> int:
    """A localhost port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]
