"""
FLOW-UL Transports

A transport knows how to bind a per-transfer handle (endpoint, headers,
resolve override) and how to run one streamed upload to its terminal
outcome. Transport-level failures are returned as outcomes, never raised.

- AiohttpTransport:  all transfers multiplexed on the running event loop.
- RequestsTransport: one blocking requests.Session per transfer, executed on
                     a bounded ThreadPoolExecutor; completions are awaited
                     back on the event loop.

Author: FLOW-UL Team
"""

from __future__ import annotations

import asyncio
import ipaddress
import socket
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import aiohttp
import requests
from aiohttp.abc import AbstractResolver
from aiohttp.resolver import DefaultResolver
from requests.adapters import HTTPAdapter
from yarl import URL

from body_source import BodySource, TransferOutcome, TransferState, DEFAULT_CHUNK_SIZE
from errors import InitializationError


USER_AGENT = "FLOW-UL/1.0"
CONTENT_TYPE = "text/plain"
RESPONSE_CHUNK = 64 * 1024


# =============================================================================
# RESOLVE OVERRIDE (--resolve [+]host:port:addr[,addr]...)
# =============================================================================

@dataclass(frozen=True)
class ResolveOverride:
    """Static address list for one host:port pair."""
    host: str
    port: int
    addresses: tuple[str, ...]

    def __str__(self) -> str:
        addrs = ",".join(f"[{a}]" if ":" in a else a for a in self.addresses)
        return f"{self.host}:{self.port}:{addrs}"


def _split_host(entry: str) -> tuple[str, str]:
    """Split `host:rest`, honouring a bracketed IPv6 host."""
    if entry.startswith("["):
        end = entry.find("]")
        if end < 0 or entry[end + 1:end + 2] != ":":
            raise ValueError(f"bad bracketed host in {entry!r}")
        return entry[1:end], entry[end + 2:]
    host, sep, rest = entry.partition(":")
    if not sep:
        raise ValueError(f"missing port in {entry!r}")
    return host, rest


def parse_resolve(value: str) -> ResolveOverride:
    """
    Parse a curl-style resolve entry.

    Accepts `host:port:addr[,addr]...` with an optional leading `+`.
    IPv6 addresses may be bracketed.

    Raises:
        ValueError: On any malformed part
    """
    entry = value.strip()
    if entry.startswith("+"):
        entry = entry[1:]

    host, rest = _split_host(entry)
    port_str, sep, addr_str = rest.partition(":")
    if not host:
        raise ValueError(f"missing host in {value!r}")
    if not sep or not addr_str:
        raise ValueError(f"missing address list in {value!r}")
    if not port_str.isdigit() or not 0 < int(port_str) < 65536:
        raise ValueError(f"bad port {port_str!r} in {value!r}")

    addresses = []
    for raw in addr_str.split(","):
        addr = raw.strip()
        if addr.startswith("[") and addr.endswith("]"):
            addr = addr[1:-1]
        try:
            ipaddress.ip_address(addr)
        except ValueError:
            raise ValueError(f"bad address {raw!r} in {value!r}") from None
        addresses.append(addr)

    return ResolveOverride(host=host.lower(), port=int(port_str), addresses=tuple(addresses))


class StaticResolver(AbstractResolver):
    """aiohttp resolver that pins one host:port and delegates the rest."""

    def __init__(self, override: ResolveOverride, fallback: Optional[AbstractResolver] = None):
        self._override = override
        self._fallback = fallback

    def _matches(self, host: str, port: int) -> bool:
        return host.lower() == self._override.host and port == self._override.port

    async def resolve(self, host: str, port: int = 0, family: int = socket.AF_INET) -> list[dict[str, Any]]:
        if not self._matches(host, port):
            if self._fallback is None:
                self._fallback = DefaultResolver()
            return await self._fallback.resolve(host, port, family)

        results = []
        for addr in self._override.addresses:
            addr_family = socket.AF_INET6 if ipaddress.ip_address(addr).version == 6 else socket.AF_INET
            if family not in (0, socket.AF_UNSPEC) and family != addr_family:
                continue
            results.append({
                "hostname": host,
                "host": addr,
                "port": port,
                "family": addr_family,
                "proto": 0,
                "flags": socket.AI_NUMERICHOST,
            })
        if not results:
            raise OSError(f"no address of family {family} for {host}:{port}")
        return results

    async def close(self) -> None:
        if self._fallback is not None:
            await self._fallback.close()


# =============================================================================
# SHARED HELPERS
# =============================================================================

def validate_url(url: str) -> URL:
    """Endpoint binding check: absolute http(s) URL with a host."""
    try:
        parsed = URL(url)
    except (TypeError, ValueError) as e:
        raise InitializationError(f"cannot set url: {e}") from e
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise InitializationError(f"cannot set url: {url!r} is not an absolute http(s) URL")
    return parsed


def session_headers() -> dict[str, str]:
    return {"User-Agent": USER_AGENT, "Content-Type": CONTENT_TYPE}


# =============================================================================
# AIOHTTP TRANSPORT
# =============================================================================

class AiohttpTransport:
    """
    Streams every upload on the running event loop.

    Each transfer gets its own ClientSession with a single-connection
    connector, so one slot maps to one connection like a curl easy handle.
    """

    name = "asyncio"

    def __init__(
        self,
        body: BodySource,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        resolve: Optional[ResolveOverride] = None,
    ):
        self.body = body
        self.chunk_size = chunk_size
        self.resolve = resolve

    async def __aenter__(self) -> "AiohttpTransport":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        """Sessions are owned by the pool; nothing shared to release."""

    @asynccontextmanager
    async def bind(self, state: TransferState) -> AsyncIterator[aiohttp.ClientSession]:
        validate_url(state.url)
        resolver = StaticResolver(self.resolve) if self.resolve is not None else None
        try:
            connector = aiohttp.TCPConnector(limit=1, resolver=resolver, force_close=True)
            session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=None),
                headers=session_headers(),
            )
        except (TypeError, ValueError, RuntimeError) as e:
            if resolver is not None:
                await resolver.close()
            raise InitializationError(f"cannot create session: {e}", slot=state.index) from e

        state.handle = session
        try:
            yield session
        finally:
            state.handle = None
            await session.close()
            # The connector does not own a resolver it was handed
            if resolver is not None:
                await resolver.close()

    async def send(self, state: TransferState) -> TransferOutcome:
        session: aiohttp.ClientSession = state.handle
        try:
            async with session.put(
                state.url,
                data=self.body.stream(state, self.chunk_size),
                headers={"Content-Length": str(self.body.content_length)},
            ) as resp:
                async for _ in resp.content.iter_chunked(RESPONSE_CHUNK):
                    pass
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            return TransferOutcome.failure(e, state.bytes_sent, state.elapsed())
        return TransferOutcome(status_code=status, bytes_sent=state.bytes_sent, elapsed_sec=state.elapsed())


# =============================================================================
# REQUESTS TRANSPORT (BOUNDED WORKER POOL)
# =============================================================================

class RequestsTransport:
    """
    Blocking uploads on a ThreadPoolExecutor with one worker per transfer.

    The body delay sleeps inside the worker thread, so it only holds back
    the transfer that thread is producing.
    """

    name = "threads"

    def __init__(
        self,
        body: BodySource,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_workers: int = 1,
        resolve: Optional[ResolveOverride] = None,
    ):
        self.body = body
        self.chunk_size = chunk_size
        self.max_workers = max(1, max_workers)
        self.resolve = resolve
        self._executor: Optional[ThreadPoolExecutor] = None

    async def __aenter__(self) -> "RequestsTransport":
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="flowul")
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._executor is not None:
            executor, self._executor = self._executor, None
            await asyncio.get_running_loop().run_in_executor(None, executor.shutdown, True)

    @asynccontextmanager
    async def bind(self, state: TransferState) -> AsyncIterator[requests.Session]:
        if self.resolve is not None:
            raise InitializationError("cannot set resolve options: not supported by the threads engine", slot=state.index)
        validate_url(state.url)

        session = requests.Session()
        adapter = HTTPAdapter(pool_connections=1, pool_maxsize=1, max_retries=0)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        session.headers.update(session_headers())

        state.handle = session
        try:
            yield session
        finally:
            state.handle = None
            session.close()

    def _send_blocking(self, state: TransferState) -> TransferOutcome:
        session: requests.Session = state.handle
        try:
            with session.put(
                state.url,
                data=self.body.reader(state, self.chunk_size),
                stream=True,
            ) as resp:
                for _ in resp.iter_content(chunk_size=RESPONSE_CHUNK):
                    pass
                status = resp.status_code
        except (requests.RequestException, OSError) as e:
            return TransferOutcome.failure(e, state.bytes_sent, state.elapsed())
        return TransferOutcome(status_code=status, bytes_sent=state.bytes_sent, elapsed_sec=state.elapsed())

    async def send(self, state: TransferState) -> TransferOutcome:
        if self._executor is None:
            raise RuntimeError("RequestsTransport used outside its context")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self._send_blocking, state)


def build_transport(
    engine: str,
    body: BodySource,
    *,
    chunk_size: int,
    concurrency: int,
    resolve: Optional[ResolveOverride] = None,
):
    """Pick the transport for `--engine`."""
    if engine == "asyncio":
        return AiohttpTransport(body, chunk_size=chunk_size, resolve=resolve)
    if engine == "threads":
        return RequestsTransport(body, chunk_size=chunk_size, max_workers=concurrency, resolve=resolve)
    raise ValueError(f"unknown engine: {engine}")
