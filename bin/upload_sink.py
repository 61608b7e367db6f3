#!/usr/bin/env python3
"""
FLOW-UL Upload Sink

Minimal aiohttp target for local load runs. Every PUT/POST body is drained
and discarded, then answered with the next status of a repeating cycle,
e.g. `--status 200:7,500:3` answers seven 200s, then three 500s, then again.

Usage:
    python upload_sink.py --port 8080 --status 200:7,500:3
    python upload_bench.py -u http://127.0.0.1:8080/upload -c 10

Author: FLOW-UL Team
"""

from __future__ import annotations

import argparse
import itertools
from dataclasses import dataclass, field
from typing import Optional

from aiohttp import web


DRAIN_CHUNK = 64 * 1024


def parse_status_cycle(value: str) -> list[int]:
    """Expand `200:7,500:3` (or just `200`) into one status per request."""
    cycle: list[int] = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        code_str, _, count_str = part.partition(":")
        code = int(code_str)
        count = int(count_str) if count_str else 1
        if not 100 <= code <= 599 or count < 1:
            raise ValueError(f"bad status entry: {part!r}")
        cycle.extend([code] * count)
    if not cycle:
        raise ValueError("status cycle is empty")
    return cycle


@dataclass
class SinkStats:
    """What the sink has seen so far."""
    requests: int = 0
    bytes_received: int = 0
    body_sizes: list[int] = field(default_factory=list)
    content_lengths: list[Optional[int]] = field(default_factory=list)


STATS_KEY = web.AppKey("stats", SinkStats)


def create_app(statuses: Optional[list[int]] = None, *, reply_early: bool = False) -> web.Application:
    """
    Build the sink application.

    Args:
        statuses: Status cycle; defaults to always 200
        reply_early: Answer before reading the body (exercises early-response handling)
    """
    cycle = itertools.cycle(statuses or [200])
    stats = SinkStats()

    async def handle_upload(request: web.Request) -> web.Response:
        status = next(cycle)
        stats.requests += 1
        stats.content_lengths.append(request.content_length)

        if reply_early:
            stats.body_sizes.append(0)
            return web.Response(status=status, text=f"{status}\n")

        received = 0
        async for chunk in request.content.iter_chunked(DRAIN_CHUNK):
            received += len(chunk)
        stats.bytes_received += received
        stats.body_sizes.append(received)

        return web.Response(status=status, text=f"received {received} bytes\n")

    app = web.Application(client_max_size=1024 ** 3)
    app[STATS_KEY] = stats
    app.router.add_route("PUT", "/{tail:.*}", handle_upload)
    app.router.add_route("POST", "/{tail:.*}", handle_upload)
    return app


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="FLOW-UL upload sink (local target server)")
    p.add_argument("--host", type=str, default="127.0.0.1")
    p.add_argument("--port", type=int, default=8080)
    p.add_argument("--status", type=str, default="200",
                   help="Status cycle, e.g. 200 or 200:7,500:3")
    p.add_argument("--reply-early", action="store_true",
                   help="Respond without reading the request body")
    args = p.parse_args()

    try:
        args.statuses = parse_status_cycle(args.status)
    except ValueError as e:
        p.error(str(e))
    return args


def main() -> None:
    args = parse_args()
    print(f"[Sink] Listening on http://{args.host}:{args.port} | statuses={args.status}")
    web.run_app(create_app(args.statuses, reply_early=args.reply_early), host=args.host, port=args.port, print=None)


if __name__ == "__main__":
    main()
