"""
FLOW-UL Result Aggregation and Reporting

Collects completion events into a status-code table and renders the
end-of-run report: console lines, a JSON overview and an optional
per-transfer table (CSV or Parquet via Polars).

Author: FLOW-UL Team
"""

from __future__ import annotations

import json
import time
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import polars as pl

from body_source import TransferOutcome
from errors import TransferStateError


# =============================================================================
# AGGREGATOR
# =============================================================================

@dataclass
class RunReport:
    """Final state of a run."""
    counts: dict[Any, int]
    completions: list[tuple[int, TransferOutcome]]
    total_transfers: int
    elapsed_sec: float = 0.0
    fatal_error: Optional[str] = None

    @property
    def completed(self) -> int:
        return len(self.completions)

    @property
    def successes(self) -> int:
        return sum(1 for _, o in self.completions if o.success)

    @property
    def bytes_sent(self) -> int:
        return sum(o.bytes_sent for _, o in self.completions)


class ResultAggregator:
    """
    Outcome-code -> count table plus the completion log.

    Only the engine's event loop thread calls `record()`, one completion at
    a time, so the table has a single writer.
    """

    def __init__(self, total_transfers: int = 0):
        self.total_transfers = total_transfers
        self.counts: Counter = Counter()
        self.completions: list[tuple[int, TransferOutcome]] = []
        self._seen: set[int] = set()

    def record(self, index: int, outcome: TransferOutcome) -> None:
        if index in self._seen:
            raise TransferStateError(f"transfer {index} recorded twice")
        self._seen.add(index)
        self.counts[outcome.code] += 1
        self.completions.append((index, outcome))

    def report(self, elapsed_sec: float = 0.0, fatal_error: Optional[str] = None) -> RunReport:
        return RunReport(
            counts=dict(self.counts),
            completions=list(self.completions),
            total_transfers=self.total_transfers,
            elapsed_sec=elapsed_sec,
            fatal_error=fatal_error,
        )


# =============================================================================
# CONSOLE OUTPUT
# =============================================================================

def format_completion(index: int, outcome: TransferOutcome) -> str:
    """One line per finished transfer."""
    if outcome.status_code is not None:
        return f"HTTP transfer {index} completed with status {outcome.status_code}"
    return f"HTTP transfer {index} failed: {outcome.error_type}: {outcome.error}"


def _sorted_counts(counts: dict[Any, int]) -> list[tuple[Any, int]]:
    # Status codes first in numeric order, then transport-error buckets
    return sorted(counts.items(), key=lambda kv: (isinstance(kv[0], str), kv[0] if isinstance(kv[0], int) else 0, str(kv[0])))


def print_console_report(report: RunReport) -> None:
    """Print the status summary."""
    sep = "=" * 72

    print(f"\n{sep}")
    print("FINAL SUMMARY")
    print(sep)
    print(f"Transfers:        {report.completed} / {report.total_transfers} completed")
    print(f"Successful (2xx): {report.successes}")
    print(f"Body sent:        {report.bytes_sent / 1e6:.2f} MB")
    print(f"Elapsed time:     {report.elapsed_sec:.2f}s")
    if report.fatal_error:
        print(f"Aborted:          {report.fatal_error}")
    print()
    for code, count in _sorted_counts(report.counts):
        print(f"status:{code}, count:{count}")
    print(sep)


# =============================================================================
# FILE OUTPUT
# =============================================================================

def write_overview(path: str, report: RunReport, script_inputs: dict[str, Any]) -> str:
    """Write JSON overview report."""
    completed = report.completed
    elapsed = report.elapsed_sec
    mb = report.bytes_sent / 1e6

    overview = {
        "script_inputs": script_inputs,
        "summary": {
            "total_transfers": report.total_transfers,
            "completed_transfers": completed,
            "successful_transfers": report.successes,
            "success_rate_percent": round((report.successes / completed) * 100.0, 2) if completed else 0.0,
            "uploaded_mb": round(mb, 3),
            "elapsed_sec": round(elapsed, 3),
            "avg_speed_MBps": round(mb / elapsed, 3) if elapsed > 0 else 0.0,
            "fatal_error": report.fatal_error,
        },
        "status_breakdown": [
            {"status": code, "count": count}
            for code, count in _sorted_counts(report.counts)
        ],
        "timestamp_local": time.strftime("%Y-%m-%d %H:%M:%S", time.localtime()),
    }

    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    with out.open("w") as f:
        json.dump(overview, f, indent=2)

    return str(out.resolve())


def results_frame(report: RunReport) -> pl.DataFrame:
    """Per-transfer table in completion order."""
    rows = [
        {
            "completion_order": order,
            "index": index,
            "status_code": outcome.status_code,
            "error_type": outcome.error_type,
            "error": outcome.error,
            "bytes_sent": outcome.bytes_sent,
            "elapsed_sec": outcome.elapsed_sec,
        }
        for order, (index, outcome) in enumerate(report.completions)
    ]
    schema = {
        "completion_order": pl.Int64,
        "index": pl.Int64,
        "status_code": pl.Int64,
        "error_type": pl.Utf8,
        "error": pl.Utf8,
        "bytes_sent": pl.Int64,
        "elapsed_sec": pl.Float64,
    }
    return pl.DataFrame(rows, schema=schema)


def write_results(path: str, report: RunReport) -> str:
    """Write the per-transfer table; format follows the file extension."""
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    df = results_frame(report)

    if out.suffix == ".parquet":
        df.write_parquet(out)
    elif out.suffix in (".csv", ".txt"):
        df.write_csv(out)
    else:
        raise ValueError(f"Unsupported results format: {out.suffix or '(none)'}")

    return str(out.resolve())
