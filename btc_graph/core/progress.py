"""Import counters and progress reporting."""

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional
import structlog

from btc_graph.utils.time import format_duration, get_current_utc

logger = structlog.get_logger(__name__)


@dataclass
class BlockResult:
    """Outcome of processing one block."""
    height: int
    next_block_hash: Optional[str]
    num_transactions: int = 0
    num_inputs: int = 0
    num_outputs: int = 0
    num_addresses: int = 0


@dataclass
class ImportStats:
    """Running totals of one import run."""
    blocks: int = 0
    transactions: int = 0
    inputs: int = 0
    outputs: int = 0
    addresses: int = 0
    last_height: Optional[int] = None
    started_at: datetime = field(default_factory=get_current_utc)
    started_monotonic: float = field(default_factory=time.monotonic)

    def add(self, result: BlockResult) -> None:
        self.blocks += 1
        self.transactions += result.num_transactions
        self.inputs += result.num_inputs
        self.outputs += result.num_outputs
        self.addresses += result.num_addresses
        self.last_height = max(result.height, self.last_height or 0)

    def merge(self, other: "ImportStats") -> None:
        """Fold a worker's totals into these."""
        self.blocks += other.blocks
        self.transactions += other.transactions
        self.inputs += other.inputs
        self.outputs += other.outputs
        self.addresses += other.addresses
        if other.last_height is not None:
            self.last_height = max(other.last_height, self.last_height or 0)

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self.started_monotonic

    def to_dict(self) -> Dict[str, Any]:
        return {
            "blocks": self.blocks,
            "transactions": self.transactions,
            "inputs": self.inputs,
            "outputs": self.outputs,
            "addresses": self.addresses,
            "last_height": self.last_height,
            "elapsed": format_duration(self.elapsed_seconds),
        }


def progress_percentage(height: int, tip_height: int) -> float:
    """Share of the chain imported, in percent, clamped to [0, 100]."""
    if tip_height <= 0:
        return 0.0
    return max(0.0, min(100.0, height / tip_height * 100))


class ProgressReporter:
    """
    Emits a status line every ``interval`` blocks.

    Purely observational: nothing in the pipeline depends on its state.
    """

    def __init__(self, stats: ImportStats, tip_height: int, interval: int = 1000):
        self.stats = stats
        self.tip_height = tip_height
        self.interval = max(interval, 1)
        self.logger = logger.bind(component="progress")
        self._lap_started = time.monotonic()
        self._lap_transactions = 0

    def record(self, result: BlockResult) -> Optional[Dict[str, Any]]:
        """Account for a finished block; returns the report when one was emitted."""
        self.stats.add(result)
        self._lap_transactions += result.num_transactions

        if result.height % self.interval != 0:
            return None

        return self.report(result.height)

    def record_stats(self, stats: ImportStats) -> None:
        """Account for the totals of a range imported by a worker."""
        self.stats.merge(stats)
        self._lap_transactions += stats.transactions

    def report(self, height: int) -> Dict[str, Any]:
        now = time.monotonic()
        lap_seconds = now - self._lap_started
        throughput = self._lap_transactions / lap_seconds if lap_seconds > 0 else 0.0

        report = {
            "height": height,
            "tip": self.tip_height,
            "percent": round(progress_percentage(height, self.tip_height)),
            "lap_transactions": self._lap_transactions,
            "lap_seconds": round(lap_seconds),
            "tx_per_second": round(throughput, 1),
        }

        self.logger.info(f"Progress: {height}/{self.tip_height} ({report['percent']}%)", **report)

        self._lap_started = now
        self._lap_transactions = 0
        return report

    def summary(self) -> Dict[str, Any]:
        """Final counters of the run."""
        return self.stats.to_dict()
