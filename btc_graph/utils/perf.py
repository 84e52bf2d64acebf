"""Latency instrumentation for RPC and storage calls."""

import threading

import structlog

logger = structlog.get_logger(__name__)


class LatencyTracker:
    """Accumulates call latency and logs it every ``every`` calls."""

    def __init__(self, label: str, every: int = 1000, enabled: bool = True):
        self.label = label
        self.every = every
        self.enabled = enabled
        self.count = 0
        self.lap_seconds = 0.0
        self._lock = threading.Lock()

    def observe(self, seconds: float) -> None:
        if not self.enabled:
            return

        with self._lock:
            self.count += 1
            self.lap_seconds += seconds
            if self.count % self.every != 0:
                return
            count, lap_seconds = self.count, self.lap_seconds
            self.lap_seconds = 0.0

        logger.info(f"{self.every} {self.label} in {lap_seconds:.3f} seconds",
                    component="perf", calls=count)
