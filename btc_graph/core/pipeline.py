"""
Import pipeline driver.

Flow:
    BOOTSTRAPPING ──> RUNNING ──> DRAINING ──> TERMINATED
          │                                        ▲
          └──> CLEANING (--clean) ─────────────────┘

Bootstrapping prepares the collections and finds where to start: the chain
successor of the highest stored block, or the configured genesis height for
an empty store. Running walks the chain through ``nextblockhash`` links until
the tip or a stop request. Draining flushes whatever is still buffered.
"""

import threading
from concurrent.futures import wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import structlog

from btc_graph.core.block_processor import BlockProcessor
from btc_graph.core.chain_reader import ChainReader
from btc_graph.core.progress import ImportStats, ProgressReporter
from btc_graph.core.workers import create_pool, import_chunk, split_heights, windows
from btc_graph.database.gateway import StorageGateway
from btc_graph.models.config import ImporterConfig

logger = structlog.get_logger(__name__)


class PipelineState(str, Enum):
    BOOTSTRAPPING = "bootstrapping"
    CLEANING = "cleaning"
    RUNNING = "running"
    DRAINING = "draining"
    TERMINATED = "terminated"


@dataclass
class RunOutcome:
    """Final state of a run as seen by the CLI."""
    state: PipelineState
    stats: Dict[str, Any]
    failures: List[str] = field(default_factory=list)
    stopped: bool = False

    @property
    def exit_code(self) -> int:
        return 1 if self.failures else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "stats": self.stats,
            "failures": self.failures,
            "stopped": self.stopped,
            "exit_code": self.exit_code,
        }


class PipelineDriver:
    """
    Walks the best chain from the resume point to the tip.

    Blocks are processed strictly in chain order, each one fully before the
    stop flag is looked at again. With ``max_workers > 1`` the remaining
    heights are split into ranges imported by worker processes instead.
    """

    def __init__(self, config: ImporterConfig, chain_reader: Optional[ChainReader] = None,
                 gateway: Optional[StorageGateway] = None, processor: Optional[BlockProcessor] = None,
                 clean: bool = False):
        self.config = config
        self.chain_reader = chain_reader or ChainReader(config)
        self.gateway = gateway or StorageGateway(config)
        self.processor = processor or BlockProcessor(config, self.gateway)
        self.clean = clean

        self.state = PipelineState.BOOTSTRAPPING
        self.stats = ImportStats()
        self.logger = logger.bind(component="pipeline")

        self._stop = threading.Event()
        self._failures: List[str] = []

    # Control

    def request_stop(self) -> None:
        """Finish the block in progress, then drain and terminate."""
        if not self._stop.is_set():
            self.logger.info("Stop requested, finishing the current block")
        self._stop.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def _enter(self, state: PipelineState) -> None:
        self.logger.debug(f"Pipeline {self.state.value} -> {state.value}")
        self.state = state

    # Run

    def run(self) -> RunOutcome:
        self.logger.info("Starting import",
                         async_mode=self.config.async_mode,
                         max_workers=self.config.max_workers,
                         batch_size=self.config.batch_size,
                         overwrite=self.config.overwrite)

        reached_running = False

        try:
            self.gateway.ensure_collections_exist()

            if self.clean:
                self._enter(PipelineState.CLEANING)
                self.gateway.clean()
                self.logger.info("Cleaned all collections")
            else:
                start_hash, start_height, tip_height = self._bootstrap()

                if start_hash is None:
                    self.logger.info(f"Already up to date at block #{start_height - 1}")
                else:
                    self._enter(PipelineState.RUNNING)
                    reached_running = True

                    if self.config.max_workers > 1:
                        self._run_workers(start_height, tip_height)
                    else:
                        self._run_blocks(start_hash, tip_height)

        except Exception as e:
            self.logger.error("Import failed", error=str(e), exc_info=True)
            self._failures.append(f"{type(e).__name__}: {e}")

        finally:
            if reached_running:
                self._drain()
            self._terminate()

        return RunOutcome(
            state=self.state,
            stats=self.stats.to_dict(),
            failures=list(self._failures),
            stopped=self.stop_requested,
        )

    def _bootstrap(self) -> Tuple[Optional[str], int, int]:
        """Returns the first block hash to import (None when at the tip), its height and the tip height."""
        tip = self.chain_reader.get_chain_tip()
        tip_height = tip['height']

        last_block = self.gateway.get_last_block()
        if last_block is None:
            start_height = self.config.genesis_height
            self.logger.info(f"Starting fresh import at block #{start_height}", tip=tip_height)
            if start_height > tip_height:
                return None, start_height, tip_height
            return self.chain_reader.get_block_hash_at_height(start_height), start_height, tip_height

        last_height = last_block['height']
        header = self.chain_reader.get_block_header(last_block['_key'])
        start_hash = header.get('nextblockhash')

        self.logger.info(f"Resuming import after block #{last_height}", tip=tip_height)
        return start_hash, last_height + 1, tip_height

    def _run_blocks(self, block_hash: str, tip_height: int) -> None:
        reporter = ProgressReporter(self.stats, tip_height, self.config.progress_interval)

        while block_hash:
            if self.stop_requested:
                self.logger.info("Stopping at block boundary", next_block_hash=block_hash)
                break

            block = self.chain_reader.get_block(block_hash)
            result = self.processor.process_block(block)
            reporter.record(result)

            block_hash = result.next_block_hash

    def _run_workers(self, start_height: int, tip_height: int) -> None:
        """
        Import ``start_height..tip_height`` in ranges on a process pool.

        Every window of ``max_workers`` ranges completes before the next one
        is scheduled. A failed range ends the run after its window.
        """
        reporter = ProgressReporter(self.stats, tip_height, self.config.progress_interval)
        chunks = split_heights(start_height, tip_height, self.config.worker_chunk_size)

        self.logger.info(f"Importing {len(chunks)} ranges with {self.config.max_workers} workers")

        with create_pool(self.config) as pool:
            for window in windows(chunks, self.config.max_workers):
                if self.stop_requested:
                    self.logger.info("Stopping at window boundary", next_height=window[0][0])
                    break

                futures = [pool.submit(import_chunk, self.config, first, last) for first, last in window]
                wait(futures)

                failed = False
                for future in futures:
                    result = future.result()
                    reporter.record_stats(result.stats)
                    self._failures.extend(result.deferred_errors)
                    if result.failed:
                        failed = True
                        self._failures.append(
                            f"Blocks #{result.first_height}-#{result.last_height}: {result.error}")

                reporter.report(window[-1][1])

                if failed:
                    self.logger.error("Worker failed, not scheduling further ranges")
                    break

    def _drain(self) -> None:
        self._enter(PipelineState.DRAINING)
        try:
            flushed = self.gateway.flush_all()
            self.logger.info(f"Flushed {flushed} buffered documents")
        except Exception as e:
            self.logger.error("Flushing buffered documents failed", error=str(e), exc_info=True)
            self._failures.append(f"{type(e).__name__}: {e}")

    def _terminate(self) -> None:
        self._enter(PipelineState.TERMINATED)

        self.processor.close()
        self._failures.extend(f"{type(e).__name__}: {e}" for e in self.processor.deferred_errors)

        summary = self.stats.to_dict()
        self.logger.info(f"Processed {summary['blocks']} blocks, {summary['transactions']} transactions, "
                         f"{summary['inputs']} inputs, {summary['outputs']} outputs and "
                         f"{summary['addresses']} addresses in {summary['elapsed']}",
                         **summary)

        for failure in self._failures:
            self.logger.error("Import failure", failure=failure)

        self.gateway.close()
        self.chain_reader.close()
