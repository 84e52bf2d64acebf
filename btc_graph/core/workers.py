"""Multi-process import of disjoint height ranges."""

import signal
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple
import structlog

from btc_graph.core.block_processor import BlockProcessor
from btc_graph.core.chain_reader import ChainReader
from btc_graph.core.progress import ImportStats
from btc_graph.database.gateway import StorageGateway
from btc_graph.models.config import ImporterConfig
from btc_graph.utils.logging import setup_logging

logger = structlog.get_logger(__name__)


@dataclass
class ChunkResult:
    """What a worker reports back for one height range."""
    first_height: int
    last_height: int
    stats: ImportStats
    # Rendered as strings since server errors do not survive pickling
    error: Optional[str] = None
    deferred_errors: List[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.error is not None


def split_heights(first_height: int, last_height: int, chunk_size: int) -> List[Tuple[int, int]]:
    """Inclusive ``(first, last)`` ranges of at most ``chunk_size`` heights."""
    chunk_size = max(chunk_size, 1)
    return [
        (start, min(start + chunk_size - 1, last_height))
        for start in range(first_height, last_height + 1, chunk_size)
    ]


def windows(chunks: List[Tuple[int, int]], size: int) -> Iterator[List[Tuple[int, int]]]:
    size = max(size, 1)
    for start in range(0, len(chunks), size):
        yield chunks[start:start + size]


def _ignore_interrupts() -> None:
    # The parent owns SIGINT and stops scheduling between windows
    signal.signal(signal.SIGINT, signal.SIG_IGN)


def import_chunk(config: ImporterConfig, first_height: int, last_height: int) -> ChunkResult:
    """
    Import heights ``first_height..last_height`` with components of its own.

    Runs in a worker process: the reader, the gateway and its buffers belong
    to this call alone and everything buffered is flushed before returning.
    """
    setup_logging(config)
    log = logger.bind(component="worker", first_height=first_height, last_height=last_height)

    chain_reader = ChainReader(config)
    gateway = StorageGateway(config)
    processor = BlockProcessor(config, gateway)
    stats = ImportStats()
    result = ChunkResult(first_height, last_height, stats)

    log.info(f"Importing blocks #{first_height} to #{last_height}")

    try:
        block_hash = chain_reader.get_block_hash_at_height(first_height)
        for _ in range(first_height, last_height + 1):
            block = chain_reader.get_block(block_hash)
            stats.add(processor.process_block(block))

            block_hash = block.get('nextblockhash')
            if not block_hash:
                break

        gateway.flush_all()
    except Exception as e:
        log.error("Worker failed", error=str(e), exc_info=True)
        result.error = f"{type(e).__name__}: {e}"
    finally:
        processor.close()
        gateway.close()
        chain_reader.close()

    result.deferred_errors = [f"{type(e).__name__}: {e}" for e in processor.deferred_errors]
    return result


def create_pool(config: ImporterConfig) -> ProcessPoolExecutor:
    return ProcessPoolExecutor(max_workers=config.max_workers, initializer=_ignore_interrupts)
