"""Command-line interface for the Bitcoin graph importer."""

import signal
import sys
from typing import Optional
import click
import structlog

from btc_graph.core.chain_reader import ChainReader
from btc_graph.core.pipeline import PipelineDriver
from btc_graph.core.progress import progress_percentage
from btc_graph.database.gateway import StorageGateway
from btc_graph.models.config import ImporterConfig
from btc_graph.utils.logging import setup_logging

logger = structlog.get_logger(__name__)


@click.group()
@click.option('--config-file', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--log-level', '-l', default='INFO',
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR']),
              help='Logging level')
@click.pass_context
def cli(ctx, config_file: Optional[str], log_level: str):
    """Bitcoin Core to ArangoDB graph importer."""
    ctx.ensure_object(dict)

    try:
        if config_file:
            config = ImporterConfig(_env_file=config_file)
        else:
            config = ImporterConfig()

        config.log_level = log_level

        ctx.obj['config'] = config

    except Exception as e:
        click.echo(f"Error loading configuration: {e}", err=True)
        sys.exit(1)


def _install_stop_handlers(driver: PipelineDriver) -> dict:
    """First interrupt stops at the next block boundary, a second one aborts."""
    def handle_interrupt(sig, frame):
        if driver.stop_requested:
            raise KeyboardInterrupt
        click.echo("\n🛑 Stopping after the current block (press Ctrl+C again to abort)", err=True)
        driver.request_stop()

    def handle_terminate(sig, frame):
        driver.request_stop()

    return {
        signal.SIGINT: signal.signal(signal.SIGINT, handle_interrupt),
        signal.SIGTERM: signal.signal(signal.SIGTERM, handle_terminate),
    }


@cli.command(name='import')
@click.option('--clean', is_flag=True,
              help='Truncate every collection and exit')
@click.option('--async', 'async_mode', is_flag=True,
              help='Process transactions, inputs and outputs concurrently')
@click.option('--retries', type=int, default=None,
              help='Retries on write-write conflicts')
@click.option('--max-workers', type=int, default=None,
              help='Worker processes importing disjoint height ranges')
@click.option('--dont-overwrite', is_flag=True,
              help='Fail instead of replacing documents that already exist')
@click.option('--batch-size', type=int, default=None,
              help='Documents buffered per collection before a bulk import')
@click.option('--perf', count=True,
              help='Performance instrumentation (repeat for more)')
@click.option('--verbose', '-v', count=True,
              help='Log transactions (-vv inputs, outputs and addresses)')
@click.option('--debug', '-d', count=True,
              help='Log offending payloads (-dd tracebacks)')
@click.pass_context
def import_blocks(ctx, clean: bool, async_mode: bool, retries: Optional[int],
                  max_workers: Optional[int], dont_overwrite: bool, batch_size: Optional[int],
                  perf: int, verbose: int, debug: int):
    """Import the chain, resuming after the highest stored block."""
    config = ctx.obj['config']

    config.async_mode = config.async_mode or async_mode
    config.overwrite = config.overwrite and not dont_overwrite
    config.perf = max(config.perf, perf)
    config.verbose = max(config.verbose, verbose)
    config.debug = max(config.debug, debug)
    if retries is not None:
        config.conflict_retries = retries
    if max_workers is not None:
        config.max_workers = max_workers
    if batch_size is not None:
        config.batch_size = batch_size

    setup_logging(config)

    try:
        driver = PipelineDriver(config, clean=clean)
    except Exception as e:
        click.echo(f"❌ Failed to initialize importer: {e}", err=True)
        sys.exit(1)

    previous_handlers = _install_stop_handlers(driver)

    try:
        if clean:
            click.echo("🧹 Truncating all collections...")
        else:
            click.echo("🔄 Starting import...")
        outcome = driver.run()
    except KeyboardInterrupt:
        click.echo("\n🛑 Import aborted by user", err=True)
        sys.exit(1)
    finally:
        for signum, handler in previous_handlers.items():
            signal.signal(signum, handler)

    stats = outcome.stats
    click.echo(f"📊 Blocks: {stats['blocks']:,}  Transactions: {stats['transactions']:,}  "
               f"Elapsed: {stats['elapsed']}")

    if outcome.exit_code != 0:
        for failure in outcome.failures:
            click.echo(f"❌ {failure}", err=True)
        sys.exit(outcome.exit_code)

    if outcome.stopped:
        click.echo("✅ Import stopped by user")
    else:
        click.echo("✅ Import completed successfully")


@cli.command()
@click.pass_context
def status(ctx):
    """Show import progress and collection sizes."""
    config = ctx.obj['config']
    setup_logging(config)

    chain_reader = ChainReader(config)
    gateway = StorageGateway(config)

    try:
        tip = chain_reader.get_chain_tip()
        last_block = gateway.get_last_block()
        counts = gateway.collection_counts()

        stored_height = last_block['height'] if last_block else 0

        click.echo("📊 Bitcoin Graph Import Status")
        click.echo("=" * 40)
        click.echo(f"Chain Tip: {tip['height']:,}")
        click.echo(f"Last Stored Block: {stored_height:,}")
        click.echo(f"Blocks Behind: {max(tip['height'] - stored_height, 0):,}")
        click.echo(f"Import Progress: {progress_percentage(stored_height, tip['height']):.2f}%")

        click.echo("\n🗄️  Collections")
        click.echo("=" * 40)
        for name, count in counts.items():
            click.echo(f"{name}: {count:,}")

    except Exception as e:
        click.echo(f"❌ Failed to get status: {e}", err=True)
        sys.exit(1)
    finally:
        gateway.close()
        chain_reader.close()


@cli.command()
@click.pass_context
def test_connection(ctx):
    """Test connections to Bitcoin Core and ArangoDB."""
    config = ctx.obj['config']
    setup_logging(config)

    chain_reader = ChainReader(config)
    gateway = StorageGateway(config)
    ok = True

    click.echo("🔍 Testing Bitcoin Core RPC connection...")
    if chain_reader.test_connection():
        click.echo("✅ Bitcoin Core RPC connection successful")
    else:
        click.echo("❌ Bitcoin Core RPC connection failed")
        ok = False

    click.echo("🔍 Testing ArangoDB connection...")
    if gateway.test_connection():
        click.echo("✅ ArangoDB connection successful")
    else:
        click.echo("❌ ArangoDB connection failed")
        ok = False

    gateway.close()
    chain_reader.close()

    if not ok:
        sys.exit(1)


@cli.command()
def version():
    """Show version information."""
    from btc_graph import __version__, __description__

    click.echo(f"Bitcoin Graph Importer v{__version__}")
    click.echo(__description__)


if __name__ == '__main__':
    cli()
