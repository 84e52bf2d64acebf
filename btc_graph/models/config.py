"""Configuration management using Pydantic settings."""

from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings


class ImporterConfig(BaseSettings):
    """Configuration for the Bitcoin graph importer."""

    # Bitcoin Core RPC Settings
    bitcoin_rpc_host: str = Field(default="localhost", description="Bitcoin Core RPC host")
    bitcoin_rpc_port: int = Field(default=8332, description="Bitcoin Core RPC port")
    bitcoin_rpc_user: str = Field(description="Bitcoin Core RPC username")
    bitcoin_rpc_password: str = Field(description="Bitcoin Core RPC password")
    bitcoin_rpc_timeout: int = Field(default=600, description="RPC timeout in seconds")
    bitcoin_rpc_retry_attempts: int = Field(default=3, description="Transport retries per RPC call")
    bitcoin_rpc_retry_delay: int = Field(default=5, description="Delay between RPC retries in seconds")

    # ArangoDB Settings
    arango_host: str = Field(default="localhost", description="ArangoDB host")
    arango_port: int = Field(default=8529, description="ArangoDB port")
    arango_user: str = Field(default="root", description="ArangoDB username")
    arango_password: str = Field(default="", description="ArangoDB password")
    arango_database: str = Field(default="bitcoin", description="Database name")
    arango_graph: str = Field(default="graph", description="Named graph composed of the edge collections")
    arango_create_graph: bool = Field(default=True, description="Create the named graph on bootstrap")
    arango_request_timeout: int = Field(default=60, description="ArangoDB request timeout in seconds")

    # Import Settings
    batch_size: int = Field(default=1000, description="Documents buffered per collection before bulk import")
    conflict_retries: int = Field(default=3, description="Retries on write-write conflicts")
    overwrite: bool = Field(default=True, description="Replace documents that already exist")
    async_mode: bool = Field(default=False, description="Fan out transactions, inputs and outputs concurrently")
    async_threads: int = Field(default=8, description="Threads per fan-out level in async mode")
    max_workers: int = Field(default=1, description="Worker processes (1 disables multi-process fan-out)")
    worker_chunk_size: int = Field(default=100, description="Consecutive blocks handed to one worker")
    progress_interval: int = Field(default=1000, description="Blocks between progress reports")
    genesis_height: int = Field(default=1, description="Height the first run starts from")

    # Diagnostics
    perf: int = Field(default=0, description="Performance instrumentation level")
    verbose: int = Field(default=0, description="Verbosity level for per-entity logging")
    debug: int = Field(default=0, description="Debug level (payloads at 1, tracebacks at 2)")

    # Logging Settings
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="text", description="Log format (json|text)")
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_max_size_mb: int = Field(default=100, description="Max log file size in MB")
    log_backup_count: int = Field(default=5, description="Number of log backups")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    @property
    def bitcoin_rpc_url(self) -> str:
        """Generate Bitcoin Core RPC URL."""
        return f"http://{self.bitcoin_rpc_host}:{self.bitcoin_rpc_port}"

    @property
    def arango_url(self) -> str:
        """Generate ArangoDB coordinator URL."""
        return f"http://{self.arango_host}:{self.arango_port}"
