"""
ArangoDB storage gateway.

Owns the lifecycle of every document the importer derives:

- collection, index and named graph bootstrap
- per-collection buffers flushed with bulk imports
- conflict retry for single-document writes and the address upsert
- resume point lookup and truncation for clean restarts
"""

import json
import threading
import time
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, Optional

import requests
import structlog
from arango import ArangoClient
from arango.exceptions import ArangoError, ArangoServerError

from btc_graph.utils.perf import LatencyTracker
from btc_graph.models.config import ImporterConfig
from btc_graph.models.documents import EDGE_DEFINITIONS, EntityKind

logger = structlog.get_logger(__name__)

# ArangoDB error numbers
ERROR_HTTP_NOT_FOUND = 404
ERROR_ARANGO_CONFLICT = 1200
ERROR_ARANGO_DOCUMENT_NOT_FOUND = 1202
ERROR_ARANGO_DUPLICATE_NAME = 1207
ERROR_ARANGO_UNIQUE_CONSTRAINT_VIOLATED = 1210
ERROR_GRAPH_DUPLICATE = 1925

LAST_BLOCK_QUERY = """
FOR b IN @@collection
    SORT b.height DESC
    LIMIT 1
    RETURN b
"""

# PUSH(..., true) only appends missing values, so replaying a merge is a no-op
MERGE_ADDRESS_QUERY = """
UPSERT { _key: @key }
INSERT { _key: @key, outputs: [@output] }
UPDATE { outputs: PUSH(NOT_NULL(OLD.outputs, []), @output, true) }
IN @@collection
RETURN { type: OLD ? 'update' : 'insert' }
"""

# Blocks go last so a stored block implies everything derived from it is stored
FLUSH_ORDER = [kind for kind in EntityKind if kind is not EntityKind.BLOCK] + [EntityKind.BLOCK]


class StorageError(Exception):
    """A storage operation failed for good."""

    def __init__(self, message: str, error: Optional[BaseException] = None,
                 document: Optional[Dict[str, Any]] = None):
        if error is not None:
            message = f"{message}: {error}"
        super().__init__(message)
        self.error = error
        self.document = document
        self.code = getattr(error, 'error_code', None)


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def serialize(document: Any) -> str:
    """JSON serializer for ArangoClient that understands Decimal amounts."""
    return json.dumps(document, default=_json_default)


class StorageGateway:
    """Buffered, conflict-aware access to the graph collections."""

    def __init__(self, config: ImporterConfig, database=None):
        self.config = config
        self.db = database
        self._client: Optional[ArangoClient] = None
        self.logger = logger.bind(component="storage_gateway")

        self._buffers: Dict[EntityKind, Dict[str, Dict[str, Any]]] = {kind: {} for kind in EntityKind}
        self._locks: Dict[EntityKind, threading.Lock] = {kind: threading.Lock() for kind in EntityKind}
        self._save_latency = LatencyTracker("saves", enabled=config.perf >= 2)

    # Connection

    def connect(self):
        """Open the database, creating it through ``_system`` when missing."""
        if self.db is not None:
            return self.db

        self._client = ArangoClient(
            hosts=self.config.arango_url,
            request_timeout=self.config.arango_request_timeout,
            serializer=serialize,
        )

        name = self.config.arango_database
        sys_db = self._client.db('_system',
                                 username=self.config.arango_user,
                                 password=self.config.arango_password)
        try:
            if not sys_db.has_database(name):
                self.logger.info(f"Creating database \"{name}\"")
                sys_db.create_database(name)
        except ArangoServerError as e:
            if e.error_code == ERROR_ARANGO_DUPLICATE_NAME:
                pass
            elif e.http_code in (401, 403):
                self.logger.warning("Cannot inspect databases, assuming it exists",
                                    database=name, error=str(e))
            else:
                raise StorageError(f"Creating database \"{name}\" failed", error=e)

        self.db = self._client.db(name,
                                  username=self.config.arango_user,
                                  password=self.config.arango_password)

        self.logger.info("Storage gateway connected",
                         url=self.config.arango_url,
                         database=name)
        return self.db

    def test_connection(self) -> bool:
        try:
            self.connect()
            version = self.db.version()
            self.logger.info("ArangoDB connection successful", version=version)
            return True
        except (ArangoError, StorageError, requests.RequestException) as e:
            self.logger.error("ArangoDB connection failed", error=str(e))
            return False

    def close(self):
        if self._client is not None:
            self._client.close()
            self._client = None

    def _collection(self, kind: EntityKind):
        return self.connect().collection(kind.collection)

    # Bootstrap

    def ensure_collections_exist(self) -> None:
        """Create missing collections, the height index and the named graph."""
        self.connect()

        for kind in EntityKind:
            self._get_or_create_collection(kind)

        try:
            self._collection(EntityKind.BLOCK).add_persistent_index(fields=['height'])
        except ArangoServerError as e:
            raise StorageError("Creating index on block height failed", error=e)

        if self.config.arango_create_graph:
            self._get_or_create_graph()

    def _get_or_create_collection(self, kind: EntityKind) -> None:
        name = kind.collection

        try:
            if self.db.has_collection(name):
                return
        except ArangoServerError as e:
            raise StorageError(f"Getting collection \"{name}\" failed", error=e)

        self.logger.info(f"Creating collection \"{name}\"", edge=kind.is_edge)
        try:
            self.db.create_collection(name, edge=kind.is_edge)
        except ArangoServerError as e:
            # Another importer created it in the meantime
            if e.error_code != ERROR_ARANGO_DUPLICATE_NAME:
                raise StorageError(f"Creating collection \"{name}\" failed", error=e)

    def _get_or_create_graph(self) -> None:
        name = self.config.arango_graph

        try:
            if self.db.has_graph(name):
                return
        except ArangoServerError as e:
            raise StorageError(f"Getting graph \"{name}\" failed", error=e)

        edge_definitions = [
            {
                'edge_collection': edge.collection,
                'from_vertex_collections': [source.collection],
                'to_vertex_collections': [target.collection],
            }
            for edge, source, target in EDGE_DEFINITIONS
        ]

        self.logger.info(f"Creating graph \"{name}\"")
        try:
            self.db.create_graph(name, edge_definitions=edge_definitions)
        except ArangoServerError as e:
            if e.error_code != ERROR_GRAPH_DUPLICATE:
                raise StorageError(f"Creating graph \"{name}\" failed", error=e)

    # Resume point

    def get_last_block(self) -> Optional[Dict[str, Any]]:
        """Stored block with the greatest height, or None for an empty store."""
        try:
            cursor = self.connect().aql.execute(
                LAST_BLOCK_QUERY,
                bind_vars={'@collection': EntityKind.BLOCK.collection},
            )
            return next(iter(cursor), None)
        except ArangoServerError as e:
            raise StorageError("Querying the last stored block failed", error=e)

    def get_resume_height(self) -> int:
        last_block = self.get_last_block()
        if last_block is None:
            return self.config.genesis_height
        return last_block['height']

    # Buffered writes

    def save(self, record) -> None:
        """
        Buffer a record for bulk import.

        A record with the same key as a buffered one replaces it. Reaching
        ``batch_size`` flushes the buffer; a full block buffer flushes
        everything, blocks last.
        """
        started = time.perf_counter()
        kind = record.kind
        document = record.to_document()

        with self._locks[kind]:
            buffer = self._buffers[kind]
            buffer[document['_key']] = document
            full = len(buffer) >= self.config.batch_size

        if full:
            if kind is EntityKind.BLOCK:
                self.flush_all()
            else:
                self._flush(kind)

        self._save_latency.observe(time.perf_counter() - started)

    def pending(self, kind: EntityKind) -> int:
        with self._locks[kind]:
            return len(self._buffers[kind])

    def flush_all(self) -> int:
        """Import every non-empty buffer; returns the number of documents written."""
        return sum(self._flush(kind) for kind in FLUSH_ORDER)

    def _flush(self, kind: EntityKind) -> int:
        # The lock stays held during the import so lookups never miss a document in flight
        with self._locks[kind]:
            buffer = self._buffers[kind]
            if not buffer:
                return 0

            documents = list(buffer.values())
            self._import(kind, documents)
            buffer.clear()
            return len(documents)

    def _import(self, kind: EntityKind, documents: list) -> None:
        on_duplicate = 'replace' if self.config.overwrite else 'error'

        try:
            result = self._collection(kind).import_bulk(
                documents,
                halt_on_error=True,
                details=True,
                on_duplicate=on_duplicate,
            )
        except ArangoServerError as e:
            raise StorageError(f"Importing {len(documents)} {kind.value} documents failed", error=e)

        if result.get('errors'):
            raise StorageError(
                f"Importing {len(documents)} {kind.value} documents failed "
                f"with {result['errors']} errors: {result.get('details')}"
            )

        self.logger.debug("Imported documents",
                          collection=kind.collection,
                          created=result.get('created', 0),
                          updated=result.get('updated', 0),
                          verbosity=1)

    # Reads

    def get_output(self, key: str) -> Optional[Dict[str, Any]]:
        """Output document from the buffer or the collection, None when unknown."""
        with self._locks[EntityKind.OUTPUT]:
            document = self._buffers[EntityKind.OUTPUT].get(key)
        if document is not None:
            return dict(document)

        try:
            return self._collection(EntityKind.OUTPUT).get(key)
        except ArangoServerError as e:
            if e.error_code in (ERROR_ARANGO_DOCUMENT_NOT_FOUND, ERROR_HTTP_NOT_FOUND):
                return None
            raise StorageError(f"Retrieving output \"{key}\" failed", error=e)

    def count(self, kind: EntityKind) -> int:
        try:
            return self._collection(kind).count()
        except ArangoServerError as e:
            raise StorageError(f"Counting documents in collection \"{kind.collection}\" failed", error=e)

    def collection_counts(self) -> Dict[str, int]:
        return {kind.collection: self.count(kind) for kind in EntityKind}

    # Immediate writes

    def save_single(self, record, overwrite: Optional[bool] = None) -> Dict[str, Any]:
        """
        Write one record immediately.

        An existing document is replaced unless overwriting is disabled, in
        which case the unique constraint violation is fatal.
        """
        allow_overwrite = self.config.overwrite if overwrite is None else overwrite
        kind = record.kind
        document = record.to_document()
        key = document['_key']
        collection = self._collection(kind)

        try:
            return self._with_conflict_retry(collection.insert, document)
        except ArangoServerError as e:
            if e.error_code != ERROR_ARANGO_UNIQUE_CONSTRAINT_VIOLATED or not allow_overwrite:
                raise StorageError(f"Saving {kind.value} \"{key}\" failed", error=e, document=document)

        self.logger.warning(f"Saving {kind.value} \"{key}\" failed because it exists. Overwriting...",
                            payload=document)
        try:
            return self._with_conflict_retry(collection.replace, document)
        except ArangoServerError as e:
            raise StorageError(f"Overwriting {kind.value} \"{key}\" failed", error=e, document=document)

    def merge_address(self, address: str, output: str) -> str:
        """
        Add ``output`` to the outputs received by ``address``.

        Runs as a single server-side UPSERT. Concurrent upserts of a new key
        race on the unique key, so that error is retried like a write conflict;
        the retry sees the winner's document and updates it.
        """
        bind_vars = {
            '@collection': EntityKind.ADDRESS.collection,
            'key': address,
            'output': output,
        }

        try:
            cursor = self._with_conflict_retry(
                self.connect().aql.execute,
                MERGE_ADDRESS_QUERY,
                bind_vars=bind_vars,
                retryable=(ERROR_ARANGO_CONFLICT, ERROR_ARANGO_UNIQUE_CONSTRAINT_VIOLATED),
            )
        except ArangoServerError as e:
            raise StorageError(f"Merging address \"{address}\" failed", error=e,
                               document={'_key': address, 'output': output})

        result = next(iter(cursor), None) or {}
        return result.get('type', 'update')

    def _with_conflict_retry(self, operation: Callable, *args,
                             retryable: Iterable[int] = (ERROR_ARANGO_CONFLICT,), **kwargs):
        """Run ``operation``, retrying up to ``conflict_retries`` times on the given error numbers."""
        retries_left = self.config.conflict_retries

        while True:
            try:
                return operation(*args, **kwargs)
            except ArangoServerError as e:
                if e.error_code not in retryable or retries_left <= 0:
                    raise
                retries_left -= 1
                self.logger.debug("Write conflict, retrying",
                                  error_code=e.error_code,
                                  retries_left=retries_left,
                                  verbosity=2)
                # Yield so the contending writer can finish
                time.sleep(0)

    # Maintenance

    def clean(self) -> None:
        """Truncate every managed collection and drop pending buffers."""
        self.connect()

        for kind in EntityKind:
            with self._locks[kind]:
                self._buffers[kind].clear()

            try:
                if self.db.has_collection(kind.collection):
                    self.db.collection(kind.collection).truncate()
                    self.logger.info(f"Truncated collection \"{kind.collection}\"")
            except ArangoServerError as e:
                raise StorageError(f"Truncating collection \"{kind.collection}\" failed", error=e)
