"""Embedded Kuzu graph engine adapter.

Owns one Kuzu database and one connection per instance, and implements the
"snapshot / bulk load" pattern: the whole graph is serialized to CSV once and
imported with ``COPY FROM``. Embeddings never travel through the bulk path;
they are attached afterwards with prepared statements.

Lifecycle::

    Uninitialized --(first call)--> Ready --close()--> Uninitialized

Every public operation initializes the engine lazily. Kuzu calls run
synchronously on the calling thread under a lock, so statements execute in
issuance order.
"""

import contextlib
import importlib
import shutil
import tempfile
import threading
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from loguru import logger

from ..config.defaults import (
    EDGES_CSV_FILENAME,
    IN_MEMORY_DB_PATH,
    NODE_CSV_COLUMNS,
    NODES_CSV_FILENAME,
)
from ..config.settings import EngineConfig, SchemaConfig
from .csv_generator import (
    find_dangling_relationships,
    generate_edge_csv,
    generate_node_csv,
)
from .exceptions import (
    BulkLoadError,
    DatabaseInitializationError,
    DatabaseNotInitializedError,
    GraphValidationError,
    PreparedStatementError,
    QueryError,
)
from .models import (
    BulkLoadResult,
    DiagnosticResult,
    FileContents,
    GraphStats,
    KnowledgeGraph,
    OperationResult,
)


def _drain(result: Any) -> list[dict[str, Any]]:
    """Read every row of a Kuzu QueryResult into column-name keyed dicts."""
    if isinstance(result, list):
        # Multi-statement query: keep the rows of the last statement
        rows: list[dict[str, Any]] = []
        for item in result:
            rows = _drain(item)
        return rows

    try:
        columns = result.get_column_names()
        rows = []
        while result.has_next():
            rows.append(dict(zip(columns, result.get_next())))
        return rows
    finally:
        result.close()


def _release_statement(statement: Any) -> None:
    """Release a prepared statement.

    Drivers exposing ``close()`` are closed explicitly; otherwise the last
    reference is dropped by the caller.
    """
    close = getattr(statement, "close", None)
    if callable(close):
        close()


class GraphEngine:
    """Kuzu database + connection with schema, bulk load and query helpers.

    A single instance is created by the pipeline orchestrator and handed to
    every component that needs the graph; nothing else constructs or closes
    the underlying database.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        schema: SchemaConfig | None = None,
        driver: Any = None,
    ) -> None:
        """Create an uninitialized engine.

        Args:
            config: Database construction settings
            schema: Table names and embedding dimension
            driver: Module exposing ``Database`` and ``Connection``
                (defaults to ``kuzu``, imported on first use)
        """
        self.config = config or EngineConfig()
        self.schema = schema or SchemaConfig()
        self._driver = driver
        self._module: Any = None
        self.db: Any = None
        self.conn: Any = None
        self.schema_result: OperationResult | None = None
        self._staging_dir: Path | None = None
        self._owns_staging_dir = False
        self._vector_index_built = False
        self._vector_index_metric: str | None = None

        # Kuzu bindings are not thread-safe; every call goes through this lock
        self._kuzu_lock = threading.Lock()

    # ── lifecycle ───────────────────────────────────────────────────────

    def is_ready(self) -> bool:
        """True once both the database and the connection exist."""
        return self.db is not None and self.conn is not None

    @property
    def is_vector_index_built(self) -> bool:
        return self._vector_index_built

    @property
    def staging_dir(self) -> Path | None:
        return self._staging_dir

    def _load_module(self) -> Any:
        if self._driver is not None:
            return self._driver
        try:
            return importlib.import_module("kuzu")
        except ImportError as e:
            raise DatabaseInitializationError(
                f"Kuzu module could not be loaded: {e}"
            ) from e

    async def initialize(self) -> "GraphEngine":
        """Create database, connection and schema (idempotent).

        Raises:
            DatabaseInitializationError: If the module cannot be loaded or the
                database cannot be constructed. There is no retry.
        """
        if self.is_ready():
            return self

        logger.debug("Initializing Kuzu graph engine...")
        module = self._load_module()

        self._open_sync(module)
        self._module = module
        self._prepare_staging_dir()

        self.schema_result = self._create_schema()
        if self.schema_result.success:
            logger.debug("Kuzu schema created")
        else:
            # Tables usually exist already (persistent database re-opened)
            logger.debug(f"Kuzu schema creation skipped: {self.schema_result.error}")

        logger.info(
            f"✓ Kuzu graph engine initialized ({self.config.database_path}, "
            f"buffer pool {self.config.buffer_pool_size // (1024 * 1024)}MB)"
        )
        return self

    def _open_sync(self, module: Any) -> None:
        try:
            with self._kuzu_lock:
                self.db = module.Database(
                    self.config.database_path,
                    buffer_pool_size=self.config.buffer_pool_size,
                    max_num_threads=self.config.max_num_threads,
                )
                self.conn = module.Connection(self.db)
        except Exception as e:
            self.db = None
            self.conn = None
            logger.error(f"Kuzu initialization failed: {e}")
            raise DatabaseInitializationError(
                f"Failed to create Kuzu database: {e}",
                context={"database_path": self.config.database_path},
            ) from e

    def _close_handles_sync(self) -> list[str]:
        """Close connection, then database; return the failures."""
        errors = []
        with self._kuzu_lock:
            if self.conn is not None:
                try:
                    self.conn.close()
                except Exception as e:
                    errors.append(f"connection close failed: {e}")
                self.conn = None
            if self.db is not None:
                try:
                    self.db.close()
                except Exception as e:
                    errors.append(f"database close failed: {e}")
                self.db = None
        return errors

    def _prepare_staging_dir(self) -> None:
        if self.config.staging_dir:
            self._staging_dir = Path(self.config.staging_dir)
            self._staging_dir.mkdir(parents=True, exist_ok=True)
            self._owns_staging_dir = False
        else:
            self._staging_dir = Path(tempfile.mkdtemp(prefix="code_graph_"))
            self._owns_staging_dir = True

    def _schema_statements(self) -> list[str]:
        node = self.schema.node_table
        return [
            f"""
            CREATE NODE TABLE {node} (
                id STRING,
                label STRING,
                name STRING,
                filePath STRING,
                startLine INT64,
                endLine INT64,
                content STRING,
                PRIMARY KEY (id)
            )
            """,
            f"""
            CREATE REL TABLE {self.schema.edge_table} (
                FROM {node} TO {node},
                type STRING
            )
            """,
            f"ALTER TABLE {node} ADD embedding FLOAT[{self.schema.embedding_dim}]",
        ]

    def _create_schema(self) -> OperationResult:
        """Run the node table, relation table and embedding column DDL."""
        errors = []
        for statement in self._schema_statements():
            try:
                self._execute_sync(statement)
            except Exception as e:
                errors.append(str(e))
        return OperationResult(success=not errors, errors=errors)

    async def close(self) -> OperationResult:
        """Close connection, then database.

        Each step's failure is recorded in the result and never raised, so
        teardown always completes and the next call re-initializes.
        """
        errors = self._close_handles_sync()

        if self._staging_dir is not None and self._owns_staging_dir:
            shutil.rmtree(self._staging_dir, ignore_errors=True)
        self._staging_dir = None
        self._owns_staging_dir = False
        self._module = None
        self._vector_index_built = False
        self._vector_index_metric = None
        self.schema_result = None

        logger.debug("Kuzu graph engine closed")
        return OperationResult(success=not errors, errors=errors)

    async def __aenter__(self) -> "GraphEngine":
        return await self.initialize()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        result = await self.close()
        if not result.success:
            logger.warning(f"Graph engine teardown incomplete: {result.error}")

    # ── execution primitives ────────────────────────────────────────────

    def _require_connection(self) -> Any:
        if self.conn is None:
            raise DatabaseNotInitializedError(
                "Graph engine not initialized. Call initialize() first."
            )
        return self.conn

    def _execute_sync(
        self, statement: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        conn = self._require_connection()
        with self._kuzu_lock:
            if params:
                result = conn.execute(statement, params)
            else:
                result = conn.execute(statement)
            return _drain(result)

    @contextlib.contextmanager
    def prepared(
        self, statement: str, params: dict[str, Any] | None = None
    ) -> Iterator[Any]:
        """Prepare a statement and guarantee its release.

        ``params``, when given, let the engine bind parameter types at
        preparation time; later executions must use the same types.

        Raises:
            PreparedStatementError: If the engine reports a preparation
                failure; carries the engine's diagnostic message
        """
        conn = self._require_connection()
        # Separate prepare and execute: one statement serves a whole sub-batch
        with self._kuzu_lock:
            try:
                if params:
                    stmt = conn.prepare(statement, params)
                else:
                    stmt = conn.prepare(statement)
            except Exception as e:
                raise PreparedStatementError(
                    f"Prepare failed: {e}",
                    context={"engine_message": str(e), "statement": statement},
                ) from e

        try:
            if not stmt.is_success():
                message = stmt.get_error_message()
                raise PreparedStatementError(
                    f"Prepare failed: {message}",
                    context={"engine_message": message, "statement": statement},
                )
            yield stmt
        finally:
            _release_statement(stmt)

    def execute_statement(
        self, stmt: Any, params: dict[str, Any]
    ) -> list[dict[str, Any]]:
        """Execute an already prepared statement once."""
        conn = self._require_connection()
        with self._kuzu_lock:
            return _drain(conn.execute(stmt, params))

    # ── public query operations ─────────────────────────────────────────

    async def query(self, statement: str) -> list[dict[str, Any]]:
        """Run an ad hoc Cypher statement and return all rows.

        Raises:
            QueryError: On any engine error
        """
        await self.initialize()
        try:
            return self._execute_sync(statement)
        except Exception as e:
            logger.error(f"Query execution failed: {e}")
            raise QueryError(
                f"Query execution failed: {e}", context={"statement": statement}
            ) from e

    async def execute_prepared(
        self, statement: str, params: dict[str, Any]
    ) -> list[dict[str, Any]]:
        """Prepare a parameterized statement, execute it once, return all rows.

        Raises:
            PreparedStatementError: If preparation fails
            QueryError: If execution fails
        """
        await self.initialize()
        with self.prepared(statement, params) as stmt:
            try:
                return self.execute_statement(stmt, params)
            except Exception as e:
                logger.error(f"Prepared query failed: {e}")
                raise QueryError(
                    f"Prepared query failed: {e}", context={"statement": statement}
                ) from e

    def _count(self, statement: str) -> int:
        rows = self._execute_sync(statement)
        if not rows:
            return 0
        return int(rows[0].get("cnt") or 0)

    async def get_stats(self) -> GraphStats:
        """Count nodes and relationships; failures yield zero counts."""
        try:
            await self.initialize()
            nodes = self._count(
                f"MATCH (n:{self.schema.node_table}) RETURN count(n) AS cnt"
            )
            edges = self._count(
                f"MATCH ()-[r:{self.schema.edge_table}]->() RETURN count(r) AS cnt"
            )
            return GraphStats(nodes=nodes, edges=edges)
        except Exception as e:
            logger.warning(f"Failed to get Kuzu stats: {e}")
            return GraphStats(error=str(e))

    # ── bulk load ───────────────────────────────────────────────────────

    def _staging_paths(self) -> tuple[Path, Path]:
        if self._staging_dir is None:
            self._prepare_staging_dir()
        return (
            self._staging_dir / NODES_CSV_FILENAME,
            self._staging_dir / EDGES_CSV_FILENAME,
        )

    @staticmethod
    def _remove_staging_files(*paths: Path) -> None:
        for path in paths:
            with contextlib.suppress(OSError):
                path.unlink(missing_ok=True)

    def _reset_sync(self) -> None:
        """Replace the graph tables with empty ones.

        Rows are never deleted in place: a table that carried a vector index
        keeps stale index catalog entries after the index is dropped, and the
        next COPY into it fails. An in-memory database is reopened; a
        persistent one has its tables dropped. The schema is then recreated.

        Raises:
            BulkLoadError: If the tables cannot be recreated
        """
        if self.config.database_path == IN_MEMORY_DB_PATH:
            for error in self._close_handles_sync():
                logger.debug(f"Reopening in-memory database: {error}")
            self._open_sync(self._module or self._load_module())
        else:
            # The index may predate this process when the database was reopened
            self._load_vector_extension()
            try:
                self._drop_vector_index_sync()
            except Exception as e:
                logger.debug(f"Vector index drop skipped: {e}")
            self._execute_sync(f"DROP TABLE IF EXISTS {self.schema.edge_table}")
            self._execute_sync(f"DROP TABLE IF EXISTS {self.schema.node_table}")

        self._vector_index_built = False
        self._vector_index_metric = None
        self.schema_result = self._create_schema()
        if not self.schema_result.success:
            raise BulkLoadError(
                f"Schema re-creation failed: {self.schema_result.error}",
                context={"step": "reset_schema"},
            )

    async def clear(self) -> None:
        """Delete every node and relationship."""
        await self.initialize()
        self._reset_sync()

    def _copy_from(self, target: str, path: Path, step: str) -> None:
        try:
            self._execute_sync(
                f'COPY {target} FROM "{path.as_posix()}" (HEADER=true, PARALLEL=false)'
            )
        except Exception as e:
            raise BulkLoadError(
                f"COPY into {target} failed: {e}", context={"step": step}
            ) from e

    async def bulk_load(
        self, graph: KnowledgeGraph, file_contents: FileContents
    ) -> BulkLoadResult:
        """Load a graph with COPY FROM, replacing any previously loaded graph.

        Bulk loading is an optional enhancement for the caller: failures after
        initialization are logged and reported as ``success=False``.

        Raises:
            DatabaseInitializationError: If the engine cannot be initialized
        """
        await self.initialize()

        nodes_path, edges_path = self._staging_paths()
        try:
            dangling = find_dangling_relationships(graph)
            if dangling:
                first = dangling[0]
                raise GraphValidationError(
                    f"{len(dangling)} relationship(s) reference unknown nodes "
                    f"(first: {first.source_id} -[{first.type}]-> {first.target_id})",
                    context={"dangling": len(dangling)},
                )

            logger.debug(f"Kuzu: serializing {graph.node_count} nodes...")
            nodes_csv = generate_node_csv(graph, file_contents)
            edges_csv = generate_edge_csv(graph)

            self._remove_staging_files(nodes_path, edges_path)
            self._reset_sync()

            with open(nodes_path, "w", encoding="utf-8", newline="") as f:
                f.write(nodes_csv)
            with open(edges_path, "w", encoding="utf-8", newline="") as f:
                f.write(edges_csv)

            # HEADER=true: the generator writes headers
            # PARALLEL=false: content fields contain quoted newlines
            # The embedding column is filled later by the embedding phase
            columns = ", ".join(NODE_CSV_COLUMNS)
            self._copy_from(
                f"{self.schema.node_table}({columns})", nodes_path, step="copy_nodes"
            )
            self._copy_from(self.schema.edge_table, edges_path, step="copy_edges")

            count = self._count(
                f"MATCH (n:{self.schema.node_table}) RETURN count(n) AS cnt"
            )
            logger.info(f"✓ Kuzu bulk load complete. Nodes in DB: {count}")
            return BulkLoadResult(success=True, count=count)

        except Exception as e:
            logger.error(f"Kuzu bulk load failed: {e}")
            return BulkLoadResult(success=False, count=0, error=str(e))

        finally:
            self._remove_staging_files(nodes_path, edges_path)

    # ── vector index ────────────────────────────────────────────────────

    def _load_vector_extension(self) -> None:
        # Recent Kuzu releases bundle the extension; older ones need INSTALL
        for statement in ("INSTALL VECTOR", "LOAD EXTENSION VECTOR"):
            try:
                self._execute_sync(statement)
            except Exception as e:
                logger.debug(f"{statement}: {e}")

    def _drop_vector_index_sync(self) -> None:
        self._execute_sync(
            f"CALL DROP_VECTOR_INDEX('{self.schema.node_table}', "
            f"'{self.schema.vector_index}')"
        )
        self._vector_index_built = False

    async def create_vector_index(self, metric: str = "cosine") -> OperationResult:
        """Build the HNSW index over the embedding column (best effort)."""
        await self.initialize()
        self._load_vector_extension()
        try:
            self._execute_sync(
                f"CALL CREATE_VECTOR_INDEX('{self.schema.node_table}', "
                f"'{self.schema.vector_index}', 'embedding', metric := '{metric}')"
            )
        except Exception as e:
            logger.warning(f"Vector index creation failed: {e}")
            return OperationResult(success=False, errors=[str(e)])

        self._vector_index_built = True
        self._vector_index_metric = metric
        logger.debug(f"Created vector index {self.schema.vector_index} ({metric})")
        return OperationResult(success=True)

    async def drop_vector_index(self) -> OperationResult:
        """Drop the vector index so the embedding column can be updated."""
        await self.initialize()
        if not self._vector_index_built:
            return OperationResult(success=True)
        try:
            self._drop_vector_index_sync()
        except Exception as e:
            logger.debug(f"Vector index drop failed: {e}")
            return OperationResult(success=False, errors=[str(e)])
        return OperationResult(success=True)

    # ── diagnostics ─────────────────────────────────────────────────────

    async def test_array_params(self) -> DiagnosticResult:
        """Check that vector parameters round-trip through prepared statements.

        Writes an ``embedding_dim``-length vector to one existing node, reads
        it back, then restores the node's previous embedding. A built vector
        index is dropped for the write and rebuilt with the same metric.
        """
        dim = self.schema.embedding_dim
        node = self.schema.node_table
        set_embedding = f"MATCH (n:{node} {{id: $nodeId}}) SET n.embedding = $embedding"
        try:
            await self.initialize()
            test_embedding = [i / dim for i in range(dim)]

            rows = self._execute_sync(
                f"MATCH (n:{node}) RETURN n.id AS id, n.embedding AS emb LIMIT 1"
            )
            if not rows:
                return DiagnosticResult(success=False, error="No nodes found to test with")

            test_node_id = rows[0]["id"]
            previous = rows[0]["emb"]
            logger.debug(f"Testing array params with node: {test_node_id}")

            # Indexed columns cannot be updated
            rebuild_metric = self._vector_index_metric or "cosine"
            was_indexed = self._vector_index_built
            if was_indexed:
                self._drop_vector_index_sync()

            try:
                await self.execute_prepared(
                    set_embedding, {"nodeId": test_node_id, "embedding": test_embedding}
                )
                verify = await self.execute_prepared(
                    f"MATCH (n:{node} {{id: $nodeId}}) RETURN n.embedding AS emb",
                    {"nodeId": test_node_id},
                )
            finally:
                if previous is None:
                    await self.execute_prepared(
                        f"MATCH (n:{node} {{id: $nodeId}}) SET n.embedding = NULL",
                        {"nodeId": test_node_id},
                    )
                else:
                    await self.execute_prepared(
                        set_embedding, {"nodeId": test_node_id, "embedding": previous}
                    )
                if was_indexed:
                    rebuilt = await self.create_vector_index(rebuild_metric)
                    if not rebuilt.success:
                        logger.error(f"Vector index rebuild failed: {rebuilt.error}")

            if was_indexed and not self._vector_index_built:
                return DiagnosticResult(
                    success=False, error="Vector index could not be rebuilt"
                )

            stored = verify[0]["emb"] if verify else None
            if isinstance(stored, list) and len(stored) == dim:
                logger.debug(f"Array params work, stored embedding length: {len(stored)}")
                return DiagnosticResult(success=True)

            length = len(stored) if isinstance(stored, list) else None
            return DiagnosticResult(
                success=False,
                error=(
                    "Embedding not stored correctly. "
                    f"Got: {type(stored).__name__}, length: {length}"
                ),
            )
        except Exception as e:
            logger.error(f"Array params test failed: {e}")
            return DiagnosticResult(success=False, error=str(e))
