"""Integration tests for the graph engine against an embedded Kuzu database."""

import pytest

from code_graph_search.config.settings import BatchConfig, EngineConfig, SchemaConfig
from code_graph_search.core.batch_executor import BatchedStatementExecutor
from code_graph_search.core.exceptions import PreparedStatementError, QueryError
from code_graph_search.core.graph_engine import GraphEngine
from code_graph_search.core.models import (
    GraphNode,
    GraphRelationship,
    KnowledgeGraph,
    NodeLabel,
)

pytestmark = pytest.mark.integration

EMBEDDING_DIM = 8


@pytest.fixture
async def engine(tmp_path):
    """In-memory Kuzu engine with a small buffer pool."""
    engine = GraphEngine(
        EngineConfig(
            database_path=":memory:",
            buffer_pool_size=64 * 1024 * 1024,
            staging_dir=str(tmp_path / "staging"),
        ),
        SchemaConfig(embedding_dim=EMBEDDING_DIM),
    )
    yield engine
    await engine.close()


@pytest.mark.asyncio
async def test_load_and_count(engine, sample_graph, sample_file_contents):
    result = await engine.bulk_load(sample_graph, sample_file_contents)

    assert result.success, result.error
    assert result.count == 3

    stats = await engine.get_stats()
    assert (stats.nodes, stats.edges) == (3, 2)


@pytest.mark.asyncio
async def test_loaded_rows(engine, sample_graph, sample_file_contents):
    await engine.bulk_load(sample_graph, sample_file_contents)

    rows = await engine.query(
        "MATCH (n:CodeNode) RETURN n.id AS id, n.label AS label, "
        "n.startLine AS startLine, n.content AS content ORDER BY n.id"
    )
    by_id = {row["id"]: row for row in rows}

    assert by_id["folder:src"]["label"] == "Folder"
    assert by_id["folder:src"]["startLine"] == -1
    assert not by_id["folder:src"]["content"]
    assert by_id["file:src/app.py"]["content"] == sample_file_contents["src/app.py"]
    assert 'print("hello, world")' in by_id["func:src/app.py:main"]["content"]

    edges = await engine.query(
        "MATCH (a:CodeNode)-[r:CodeRelation]->(b:CodeNode) "
        "RETURN a.id AS source, r.type AS type, b.id AS target ORDER BY r.type"
    )
    assert edges == [
        {"source": "folder:src", "type": "CONTAINS", "target": "file:src/app.py"},
        {"source": "file:src/app.py", "type": "DEFINES", "target": "func:src/app.py:main"},
    ]


@pytest.mark.asyncio
async def test_hostile_content_survives_copy(engine):
    content = 'x = "a, b"\n\ty = \'multi\nline\'\nz = 1\x00\x01'
    graph = KnowledgeGraph(
        nodes=[GraphNode(id="f", label=NodeLabel.FILE, name='q"uote,d', file_path="f.py")]
    )

    result = await engine.bulk_load(graph, {"f.py": content})
    assert result.success, result.error

    rows = await engine.query("MATCH (n:CodeNode) RETURN n.name AS name, n.content AS content")
    assert rows[0]["name"] == 'q"uote,d'
    assert rows[0]["content"] == content.replace("\x00", "").replace("\x01", "")


@pytest.mark.asyncio
async def test_reload_gives_same_counts(engine, sample_graph, sample_file_contents):
    first = await engine.bulk_load(sample_graph, sample_file_contents)
    second = await engine.bulk_load(sample_graph, sample_file_contents)

    assert first.success and second.success
    assert first.count == second.count == 3
    stats = await engine.get_stats()
    assert (stats.nodes, stats.edges) == (3, 2)


async def _embed_all(engine, graph):
    executor = BatchedStatementExecutor(engine, BatchConfig(batch_size=2))
    await executor.execute_batched(
        "MATCH (n:CodeNode {id: $nodeId}) SET n.embedding = $embedding",
        [
            {"nodeId": node.id, "embedding": [float(i + 1)] + [0.5] * (EMBEDDING_DIM - 1)}
            for i, node in enumerate(graph.nodes)
        ],
    )


@pytest.mark.asyncio
async def test_reload_after_vector_index(engine, sample_graph, sample_file_contents):
    await engine.bulk_load(sample_graph, sample_file_contents)
    await _embed_all(engine, sample_graph)
    assert (await engine.create_vector_index("l2")).success

    result = await engine.bulk_load(sample_graph, sample_file_contents)

    assert result.success, result.error
    assert result.count == 3
    assert not engine.is_vector_index_built
    await _embed_all(engine, sample_graph)
    assert (await engine.create_vector_index("l2")).success


@pytest.mark.asyncio
async def test_reload_persistent_database_after_vector_index(
    tmp_path, sample_graph, sample_file_contents
):
    engine = GraphEngine(
        EngineConfig(
            database_path=str(tmp_path / "graph.kuzu"),
            buffer_pool_size=64 * 1024 * 1024,
            staging_dir=str(tmp_path / "staging"),
        ),
        SchemaConfig(embedding_dim=EMBEDDING_DIM),
    )
    try:
        await engine.bulk_load(sample_graph, sample_file_contents)
        await _embed_all(engine, sample_graph)
        assert (await engine.create_vector_index("cosine")).success

        result = await engine.bulk_load(sample_graph, sample_file_contents)

        assert result.success, result.error
        stats = await engine.get_stats()
        assert (stats.nodes, stats.edges) == (3, 2)
        await _embed_all(engine, sample_graph)
        assert (await engine.create_vector_index("cosine")).success
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_array_params_with_vector_index(engine, sample_graph, sample_file_contents):
    await engine.bulk_load(sample_graph, sample_file_contents)
    await _embed_all(engine, sample_graph)
    assert (await engine.create_vector_index("l2")).success
    query = "MATCH (n:CodeNode) RETURN n.id AS id, n.embedding AS embedding ORDER BY n.id"
    before = await engine.query(query)

    result = await engine.test_array_params()

    assert result.success, result.error
    assert engine.is_vector_index_built
    assert await engine.query(query) == before


@pytest.mark.asyncio
async def test_empty_graph(engine):
    result = await engine.bulk_load(KnowledgeGraph(), {})
    assert result.success, result.error
    assert result.count == 0


@pytest.mark.asyncio
async def test_dangling_relationship_is_rejected(engine, sample_graph, sample_file_contents):
    sample_graph.add_relationship(
        GraphRelationship("func:src/app.py:main", "func:elsewhere", "CALLS")
    )

    result = await engine.bulk_load(sample_graph, sample_file_contents)

    assert result.success is False
    assert result.count == 0
    assert "unknown nodes" in result.error


@pytest.mark.asyncio
async def test_query_initializes_lazily(engine):
    assert not engine.is_ready()
    rows = await engine.query("MATCH (n:CodeNode) RETURN count(n) AS cnt")
    assert engine.is_ready()
    assert rows == [{"cnt": 0}]


@pytest.mark.asyncio
async def test_invalid_query(engine):
    with pytest.raises(QueryError):
        await engine.query("MATCH (n:NoSuchTable) RETURN n")


@pytest.mark.asyncio
async def test_invalid_prepared_statement(engine):
    with pytest.raises(PreparedStatementError) as exc_info:
        await engine.execute_prepared("MATCH (n:NoSuchTable) RETURN n.id", {})
    assert exc_info.value.context["engine_message"]


@pytest.mark.asyncio
async def test_array_params_round_trip(engine, sample_graph, sample_file_contents):
    await engine.bulk_load(sample_graph, sample_file_contents)

    result = await engine.test_array_params()

    assert result.success, result.error


@pytest.mark.asyncio
async def test_batched_embedding_updates(engine, sample_graph, sample_file_contents):
    await engine.bulk_load(sample_graph, sample_file_contents)
    executor = BatchedStatementExecutor(engine, BatchConfig(batch_size=2))
    params = [
        {"nodeId": node.id, "embedding": [float(i)] * EMBEDDING_DIM}
        for i, node in enumerate(sample_graph.nodes)
    ]

    count = await executor.execute_batched(
        "MATCH (n:CodeNode {id: $nodeId}) SET n.embedding = $embedding", params
    )

    assert count == 3
    rows = await engine.query(
        "MATCH (n:CodeNode) RETURN n.id AS id, n.embedding AS embedding ORDER BY n.id"
    )
    embeddings = {row["id"]: row["embedding"] for row in rows}
    assert embeddings["folder:src"] == [0.0] * EMBEDDING_DIM
    assert embeddings["func:src/app.py:main"] == [2.0] * EMBEDDING_DIM


@pytest.mark.asyncio
async def test_close_then_reuse(engine, sample_graph, sample_file_contents):
    await engine.bulk_load(sample_graph, sample_file_contents)
    result = await engine.close()
    assert result.success

    # In-memory database: a fresh, empty graph after re-initialization
    stats = await engine.get_stats()
    assert (stats.nodes, stats.edges) == (0, 0)
