"""End-to-end pipeline tests: load, embed, search."""

import orjson
import pytest

from code_graph_search.config.settings import (
    EngineConfig,
    PipelineConfig,
    SchemaConfig,
    SearchConfig,
)
from code_graph_search.core.exceptions import (
    DatabaseNotInitializedError,
    EmbeddingsNotReadyError,
)
from code_graph_search.core.graph_engine import GraphEngine
from code_graph_search.core.pipeline import IngestionPipeline


@pytest.fixture
def config(tmp_path):
    return PipelineConfig(
        engine=EngineConfig(buffer_pool_size=64 * 1024 * 1024, staging_dir=str(tmp_path)),
        schema=SchemaConfig(embedding_dim=4),
        search=SearchConfig(metric="l2"),
    )


@pytest.fixture
async def pipeline(config, make_embedder):
    pipeline = IngestionPipeline(config, embedder=make_embedder(dimension=4))
    yield pipeline
    await pipeline.close()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_load_embed_search(pipeline, sample_graph, sample_file_contents):
    events = []

    result = await pipeline.load_graph(sample_graph, sample_file_contents, events.append)

    assert result.load.success, result.load.error
    assert (result.stats.nodes, result.stats.edges) == (3, 2)
    assert [(e.phase, e.percent) for e in events] == [("loading", 98), ("complete", 100)]
    assert pipeline.is_ready()

    rows = await pipeline.run_query("MATCH (n:CodeNode) RETURN count(n) AS cnt")
    assert rows == [{"cnt": 3}]

    embedding = await pipeline.start_embedding_pipeline()

    # File and Function are embeddable, Folder is not
    assert embedding.nodes_embedded == 2
    assert pipeline.is_embedding_complete
    assert pipeline.embedding_progress.phase == "ready"

    hits = await pipeline.semantic_search("where is main defined", k=5, max_distance=10.0)
    assert {hit.node.id for hit in hits} <= {"file:src/app.py", "func:src/app.py:main"}
    assert hits

    context = await pipeline.semantic_search_with_context("entry point", k=1, hops=1)
    assert len(context) == 1
    assert context[0].connected


@pytest.mark.integration
@pytest.mark.asyncio
async def test_reload_resets_embeddings(pipeline, sample_graph, sample_file_contents):
    await pipeline.load_graph(sample_graph, sample_file_contents)
    first = await pipeline.start_embedding_pipeline()
    assert first.index_built

    reloaded = await pipeline.load_graph(sample_graph, sample_file_contents)

    assert reloaded.load.success, reloaded.load.error
    assert reloaded.load.count == 3
    assert (reloaded.stats.nodes, reloaded.stats.edges) == (3, 2)
    assert not pipeline.is_embedding_complete
    with pytest.raises(EmbeddingsNotReadyError):
        await pipeline.semantic_search("main")

    second = await pipeline.start_embedding_pipeline()

    assert second.nodes_embedded == 2
    assert second.index_built
    assert await pipeline.semantic_search("where is main defined", k=5, max_distance=10.0)


@pytest.mark.integration
@pytest.mark.asyncio
async def test_array_params(pipeline, sample_graph, sample_file_contents):
    await pipeline.load_graph(sample_graph, sample_file_contents)
    result = await pipeline.test_array_params()
    assert result.success, result.error

    rows = await pipeline.run_query(
        "MATCH (n:CodeNode) WHERE n.embedding IS NOT NULL RETURN count(n) AS cnt"
    )
    assert rows == [{"cnt": 0}]


@pytest.mark.integration
@pytest.mark.asyncio
@pytest.mark.parametrize("metric", ["cosine", "l2"])
async def test_array_params_after_embedding(
    config, make_embedder, sample_graph, sample_file_contents, metric
):
    config.search = SearchConfig(metric=metric)
    async with IngestionPipeline(config, embedder=make_embedder(dimension=4)) as pipeline:
        await pipeline.load_graph(sample_graph, sample_file_contents)
        await pipeline.start_embedding_pipeline()
        query = "MATCH (n:CodeNode) RETURN n.id AS id, n.embedding AS emb ORDER BY n.id"
        before = await pipeline.run_query(query)

        result = await pipeline.test_array_params()

        assert result.success, result.error
        assert pipeline.engine.is_vector_index_built
        assert await pipeline.run_query(query) == before
        assert await pipeline.semantic_search("entry point", k=2, max_distance=10.0)


@pytest.mark.asyncio
async def test_engine_unavailable_degrades(config, fake_kuzu, make_embedder, sample_graph, sample_file_contents):
    fake_kuzu.fail_database = True
    engine = GraphEngine(config.engine, config.schema, driver=fake_kuzu)
    pipeline = IngestionPipeline(config, engine=engine, embedder=make_embedder(dimension=4))
    events = []

    result = await pipeline.load_graph(sample_graph, sample_file_contents, events.append)

    assert result.load.success is False
    assert "cannot open database" in result.load.error
    assert result.graph is sample_graph
    assert result.file_contents == sample_file_contents
    assert result.stats is None
    assert events[-1].phase == "complete"
    assert orjson.loads(result.to_json())["load"]["success"] is False

    assert not pipeline.is_ready()
    stats = await pipeline.get_stats()
    assert (stats.nodes, stats.edges) == (0, 0)
    diagnostic = await pipeline.test_array_params()
    assert diagnostic.error == "Database not ready"

    with pytest.raises(DatabaseNotInitializedError, match="load a repository first"):
        await pipeline.run_query("MATCH (n) RETURN n")
    with pytest.raises(DatabaseNotInitializedError):
        await pipeline.start_embedding_pipeline()
    with pytest.raises(DatabaseNotInitializedError):
        await pipeline.semantic_search("anything")

    await pipeline.close()


@pytest.mark.asyncio
async def test_broken_progress_callback_is_ignored(
    config, fake_kuzu, make_embedder, sample_graph, sample_file_contents
):
    engine = GraphEngine(config.engine, config.schema, driver=fake_kuzu)
    pipeline = IngestionPipeline(config, engine=engine, embedder=make_embedder(dimension=4))

    def broken(event):
        raise ValueError("consumer went away")

    result = await pipeline.load_graph(sample_graph, sample_file_contents, broken)

    assert result.load.success
    await pipeline.close()


@pytest.mark.asyncio
async def test_close_reports_teardown_failure(config, fake_kuzu, make_embedder, sample_graph, sample_file_contents):
    engine = GraphEngine(config.engine, config.schema, driver=fake_kuzu)
    async with IngestionPipeline(config, engine=engine, embedder=make_embedder(dimension=4)) as pipeline:
        await pipeline.load_graph(sample_graph, sample_file_contents)
        fake_kuzu.fail_database_close = True

        result = await pipeline.close()

        assert result.success is False
        assert "database close failed" in result.error
        assert not pipeline.is_ready()
