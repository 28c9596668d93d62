"""Shared fixtures: a scriptable stand-in for the kuzu module and a fake embedder."""

import hashlib
import math

import pytest

from code_graph_search.core.models import (
    GraphNode,
    GraphRelationship,
    KnowledgeGraph,
    NodeLabel,
)


class FakeQueryResult:
    """Mimics kuzu.QueryResult."""

    def __init__(self, columns=None, rows=None):
        self.columns = list(columns or [])
        self.rows = list(rows or [])
        self.closed = False

    def get_column_names(self):
        return self.columns

    def has_next(self):
        return bool(self.rows)

    def get_next(self):
        return self.rows.pop(0)

    def close(self):
        self.closed = True


class FakePreparedStatement:
    """Mimics kuzu.PreparedStatement, plus a close() to observe release."""

    def __init__(self, query, error=None):
        self.query = query
        self.error = error
        self.closed = False

    def is_success(self):
        return self.error is None

    def get_error_message(self):
        return self.error or ""

    def close(self):
        self.closed = True


class FakeConnection:
    def __init__(self, driver, db):
        self.driver = driver
        self.db = db
        self.closed = False

    def execute(self, query, parameters=None):
        self.driver.executed.append((query, parameters))
        if self.driver.fail_execute is not None and self.driver.fail_execute(
            query, parameters
        ):
            raise RuntimeError("execution failed")
        return FakeQueryResult(*self.driver.respond(query, parameters))

    def prepare(self, query, parameters=None):
        if self.driver.prepare_raises:
            raise RuntimeError(self.driver.prepare_raises)
        stmt = FakePreparedStatement(query, error=self.driver.prepare_error)
        self.driver.statements.append(stmt)
        return stmt

    def close(self):
        if self.driver.fail_connection_close:
            raise RuntimeError("connection close boom")
        self.closed = True


class FakeDatabase:
    def __init__(self, driver, path, **kwargs):
        self.driver = driver
        self.path = path
        self.kwargs = kwargs
        self.closed = False

    def close(self):
        if self.driver.fail_database_close:
            raise RuntimeError("database close boom")
        self.closed = True


class FakeKuzu:
    """Module-like object exposing ``Database`` and ``Connection``.

    Every executed statement is recorded in ``executed``; every prepared
    statement in ``statements``. ``responses`` maps a query substring to
    ``(columns, rows)``.
    """

    def __init__(self):
        self.executed = []
        self.statements = []
        self.databases = []
        self.responses = {}
        self.fail_database = False
        self.fail_execute = None
        self.fail_connection_close = False
        self.fail_database_close = False
        self.prepare_error = None
        self.prepare_raises = None

    def Database(self, path, **kwargs):  # noqa: N802
        if self.fail_database:
            raise RuntimeError("cannot open database")
        db = FakeDatabase(self, path, **kwargs)
        self.databases.append(db)
        return db

    def Connection(self, db):  # noqa: N802
        return FakeConnection(self, db)

    def respond(self, query, parameters):
        query_text = query if isinstance(query, str) else query.query
        for fragment, response in self.responses.items():
            if fragment in query_text:
                return response
        return [], []

    def executed_text(self):
        return [q if isinstance(q, str) else q.query for q, _ in self.executed]


class FakeEmbedder:
    """Deterministic embedder: explicit vectors first, hashed vectors otherwise."""

    def __init__(self, dimension=4, vectors=None):
        self._dimension = dimension
        self.vectors = dict(vectors or {})
        self.loaded = False
        self.calls = []

    @property
    def dimension(self):
        return self._dimension

    def is_ready(self):
        return self.loaded

    async def load(self):
        self.loaded = True

    def _vector(self, text):
        if text in self.vectors:
            return list(self.vectors[text])
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        raw = [b / 255.0 + 0.01 for b in digest[: self._dimension]]
        norm = math.sqrt(sum(x * x for x in raw))
        return [x / norm for x in raw]

    async def embed(self, texts):
        self.calls.append(list(texts))
        return [self._vector(t) for t in texts]

    async def embed_query(self, text):
        return self._vector(text)

    async def dispose(self):
        self.loaded = False


@pytest.fixture
def fake_kuzu():
    """Scriptable kuzu module stand-in."""
    return FakeKuzu()


@pytest.fixture
def fake_embedder():
    return FakeEmbedder(dimension=4)


@pytest.fixture
def sample_file_contents():
    return {
        "src/app.py": "\n".join(
            [
                "import os",
                "",
                "def main():",
                '    print("hello, world")',
                "    return 0",
                "",
                "class Greeter:",
                "    pass",
            ]
        ),
    }


@pytest.fixture
def sample_graph():
    """Folder + file + function, CONTAINS and DEFINES edges."""
    graph = KnowledgeGraph()
    graph.add_node(GraphNode(id="folder:src", label=NodeLabel.FOLDER, name="src", file_path="src"))
    graph.add_node(
        GraphNode(id="file:src/app.py", label=NodeLabel.FILE, name="app.py", file_path="src/app.py")
    )
    graph.add_node(
        GraphNode(
            id="func:src/app.py:main",
            label=NodeLabel.FUNCTION,
            name="main",
            file_path="src/app.py",
            start_line=2,
            end_line=4,
        )
    )
    graph.add_relationship(GraphRelationship("folder:src", "file:src/app.py", "CONTAINS"))
    graph.add_relationship(
        GraphRelationship("file:src/app.py", "func:src/app.py:main", "DEFINES")
    )
    return graph


@pytest.fixture
def make_embedder():
    """Factory for fake embedders of a given dimension."""
    return FakeEmbedder
