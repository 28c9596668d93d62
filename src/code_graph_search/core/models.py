"""Data models for code-graph-search."""

from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

import orjson

# Path -> raw text of every ingested file
FileContents = Mapping[str, str]


class NodeLabel(str, Enum):
    """Well-known node labels produced by the code analyzer."""

    FILE = "File"
    FOLDER = "Folder"
    FUNCTION = "Function"
    CLASS = "Class"
    METHOD = "Method"
    INTERFACE = "Interface"
    CODE_ELEMENT = "CodeElement"


@dataclass
class GraphNode:
    """A node of the in-memory knowledge graph.

    Line numbers are 0-based. ``label`` accepts a ``NodeLabel`` or any other
    string; enum members are stored as their plain value.
    """

    id: str
    label: str
    name: str = ""
    file_path: str = ""
    start_line: int | None = None
    end_line: int | None = None
    embedding: list[float] | None = None

    def __post_init__(self) -> None:
        if isinstance(self.label, Enum):
            self.label = self.label.value


@dataclass
class GraphRelationship:
    """A directed, typed edge between two graph nodes."""

    source_id: str
    target_id: str
    type: str


@dataclass
class KnowledgeGraph:
    """In-memory graph handed over by the analysis stage."""

    nodes: list[GraphNode] = field(default_factory=list)
    relationships: list[GraphRelationship] = field(default_factory=list)

    @property
    def node_count(self) -> int:
        return len(self.nodes)

    @property
    def relationship_count(self) -> int:
        return len(self.relationships)

    def add_node(self, node: GraphNode) -> None:
        self.nodes.append(node)

    def add_relationship(self, relationship: GraphRelationship) -> None:
        self.relationships.append(relationship)

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [asdict(n) for n in self.nodes],
            "relationships": [asdict(r) for r in self.relationships],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "KnowledgeGraph":
        """Rebuild a graph from its ``to_dict`` form."""
        return cls(
            nodes=[GraphNode(**n) for n in data.get("nodes", [])],
            relationships=[
                GraphRelationship(**r) for r in data.get("relationships", [])
            ],
        )


# ── Typed engine records ────────────────────────────────────────────────


@dataclass
class NodeRecord:
    """A CodeNode row decoded from the engine."""

    id: str
    label: str
    name: str
    file_path: str
    start_line: int = -1
    end_line: int = -1

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "NodeRecord":
        """Decode a row returned with ``id, label, name, filePath[, startLine, endLine]``."""
        start_line = row.get("startLine")
        end_line = row.get("endLine")
        return cls(
            id=row["id"],
            label=row.get("label") or "",
            name=row.get("name") or "",
            file_path=row.get("filePath") or "",
            start_line=-1 if start_line is None else int(start_line),
            end_line=-1 if end_line is None else int(end_line),
        )


@dataclass
class SearchHit:
    """A nearest-neighbor match."""

    node: NodeRecord
    distance: float


@dataclass
class ConnectedNode:
    """A node reached by graph expansion from a search hit."""

    node: NodeRecord
    hops: int  # edges between the seed and this node
    relation_type: str  # type of the last edge on the path


@dataclass
class ContextResult:
    """A search hit plus its graph neighborhood."""

    node: NodeRecord
    distance: float
    connected: list[ConnectedNode] = field(default_factory=list)


# ── Operation results ───────────────────────────────────────────────────


@dataclass
class OperationResult:
    """Outcome of a best-effort operation whose failure is reported, not raised."""

    success: bool
    errors: list[str] = field(default_factory=list)

    @property
    def error(self) -> str | None:
        return "; ".join(self.errors) if self.errors else None


@dataclass
class BulkLoadResult:
    """Outcome of a COPY FROM bulk load."""

    success: bool
    count: int = 0
    error: str | None = None


@dataclass
class GraphStats:
    """Node and relationship counts; ``error`` set when counting failed."""

    nodes: int = 0
    edges: int = 0
    error: str | None = None


@dataclass
class DiagnosticResult:
    """Outcome of an engine self-test."""

    success: bool
    error: str | None = None


@dataclass
class EmbeddingResult:
    """Outcome of the embedding phase."""

    nodes_embedded: int
    index_built: bool
    elapsed_seconds: float = 0.0


@dataclass
class PipelineResult:
    """What the host receives after loading a graph."""

    graph: KnowledgeGraph
    file_contents: dict[str, str]
    load: BulkLoadResult
    stats: GraphStats | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "graph": self.graph.to_dict(),
            "file_contents": dict(self.file_contents),
            "load": asdict(self.load),
            "stats": asdict(self.stats) if self.stats else None,
        }

    def to_json(self) -> bytes:
        """Serialize for transfer across the host isolation boundary."""
        return orjson.dumps(self.to_dict())
