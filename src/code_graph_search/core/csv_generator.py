"""CSV snapshot generation for Kuzu bulk loading.

Converts the in-memory KnowledgeGraph into the two CSV texts consumed by
``COPY ... FROM`` (one for nodes, one for relationships).

RFC 4180, always-quote variant:
- Every string field is enclosed in double quotes, whatever it contains
- Double quotes inside a field are escaped by doubling them ("")
- Numeric fields are written bare

Code content may contain commas, quotes and newlines, which is why the
importer must run with HEADER=true and PARALLEL=false.
"""

import re

from loguru import logger

from ..config.defaults import (
    BINARY_CONTROL_RATIO,
    BINARY_PLACEHOLDER,
    BINARY_SAMPLE_SIZE,
    EDGE_CSV_COLUMNS,
    MAX_FILE_CONTENT,
    MAX_SNIPPET,
    NODE_CSV_COLUMNS,
    SNIPPET_CONTEXT_LINES,
    TRUNCATION_MARKER,
)
from .models import FileContents, GraphNode, GraphRelationship, KnowledgeGraph, NodeLabel

# Control characters except \t (0x09), \n (0x0a) and \r (0x0d)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
# Unpaired UTF-16 surrogates (e.g. produced by surrogateescape decoding)
_LONE_SURROGATES = re.compile("[\ud800-\udfff]")
# The last two code points of the BMP are non-characters
_NON_CHARACTERS = re.compile("[\ufffe\uffff]")


def sanitize_text(text: str) -> str:
    """Remove characters that would break CSV framing or UTF-8 encoding."""
    text = _CONTROL_CHARS.sub("", text)
    text = _LONE_SURROGATES.sub("", text)
    return _NON_CHARACTERS.sub("", text)


def escape_csv_field(value: str | int | float | None) -> str:
    """Quote a field for the snapshot.

    ``None`` becomes an empty quoted field. Everything else is converted to
    text, sanitized, has its quotes doubled, and is wrapped in quotes.
    """
    if value is None:
        return '""'

    text = sanitize_text(str(value))
    return '"' + text.replace('"', '""') + '"'


def escape_csv_number(value: int | None, default: int = -1) -> str:
    """Write a numeric field bare, falling back to ``default`` when absent."""
    if value is None:
        return str(default)
    return str(value)


def is_binary_content(content: str) -> bool:
    """Guess whether decoded file content is really binary data.

    Counts control characters (codes 0-8, 14-31 and 127) in the first
    1,000 characters; more than 10% means binary.
    """
    if not content:
        return False

    sample = content[:BINARY_SAMPLE_SIZE]
    non_printable = 0
    for char in sample:
        code = ord(char)
        if code < 9 or 13 < code < 32 or code == 127:
            non_printable += 1

    return non_printable / len(sample) > BINARY_CONTROL_RATIO


def _truncate(text: str, limit: int) -> str:
    if len(text) > limit:
        return text[:limit] + TRUNCATION_MARKER
    return text


def extract_content(node: GraphNode, file_contents: FileContents) -> str:
    """Extract the text stored in a node's ``content`` column.

    - Folder nodes: empty
    - Binary files: a fixed placeholder
    - File nodes: whole file, capped at 10,000 characters
    - Code elements: their lines plus 2 lines of context on each side,
      capped at 5,000 characters; empty without line bounds
    """
    content = file_contents.get(node.file_path)
    if not content:
        return ""

    if node.label == NodeLabel.FOLDER.value:
        return ""

    if is_binary_content(content):
        return BINARY_PLACEHOLDER

    if node.label == NodeLabel.FILE.value:
        return _truncate(content, MAX_FILE_CONTENT)

    if node.start_line is None or node.end_line is None:
        return ""

    lines = content.split("\n")
    start = max(0, node.start_line - SNIPPET_CONTEXT_LINES)
    end = min(len(lines) - 1, node.end_line + SNIPPET_CONTEXT_LINES)
    snippet = "\n".join(lines[start : end + 1])

    return _truncate(snippet, MAX_SNIPPET)


def generate_node_csv(graph: KnowledgeGraph, file_contents: FileContents) -> str:
    """Generate the node snapshot.

    Headers: id,label,name,filePath,startLine,endLine,content

    The embedding column is deliberately absent: embeddings are attached
    after the bulk load by the embedding phase.
    """
    rows = [",".join(NODE_CSV_COLUMNS)]

    for node in graph.nodes:
        content = extract_content(node, file_contents)
        row = [
            escape_csv_field(node.id),
            escape_csv_field(node.label),
            escape_csv_field(node.name or ""),
            escape_csv_field(node.file_path or ""),
            escape_csv_number(node.start_line, -1),
            escape_csv_number(node.end_line, -1),
            escape_csv_field(content),
        ]
        rows.append(",".join(row))

    logger.debug(f"Serialized {graph.node_count} nodes to CSV")
    return "\n".join(rows)


def generate_edge_csv(graph: KnowledgeGraph) -> str:
    """Generate the relationship snapshot.

    Headers: from,to,type (Kuzu reads the first two columns as the
    primary keys of the endpoints).
    """
    rows = [",".join(EDGE_CSV_COLUMNS)]

    for rel in graph.relationships:
        row = [
            escape_csv_field(rel.source_id),
            escape_csv_field(rel.target_id),
            escape_csv_field(rel.type),
        ]
        rows.append(",".join(row))

    logger.debug(f"Serialized {graph.relationship_count} relationships to CSV")
    return "\n".join(rows)


def find_dangling_relationships(graph: KnowledgeGraph) -> list[GraphRelationship]:
    """Return relationships whose source or target id is not a graph node."""
    node_ids = {node.id for node in graph.nodes}
    return [
        rel
        for rel in graph.relationships
        if rel.source_id not in node_ids or rel.target_id not in node_ids
    ]
