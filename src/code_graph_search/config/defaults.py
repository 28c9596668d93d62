"""Default configurations for code-graph-search."""

# Kuzu table names
NODE_TABLE_NAME = "CodeNode"
EDGE_TABLE_NAME = "CodeRelation"
VECTOR_INDEX_NAME = "code_embedding_idx"

# In-memory database path understood by Kuzu
IN_MEMORY_DB_PATH = ":memory:"

# Buffer pool sized for embedding storage (thousands of nodes x 384 floats)
DEFAULT_BUFFER_POOL_SIZE = 512 * 1024 * 1024  # 512MB

# Bulk-load staging file names (written to the engine's staging directory)
NODES_CSV_FILENAME = "nodes.csv"
EDGES_CSV_FILENAME = "edges.csv"

# Column order of the bulk-load snapshots
NODE_CSV_COLUMNS = ["id", "label", "name", "filePath", "startLine", "endLine", "content"]
EDGE_CSV_COLUMNS = ["from", "to", "type"]

# Content extraction limits
MAX_FILE_CONTENT = 10_000  # characters kept for File nodes
MAX_SNIPPET = 5_000  # characters kept for code element nodes
SNIPPET_CONTEXT_LINES = 2  # lines of padding around a code element
TRUNCATION_MARKER = "\n... [truncated]"
BINARY_PLACEHOLDER = "[Binary file - content not stored]"

# Binary detection heuristic
BINARY_SAMPLE_SIZE = 1_000
BINARY_CONTROL_RATIO = 0.1

# Batched statement execution (tunable: memory vs throughput)
DEFAULT_SUB_BATCH_SIZE = 4
DEFAULT_BATCH_PAUSE_SECONDS = 0.0  # 0 = yield for one event-loop tick

# Embedding defaults
DEFAULT_EMBEDDING_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
DEFAULT_EMBEDDING_DIM = 384
DEFAULT_EMBEDDING_BATCH_SIZE = 16
DEFAULT_MAX_EMBEDDING_CHARS = 2_000

# Labels whose nodes receive embeddings
EMBEDDABLE_LABELS = ["Function", "Class", "Method", "Interface", "File"]

# Known embedding model output dimensions
MODEL_DIMENSIONS: dict[str, int] = {
    "sentence-transformers/all-MiniLM-L6-v2": 384,
    "sentence-transformers/all-MiniLM-L12-v2": 384,
    "Snowflake/snowflake-arctic-embed-xs": 384,
    "BAAI/bge-small-en-v1.5": 384,
    "sentence-transformers/all-mpnet-base-v2": 768,
    "jinaai/jina-embeddings-v2-base-code": 768,
}

# Semantic search defaults
DEFAULT_SEARCH_K = 10
DEFAULT_MAX_DISTANCE = 0.5
DEFAULT_CONTEXT_K = 5
DEFAULT_CONTEXT_HOPS = 2
MAX_CONTEXT_HOPS = 5
MAX_CONTEXT_NEIGHBORS = 50  # connected nodes attached per seed
DISTANCE_METRICS = ("cosine", "l2", "l2sq", "dotproduct")
DEFAULT_DISTANCE_METRIC = "cosine"

# Environment variable prefix for overrides
ENV_PREFIX = "CODE_GRAPH_SEARCH_"


def get_model_dimensions(model_name: str) -> int:
    """Get the output dimension of a known embedding model.

    Args:
        model_name: Hugging Face model identifier

    Returns:
        Embedding dimension

    Raises:
        ValueError: If the model is not in MODEL_DIMENSIONS
    """
    if model_name in MODEL_DIMENSIONS:
        return MODEL_DIMENSIONS[model_name]
    raise ValueError(f"Unknown embedding model: {model_name}")
