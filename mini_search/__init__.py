"""mini-search - a self-hosted search engine combining BM25 and sentence-embedding ranking."""

__version__ = "0.1.0"

from .config import ServerConfig  # noqa: E402
from .engine import (  # noqa: E402
    Document,
    DocumentCrawler,
    IndexingPipeline,
    QueryEngine,
    SearchConfig,
    SearchIndex,
    SearchResult,
    SentenceTransformerEmbedder,
)
from .server import SearchServer  # noqa: E402
from .tools import create_search_tool  # noqa: E402

__all__ = [
    "Document",
    "DocumentCrawler",
    "IndexingPipeline",
    "QueryEngine",
    "SearchConfig",
    "SearchIndex",
    "SearchResult",
    "SearchServer",
    "SentenceTransformerEmbedder",
    "ServerConfig",
    "create_search_tool",
]
