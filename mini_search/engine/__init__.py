"""Crawling, indexing and hybrid search."""

from .config import SearchConfig
from .crawler import DocumentCrawler
from .embeddings import Embedder, SentenceTransformerEmbedder
from .exceptions import (
    CorruptIndexError,
    EmbeddingError,
    IndexNotFoundError,
    IndexWriteError,
    MiniSearchError,
    WriterLockedError,
)
from .extractor import extract, extract_text
from .index import IndexReader, IndexWriter, SearchIndex
from .models import CrawlBudget, Document, IndexingReport, RawPage, SearchResult, VisitedSet
from .pipeline import IndexingPipeline, install_signal_handlers
from .query import QueryEngine

__all__ = [
    "CorruptIndexError",
    "CrawlBudget",
    "Document",
    "DocumentCrawler",
    "Embedder",
    "EmbeddingError",
    "IndexNotFoundError",
    "IndexReader",
    "IndexWriteError",
    "IndexWriter",
    "IndexingPipeline",
    "IndexingReport",
    "MiniSearchError",
    "QueryEngine",
    "RawPage",
    "SearchConfig",
    "SearchIndex",
    "SearchResult",
    "SentenceTransformerEmbedder",
    "VisitedSet",
    "WriterLockedError",
    "extract",
    "extract_text",
    "install_signal_handlers",
]
