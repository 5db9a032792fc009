"""Data types shared by the crawler, indexer and query engine."""

import html
import threading
from dataclasses import dataclass, field
from typing import Any

import numpy as np


@dataclass(order=True)
class CrawlTask:
    """A frontier entry, ordered by (priority, depth, sequence).

    Lower priority values are fetched first. The sequence number keeps
    ordering stable among tasks of equal priority and depth.
    """

    priority: int
    depth: int
    sequence: int
    url: str = field(compare=False)


class VisitedSet:
    """Thread-safe, grow-only set of normalised URLs."""

    def __init__(self):
        self._urls: set[str] = set()
        self._lock = threading.Lock()

    def add(self, url: str) -> bool:
        """Add a URL.

        Returns:
            True if the URL was new, False if it was already present
        """
        with self._lock:
            if url in self._urls:
                return False
            self._urls.add(url)
            return True

    def __contains__(self, url: str) -> bool:
        with self._lock:
            return url in self._urls

    def __len__(self) -> int:
        with self._lock:
            return len(self._urls)

    def snapshot(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._urls)


class CrawlBudget:
    """Page budget shared by all crawl workers.

    The remaining count only ever goes down, and never below zero, so the
    number of successful ``try_acquire`` calls cannot exceed ``max_pages``.
    """

    def __init__(self, max_pages: int):
        if max_pages < 0:
            raise ValueError(f"max_pages must be >= 0, got {max_pages}")
        self.max_pages = max_pages
        self._remaining = max_pages
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        """Take one page from the budget, returning False once it is spent."""
        with self._lock:
            if self._remaining <= 0:
                return False
            self._remaining -= 1
            return True

    @property
    def remaining(self) -> int:
        with self._lock:
            return self._remaining

    @property
    def used(self) -> int:
        return self.max_pages - self.remaining

    @property
    def exhausted(self) -> bool:
        return self.remaining == 0


@dataclass
class CrawlStats:
    """Counters updated by crawl workers."""

    fetched: int = 0
    failed: int = 0
    skipped: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def increment(self, counter: str, amount: int = 1):
        with self._lock:
            setattr(self, counter, getattr(self, counter) + amount)


@dataclass
class RawPage:
    """A fetched page, before text extraction."""

    url: str
    content: bytes
    content_type: str
    depth: int = 0


@dataclass
class ExtractedText:
    """Visible text of a page, plus its title."""

    text: str
    title: str = ""


@dataclass(eq=False)
class Document:
    """A page ready to be indexed.

    ``embedding`` is None when the encoder failed for this document; the
    document is then searchable lexically only. ``doc_id`` is assigned by
    the index writer.
    """

    url: str
    text: str
    title: str = ""
    embedding: np.ndarray | None = None
    doc_id: int | None = None

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None

    def embedding_input(self) -> str:
        """Text fed to the encoder: the title followed by the body."""
        if self.title and not self.text.startswith(self.title):
            return f"{self.title}\n{self.text}"
        return self.text


@dataclass
class SearchResult:
    """One ranked hit.

    ``lexical_score`` is the raw BM25 score and ``semantic_score`` the cosine
    similarity; either is None when that signal did not match the document.
    ``highlights`` are (start, end) character ranges inside ``snippet``.
    """

    doc_id: int
    url: str
    title: str
    score: float
    lexical_score: float | None = None
    semantic_score: float | None = None
    snippet: str = ""
    highlights: list[tuple[int, int]] = field(default_factory=list)

    def to_html(self, tag: str = "b") -> str:
        """Render the snippet as HTML with highlighted terms wrapped in ``tag``."""
        parts = []
        position = 0
        for start, end in self.highlights:
            parts.append(html.escape(self.snippet[position:start]))
            parts.append(f"<{tag}>{html.escape(self.snippet[start:end])}</{tag}>")
            position = end
        parts.append(html.escape(self.snippet[position:]))
        return "".join(parts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "doc_id": self.doc_id,
            "url": self.url,
            "title": self.title,
            "snippet": self.snippet,
            "snippet_html": self.to_html(),
            "highlights": [list(h) for h in self.highlights],
            "score": self.score,
            "lexical_score": self.lexical_score,
            "semantic_score": self.semantic_score,
        }


@dataclass
class IndexingReport:
    """Summary of one indexing run."""

    pages_fetched: int = 0
    pages_failed: int = 0
    documents_indexed: int = 0
    documents_skipped: int = 0
    embeddings_failed: int = 0
    generation: int | None = None
    committed: bool = False
    aborted: bool = False
    elapsed: float = 0.0

    def summary(self) -> str:
        if self.aborted:
            status = "aborted"
        elif self.committed:
            status = f"committed generation {self.generation}"
        else:
            status = "nothing committed" + (f", generation {self.generation} kept" if self.generation else "")
        return (
            f"{self.documents_indexed} documents indexed from {self.pages_fetched} pages "
            f"({self.pages_failed} failed, {self.documents_skipped} skipped, "
            f"{self.embeddings_failed} without embedding) in {self.elapsed:.1f}s, {status}"
        )
