"""Search engine configuration dataclass."""

from dataclasses import dataclass, field
from pathlib import Path

PRECISIONS = ("fp32", "fp16", "bf16")

# Default user agent for crawling
DEFAULT_USER_AGENT = "mini-search/0.1 (Personal search crawler)"


@dataclass
class SearchConfig:
    """Configuration for crawling, indexing and searching.

    Attributes:
        index_dir: Directory holding the manifest and index segments
        model_dir: Local sentence-transformers model directory (read-only)

        # Crawling settings
        max_pages: Default page budget per seed (default: 10,000)
        max_workers: Number of parallel crawl threads (default: 8)
        base_path: Preferred path prefix. Links under it are fetched first; other
            same-host links stay eligible. None = directory of the seed URL.
        same_host_only: Only follow links on the seed's host (default: True)
        max_crawl_depth: Maximum link depth from the seed (None = unlimited)
        rate_limit_delay: Seconds each worker waits before a request (default: 0.1)
        request_timeout: HTTP request timeout in seconds
        max_response_bytes: Larger responses are dropped
        url_include_patterns: List of regex patterns - only crawl matching URLs
        url_exclude_patterns: List of regex patterns - skip matching URLs
        crawl_queue_size: Fetched pages buffered between crawler and indexer.
            When full, crawl workers block until the indexer catches up.

        # Extraction / embedding settings
        extract_workers: Threads used for HTML-to-text extraction
        max_seq_length: Encoder input length in tokens; longer text is truncated
        embed_batch_size: Documents per encoder batch
        precision: Model weight precision, "fp32", "fp16" or "bf16". Fixed at load time.
        device: Torch device (None = auto-detect mps, cuda, cpu)
        max_pending_documents: Extracted documents allowed to wait for embedding

        # Index settings
        flush_threshold: Buffered documents written per segment
        commit_interval: Commit every N indexed documents (None = commit once at the end)
        ann_threshold: Segments with more vectors than this use an HNSW index
            instead of exact search

        # Search settings
        lexical_weight: Weight of the normalised BM25 score (default: 0.3)
        semantic_weight: Weight of the cosine similarity (default: 0.7).
            The two weights must sum to 1.0.
        search_top_k: Default number of results to return
        candidate_multiplier: Vector candidates fetched per query (search_top_k * this)
        snippet_max_chars: Maximum snippet length in characters
        bm25_k1: BM25 term-frequency saturation
        bm25_b: BM25 length normalisation
        show_progress: Show progress bars while crawling and indexing
    """

    # Core settings
    index_dir: str | Path = "./mini-search-index"
    model_dir: str | Path = "./model"

    # Crawling settings
    max_pages: int = 10_000
    max_workers: int = 8
    base_path: str | None = None
    same_host_only: bool = True
    max_crawl_depth: int | None = None
    rate_limit_delay: float = 0.1
    request_timeout: float = 10.0  # HTTP request timeout in seconds
    max_response_bytes: int = 10 * 1024 * 1024
    url_include_patterns: list[str] = field(default_factory=list)
    url_exclude_patterns: list[str] = field(default_factory=list)
    user_agent: str = DEFAULT_USER_AGENT
    crawl_queue_size: int = 64

    # Extraction / embedding settings
    extract_workers: int = 2
    max_seq_length: int = 256
    embed_batch_size: int = 32
    precision: str = "fp32"
    device: str | None = None
    max_pending_documents: int = 256

    # Index settings
    flush_threshold: int = 1000
    commit_interval: int | None = None
    ann_threshold: int = 50_000

    # Search settings
    lexical_weight: float = 0.3
    semantic_weight: float = 0.7
    search_top_k: int = 10
    candidate_multiplier: int = 5
    snippet_max_chars: int = 150
    bm25_k1: float = 1.2
    bm25_b: float = 0.75

    show_progress: bool = True

    def __post_init__(self):
        """Convert directories to Path and validate settings."""
        self.index_dir = Path(self.index_dir)
        self.model_dir = Path(self.model_dir)

        # Validate hybrid search weights
        total_weight = self.lexical_weight + self.semantic_weight
        if abs(total_weight - 1.0) > 0.01:  # Allow small floating point error
            raise ValueError(
                f"Search weights must sum to 1.0, got {total_weight} "
                f"(lexical={self.lexical_weight}, semantic={self.semantic_weight})"
            )
        if self.lexical_weight < 0 or self.semantic_weight < 0:
            raise ValueError("Search weights must not be negative")

        if self.precision not in PRECISIONS:
            raise ValueError(f"precision must be one of {', '.join(PRECISIONS)}, got {self.precision!r}")

        for name in (
            "max_workers",
            "crawl_queue_size",
            "extract_workers",
            "max_seq_length",
            "embed_batch_size",
            "max_pending_documents",
            "flush_threshold",
            "search_top_k",
            "candidate_multiplier",
            "snippet_max_chars",
        ):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1, got {getattr(self, name)}")

        if self.max_pages < 0:
            raise ValueError(f"max_pages must be >= 0, got {self.max_pages}")
        if self.commit_interval is not None and self.commit_interval < 1:
            raise ValueError(f"commit_interval must be >= 1 or None, got {self.commit_interval}")
