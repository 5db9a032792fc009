"""Hybrid query engine.

Each query is scored two ways against the same committed snapshot:

- lexically, with BM25 over document titles and bodies, normalised by the best
  BM25 score of the query;
- semantically, as the cosine similarity between the query embedding and
  the stored document embeddings.

The final score is ``lexical_weight * lexical + semantic_weight * semantic``,
with a missing signal counting as zero. Equal scores are broken by the
higher raw lexical score and then by the lower doc id, so results are fully
deterministic for a given snapshot.
"""

import logging
import time

import numpy as np

from .analyzer import query_terms
from .config import SearchConfig
from .embeddings import Embedder
from .exceptions import EmbeddingError
from .index import IndexReader, SearchIndex
from .models import SearchResult
from .snippets import make_snippet

logger = logging.getLogger(__name__)


class QueryEngine:
    """Answers queries against the latest committed index generation."""

    def __init__(self, index: SearchIndex, embedder: Embedder | None = None, config: SearchConfig | None = None):
        """Initialize the query engine.

        Args:
            index: Index to search
            embedder: Query encoder. None = lexical ranking only.
            config: Search settings (weights, candidate multiplier, snippet length)
        """
        self.index = index
        self.embedder = embedder
        self.config = config or SearchConfig()

    def refresh(self) -> IndexReader:
        """Return the current snapshot, opening a newer generation if one was committed."""
        return self.index.reader()

    def search(self, query: str, k: int | None = None) -> list[SearchResult]:
        """Search the index.

        Args:
            query: Natural-language query
            k: Maximum number of results (default: ``search_top_k``)

        Returns:
            Results ordered by combined score, best first

        Raises:
            IndexNotFoundError: If nothing has been committed yet
        """
        k = self.config.search_top_k if k is None else k
        if k <= 0:
            return []

        start = time.time()
        reader = self.refresh()
        terms = query_terms(query)
        lexical = reader.lexical_scores(terms)
        semantic = self._semantic_scores(reader, query, k, lexical)

        ranked = self._merge(lexical, semantic)[:k]
        term_postings = {term: reader.postings(term) for term in terms}
        results = [self._build_result(reader, term_postings, *row) for row in ranked]
        logger.info(
            f"[SEARCH] '{query[:80]}': {len(results)} results "
            f"({len(lexical)} lexical, {len(semantic)} semantic candidates) in {time.time() - start:.3f}s"
        )
        return results

    def _semantic_scores(
        self, reader: IndexReader, query: str, k: int, lexical: dict[int, float]
    ) -> dict[int, float]:
        if self.embedder is None or reader.vector_count == 0:
            return {}
        try:
            query_vector = self.embedder.embed(query)
        except EmbeddingError as e:
            logger.warning(f"[SEARCH] Query embedding failed, falling back to lexical ranking: {e}")
            return {}
        if reader.dimension is not None and query_vector.shape[0] != reader.dimension:
            logger.warning(
                f"[SEARCH] Query embedding has dimension {query_vector.shape[0]}, index has {reader.dimension}; "
                f"falling back to lexical ranking"
            )
            return {}

        scores = dict(reader.search_vectors(query_vector, k * self.config.candidate_multiplier))
        # Lexical candidates outside the nearest neighbours still get their cosine score
        for doc_id in lexical:
            if doc_id not in scores:
                vector = reader.vector(doc_id)
                if vector is not None:
                    scores[doc_id] = float(np.dot(vector, query_vector))
        return {doc_id: max(-1.0, min(1.0, score)) for doc_id, score in scores.items()}

    def _merge(
        self, lexical: dict[int, float], semantic: dict[int, float]
    ) -> list[tuple[int, float, float | None, float | None]]:
        """Combine both signals.

        Returns:
            (doc_id, combined, lexical, semantic) rows, best first
        """
        max_lexical = max(lexical.values(), default=0.0)
        rows = []
        for doc_id in set(lexical) | set(semantic):
            lexical_score = lexical.get(doc_id)
            semantic_score = semantic.get(doc_id)
            normalised = lexical_score / max_lexical if lexical_score and max_lexical > 0 else 0.0
            combined = self.config.lexical_weight * normalised + self.config.semantic_weight * (semantic_score or 0.0)
            rows.append((doc_id, combined, lexical_score, semantic_score))
        rows.sort(key=lambda row: (-row[1], -(row[2] or 0.0), row[0]))
        return rows

    def _build_result(
        self,
        reader: IndexReader,
        term_postings: dict[str, dict[int, list[int]]],
        doc_id: int,
        combined: float,
        lexical_score: float | None,
        semantic_score: float | None,
    ) -> SearchResult:
        document = reader.document(doc_id)
        offsets = {term: by_doc[doc_id] for term, by_doc in term_postings.items() if doc_id in by_doc}
        snippet = make_snippet(document.text, offsets, self.config.snippet_max_chars)
        return SearchResult(
            doc_id=doc_id,
            url=document.url,
            title=document.title,
            score=combined,
            lexical_score=lexical_score,
            semantic_score=semantic_score,
            snippet=snippet.text,
            highlights=snippet.highlights,
        )
