"""BM25 ranking of a snapshot's documents, built on rank_bm25.

Each document is the bag of its title and body terms as recorded in the
segment postings, so a word that only appears in a page title still matches.
Snippet highlights use the body postings alone.
"""

import math

import numpy as np
from rank_bm25 import BM25Okapi


class LuceneBM25(BM25Okapi):
    """BM25Okapi with Lucene's idf.

    ``log(1 + (N - n + 0.5) / (n + 0.5))`` stays positive for terms found in
    most documents, where the Okapi idf would turn zero or negative on small
    indexes.
    """

    def _calc_idf(self, nd):
        for word, freq in nd.items():
            self.idf[word] = math.log(1 + (self.corpus_size - freq + 0.5) / (freq + 0.5))


class LexicalScorer:
    """BM25 over every document of one committed generation."""

    def __init__(self, doc_ids: list[int], corpus: list[list[str]], k1: float = 1.2, b: float = 0.75):
        """Initialize the scorer.

        Args:
            doc_ids: Doc id of each corpus row
            corpus: Analysed terms of each document
            k1: BM25 term-frequency saturation
            b: BM25 length normalisation
        """
        self.doc_ids = doc_ids
        self._bm25 = LuceneBM25(corpus, k1=k1, b=b) if corpus else None

    @property
    def doc_count(self) -> int:
        return len(self.doc_ids)

    def scores(self, terms: list[str]) -> dict[int, float]:
        """BM25 score of every document matching at least one of ``terms``."""
        if self._bm25 is None:
            return {}
        known = [term for term in terms if term in self._bm25.idf]
        if not known:
            return {}
        raw = self._bm25.get_scores(known)
        return {self.doc_ids[row]: float(raw[row]) for row in np.flatnonzero(raw > 0)}
