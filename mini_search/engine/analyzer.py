"""Text analysis shared by indexing and querying.

Text is split into lower-cased word tokens and English stopwords are dropped.
Each token keeps the character offset where it starts in the original text,
so snippets can be cut from the cached document text without re-analysing it.
"""

import re
from collections.abc import Iterator
from dataclasses import dataclass

TOKEN_RE = re.compile(r"\w+")

# Tokens longer than this are dropped (base64 blobs, hashes, minified code)
MAX_TOKEN_LENGTH = 40

# Lucene's English stopword list
STOPWORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "but", "by", "for", "if", "in", "into", "is", "it",
        "no", "not", "of", "on", "or", "such", "that", "the", "their", "then", "there", "these",
        "they", "this", "to", "was", "will", "with",
    }
)  # fmt: skip


@dataclass(frozen=True)
class Token:
    term: str
    start: int
    end: int


def iter_tokens(text: str) -> Iterator[Token]:
    """Yield the indexable tokens of ``text`` in reading order."""
    for match in TOKEN_RE.finditer(text):
        term = match.group().lower()
        if len(term) > MAX_TOKEN_LENGTH or term in STOPWORDS:
            continue
        yield Token(term, match.start(), match.end())


def term_offsets(text: str) -> dict[str, list[int]]:
    """Group token start offsets by term, each list ascending."""
    offsets: dict[str, list[int]] = {}
    for token in iter_tokens(text):
        offsets.setdefault(token.term, []).append(token.start)
    return offsets


def query_terms(text: str) -> list[str]:
    """Distinct terms of a query, in order of first appearance."""
    seen: dict[str, None] = {}
    for token in iter_tokens(text):
        seen.setdefault(token.term, None)
    return list(seen)


def token_end(text: str, start: int) -> int:
    """End offset of the token starting at ``start``."""
    match = TOKEN_RE.match(text, start)
    return match.end() if match else start
