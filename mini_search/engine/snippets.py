"""Snippet selection.

A snippet is a window of the document's cached text around the densest
cluster of query-term matches. Window edges fall on whitespace (spaces or the
line breaks left by block elements) so words are never cut in half.
"""

import re
from collections import Counter
from dataclasses import dataclass, field

from .analyzer import token_end

SPACE_RE = re.compile(r"\s")


@dataclass
class Snippet:
    text: str
    highlights: list[tuple[int, int]] = field(default_factory=list)


def _first_space(text: str, start: int, stop: int) -> int:
    match = SPACE_RE.search(text, start, stop)
    return match.start() if match else -1


def _last_space(text: str, start: int, stop: int) -> int:
    for i in range(stop - 1, start - 1, -1):
        if text[i].isspace():
            return i
    return -1


def _best_cluster(matches: list[tuple[int, int, str]], max_chars: int) -> tuple[int, int]:
    """Indexes (first, last) of the match run with the most distinct terms that fits in ``max_chars``.

    Ties go to the run with more matches, then to the earliest one.
    """
    best = (0, 0)
    best_key = (0, 0)
    terms: Counter = Counter()
    left = 0
    for right, (_, end, term) in enumerate(matches):
        terms[term] += 1
        while end - matches[left][0] > max_chars and left < right:
            left_term = matches[left][2]
            terms[left_term] -= 1
            if not terms[left_term]:
                del terms[left_term]
            left += 1
        key = (len(terms), right - left + 1)
        if key > best_key:
            best_key = key
            best = (left, right)
    return best


def _leading(text: str, max_chars: int) -> Snippet:
    if len(text) <= max_chars:
        return Snippet(text.replace("\n", " ").strip())
    cut = _last_space(text, 0, max_chars + 1)
    if cut < max_chars // 2:
        cut = max_chars
    return Snippet(text[:cut].replace("\n", " ").strip())


def make_snippet(text: str, term_offsets: dict[str, list[int]], max_chars: int = 150) -> Snippet:
    """Build a snippet of at most ``max_chars`` characters.

    Args:
        text: The document's plain text
        term_offsets: Query term -> start offsets of its occurrences in ``text``
        max_chars: Maximum snippet length

    Returns:
        Snippet whose highlights are (start, end) ranges within the snippet text.
        Without any matches, the leading text of the document.
    """
    matches = sorted(
        (start, token_end(text, start), term) for term, offsets in term_offsets.items() for start in offsets
    )
    matches = [m for m in matches if m[1] > m[0]]
    if not matches:
        return _leading(text, max_chars)

    first, last = _best_cluster(matches, max_chars)
    span_start = matches[first][0]
    span_end = min(matches[last][1], span_start + max_chars)

    # Centre the cluster in the window
    slack = max_chars - (span_end - span_start)
    start = max(0, span_start - slack // 2)
    end = min(len(text), start + max_chars)
    start = max(0, end - max_chars)

    # Snap window edges to word boundaries without cutting into the cluster
    if start > 0 and not text[start - 1].isspace():
        boundary = _first_space(text, start, span_start)
        start = boundary + 1 if boundary != -1 else span_start
    if end < len(text) and not text[end].isspace():
        boundary = _last_space(text, span_end, end)
        end = boundary if boundary != -1 else span_end

    window = text[start:end]
    stripped = len(window) - len(window.lstrip())
    start += stripped
    window = window.strip().replace("\n", " ")

    highlights = [
        (match_start - start, match_end - start)
        for match_start, match_end, _ in matches
        if match_start >= start and match_end - start <= len(window)
    ]
    return Snippet(window, highlights)
