"""Exceptions raised by the search engine."""


class MiniSearchError(Exception):
    """Base class for all mini-search errors."""


class EmbeddingError(MiniSearchError):
    """The encoder could not produce a vector for a text."""


class IndexNotFoundError(MiniSearchError):
    """No committed index exists in the index directory."""


class CorruptIndexError(MiniSearchError):
    """A segment failed checksum or consistency verification on load."""


class IndexWriteError(MiniSearchError):
    """Writing a segment or publishing a commit failed.

    The previously committed generation stays current when this is raised.
    """


class WriterLockedError(MiniSearchError):
    """Another writer already has the index directory open."""
