"""Durable lexical + vector index.

Layout of an index directory::

    manifest.json           current generation and its ordered segment list
    segments/<name>/
        meta.json           document count, vector info, file checksums
        docstore.zlib       stored documents (url, title, text)
        postings.zlib       field -> term -> doc id -> character offsets
        vectors.faiss       FAISS inner-product index keyed by doc id

Segments are written once and never modified. A commit writes any buffered
documents as a new segment and then atomically replaces ``manifest.json``,
so a reader sees either the old generation or the new one, never a mix.
Segments not listed in the manifest are left-overs of an aborted run and are
deleted the next time a writer opens the index.

Titles and bodies are posted as separate fields: both are ranked, but
snippet offsets always refer to the body text. A reader ranks its whole
generation with one BM25 model, so term statistics span all segments.
"""

import hashlib
import itertools
import json
import logging
import os
import shutil
import threading
import time
import uuid
import zlib
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import faiss
import numpy as np

from .analyzer import term_offsets
from .exceptions import CorruptIndexError, IndexNotFoundError, IndexWriteError, WriterLockedError
from .lexical import LexicalScorer
from .models import Document

logger = logging.getLogger(__name__)

FORMAT_VERSION = 2
MANIFEST_FILE = "manifest.json"
SEGMENTS_DIR = "segments"
META_FILE = "meta.json"
DOCSTORE_FILE = "docstore.zlib"
POSTINGS_FILE = "postings.zlib"
VECTORS_FILE = "vectors.faiss"

HNSW_NEIGHBORS = 32

TITLE_FIELD = "title"
BODY_FIELD = "body"


@dataclass(frozen=True)
class StoredDocument:
    """A document as kept in a segment's docstore."""

    doc_id: int
    url: str
    title: str
    text: str
    has_embedding: bool


def encode_postings(postings: dict[int, list[int]]) -> list[int]:
    """Flatten one term's postings into delta-encoded integers.

    Each document contributes ``[doc id delta, offset count, offset deltas...]``
    in ascending doc id order.
    """
    flat = []
    previous_doc = 0
    for doc_id in sorted(postings):
        offsets = postings[doc_id]
        flat.append(doc_id - previous_doc)
        flat.append(len(offsets))
        previous = 0
        for offset in offsets:
            flat.append(offset - previous)
            previous = offset
        previous_doc = doc_id
    return flat


def decode_postings(flat: list[int]) -> dict[int, list[int]]:
    postings = {}
    doc_id = 0
    i = 0
    while i < len(flat):
        doc_id += flat[i]
        count = flat[i + 1]
        i += 2
        postings[doc_id] = list(itertools.accumulate(flat[i : i + count]))
        i += count
    return postings


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _write_file(path: Path, data: bytes) -> str:
    """Write and fsync a file, returning its SHA-256 checksum."""
    with open(path, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    return _sha256(data)


def _fsync_dir(path: Path):
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError:
        # Directories cannot be opened on some platforms
        return
    try:
        os.fsync(fd)
    except OSError as e:
        logger.debug(f"[INDEX] Directory fsync not supported for {path}: {e}")
    finally:
        os.close(fd)


class Segment:
    """An immutable, fully verified segment loaded into memory."""

    def __init__(
        self,
        name: str,
        documents: dict[int, StoredDocument],
        postings: dict[str, dict[str, dict[int, list[int]]]],
        vectors: faiss.Index | None,
    ):
        self.name = name
        self.documents = documents
        self._postings = postings
        self.vectors = vectors
        # Bag of title and body terms per document, the input of the BM25 model
        self.terms: dict[int, list[str]] = {doc_id: [] for doc_id in documents}
        for field in (TITLE_FIELD, BODY_FIELD):
            for term, by_doc in postings[field].items():
                for doc_id, offsets in by_doc.items():
                    self.terms[doc_id].extend([term] * len(offsets))

    @property
    def vector_count(self) -> int:
        return self.vectors.ntotal if self.vectors is not None else 0

    def postings(self, term: str) -> dict[int, list[int]]:
        """Body offsets of ``term`` per doc id."""
        return self._postings[BODY_FIELD].get(term, {})

    @classmethod
    def write(
        cls, directory: Path, documents: list["_PendingDocument"], dimension: int | None, ann_threshold: int
    ) -> dict[str, Any]:
        """Write documents as a segment into ``directory``, which must not exist.

        Returns:
            The segment metadata, as stored in meta.json
        """
        directory.mkdir(parents=True)
        docstore = [[d.doc_id, d.url, d.title, d.text, d.embedding is not None] for d in documents]
        postings: dict[str, dict[str, dict[int, list[int]]]] = {TITLE_FIELD: {}, BODY_FIELD: {}}
        for d in documents:
            for field, offsets in d.offsets.items():
                for term, positions in offsets.items():
                    postings[field].setdefault(term, {})[d.doc_id] = positions
        encoded = {
            field: {term: encode_postings(by_doc) for term, by_doc in sorted(terms.items())}
            for field, terms in postings.items()
        }
        files = {
            DOCSTORE_FILE: _write_file(directory / DOCSTORE_FILE, zlib.compress(json.dumps(docstore).encode())),
            POSTINGS_FILE: _write_file(directory / POSTINGS_FILE, zlib.compress(json.dumps(encoded).encode())),
        }

        embedded = [d for d in documents if d.embedding is not None]
        index_type = None
        if embedded:
            index_type = "hnsw" if len(embedded) > ann_threshold else "flat"
            if index_type == "hnsw":
                inner = faiss.IndexHNSWFlat(dimension, HNSW_NEIGHBORS, faiss.METRIC_INNER_PRODUCT)
            else:
                inner = faiss.IndexFlatIP(dimension)
            vectors = faiss.IndexIDMap2(inner)
            vectors.add_with_ids(
                np.vstack([d.embedding for d in embedded]).astype(np.float32),
                np.array([d.doc_id for d in embedded], dtype=np.int64),
            )
            files[VECTORS_FILE] = _write_file(directory / VECTORS_FILE, faiss.serialize_index(vectors).tobytes())

        meta = {
            "format_version": FORMAT_VERSION,
            "doc_count": len(documents),
            "vector_count": len(embedded),
            "dimension": dimension,
            "index_type": index_type,
            "files": files,
        }
        _write_file(directory / META_FILE, json.dumps(meta, indent=2).encode())
        _fsync_dir(directory)
        return meta

    @classmethod
    def load(cls, directory: Path) -> "Segment":
        """Load and verify a segment.

        Raises:
            CorruptIndexError: If a file is missing or fails its checksum, or if the
                postings or vector ids do not match the docstore
        """
        try:
            meta = json.loads((directory / META_FILE).read_text())
            blobs = {}
            for name, expected in meta["files"].items():
                data = (directory / name).read_bytes()
                if _sha256(data) != expected:
                    raise CorruptIndexError(
                        f"Checksum mismatch for {directory.name}/{name}. "
                        f"Expected: {expected[:16]}..., Got: {_sha256(data)[:16]}... "
                        f"Delete the index directory and rebuild the index."
                    )
                blobs[name] = data

            documents = {}
            for doc_id, url, title, text, has_embedding in json.loads(zlib.decompress(blobs[DOCSTORE_FILE])):
                documents[doc_id] = StoredDocument(doc_id, url, title, text, has_embedding)

            encoded = json.loads(zlib.decompress(blobs[POSTINGS_FILE]))
            postings = {
                field: {term: decode_postings(flat) for term, flat in encoded[field].items()}
                for field in (TITLE_FIELD, BODY_FIELD)
            }

            vectors = None
            if VECTORS_FILE in blobs:
                vectors = faiss.deserialize_index(np.frombuffer(blobs[VECTORS_FILE], dtype=np.uint8))
        except CorruptIndexError:
            raise
        except (OSError, ValueError, KeyError, IndexError, TypeError, zlib.error, RuntimeError) as e:
            raise CorruptIndexError(f"Failed to load segment {directory.name}: {e}") from e

        posted_ids = {doc_id for terms in postings.values() for by_doc in terms.values() for doc_id in by_doc}
        if not posted_ids <= documents.keys():
            raise CorruptIndexError(f"Segment {directory.name} has postings for documents missing from its docstore")

        embedded_ids = {doc.doc_id for doc in documents.values() if doc.has_embedding}
        vector_ids = set(faiss.vector_to_array(vectors.id_map).tolist()) if vectors is not None else set()
        if vector_ids != embedded_ids:
            raise CorruptIndexError(
                f"Segment {directory.name} has {len(vector_ids)} vectors for {len(embedded_ids)} embedded documents"
            )

        logger.debug(f"[INDEX] Loaded segment {directory.name} ({len(documents)} docs, {len(vector_ids)} vectors)")
        return cls(directory.name, documents, postings, vectors)


class IndexReader:
    """Immutable snapshot of one committed generation.

    Readers never lock: segments are immutable and a reader only ever holds
    the segments of the generation it was opened on.
    """

    def __init__(
        self,
        generation: int,
        segments: list[Segment],
        dimension: int | None = None,
        bm25_k1: float = 1.2,
        bm25_b: float = 0.75,
    ):
        self.generation = generation
        self.segments = segments
        self.dimension = dimension
        self._documents: dict[int, StoredDocument] = {}
        self._vector_segment: dict[int, Segment] = {}
        doc_ids: list[int] = []
        corpus: list[list[str]] = []
        for segment in segments:
            self._documents.update(segment.documents)
            for doc_id, terms in segment.terms.items():
                doc_ids.append(doc_id)
                corpus.append(terms)
            if segment.vectors is not None:
                for doc in segment.documents.values():
                    if doc.has_embedding:
                        self._vector_segment[doc.doc_id] = segment
        self.lexical = LexicalScorer(doc_ids, corpus, k1=bm25_k1, b=bm25_b)

    @property
    def doc_count(self) -> int:
        return len(self._documents)

    @property
    def vector_count(self) -> int:
        return len(self._vector_segment)

    def document(self, doc_id: int) -> StoredDocument:
        return self._documents[doc_id]

    def documents(self):
        return self._documents.values()

    def urls(self) -> set[str]:
        return {doc.url for doc in self._documents.values()}

    def lexical_scores(self, terms: list[str]) -> dict[int, float]:
        """BM25 score of every document whose title or body contains one of ``terms``."""
        return self.lexical.scores(terms)

    def postings(self, term: str) -> dict[int, list[int]]:
        """Body offsets of ``term`` per doc id, merged across segments."""
        merged: dict[int, list[int]] = {}
        for segment in self.segments:
            merged.update(segment.postings(term))
        return merged

    def vector(self, doc_id: int) -> np.ndarray | None:
        """Stored embedding of a document, or None if it has none."""
        segment = self._vector_segment.get(doc_id)
        if segment is None:
            return None
        return segment.vectors.reconstruct(int(doc_id))

    def search_vectors(self, query: np.ndarray, k: int) -> list[tuple[int, float]]:
        """Nearest neighbours by inner product, best first.

        Returns:
            List of (doc_id, score), ties broken by lower doc id
        """
        query = np.asarray(query, dtype=np.float32).reshape(1, -1)
        hits: list[tuple[int, float]] = []
        for segment in self.segments:
            if segment.vectors is None or k <= 0:
                continue
            scores, ids = segment.vectors.search(query, min(k, segment.vector_count))
            hits.extend((int(i), float(s)) for i, s in zip(ids[0], scores[0]) if i != -1)
        hits.sort(key=lambda hit: (-hit[1], hit[0]))
        return hits[:k]


@dataclass
class _PendingDocument:
    doc_id: int
    url: str
    title: str
    text: str
    embedding: np.ndarray | None
    offsets: dict[str, dict[str, list[int]]]


class IndexWriter:
    """The single writer of an index directory.

    Documents passed to ``add`` are buffered and written as a new segment
    every ``flush_threshold`` documents. Nothing is visible to readers until
    ``commit``. ``rollback`` discards everything since the last commit.
    """

    def __init__(
        self,
        index: "SearchIndex",
        base_manifest: dict[str, Any] | None,
        fresh: bool,
        lock: threading.Lock,
        flush_threshold: int = 1000,
        ann_threshold: int = 50_000,
    ):
        self._index = index
        self._lock = lock
        self._mutex = threading.RLock()
        self.flush_threshold = flush_threshold
        self.ann_threshold = ann_threshold
        self._closed = False

        self._generation = base_manifest["generation"] if base_manifest else 0
        if fresh or base_manifest is None:
            self._segments: list[str] = []
            self._next_doc_id = 0
            self._dimension: int | None = None
            self._known_urls: set[str] = set()
        else:
            self._segments = list(base_manifest["segments"])
            self._next_doc_id = base_manifest["next_doc_id"]
            self._dimension = base_manifest.get("dimension")
            self._known_urls = index.reader().urls()

        self._committed = (list(self._segments), self._next_doc_id, self._dimension, set(self._known_urls))
        self._buffer: list[_PendingDocument] = []
        self._staged: list[str] = []

    @property
    def generation(self) -> int:
        """Generation of the last commit seen by this writer."""
        return self._generation

    @property
    def dimension(self) -> int | None:
        return self._dimension

    @property
    def pending_count(self) -> int:
        """Documents added since the last commit."""
        with self._mutex:
            return self._next_doc_id - self._committed[1]

    def add(self, document: Document) -> int | None:
        """Analyse a document and buffer it under the next doc id.

        Returns:
            The assigned doc id, or None if a document with the same URL is
            already in the index
        """
        with self._mutex:
            self._check_open()
            if document.url in self._known_urls:
                logger.debug(f"[INDEX] Skipping duplicate URL: {document.url}")
                return None

            pending = _PendingDocument(
                doc_id=self._next_doc_id,
                url=document.url,
                title=document.title,
                text=document.text,
                embedding=self._checked_embedding(document),
                offsets={TITLE_FIELD: term_offsets(document.title), BODY_FIELD: term_offsets(document.text)},
            )
            self._next_doc_id += 1
            self._known_urls.add(document.url)
            self._buffer.append(pending)
            document.doc_id = pending.doc_id

            if len(self._buffer) >= self.flush_threshold:
                self.flush()
            return pending.doc_id

    def _checked_embedding(self, document: Document) -> np.ndarray | None:
        if document.embedding is None:
            return None
        vector = np.asarray(document.embedding, dtype=np.float32)
        if vector.ndim != 1 or not np.all(np.isfinite(vector)):
            logger.warning(f"[INDEX] Invalid embedding for {document.url}, indexing lexically only")
            return None
        if self._dimension is None:
            self._dimension = int(vector.shape[0])
        elif vector.shape[0] != self._dimension:
            logger.warning(
                f"[INDEX] Embedding for {document.url} has dimension {vector.shape[0]}, "
                f"expected {self._dimension}; indexing lexically only"
            )
            return None
        return vector

    def flush(self):
        """Write buffered documents to a staged segment.

        Raises:
            IndexWriteError: If the segment cannot be written
        """
        with self._mutex:
            self._check_open()
            if not self._buffer:
                return
            name = f"seg-{uuid.uuid4().hex[:12]}"
            final_dir = self._index.segments_dir / name
            temp_dir = self._index.segments_dir / f".tmp-{name}"
            start = time.time()
            try:
                meta = Segment.write(temp_dir, self._buffer, self._dimension, self.ann_threshold)
                os.rename(temp_dir, final_dir)
                _fsync_dir(self._index.segments_dir)
            except (OSError, RuntimeError) as e:
                shutil.rmtree(temp_dir, ignore_errors=True)
                raise IndexWriteError(f"Failed to write segment {name}: {e}") from e
            self._staged.append(name)
            self._segments.append(name)
            self._buffer = []
            logger.info(
                f"[INDEX] Flushed segment {name}: {meta['doc_count']} documents, "
                f"{meta['vector_count']} vectors ({meta['index_type'] or 'no vectors'}) in {time.time() - start:.1f}s"
            )

    def commit(self) -> int:
        """Flush and publish everything added so far as a new generation.

        Returns:
            The new generation number

        Raises:
            IndexWriteError: If a segment or the manifest cannot be written;
                the previous generation stays current
        """
        with self._mutex:
            self.flush()
            manifest = {
                "format_version": FORMAT_VERSION,
                "generation": self._generation + 1,
                "segments": list(self._segments),
                "next_doc_id": self._next_doc_id,
                "dimension": self._dimension,
                "committed_at": datetime.now(timezone.utc).isoformat(),
            }
            self._index._publish(manifest)
            self._generation += 1
            self._staged = []
            self._committed = (list(self._segments), self._next_doc_id, self._dimension, set(self._known_urls))
            logger.info(
                f"[INDEX] ✓ Committed generation {self._generation} "
                f"({len(self._segments)} segments, {self._next_doc_id} doc ids)"
            )
            return self._generation

    def rollback(self):
        """Discard buffered and staged documents added since the last commit."""
        with self._mutex:
            discarded = self._next_doc_id - self._committed[1]
            for name in self._staged:
                shutil.rmtree(self._index.segments_dir / name, ignore_errors=True)
            self._staged = []
            self._buffer = []
            segments, next_doc_id, dimension, known_urls = self._committed
            self._segments = list(segments)
            self._next_doc_id = next_doc_id
            self._dimension = dimension
            self._known_urls = set(known_urls)
            if discarded:
                logger.warning(f"[INDEX] Rolled back {discarded} uncommitted documents")

    def close(self):
        """Release the writer. Uncommitted documents are rolled back."""
        with self._mutex:
            if self._closed:
                return
            if self._buffer or self._staged:
                self.rollback()
            self._closed = True
            self._lock.release()

    def _check_open(self):
        if self._closed:
            raise IndexWriteError("Index writer is closed")

    def __enter__(self) -> "IndexWriter":
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.rollback()
        self.close()


class SearchIndex:
    """An index directory with one writer at a time and any number of readers."""

    # Writer locks per resolved index directory, shared by all instances in the process
    _writer_locks: dict[Path, threading.Lock] = {}
    _registry_lock = threading.Lock()

    def __init__(
        self,
        index_dir: str | Path,
        flush_threshold: int = 1000,
        ann_threshold: int = 50_000,
        bm25_k1: float = 1.2,
        bm25_b: float = 0.75,
    ):
        self.index_dir = Path(index_dir)
        self.segments_dir = self.index_dir / SEGMENTS_DIR
        self.manifest_path = self.index_dir / MANIFEST_FILE
        self.flush_threshold = flush_threshold
        self.ann_threshold = ann_threshold
        self.bm25_k1 = bm25_k1
        self.bm25_b = bm25_b
        self._reader: IndexReader | None = None
        self._reader_lock = threading.Lock()
        self._segment_cache: dict[str, Segment] = {}

    @classmethod
    def from_config(cls, config) -> "SearchIndex":
        return cls(
            config.index_dir,
            flush_threshold=config.flush_threshold,
            ann_threshold=config.ann_threshold,
            bm25_k1=config.bm25_k1,
            bm25_b=config.bm25_b,
        )

    def exists(self) -> bool:
        return self.manifest_path.exists()

    def read_manifest(self) -> dict[str, Any] | None:
        """Current manifest, or None if nothing was ever committed."""
        try:
            manifest = json.loads(self.manifest_path.read_text())
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            raise CorruptIndexError(f"Unreadable manifest {self.manifest_path}: {e}") from e
        if manifest.get("format_version") != FORMAT_VERSION:
            raise CorruptIndexError(
                f"Unsupported index format {manifest.get('format_version')} (expected {FORMAT_VERSION}), "
                f"rebuild the index"
            )
        return manifest

    def reader(self) -> IndexReader:
        """Snapshot of the latest committed generation.

        The snapshot is cached and reused until a newer generation is committed.

        Raises:
            IndexNotFoundError: If no generation has been committed yet
        """
        manifest = self.read_manifest()
        if manifest is None:
            raise IndexNotFoundError(f"No index found in {self.index_dir}, run a crawl first")

        generation = manifest["generation"]
        with self._reader_lock:
            current = self._reader
            segment_cache = self._segment_cache
        if current is not None and current.generation == generation:
            return current

        # Load outside the lock so queries on the current snapshot keep running
        start = time.time()
        segments = []
        for name in manifest["segments"]:
            segment = segment_cache.get(name)
            if segment is None:
                segment = Segment.load(self.segments_dir / name)
            segments.append(segment)
        reader = IndexReader(
            generation, segments, manifest.get("dimension"), bm25_k1=self.bm25_k1, bm25_b=self.bm25_b
        )

        with self._reader_lock:
            if self._reader is not None and self._reader.generation == generation:
                # Another thread opened the same generation first
                return self._reader
            self._reader = reader
            self._segment_cache = {segment.name: segment for segment in segments}
        logger.info(
            f"[INDEX] Opened generation {generation}: {reader.doc_count} documents, "
            f"{reader.vector_count} vectors in {time.time() - start:.1f}s"
        )
        return reader

    def writer(self, fresh: bool = True) -> IndexWriter:
        """Open the writer for this index directory.

        Args:
            fresh: Start an empty index (the previous generation stays readable
                until the first commit). If False, append to the current one.

        Raises:
            WriterLockedError: If another writer is open on this directory
        """
        lock = self._writer_lock()
        if not lock.acquire(blocking=False):
            raise WriterLockedError(f"Index {self.index_dir} already has an open writer")
        try:
            self.segments_dir.mkdir(parents=True, exist_ok=True)
            manifest = self.read_manifest()
            self._collect_garbage(manifest)
            writer = IndexWriter(
                self,
                manifest,
                fresh=fresh,
                lock=lock,
                flush_threshold=self.flush_threshold,
                ann_threshold=self.ann_threshold,
            )
        except Exception:
            lock.release()
            raise
        mode = "fresh" if fresh or manifest is None else f"append to generation {manifest['generation']}"
        logger.info(f"[INDEX] Opened writer on {self.index_dir} ({mode})")
        return writer

    def _writer_lock(self) -> threading.Lock:
        key = self.index_dir.resolve()
        with SearchIndex._registry_lock:
            return SearchIndex._writer_locks.setdefault(key, threading.Lock())

    def _collect_garbage(self, manifest: dict[str, Any] | None):
        referenced = set(manifest["segments"]) if manifest else set()
        removed = 0
        for path in self.segments_dir.iterdir():
            if path.is_dir() and path.name not in referenced:
                shutil.rmtree(path, ignore_errors=True)
                removed += 1
        if removed:
            logger.info(f"[INDEX] Removed {removed} unreferenced segment(s)")

    def _publish(self, manifest: dict[str, Any]):
        """Atomically replace the manifest.

        Raises:
            IndexWriteError: If the manifest cannot be written
        """
        temp_path = self.manifest_path.with_name(f".{MANIFEST_FILE}.tmp")
        try:
            _write_file(temp_path, json.dumps(manifest, indent=2).encode())
            os.replace(temp_path, self.manifest_path)
            _fsync_dir(self.index_dir)
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise IndexWriteError(f"Failed to publish generation {manifest['generation']}: {e}") from e
