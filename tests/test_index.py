"""Tests for the segment index."""

import hashlib
import json
import os
import zlib

import numpy as np
import pytest

from mini_search.engine import index as index_module
from mini_search.engine.exceptions import (
    CorruptIndexError,
    IndexNotFoundError,
    IndexWriteError,
    WriterLockedError,
)
from mini_search.engine.index import SearchIndex
from mini_search.engine.models import Document


def unit(vector):
    vector = np.asarray(vector, dtype=np.float32)
    return vector / np.linalg.norm(vector)


def add_documents(index, documents, fresh=True):
    with index.writer(fresh=fresh) as writer:
        ids = [writer.add(document) for document in documents]
        writer.commit()
    return ids


@pytest.mark.unit
class TestSearchIndex:
    """Test writing, committing and reading an index."""

    def test_missing_index(self, tmp_path):
        index = SearchIndex(tmp_path / "nothing")

        assert not index.exists()
        with pytest.raises(IndexNotFoundError):
            index.reader()

    def test_round_trip(self, built_index, sample_documents, fake_embedder):
        """Test that stored documents and vectors come back unchanged."""
        reader = SearchIndex(built_index.index_dir).reader()

        assert reader.generation == 1
        assert reader.doc_count == len(sample_documents)
        assert reader.vector_count == len(sample_documents)
        assert reader.dimension == fake_embedder.dimension
        for document in sample_documents:
            stored = reader.document(document.doc_id)
            assert stored.url == document.url
            assert stored.title == document.title
            assert stored.text == document.text
            assert stored.has_embedding
            assert np.allclose(reader.vector(document.doc_id), document.embedding, atol=1e-6)

    def test_lexical_scores_cover_titles_and_bodies(self, built_index, sample_documents):
        reader = built_index.reader()
        install_doc, cargo_doc, python_doc, _ = sample_documents

        assert set(reader.lexical_scores(["install"])) == {install_doc.doc_id, python_doc.doc_id}
        # "guide" only appears in a title
        assert set(reader.lexical_scores(["guide"])) == {cargo_doc.doc_id}
        assert reader.lexical_scores(["the"]) == {}
        assert reader.lexical_scores(["nonexistent"]) == {}
        assert reader.lexical_scores([]) == {}

    def test_body_postings_keep_offsets(self, built_index, sample_documents):
        reader = built_index.reader()
        install_doc, cargo_doc, python_doc, _ = sample_documents

        assert reader.postings("install") == {install_doc.doc_id: [0], python_doc.doc_id: [53]}
        assert reader.postings("cargo")[cargo_doc.doc_id] == [0, 39, 66]
        # Title terms are ranked but have no body offsets
        assert reader.postings("guide") == {}

    def test_doc_ids_are_sequential(self, tmp_path, sample_documents):
        index = SearchIndex(tmp_path / "index")

        ids = add_documents(index, sample_documents)

        assert ids == [0, 1, 2, 3]
        assert [document.doc_id for document in sample_documents] == ids

    def test_duplicate_url_is_skipped(self, tmp_path):
        index = SearchIndex(tmp_path / "index")

        ids = add_documents(
            index,
            [
                Document(url="https://example.com/a", text="first"),
                Document(url="https://example.com/a", text="second"),
            ],
        )

        assert ids == [0, None]
        assert index.reader().doc_count == 1

    def test_document_without_embedding_is_lexical_only(self, tmp_path):
        index = SearchIndex(tmp_path / "index")
        add_documents(
            index,
            [
                Document(url="https://example.com/a", text="alpha", embedding=unit([1, 0, 0])),
                Document(url="https://example.com/b", text="beta"),
                Document(url="https://example.com/c", text="gamma", embedding=unit([1, 0])),
            ],
        )

        reader = index.reader()

        assert reader.doc_count == 3
        assert reader.vector_count == 1
        assert reader.vector(1) is None
        assert reader.vector(2) is None
        assert not reader.document(2).has_embedding
        assert set(reader.lexical_scores(["gamma"])) == {2}

    def test_search_vectors_orders_by_score(self, tmp_path):
        index = SearchIndex(tmp_path / "index")
        add_documents(
            index,
            [
                Document(url="https://example.com/a", text="a", embedding=unit([1, 0, 0])),
                Document(url="https://example.com/b", text="b", embedding=unit([0, 1, 0])),
                Document(url="https://example.com/c", text="c", embedding=unit([1, 1, 0])),
            ],
        )

        hits = index.reader().search_vectors(unit([1, 0.1, 0]), 2)

        assert [doc_id for doc_id, _ in hits] == [0, 2]
        assert hits[0][1] > hits[1][1]

    def test_flush_threshold_writes_multiple_segments(self, tmp_path):
        index = SearchIndex(tmp_path / "index", flush_threshold=2)
        documents = [Document(url=f"https://example.com/{i}", text=f"page number {i}") for i in range(5)]

        add_documents(index, documents)

        reader = index.reader()
        assert len(reader.segments) == 3
        assert reader.doc_count == 5
        assert set(reader.lexical_scores(["page"])) == {0, 1, 2, 3, 4}

    def test_hnsw_above_ann_threshold(self, tmp_path):
        index = SearchIndex(tmp_path / "index", ann_threshold=2)
        rng = np.random.default_rng(0)
        documents = [
            Document(url=f"https://example.com/{i}", text=f"doc {i}", embedding=unit(rng.normal(size=8)))
            for i in range(10)
        ]

        add_documents(index, documents)

        segment_dir = next(p for p in index.segments_dir.iterdir() if p.is_dir())
        meta = json.loads((segment_dir / "meta.json").read_text())
        assert meta["index_type"] == "hnsw"
        hits = SearchIndex(index.index_dir).reader().search_vectors(documents[3].embedding, 1)
        assert hits[0][0] == 3

    def test_nothing_visible_before_commit(self, tmp_path, sample_documents):
        index = SearchIndex(tmp_path / "index", flush_threshold=1)

        with index.writer() as writer:
            writer.add(sample_documents[0])
            assert writer.pending_count == 1
            with pytest.raises(IndexNotFoundError):
                index.reader()
            writer.commit()

        assert index.reader().doc_count == 1

    def test_generations_are_monotonic(self, tmp_path):
        index = SearchIndex(tmp_path / "index")
        add_documents(index, [Document(url="https://example.com/a", text="one")])
        add_documents(index, [Document(url="https://example.com/b", text="two")])

        reader = index.reader()

        assert reader.generation == 2
        assert reader.urls() == {"https://example.com/b"}

    def test_append_keeps_existing_documents(self, tmp_path):
        index = SearchIndex(tmp_path / "index")
        add_documents(index, [Document(url="https://example.com/a", text="one")])

        ids = add_documents(
            index,
            [Document(url="https://example.com/a", text="again"), Document(url="https://example.com/b", text="two")],
            fresh=False,
        )

        reader = index.reader()
        assert ids == [None, 1]
        assert reader.urls() == {"https://example.com/a", "https://example.com/b"}
        assert reader.document(0).text == "one"

    def test_rollback_discards_uncommitted(self, tmp_path):
        index = SearchIndex(tmp_path / "index", flush_threshold=1)
        add_documents(index, [Document(url="https://example.com/a", text="kept")])

        with index.writer(fresh=False) as writer:
            writer.add(Document(url="https://example.com/b", text="discarded"))
            writer.rollback()
            assert writer.pending_count == 0
            writer.add(Document(url="https://example.com/c", text="later"))
            writer.commit()

        reader = index.reader()
        assert reader.urls() == {"https://example.com/a", "https://example.com/c"}
        assert reader.lexical_scores(["discarded"]) == {}
        assert len(list(index.segments_dir.iterdir())) == 2

    def test_exception_in_writer_block_rolls_back(self, tmp_path):
        index = SearchIndex(tmp_path / "index")

        with pytest.raises(RuntimeError):
            with index.writer() as writer:
                writer.add(Document(url="https://example.com/a", text="lost"))
                raise RuntimeError("crawl failed")

        assert not index.exists()
        # The writer lock was released
        index.writer().close()

    def test_orphan_segments_are_collected(self, tmp_path):
        index = SearchIndex(tmp_path / "index", flush_threshold=1)
        add_documents(index, [Document(url="https://example.com/a", text="kept")])
        orphan = index.segments_dir / "seg-orphan"
        orphan.mkdir()
        (index.segments_dir / ".tmp-seg-partial").mkdir()

        index.writer(fresh=False).close()

        assert not orphan.exists()
        assert [p.name for p in index.segments_dir.iterdir()] == index.read_manifest()["segments"]

    def test_single_writer(self, tmp_path):
        first = SearchIndex(tmp_path / "index")
        second = SearchIndex(tmp_path / "index")

        writer = first.writer()
        try:
            with pytest.raises(WriterLockedError):
                second.writer()
        finally:
            writer.close()

        second.writer().close()

    def test_closed_writer_rejects_adds(self, tmp_path):
        writer = SearchIndex(tmp_path / "index").writer()
        writer.close()

        with pytest.raises(IndexWriteError):
            writer.add(Document(url="https://example.com/a", text="late"))

    def test_checksum_mismatch_is_corruption(self, built_index):
        manifest = built_index.read_manifest()
        docstore = built_index.segments_dir / manifest["segments"][0] / "docstore.zlib"
        docstore.write_bytes(docstore.read_bytes() + b"garbage")

        with pytest.raises(CorruptIndexError):
            SearchIndex(built_index.index_dir).reader()

    def test_postings_for_unknown_doc_is_corruption(self, built_index):
        manifest = built_index.read_manifest()
        segment_dir = built_index.segments_dir / manifest["segments"][0]
        postings = json.loads(zlib.decompress((segment_dir / "postings.zlib").read_bytes()))
        postings["body"]["ghost"] = index_module.encode_postings({99: [0]})
        data = zlib.compress(json.dumps(postings).encode())
        (segment_dir / "postings.zlib").write_bytes(data)
        meta = json.loads((segment_dir / "meta.json").read_text())
        meta["files"]["postings.zlib"] = hashlib.sha256(data).hexdigest()
        (segment_dir / "meta.json").write_text(json.dumps(meta))

        with pytest.raises(CorruptIndexError):
            SearchIndex(built_index.index_dir).reader()

    def test_unknown_format_is_corruption(self, built_index):
        manifest = built_index.read_manifest()
        manifest["format_version"] = 99
        built_index.manifest_path.write_text(json.dumps(manifest))

        with pytest.raises(CorruptIndexError):
            SearchIndex(built_index.index_dir).reader()

    def test_failed_publish_keeps_previous_generation(self, built_index, monkeypatch):
        """Test that a storage fault during commit leaves the old generation readable."""

        def failing_replace(src, dst):
            raise OSError("disk full")

        with built_index.writer(fresh=False) as writer:
            writer.add(Document(url="https://example.com/new", text="never published"))
            monkeypatch.setattr(index_module.os, "replace", failing_replace)
            with pytest.raises(IndexWriteError):
                writer.commit()
            monkeypatch.setattr(index_module.os, "replace", os.replace)
            writer.rollback()

        reader = SearchIndex(built_index.index_dir).reader()
        assert reader.generation == 1
        assert "https://example.com/new" not in reader.urls()
        assert not list(built_index.index_dir.glob(".*.tmp"))

    def test_failed_segment_write_keeps_previous_generation(self, built_index, monkeypatch):
        """Test that a storage fault while writing a segment leaves no partial segment behind."""

        def failing_write(path, data):
            raise OSError("no space left on device")

        with built_index.writer(fresh=False) as writer:
            writer.add(Document(url="https://example.com/new", text="never written"))
            monkeypatch.setattr(index_module, "_write_file", failing_write)
            with pytest.raises(IndexWriteError):
                writer.commit()
            monkeypatch.undo()
            writer.rollback()

        assert not list(built_index.segments_dir.glob(".tmp-*"))
        reader = SearchIndex(built_index.index_dir).reader()
        assert reader.generation == 1
        assert reader.doc_count == 4
        assert "https://example.com/new" not in reader.urls()

    def test_segments_load_outside_reader_lock(self, tmp_path, monkeypatch):
        """Test that opening a new generation does not block readers of the current one."""
        index = SearchIndex(tmp_path / "index")
        add_documents(index, [Document(url="https://example.com/a", text="one")])
        first = index.reader()
        add_documents(index, [Document(url="https://example.com/b", text="two")], fresh=False)

        original_load = index_module.Segment.load
        lock_held = []

        def recording_load(directory):
            lock_held.append(index._reader_lock.locked())
            return original_load(directory)

        monkeypatch.setattr(index_module.Segment, "load", recording_load)
        second = index.reader()

        # Only the new segment is loaded, without holding the lock
        assert lock_held == [False]
        assert second.generation == 2
        assert first.generation == 1

    def test_reader_is_cached_per_generation(self, tmp_path):
        index = SearchIndex(tmp_path / "index")
        add_documents(index, [Document(url="https://example.com/a", text="one")])

        first = index.reader()
        assert index.reader() is first

        add_documents(index, [Document(url="https://example.com/b", text="two")], fresh=False)
        second = index.reader()

        assert second is not first
        assert second.generation == 2
        assert first.doc_count == 1
        assert second.segments[0] is first.segments[0]


@pytest.mark.unit
class TestPostingsCodec:
    """Test the delta encoding of posting lists."""

    def test_encode(self):
        assert index_module.encode_postings({3: [2, 10], 7: [0]}) == [3, 2, 2, 8, 4, 1, 0]

    def test_decode_restores_postings(self):
        postings = {0: [5], 3: [2, 10, 11], 40: [0, 100]}

        assert index_module.decode_postings(index_module.encode_postings(postings)) == postings

    def test_empty(self):
        assert index_module.encode_postings({}) == []
        assert index_module.decode_postings([]) == {}
