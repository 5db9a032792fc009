"""Tests for hybrid ranking and snippets."""

import pytest

from mini_search.engine.exceptions import IndexNotFoundError
from mini_search.engine.index import SearchIndex
from mini_search.engine.lexical import LexicalScorer
from mini_search.engine.models import Document
from mini_search.engine.query import QueryEngine
from mini_search.engine.snippets import make_snippet

from conftest import FakeEmbedder


@pytest.fixture
def engine(built_index, fake_embedder, search_config):
    return QueryEngine(built_index, fake_embedder, search_config)


@pytest.mark.unit
class TestQueryEngine:
    """Test QueryEngine.search against a small committed index."""

    def test_install_rust_snippet(self, engine, sample_documents):
        """Test that the best hit carries a snippet with both terms highlighted."""
        results = engine.search("install rust", k=3)

        top = results[0]
        assert top.url == sample_documents[0].url
        assert top.title == "Installation"
        assert top.snippet == "Install Rust before building the project. The installer sets up cargo and rustc."
        assert top.highlights == [(0, 7), (8, 12)]
        assert top.to_html().startswith("<b>Install</b> <b>Rust</b> before")
        assert top.lexical_score is not None and top.lexical_score > 0
        assert top.semantic_score is not None

    def test_scores_are_descending(self, engine):
        results = engine.search("install rust", k=10)

        scores = [result.score for result in results]
        assert scores == sorted(scores, reverse=True)

    def test_ranking_is_deterministic(self, engine):
        first = [(r.doc_id, r.score) for r in engine.search("cargo build", k=10)]
        second = [(r.doc_id, r.score) for r in engine.search("cargo build", k=10)]

        assert first == second

    def test_k_limits_results(self, engine):
        assert len(engine.search("install rust", k=1)) == 1
        assert engine.search("install rust", k=0) == []
        assert engine.search("install rust", k=-3) == []

    def test_empty_query_returns_nothing(self, engine):
        """Test that a query with nothing to embed and no terms yields no results."""
        assert engine.search("") == []
        assert engine.search("   ") == []

    def test_embedding_failure_falls_back_to_lexical(self, engine, sample_documents):
        results = engine.search("install EMBED_FAIL")

        assert {r.url for r in results} == {sample_documents[0].url, sample_documents[2].url}
        assert all(r.semantic_score is None for r in results)
        assert all(r.lexical_score > 0 for r in results)

    def test_lexical_only_engine(self, built_index, search_config, sample_documents):
        engine = QueryEngine(built_index, None, search_config)

        results = engine.search("sourdough bread")

        assert [r.url for r in results] == [sample_documents[3].url]
        assert results[0].semantic_score is None
        assert results[0].score == pytest.approx(search_config.lexical_weight)

    def test_title_words_are_searchable(self, tmp_path, search_config):
        index = SearchIndex(tmp_path / "titles")
        with index.writer() as writer:
            writer.add(
                Document(url="https://example.com/tokio", title="Tokio runtime", text="Spawning tasks and futures.")
            )
            writer.add(Document(url="https://example.com/other", title="Threads", text="Spawning threads."))
            writer.commit()
        engine = QueryEngine(index, None, search_config)

        results = engine.search("tokio")

        assert [r.url for r in results] == ["https://example.com/tokio"]
        assert results[0].lexical_score > 0
        # Highlights only ever point into the body text
        assert results[0].snippet == "Spawning tasks and futures."
        assert results[0].highlights == []

    def test_document_without_embedding_absent_from_semantic_ranking(self, tmp_path, fake_embedder, search_config):
        """Test that a failed embedding leaves the document lexically searchable only."""
        index = SearchIndex(tmp_path / "semantic")
        documents = [
            Document(url="https://example.com/a", text="gardening tips for spring"),
            Document(url="https://example.com/b", text="gardening without embeddings"),
            Document(url="https://example.com/c", text="winter sports equipment"),
        ]
        vectors = fake_embedder.embed_batch([d.text for d in documents])
        with index.writer() as writer:
            for document, vector in zip(documents, vectors):
                if document.url != "https://example.com/b":
                    document.embedding = vector
                writer.add(document)
            writer.commit()
        engine = QueryEngine(index, fake_embedder, search_config)

        semantic_only = engine.search("completely unrelated words", k=10)
        lexical_match = engine.search("embeddings", k=10)

        assert "https://example.com/b" not in {r.url for r in semantic_only}
        assert all(r.lexical_score is None for r in semantic_only)
        match = next(r for r in lexical_match if r.url == "https://example.com/b")
        assert match.lexical_score > 0
        assert match.semantic_score is None

    def test_ties_broken_by_doc_id(self, tmp_path, search_config):
        index = SearchIndex(tmp_path / "ties")
        with index.writer() as writer:
            for name in ("first", "second", "third"):
                writer.add(Document(url=f"https://example.com/{name}", text="identical text"))
            writer.commit()
        engine = QueryEngine(index, None, search_config)

        results = engine.search("identical")

        assert [r.doc_id for r in results] == [0, 1, 2]
        assert len({r.score for r in results}) == 1

    def test_new_commit_is_picked_up(self, engine, built_index, fake_embedder):
        assert all(r.lexical_score is None for r in engine.search("kubernetes"))

        document = Document(url="https://example.com/docs/k8s", title="Kubernetes", text="Deploy to kubernetes clusters.")
        document.embedding = fake_embedder.embed(document.embedding_input())
        with built_index.writer(fresh=False) as writer:
            writer.add(document)
            writer.commit()

        results = engine.search("kubernetes")

        assert results[0].url == "https://example.com/docs/k8s"
        assert engine.refresh().generation == 2

    def test_missing_index_raises(self, tmp_path, search_config):
        engine = QueryEngine(SearchIndex(tmp_path / "missing"), FakeEmbedder(), search_config)

        with pytest.raises(IndexNotFoundError):
            engine.search("anything")

    def test_result_to_dict(self, engine):
        result = engine.search("cargo")[0]

        data = result.to_dict()

        assert data["url"] == "https://example.com/docs/cargo"
        assert data["snippet_html"].count("<b>cargo</b>") + data["snippet_html"].count("<b>Cargo</b>") == 3
        assert set(data) >= {"url", "title", "snippet", "snippet_html", "score", "lexical_score", "semantic_score"}


@pytest.mark.unit
class TestBm25:
    """Test BM25 scoring."""

    def test_rarer_terms_weigh_more(self, built_index):
        scores = built_index.reader().lexical_scores(["install", "sourdough"])

        assert set(scores) == {0, 2, 3}
        assert scores[3] > scores[0]

    def test_term_in_every_document_still_scores(self):
        scorer = LexicalScorer([10, 11, 12], [["rust", "book"], ["rust", "cargo"], ["rust"]])

        scores = scorer.scores(["rust"])

        assert set(scores) == {10, 11, 12}
        assert all(score > 0 for score in scores.values())
        # Shorter documents rank higher for the same term frequency
        assert scores[12] > scores[10]

    def test_no_terms(self, built_index):
        assert built_index.reader().lexical_scores([]) == {}

    def test_empty_corpus(self):
        assert LexicalScorer([], []).scores(["rust"]) == {}


@pytest.mark.unit
class TestSnippets:
    """Test snippet windows and highlights."""

    def test_window_centred_on_match(self):
        text = "word " * 50 + "needle haystack " + "word " * 50

        snippet = make_snippet(text, {"needle": [250]}, max_chars=40)

        assert snippet.text == "word word word needle haystack word"
        assert snippet.highlights == [(15, 21)]
        start, end = snippet.highlights[0]
        assert snippet.text[start:end] == "needle"

    def test_prefers_cluster_with_most_terms(self):
        text = "rust appears here. " + "filler " * 30 + "install rust now"

        snippet = make_snippet(text, {"rust": [0, 237], "install": [229]}, max_chars=40)

        assert snippet.text.endswith("install rust now")
        assert len(snippet.text) <= 40
        assert [snippet.text[s:e] for s, e in snippet.highlights] == ["install", "rust"]

    def test_leading_text_without_matches(self):
        assert make_snippet("short text", {}, max_chars=150).text == "short text"

        snippet = make_snippet("alpha beta gamma delta", {}, max_chars=12)

        assert snippet.text == "alpha beta"
        assert snippet.highlights == []

    def test_never_exceeds_max_chars(self):
        text = " ".join(f"term{i}" for i in range(200))
        offsets = {"term50": [text.index("term50 ")], "term52": [text.index("term52 ")]}

        snippet = make_snippet(text, offsets, max_chars=30)

        assert len(snippet.text) <= 30
        assert [snippet.text[s:e] for s, e in snippet.highlights] == ["term50", "term52"]

    def test_window_snaps_to_line_breaks(self):
        text = "aaaaaaaaaa\nrun:needle zzzzzzzzzz"

        snippet = make_snippet(text, {"needle": [15]}, max_chars=20)

        assert snippet.text == "run:needle"
        assert snippet.highlights == [(4, 10)]

    def test_leading_text_cut_at_line_break(self):
        snippet = make_snippet("first line\nsecond paragraph", {}, max_chars=15)

        assert snippet.text == "first line"
