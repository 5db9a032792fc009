"""Shared pytest fixtures for mini-search tests."""

import hashlib
import re
import threading

import numpy as np
import pytest
import requests

from mini_search.config import ServerConfig
from mini_search.engine.config import SearchConfig
from mini_search.engine.embeddings import Embedder
from mini_search.engine.index import SearchIndex
from mini_search.engine.models import Document


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests without network or model downloads")


class FakeEmbedder(Embedder):
    """Hashes words into a small vector space. Deterministic and model-free.

    Any text containing ``fail_marker`` makes the encoder raise, which is how
    tests simulate inference failures.
    """

    dimension = 64

    def __init__(self, fail_marker: str = "EMBED_FAIL", batch_size: int = 8):
        self.fail_marker = fail_marker
        self.batch_size = batch_size
        self.batches: list[int] = []

    def _encode(self, texts):
        self.batches.append(len(texts))
        if any(self.fail_marker in text for text in texts):
            raise RuntimeError("simulated inference failure")
        vectors = np.zeros((len(texts), self.dimension), dtype=np.float32)
        for row, text in enumerate(texts):
            for word in re.findall(r"\w+", text.lower()):
                digest = hashlib.md5(word.encode()).digest()
                vectors[row, digest[0] % self.dimension] += 1.0
        return vectors


class FakeResponse:
    def __init__(self, url, content=b"", content_type="text/html; charset=utf-8", status_code=200, final_url=None):
        self.url = final_url or url
        self.content = content
        self.status_code = status_code
        self.headers = {"content-type": content_type}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error for url: {self.url}", response=self)


class FakeSite:
    """In-memory website served to the crawler through fake sessions.

    ``pages`` maps URL to an HTML string, a FakeResponse or an exception to raise.
    Unknown URLs return 404.
    """

    def __init__(self, pages):
        self.pages = pages
        self.requests: list[str] = []
        self._lock = threading.Lock()

    def session(self):
        return FakeSession(self)

    def get(self, url):
        with self._lock:
            self.requests.append(url)
        page = self.pages.get(url)
        if page is None:
            return FakeResponse(url, b"not found", status_code=404)
        if isinstance(page, Exception):
            raise page
        if isinstance(page, FakeResponse):
            return page
        return FakeResponse(url, page.encode("utf-8"))


class FakeSession:
    def __init__(self, site: FakeSite):
        self.site = site
        self.headers = {}
        self.closed = False

    def get(self, url, timeout=None, **kwargs):
        return self.site.get(url)

    def close(self):
        self.closed = True


def html_page(title: str, body: str = "", links=()) -> str:
    anchors = "".join(f'<a href="{href}">{href}</a>' for href in links)
    return f"<html><head><title>{title}</title></head><body><p>{body}</p>{anchors}</body></html>"


@pytest.fixture
def fake_embedder():
    """Provide a deterministic Embedder."""
    return FakeEmbedder()


@pytest.fixture
def search_config(tmp_path):
    """Provide a SearchConfig writing into a temporary directory."""
    return SearchConfig(
        index_dir=tmp_path / "index",
        model_dir=tmp_path / "model",
        rate_limit_delay=0.0,
        show_progress=False,
        flush_threshold=100,
        embed_batch_size=4,
    )


@pytest.fixture
def default_config():
    """Provide a default ServerConfig instance for testing."""
    return ServerConfig()


@pytest.fixture
def sample_documents():
    """Provide a small corpus of documents."""
    return [
        Document(
            url="https://example.com/docs/install",
            title="Installation",
            text="Install Rust before building the project.\nThe installer sets up cargo and rustc.",
        ),
        Document(
            url="https://example.com/docs/cargo",
            title="Cargo guide",
            text="Cargo is the Rust package manager. Use cargo build to compile and cargo test to run tests.",
        ),
        Document(
            url="https://example.com/docs/python",
            title="Python setup",
            text="Create a virtual environment with python -m venv and install packages with pip.",
        ),
        Document(
            url="https://example.com/blog/cooking",
            title="Weekend cooking",
            text="A recipe for sourdough bread with a crisp crust and an open crumb.",
        ),
    ]


@pytest.fixture
def built_index(search_config, fake_embedder, sample_documents):
    """Provide a committed SearchIndex containing sample_documents with embeddings."""
    index = SearchIndex.from_config(search_config)
    vectors = fake_embedder.embed_batch([d.embedding_input() for d in sample_documents])
    with index.writer() as writer:
        for document, vector in zip(sample_documents, vectors):
            document.embedding = vector
            writer.add(document)
        writer.commit()
    return index
