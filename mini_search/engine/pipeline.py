"""Crawl-to-index pipeline.

Pages flow from the crawler through an extraction thread pool into batched
embedding and finally the index writer. Embedding is the slow stage, so the
pipeline holds at most ``max_pending_documents`` pages between crawling and
indexing; once that many are waiting it stops pulling from the crawler,
whose bounded output queue then blocks the crawl workers.

A run ends with a single commit. If the run is stopped (``stop()``, SIGINT
or SIGTERM) everything added since the last commit is rolled back and the
previously committed generation stays current. A fresh run that indexes no
documents at all (seed unreachable, every page failing) does not commit
either, so it never replaces a working index with an empty one.
"""

import logging
import signal
import sys
import threading
import time
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait

from tqdm import tqdm

from .config import SearchConfig
from .crawler import DocumentCrawler
from .embeddings import Embedder, SentenceTransformerEmbedder
from .extractor import extract_page
from .index import IndexWriter, SearchIndex
from .models import Document, IndexingReport, RawPage

logger = logging.getLogger(__name__)


class IndexingPipeline:
    """Crawls one or more sites into a search index."""

    def __init__(
        self,
        config: SearchConfig,
        index: SearchIndex | None = None,
        embedder: Embedder | None = None,
        crawler: DocumentCrawler | None = None,
    ):
        """Initialize the pipeline.

        Args:
            config: Search configuration
            index: Target index (default: the index in ``config.index_dir``)
            embedder: Document encoder (default: loaded from ``config.model_dir``
                when the run starts)
            crawler: Crawler (default: built from ``config``)
        """
        self.config = config
        self.index = index or SearchIndex.from_config(config)
        self.embedder = embedder
        self.crawler = crawler or DocumentCrawler.from_config(config)
        self._stop_event = threading.Event()

    def stop(self):
        """Request a graceful stop. A commit already in progress completes."""
        if not self._stop_event.is_set():
            logger.warning("[PIPELINE] Stop requested, discarding uncommitted documents")
        self._stop_event.set()
        self.crawler.stop()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def run(
        self,
        seeds: str | list[str],
        budget: int | None = None,
        worker_count: int | None = None,
        base_path: str | None = None,
        append: bool = False,
    ) -> IndexingReport:
        """Crawl each seed and index what is found.

        Args:
            seeds: Seed URL or list of seed URLs; each gets its own page budget
            budget: Page budget per seed (default: ``config.max_pages``)
            worker_count: Crawl threads (default: ``config.max_workers``)
            base_path: Preferred path prefix (default: each seed's directory)
            append: Add to the existing index instead of replacing it

        Returns:
            IndexingReport for the run

        Raises:
            IndexWriteError: If a segment or the manifest cannot be written
            WriterLockedError: If another writer has the index open
        """
        seeds = [seeds] if isinstance(seeds, str) else list(seeds)
        self._stop_event.clear()
        report = IndexingReport()
        start_time = time.time()
        failed_before = self.crawler.stats.failed

        if self.embedder is None:
            self.embedder = SentenceTransformerEmbedder.from_config(self.config)

        logger.info("[PIPELINE] " + "=" * 70)
        logger.info(f"[PIPELINE] Indexing {len(seeds)} site(s) into {self.index.index_dir}")
        logger.info("[PIPELINE] " + "=" * 70)

        writer = self.index.writer(fresh=not append)
        try:
            with ThreadPoolExecutor(
                max_workers=self.config.extract_workers, thread_name_prefix="extract"
            ) as executor:
                for i, seed in enumerate(seeds, 1):
                    if self.stopped:
                        break
                    logger.info(f"[PIPELINE] Site {i}/{len(seeds)}: {seed}")
                    self._index_site(seed, writer, executor, report, budget, worker_count, base_path)

            if self.stopped:
                writer.rollback()
                report.aborted = True
            elif not append and report.documents_indexed == 0:
                # Nothing to replace the current generation with
                writer.rollback()
                report.generation = writer.generation
                logger.warning(
                    f"[PIPELINE] No documents indexed, keeping the current index (generation {writer.generation})"
                )
            else:
                report.generation = writer.commit()
                report.committed = True
        except BaseException:
            writer.rollback()
            raise
        finally:
            writer.close()
            report.pages_failed = self.crawler.stats.failed - failed_before
            report.elapsed = time.time() - start_time

        logger.info("[PIPELINE] " + "=" * 70)
        logger.info(f"[PIPELINE] {'Aborted' if report.aborted else 'Indexing complete'}: {report.summary()}")
        logger.info("[PIPELINE] " + "=" * 70)
        return report

    def _index_site(
        self,
        seed: str,
        writer: IndexWriter,
        executor: ThreadPoolExecutor,
        report: IndexingReport,
        budget: int | None,
        worker_count: int | None,
        base_path: str | None,
    ):
        extracting: set[Future] = set()
        ready: list[Document] = []
        limit = self.config.max_pending_documents
        batch_size = self.config.embed_batch_size

        pbar = tqdm(desc="Indexing", unit="doc", disable=not self.config.show_progress, file=sys.stderr)
        pages = self.crawler.crawl(seed, budget=budget, worker_count=worker_count, base_path=base_path)
        try:
            for page in pages:
                if self.stopped:
                    break
                report.pages_fetched += 1
                extracting.add(executor.submit(self._extract_document, page))
                self._collect(extracting, ready, report, block=False)

                # Backpressure: stop pulling pages until the pending documents drain
                while len(extracting) + len(ready) >= limit and not self.stopped:
                    if ready and (len(ready) >= batch_size or not extracting):
                        self._embed_and_add(ready, writer, report, pbar)
                    else:
                        self._collect(extracting, ready, report, block=True)

                if len(ready) >= batch_size:
                    self._embed_and_add(ready, writer, report, pbar)
        finally:
            pages.close()

        try:
            if self.stopped:
                for future in extracting:
                    future.cancel()
                return
            while extracting:
                self._collect(extracting, ready, report, block=True)
            while ready and not self.stopped:
                self._embed_and_add(ready, writer, report, pbar)
        finally:
            pbar.close()

    def _extract_document(self, page: RawPage) -> Document | None:
        extracted = extract_page(page)
        if not extracted.text.strip():
            logger.debug(f"[EXTRACT] No text extracted from {page.url}")
            return None
        return Document(url=page.url, text=extracted.text, title=extracted.title)

    def _collect(self, extracting: set[Future], ready: list[Document], report: IndexingReport, block: bool):
        """Move finished extractions from ``extracting`` to ``ready``."""
        if block:
            done, _ = wait(extracting, return_when=FIRST_COMPLETED)
        else:
            done = {future for future in extracting if future.done()}
        for future in done:
            extracting.discard(future)
            try:
                document = future.result()
            except Exception as e:
                logger.error(f"[EXTRACT] Extraction failed: {e}")
                document = None
            if document is None:
                report.documents_skipped += 1
            else:
                ready.append(document)

    def _embed_and_add(self, ready: list[Document], writer: IndexWriter, report: IndexingReport, pbar: tqdm):
        """Embed up to one batch of ready documents and add them to the index."""
        batch = ready[: self.config.embed_batch_size]
        del ready[: len(batch)]

        vectors = self.embedder.embed_batch(
            [document.embedding_input() for document in batch], batch_size=self.config.embed_batch_size
        )
        for document, vector in zip(batch, vectors):
            if vector is None:
                report.embeddings_failed += 1
                logger.warning(f"[EMBED] Embedding unavailable for {document.url}, indexing lexically only")
            document.embedding = vector

            if writer.add(document) is None:
                report.documents_skipped += 1
                continue
            report.documents_indexed += 1
            pbar.update(1)

            interval = self.config.commit_interval
            if interval and report.documents_indexed % interval == 0:
                report.generation = writer.commit()
                report.committed = True


def install_signal_handlers(pipeline: IndexingPipeline) -> Callable[[], None]:
    """Stop ``pipeline`` gracefully on SIGINT or SIGTERM.

    Must be called from the main thread.

    Returns:
        Function that restores the previous handlers
    """
    previous = {}

    def handle(signum, frame):
        logger.warning(f"[PIPELINE] Received {signal.Signals(signum).name}, finishing in-flight work and stopping")
        pipeline.stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, handle)

    def restore():
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    return restore
