"""Concurrent web crawler.

Worker threads share one priority frontier, one visited set and one page
budget. Links under the preferred path prefix are fetched before other links
on the same host, but those stay eligible: the prefix is a preference, not a
boundary, so a crawl may wander outside it once the in-prefix links run out.

Fetched pages are handed to the caller through a bounded queue. When the
caller stops consuming, the queue fills up and the workers block until there
is room again.
"""

import heapq
import itertools
import logging
import queue
import re
import sys
import threading
from collections.abc import Callable, Iterator
from urllib.parse import urldefrag, urljoin, urlsplit, urlunsplit

import requests
from bs4 import BeautifulSoup, SoupStrainer
from tqdm import tqdm

from .config import DEFAULT_USER_AGENT, SearchConfig
from .models import CrawlBudget, CrawlStats, CrawlTask, RawPage, VisitedSet

logger = logging.getLogger(__name__)

SUPPORTED_CONTENT_TYPES = ("text/html", "application/xhtml+xml", "text/plain")

IN_PREFIX_PRIORITY = 0
OUT_OF_PREFIX_PRIORITY = 1

_SKIP_LINK_PREFIXES = ("mailto:", "tel:", "#", "javascript:", "data:")
_DEFAULT_PORTS = {"http": 80, "https": 443}

# Marks the end of a crawl in the output queue
_DONE = object()


def normalize_url(url: str) -> str | None:
    """Normalise a URL for de-duplication.

    Drops the fragment and userinfo, lowercases scheme and host, removes the
    default port and turns an empty path into "/".

    Returns:
        The normalised URL, or None if it is not an http(s) URL
    """
    url, _ = urldefrag(url.strip())
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return None

    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS or not parts.hostname:
        return None

    host = parts.hostname.lower()
    if ":" in host:
        host = f"[{host}]"
    if port and port != _DEFAULT_PORTS[scheme]:
        host = f"{host}:{port}"
    return urlunsplit((scheme, host, parts.path or "/", parts.query, ""))


def default_base_path(seed_url: str) -> str:
    """Directory part of the seed URL's path, e.g. "/docs/" for "/docs/intro.html"."""
    path = urlsplit(seed_url).path or "/"
    if path.endswith("/"):
        return path
    return path.rsplit("/", 1)[0] + "/"


class Frontier:
    """Priority queue of crawl tasks that knows when the crawl has run dry.

    ``get`` blocks while the queue is empty but some worker is still
    processing a task, since that task may add links. It returns None once
    the queue is empty with nothing in flight, or after ``close``.
    """

    def __init__(self):
        self._heap: list[CrawlTask] = []
        self._sequence = itertools.count()
        self._in_flight = 0
        self._closed = False
        self._cond = threading.Condition()

    def put(self, url: str, depth: int, priority: int):
        with self._cond:
            if self._closed:
                return
            heapq.heappush(self._heap, CrawlTask(priority, depth, next(self._sequence), url))
            self._cond.notify()

    def get(self) -> CrawlTask | None:
        with self._cond:
            while not self._heap and self._in_flight and not self._closed:
                self._cond.wait()
            if self._closed or not self._heap:
                return None
            self._in_flight += 1
            return heapq.heappop(self._heap)

    def task_done(self):
        """Mark a task returned by ``get`` as processed."""
        with self._cond:
            self._in_flight -= 1
            self._cond.notify_all()

    def close(self):
        """Wake all waiting workers and refuse further work."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def __len__(self) -> int:
        with self._cond:
            return len(self._heap)


class _CrawlRun:
    """State shared by the workers of one ``crawl`` call."""

    def __init__(self, seed_url: str, base_path: str, budget: CrawlBudget, queue_size: int):
        self.seed_url = seed_url
        self.host = urlsplit(seed_url).netloc
        self.base_path = base_path
        self.budget = budget
        self.frontier = Frontier()
        self.visited = VisitedSet()
        self.output: queue.Queue = queue.Queue(maxsize=queue_size)
        self.stop = threading.Event()
        self.progress = None


class DocumentCrawler:
    """Multi-threaded crawler over a single site."""

    def __init__(
        self,
        max_pages: int = 10_000,
        max_workers: int = 8,
        base_path: str | None = None,
        same_host_only: bool = True,
        max_crawl_depth: int | None = None,
        rate_limit_delay: float = 0.1,
        request_timeout: float = 10.0,
        max_response_bytes: int = 10 * 1024 * 1024,
        url_include_patterns: list[str] | None = None,
        url_exclude_patterns: list[str] | None = None,
        user_agent: str = DEFAULT_USER_AGENT,
        queue_size: int = 64,
        session_factory: Callable[[], requests.Session] = requests.Session,
        show_progress: bool = True,
    ):
        """Initialize the document crawler.

        Args:
            max_pages: Default page budget for a crawl
            max_workers: Default number of crawl threads
            base_path: Preferred path prefix (None = directory of each seed URL)
            same_host_only: Only follow links on the seed's host
            max_crawl_depth: Maximum link depth from the seed (None = unlimited)
            rate_limit_delay: Delay before each request in seconds, per worker
            request_timeout: HTTP request timeout in seconds
            max_response_bytes: Responses larger than this are dropped
            url_include_patterns: Regex patterns - only crawl matching URLs
            url_exclude_patterns: Regex patterns - skip matching URLs
            user_agent: User agent string for requests
            queue_size: Fetched pages buffered for the consumer
            session_factory: Creates one HTTP session per worker thread
            show_progress: Show a progress bar while crawling
        """
        self.max_pages = max_pages
        self.max_workers = max_workers
        self.base_path = base_path
        self.same_host_only = same_host_only
        self.max_crawl_depth = max_crawl_depth
        self.rate_limit_delay = rate_limit_delay
        self.request_timeout = request_timeout
        self.max_response_bytes = max_response_bytes
        self.user_agent = user_agent
        self.queue_size = queue_size
        self.session_factory = session_factory
        self.show_progress = show_progress

        # Compile URL patterns
        self.url_include_patterns = [re.compile(p) for p in (url_include_patterns or [])]
        self.url_exclude_patterns = [re.compile(p) for p in (url_exclude_patterns or [])]

        self.stats = CrawlStats()
        self._stopped = threading.Event()
        self._active_run: _CrawlRun | None = None

    @classmethod
    def from_config(cls, config: SearchConfig, **kwargs) -> "DocumentCrawler":
        settings = dict(
            max_pages=config.max_pages,
            max_workers=config.max_workers,
            base_path=config.base_path,
            same_host_only=config.same_host_only,
            max_crawl_depth=config.max_crawl_depth,
            rate_limit_delay=config.rate_limit_delay,
            request_timeout=config.request_timeout,
            max_response_bytes=config.max_response_bytes,
            url_include_patterns=config.url_include_patterns,
            url_exclude_patterns=config.url_exclude_patterns,
            user_agent=config.user_agent,
            queue_size=config.crawl_queue_size,
            show_progress=config.show_progress,
        )
        settings.update(kwargs)
        return cls(**settings)

    def stop(self):
        """Stop the current crawl. Pages not yet handed to the consumer are discarded.

        The crawler stays usable: the next ``crawl`` starts normally.
        """
        self._stopped.set()
        run = self._active_run
        if run is not None:
            run.stop.set()
            run.frontier.close()

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def crawl(
        self,
        seed_url: str,
        budget: int | CrawlBudget | None = None,
        worker_count: int | None = None,
        base_path: str | None = None,
    ) -> Iterator[RawPage]:
        """Crawl from a seed URL, yielding pages as they are fetched.

        Args:
            seed_url: Starting URL
            budget: Maximum pages to fetch, or a shared CrawlBudget
                (default: ``max_pages``)
            worker_count: Number of crawl threads (default: ``max_workers``)
            base_path: Preferred path prefix for this crawl

        Yields:
            RawPage for every successfully fetched page, in no particular order
        """
        seed = normalize_url(seed_url)
        if seed is None:
            raise ValueError(f"Unsupported seed URL: {seed_url}")
        if not isinstance(budget, CrawlBudget):
            budget = CrawlBudget(self.max_pages if budget is None else budget)
        workers = worker_count or self.max_workers
        if workers < 1:
            raise ValueError(f"worker_count must be >= 1, got {workers}")
        self._stopped.clear()

        run = _CrawlRun(seed, base_path or self.base_path or default_base_path(seed), budget, self.queue_size)
        self._active_run = run
        run.visited.add(seed)
        run.frontier.put(seed, 0, IN_PREFIX_PRIORITY)

        logger.info(
            f"[CRAWLER] Starting crawl from {seed} (budget: {budget.remaining} pages, "
            f"workers: {workers}, preferred prefix: {run.base_path})"
        )
        run.progress = tqdm(
            desc="Crawling",
            unit="page",
            total=budget.remaining,
            disable=not self.show_progress,
            file=sys.stderr,
        )

        threads = [
            threading.Thread(target=self._worker, args=(run,), name=f"crawler-{i}", daemon=True)
            for i in range(workers)
        ]
        for thread in threads:
            thread.start()
        closer = threading.Thread(target=self._close_when_done, args=(run, threads), daemon=True)
        closer.start()

        try:
            while True:
                item = run.output.get()
                if item is _DONE or run.stop.is_set():
                    break
                yield item
        finally:
            run.stop.set()
            run.frontier.close()
            # Drain so that neither workers nor the closer stay blocked on a full queue
            while closer.is_alive():
                try:
                    run.output.get(timeout=0.1)
                except queue.Empty:
                    pass
            run.progress.close()
            self._active_run = None
            logger.info(
                f"[CRAWLER] Crawl from {seed} finished: {budget.used} pages attempted, "
                f"{len(run.visited)} URLs discovered"
            )

    def _close_when_done(self, run: _CrawlRun, threads: list[threading.Thread]):
        for thread in threads:
            thread.join()
        run.output.put(_DONE)

    def _worker(self, run: _CrawlRun):
        session = self.session_factory()
        session.headers.update({"User-Agent": self.user_agent})
        try:
            while not run.stop.is_set():
                task = run.frontier.get()
                if task is None:
                    break
                try:
                    if not run.budget.try_acquire():
                        if not run.frontier.closed:
                            logger.info(f"[CRAWLER] Page budget of {run.budget.max_pages} exhausted, winding down")
                        run.frontier.close()
                        break
                    self._process(session, task, run)
                except Exception as e:
                    logger.error(f"[CRAWLER] Unexpected error while crawling {task.url}: {e}")
                    self.stats.increment("failed")
                finally:
                    run.frontier.task_done()
        finally:
            session.close()

    def _process(self, session: requests.Session, task: CrawlTask, run: _CrawlRun):
        if self.rate_limit_delay and run.stop.wait(self.rate_limit_delay):
            return

        page = self.fetch_page(session, task, run)
        run.progress.update(1)
        if page is None:
            return

        try:
            links = self.extract_links(page)
        except Exception as e:
            logger.debug(f"[CRAWLER] Link extraction failed for {page.url}: {e}")
            links = []
        added = sum(self._enqueue(link, task.depth + 1, run) for link in links)
        run.progress.set_postfix_str(f"depth={task.depth}, queue={len(run.frontier)}", refresh=False)
        logger.debug(f"[CRAWLER] {page.url}: {len(links)} links, {added} new")

        # Blocks while the consumer is behind
        while not run.stop.is_set():
            try:
                run.output.put(page, timeout=0.1)
                return
            except queue.Full:
                continue

    def fetch_page(self, session: requests.Session, task: CrawlTask, run: _CrawlRun) -> RawPage | None:
        """Fetch one page.

        Returns:
            RawPage, or None if the fetch failed or the page is unusable
        """
        logger.debug(f"[CRAWLER] Fetching: {task.url}")
        try:
            response = session.get(task.url, timeout=self.request_timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.warning(f"[CRAWLER] Failed to fetch {task.url}: {e}")
            self.stats.increment("failed")
            return None

        content_type = response.headers.get("content-type", "")
        mime = content_type.split(";")[0].strip().lower()
        if mime not in SUPPORTED_CONTENT_TYPES:
            logger.warning(f"[CRAWLER] Skipping unsupported content: {task.url} ({content_type or 'no content type'})")
            self.stats.increment("skipped")
            return None

        content = response.content
        if len(content) > self.max_response_bytes:
            logger.warning(f"[CRAWLER] Skipping oversize page: {task.url} ({len(content)} bytes)")
            self.stats.increment("skipped")
            return None

        final_url = normalize_url(response.url or task.url) or task.url
        if final_url != task.url:
            if self.same_host_only and urlsplit(final_url).netloc != run.host:
                logger.warning(f"[CRAWLER] Redirect to external host blocked: {task.url} -> {final_url}")
                self.stats.increment("skipped")
                return None
            if not run.visited.add(final_url):
                logger.debug(f"[CRAWLER] Redirect to already visited URL: {task.url} -> {final_url}")
                self.stats.increment("skipped")
                return None

        self.stats.increment("fetched")
        return RawPage(url=final_url, content=content, content_type=content_type, depth=task.depth)

    def extract_links(self, page: RawPage) -> list[str]:
        """Extract normalised absolute links from the ``<a href>`` elements of a page."""
        if not page.content_type.lower().startswith(("text/html", "application/xhtml+xml")):
            return []

        soup = BeautifulSoup(page.content, "html.parser", parse_only=SoupStrainer("a", href=True))
        links = []
        for anchor in soup.find_all("a", href=True):
            href = anchor["href"].strip()

            # Skip non-http links
            if not href or href.startswith(_SKIP_LINK_PREFIXES):
                continue

            url = normalize_url(urljoin(page.url, href))
            if url is not None:
                links.append(url)
        return links

    def _enqueue(self, url: str, depth: int, run: _CrawlRun) -> bool:
        if self.max_crawl_depth is not None and depth > self.max_crawl_depth:
            return False
        if self.same_host_only and urlsplit(url).netloc != run.host:
            return False
        if not self._should_crawl_url(url):
            return False
        if not run.visited.add(url):
            return False
        run.frontier.put(url, depth, self.priority(url, run.base_path))
        return True

    @staticmethod
    def priority(url: str, base_path: str) -> int:
        """Frontier priority of a URL: links under the preferred prefix go first."""
        if urlsplit(url).path.startswith(base_path):
            return IN_PREFIX_PRIORITY
        return OUT_OF_PREFIX_PRIORITY

    def _should_crawl_url(self, url: str) -> bool:
        """Check if URL should be crawled based on include/exclude patterns.

        Args:
            url: URL to check

        Returns:
            True if URL should be crawled
        """
        # Check exclude patterns first
        for pattern in self.url_exclude_patterns:
            if pattern.search(url):
                logger.debug(f"[CRAWLER] Excluded by pattern: {url}")
                return False

        # If include patterns specified, URL must match at least one
        if self.url_include_patterns:
            for pattern in self.url_include_patterns:
                if pattern.search(url):
                    return True
            logger.debug(f"[CRAWLER] Not included by any pattern: {url}")
            return False

        return True
