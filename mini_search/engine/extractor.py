"""HTML to plain text extraction.

Pages are converted in a single streaming pass: decoded text is fed to
lxml's HTML parser, which calls back into a target object for every start
tag, end tag and text run. No element tree is built. Script, style and
hidden elements are dropped, block-level elements end a line, and
whitespace inside ``<pre>`` is kept as-is.

If lxml gives up on the markup, BeautifulSoup's more forgiving parser is
tried, and as a last resort the decoded bytes are treated as literal text
with anything tag-shaped removed. Extraction never raises on bad input.
"""

import logging
import re

from bs4 import BeautifulSoup
from lxml import etree

from .models import ExtractedText, RawPage

logger = logging.getLogger(__name__)

# Text fed to the parser per call
FEED_CHUNK_SIZE = 64 * 1024

SKIP_TAGS = frozenset(
    {"script", "style", "noscript", "template", "svg", "math", "iframe", "object", "canvas", "select", "datalist"}
)

BLOCK_TAGS = frozenset(
    {
        "address", "article", "aside", "blockquote", "body", "br", "caption", "dd", "details", "dialog",
        "div", "dl", "dt", "fieldset", "figcaption", "figure", "footer", "form", "h1", "h2", "h3", "h4",
        "h5", "h6", "header", "hgroup", "hr", "html", "li", "main", "nav", "ol", "p", "pre", "section",
        "summary", "table", "tbody", "td", "tfoot", "th", "thead", "tr", "ul",
    }
)  # fmt: skip

_HIDDEN_STYLE_RE = re.compile(r"display\s*:\s*none|visibility\s*:\s*hidden", re.IGNORECASE)
_CONTENT_TYPE_CHARSET_RE = re.compile(r"charset\s*=\s*[\"']?([\w.:-]+)", re.IGNORECASE)
_META_CHARSET_RE = re.compile(rb"<meta[^>]+charset\s*=\s*[\"']?\s*([\w.:-]+)", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]*>")
_WHITESPACE_RE = re.compile(r"\s+")


def _is_hidden(attrib) -> bool:
    if "hidden" in attrib:
        return True
    if attrib.get("aria-hidden", "").strip().lower() == "true":
        return True
    return bool(_HIDDEN_STYLE_RE.search(attrib.get("style", "")))


class _TextCollector:
    """lxml parser target that accumulates visible text in document order."""

    def __init__(self):
        self.lines: list[str] = []
        self.title = ""
        self._current: list[str] = []
        self._title_parts: list[str] = []
        self._in_title = False
        self._title_done = False
        self._skip_depth = 0
        self._pre_depth = 0
        # One entry per open element: did it start a skipped subtree?
        self._skip_stack: list[bool] = []

    def start(self, tag, attrib):
        tag = tag.lower() if isinstance(tag, str) else ""
        skipping = self._skip_depth > 0 or tag in SKIP_TAGS or _is_hidden(attrib)
        self._skip_stack.append(skipping)
        if skipping:
            self._skip_depth += 1
            return

        if tag == "title" and not self._title_done:
            self._in_title = True
        elif tag == "pre":
            self._break()
            self._pre_depth += 1
        elif tag in BLOCK_TAGS:
            self._break()

    def end(self, tag):
        tag = tag.lower() if isinstance(tag, str) else ""
        if not self._skip_stack:
            return
        if self._skip_stack.pop():
            self._skip_depth -= 1
            return

        if tag == "title" and self._in_title:
            self._in_title = False
            self._title_done = True
            self.title = " ".join("".join(self._title_parts).split())
        elif tag == "pre" and self._pre_depth:
            self._break()
            self._pre_depth -= 1
        elif tag in BLOCK_TAGS:
            self._break()

    def data(self, data):
        if self._skip_depth:
            return
        if self._in_title:
            self._title_parts.append(data)
        else:
            self._current.append(data)

    def close(self):
        self._break()
        return self

    def _break(self):
        """End the current line."""
        if not self._current:
            return
        text = "".join(self._current)
        self._current = []
        if self._pre_depth:
            for line in text.splitlines():
                line = line.rstrip()
                if line:
                    self.lines.append(line)
        else:
            line = _WHITESPACE_RE.sub(" ", text).strip()
            if line:
                self.lines.append(line)


def decode_html(raw: bytes, content_type: str | None = None) -> str:
    """Decode page bytes using the declared charset, falling back to UTF-8.

    The charset is taken from the Content-Type header first, then from a
    ``<meta charset>`` declaration near the top of the document.
    """
    candidates = []
    if content_type:
        match = _CONTENT_TYPE_CHARSET_RE.search(content_type)
        if match:
            candidates.append(match.group(1))
    match = _META_CHARSET_RE.search(raw[:4096])
    if match:
        candidates.append(match.group(1).decode("ascii", errors="ignore"))
    candidates.append("utf-8")

    for encoding in candidates:
        try:
            text = raw.decode(encoding)
        except (LookupError, UnicodeDecodeError):
            continue
        return text.lstrip("\ufeff")
    return raw.decode("utf-8", errors="replace").lstrip("\ufeff")


def _normalize_lines(text: str) -> str:
    lines = (_WHITESPACE_RE.sub(" ", line).strip() for line in text.splitlines())
    return "\n".join(line for line in lines if line)


def _extract_streaming(markup: str) -> ExtractedText:
    collector = _TextCollector()
    # Already decoded; an explicit encoding stops libxml2 from honouring <meta charset> again
    data = markup.encode("utf-8", errors="replace")
    parser = etree.HTMLParser(
        target=collector, encoding="utf-8", recover=True, remove_comments=True, no_network=True
    )
    for offset in range(0, len(data), FEED_CHUNK_SIZE):
        parser.feed(data[offset : offset + FEED_CHUNK_SIZE])
    parser.close()
    return ExtractedText(text="\n".join(collector.lines), title=collector.title)


def _extract_with_soup(markup: str) -> ExtractedText:
    soup = BeautifulSoup(markup, "html.parser")
    title_tag = soup.find("title")
    title = " ".join(title_tag.get_text().split()) if title_tag else ""
    for tag in soup.find_all(list(SKIP_TAGS | {"head", "title"})):
        tag.decompose()
    for tag in soup.find_all(lambda t: t.attrs is not None and _is_hidden(t.attrs)):
        tag.decompose()
    return ExtractedText(text=_normalize_lines(soup.get_text(separator="\n")), title=title)


def extract(raw: bytes | str, content_type: str | None = None) -> ExtractedText:
    """Extract the visible text and title of a page.

    Args:
        raw: Page body, as bytes or already decoded text
        content_type: Content-Type header value, used for the charset and to
            recognise plain text

    Returns:
        ExtractedText; empty text when the page has no visible content
    """
    markup = decode_html(raw, content_type) if isinstance(raw, bytes) else raw
    if not markup.strip():
        return ExtractedText(text="")

    mime = (content_type or "").split(";")[0].strip().lower()
    if mime == "text/plain":
        return ExtractedText(text=_normalize_lines(markup))

    try:
        return _extract_streaming(markup)
    except (etree.LxmlError, ValueError, TypeError) as e:
        logger.debug(f"[EXTRACT] Streaming parse failed ({e}), retrying with BeautifulSoup")

    try:
        return _extract_with_soup(markup)
    except Exception as e:
        logger.debug(f"[EXTRACT] BeautifulSoup recovery failed ({e}), using literal text")

    return ExtractedText(text=_normalize_lines(_TAG_RE.sub(" ", markup)))


def extract_text(raw: bytes | str, content_type: str | None = None) -> str:
    """Extract only the visible text of a page."""
    return extract(raw, content_type).text


def extract_page(page: RawPage) -> ExtractedText:
    return extract(page.content, page.content_type)
