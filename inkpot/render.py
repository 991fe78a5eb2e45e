"""
Markdown → sanitized HTML, plus the text helpers built on top of it.
"""

from __future__ import annotations

import hashlib
import logging
import re
import threading
import unicodedata
import xml.etree.ElementTree as etree
from collections import OrderedDict
from html import escape, unescape

import markdown
from markdown.extensions import Extension
from markdown.treeprocessors import Treeprocessor

from inkpot.errors import RenderError

log = logging.getLogger(__name__)

BASE_MD_EXTENSIONS = [
    "tables",
    "footnotes",
    "def_list",
    "abbr",
    "sane_lists",
    "pymdownx.magiclink",
    "pymdownx.tilde",
    "pymdownx.mark",
    "pymdownx.superfences",
    "pymdownx.highlight",
    "pymdownx.betterem",
    "pymdownx.saneheaders",
]
CACHE_SIZE_DEFAULT = 512

SAFE_SCHEMES = {"http", "https", "mailto", "ftp"}
URL_ATTRS = ("href", "src", "xlink:href")
_SCHEME_RE = re.compile(r"^([a-z][a-z0-9+.\-]*):")
_CTRL_RE = re.compile(r"[\x00-\x20\x7f]+")
_IMAGE_MD_RE = re.compile(r"!\[[^\]]*\]\(\s*<?([^)\s>]+)")
_BLOCK_TAG_RE = re.compile(
    r"</?(?:p|br|li|ul|ol|h[1-6]|div|tr|td|th|pre|blockquote|table|hr|dd|dt)\b[^>]*>",
    re.I,
)
# only terminated tags and comments; a bare "<" in text is not a tag
_TAG_RE = re.compile(r"<!--.*?-->|</?[A-Za-z][^<>]*>", re.S)
_ZW_JOINERS = {"\u200d", "\ufe0e", "\ufe0f"}


###############################################################################
# Sanitizing extension
###############################################################################
def is_safe_url(url: str | None, *, allow_data_image: bool = False) -> bool:
    """
    True for relative URLs and the schemes in ``SAFE_SCHEMES``.

    Browsers ignore control characters and whitespace inside a scheme
    (``java\\tscript:``), so they are stripped before the check.
    """
    if not url:
        return True
    if "\x02" in url:  # unresolved markdown placeholder
        return False
    clean = _CTRL_RE.sub("", unescape(url)).lower()
    if allow_data_image and clean.startswith("data:image/"):
        return not clean.startswith("data:image/svg")
    m = _SCHEME_RE.match(clean)
    if m is None:
        return True
    return m.group(1) in SAFE_SCHEMES


class SanitizeTreeprocessor(Treeprocessor):
    """Drop event-handler attributes and script-capable URLs."""

    def run(self, root: etree.Element) -> None:
        for el in root.iter():
            for attr in list(el.attrib):
                low = attr.lower()
                if low.startswith("on"):
                    del el.attrib[attr]
                elif low in URL_ATTRS:
                    ok = is_safe_url(el.attrib[attr], allow_data_image=el.tag == "img")
                    if not ok:
                        log.info("dropped unsafe %s on <%s>", attr, el.tag)
                        del el.attrib[attr]


class SafeHtmlExtension(Extension):
    """
    Raw HTML in the source is escaped instead of passed through; what
    markdown generates itself is then scrubbed by the tree processor.
    """

    def extendMarkdown(self, md_inst):
        md_inst.preprocessors.deregister("html_block")
        md_inst.inlinePatterns.deregister("html")
        # after every other tree processor, including "unescape"
        md_inst.treeprocessors.register(SanitizeTreeprocessor(md_inst), "sanitize", -10)


###############################################################################
# Cache
###############################################################################
class RenderCache:
    """
    Bounded LRU of rendered HTML keyed by the SHA-256 of the source text.

    Editing an article changes its hash, so a stale entry can never be
    served for new content; old entries simply age out.
    """

    def __init__(self, max_entries: int = CACHE_SIZE_DEFAULT):
        self.max_entries = max_entries
        self._data: OrderedDict[str, str] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key(text: str) -> str:
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    def get(self, key: str) -> str | None:
        with self._lock:
            html = self._data.get(key)
            if html is None:
                self.misses += 1
                return None
            self._data.move_to_end(key)
            self.hits += 1
            return html

    def put(self, key: str, html: str) -> None:
        with self._lock:
            self._data[key] = html
            self._data.move_to_end(key)
            while len(self._data) > self.max_entries:
                self._data.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


###############################################################################
# Renderer
###############################################################################
def plain_text_html(text: str) -> str:
    """Escaped paragraphs with ``<br>`` line breaks, the last-resort rendering."""
    paras = [p for p in re.split(r"\n\s*\n", (text or "").strip()) if p.strip()]
    return "\n".join(
        "<p>" + "<br>\n".join(escape(ln) for ln in p.splitlines()) + "</p>"
        for p in paras
    )


class MarkdownRenderer:
    """
    Thread-safe Markdown renderer.

    ``markdown.Markdown`` instances keep state between calls, so every
    thread gets its own; only the cache is shared.
    """

    def __init__(
        self,
        *,
        highlight_style: str = "nord",
        cache: RenderCache | None = None,
    ):
        self.highlight_style = highlight_style
        self.cache = cache if cache is not None else RenderCache()
        self._local = threading.local()

    def _markdown(self) -> markdown.Markdown:
        md = getattr(self._local, "md", None)
        if md is None:
            md = markdown.Markdown(
                extensions=[*BASE_MD_EXTENSIONS, SafeHtmlExtension()],
                extension_configs={
                    "pymdownx.highlight": {
                        "guess_lang": False,
                        "noclasses": True,
                        "pygments_style": self.highlight_style,
                    },
                },
            )
            self._local.md = md
        return md

    def convert(self, text: str) -> str:
        """Uncached conversion; raises :class:`RenderError` on failure."""
        md = self._markdown()
        try:
            md.reset()
            return md.convert(text)
        except Exception as exc:
            # the instance may be half-way through a run; start over next time
            self._local.md = None
            raise RenderError(f"markdown conversion failed: {exc}") from exc

    def render(self, text: str | None) -> str:
        text = text or ""
        key = self.cache.key(text)
        html = self.cache.get(key)
        if html is not None:
            return html
        try:
            html = self.convert(text)
        except RenderError as exc:
            log.warning("falling back to plain text: %s", exc)
            return plain_text_html(text)
        self.cache.put(key, html)
        return html


_default_renderer = MarkdownRenderer()


def render(markdown_text: str | None) -> str:
    """Render with the process-wide default renderer."""
    return _default_renderer.render(markdown_text)


###############################################################################
# Text helpers
###############################################################################
def strip_tags(html: str | None) -> str:
    """Text content of *html*; a ``<`` that does not open a real tag is kept."""
    text = _BLOCK_TAG_RE.sub(" ", html or "")
    text = _TAG_RE.sub("", text)
    return " ".join(unescape(text).split())


def looks_like_html(text: str | None) -> bool:
    return bool(_TAG_RE.search(text or ""))


def truncate(
    html_or_text: str | None,
    max_len: int,
    marker: str = "…",
    *,
    is_html: bool | None = None,
) -> str:
    """
    Plain-text summary of at most *max_len* characters (marker included).

    ``is_html=None`` sniffs for a well-formed tag; pass ``False`` for text
    that merely contains ``<`` and ``>``.  Tags are removed before cutting,
    so a cut can never land inside one; the cut backs off over combining
    marks and zero-width joiners and prefers the last word boundary in the
    second half of the window.
    """
    if max_len < 1:
        raise ValueError("max_len must be positive")
    if is_html is None:
        is_html = looks_like_html(html_or_text)
    if is_html:
        text = strip_tags(html_or_text)
    else:
        text = " ".join((html_or_text or "").split())
    if len(text) <= max_len:
        return text
    if len(marker) >= max_len:
        return marker[:max_len]

    cut = max_len - len(marker)
    while cut > 0 and (
        unicodedata.combining(text[cut])
        or text[cut] in _ZW_JOINERS
        or text[cut - 1] in _ZW_JOINERS
    ):
        cut -= 1
    head = text[:cut]
    space = head.rfind(" ")
    if space >= cut // 2:
        head = head[:space]
    return head.rstrip(" ,;:-") + marker


def first_image(markdown_text: str | None) -> str | None:
    """URL of the first safe Markdown image, for social-card context."""
    for m in _IMAGE_MD_RE.finditer(markdown_text or ""):
        url = m.group(1)
        if is_safe_url(url, allow_data_image=True):
            return url
    return None
