"""Tabs, page text and the local page index used for domain/global scope."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from html.parser import HTMLParser
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import unquote, urlsplit

import httpx

from .queries.context import ContextError
from .queries.storage import KeyValueStore, StorageError
from .queries.types import TabSnapshot, registrable_domain

logger = logging.getLogger(__name__)

_TABS_KEY = "tabs"
_INDEX_KEY = "page_index"

_SKIPPED_TAGS = {"script", "style", "noscript", "template", "svg", "head", "iframe", "canvas"}
_BLOCK_TAGS = {
    "p", "div", "section", "article", "main", "aside", "header", "footer", "nav",
    "li", "ul", "ol", "table", "tr", "h1", "h2", "h3", "h4", "h5", "h6",
    "blockquote", "pre", "br", "hr", "figure", "figcaption", "dd", "dt",
}
_WORD = re.compile(r"\w+", re.UNICODE)
_STOPWORDS = {
    "the", "and", "for", "are", "was", "what", "which", "who", "how", "why", "with",
    "this", "that", "from", "about", "does", "into", "have", "has", "its", "can",
}


class TabNotFoundError(LookupError):
    """Raised when a tab id is not registered."""


class PageFetchError(ContextError):
    """Raised when a tab's page could not be fetched."""


class TabRegistry:
    """Open tabs persisted in the key-value store under ``tabs``."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    def open(self, url: str, *, activate: bool = True) -> TabSnapshot:
        state = self._state()
        tab_id = int(state["next_id"])
        state["tabs"][str(tab_id)] = url
        state["next_id"] = tab_id + 1
        if activate or state.get("active") is None:
            state["active"] = tab_id
        self._save(state)
        return TabSnapshot(id=tab_id, url=url)

    def activate(self, tab_id: int) -> TabSnapshot:
        state = self._state()
        tab = self._snapshot(state, tab_id)
        state["active"] = tab_id
        self._save(state)
        return tab

    def close(self, tab_id: int) -> TabSnapshot:
        state = self._state()
        tab = self._snapshot(state, tab_id)
        del state["tabs"][str(tab_id)]
        if state.get("active") == tab_id:
            remaining = sorted(int(key) for key in state["tabs"])
            state["active"] = remaining[-1] if remaining else None
        self._save(state)
        return tab

    def get_tab(self, tab_id: int) -> TabSnapshot:
        return self._snapshot(self._state(), tab_id)

    def get_active_tab(self) -> Optional[TabSnapshot]:
        state = self._state()
        active = state.get("active")
        if active is None or str(active) not in state["tabs"]:
            return None
        return self._snapshot(state, int(active))

    def list_tabs(self) -> List[TabSnapshot]:
        state = self._state()
        return [TabSnapshot(id=int(key), url=url) for key, url in sorted(state["tabs"].items(), key=lambda kv: int(kv[0]))]

    def _snapshot(self, state: dict, tab_id: int) -> TabSnapshot:
        url = state["tabs"].get(str(tab_id))
        if url is None:
            raise TabNotFoundError(f"No open tab with id {tab_id}")
        return TabSnapshot(id=int(tab_id), url=url)

    def _state(self) -> dict:
        state = self._store.get([_TABS_KEY]).get(_TABS_KEY)
        if not isinstance(state, dict):
            state = {}
        tabs = state.get("tabs")
        return {
            "next_id": state.get("next_id", 1),
            "active": state.get("active"),
            "tabs": dict(tabs) if isinstance(tabs, dict) else {},
        }

    def _save(self, state: dict) -> None:
        self._store.set({_TABS_KEY: state})


class _VisibleTextParser(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._skip_depth = 0
        self._paragraphs: List[str] = []
        self._current: List[str] = []

    def handle_starttag(self, tag, attrs):
        if tag in _SKIPPED_TAGS:
            self._skip_depth += 1
        elif tag in _BLOCK_TAGS:
            self._flush()

    def handle_startendtag(self, tag, attrs):
        if tag in _BLOCK_TAGS:
            self._flush()

    def handle_endtag(self, tag):
        if tag in _SKIPPED_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
        elif tag in _BLOCK_TAGS:
            self._flush()

    def handle_data(self, data):
        if not self._skip_depth:
            self._current.append(data)

    def _flush(self) -> None:
        text = " ".join("".join(self._current).split())
        if text:
            self._paragraphs.append(text)
        self._current = []

    def text(self) -> str:
        self._flush()
        return "\n\n".join(self._paragraphs)


def extract_visible_text(html: str) -> str:
    """Reduce an HTML document to its readable paragraphs."""
    parser = _VisibleTextParser()
    parser.feed(html)
    parser.close()
    return parser.text()


class HttpPageExtractor:
    """Fetches a tab's URL and returns its visible text.

    ``file://`` URLs are read from disk. Extracted pages are added to the
    optional :class:`PageIndex` so later domain and global queries can use them.
    """

    def __init__(
        self,
        tabs: TabRegistry,
        http_client: httpx.AsyncClient,
        index: Optional["PageIndex"] = None,
    ) -> None:
        self._tabs = tabs
        self._http = http_client
        self._index = index

    async def get_visible_text(self, tab_id: int) -> str:
        tab = self._tabs.get_tab(tab_id)
        parts = urlsplit(tab.url)
        if parts.scheme == "file":
            raw, is_html = self._read_file(Path(unquote(parts.path)))
        else:
            raw, is_html = await self._fetch(tab.url)

        text = extract_visible_text(raw) if is_html else raw.strip()
        if self._index is not None and text:
            try:
                self._index.add(tab.url, text)
            except StorageError as exc:
                logger.warning("Page %s not indexed: %s", tab.url, exc)
        return text

    async def _fetch(self, url: str):
        try:
            response = await self._http.get(url, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise PageFetchError(f"Could not fetch {url}: {exc}") from exc
        content_type = response.headers.get("content-type", "")
        return response.text, "html" in content_type or not content_type

    def _read_file(self, path: Path):
        try:
            raw = path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            raise PageFetchError(f"Could not read {path}: {exc}") from exc
        return raw, path.suffix.lower() in {".html", ".htm", ".xhtml"}


@dataclass(frozen=True)
class Snippet:
    url: str
    text: str
    score: int
    position: int

    def render(self) -> str:
        return f"[{self.url}]\n{self.text}"


class PageIndex:
    """Visited pages, ranked by query-term overlap per paragraph."""

    def __init__(self, store: KeyValueStore, *, max_pages: int = 200, max_chars_per_page: int = 50000) -> None:
        self._store = store
        self.max_pages = max_pages
        self.max_chars_per_page = max_chars_per_page

    def add(self, url: str, text: str) -> None:
        pages = self._pages()
        pages.pop(url, None)
        pages[url] = text[: self.max_chars_per_page]
        while len(pages) > self.max_pages:
            oldest = next(iter(pages))
            del pages[oldest]
        self._store.set({_INDEX_KEY: pages})

    def urls(self) -> List[str]:
        return list(self._pages().keys())

    def search(self, text: str, domain: Optional[str] = None, limit: int = 8) -> List[Snippet]:
        terms = _terms(text)
        snippets: List[Snippet] = []
        for url, body in self._pages().items():
            if domain is not None and registrable_domain(url) != domain:
                continue
            for position, paragraph in enumerate(p for p in body.split("\n\n") if p.strip()):
                words = [word.lower() for word in _WORD.findall(paragraph)]
                score = sum(words.count(term) for term in terms)
                if terms and score == 0:
                    continue
                snippets.append(Snippet(url=url, text=" ".join(paragraph.split()), score=score, position=position))
        snippets.sort(key=lambda s: (-s.score, s.url, s.position))
        return snippets[:limit]

    def _pages(self) -> Dict[str, str]:
        pages = self._store.get([_INDEX_KEY]).get(_INDEX_KEY)
        if not isinstance(pages, dict):
            return {}
        return {str(url): body for url, body in pages.items() if isinstance(body, str)}


class DomainPageIndex:
    """``DomainIndex`` view over a :class:`PageIndex`."""

    def __init__(self, index: PageIndex, limit: int = 8) -> None:
        self._index = index
        self._limit = limit

    async def query(self, domain: str, text: str) -> str:
        return _render_matches(self._index, text, domain, self._limit)


class GlobalPageIndex:
    """``GlobalIndex`` view over a :class:`PageIndex`."""

    def __init__(self, index: PageIndex, limit: int = 8) -> None:
        self._index = index
        self._limit = limit

    async def query(self, text: str) -> str:
        return _render_matches(self._index, text, None, self._limit)


def _render_matches(index: PageIndex, text: str, domain: Optional[str], limit: int) -> str:
    try:
        snippets = index.search(text, domain=domain, limit=limit)
    except StorageError as exc:
        logger.warning("Page index unavailable, continuing without it: %s", exc)
        return ""
    return "\n\n".join(snippet.render() for snippet in snippets)


def _terms(text: str) -> List[str]:
    seen: Dict[str, None] = {}
    for word in _WORD.findall(text.lower()):
        if len(word) > 2 and word not in _STOPWORDS:
            seen.setdefault(word, None)
    return list(seen)
