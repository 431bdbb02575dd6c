"""Single-page fetching and HTML content extraction."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from urllib.parse import urljoin

import httpx
from bs4 import BeautifulSoup

from elab_rag.config import CrawlerConfig
from elab_rag.errors import FetchError, ParseError

logger = logging.getLogger(__name__)

_NOISE_SELECTOR = "script, style, noscript, nav, footer, header, .sidebar, .menu, .navigation"
_MAIN_SELECTOR = "main, article, .content, .main-content, #content"


@dataclass(slots=True)
class ExtractedPage:
    title: str
    text: str
    links: list[str] = field(default_factory=list)


class PageFetcher:
    """Fetches HTML pages over HTTP with a per-request timeout.

    Only `text/html` responses are accepted. Every failure is raised as
    `FetchError`; retrying is the caller's decision and the crawler never does.
    """

    def __init__(
        self,
        config: CrawlerConfig | None = None,
        *,
        client: httpx.Client | None = None,
    ) -> None:
        self.config = config or CrawlerConfig()
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=self.config.timeout_seconds,
            follow_redirects=True,
            max_redirects=self.config.max_redirects,
            headers={"User-Agent": self.config.user_agent},
        )

    def fetch(self, url: str) -> str:
        logger.debug("Fetching %s", url)
        try:
            response = self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise FetchError(url, str(exc) or exc.__class__.__name__) from exc

        content_type = response.headers.get("content-type", "")
        if "text/html" not in content_type.lower():
            raise FetchError(url, f"non-HTML content type {content_type or 'unknown'!r}")
        return response.text

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "PageFetcher":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()


def extract_page(
    html: str,
    base_url: str,
    *,
    accept_link: Callable[[str], bool] | None = None,
    normalize_link: Callable[[str], str] | None = None,
) -> ExtractedPage:
    """Strip page chrome and return title, whitespace-collapsed text and links.

    Navigation, header, footer, script and style elements are removed before
    anything is extracted, so links that only appear in menus are not followed.
    Links are resolved against `base_url`, filtered by `accept_link`,
    normalized by `normalize_link` and de-duplicated in document order.
    """

    try:
        soup = BeautifulSoup(html, "html.parser")
    except Exception as exc:
        raise ParseError(f"{base_url}: {exc}") from exc

    for element in soup.select(_NOISE_SELECTOR):
        element.decompose()

    title = _first_text(soup, "title") or _first_text(soup, "h1") or "Untitled"

    container = soup.select_one(_MAIN_SELECTOR) or soup.body or soup
    text = " ".join(container.get_text(" ").split())

    links: list[str] = []
    seen: set[str] = set()
    for anchor in soup.select("a[href]"):
        href = str(anchor.get("href", "")).strip()
        if not href:
            continue
        absolute = urljoin(base_url, href)
        if accept_link is not None and not accept_link(absolute):
            continue
        if normalize_link is not None:
            absolute = normalize_link(absolute)
        if absolute not in seen:
            seen.add(absolute)
            links.append(absolute)

    return ExtractedPage(title=title, text=text, links=links)


def _first_text(soup: BeautifulSoup, selector: str) -> str:
    element = soup.select_one(selector)
    if element is None:
        return ""
    return " ".join(element.get_text(" ").split())
