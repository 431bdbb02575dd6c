"""Bounded breadth-first crawling over an explicit frontier."""

from __future__ import annotations

import logging
from collections import Counter, deque
from datetime import datetime, timezone
from urllib.parse import urlparse, urlunparse

from elab_rag.config import CrawlerConfig
from elab_rag.errors import FetchError, ParseError
from elab_rag.ingest.fetcher import PageFetcher, extract_page
from elab_rag.types import CrawledDocument, CrawlStats

logger = logging.getLogger(__name__)

_SKIPPED_EXTENSIONS = (
    ".pdf", ".zip", ".rar", ".7z", ".gz",
    ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
    ".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp",
    ".mp3", ".mp4", ".avi", ".mov",
)


def normalize_url(url: str) -> str:
    """Drop the fragment and trailing slash and lowercase the host."""

    parsed = urlparse(url.strip())
    if not parsed.scheme or not parsed.netloc:
        return url.strip()
    path = parsed.path.rstrip("/")
    return urlunparse(
        (parsed.scheme.lower(), parsed.netloc.lower(), path, parsed.params, parsed.query, "")
    )


def host_matches(host: str, domain: str) -> bool:
    domain = domain.lower().lstrip(".")
    return host == domain or host.endswith("." + domain)


class WebCrawler:
    """Crawls institutional sites under hard depth and page limits.

    Traversal is iterative: each seed gets a FIFO frontier of `(url, depth)`
    pairs, and a visited set keyed by normalized URL guarantees every page is
    fetched at most once per run, however cyclic the link graph is. When
    several seeds are crawled together they share the visited set and the
    page budget, and are processed in the order given.

    Fetch and parse failures are logged and recorded in `errors`; a single
    bad page never aborts the run and nothing is retried.
    """

    def __init__(
        self,
        config: CrawlerConfig | None = None,
        *,
        fetcher: PageFetcher | None = None,
    ) -> None:
        self.config = config or CrawlerConfig()
        self._fetcher = fetcher or PageFetcher(self.config)
        self._owns_fetcher = fetcher is None
        self._allowed_domains: list[str] = [d.lower() for d in self.config.allowed_domains]
        self.visited: set[str] = set()
        self.documents: list[CrawledDocument] = []
        self.errors: list[str] = []

    def crawl(self, seed: str) -> list[CrawledDocument]:
        """Crawl from one seed URL and return the documents that passed the length filter."""

        return self.crawl_multiple([seed])

    def crawl_multiple(self, seeds: list[str]) -> list[CrawledDocument]:
        logger.info("Starting crawl from %d seed(s): %s", len(seeds), ", ".join(seeds))
        self._reset(seeds)

        for seed in seeds:
            if self._budget_exhausted():
                break
            self._crawl_from(seed)

        logger.info(
            "Crawl finished: %d documents from %d visited URLs, %d errors",
            len(self.documents),
            len(self.visited),
            len(self.errors),
        )
        return list(self.documents)

    def get_stats(self) -> CrawlStats:
        total = len(self.documents)
        average = (
            sum(doc.content_length for doc in self.documents) / total if total else 0.0
        )
        return CrawlStats(
            total_documents=total,
            total_urls=len(self.visited),
            average_content_length=average,
            source_types=dict(Counter(doc.source_type for doc in self.documents)),
        )

    def is_allowed_url(self, url: str) -> bool:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            return False
        host = parsed.hostname.lower()
        if self._allowed_domains and not any(
            host_matches(host, domain) for domain in self._allowed_domains
        ):
            return False
        return not parsed.path.lower().endswith(_SKIPPED_EXTENSIONS)

    def detect_source_type(self, url: str) -> str:
        host = (urlparse(url).hostname or "").lower()
        # Longest domain first so subdomains win over their parents.
        for domain in sorted(self.config.source_types, key=len, reverse=True):
            if host_matches(host, domain):
                return self.config.source_types[domain]
        return "OTHER"

    def close(self) -> None:
        if self._owns_fetcher:
            self._fetcher.close()

    def _reset(self, seeds: list[str]) -> None:
        self.visited = set()
        self.documents = []
        self.errors = []
        self._allowed_domains = [d.lower() for d in self.config.allowed_domains]
        if not self._allowed_domains:
            self._allowed_domains = sorted(
                {(urlparse(seed).hostname or "").lower() for seed in seeds} - {""}
            )

    def _budget_exhausted(self) -> bool:
        return len(self.documents) >= self.config.max_pages

    def _crawl_from(self, seed: str) -> None:
        frontier: deque[tuple[str, int]] = deque([(seed, 0)])

        while frontier and not self._budget_exhausted():
            url, depth = frontier.popleft()
            normalized = normalize_url(url)
            if normalized in self.visited:
                continue
            if not self.is_allowed_url(normalized):
                logger.debug("Skipping disallowed URL %s", normalized)
                continue
            self.visited.add(normalized)

            document = self._visit(normalized)
            if document is None:
                continue

            if document.content_length > self.config.min_content_length:
                self.documents.append(document)
                logger.info("Crawled %s (%d chars)", document.title, document.content_length)
            else:
                logger.debug("Discarding short page %s (%d chars)", normalized, document.content_length)

            if depth >= self.config.max_depth:
                continue
            for link in document.links[: self.config.max_links_per_page]:
                if link not in self.visited:
                    frontier.append((link, depth + 1))

    def _visit(self, url: str) -> CrawledDocument | None:
        try:
            html = self._fetcher.fetch(url)
            page = extract_page(
                html,
                url,
                accept_link=self.is_allowed_url,
                normalize_link=normalize_url,
            )
        except (FetchError, ParseError) as exc:
            logger.warning("Skipping page: %s", exc)
            self.errors.append(str(exc))
            return None

        return CrawledDocument(
            url=url,
            title=page.title,
            content=page.text,
            source_type=self.detect_source_type(url),
            crawled_at=datetime.now(timezone.utc),
            links=page.links,
        )
