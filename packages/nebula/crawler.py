from __future__ import annotations

import asyncio
import logging
import re
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional, Pattern, Protocol, Sequence, Set, Union
from urllib.parse import urldefrag, urljoin, urlparse

from bs4 import BeautifulSoup

from .schemas import PageResult


logger = logging.getLogger(__name__)


class CrawlerError(Exception):
    """Raised when the crawl engine itself cannot run (e.g. the browser will not launch)."""


class PageFetchError(Exception):
    """Raised when a single page cannot be fetched."""


class PageFetcher(Protocol):
    async def start(self) -> None: ...

    async def close(self) -> None: ...

    async def fetch(self, url: str, *, timeout: float) -> PageResult: ...


PatternLike = Union[str, Pattern[str]]


@dataclass
class CrawlOptions:
    max_pages: int = 50
    same_domain: bool = True
    include_patterns: Sequence[PatternLike] = field(default_factory=list)
    exclude_patterns: Sequence[PatternLike] = field(default_factory=list)
    timeout: float = 30.0
    delay: float = 1.0


def _compile(patterns: Sequence[PatternLike]) -> List[Pattern[str]]:
    return [p if isinstance(p, re.Pattern) else re.compile(p) for p in patterns]


def normalize_url(url: str) -> Optional[str]:
    """Drop the fragment and trailing slash; None for non-http(s) URLs."""
    url, _ = urldefrag(url.strip())
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    path = parsed.path or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/")
    normalized = parsed._replace(path=path, netloc=parsed.netloc.lower())
    return normalized.geturl()


def extract_links(html: str, base_url: str) -> List[str]:
    soup = BeautifulSoup(html, "lxml")
    links: List[str] = []
    seen: Set[str] = set()
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.startswith(("mailto:", "tel:", "javascript:", "#")):
            continue
        absolute = normalize_url(urljoin(base_url, href))
        if absolute and absolute not in seen:
            seen.add(absolute)
            links.append(absolute)
    return links


def extract_page_text(html: str) -> tuple[Optional[str], str, Optional[str]]:
    """Return (title, visible text, meta description) for a page."""
    soup = BeautifulSoup(html, "lxml")
    title = soup.title.get_text(strip=True) if soup.title else None
    meta = soup.find("meta", attrs={"name": "description"})
    description = meta.get("content", "").strip() if meta else None
    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()
    body = soup.body or soup
    text = " ".join(body.get_text(separator=" ").split())
    return title or None, text, description or None


class SiteCrawler:
    """
    Breadth-first crawler over a `PageFetcher`.

    Visits each URL at most once and stops at `max_pages` results or when the
    frontier is exhausted. A page that fails to load is logged and skipped; a
    `CrawlerError` from the fetcher propagates.
    """

    def __init__(
        self,
        fetcher: PageFetcher,
        options: Optional[CrawlOptions] = None,
        *,
        log: Optional[logging.Logger] = None,
    ):
        self.fetcher = fetcher
        self.options = options or CrawlOptions()
        self.log = log or logger
        self._started = False

    async def init(self) -> None:
        if not self._started:
            await self.fetcher.start()
            self._started = True

    async def close(self) -> None:
        if self._started:
            await self.fetcher.close()
            self._started = False

    async def __aenter__(self) -> "SiteCrawler":
        await self.init()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _allowed(
        self,
        url: str,
        seed_host: str,
        options: CrawlOptions,
        include: List[Pattern[str]],
        exclude: List[Pattern[str]],
    ) -> bool:
        if options.same_domain and urlparse(url).hostname != seed_host:
            return False
        if include and not any(p.search(url) for p in include):
            return False
        if any(p.search(url) for p in exclude):
            return False
        return True

    async def crawl_page(self, url: str, *, timeout: Optional[float] = None) -> Optional[PageResult]:
        await self.init()
        try:
            return await self.fetcher.fetch(url, timeout=timeout or self.options.timeout)
        except PageFetchError as exc:
            self.log.warning("Failed to crawl %s: %s", url, exc)
            return None

    async def crawl_site(self, url: str, options: Optional[CrawlOptions] = None) -> List[PageResult]:
        opts = options or self.options
        seed = normalize_url(url)
        if seed is None:
            raise ValueError(f"Not a crawlable URL: {url}")
        seed_host = urlparse(seed).hostname or ""
        include = _compile(opts.include_patterns)
        exclude = _compile(opts.exclude_patterns)

        await self.init()

        frontier: Deque[str] = deque([seed])
        visited: Set[str] = {seed}
        results: List[PageResult] = []
        fetched_any = False

        self.log.info("Starting crawl of %s (max_pages=%s)", seed, opts.max_pages)
        while frontier and len(results) < opts.max_pages:
            current = frontier.popleft()
            if fetched_any and opts.delay > 0:
                await asyncio.sleep(opts.delay)
            fetched_any = True

            page = await self.crawl_page(current, timeout=opts.timeout)
            if page is None:
                continue

            final_url = normalize_url(page.url) or current
            visited.add(final_url)
            if opts.same_domain and urlparse(final_url).hostname != seed_host:
                self.log.info("Skipping %s: redirected off %s", current, seed_host)
                continue

            results.append(page)

            for link in extract_links(page.html_content, final_url):
                if link in visited:
                    continue
                if not self._allowed(link, seed_host, opts, include, exclude):
                    continue
                visited.add(link)
                frontier.append(link)

        self.log.info("Crawl of %s finished with %s pages", seed, len(results))
        return results
