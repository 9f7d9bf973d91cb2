"""
Playwright-backed page fetcher for the site crawler.

One headless Chromium browser and context per crawl; pages are opened and
closed per URL. Paint and layout-shift timings are read from the browser's
performance timeline after load.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from playwright.async_api import Browser, BrowserContext, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .crawler import CrawlerError, PageFetchError, SiteCrawler, extract_page_text
from .schemas import PageResult, PerformanceMetrics


logger = logging.getLogger(__name__)


# Buffered observers pick up entries recorded before the script runs.
PERFORMANCE_SCRIPT = """
() => new Promise((resolve) => {
  const result = { fcp: null, lcp: null, cls: 0 };
  const paint = performance.getEntriesByName('first-contentful-paint')[0];
  if (paint) { result.fcp = paint.startTime; }
  try {
    new PerformanceObserver((list) => {
      const entries = list.getEntries();
      const last = entries[entries.length - 1];
      if (last) { result.lcp = last.renderTime || last.loadTime || last.startTime; }
    }).observe({ type: 'largest-contentful-paint', buffered: true });
    new PerformanceObserver((list) => {
      for (const entry of list.getEntries()) {
        if (!entry.hadRecentInput) { result.cls += entry.value; }
      }
    }).observe({ type: 'layout-shift', buffered: true });
  } catch (e) {}
  setTimeout(() => resolve(result), 250);
})
"""


class PlaywrightFetcher:
    def __init__(
        self,
        *,
        user_agent: Optional[str] = None,
        headless: bool = True,
        viewport: Optional[Dict[str, int]] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.user_agent = user_agent
        self.headless = headless
        self.viewport = viewport or {"width": 1920, "height": 1080}
        self.log = log or logger

        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None

    async def start(self) -> None:
        if self._context is not None:
            return
        try:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self.headless,
                args=[
                    "--disable-dev-shm-usage",
                    "--no-sandbox",
                    "--disable-setuid-sandbox",
                    "--disable-gpu",
                ],
            )
            self._context = await self._browser.new_context(
                viewport=self.viewport, user_agent=self.user_agent
            )
        except PlaywrightError as exc:
            self.log.error("Failed to launch browser: %s", exc)
            await self.close()
            raise CrawlerError(f"Failed to launch browser: {exc}") from exc
        self.log.info("Browser launched for crawling")

    async def close(self) -> None:
        try:
            if self._context is not None:
                await self._context.close()
            if self._browser is not None:
                await self._browser.close()
        except PlaywrightError as exc:
            self.log.warning("Error while closing browser: %s", exc)
        finally:
            if self._playwright is not None:
                await self._playwright.stop()
            self._context = None
            self._browser = None
            self._playwright = None

    async def _read_metrics(self, page: Any) -> Optional[PerformanceMetrics]:
        try:
            raw = await page.evaluate(PERFORMANCE_SCRIPT)
        except PlaywrightError as exc:
            self.log.debug("Performance timeline unavailable: %s", exc)
            return None
        return PerformanceMetrics(
            fcp=raw.get("fcp"),
            lcp=raw.get("lcp"),
            cls=raw.get("cls"),
        )

    async def fetch(self, url: str, *, timeout: float) -> PageResult:
        if self._context is None:
            raise CrawlerError("Fetcher not started")

        page = await self._context.new_page()
        try:
            started = time.perf_counter()
            try:
                response = await page.goto(
                    url, wait_until="load", timeout=int(timeout * 1000)
                )
            except PlaywrightTimeoutError as exc:
                raise PageFetchError(f"Timed out after {timeout}s loading {url}") from exc
            except PlaywrightError as exc:
                raise PageFetchError(f"Navigation to {url} failed: {exc}") from exc
            load_time = (time.perf_counter() - started) * 1000.0

            if response is None:
                raise PageFetchError(f"No response for {url}")

            try:
                html = await page.content()
            except PlaywrightError as exc:
                raise PageFetchError(f"Could not read content of {url}: {exc}") from exc
            metrics = await self._read_metrics(page)
            title, text, description = extract_page_text(html)

            return PageResult(
                url=page.url,
                status_code=response.status,
                html_content=html,
                content=text,
                title=title,
                meta_description=description,
                load_time=load_time,
                content_size=len(html.encode("utf-8")),
                metrics=metrics,
            )
        finally:
            await page.close()


async def crawl_single_page(url: str, *, timeout: float = 30.0) -> Optional[PageResult]:
    async with SiteCrawler(PlaywrightFetcher()) as crawler:
        return await crawler.crawl_page(url, timeout=timeout)
