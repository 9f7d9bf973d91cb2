from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Optional

import httpx

from .schemas import AuditReport


logger = logging.getLogger(__name__)

PAGESPEED_API = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"
CATEGORIES = ("performance", "accessibility", "best-practices", "seo")


class AuditError(Exception):
    """Raised when a page-speed audit cannot be produced."""


def parse_lighthouse(url: str, payload: Dict[str, Any]) -> AuditReport:
    lighthouse = payload.get("lighthouseResult") or {}
    categories = lighthouse.get("categories") or {}
    audits = lighthouse.get("audits") or {}

    def score(name: str) -> float:
        value = (categories.get(name) or {}).get("score")
        if value is None:
            raise AuditError(f"Lighthouse result for {url} has no {name} score")
        return float(value)

    def numeric(name: str) -> float:
        return float((audits.get(name) or {}).get("numericValue") or 0.0)

    return AuditReport(
        url=lighthouse.get("finalUrl") or url,
        performance=score("performance"),
        accessibility=score("accessibility"),
        best_practices=score("best-practices"),
        seo=score("seo"),
        cls=numeric("cumulative-layout-shift"),
        lcp=numeric("largest-contentful-paint"),
        fcp=numeric("first-contentful-paint"),
    )


class PageSpeedAuditor:
    """Runs Lighthouse audits through the PageSpeed Insights v5 API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        strategy: str = "mobile",
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 120.0,
        log: Optional[logging.Logger] = None,
    ):
        self.api_key = api_key
        self.strategy = strategy
        self._client = client
        self.timeout = timeout
        self.log = log or logger

    async def audit(self, url: str) -> AuditReport:
        params = [("url", url), ("strategy", self.strategy)]
        params.extend(("category", c) for c in CATEGORIES)
        if self.api_key:
            params.append(("key", self.api_key))

        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        started = time.perf_counter()
        try:
            resp = await asyncio.wait_for(client.get(PAGESPEED_API, params=params), self.timeout)
        except asyncio.TimeoutError as exc:
            raise AuditError(f"Audit of {url} timed out after {self.timeout}s") from exc
        except httpx.HTTPError as exc:
            raise AuditError(f"Audit request for {url} failed: {exc}") from exc
        finally:
            if self._client is None:
                await client.aclose()

        if resp.status_code != 200:
            raise AuditError(f"PageSpeed returned {resp.status_code} for {url}: {resp.text[:500]}")

        try:
            payload = resp.json()
        except ValueError as exc:
            raise AuditError(f"PageSpeed returned a non-JSON body for {url}") from exc
        if not isinstance(payload, dict):
            raise AuditError(f"PageSpeed returned an unexpected payload for {url}")

        report = parse_lighthouse(url, payload)
        report.total_ms = (time.perf_counter() - started) * 1000.0
        self.log.info(
            "Audit of %s: performance=%.2f cls=%.3f lcp=%.0fms",
            url,
            report.performance,
            report.cls,
            report.lcp,
        )
        return report
