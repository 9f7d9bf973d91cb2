from __future__ import annotations

import asyncio
import json
import logging
import random
from dataclasses import asdict, dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2 import service_account


logger = logging.getLogger(__name__)

GA4_DATA_API = "https://analyticsdata.googleapis.com/v1beta"
GA4_SCOPES = ["https://www.googleapis.com/auth/analytics.readonly"]

TRACKED_METRICS = ("sessions", "screenPageViews", "bounceRate", "conversions")

HIGH_BOUNCE_RATE = 0.6
SEVERE_DROP_PERCENT = -20.0
MIN_CONVERSIONS = 100


class AnalyticsError(Exception):
    """Raised when the analytics provider cannot return a report."""


@dataclass
class MetricAnomaly:
    metric: str
    value: float
    previous_value: float
    percent_change: float
    severity: str  # "low" | "medium" | "high"
    date: str


@dataclass
class PageStats:
    page_path: str
    page_views: int
    bounce_rate: float


@dataclass
class ConversionStats:
    event_name: str
    count: int
    value: float


@dataclass
class AnalyticsInsights:
    start_date: str
    end_date: str
    anomalies: List[MetricAnomaly] = field(default_factory=list)
    top_pages: List[PageStats] = field(default_factory=list)
    conversions: List[ConversionStats] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)

    @property
    def total_conversions(self) -> int:
        return sum(c.count for c in self.conversions)

    @property
    def total_conversion_value(self) -> float:
        return sum(c.value for c in self.conversions)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["total_conversions"] = self.total_conversions
        data["total_conversion_value"] = self.total_conversion_value
        return data


class AnalyticsClient(Protocol):
    async def generate_insights(self, start_date: date, end_date: date) -> AnalyticsInsights: ...


def previous_period(start_date: date, end_date: date) -> Tuple[date, date]:
    """The range of equal length that ends the day before `start_date`."""
    length = (end_date - start_date).days + 1
    prev_end = start_date - timedelta(days=1)
    return prev_end - timedelta(days=length - 1), prev_end


def classify_change(percent_change: float) -> Optional[str]:
    magnitude = abs(percent_change)
    if magnitude >= 50:
        return "high"
    if magnitude >= 25:
        return "medium"
    if magnitude >= 10:
        return "low"
    return None


def detect_anomalies(
    current: Dict[str, float], previous: Dict[str, float], *, as_of: str
) -> List[MetricAnomaly]:
    anomalies: List[MetricAnomaly] = []
    for metric, value in current.items():
        prev = previous.get(metric)
        # No baseline to compare against.
        if prev is None or prev == 0:
            continue
        change = (value - prev) / prev * 100.0
        severity = classify_change(change)
        if severity is None:
            continue
        anomalies.append(
            MetricAnomaly(
                metric=metric,
                value=value,
                previous_value=prev,
                percent_change=round(change, 2),
                severity=severity,
                date=as_of,
            )
        )
    return anomalies


def derive_suggestions(insights: AnalyticsInsights) -> List[str]:
    suggestions: List[str] = []
    for page in insights.top_pages:
        if page.bounce_rate > HIGH_BOUNCE_RATE:
            suggestions.append(
                f"Page {page.page_path} has a {page.bounce_rate:.0%} bounce rate; "
                "review above-the-fold content and calls to action."
            )
    for anomaly in insights.anomalies:
        if anomaly.severity == "high" and anomaly.percent_change < SEVERE_DROP_PERCENT:
            suggestions.append(
                f"{anomaly.metric} dropped {abs(anomaly.percent_change):.1f}% versus the "
                "previous period; investigate recent changes."
            )
    if insights.total_conversions < MIN_CONVERSIONS:
        suggestions.append(
            f"Only {insights.total_conversions} conversions in the period; "
            "prioritise conversion-focused experiments."
        )
    return suggestions


class TokenSource(Protocol):
    async def token(self) -> str: ...


class ServiceAccountTokenSource:
    """
    Short-lived GA4 access tokens minted from a Google service account.

    The token is refreshed whenever it is missing or close to expiry, so
    callers should ask for it before every request.
    """

    def __init__(self, credentials: service_account.Credentials):
        self.credentials = credentials

    @classmethod
    def from_reference(cls, reference: str) -> "ServiceAccountTokenSource":
        """`reference` is the service-account JSON itself or a path to the key file."""
        try:
            if reference.lstrip().startswith("{"):
                credentials = service_account.Credentials.from_service_account_info(
                    json.loads(reference), scopes=GA4_SCOPES
                )
            else:
                credentials = service_account.Credentials.from_service_account_file(
                    reference, scopes=GA4_SCOPES
                )
        except (ValueError, OSError) as exc:
            raise AnalyticsError(f"Invalid GA4 service account credentials: {exc}") from exc
        return cls(credentials)

    async def token(self) -> str:
        if not self.credentials.valid:
            try:
                await asyncio.to_thread(self.credentials.refresh, Request())
            except GoogleAuthError as exc:
                raise AnalyticsError(f"Could not mint GA4 access token: {exc}") from exc
        return self.credentials.token


class GA4Client:
    """Reads traffic, top pages and conversion events from the GA4 Data API."""

    def __init__(
        self,
        property_id: str,
        token_source: TokenSource,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_seconds: float = 2.0,
        log: Optional[logging.Logger] = None,
    ):
        self.property_id = property_id
        self.token_source = token_source
        self._client = client
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.log = log or logger

    async def _run_report(self, client: httpx.AsyncClient, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{GA4_DATA_API}/properties/{self.property_id}:runReport"
        attempt = 0
        while True:
            attempt += 1
            headers = {"Authorization": f"Bearer {await self.token_source.token()}"}
            try:
                resp = await client.post(url, json=body, headers=headers)
            except httpx.HTTPError as exc:
                self.log.warning("GA4 request error (attempt %s): %s", attempt, exc)
                if attempt >= self.max_retries:
                    raise AnalyticsError(f"HTTP error from GA4 after {attempt} attempts") from exc
            else:
                if resp.status_code == 200:
                    return resp.json()
                if resp.status_code not in (429, 500, 502, 503, 504):
                    raise AnalyticsError(
                        f"GA4 returned non-success status {resp.status_code}: {resp.text}"
                    )
                self.log.warning(
                    "GA4 transient error %s (attempt %s)", resp.status_code, attempt
                )
                if attempt >= self.max_retries:
                    raise AnalyticsError(
                        f"GA4 transient errors after {attempt} attempts, last code {resp.status_code}"
                    )
            await asyncio.sleep(self.backoff_seconds * (2 ** (attempt - 1)))

    @staticmethod
    def _rows(report: Dict[str, Any]) -> List[Tuple[List[str], List[float]]]:
        rows = []
        for row in report.get("rows", []) or []:
            dims = [d.get("value", "") for d in row.get("dimensionValues", [])]
            mets = [float(m.get("value") or 0) for m in row.get("metricValues", [])]
            rows.append((dims, mets))
        return rows

    async def generate_insights(self, start_date: date, end_date: date) -> AnalyticsInsights:
        prev_start, prev_end = previous_period(start_date, end_date)
        close_client = False
        client = self._client
        if client is None:
            client = httpx.AsyncClient(timeout=self.timeout)
            close_client = True

        try:
            totals = await self._run_report(
                client,
                {
                    "dateRanges": [
                        {
                            "startDate": start_date.isoformat(),
                            "endDate": end_date.isoformat(),
                            "name": "current",
                        },
                        {
                            "startDate": prev_start.isoformat(),
                            "endDate": prev_end.isoformat(),
                            "name": "previous",
                        },
                    ],
                    "metrics": [{"name": m} for m in TRACKED_METRICS],
                },
            )
            pages = await self._run_report(
                client,
                {
                    "dateRanges": [
                        {"startDate": start_date.isoformat(), "endDate": end_date.isoformat()}
                    ],
                    "dimensions": [{"name": "pagePath"}],
                    "metrics": [{"name": "screenPageViews"}, {"name": "bounceRate"}],
                    "orderBys": [{"metric": {"metricName": "screenPageViews"}, "desc": True}],
                    "limit": 10,
                },
            )
            events = await self._run_report(
                client,
                {
                    "dateRanges": [
                        {"startDate": start_date.isoformat(), "endDate": end_date.isoformat()}
                    ],
                    "dimensions": [{"name": "eventName"}],
                    "metrics": [{"name": "conversions"}, {"name": "eventValue"}],
                },
            )
        finally:
            if close_client:
                await client.aclose()

        period_values: Dict[str, Dict[str, float]] = {"current": {}, "previous": {}}
        for dims, mets in self._rows(totals):
            period = dims[-1] if dims else "current"
            period_values.setdefault(period, {}).update(dict(zip(TRACKED_METRICS, mets)))

        insights = AnalyticsInsights(
            start_date=start_date.isoformat(),
            end_date=end_date.isoformat(),
            anomalies=detect_anomalies(
                period_values["current"], period_values["previous"], as_of=end_date.isoformat()
            ),
            top_pages=[
                PageStats(page_path=dims[0], page_views=int(mets[0]), bounce_rate=mets[1])
                for dims, mets in self._rows(pages)
                if dims and len(mets) >= 2
            ],
            conversions=[
                ConversionStats(event_name=dims[0], count=int(mets[0]), value=mets[1])
                for dims, mets in self._rows(events)
                if dims and len(mets) >= 2 and mets[0] > 0
            ],
        )
        insights.suggestions = derive_suggestions(insights)
        self.log.info(
            "GA4 insights for property %s: %s anomalies, %s top pages, %s conversions",
            self.property_id,
            len(insights.anomalies),
            len(insights.top_pages),
            insights.total_conversions,
        )
        return insights


class SimulatedAnalyticsClient:
    """
    Deterministic stand-in for sites without GA4 credentials.

    The same key and date range always produce the same insights.
    """

    def __init__(self, key: str = "default"):
        self.key = key

    async def generate_insights(self, start_date: date, end_date: date) -> AnalyticsInsights:
        rng = random.Random(f"{self.key}:{start_date.isoformat()}:{end_date.isoformat()}")
        days = (end_date - start_date).days + 1

        previous = {
            "sessions": float(rng.randint(200, 800) * days),
            "screenPageViews": float(rng.randint(400, 2000) * days),
            "bounceRate": round(rng.uniform(0.3, 0.7), 3),
            "conversions": float(rng.randint(5, 40) * days),
        }
        current = {
            metric: round(value * rng.uniform(0.6, 1.4), 3) for metric, value in previous.items()
        }

        paths = ["/", "/pricing", "/features", "/blog", "/signup", "/about"]
        top_pages = sorted(
            (
                PageStats(
                    page_path=path,
                    page_views=rng.randint(50, 5000),
                    bounce_rate=round(rng.uniform(0.2, 0.85), 3),
                )
                for path in paths
            ),
            key=lambda p: p.page_views,
            reverse=True,
        )
        total = int(current["conversions"])
        signups = rng.randint(0, total) if total else 0
        conversions = [
            ConversionStats(event_name="sign_up", count=signups, value=round(signups * 29.0, 2)),
            ConversionStats(
                event_name="purchase",
                count=total - signups,
                value=round((total - signups) * rng.uniform(40, 120), 2),
            ),
        ]

        insights = AnalyticsInsights(
            start_date=start_date.isoformat(),
            end_date=end_date.isoformat(),
            anomalies=detect_anomalies(current, previous, as_of=end_date.isoformat()),
            top_pages=top_pages,
            conversions=[c for c in conversions if c.count > 0],
        )
        insights.suggestions = derive_suggestions(insights)
        return insights
