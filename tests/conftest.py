"""
Shared fixtures: an in-memory database and in-memory stand-ins for every
external collaborator (browser, LLM, embeddings, GitHub, PageSpeed).
"""

from typing import Dict, List, Optional

import pytest

from packages.nebula.analytics import SimulatedAnalyticsClient
from packages.nebula.audit import AuditError
from packages.nebula.config import Settings
from packages.nebula.crawler import PageFetchError, extract_page_text
from packages.nebula.db import Base, create_db_engine, create_session_factory
from packages.nebula.github_client import GitHubError, GitHubTokenProvider, PatchRequest, PullRequestRef
from packages.nebula.llm import LLMError
from packages.nebula.opportunities import ContextBuilder, OpportunityGenerator
from packages.nebula.repository import GrowthStore
from packages.nebula.schemas import AuditReport, PageResult, PerformanceMetrics
from packages.nebula.services import Services


LONG_TEXT = (
    "Acme builds project management software for distributed teams. "
    "Plan sprints, track issues, and ship faster with integrated reporting."
)


def page_html(title: str, body: str = LONG_TEXT, links: Optional[List[str]] = None) -> str:
    anchors = "".join(f'<a href="{href}">{href}</a>' for href in links or [])
    return (
        f"<html><head><title>{title}</title>"
        f'<meta name="description" content="{title} description"></head>'
        f"<body><p>{body}</p>{anchors}<script>var x = 1;</script></body></html>"
    )


class FakeFetcher:
    """Serves canned pages; `redirects` maps a URL to the final URL it lands on."""

    def __init__(
        self,
        pages: Dict[str, str],
        *,
        redirects: Optional[Dict[str, str]] = None,
        failures: Optional[set] = None,
    ):
        self.pages = pages
        self.redirects = redirects or {}
        self.failures = failures or set()
        self.fetched: List[str] = []
        self.started = False
        self.closed = False

    async def start(self) -> None:
        self.started = True

    async def close(self) -> None:
        self.closed = True

    async def fetch(self, url: str, *, timeout: float) -> PageResult:
        self.fetched.append(url)
        if url in self.failures:
            raise PageFetchError(f"boom: {url}")
        final_url = self.redirects.get(url, url)
        html = self.pages.get(final_url)
        if html is None:
            raise PageFetchError(f"404: {url}")
        title, text, description = extract_page_text(html)
        return PageResult(
            url=final_url,
            status_code=200,
            html_content=html,
            content=text,
            title=title,
            meta_description=description,
            load_time=12.5,
            content_size=len(html.encode("utf-8")),
            metrics=PerformanceMetrics(fcp=800.0, lcp=1200.0, cls=0.01),
        )


class FakeLLM:
    model = "fake-llm"

    def __init__(self, response: str = "[]", *, error: Optional[Exception] = None):
        self.response = response
        self.error = error
        self.prompts: List[str] = []
        self.calls: List[Dict[str, float]] = []

    async def complete(self, prompt: str, *, max_tokens: int, temperature: float) -> str:
        self.prompts.append(prompt)
        self.calls.append({"max_tokens": max_tokens, "temperature": temperature})
        if self.error is not None:
            raise self.error
        return self.response


class FakeEmbedder:
    """Bag-of-keywords vectors so related texts get a higher cosine score."""

    model = "fake-embedding"
    KEYWORDS = ("project", "pricing", "team", "shoes", "optimization", "website")

    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.calls: List[List[str]] = []

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.fail:
            raise LLMError("embedding service unavailable")
        return [
            [float(text.lower().count(word)) + 0.01 for word in self.KEYWORDS] for text in texts
        ]


class FakePublisher:
    def __init__(self, *, fail_branches: Optional[set] = None, rollback_error: bool = False):
        self.fail_branches = fail_branches or set()
        self.rollback_error = rollback_error
        self.created: List[PatchRequest] = []
        self.rollbacks: List[tuple] = []
        self._next = 100

    async def create_pull_request(self, patch: PatchRequest, token: str) -> PullRequestRef:
        if patch.branch in self.fail_branches:
            raise GitHubError(f"cannot create {patch.branch}")
        self.created.append(patch)
        self._next += 1
        return PullRequestRef(
            number=self._next,
            url=f"https://github.com/{patch.owner}/{patch.repository}/pull/{self._next}",
            branch=patch.branch,
        )

    async def rollback_pull_request(self, owner: str, repository: str, pr_number: int, token: str):
        self.rollbacks.append((owner, repository, pr_number, token))
        if self.rollback_error:
            raise GitHubError("rollback rejected")
        return None


class FakeAuditor:
    def __init__(self, report: Optional[AuditReport] = None, *, fail: bool = False):
        self.report = report
        self.fail = fail
        self.urls: List[str] = []

    async def audit(self, url: str) -> AuditReport:
        self.urls.append(url)
        if self.fail or self.report is None:
            raise AuditError("pagespeed unavailable")
        return self.report


def make_report(
    performance: float = 0.92,
    *,
    cls: float = 0.05,
    lcp: float = 1800.0,
    fcp: float = 900.0,
    url: str = "https://acme.test",
) -> AuditReport:
    return AuditReport(
        url=url,
        performance=performance,
        accessibility=0.95,
        best_practices=0.9,
        seo=0.88,
        cls=cls,
        lcp=lcp,
        fcp=fcp,
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(database_url="sqlite://", crawl_delay_seconds=0.0, llm_timeout_seconds=5.0)


@pytest.fixture
def store(settings) -> GrowthStore:
    engine = create_db_engine(settings.database_url)
    Base.metadata.create_all(engine)
    yield GrowthStore(create_session_factory(engine))
    engine.dispose()


@pytest.fixture
def site_pages() -> Dict[str, str]:
    return {
        "https://acme.test/": page_html("Acme", links=["/pricing", "/team"]),
        "https://acme.test/pricing": page_html("Pricing", "Acme pricing plans for every team."),
        "https://acme.test/team": page_html("Team", LONG_TEXT + " Meet the team."),
        "https://rival.test/": page_html("Rival", "Rival project pricing. " + LONG_TEXT),
    }


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def fake_publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture
def fake_auditor() -> FakeAuditor:
    return FakeAuditor(make_report())


@pytest.fixture
def services(
    settings, store, site_pages, fake_llm, fake_embedder, fake_publisher, fake_auditor
) -> Services:
    return Services(
        settings=settings,
        store=store,
        fetcher_factory=lambda: FakeFetcher(site_pages),
        analytics_factory=lambda site: SimulatedAnalyticsClient(site.url),
        generator=OpportunityGenerator(fake_llm, timeout=settings.llm_timeout_seconds),
        context_builder=ContextBuilder(store, fake_embedder),
        publisher=fake_publisher,
        token_provider=GitHubTokenProvider(fallback_token="test-token"),
        auditor=fake_auditor,
    )
