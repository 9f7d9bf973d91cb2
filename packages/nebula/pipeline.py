from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from langgraph.graph import END, StateGraph

from .analytics import AnalyticsError
from .audit import AuditError
from .crawler import CrawlOptions, SiteCrawler
from .github_client import GitHubError, PatchFile, PatchRequest
from .llm import LLMError
from .models import Competitor, Opportunity, OpportunityStatusEnum
from .opportunities import OPPORTUNITY_QUERY
from .schemas import OpportunityDraft, PageResult, PatchData, PerformanceMetrics
from .services import Services


logger = logging.getLogger(__name__)


class SiteBusyError(Exception):
    """Raised when a site already has a pipeline run in progress."""


@dataclass
class SiteRunState:
    site_id: int
    pages_crawled: int = 0
    competitor_pages: int = 0
    insights: Optional[Dict[str, Any]] = None
    drafts: List[OpportunityDraft] = field(default_factory=list)
    opportunity_ids: List[int] = field(default_factory=list)
    deployment_ids: List[int] = field(default_factory=list)
    pr_failures: int = 0


@dataclass
class BatchSummary:
    total: int = 0
    successful: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"total": self.total, "successful": self.successful, "failed": self.failed}


def pr_description(opportunity: Opportunity) -> str:
    return (
        f"{opportunity.description}\n\n"
        f"Estimated revenue impact: ${opportunity.revenue_delta:,.0f}/month\n"
        f"Confidence: {opportunity.confidence * 100:.1f}%\n\n"
        f"Reasoning:\n{opportunity.reasoning or 'n/a'}"
    )


class SitePipeline:
    """
    One site's nightly run as a LangGraph state graph:

    crawl_site -> crawl_competitors -> analytics -> generate -> persist -> [publish]

    Publishing only happens for auto-merge sites with a GitHub repository.
    """

    def __init__(self, services: Services, *, log: Optional[logging.Logger] = None):
        self.services = services
        self.settings = services.settings
        self.store = services.store
        self.log = log or logger

    def _options(self, max_pages: int) -> CrawlOptions:
        return CrawlOptions(
            max_pages=max_pages,
            timeout=self.settings.crawl_timeout_seconds,
            delay=self.settings.crawl_delay_seconds,
        )

    async def _embed(self, crawl_id: int, content: str) -> None:
        try:
            await self.services.context_builder.embed_crawl(crawl_id, content)
        except LLMError:
            self.log.exception("Failed to embed crawl %s", crawl_id)

    async def _score_page(self, page: PageResult) -> None:
        """Attach lab scores to `page` so its crawl can serve as the gate baseline."""
        try:
            report = await asyncio.wait_for(
                self.services.auditor.audit(page.url), self.settings.audit_timeout_seconds
            )
        except (asyncio.TimeoutError, AuditError) as exc:
            self.log.warning("Baseline audit of %s failed: %s", page.url, str(exc) or "timed out")
            return
        page.metrics = PerformanceMetrics(
            performance_score=report.performance,
            accessibility_score=report.accessibility,
            best_practices_score=report.best_practices,
            seo_score=report.seo,
            cls=report.cls,
            lcp=report.lcp,
            fcp=report.fcp,
        )

    async def node_crawl_site(self, state: SiteRunState) -> SiteRunState:
        site = self.store.get_site(state.site_id)
        async with SiteCrawler(self.services.fetcher_factory(), log=self.log) as crawler:
            pages = await crawler.crawl_site(site.url, self._options(site.max_pages))

        if pages:
            await self._score_page(pages[0])
        for page in pages:
            crawl = self.store.save_crawl(page, site_id=site.id)
            await self._embed(crawl.id, page.content)
        state.pages_crawled = len(pages)
        self.log.info("Crawled %s pages for site %s", len(pages), site.id)
        return state

    async def _crawl_competitor(self, competitor: Competitor) -> int:
        async with SiteCrawler(self.services.fetcher_factory(), log=self.log) as crawler:
            pages = await crawler.crawl_site(
                competitor.url, self._options(self.settings.competitor_max_pages)
            )
        for page in pages:
            crawl = self.store.save_crawl(page, competitor_id=competitor.id)
            await self._embed(crawl.id, page.content)
        return len(pages)

    async def node_crawl_competitors(self, state: SiteRunState) -> SiteRunState:
        competitors = [
            competitor
            for competitor, _ in self.store.get_competitors_with_latest_crawl(state.site_id)
        ]
        results = await asyncio.gather(
            *(self._crawl_competitor(c) for c in competitors), return_exceptions=True
        )
        for competitor, result in zip(competitors, results):
            if isinstance(result, BaseException):
                self.log.error(
                    "Competitor crawl failed for %s (%s): %s", competitor.id, competitor.url, result
                )
                continue
            state.competitor_pages += result
        return state

    async def node_analytics(self, state: SiteRunState) -> SiteRunState:
        site = self.store.get_site(state.site_id)
        end = date.today() - timedelta(days=1)
        start = date.today() - timedelta(days=7)
        try:
            client = self.services.analytics_factory(site)
            insights = await client.generate_insights(start, end)
        except AnalyticsError:
            self.log.exception("Failed to get analytics insights for site %s", site.id)
            return state
        state.insights = insights.to_dict()
        return state

    async def node_generate(self, state: SiteRunState) -> SiteRunState:
        site = self.store.get_site(state.site_id)
        context = await self.services.context_builder.build_context(OPPORTUNITY_QUERY, site.id)
        state.drafts = await self.services.generator.generate_opportunities(
            context, state.insights, limit=self.settings.opportunity_limit(site.plan_tier)
        )
        return state

    async def node_persist(self, state: SiteRunState) -> SiteRunState:
        for draft in state.drafts:
            opportunity = self.store.create_opportunity(state.site_id, draft)
            state.opportunity_ids.append(opportunity.id)
        self.store.track_event(
            "opportunities_generated",
            {"count": len(state.opportunity_ids), "pages": state.pages_crawled},
            site_id=state.site_id,
        )
        return state

    def route_after_persist(self, state: SiteRunState) -> str:
        site = self.store.get_site(state.site_id)
        if site.auto_merge and site.github_repo and site.github_owner and state.opportunity_ids:
            return "publish"
        return "end"

    async def node_publish(self, state: SiteRunState) -> SiteRunState:
        site = self.store.get_site(state.site_id)
        baseline = self.store.get_baseline_scores(site.id)
        candidates = [
            opportunity
            for opportunity in (self.store.get_opportunity(i) for i in state.opportunity_ids)
            if opportunity.priority == self.settings.auto_pr_priority
            and opportunity.confidence > self.settings.auto_pr_min_confidence
        ]

        for opportunity in candidates[: self.settings.max_prs_per_cycle]:
            patch = PatchData.from_dict(opportunity.patch_data) if opportunity.patch_data else None
            if patch is None or not patch.file_path or patch.new_content is None:
                self.log.warning("No patch data available for opportunity %s", opportunity.id)
                continue

            description = pr_description(opportunity)
            request = PatchRequest(
                owner=site.github_owner,
                repository=site.github_repo,
                branch=f"nebula-{opportunity.id}",
                commit_message=f"{opportunity.title}\n\n{opportunity.description}",
                pr_title=opportunity.title,
                pr_description=description,
                files=[PatchFile(path=patch.file_path, content=patch.new_content)],
            )
            try:
                token = await self.services.token_provider.get_token(site.github_installation_id)
                ref = await self.services.publisher.create_pull_request(request, token)
            except GitHubError:
                self.log.exception("Failed to create PR for opportunity %s", opportunity.id)
                self.store.update_opportunity_status(opportunity.id, OpportunityStatusEnum.FAILED)
                state.pr_failures += 1
                continue

            deployment = self.store.create_deployment(
                opportunity.id,
                site.id,
                pr_number=ref.number,
                pr_url=ref.url,
                pr_title=opportunity.title,
                pr_description=description,
                before_score=baseline.performance,
            )
            self.store.update_opportunity_status(opportunity.id, OpportunityStatusEnum.IN_PROGRESS)
            state.deployment_ids.append(deployment.id)
            self.log.info(
                "PR created for opportunity %s: #%s %s", opportunity.id, ref.number, ref.url
            )
        return state

    def build_graph(self) -> StateGraph:
        graph = StateGraph(SiteRunState)

        graph.add_node("crawl_site", self.node_crawl_site)
        graph.add_node("crawl_competitors", self.node_crawl_competitors)
        graph.add_node("analytics", self.node_analytics)
        graph.add_node("generate", self.node_generate)
        graph.add_node("persist", self.node_persist)
        graph.add_node("publish", self.node_publish)

        graph.set_entry_point("crawl_site")
        graph.add_edge("crawl_site", "crawl_competitors")
        graph.add_edge("crawl_competitors", "analytics")
        graph.add_edge("analytics", "generate")
        graph.add_edge("generate", "persist")
        graph.add_conditional_edges(
            "persist", self.route_after_persist, {"publish": "publish", "end": END}
        )
        graph.add_edge("publish", END)

        return graph

    async def run(self, site_id: int) -> SiteRunState:
        app = self.build_graph().compile()
        final_state = await app.ainvoke(SiteRunState(site_id=site_id))
        return SiteRunState(**final_state)


class BatchRunner:
    """Runs the site pipeline for one or all active sites, at most once per site at a time."""

    def __init__(self, services: Services, *, log: Optional[logging.Logger] = None):
        self.services = services
        self.pipeline = SitePipeline(services, log=log)
        self.log = log or logger
        self._locks: Dict[int, asyncio.Lock] = {}

    async def run_site(self, site_id: int) -> SiteRunState:
        lock = self._locks.setdefault(site_id, asyncio.Lock())
        if lock.locked():
            raise SiteBusyError(f"Site {site_id} is already being processed")
        async with lock:
            self.log.info("Processing site %s", site_id)
            return await self.pipeline.run(site_id)

    async def run_batch(self, site_id: Optional[int] = None) -> BatchSummary:
        store = self.services.store
        if site_id is not None:
            site_ids = [store.get_site(site_id).id]
        else:
            site_ids = [site.id for site in store.list_active_sites()]

        summary = BatchSummary(total=len(site_ids))
        if not site_ids:
            self.log.info("No active sites to process")
            return summary

        results = await asyncio.gather(
            *(self.run_site(i) for i in site_ids), return_exceptions=True
        )
        for sid, result in zip(site_ids, results):
            if isinstance(result, BaseException):
                summary.failed += 1
                self.log.error("Failed to process site %s: %s", sid, result, exc_info=result)
            else:
                summary.successful += 1

        store.track_event("batch_completed", summary.to_dict())
        self.log.info(
            "Batch finished: %s sites, %s successful, %s failed",
            summary.total,
            summary.successful,
            summary.failed,
        )
        return summary
