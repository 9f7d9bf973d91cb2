from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.orm import selectinload, sessionmaker

from .db import session_scope
from .models import (
    AnalyticsEvent,
    Competitor,
    Crawl,
    Deployment,
    DeploymentStatusEnum,
    Embedding,
    Opportunity,
    OpportunityStatusEnum,
    Site,
)
from .schemas import BaselineScores, OpportunityDraft, PageResult, SimilarContent


logger = logging.getLogger(__name__)


class NotFoundError(Exception):
    """Raised when a requested row does not exist."""


class InvalidTransitionError(Exception):
    """Raised when a status change is not allowed from the current status."""


@dataclass
class SiteOverview:
    site: Site
    competitors: List[Competitor] = field(default_factory=list)
    recent_crawls: List[Crawl] = field(default_factory=list)
    recent_opportunities: List[Opportunity] = field(default_factory=list)
    recent_deployments: List[Deployment] = field(default_factory=list)


@dataclass
class CleanupResult:
    crawls_deleted: int
    embeddings_deleted: int
    events_deleted: int

    @property
    def total(self) -> int:
        return self.crawls_deleted + self.embeddings_deleted + self.events_deleted


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> Optional[float]:
    """Cosine of the angle between two vectors; None when undefined."""
    if len(a) != len(b) or not a:
        return None
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return None
    return dot / (norm_a * norm_b)


def _check_transition(transitions: Dict[str, set], current: str, new: str, what: str) -> None:
    if current == new:
        return
    if new not in transitions.get(current, set()):
        raise InvalidTransitionError(f"{what} cannot move from {current} to {new}")


class GrowthStore:
    """SQLAlchemy-backed persistence for sites, crawls, opportunities and deployments."""

    def __init__(self, session_factory: sessionmaker, *, log: Optional[logging.Logger] = None):
        self._factory = session_factory
        self.log = log or logger

    def session(self):
        return session_scope(self._factory)

    # Sites and competitors

    def create_site(self, url: str, name: str, **fields: Any) -> Site:
        with self.session() as session:
            site = Site(url=url, name=name, **fields)
            session.add(site)
            session.flush()
            return site

    def get_site(self, site_id: int) -> Site:
        with self.session() as session:
            site = session.execute(
                select(Site).where(Site.id == site_id).options(selectinload(Site.competitors))
            ).scalar_one_or_none()
            if site is None:
                raise NotFoundError(f"Site {site_id} not found")
            return site

    def list_active_sites(self) -> List[Site]:
        with self.session() as session:
            return list(
                session.execute(
                    select(Site)
                    .where(Site.is_active.is_(True))
                    .options(selectinload(Site.competitors))
                    .order_by(Site.id)
                )
                .scalars()
                .all()
            )

    def deactivate_site(self, site_id: int) -> None:
        with self.session() as session:
            site = session.get(Site, site_id)
            if site is None:
                raise NotFoundError(f"Site {site_id} not found")
            site.is_active = False

    def add_competitor(self, site_id: int, url: str, name: str, *, is_active: bool = True) -> Competitor:
        with self.session() as session:
            if session.get(Site, site_id) is None:
                raise NotFoundError(f"Site {site_id} not found")
            competitor = Competitor(site_id=site_id, url=url, name=name, is_active=is_active)
            session.add(competitor)
            session.flush()
            return competitor

    def get_site_overview(self, site_id: int, *, limit: int = 10) -> SiteOverview:
        with self.session() as session:
            site = session.get(Site, site_id)
            if site is None:
                raise NotFoundError(f"Site {site_id} not found")
            competitors = (
                session.execute(select(Competitor).where(Competitor.site_id == site_id))
                .scalars()
                .all()
            )
            crawls = (
                session.execute(
                    select(Crawl)
                    .where(Crawl.site_id == site_id)
                    .order_by(Crawl.crawled_at.desc(), Crawl.id.desc())
                    .limit(limit)
                )
                .scalars()
                .all()
            )
            opportunities = (
                session.execute(
                    select(Opportunity)
                    .where(Opportunity.site_id == site_id)
                    .order_by(Opportunity.created_at.desc(), Opportunity.id.desc())
                    .limit(limit)
                )
                .scalars()
                .all()
            )
            deployments = (
                session.execute(
                    select(Deployment)
                    .where(Deployment.site_id == site_id)
                    .order_by(Deployment.created_at.desc(), Deployment.id.desc())
                    .limit(limit)
                )
                .scalars()
                .all()
            )
            return SiteOverview(
                site=site,
                competitors=list(competitors),
                recent_crawls=list(crawls),
                recent_opportunities=list(opportunities),
                recent_deployments=list(deployments),
            )

    # Crawls and embeddings

    def save_crawl(
        self,
        page: PageResult,
        *,
        site_id: Optional[int] = None,
        competitor_id: Optional[int] = None,
    ) -> Crawl:
        if (site_id is None) == (competitor_id is None):
            raise ValueError("A crawl belongs to exactly one of site_id or competitor_id")

        metrics = page.metrics
        with self.session() as session:
            crawl = Crawl(
                site_id=site_id,
                competitor_id=competitor_id,
                url=page.url,
                title=page.title,
                content=page.content,
                html_content=page.html_content,
                meta_description=page.meta_description,
                status_code=page.status_code,
                load_time=page.load_time,
                content_size=page.content_size,
                performance_score=metrics.performance_score if metrics else None,
                accessibility_score=metrics.accessibility_score if metrics else None,
                best_practices_score=metrics.best_practices_score if metrics else None,
                seo_score=metrics.seo_score if metrics else None,
                cls_score=metrics.cls if metrics else None,
                lcp_score=metrics.lcp if metrics else None,
                fcp_score=metrics.fcp if metrics else None,
                crawled_at=datetime.utcnow(),
            )
            session.add(crawl)
            session.flush()
            return crawl

    def store_embeddings(
        self, crawl_id: int, items: Iterable[Tuple[str, List[float]]], *, model: Optional[str] = None
    ) -> int:
        count = 0
        with self.session() as session:
            if session.get(Crawl, crawl_id) is None:
                raise NotFoundError(f"Crawl {crawl_id} not found")
            for content, vector in items:
                session.add(
                    Embedding(crawl_id=crawl_id, content=content, vector=list(vector), model=model)
                )
                count += 1
        self.log.info("Stored %s embeddings for crawl %s", count, crawl_id)
        return count

    def get_latest_crawl(self, site_id: int) -> Optional[Crawl]:
        with self.session() as session:
            return session.execute(
                select(Crawl)
                .where(Crawl.site_id == site_id)
                .options(selectinload(Crawl.embeddings))
                .order_by(Crawl.crawled_at.desc(), Crawl.id.desc())
                .limit(1)
            ).scalar_one_or_none()

    def get_competitors_with_latest_crawl(
        self, site_id: int
    ) -> List[Tuple[Competitor, Optional[Crawl]]]:
        with self.session() as session:
            competitors = (
                session.execute(
                    select(Competitor)
                    .where(Competitor.site_id == site_id, Competitor.is_active.is_(True))
                    .order_by(Competitor.id)
                )
                .scalars()
                .all()
            )
            pairs: List[Tuple[Competitor, Optional[Crawl]]] = []
            for competitor in competitors:
                latest = session.execute(
                    select(Crawl)
                    .where(Crawl.competitor_id == competitor.id)
                    .options(selectinload(Crawl.embeddings))
                    .order_by(Crawl.crawled_at.desc(), Crawl.id.desc())
                    .limit(1)
                ).scalar_one_or_none()
                pairs.append((competitor, latest))
            return pairs

    def find_similar_content(
        self, vector: Sequence[float], site_id: int, limit: int = 5
    ) -> List[SimilarContent]:
        """
        Rank a site's stored embeddings by cosine similarity to `vector`.

        Embeddings with a different dimension or a zero norm are skipped.
        """
        with self.session() as session:
            rows = session.execute(
                select(Embedding.content, Embedding.vector, Crawl.url)
                .join(Crawl, Embedding.crawl_id == Crawl.id)
                .where(Crawl.site_id == site_id)
            ).all()

        scored: List[SimilarContent] = []
        for content, stored_vector, url in rows:
            similarity = cosine_similarity(vector, stored_vector or [])
            if similarity is None:
                continue
            scored.append(SimilarContent(content=content, similarity=similarity, url=url))
        scored.sort(key=lambda item: item.similarity, reverse=True)
        return scored[:limit]

    def get_baseline_scores(self, site_id: int) -> BaselineScores:
        """Scores of the most recent site crawl with a performance score, else defaults."""
        defaults = BaselineScores()
        with self.session() as session:
            crawl = session.execute(
                select(Crawl)
                .where(Crawl.site_id == site_id, Crawl.performance_score.is_not(None))
                .order_by(Crawl.crawled_at.desc(), Crawl.id.desc())
                .limit(1)
            ).scalar_one_or_none()
        if crawl is None:
            return defaults

        def pick(value: Optional[float], fallback: float) -> float:
            return fallback if value is None else value

        return BaselineScores(
            performance=pick(crawl.performance_score, defaults.performance),
            accessibility=pick(crawl.accessibility_score, defaults.accessibility),
            best_practices=pick(crawl.best_practices_score, defaults.best_practices),
            seo=pick(crawl.seo_score, defaults.seo),
            cls=pick(crawl.cls_score, defaults.cls),
            lcp=pick(crawl.lcp_score, defaults.lcp),
            fcp=pick(crawl.fcp_score, defaults.fcp),
        )

    # Opportunities

    def create_opportunity(self, site_id: int, draft: OpportunityDraft) -> Opportunity:
        with self.session() as session:
            opportunity = Opportunity(
                site_id=site_id,
                title=draft.title[:255],
                description=draft.description,
                type=draft.type,
                priority=draft.priority,
                revenue_delta=draft.revenue_delta,
                confidence=draft.confidence,
                target_url=draft.target_url,
                current_content=draft.current_content,
                suggested_content=draft.suggested_content,
                patch_data=draft.patch_data.to_dict() if draft.patch_data else None,
                reasoning=draft.reasoning,
                status=OpportunityStatusEnum.PENDING,
                created_at=datetime.utcnow(),
            )
            session.add(opportunity)
            session.flush()
            return opportunity

    def get_opportunity(self, opportunity_id: int) -> Opportunity:
        with self.session() as session:
            opportunity = session.get(Opportunity, opportunity_id)
            if opportunity is None:
                raise NotFoundError(f"Opportunity {opportunity_id} not found")
            return opportunity

    def update_opportunity_status(self, opportunity_id: int, status: str) -> Opportunity:
        with self.session() as session:
            opportunity = session.get(Opportunity, opportunity_id)
            if opportunity is None:
                raise NotFoundError(f"Opportunity {opportunity_id} not found")
            _check_transition(
                OpportunityStatusEnum.TRANSITIONS, opportunity.status, status, "Opportunity"
            )
            opportunity.status = status
            return opportunity

    # Deployments

    def create_deployment(
        self,
        opportunity_id: int,
        site_id: int,
        *,
        pr_number: Optional[int],
        pr_url: Optional[str],
        pr_title: Optional[str] = None,
        pr_description: Optional[str] = None,
        before_score: Optional[float] = None,
    ) -> Deployment:
        with self.session() as session:
            if session.get(Opportunity, opportunity_id) is None:
                raise NotFoundError(f"Opportunity {opportunity_id} not found")
            active = session.execute(
                select(func.count(Deployment.id)).where(
                    Deployment.opportunity_id == opportunity_id,
                    Deployment.status.in_(DeploymentStatusEnum.ACTIVE),
                )
            ).scalar_one()
            if active:
                raise InvalidTransitionError(
                    f"Opportunity {opportunity_id} already has an active deployment"
                )
            deployment = Deployment(
                opportunity_id=opportunity_id,
                site_id=site_id,
                pr_number=pr_number,
                pr_url=pr_url,
                pr_title=pr_title[:255] if pr_title else None,
                pr_description=pr_description,
                before_score=before_score,
                status=DeploymentStatusEnum.PR_CREATED,
                created_at=datetime.utcnow(),
            )
            session.add(deployment)
            session.flush()
            return deployment

    def get_deployment(self, deployment_id: int) -> Deployment:
        with self.session() as session:
            deployment = session.execute(
                select(Deployment)
                .where(Deployment.id == deployment_id)
                .options(selectinload(Deployment.opportunity), selectinload(Deployment.site))
            ).scalar_one_or_none()
            if deployment is None:
                raise NotFoundError(f"Deployment {deployment_id} not found")
            return deployment

    def list_deployments(self, opportunity_id: int) -> List[Deployment]:
        with self.session() as session:
            return list(
                session.execute(
                    select(Deployment)
                    .where(Deployment.opportunity_id == opportunity_id)
                    .order_by(Deployment.id)
                )
                .scalars()
                .all()
            )

    def complete_deployment(
        self,
        deployment_id: int,
        *,
        status: str,
        opportunity_status: str,
        before_score: Optional[float] = None,
        after_score: Optional[float] = None,
        performance_delta: Optional[float] = None,
    ) -> Deployment:
        """
        Move a deployment and its opportunity to their post-gate statuses in one transaction.
        """
        now = datetime.utcnow()
        with self.session() as session:
            deployment = session.get(Deployment, deployment_id)
            if deployment is None:
                raise NotFoundError(f"Deployment {deployment_id} not found")
            opportunity = session.get(Opportunity, deployment.opportunity_id)
            if opportunity is None:
                raise NotFoundError(f"Opportunity {deployment.opportunity_id} not found")

            _check_transition(
                DeploymentStatusEnum.TRANSITIONS, deployment.status, status, "Deployment"
            )
            _check_transition(
                OpportunityStatusEnum.TRANSITIONS, opportunity.status, opportunity_status, "Opportunity"
            )

            deployment.status = status
            if before_score is not None:
                deployment.before_score = before_score
            if after_score is not None:
                deployment.after_score = after_score
                deployment.performance_delta = performance_delta
            if status == DeploymentStatusEnum.DEPLOYED:
                deployment.deployed_at = now
            elif status == DeploymentStatusEnum.ROLLED_BACK:
                deployment.rolled_back_at = now
            opportunity.status = opportunity_status
            return deployment

    # Analytics events and housekeeping

    def track_event(
        self, event: str, data: Optional[Dict[str, Any]] = None, *, site_id: Optional[int] = None
    ) -> AnalyticsEvent:
        with self.session() as session:
            record = AnalyticsEvent(
                site_id=site_id, event=event, data_json=data, created_at=datetime.utcnow()
            )
            session.add(record)
            session.flush()
            return record

    def get_usage_stats(self, site_id: int) -> Dict[str, int]:
        with self.session() as session:
            crawls = session.execute(
                select(func.count(Crawl.id)).where(Crawl.site_id == site_id)
            ).scalar_one()
            pages = session.execute(
                select(func.count(func.distinct(Crawl.url))).where(Crawl.site_id == site_id)
            ).scalar_one()
            opportunities = session.execute(
                select(func.count(Opportunity.id)).where(Opportunity.site_id == site_id)
            ).scalar_one()
            deployments = session.execute(
                select(func.count(Deployment.id)).where(Deployment.site_id == site_id)
            ).scalar_one()
        return {
            "crawls": crawls,
            "pages": pages,
            "opportunities": opportunities,
            "deployments": deployments,
        }

    def cleanup(self, retention_days: int, *, now: Optional[datetime] = None) -> CleanupResult:
        """Delete crawls (with their embeddings) and analytics events older than the window."""
        cutoff = (now or datetime.utcnow()) - timedelta(days=retention_days)
        expired_crawls = select(Crawl.id).where(Crawl.crawled_at < cutoff).scalar_subquery()
        with self.session() as session:
            embeddings_deleted = session.execute(
                delete(Embedding)
                .where(Embedding.crawl_id.in_(expired_crawls))
                .execution_options(synchronize_session=False)
            ).rowcount
            crawls_deleted = session.execute(
                delete(Crawl)
                .where(Crawl.crawled_at < cutoff)
                .execution_options(synchronize_session=False)
            ).rowcount
            events_deleted = session.execute(
                delete(AnalyticsEvent)
                .where(AnalyticsEvent.created_at < cutoff)
                .execution_options(synchronize_session=False)
            ).rowcount

        result = CleanupResult(
            crawls_deleted=crawls_deleted or 0,
            embeddings_deleted=embeddings_deleted or 0,
            events_deleted=events_deleted or 0,
        )
        self.log.info(
            "Cleanup removed %s crawls, %s embeddings, %s events older than %s",
            result.crawls_deleted,
            result.embeddings_deleted,
            result.events_deleted,
            cutoff.isoformat(),
        )
        return result
