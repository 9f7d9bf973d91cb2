from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


class OpportunityTypeEnum(str):
    COPY_TWEAK = "COPY_TWEAK"
    SEO_OPTIMIZATION = "SEO_OPTIMIZATION"
    PERFORMANCE_FIX = "PERFORMANCE_FIX"
    UX_IMPROVEMENT = "UX_IMPROVEMENT"
    SGE_ANSWER_BLOCK = "SGE_ANSWER_BLOCK"
    FAQ_SCHEMA = "FAQ_SCHEMA"
    IMAGE_OPTIMIZATION = "IMAGE_OPTIMIZATION"
    LOYALTY_PASS = "LOYALTY_PASS"
    COMPETITOR_RESPONSE = "COMPETITOR_RESPONSE"

    ALL = (
        COPY_TWEAK,
        SEO_OPTIMIZATION,
        PERFORMANCE_FIX,
        UX_IMPROVEMENT,
        SGE_ANSWER_BLOCK,
        FAQ_SCHEMA,
        IMAGE_OPTIMIZATION,
        LOYALTY_PASS,
        COMPETITOR_RESPONSE,
    )


class PriorityEnum(str):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    ORDER = {LOW: 0, MEDIUM: 1, HIGH: 2}


class OpportunityStatusEnum(str):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    DEPLOYED = "DEPLOYED"
    ROLLED_BACK = "ROLLED_BACK"
    FAILED = "FAILED"

    TRANSITIONS = {
        PENDING: {IN_PROGRESS, DEPLOYED, FAILED},
        IN_PROGRESS: {DEPLOYED, ROLLED_BACK, FAILED},
        DEPLOYED: {ROLLED_BACK},
        ROLLED_BACK: set(),
        FAILED: set(),
    }


class DeploymentStatusEnum(str):
    PR_CREATED = "PR_CREATED"
    DEPLOYED = "DEPLOYED"
    FAILED = "FAILED"
    ROLLED_BACK = "ROLLED_BACK"

    ACTIVE = (PR_CREATED, DEPLOYED)
    TRANSITIONS = {
        PR_CREATED: {DEPLOYED, FAILED, ROLLED_BACK},
        DEPLOYED: {ROLLED_BACK},
        FAILED: set(),
        ROLLED_BACK: set(),
    }


class Site(Base):
    __tablename__ = "sites"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    max_pages: Mapped[int] = mapped_column(Integer, nullable=False, default=50)
    auto_merge: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    github_repo: Mapped[str | None] = mapped_column(String(255), nullable=True)
    github_owner: Mapped[str | None] = mapped_column(String(255), nullable=True)
    github_installation_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    ga4_property_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # Service-account JSON or a path to its key file.
    ga4_credentials: Mapped[str | None] = mapped_column(Text, nullable=True)
    plan_tier: Mapped[str] = mapped_column(String(20), nullable=False, default="starter")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=datetime.utcnow
    )

    competitors: Mapped[list["Competitor"]] = relationship("Competitor", back_populates="site")
    crawls: Mapped[list["Crawl"]] = relationship("Crawl", back_populates="site")
    opportunities: Mapped[list["Opportunity"]] = relationship(
        "Opportunity", back_populates="site"
    )
    deployments: Mapped[list["Deployment"]] = relationship("Deployment", back_populates="site")


class Competitor(Base):
    __tablename__ = "competitors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    site_id: Mapped[int] = mapped_column(ForeignKey("sites.id"), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    site: Mapped["Site"] = relationship("Site", back_populates="competitors")
    crawls: Mapped[list["Crawl"]] = relationship("Crawl", back_populates="competitor")


class Crawl(Base):
    __tablename__ = "crawls"
    __table_args__ = (
        CheckConstraint(
            "(site_id IS NULL) <> (competitor_id IS NULL)", name="ck_crawl_single_owner"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    site_id: Mapped[int | None] = mapped_column(ForeignKey("sites.id"), nullable=True)
    competitor_id: Mapped[int | None] = mapped_column(
        ForeignKey("competitors.id"), nullable=True
    )
    url: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    html_content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    meta_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status_code: Mapped[int] = mapped_column(Integer, nullable=False)
    load_time: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    content_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    performance_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    accessibility_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    best_practices_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    seo_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    cls_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    lcp_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    fcp_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    crawled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=datetime.utcnow
    )

    site: Mapped["Site"] = relationship("Site", back_populates="crawls")
    competitor: Mapped["Competitor"] = relationship("Competitor", back_populates="crawls")
    embeddings: Mapped[list["Embedding"]] = relationship(
        "Embedding", back_populates="crawl", cascade="all, delete-orphan"
    )


class Embedding(Base):
    __tablename__ = "embeddings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    crawl_id: Mapped[int] = mapped_column(ForeignKey("crawls.id"), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    vector: Mapped[list] = mapped_column(JSON, nullable=False)
    model: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=datetime.utcnow
    )

    crawl: Mapped["Crawl"] = relationship("Crawl", back_populates="embeddings")


class Opportunity(Base):
    __tablename__ = "opportunities"
    __table_args__ = (
        CheckConstraint("confidence >= 0.0 AND confidence <= 1.0", name="ck_confidence_range"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    site_id: Mapped[int] = mapped_column(ForeignKey("sites.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    type: Mapped[str] = mapped_column(
        String(40), nullable=False, default=OpportunityTypeEnum.COPY_TWEAK
    )
    priority: Mapped[str] = mapped_column(String(10), nullable=False, default=PriorityEnum.MEDIUM)
    revenue_delta: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    target_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    current_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    suggested_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    patch_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=OpportunityStatusEnum.PENDING
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=datetime.utcnow
    )

    site: Mapped["Site"] = relationship("Site", back_populates="opportunities")
    deployments: Mapped[list["Deployment"]] = relationship(
        "Deployment", back_populates="opportunity"
    )


class Deployment(Base):
    __tablename__ = "deployments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    opportunity_id: Mapped[int] = mapped_column(ForeignKey("opportunities.id"), nullable=False)
    site_id: Mapped[int] = mapped_column(ForeignKey("sites.id"), nullable=False)
    pr_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    pr_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    pr_title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    pr_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    before_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    after_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    performance_delta: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DeploymentStatusEnum.PR_CREATED
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=datetime.utcnow
    )
    deployed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rolled_back_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    opportunity: Mapped["Opportunity"] = relationship("Opportunity", back_populates="deployments")
    site: Mapped["Site"] = relationship("Site", back_populates="deployments")


class AnalyticsEvent(Base):
    __tablename__ = "analytics_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    site_id: Mapped[int | None] = mapped_column(ForeignKey("sites.id"), nullable=True)
    event: Mapped[str] = mapped_column(String(100), nullable=False)
    data_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=datetime.utcnow
    )
