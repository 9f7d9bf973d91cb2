from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.engine import Engine

from .analytics import (
    AnalyticsClient,
    GA4Client,
    ServiceAccountTokenSource,
    SimulatedAnalyticsClient,
)
from .audit import PageSpeedAuditor
from .browser import PlaywrightFetcher
from .config import Settings
from .crawler import PageFetcher
from .db import create_db_engine, create_session_factory
from .gate import Auditor, DeploymentGate
from .github_client import GitHubAppAuth, GitHubPublisher, GitHubTokenProvider
from .llm import AnthropicChatClient, LLMClient, OpenAIChatClient, OpenAIEmbedder
from .models import Site
from .opportunities import ContextBuilder, OpportunityGenerator
from .repository import GrowthStore


logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when required credentials or settings are missing."""


@dataclass
class Services:
    """Every collaborator the pipeline, the gate and the apps need, built once at startup."""

    settings: Settings
    store: GrowthStore
    fetcher_factory: Callable[[], PageFetcher]
    analytics_factory: Callable[[Site], AnalyticsClient]
    generator: OpportunityGenerator
    context_builder: ContextBuilder
    publisher: GitHubPublisher
    token_provider: GitHubTokenProvider
    auditor: Auditor
    engine: Optional[Engine] = None

    def deployment_gate(self) -> DeploymentGate:
        return DeploymentGate(
            self.store,
            self.auditor,
            self.publisher,
            self.token_provider,
            thresholds=self.settings.thresholds,
            audit_timeout=self.settings.audit_timeout_seconds,
        )


def build_llm(settings: Settings) -> LLMClient:
    if settings.llm_provider == "anthropic":
        if not settings.anthropic_api_key:
            raise ConfigurationError("ANTHROPIC_API_KEY is not set")
        return AnthropicChatClient(settings.anthropic_api_key, settings.anthropic_model)
    if settings.llm_provider == "openai":
        if not settings.openai_api_key:
            raise ConfigurationError("OPENAI_API_KEY is not set")
        return OpenAIChatClient(settings.openai_api_key, settings.openai_model)
    raise ConfigurationError(f"Unknown LLM provider: {settings.llm_provider}")


def build_analytics_client(site: Site) -> AnalyticsClient:
    if site.ga4_property_id and site.ga4_credentials:
        return GA4Client(
            site.ga4_property_id, ServiceAccountTokenSource.from_reference(site.ga4_credentials)
        )
    return SimulatedAnalyticsClient(site.ga4_property_id or site.url)


def build_services(settings: Settings) -> Services:
    # Embeddings always come from OpenAI, whichever chat provider is selected.
    if not settings.openai_api_key:
        raise ConfigurationError("OPENAI_API_KEY is not set (required for embeddings)")

    engine = create_db_engine(settings.database_url)
    store = GrowthStore(create_session_factory(engine))

    app_auth = None
    if settings.github_app_configured:
        app_auth = GitHubAppAuth(
            settings.github_app_id, settings.github_private_key, api_url=settings.github_api_url
        )
    else:
        logger.info("GitHub App not configured; using GITHUB_TOKEN when set")

    embedder = OpenAIEmbedder(settings.openai_api_key, settings.openai_embedding_model)
    return Services(
        settings=settings,
        store=store,
        fetcher_factory=lambda: PlaywrightFetcher(user_agent=settings.crawl_user_agent),
        analytics_factory=build_analytics_client,
        generator=OpportunityGenerator(
            build_llm(settings),
            max_tokens=settings.llm_max_tokens,
            temperature=settings.llm_temperature,
            timeout=settings.llm_timeout_seconds,
        ),
        context_builder=ContextBuilder(
            store, embedder, min_chars=settings.min_embedding_chars
        ),
        publisher=GitHubPublisher(settings.github_api_url),
        token_provider=GitHubTokenProvider(app_auth, settings.github_token),
        auditor=PageSpeedAuditor(
            settings.pagespeed_api_key,
            settings.pagespeed_strategy,
            timeout=settings.audit_timeout_seconds,
        ),
        engine=engine,
    )
