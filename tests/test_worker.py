from dataclasses import replace
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import SQLAlchemyError

from apps.worker.main import worker_loop
from packages.nebula.config import Settings
from packages.nebula.models import Crawl
from packages.nebula.schemas import PageResult
from packages.nebula.services import ConfigurationError, build_llm, build_services


@pytest.mark.asyncio
async def test_worker_runs_sites_then_prunes(services, store):
    site = store.create_site("https://acme.test", "Acme")
    stale = store.save_crawl(
        PageResult(url="https://acme.test/old", status_code=200, html_content="", content="old"),
        site_id=site.id,
    )
    with store.session() as session:
        session.get(Crawl, stale.id).crawled_at = datetime.utcnow() - timedelta(days=365)

    await worker_loop(services, iterations=1)

    overview = store.get_site_overview(site.id)
    urls = {c.url for c in overview.recent_crawls}
    assert "https://acme.test/old" not in urls
    assert "https://acme.test/pricing" in urls


def test_settings_from_env():
    settings = Settings.from_env(
        {
            "DATABASE_URL": "sqlite://",
            "LLM_PROVIDER": "Anthropic",
            "CLAUDE_API_KEY": "sk-ant",
            "GATE_MAX_LCP_MS": "3000",
            "GITHUB_APP_ID": "12",
            "GITHUB_PRIVATE_KEY": "-----BEGIN-----\\nabc\\n-----END-----",
            "AUTO_PR_PRIORITY": "high",
        }
    )

    assert settings.llm_provider == "anthropic"
    assert settings.anthropic_api_key == "sk-ant"
    assert settings.thresholds.maximum_lcp == 3000.0
    assert settings.thresholds.minimum_performance == 0.8
    assert settings.github_private_key == "-----BEGIN-----\nabc\n-----END-----"
    assert settings.github_app_configured
    assert settings.auto_pr_priority == "HIGH"
    assert settings.opportunity_limit("Enterprise") == 10
    assert settings.opportunity_limit(None) == 3


def test_missing_credentials_are_configuration_errors():
    with pytest.raises(ConfigurationError):
        build_services(Settings(database_url="sqlite://"))
    with pytest.raises(ConfigurationError):
        build_llm(Settings(llm_provider="anthropic"))
    with pytest.raises(ConfigurationError):
        build_llm(Settings(llm_provider="mistral", openai_api_key="sk"))


@pytest.mark.asyncio
async def test_cleanup_failure_does_not_stop_the_worker(services, store, monkeypatch):
    calls = []

    def failing_cleanup(retention_days, now=None):
        calls.append(retention_days)
        raise SQLAlchemyError("database is locked")

    monkeypatch.setattr(store, "cleanup", failing_cleanup)
    fast = replace(services, settings=replace(services.settings, worker_interval_seconds=0))

    await worker_loop(fast, iterations=2)

    assert calls == [90, 90]
