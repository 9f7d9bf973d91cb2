import asyncio
import json
from dataclasses import replace

import pytest
from sqlalchemy import select

from packages.nebula.models import AnalyticsEvent, DeploymentStatusEnum, OpportunityStatusEnum
from packages.nebula.pipeline import BatchRunner, SiteBusyError, SitePipeline
from packages.nebula.repository import NotFoundError

from conftest import FakeAuditor, FakePublisher, make_report


def _opportunity(title: str, *, priority: str = "HIGH", confidence: float = 0.85, patch: bool = True):
    item = {
        "title": title,
        "description": f"{title} description",
        "type": "COPY_TWEAK",
        "priority": priority,
        "revenueDelta": 500,
        "confidence": confidence,
        "reasoning": "Clearer copy converts better",
    }
    if patch:
        item["patchData"] = {"filePath": f"{title.lower()}.html", "newContent": f"<h1>{title}</h1>"}
    return item


def _auto_site(store, **fields):
    defaults = dict(auto_merge=True, github_repo="site", github_owner="acme")
    defaults.update(fields)
    return store.create_site("https://acme.test", "Acme", **defaults)


def _events(store, name):
    with store.session() as session:
        return list(
            session.execute(select(AnalyticsEvent).where(AnalyticsEvent.event == name)).scalars()
        )


@pytest.mark.asyncio
async def test_pipeline_crawls_generates_and_opens_pr(services, store, fake_llm, fake_publisher):
    site = _auto_site(store)
    store.add_competitor(site.id, "https://rival.test", "Rival")
    fake_llm.response = "Ideas:\n" + json.dumps([_opportunity("Pricing")])

    state = await SitePipeline(services).run(site.id)

    assert state.pages_crawled == 3
    assert state.competitor_pages == 1
    assert state.insights is not None
    assert len(state.opportunity_ids) == 1
    assert len(state.deployment_ids) == 1

    patch = fake_publisher.created[0]
    assert (patch.owner, patch.repository) == ("acme", "site")
    assert patch.branch == f"nebula-{state.opportunity_ids[0]}"
    assert patch.files[0].path == "pricing.html"
    assert "Estimated revenue impact: $500/month" in patch.pr_description

    deployment = store.get_deployment(state.deployment_ids[0])
    assert deployment.status == DeploymentStatusEnum.PR_CREATED
    assert deployment.pr_number == 101
    assert deployment.before_score == 0.92
    opportunity = store.get_opportunity(state.opportunity_ids[0])
    assert opportunity.status == OpportunityStatusEnum.IN_PROGRESS

    assert "Similar Content Analysis" in fake_llm.prompts[0]
    assert _events(store, "opportunities_generated")[0].data_json["count"] == 1


@pytest.mark.asyncio
async def test_pipeline_without_auto_merge_only_persists(services, store, fake_llm, fake_publisher):
    site = store.create_site("https://acme.test", "Acme")
    fake_llm.response = json.dumps([_opportunity("Pricing")])

    state = await SitePipeline(services).run(site.id)

    assert len(state.opportunity_ids) == 1
    assert state.deployment_ids == []
    assert fake_publisher.created == []
    assert store.get_opportunity(state.opportunity_ids[0]).status == OpportunityStatusEnum.PENDING


@pytest.mark.asyncio
async def test_only_confident_high_priority_opportunities_are_published(services, store, fake_llm, fake_publisher):
    site = _auto_site(store, plan_tier="enterprise")
    fake_llm.response = json.dumps(
        [
            _opportunity("Strong"),
            _opportunity("Medium", priority="MEDIUM", confidence=0.95),
            _opportunity("Borderline", confidence=0.8),
            _opportunity("Nopatch", patch=False, confidence=0.9),
        ]
    )

    state = await SitePipeline(services).run(site.id)

    assert len(state.opportunity_ids) == 4
    assert [p.pr_title for p in fake_publisher.created] == ["Strong"]
    assert len(state.deployment_ids) == 1


@pytest.mark.asyncio
async def test_publish_is_capped_per_cycle(services, store, fake_llm, fake_publisher):
    site = _auto_site(store, plan_tier="growth")
    fake_llm.response = json.dumps([_opportunity(f"Idea{i}", confidence=0.9) for i in range(5)])

    state = await SitePipeline(services).run(site.id)

    assert len(state.opportunity_ids) == 5
    assert len(fake_publisher.created) == services.settings.max_prs_per_cycle == 3


@pytest.mark.asyncio
async def test_plan_tier_limits_opportunities(services, store, fake_llm):
    site = store.create_site("https://acme.test", "Acme", plan_tier="starter")
    fake_llm.response = json.dumps([_opportunity(f"Idea{i}") for i in range(6)])

    state = await SitePipeline(services).run(site.id)

    assert len(state.opportunity_ids) == 3


@pytest.mark.asyncio
async def test_pr_failure_does_not_stop_other_opportunities(services, store, fake_llm):
    site = _auto_site(store)
    fake_llm.response = json.dumps([_opportunity("First"), _opportunity("Second")])
    publisher = FakePublisher(fail_branches={"nebula-1"})

    state = await SitePipeline(replace(services, publisher=publisher)).run(site.id)

    assert state.pr_failures == 1
    assert [p.pr_title for p in publisher.created] == ["Second"]
    assert store.get_opportunity(1).status == OpportunityStatusEnum.FAILED
    assert store.get_opportunity(2).status == OpportunityStatusEnum.IN_PROGRESS


@pytest.mark.asyncio
async def test_competitor_failure_is_contained(services, store):
    site = store.create_site("https://acme.test", "Acme")
    store.add_competitor(site.id, "ftp://broken.test", "Broken")
    store.add_competitor(site.id, "https://rival.test", "Rival")

    state = await SitePipeline(services).run(site.id)

    assert state.pages_crawled == 3
    assert state.competitor_pages == 1


@pytest.mark.asyncio
async def test_batch_counts_successes_and_failures(services, store):
    store.create_site("https://acme.test", "Acme")
    store.create_site("ftp://acme.test", "Broken")
    inactive = store.create_site("https://rival.test", "Inactive")
    store.deactivate_site(inactive.id)

    summary = await BatchRunner(services).run_batch()

    assert summary.to_dict() == {"total": 2, "successful": 1, "failed": 1}
    assert _events(store, "batch_completed")[0].data_json == {"total": 2, "successful": 1, "failed": 1}


@pytest.mark.asyncio
async def test_batch_for_single_and_unknown_site(services, store):
    site = store.create_site("https://acme.test", "Acme")
    runner = BatchRunner(services)

    assert (await runner.run_batch(site.id)).to_dict() == {"total": 1, "successful": 1, "failed": 0}
    with pytest.raises(NotFoundError):
        await runner.run_batch(site.id + 100)


@pytest.mark.asyncio
async def test_site_cannot_run_concurrently(services, store):
    site = store.create_site("https://acme.test", "Acme")
    runner = BatchRunner(services)
    lock = runner._locks.setdefault(site.id, asyncio.Lock())

    async with lock:
        with pytest.raises(SiteBusyError):
            await runner.run_site(site.id)
        summary = await runner.run_batch(site.id)

    assert summary.failed == 1


@pytest.mark.asyncio
async def test_seed_audit_becomes_the_gate_baseline(services, store, fake_llm, fake_publisher):
    site = _auto_site(store)
    fake_llm.response = json.dumps([_opportunity("Pricing")])
    crawl_auditor = FakeAuditor(make_report(0.92, cls=0.05, lcp=1200.0))

    state = await SitePipeline(replace(services, auditor=crawl_auditor)).run(site.id)

    assert crawl_auditor.urls == ["https://acme.test/"]
    baseline = store.get_baseline_scores(site.id)
    assert (baseline.performance, baseline.cls, baseline.lcp) == (0.92, 0.05, 1200.0)

    gate = replace(services, auditor=FakeAuditor(make_report(0.92, cls=0.05, lcp=2400.0))).deployment_gate()
    outcome = await gate.run(state.deployment_ids[0], "https://acme.test")

    assert not outcome.passed
    assert outcome.reasons == ["LCP increased by 100.0%"]
    assert fake_publisher.rollbacks == [("acme", "site", 101, "test-token")]


@pytest.mark.asyncio
async def test_failed_seed_audit_leaves_crawl_unscored(services, store):
    site = store.create_site("https://acme.test", "Acme")

    state = await SitePipeline(replace(services, auditor=FakeAuditor(fail=True))).run(site.id)

    assert state.pages_crawled == 3
    assert store.get_baseline_scores(site.id).performance == 0.5
    assert all(c.performance_score is None for c in store.get_site_overview(site.id).recent_crawls)
