import asyncio
import json

import pytest

from packages.nebula.llm import LLMError
from packages.nebula.opportunities import (
    OPPORTUNITY_QUERY,
    ContextBuilder,
    OpportunityGenerator,
    build_opportunity_prompt,
    find_json_object,
    parse_opportunities,
)
from packages.nebula.schemas import CompetitorContent, PageResult, RAGContext, SimilarContent

from conftest import LONG_TEXT, FakeEmbedder, FakeLLM


OPPORTUNITIES = [
    {
        "title": "Rewrite pricing headline",
        "description": "Lead with the free trial",
        "type": "COPY_TWEAK",
        "priority": "HIGH",
        "revenueDelta": 1200,
        "confidence": 0.85,
        "targetUrl": "https://acme.test/pricing",
        "patchData": {"filePath": "pricing.html", "newContent": "<h1>Try free</h1>", "type": "html"},
        "reasoning": "Trial messaging converts better",
    },
    {"title": "Add FAQ schema", "type": "faq_schema", "priority": "low"},
]


def test_parse_extracts_array_from_surrounding_text():
    text = "Here are my ideas:\n```json\n" + json.dumps(OPPORTUNITIES) + "\n```\nGood luck [1]."
    drafts = parse_opportunities(text)

    assert [d.title for d in drafts] == ["Rewrite pricing headline", "Add FAQ schema"]
    first = drafts[0]
    assert first.priority == "HIGH"
    assert first.revenue_delta == 1200
    assert first.confidence == 0.85
    assert first.patch_data.file_path == "pricing.html"
    assert first.patch_data.new_content == "<h1>Try free</h1>"
    assert drafts[1].type == "FAQ_SCHEMA"
    assert drafts[1].priority == "LOW"


def test_parse_without_array_returns_empty_list():
    assert parse_opportunities("I could not find anything useful.") == []
    assert parse_opportunities("") == []
    assert parse_opportunities("[not json at all") == []


def test_parse_skips_leading_brackets_that_are_not_json():
    text = "See [the docs] first. " + json.dumps([{"title": "Real"}])
    assert [d.title for d in parse_opportunities(text)] == ["Real"]


def test_parse_applies_defaults_and_clamps():
    text = json.dumps(
        [
            {"title": "A", "type": "TELEPORTATION", "priority": "urgent", "confidence": 3},
            {"title": "B", "confidence": -1, "revenueDelta": "2,500"},
            "not an object",
            {"description": "untitled"},
        ]
    )
    drafts = parse_opportunities(text)

    assert len(drafts) == 3
    a, b, c = drafts
    assert a.type == "COPY_TWEAK"
    assert a.priority == "MEDIUM"
    assert a.confidence == 1.0
    assert a.revenue_delta == 0.0
    assert b.confidence == 0.0
    assert b.revenue_delta == 2500.0
    assert c.title == "Untitled Opportunity"
    assert c.confidence == 0.5


def test_find_json_object():
    assert find_json_object('prefix {"@type": "FAQPage"} suffix') == {"@type": "FAQPage"}
    assert find_json_object("nothing here") is None


def test_prompt_includes_context_sections():
    context = RAGContext(
        query=OPPORTUNITY_QUERY,
        similar_content=[SimilarContent(content="Our pricing", similarity=0.9, url="https://acme.test/pricing")],
        competitor_data=[CompetitorContent(url="https://rival.test/", content="Rival pricing", relevance=0.5)],
    )
    prompt = build_opportunity_prompt(context, {"total_conversions": 42})

    assert "Similar Content Analysis" in prompt
    assert "https://acme.test/pricing" in prompt
    assert "Competitor Analysis" in prompt
    assert "Analytics Insights" in prompt
    assert '"total_conversions": 42' in prompt
    assert "SGE_ANSWER_BLOCK" in prompt


@pytest.mark.asyncio
async def test_generate_ranks_and_limits():
    llm = FakeLLM(
        json.dumps(
            [
                {"title": "low", "priority": "LOW", "confidence": 0.9},
                {"title": "high-weak", "priority": "HIGH", "confidence": 0.6},
                {"title": "high-strong", "priority": "HIGH", "confidence": 0.9},
            ]
        )
    )
    generator = OpportunityGenerator(llm)

    drafts = await generator.generate_opportunities(RAGContext(query="q"), limit=2)

    assert [d.title for d in drafts] == ["high-strong", "high-weak"]


@pytest.mark.asyncio
async def test_generate_returns_empty_on_llm_error():
    generator = OpportunityGenerator(FakeLLM(error=LLMError("rate limited")))
    assert await generator.generate_opportunities(RAGContext(query="q")) == []


@pytest.mark.asyncio
async def test_generate_returns_empty_on_timeout():
    class SlowLLM(FakeLLM):
        async def complete(self, prompt, *, max_tokens, temperature):
            await asyncio.sleep(1)
            return "[]"

    generator = OpportunityGenerator(SlowLLM(), timeout=0.01)
    assert await generator.generate_opportunities(RAGContext(query="q")) == []


@pytest.mark.asyncio
async def test_secondary_generation_calls():
    llm = FakeLLM('Sure: {"@context": "https://schema.org", "@type": "FAQPage"}')
    generator = OpportunityGenerator(llm)

    schema = await generator.generate_faq_schema(["What is Acme?"], "Acme is software")
    assert schema["@type"] == "FAQPage"
    assert llm.calls[-1] == {"max_tokens": 2000, "temperature": 0.3}

    html = await generator.generate_answer_block("What is Acme?", "context", ["acme", "pm"])
    assert html == llm.response
    assert "acme, pm" in llm.prompts[-1]

    failing = OpportunityGenerator(FakeLLM(error=LLMError("down")))
    assert await failing.generate_faq_schema(["q"], "c") == {}
    assert await failing.generate_answer_block("q", "c", []) == ""
    assert await failing.process_content("original", "rewrite") == "original"

    with pytest.raises(ValueError):
        await generator.process_content("original", "summarize")


@pytest.mark.asyncio
async def test_context_builder_ranks_site_and_competitor_content(store):
    site = store.create_site("https://acme.test", "Acme")
    competitor = store.add_competitor(site.id, "https://rival.test", "Rival")
    embedder = FakeEmbedder()
    builder = ContextBuilder(store, embedder)

    pages = {
        "https://acme.test/pricing": "Pricing pricing pricing for every plan. " + LONG_TEXT,
        "https://acme.test/shoes": "Shoes shoes shoes, an unrelated catalogue page. " + LONG_TEXT,
    }
    for url, text in pages.items():
        crawl = store.save_crawl(PageResult(url=url, status_code=200, html_content="", content=text), site_id=site.id)
        assert await builder.embed_crawl(crawl.id, text) == 1

    rival = store.save_crawl(
        PageResult(url="https://rival.test/", status_code=200, html_content="", content="Rival pricing. " + LONG_TEXT),
        competitor_id=competitor.id,
    )
    await builder.embed_crawl(rival.id, "Rival pricing. " + LONG_TEXT)

    context = await builder.build_context("pricing", site.id)

    assert [s.url for s in context.similar_content] == [
        "https://acme.test/pricing",
        "https://acme.test/shoes",
    ]
    assert context.similar_content[0].similarity > context.similar_content[1].similarity
    assert len(context.competitor_data) == 1
    assert context.competitor_data[0].url == "https://rival.test/"
    assert 0 < context.competitor_data[0].relevance <= 1


@pytest.mark.asyncio
async def test_short_content_is_not_embedded(store):
    site = store.create_site("https://acme.test", "Acme")
    crawl = store.save_crawl(
        PageResult(url="https://acme.test/", status_code=200, html_content="", content="tiny"),
        site_id=site.id,
    )
    embedder = FakeEmbedder()
    assert await ContextBuilder(store, embedder).embed_crawl(crawl.id, "tiny") == 0
    assert embedder.calls == []


@pytest.mark.asyncio
async def test_context_builder_survives_embedding_failure(store):
    site = store.create_site("https://acme.test", "Acme")
    competitor = store.add_competitor(site.id, "https://rival.test", "Rival")
    store.save_crawl(
        PageResult(url="https://rival.test/", status_code=200, html_content="", content="Rival copy"),
        competitor_id=competitor.id,
    )

    context = await ContextBuilder(store, FakeEmbedder(fail=True)).build_context("pricing", site.id)

    assert context.similar_content == []
    assert context.competitor_data[0].relevance == 0.0
