from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from .llm import Embedder, LLMClient, LLMError
from .models import OpportunityTypeEnum, PriorityEnum
from .repository import GrowthStore, cosine_similarity
from .schemas import CompetitorContent, OpportunityDraft, PatchData, RAGContext, SimilarContent


logger = logging.getLogger(__name__)

OPPORTUNITY_QUERY = "website optimization opportunities"

CONTENT_TASKS = {
    "improve": "Improve the content for better clarity, engagement, and SEO performance.",
    "optimize": "Optimize the content for search engines while maintaining readability.",
    "rewrite": "Rewrite the content to be more compelling and conversion-focused.",
}


def _find_first_json(text: str, opener: str, kind: type) -> Optional[Any]:
    decoder = json.JSONDecoder()
    index = text.find(opener)
    while index != -1:
        try:
            value, _ = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, kind):
            return value
        index = text.find(opener, index + 1)
    return None


def find_json_array(text: str) -> Optional[List[Any]]:
    """The first complete JSON array embedded in `text`, or None."""
    return _find_first_json(text or "", "[", list)


def find_json_object(text: str) -> Optional[Dict[str, Any]]:
    """The first complete JSON object embedded in `text`, or None."""
    return _find_first_json(text or "", "{", dict)


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.replace(",", "").replace("$", "").strip())
        except ValueError:
            return None
    return None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value if isinstance(value, str) else json.dumps(value)


def coerce_opportunity(item: Dict[str, Any]) -> OpportunityDraft:
    def get(*keys: str) -> Any:
        for key in keys:
            if key in item and item[key] is not None:
                return item[key]
        return None

    kind = str(get("type") or "").upper()
    if kind not in OpportunityTypeEnum.ALL:
        kind = OpportunityTypeEnum.COPY_TWEAK

    priority = str(get("priority") or "").upper()
    if priority not in PriorityEnum.ORDER:
        priority = PriorityEnum.MEDIUM

    revenue = _number(get("revenueDelta", "revenue_delta"))
    confidence = _number(get("confidence"))
    confidence = 0.5 if confidence is None else min(max(confidence, 0.0), 1.0)

    patch_raw = get("patchData", "patch_data")
    patch = PatchData.from_dict(patch_raw) if isinstance(patch_raw, dict) else None
    if patch is not None and not patch.file_path:
        patch = None

    return OpportunityDraft(
        title=str(get("title") or "Untitled Opportunity"),
        description=str(get("description") or ""),
        type=kind,
        priority=priority,
        revenue_delta=revenue if revenue is not None else 0.0,
        confidence=confidence,
        target_url=_text(get("targetUrl", "target_url")),
        current_content=_text(get("currentContent", "current_content")),
        suggested_content=_text(get("suggestedContent", "suggested_content")),
        patch_data=patch,
        reasoning=_text(get("reasoning")),
    )


def parse_opportunities(response_text: str) -> List[OpportunityDraft]:
    """
    Extract opportunities from a model response.

    Never raises: a response without a JSON array yields an empty list and
    non-object entries in the array are ignored.
    """
    items = find_json_array(response_text)
    if items is None:
        logger.warning("No JSON array found in opportunity response")
        return []
    return [coerce_opportunity(item) for item in items if isinstance(item, dict)]


def rank_opportunities(drafts: List[OpportunityDraft]) -> List[OpportunityDraft]:
    return sorted(
        drafts,
        key=lambda d: (PriorityEnum.ORDER[d.priority], d.confidence, d.revenue_delta),
        reverse=True,
    )


def build_opportunity_prompt(
    context: RAGContext, insights: Optional[Dict[str, Any]] = None
) -> str:
    similar = "\n".join(
        f"- URL: {item.url}\n  Content: {item.content[:200]}...\n"
        f"  Relevance: {item.similarity * 100:.1f}%"
        for item in context.similar_content
    ) or "None."

    prompt = f"""# Growth Opportunity Analysis

## Current Site Analysis
Query: {context.query}

### Similar Content Analysis:
{similar}
"""

    if context.competitor_data:
        competitors = "\n".join(
            f"- URL: {comp.url}\n  Content: {comp.content[:200]}...\n"
            f"  Relevance: {comp.relevance * 100:.1f}%"
            for comp in context.competitor_data
        )
        prompt += f"""
### Competitor Analysis:
{competitors}
"""

    if insights:
        prompt += f"""
### Analytics Insights:
{json.dumps(insights, indent=2, default=str)}
"""

    types = ", ".join(OpportunityTypeEnum.ALL)
    prompt += f"""
## Task
Based on the analysis above, identify 3-5 high-impact growth opportunities.

Return ONLY a JSON array. Each element must be an object with these keys:
- title: clear, actionable title
- description: detailed explanation of the opportunity
- type: one of [{types}]
- priority: one of "HIGH", "MEDIUM", "LOW"
- revenueDelta: estimated monthly revenue impact as a number
- targetUrl: page to modify (optional)
- currentContent: existing content to be changed (optional)
- suggestedContent: proposed replacement content (optional)
- patchData: optional object {{"filePath": "...", "newContent": "...", "type": "content|html|css|json"}}
- reasoning: why this opportunity will drive growth
- confidence: number between 0 and 1

Focus on data-driven recommendations that address specific issues found in the analysis.
"""
    return prompt


class OpportunityGenerator:
    """Asks the language model for opportunities and structured content blocks."""

    def __init__(
        self,
        llm: LLMClient,
        *,
        max_tokens: int = 4000,
        temperature: float = 0.7,
        timeout: float = 90.0,
        log: Optional[logging.Logger] = None,
    ):
        self.llm = llm
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout
        self.log = log or logger

    async def _complete(self, prompt: str, *, max_tokens: int, temperature: float) -> str:
        try:
            return await asyncio.wait_for(
                self.llm.complete(prompt, max_tokens=max_tokens, temperature=temperature),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            raise LLMError(f"LLM call timed out after {self.timeout}s") from exc

    async def generate_opportunities(
        self,
        context: RAGContext,
        insights: Optional[Dict[str, Any]] = None,
        *,
        limit: Optional[int] = None,
    ) -> List[OpportunityDraft]:
        prompt = build_opportunity_prompt(context, insights)
        try:
            response_text = await self._complete(
                prompt, max_tokens=self.max_tokens, temperature=self.temperature
            )
        except LLMError:
            self.log.exception("Opportunity generation failed")
            return []

        drafts = rank_opportunities(parse_opportunities(response_text))
        if limit is not None:
            drafts = drafts[:limit]
        self.log.info("Generated %s opportunities", len(drafts))
        return drafts

    async def generate_answer_block(
        self, question: str, context: str, target_keywords: List[str]
    ) -> str:
        prompt = f"""# Answer Block Generation

## Question: {question}

## Context:
{context}

## Target Keywords:
{", ".join(target_keywords)}

## Task:
Write an SEO-optimized answer block suitable for AI search result snippets. The answer should:
1. Directly answer the question in the first paragraph
2. Include the target keywords naturally
3. Be well-structured with clear sections and specific details
4. Be approximately 150-300 words
5. Use semantic HTML

Return only the HTML content for the answer block.
"""
        try:
            return await self._complete(prompt, max_tokens=1000, temperature=0.3)
        except LLMError:
            self.log.exception("Answer block generation failed")
            return ""

    async def generate_faq_schema(self, questions: List[str], context: str) -> Dict[str, Any]:
        numbered = "\n".join(f"{i}. {q}" for i, q in enumerate(questions, start=1))
        prompt = f"""# FAQ Schema Generation

## Questions:
{numbered}

## Context:
{context}

## Task:
Generate a JSON-LD FAQPage schema (schema.org) answering every question above from the context.

Return only the JSON-LD object.
"""
        try:
            response_text = await self._complete(prompt, max_tokens=2000, temperature=0.3)
        except LLMError:
            self.log.exception("FAQ schema generation failed")
            return {}
        return find_json_object(response_text) or {}

    async def process_content(
        self, content: str, task: str, context: Optional[str] = None
    ) -> str:
        if task not in CONTENT_TASKS:
            raise ValueError(f"Unknown content task: {task}")
        context_block = f"## Context:\n{context}\n" if context else ""
        prompt = f"""# Content Processing Task: {task.upper()}

## Original Content:
{content}

{context_block}
## Task:
{CONTENT_TASKS[task]}

Return only the processed content without any additional commentary.
"""
        try:
            result = await self._complete(prompt, max_tokens=2000, temperature=0.4)
        except LLMError:
            self.log.exception("Content processing failed (task=%s)", task)
            return content
        return result or content


class ContextBuilder:
    """Retrieval side of opportunity generation: embeddings in, ranked context out."""

    def __init__(
        self,
        store: GrowthStore,
        embedder: Embedder,
        *,
        min_chars: int = 100,
        log: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.embedder = embedder
        self.min_chars = min_chars
        self.log = log or logger

    async def embed_crawl(self, crawl_id: int, content: str) -> int:
        if len(content) <= self.min_chars:
            return 0
        vectors = await self.embedder.embed([content])
        return self.store.store_embeddings(
            crawl_id, zip([content], vectors), model=self.embedder.model
        )

    async def find_similar_content(
        self, query: str, site_id: int, limit: int = 5
    ) -> List[SimilarContent]:
        try:
            vectors = await self.embedder.embed([query])
        except LLMError:
            self.log.exception("Failed to embed query for site %s", site_id)
            return []
        return self.store.find_similar_content(vectors[0], site_id, limit)

    async def build_context(
        self, query: str, site_id: int, *, include_competitors: bool = True, limit: int = 5
    ) -> RAGContext:
        query_vector: Optional[List[float]] = None
        try:
            query_vector = (await self.embedder.embed([query]))[0]
        except LLMError:
            self.log.exception("Failed to embed query for site %s", site_id)

        similar: List[SimilarContent] = []
        if query_vector is not None:
            similar = self.store.find_similar_content(query_vector, site_id, limit)

        competitors: List[CompetitorContent] = []
        if include_competitors:
            for competitor, crawl in self.store.get_competitors_with_latest_crawl(site_id):
                if crawl is None or not crawl.content:
                    continue
                relevance = 0.0
                if query_vector is not None:
                    scores = [
                        s
                        for s in (cosine_similarity(query_vector, e.vector) for e in crawl.embeddings)
                        if s is not None
                    ]
                    relevance = max(scores) if scores else 0.0
                competitors.append(
                    CompetitorContent(url=crawl.url, content=crawl.content, relevance=relevance)
                )
            competitors.sort(key=lambda c: c.relevance, reverse=True)

        return RAGContext(query=query, similar_content=similar, competitor_data=competitors)
