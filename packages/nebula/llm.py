from __future__ import annotations

import logging
from typing import List, Optional, Protocol

import anthropic
import openai
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI


logger = logging.getLogger(__name__)


class LLMError(Exception):
    """Raised when a language-model provider call fails."""


class LLMClient(Protocol):
    model: str

    async def complete(self, prompt: str, *, max_tokens: int, temperature: float) -> str: ...


class Embedder(Protocol):
    model: str

    async def embed(self, texts: List[str]) -> List[List[float]]: ...


class OpenAIChatClient:
    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        client: Optional[AsyncOpenAI] = None,
        max_retries: int = 2,
        log: Optional[logging.Logger] = None,
    ):
        self.model = model
        self.client = client or AsyncOpenAI(api_key=api_key, max_retries=max_retries)
        self.log = log or logger

    async def complete(self, prompt: str, *, max_tokens: int, temperature: float) -> str:
        self.log.info("OpenAI request: model=%s prompt_chars=%s", self.model, len(prompt))
        try:
            response = await self.client.responses.create(
                model=self.model,
                input=prompt,
                temperature=temperature,
                max_output_tokens=max_tokens,
            )
        except openai.OpenAIError as exc:
            raise LLMError(f"OpenAI request failed: {exc}") from exc

        usage = getattr(response, "usage", None)
        self.log.info(
            "OpenAI response: model=%s tokens=%s",
            self.model,
            getattr(usage, "total_tokens", 0) if usage else 0,
        )
        return response.output_text or ""


class AnthropicChatClient:
    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        client: Optional[AsyncAnthropic] = None,
        max_retries: int = 2,
        log: Optional[logging.Logger] = None,
    ):
        self.model = model
        self.client = client or AsyncAnthropic(api_key=api_key, max_retries=max_retries)
        self.log = log or logger

    async def complete(self, prompt: str, *, max_tokens: int, temperature: float) -> str:
        self.log.info("Anthropic request: model=%s prompt_chars=%s", self.model, len(prompt))
        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.AnthropicError as exc:
            raise LLMError(f"Anthropic request failed: {exc}") from exc

        self.log.info(
            "Anthropic response: model=%s input_tokens=%s",
            self.model,
            response.usage.input_tokens if response.usage else 0,
        )
        return "".join(block.text for block in response.content if block.type == "text")


class OpenAIEmbedder:
    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        client: Optional[AsyncOpenAI] = None,
        max_retries: int = 2,
    ):
        self.model = model
        self.client = client or AsyncOpenAI(api_key=api_key, max_retries=max_retries)

    async def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        try:
            response = await self.client.embeddings.create(
                model=self.model, input=texts, encoding_format="float"
            )
        except openai.OpenAIError as exc:
            raise LLMError(f"OpenAI embeddings request failed: {exc}") from exc
        return [item.embedding for item in sorted(response.data, key=lambda d: d.index)]
