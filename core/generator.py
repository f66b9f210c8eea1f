"""
AI Generator — LLM-backed text generation for follow-up content.

Supports both Anthropic and OpenAI providers. Every call carries an
explicit timeout; on expiry the in-flight request is cancelled and
GenerationTimeoutError is raised.
"""
from __future__ import annotations

import abc
import asyncio
import json
import re
import structlog
from typing import Any, Optional

from config.settings import LLMConfig
from core.errors import ExternalServiceError, GenerationTimeoutError

logger = structlog.get_logger()


class AIGenerator(abc.ABC):
    """Produces text for a prompt within a time budget."""

    @abc.abstractmethod
    async def generate(self, prompt: str, timeout: float, system: str = "") -> str:
        """Raises GenerationTimeoutError or ExternalServiceError."""
        ...

    async def close(self) -> None:
        pass


def extract_json(text: str) -> Optional[dict[str, Any]]:
    """Pull the first JSON object out of an LLM reply (tolerates ``` fences and prose)."""
    if not text:
        return None
    cleaned = re.sub(r"^```(?:json)?\s*|\s*```$", "", text.strip())
    try:
        data = json.loads(cleaned)
        return data if isinstance(data, dict) else None
    except json.JSONDecodeError:
        pass
    match = re.search(r"\{.*\}", cleaned, re.DOTALL)
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


class LLMGenerator(AIGenerator):
    """
    Generates text using Claude or OpenAI.
    The SDK client is created lazily on first use.
    """

    def __init__(self, config: LLMConfig):
        self.config = config
        self._client = None

    @property
    def is_openai(self) -> bool:
        return self.config.provider == "openai"

    async def _get_client(self):
        if self._client is None:
            try:
                if self.is_openai:
                    from openai import AsyncOpenAI
                    self._client = AsyncOpenAI(api_key=self.config.api_key)
                else:
                    import anthropic
                    self._client = anthropic.AsyncAnthropic(api_key=self.config.api_key)
                logger.info("llm_client_initialized", provider=self.config.provider,
                            model=self.config.model)
            except Exception as e:
                logger.error("llm_client_init_failed", provider=self.config.provider, error=str(e))
                self._client = None
        return self._client

    async def _call_llm(self, system: str, messages: list[dict[str, str]]) -> str:
        """Unified LLM call that handles both Anthropic and OpenAI APIs."""
        client = await self._get_client()
        if not client:
            raise ExternalServiceError("LLM client unavailable", service=self.config.provider, retryable=False)

        if self.is_openai:
            oai_messages = ([{"role": "system", "content": system}] if system else []) + messages
            response = await client.chat.completions.create(
                model=self.config.model,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                messages=oai_messages,
            )
            return response.choices[0].message.content or ""

        kwargs: dict[str, Any] = {}
        if system:
            kwargs["system"] = system
        response = await client.messages.create(
            model=self.config.model,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
            messages=messages,
            **kwargs,
        )
        return response.content[0].text

    async def generate(self, prompt: str, timeout: float, system: str = "") -> str:
        try:
            return await asyncio.wait_for(
                self._call_llm(system, [{"role": "user", "content": prompt}]),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("llm_generation_timeout", provider=self.config.provider, timeout=timeout)
            raise GenerationTimeoutError(timeout)
        except ExternalServiceError:
            raise
        except Exception as e:
            logger.error("llm_generation_failed", provider=self.config.provider, error=str(e))
            raise ExternalServiceError(str(e), service=self.config.provider) from e

    async def close(self) -> None:
        if self._client is not None and hasattr(self._client, "close"):
            await self._client.close()
