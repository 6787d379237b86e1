"""Chat-completion client for summary generation.

Both summarizers (tool-call records and conversation history) go through
ModelClient.chat. Failures surface as LLMError so callers can fall back to
rule-based summaries; nothing here ever reaches a tool envelope.
"""

from __future__ import annotations

import asyncio
import random
from abc import ABC, abstractmethod
from collections.abc import Callable, Coroutine
from typing import TYPE_CHECKING, Any, Self, TypeVar

import structlog
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    RateLimitError,
)

from src.infra.errors import LLMError

if TYPE_CHECKING:
    from src.config.settings import OpenAISettings

logger = structlog.get_logger()

T = TypeVar("T")


def _error_code(exc: Exception) -> str:
    if isinstance(exc, RateLimitError):
        return "LLM_RATE_LIMIT"
    if isinstance(exc, (APIConnectionError, APITimeoutError)):
        return "LLM_UNAVAILABLE"
    return "LLM_ERROR"


class ModelClient(ABC):
    @abstractmethod
    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """Send messages and return the response text. Raises LLMError."""
        ...


class OpenAICompatModelClient(ModelClient):
    """ModelClient over any OpenAI-compatible endpoint (OpenAI, Gemini, Ollama).

    The SDK's own retries are disabled; connection errors, timeouts and rate
    limits are retried here with jittered exponential backoff so every
    attempt is logged. Other API errors fail immediately.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str | None = None,
        *,
        max_retries: int = 2,
        base_delay: float = 0.5,
        timeout: float = 20.0,
    ) -> None:
        self._client = AsyncOpenAI(
            api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0
        )
        self._max_retries = max_retries
        self._base_delay = base_delay

    @classmethod
    def from_settings(cls, settings: OpenAISettings) -> Self:
        return cls(
            api_key=settings.api_key,
            base_url=settings.base_url,
            max_retries=settings.max_retries,
            base_delay=settings.retry_base_delay_s,
            timeout=settings.timeout_s,
        )

    async def _with_retries(
        self, call: Callable[[], Coroutine[Any, Any, T]], *, model: str
    ) -> T:
        attempts = self._max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await call()
            except (APIConnectionError, APITimeoutError, RateLimitError) as e:
                if attempt == attempts:
                    raise LLMError(
                        f"LLM call failed after {attempts} attempts: {e}",
                        code=_error_code(e),
                    ) from e
                delay = self._base_delay * (2 ** (attempt - 1)) + random.uniform(0, 0.25)
                logger.warning(
                    "llm_retry",
                    model=model,
                    attempt=attempt,
                    delay=round(delay, 2),
                    code=_error_code(e),
                    error=str(e),
                )
                await asyncio.sleep(delay)
            except APIStatusError as e:
                raise LLMError(
                    f"LLM API error: {e.status_code} {e.message}", code=_error_code(e)
                ) from e
        raise LLMError("Retry loop exhausted")  # pragma: no cover

    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        sampling: dict[str, Any] = {}
        if temperature is not None:
            sampling["temperature"] = temperature
        if max_tokens is not None:
            sampling["max_tokens"] = max_tokens

        response = await self._with_retries(
            lambda: self._client.chat.completions.create(
                model=model, messages=messages, **sampling
            ),
            model=model,
        )
        if not response.choices:
            raise LLMError(f"Empty choices from provider ({model})", code="LLM_EMPTY")
        content = response.choices[0].message.content or ""
        logger.debug(
            "llm_chat_complete", model=model, messages=len(messages), chars=len(content)
        )
        return content
