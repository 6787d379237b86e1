from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from src.config.settings import RetrySettings
from src.infra.errors import PRE_EXECUTION_KINDS
from src.tools.artifact import ToolDescriptor
from src.tools.base import ToolMode
from src.tools.response import ToolResponse

logger = structlog.get_logger()


def backoff_delay_ms(attempt: int, settings: RetrySettings) -> float:
    """Delay before retry number attempt (0-indexed), capped at max_delay_ms."""
    delay = settings.initial_delay_ms * (settings.backoff_multiplier**attempt)
    return min(delay, settings.max_delay_ms)


def should_retry(response: ToolResponse, descriptor: ToolDescriptor | None) -> bool:
    error = response.error
    if response.ok or error is None or not error.retryable:
        return False
    if error.kind in PRE_EXECUTION_KINDS:
        # Refused before the handler ran
        return False
    if error.partial_side_effects:
        return False
    if error.idempotency_required and not (descriptor and descriptor.idempotent):
        return False
    return True


async def retry_with_backoff(
    execute: Callable[[], Awaitable[ToolResponse]],
    *,
    mode: ToolMode,
    descriptor: ToolDescriptor | None,
    settings: RetrySettings,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> ToolResponse:
    """Run execute, retrying retryable failures with exponential backoff.

    Voice mode never retries: the latency budget has no room for it.
    Failures that report partial side effects, or that need idempotency the
    tool does not declare, are returned as-is.
    """
    tool_id = descriptor.tool_id if descriptor else "unknown"
    if mode == ToolMode.voice:
        return await execute()

    attempt = 0
    while True:
        response = await execute()
        if attempt > 0:
            response = response.model_copy(
                update={"meta": response.meta.model_copy(update={"attempts": attempt + 1})}
            )
        if not should_retry(response, descriptor):
            if attempt > 0:
                logger.info(
                    "tool_retry_finished",
                    tool_id=tool_id,
                    ok=response.ok,
                    attempts=attempt + 1,
                )
            return response
        if attempt >= settings.max_retries:
            logger.warning(
                "tool_retries_exhausted",
                tool_id=tool_id,
                kind=str(response.error_kind),
                attempts=attempt + 1,
            )
            return response

        delay_ms = backoff_delay_ms(attempt, settings)
        logger.info(
            "tool_retry",
            tool_id=tool_id,
            attempt=attempt + 1,
            max_attempts=settings.max_retries + 1,
            kind=str(response.error_kind),
            delay_ms=delay_ms,
        )
        await sleep(delay_ms / 1000)
        attempt += 1
