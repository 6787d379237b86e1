"""Short summaries for tool calls that age out of the full-response window.

Uses a small model through ModelClient when one is configured, and a
rule-based fallback otherwise (or when the model call fails). Summaries
are best-effort: a failure here never affects dispatch.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import structlog

from src.infra.errors import LLMError
from src.memory.tool_memory import PendingSummary, ToolMemoryStore
from src.session.handle import SessionHandle
from src.tools.response import ToolResponse

if TYPE_CHECKING:
    from src.agent.model_client import ModelClient
    from src.config.settings import ToolMemorySettings

logger = structlog.get_logger()

_RESULT_LIST_KEYS = ("results", "items", "documents")

_PROMPT = """Summarize this tool execution in 1-2 sentences (max {max_tokens} tokens):

Tool: {tool_id}
Arguments: {arguments}
Response: {response}
Success: {ok}
{error}
Focus on what was requested, the key findings or outcome, and any errors or
empty results. Be concise and actionable."""


class ToolMemorySummarizer:
    def __init__(
        self,
        store: ToolMemoryStore,
        settings: ToolMemorySettings,
        model_client: ModelClient | None = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._model_client = model_client

    async def summarize_pending(self, session: SessionHandle) -> int:
        """Summarize every call that needs one. Returns how many were updated."""
        pending = self._store.calls_needing_summary(session)
        updated = 0
        for call in pending:
            summary = await self.summarize(call)
            if self._store.update_summary(session, call.call_id, summary):
                updated += 1
        if updated:
            logger.info("tool_memory_summarized", session_id=session.id, count=updated)
        return updated

    async def summarize(self, call: PendingSummary) -> str:
        if self._model_client is None:
            return fallback_summary(call.tool_id, call.arguments, call.response)
        try:
            text = await self._model_client.chat(
                [{"role": "user", "content": self._build_prompt(call)}],
                model=self._settings.summary_model,
                temperature=self._settings.summary_temperature,
                max_tokens=self._settings.summary_max_tokens,
            )
        except LLMError:
            logger.warning("tool_summary_failed", tool_id=call.tool_id, call_id=call.call_id)
            return fallback_summary(call.tool_id, call.arguments, call.response)

        text = text.strip()
        if not text:
            return fallback_summary(call.tool_id, call.arguments, call.response)
        return text

    def _build_prompt(self, call: PendingSummary) -> str:
        response = call.response
        data = json.dumps(response.data if response.data is not None else {}, default=str)
        limit = self._settings.summary_max_response_chars
        if len(data) > limit:
            data = data[:limit] + "... [truncated]"
        error = ""
        if response.error is not None:
            error = f"Error: {response.error.kind} - {response.error.message}\n"
        return _PROMPT.format(
            max_tokens=self._settings.summary_max_tokens,
            tool_id=call.tool_id,
            arguments=json.dumps(call.arguments, default=str),
            response=data,
            ok=call.ok,
            error=error,
        )


def summarize_args(arguments: dict[str, Any]) -> str:
    if not arguments:
        return "no arguments"
    for key in ("query", "id"):
        if arguments.get(key):
            return f"{key}='{arguments[key]}'"
    key, value = next(iter(arguments.items()))
    if isinstance(value, str):
        return f"{key}='{value[:50]}'"
    return f"{key}={json.dumps(value, default=str)}"


def count_results(data: Any) -> int | None:
    if isinstance(data, list):
        return len(data)
    if not isinstance(data, dict):
        return None
    for key in _RESULT_LIST_KEYS:
        if isinstance(data.get(key), list):
            return len(data[key])
    count = data.get("count")
    if isinstance(count, int) and not isinstance(count, bool):
        return count
    return None


def fallback_summary(tool_id: str, arguments: dict[str, Any], response: ToolResponse) -> str:
    """Rule-based summary used without a model."""
    args = summarize_args(arguments)
    if not response.ok:
        kind = response.error.kind if response.error else "unknown"
        message = response.error.message if response.error else "unknown error"
        return f"{tool_id} failed: {args}. Error: {kind} - {message}"

    data = response.data
    if not data:
        return f"{tool_id} executed: {args}. No data returned."

    count = count_results(data)
    if count is not None:
        return f"{tool_id} executed: {args}. Found {count} result(s)."
    return f"{tool_id} executed: {args}. Completed successfully."
