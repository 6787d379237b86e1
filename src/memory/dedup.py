from __future__ import annotations

from dataclasses import dataclass

import structlog

from src.config.settings import ToolMemorySettings
from src.memory.tool_memory import ToolCallRecord, ToolMemoryStore
from src.session.handle import SessionHandle
from src.tools.artifact import ToolDescriptor
from src.tools.base import ToolCategory
from src.tools.response import ToolResponse

logger = structlog.get_logger()


@dataclass(frozen=True)
class DedupHit:
    response: ToolResponse
    guidance: str
    original_call_id: str
    original_turn: int


class ToolMemoryDedup:
    """Pre-execution duplicate check for retrieval tools.

    Retrieval calls are the expensive ones and are safe to answer from
    a prior result; actions and utilities always run.
    """

    def __init__(self, store: ToolMemoryStore, settings: ToolMemorySettings) -> None:
        self._store = store
        self._settings = settings

    def check(
        self, session: SessionHandle, descriptor: ToolDescriptor, args: dict
    ) -> DedupHit | None:
        if not self._settings.dedup_enabled:
            return None
        if descriptor.category != ToolCategory.retrieval:
            return None

        record = self._store.find_similar(
            session, descriptor.tool_id, args, self._settings.similarity_threshold
        )
        if record is None:
            return None

        logger.info(
            "tool_dedup_hit",
            session_id=session.id,
            tool_id=descriptor.tool_id,
            original_call_id=record.call_id,
        )
        return DedupHit(
            response=cached_response(record),
            guidance=guidance_message(record),
            original_call_id=record.call_id,
            original_turn=record.turn,
        )


def cached_response(record: ToolCallRecord) -> ToolResponse:
    """Prior envelope marked cached; a summary stand-in once the full response aged out."""
    if record.full_response is not None:
        meta = record.full_response.meta.model_copy(update={"cached": True, "duration_ms": 0.0})
        return record.full_response.model_copy(update={"meta": meta, "intents": []})
    return ToolResponse.success(
        {
            "cached": True,
            "summary": record.summary or "Result from previous call (full response not available)",
            "original_call_id": record.call_id,
            "message": "This is a cached result. Use query_tool_memory to get full details if needed.",
        },
        tool_id=record.tool_id,
        cached=True,
    )


def guidance_message(record: ToolCallRecord) -> str:
    result = record.summary or "similar query"
    return f"Reused result from previous {record.tool_id} call from turn {record.turn}: {result}"
