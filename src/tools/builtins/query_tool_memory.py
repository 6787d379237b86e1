from __future__ import annotations

from typing import TYPE_CHECKING

from src.infra.errors import ErrorKind, ToolError
from src.memory.summarizer import summarize_args
from src.memory.tool_memory import TimeRange, ToolMemoryStore
from src.tools.base import ToolHandler
from src.tools.response import ToolResponse

if TYPE_CHECKING:
    from src.tools.context import ExecutionContext


class QueryToolMemoryTool(ToolHandler):
    """Lets the agent look back at tool calls made earlier in the session.

    Two shapes: list past calls (with filters), or fetch one call's full
    response by call_id while it is still inside the full-response window.
    """

    def __init__(self, store: ToolMemoryStore) -> None:
        self._store = store

    @property
    def tool_id(self) -> str:
        return "query_tool_memory"

    async def execute(self, arguments: dict, context: ExecutionContext) -> ToolResponse:
        call_id = arguments.get("get_full_response_for")
        if call_id:
            return self._full_response(context, call_id)
        return self._list_calls(context, arguments)

    def _full_response(self, context: ExecutionContext, call_id: str) -> ToolResponse:
        response = self._store.get_full_response(context.session, call_id)
        if response is None:
            available = [c.call_id for c in self._store.query(context.session, include_errors=True)]
            raise ToolError(
                ErrorKind.NOT_FOUND,
                f"No full response available for call_id: {call_id}.",
                details={
                    "requested_call_id": call_id,
                    "available_call_ids": available,
                    "suggestion": "Only the most recent calls keep full responses; "
                    "older calls are available as summaries only.",
                },
            )
        return ToolResponse.success(
            {"call_id": call_id, "full_response": response.model_dump(mode="json")}
        )

    def _list_calls(self, context: ExecutionContext, arguments: dict) -> ToolResponse:
        tool_filter = arguments.get("filter_tool")
        time_range = TimeRange(arguments.get("filter_time_range", "all"))
        include_errors = arguments.get("include_errors", False)

        results = self._store.query(
            context.session,
            tool_id=tool_filter,
            time_range=time_range,
            include_errors=include_errors,
        )
        filters = {
            "tool_id": tool_filter,
            "time_range": str(time_range),
            "include_errors": include_errors,
        }
        if not results:
            message = (
                f"No {tool_filter} calls found in this conversation."
                if tool_filter
                else "No tool calls found matching your filters."
            )
            return ToolResponse.success(
                {"tool_calls": [], "count": 0, "filters_applied": filters, "message": message}
            )

        calls = [
            {
                "call_id": r.call_id,
                "tool": r.tool_id,
                "args_summary": summarize_args(r.arguments),
                "turn": r.turn,
                "timestamp": r.timestamp,
                "summary": r.summary or "Not yet summarized (recent call)",
                "success": r.ok,
                "full_response_available": r.full_response_available,
            }
            for r in results
        ]
        return ToolResponse.success(
            {
                "tool_calls": calls,
                "count": len(calls),
                "filters_applied": filters,
                "note": "Use get_full_response_for with a call_id to retrieve full response data.",
            }
        )
