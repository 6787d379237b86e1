from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from src.infra.errors import ErrorKind, ToolError
from src.tools.base import ToolHandler, ToolMode
from src.tools.response import EndSessionIntent, ToolResponse

if TYPE_CHECKING:
    from src.tools.context import ExecutionContext

logger = structlog.get_logger()


class EndSessionTool(ToolHandler):
    """Ends a voice session. With a final message, the session ends after
    the current turn so the message can be spoken first."""

    @property
    def tool_id(self) -> str:
        return "end_session"

    async def execute(self, arguments: dict, context: ExecutionContext) -> ToolResponse:
        if context.mode != ToolMode.voice:
            raise ToolError(
                ErrorKind.MODE_RESTRICTED, "end_session is only available in voice mode"
            )

        reason = arguments["reason"]
        final_message = arguments.get("final_message")
        after = "current_turn" if final_message else "immediate"
        logger.info(
            "end_session_requested",
            session_id=context.session.id,
            reason=reason,
            after=after,
        )
        return ToolResponse.success(
            {
                "reason": reason,
                "session_ended": True,
                "final_message": final_message,
            },
            intents=[EndSessionIntent(after=after)],
        )
