from __future__ import annotations

import time
from typing import TYPE_CHECKING

import structlog

from src.infra.errors import ErrorKind, ToolError
from src.tools.base import ToolHandler, ToolMode
from src.tools.response import (
    EndSessionIntent,
    SetPendingMessageIntent,
    SuppressAudioIntent,
    SuppressTranscriptIntent,
    ToolResponse,
)

if TYPE_CHECKING:
    from src.tools.context import ExecutionContext

logger = structlog.get_logger()


class IgnoreUserTool(ToolHandler):
    """Times out an abusive user.

    Voice: mute further audio, hide the transcript, end after this turn.
    Text: hide the transcript and queue the farewell for the next turn.
    Delivery of the timeout itself is the transport's job.
    """

    @property
    def tool_id(self) -> str:
        return "ignore_user"

    async def execute(self, arguments: dict, context: ExecutionContext) -> ToolResponse:
        if not context.state.is_active:
            raise ToolError(
                ErrorKind.SESSION_INACTIVE, "Cannot ignore user: session is not active"
            )

        duration_s = arguments["duration_seconds"]
        farewell = arguments["farewell_message"]
        timeout_until = time.time() + duration_s

        intents: list = [SuppressTranscriptIntent(value=True)]
        if context.mode == ToolMode.voice:
            intents.append(SuppressAudioIntent(value=True))
            intents.append(EndSessionIntent(after="current_turn"))
        else:
            intents.append(SetPendingMessageIntent(message=farewell))

        logger.info(
            "user_ignored",
            session_id=context.session.id,
            duration_s=duration_s,
            mode=str(context.mode),
        )
        return ToolResponse.success(
            {
                "timeout_until": timeout_until,
                "duration_seconds": duration_s,
                "farewell_message": farewell,
            },
            intents=intents,
        )
