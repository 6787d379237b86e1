"""Session state and its single writer.

SessionState is only ever mutated through StateController.apply(), which
consumes the declarative intents returned by tool handlers. Handlers never
see the live state, only a read-only snapshot.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Literal

import structlog
from pydantic import TypeAdapter, ValidationError

from src.tools.base import ToolMode
from src.tools.response import (
    EndSessionIntent,
    Intent,
    SetPendingMessageIntent,
    SuppressAudioIntent,
    SuppressTranscriptIntent,
)

logger = structlog.get_logger()

_intent_adapter: TypeAdapter[Intent] = TypeAdapter(Intent)


@dataclass(frozen=True)
class PendingEnd:
    after: Literal["immediate", "current_turn"]


@dataclass(frozen=True)
class SessionState:
    mode: ToolMode = ToolMode.text
    is_active: bool = True
    pending_end: PendingEnd | None = None
    suppress_audio: bool = False
    suppress_transcript: bool = False
    pending_message: str | None = None

    def flags(self) -> dict[str, Any]:
        """State that affects what the model should see; part of the context fingerprint."""
        return {
            "mode": str(self.mode),
            "suppress_transcript": self.suppress_transcript,
            "ending": self.pending_end is not None,
        }


class StateController:
    """Owns one session's state. Applies intents synchronously, in order."""

    def __init__(self, initial: SessionState | None = None, *, session_id: str = "") -> None:
        self._state = initial or SessionState()
        self._session_id = session_id

    @property
    def state(self) -> SessionState:
        return self._state

    def snapshot(self) -> SessionState:
        """Immutable view handed to handlers via ExecutionContext."""
        return self._state

    def set_mode(self, mode: ToolMode) -> None:
        self._state = replace(self._state, mode=mode)

    def deactivate(self) -> None:
        self._state = replace(self._state, is_active=False)

    def take_pending_message(self) -> str | None:
        """Pop the queued message for the next turn, if any."""
        message = self._state.pending_message
        if message is not None:
            self._state = replace(self._state, pending_message=None)
        return message

    def apply_all(self, intents: list[Any]) -> None:
        for intent in intents:
            self.apply(intent)

    def apply(self, intent: Any) -> None:
        """Apply one intent. Malformed intents are logged and skipped, never raised."""
        if isinstance(intent, dict):
            try:
                intent = _intent_adapter.validate_python(intent)
            except ValidationError:
                logger.warning(
                    "intent_unknown",
                    session_id=self._session_id,
                    intent_type=intent.get("type"),
                )
                return

        if isinstance(intent, EndSessionIntent):
            after = intent.after
            if after is None:
                logger.warning(
                    "intent_missing_field",
                    session_id=self._session_id,
                    intent_type=intent.type,
                    field="after",
                    default="immediate",
                )
                after = "immediate"
            self._state = replace(self._state, pending_end=PendingEnd(after=after))
        elif isinstance(intent, SuppressAudioIntent):
            value = self._bool_or_default(intent.type, intent.value)
            self._state = replace(self._state, suppress_audio=value)
        elif isinstance(intent, SuppressTranscriptIntent):
            value = self._bool_or_default(intent.type, intent.value)
            self._state = replace(self._state, suppress_transcript=value)
        elif isinstance(intent, SetPendingMessageIntent):
            if not intent.message:
                logger.warning(
                    "intent_missing_field",
                    session_id=self._session_id,
                    intent_type=intent.type,
                    field="message",
                    default="ignored",
                )
                return
            self._state = replace(self._state, pending_message=intent.message)
        else:
            logger.warning(
                "intent_unknown",
                session_id=self._session_id,
                intent_type=type(intent).__name__,
            )

    def _bool_or_default(self, intent_type: str, value: bool | None) -> bool:
        if value is None:
            logger.warning(
                "intent_missing_field",
                session_id=self._session_id,
                intent_type=intent_type,
                field="value",
                default=True,
            )
            return True
        return value
