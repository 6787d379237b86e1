"""Detects an agent stuck repeating itself within a turn.

Two patterns:
1. Same tool + same arguments already called twice this turn (third is refused).
2. Same tool already returned an empty success twice this turn.

Detection is a soft refusal returned as data; it never raises and never
carries over to the next turn.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import structlog

from src.config.settings import LoopSettings
from src.infra.errors import ErrorKind
from src.infra.metrics import MetricsStore
from src.session.handle import SessionHandle
from src.tools.artifact import hash_arguments
from src.tools.response import ToolResponse

logger = structlog.get_logger()


class LoopKind(StrEnum):
    SAME_CALL_REPEATED = "SAME_CALL_REPEATED"
    EMPTY_RESULTS_REPEATED = "EMPTY_RESULTS_REPEATED"


@dataclass(frozen=True)
class LoopCheck:
    detected: bool
    kind: LoopKind | None = None
    count: int = 0
    message: str = ""

    def to_response(self, tool_id: str) -> ToolResponse:
        if not self.detected:
            raise ValueError("Only a detected loop renders to a response")
        return ToolResponse.failure(
            ErrorKind.LOOP_DETECTED,
            self.message,
            details={"loop_kind": str(self.kind), "count": self.count},
            tool_id=tool_id,
        )


CLEAR = LoopCheck(detected=False)


@dataclass(frozen=True)
class LoopObservation:
    tool_id: str
    args_hash: str
    is_empty: bool


def is_empty_result(response: ToolResponse) -> bool:
    """True for a structurally empty success. Errors are never empty."""
    if not response.ok:
        return False
    data = response.data
    if not data:
        return True
    if isinstance(data, str):
        return not data.strip()
    if isinstance(data, dict):
        results = data.get("results")
        if isinstance(results, list) and not results:
            return True
    return False


class LoopDetector:
    def __init__(self, settings: LoopSettings, *, metrics: MetricsStore | None = None) -> None:
        self._settings = settings
        self._metrics = metrics
        # session -> turn -> observations, oldest turn first
        self._history: dict[SessionHandle, OrderedDict[int, list[LoopObservation]]] = {}

    def check(
        self, session: SessionHandle, turn: int, tool_id: str, args: dict[str, Any]
    ) -> LoopCheck:
        """Pre-dispatch check. Read-only apart from turn pruning."""
        observations = self._turn(session, turn)
        args_hash = hash_arguments(args)

        same_calls = sum(
            1 for o in observations if o.tool_id == tool_id and o.args_hash == args_hash
        )
        if same_calls >= self._settings.same_call_threshold:
            count = same_calls + 1
            return self._detected(
                session,
                tool_id,
                LoopKind.SAME_CALL_REPEATED,
                count,
                f"Loop detected: {tool_id} called {count} times with identical "
                "arguments. Try a different approach or rephrase your query.",
            )

        empty_results = sum(1 for o in observations if o.tool_id == tool_id and o.is_empty)
        if empty_results >= self._settings.empty_result_threshold:
            return self._detected(
                session,
                tool_id,
                LoopKind.EMPTY_RESULTS_REPEATED,
                empty_results,
                f"{tool_id} returned empty results {empty_results} times. Data may "
                "not exist. Try different search terms or a different tool.",
            )

        return CLEAR

    def record(
        self,
        session: SessionHandle,
        turn: int,
        tool_id: str,
        args: dict[str, Any],
        response: ToolResponse,
    ) -> None:
        self._turn(session, turn).append(
            LoopObservation(
                tool_id=tool_id,
                args_hash=hash_arguments(args),
                is_empty=is_empty_result(response),
            )
        )

    def begin_turn(self, session: SessionHandle, turn: int) -> None:
        """Open a turn explicitly so old turns are pruned at the boundary."""
        self._turn(session, turn)

    def clear_session(self, session: SessionHandle) -> None:
        self._history.pop(session, None)

    def stats(self) -> dict[str, int]:
        return {
            "active_sessions": len(self._history),
            "turns_tracked": sum(len(turns) for turns in self._history.values()),
        }

    def _turn(self, session: SessionHandle, turn: int) -> list[LoopObservation]:
        turns = self._history.setdefault(session, OrderedDict())
        if turn not in turns:
            turns[turn] = []
            # Keep only the most recent turns
            while len(turns) > self._settings.max_turns_per_session:
                turns.popitem(last=False)
        return turns[turn]

    def _detected(
        self,
        session: SessionHandle,
        tool_id: str,
        kind: LoopKind,
        count: int,
        message: str,
    ) -> LoopCheck:
        logger.warning(
            "loop_detected",
            session_id=session.id,
            tool_id=tool_id,
            kind=str(kind),
            count=count,
        )
        if self._metrics is not None:
            self._metrics.record_loop_detected(kind)
        return LoopCheck(detected=True, kind=kind, count=count, message=message)
