"""Session-scoped ledger of tool executions with a recency window.

Window policy, applied after every mutation and keyed by recency rank
(0 = newest):
- ranks [0, recent_count): full response retained
- ranks [recent_count, recent_count + summary_count): full response dropped
  once a summary exists
- beyond that, or older than max_age_s: record deleted

Records only ever age forward (full → summary → gone).
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog

from src.config.settings import ToolMemorySettings
from src.infra.errors import ErrorKind
from src.memory.similarity import args_similarity
from src.session.handle import SessionHandle
from src.tools.response import ToolResponse

logger = structlog.get_logger()


class TimeRange(StrEnum):
    all = "all"
    last_turn = "last_turn"
    last_3_turns = "last_3_turns"


@dataclass
class ToolCallRecord:
    call_id: str
    tool_id: str
    arguments: dict[str, Any]
    turn: int
    ok: bool
    full_response: ToolResponse | None = None
    summary: str | None = None
    error_kind: ErrorKind | None = None
    duration_ms: float = 0.0
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def from_response(
        cls,
        *,
        call_id: str,
        tool_id: str,
        arguments: dict[str, Any],
        turn: int,
        response: ToolResponse,
        timestamp: float | None = None,
    ) -> ToolCallRecord:
        return cls(
            call_id=call_id,
            tool_id=tool_id,
            arguments=dict(arguments),
            turn=turn,
            ok=response.ok,
            full_response=response,
            error_kind=response.error_kind,
            duration_ms=response.meta.duration_ms,
            timestamp=time.time() if timestamp is None else timestamp,
        )


@dataclass(frozen=True)
class ToolCallSummary:
    """Query result row. full_response_available tells the agent whether
    get_full_response will succeed."""

    call_id: str
    tool_id: str
    arguments: dict[str, Any]
    turn: int
    ok: bool
    timestamp: float
    summary: str | None
    error_kind: str | None
    full_response_available: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "call_id": self.call_id,
            "tool_id": self.tool_id,
            "arguments": self.arguments,
            "turn": self.turn,
            "ok": self.ok,
            "timestamp": self.timestamp,
            "summary": self.summary,
            "error_kind": self.error_kind,
            "full_response_available": self.full_response_available,
        }


@dataclass(frozen=True)
class PendingSummary:
    session: SessionHandle
    call_id: str
    tool_id: str
    arguments: dict[str, Any]
    response: ToolResponse
    ok: bool


@dataclass
class _SessionLedger:
    started_at: float
    calls: list[ToolCallRecord] = field(default_factory=list)  # newest first


class ToolMemoryStore:
    def __init__(
        self,
        settings: ToolMemorySettings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._clock = clock
        self._sessions: dict[SessionHandle, _SessionLedger] = {}

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record(self, session: SessionHandle, record: ToolCallRecord) -> None:
        if not record.call_id or not record.tool_id:
            logger.error("tool_memory_invalid_record", session_id=session.id)
            return
        ledger = self._sessions.setdefault(session, _SessionLedger(started_at=self._clock()))
        ledger.calls.insert(0, record)
        logger.debug(
            "tool_memory_recorded",
            session_id=session.id,
            tool_id=record.tool_id,
            call_id=record.call_id,
        )
        self._apply_window(ledger)

    def update_summary(self, session: SessionHandle, call_id: str, summary: str) -> bool:
        ledger = self._sessions.get(session)
        record = self._find(ledger, call_id)
        if ledger is None or record is None:
            return False
        record.summary = summary
        self._apply_window(ledger)
        return True

    def clear_session(self, session: SessionHandle) -> None:
        ledger = self._sessions.pop(session, None)
        if ledger is not None:
            logger.info("tool_memory_cleared", session_id=session.id, calls=len(ledger.calls))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def query(
        self,
        session: SessionHandle,
        *,
        tool_id: str | None = None,
        time_range: TimeRange | str = TimeRange.all,
        include_errors: bool = False,
    ) -> list[ToolCallSummary]:
        """Past calls, newest first."""
        ledger = self._sessions.get(session)
        if ledger is None:
            return []

        time_range = TimeRange(time_range)
        current_turn = self.current_turn(session)
        results = []
        for record in ledger.calls:
            if tool_id and record.tool_id != tool_id:
                continue
            if not include_errors and not record.ok:
                continue
            if time_range is TimeRange.last_turn and record.turn != current_turn:
                continue
            if time_range is TimeRange.last_3_turns and record.turn < current_turn - 2:
                continue
            results.append(_to_summary(record))
        return results

    def get_full_response(self, session: SessionHandle, call_id: str) -> ToolResponse | None:
        """None when the call is unknown or has aged to summary-only."""
        record = self._find(self._sessions.get(session), call_id)
        if record is None:
            return None
        return record.full_response

    def get_record(self, session: SessionHandle, call_id: str) -> ToolCallRecord | None:
        return self._find(self._sessions.get(session), call_id)

    def find_similar(
        self,
        session: SessionHandle,
        tool_id: str,
        args: dict[str, Any],
        threshold: float | None = None,
    ) -> ToolCallRecord | None:
        """Most recent successful call of the same tool scoring at/above threshold."""
        ledger = self._sessions.get(session)
        if ledger is None:
            return None
        threshold = self._settings.similarity_threshold if threshold is None else threshold
        for record in ledger.calls:
            if record.tool_id != tool_id or not record.ok:
                continue
            score = args_similarity(record.arguments, args)
            if score >= threshold:
                logger.debug(
                    "tool_memory_similar_found",
                    session_id=session.id,
                    call_id=record.call_id,
                    similarity=round(score, 2),
                )
                return record
        return None

    def calls_needing_summary(self, session: SessionHandle) -> list[PendingSummary]:
        """Calls past the full-response window that still lack a summary."""
        ledger = self._sessions.get(session)
        if ledger is None:
            return []
        return [
            PendingSummary(
                session=session,
                call_id=r.call_id,
                tool_id=r.tool_id,
                arguments=r.arguments,
                response=r.full_response,
                ok=r.ok,
            )
            for r in ledger.calls[self._settings.recent_count:]
            if r.summary is None and r.full_response is not None
        ]

    def current_turn(self, session: SessionHandle) -> int:
        ledger = self._sessions.get(session)
        if ledger is None or not ledger.calls:
            return 1
        return max(r.turn for r in ledger.calls)

    def stats(self) -> dict[str, Any]:
        return {
            "total_sessions": len(self._sessions),
            "sessions": [
                {
                    "session_id": session.id,
                    "started_at": ledger.started_at,
                    "total_calls": len(ledger.calls),
                    "calls_with_full_response": sum(
                        1 for c in ledger.calls if c.full_response is not None
                    ),
                    "calls_with_summary": sum(1 for c in ledger.calls if c.summary),
                }
                for session, ledger in self._sessions.items()
            ],
        }

    # ------------------------------------------------------------------
    # Window policy
    # ------------------------------------------------------------------

    def _apply_window(self, ledger: _SessionLedger) -> None:
        # Stable sort, so equal timestamps keep newest-first insertion order
        ledger.calls.sort(key=lambda r: r.timestamp, reverse=True)
        now = self._clock()
        recent = self._settings.recent_count
        limit = recent + self._settings.summary_count

        kept = []
        for rank, record in enumerate(ledger.calls):
            if rank >= limit or now - record.timestamp > self._settings.max_age_s:
                continue
            if rank >= recent and record.summary is not None:
                record.full_response = None
            kept.append(record)
        ledger.calls = kept

    @staticmethod
    def _find(ledger: _SessionLedger | None, call_id: str) -> ToolCallRecord | None:
        if ledger is None:
            return None
        for record in ledger.calls:
            if record.call_id == call_id:
                return record
        return None


def _to_summary(record: ToolCallRecord) -> ToolCallSummary:
    return ToolCallSummary(
        call_id=record.call_id,
        tool_id=record.tool_id,
        arguments=record.arguments,
        turn=record.turn,
        ok=record.ok,
        timestamp=record.timestamp,
        summary=record.summary,
        error_kind=str(record.error_kind) if record.error_kind else None,
        full_response_available=record.full_response is not None,
    )
