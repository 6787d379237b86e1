from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from src.gateway.policy import TurnCounters
from src.infra.errors import SessionError
from src.infra.logging import bind_session_context, clear_session_context
from src.session.handle import SessionHandle
from src.session.state import SessionState, StateController
from src.tools.base import ToolMode

if TYPE_CHECKING:
    from src.agent.context_window import ConversationContextManager
    from src.agent.loop_detector import LoopDetector
    from src.gateway.policy import PolicyEnforcer
    from src.memory.tool_memory import ToolMemoryStore
    from src.tools.registry import CatalogSnapshot, ToolCatalog

logger = structlog.get_logger()


@dataclass
class SessionRuntime:
    """Everything one live session owns. The controller is its only state writer."""

    handle: SessionHandle
    controller: StateController
    counters: TurnCounters
    capabilities: frozenset[str] = frozenset()
    catalog: CatalogSnapshot | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def turn(self) -> int:
        return self.counters.turn

    @property
    def state(self) -> SessionState:
        return self.controller.state

    @property
    def mode(self) -> ToolMode:
        return self.controller.state.mode

    @property
    def is_active(self) -> bool:
        return self.controller.state.is_active


class SessionManager:
    """Session lifecycle. Ending a session clears its data from every store."""

    def __init__(
        self,
        *,
        policy: PolicyEnforcer,
        loop_detector: LoopDetector,
        tool_memory: ToolMemoryStore,
        context: ConversationContextManager,
        catalog: ToolCatalog | None = None,
    ) -> None:
        self._policy = policy
        self._loop_detector = loop_detector
        self._tool_memory = tool_memory
        self._context = context
        self._catalog = catalog
        self._sessions: dict[SessionHandle, SessionRuntime] = {}

    def start(
        self,
        mode: ToolMode = ToolMode.text,
        *,
        capabilities: frozenset[str] | set[str] = frozenset(),
        session_id: str | None = None,
    ) -> SessionRuntime:
        handle = SessionHandle(session_id) if session_id else SessionHandle.new()
        if handle in self._sessions:
            raise SessionError(f"Session already active: {handle}", code="SESSION_EXISTS")
        snapshot = self._catalog.snapshot() if self._catalog and self._catalog.locked else None
        runtime = SessionRuntime(
            handle=handle,
            controller=StateController(SessionState(mode=mode), session_id=handle.id),
            counters=TurnCounters(turn=1),
            capabilities=frozenset(capabilities),
            catalog=snapshot,
        )
        self._sessions[handle] = runtime
        logger.info(
            "session_started",
            session_id=handle.id,
            mode=str(mode),
            registry_version=snapshot.version if snapshot else None,
        )
        return runtime

    def get(self, session: SessionHandle | str) -> SessionRuntime | None:
        """Live session or None once ended (or never started)."""
        if isinstance(session, str):
            session = SessionHandle(session)
        return self._sessions.get(session)

    def require(self, session: SessionHandle | str) -> SessionRuntime:
        runtime = self.get(session)
        if runtime is None or not runtime.is_active:
            raise SessionError(f"Session not active: {session}", code="SESSION_INACTIVE")
        return runtime

    def set_mode(self, session: SessionHandle | str, mode: ToolMode) -> None:
        runtime = self.require(session)
        runtime.controller.set_mode(mode)
        logger.info("session_mode_changed", session_id=runtime.handle.id, mode=str(mode))

    def begin_turn(self, session: SessionHandle | str) -> int:
        """Advance the turn: reset quota counters, prune loop history.

        A session that asked to end after its current turn ends here.
        """
        runtime = self.require(session)
        pending = runtime.state.pending_end
        if pending is not None and pending.after == "current_turn":
            self.end(runtime.handle)
            raise SessionError(
                f"Session ended after turn {runtime.turn}: {runtime.handle}",
                code="SESSION_INACTIVE",
            )
        turn = runtime.turn + 1
        runtime.counters.reset(turn)
        self._loop_detector.begin_turn(runtime.handle, turn)
        bind_session_context(runtime.handle.id, turn=turn)
        logger.debug("turn_started", session_id=runtime.handle.id, turn=turn)
        return turn

    def apply_intents(self, runtime: SessionRuntime, intents: list[Any]) -> None:
        """Apply in order; an immediate END_SESSION ends the session right after."""
        runtime.controller.apply_all(intents)
        pending = runtime.state.pending_end
        if pending is not None and pending.after == "immediate" and runtime.is_active:
            self.end(runtime.handle)

    def end(self, session: SessionHandle | str) -> bool:
        """Mark inactive and drop per-session data everywhere. Idempotent."""
        if isinstance(session, str):
            session = SessionHandle(session)
        runtime = self._sessions.pop(session, None)
        if runtime is None:
            return False
        runtime.controller.deactivate()
        self._policy.clear_session(session)
        self._loop_detector.clear_session(session)
        self._tool_memory.clear_session(session)
        self._context.clear_session(session)
        logger.info("session_ended", session_id=session.id, turns=runtime.turn)
        clear_session_context()
        return True

    def active_sessions(self) -> list[SessionHandle]:
        return list(self._sessions)
