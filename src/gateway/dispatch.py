"""Per-call pipeline: session → policy → loop check → dedup → catalog (+retry)
→ latency check → loop record → memory record → intents.

Every path returns one ToolResponse; refusals from any stage share the
envelope shape so the agent loop has a single branch on ok/error.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

import structlog

from src.agent.loop_detector import LoopDetector
from src.agent.retry import retry_with_backoff
from src.config.settings import RetrySettings
from src.gateway.policy import PolicyEnforcer
from src.infra.errors import ErrorKind
from src.infra.metrics import MetricsStore
from src.memory.dedup import ToolMemoryDedup
from src.memory.summarizer import ToolMemorySummarizer
from src.memory.tool_memory import ToolCallRecord, ToolMemoryStore
from src.session.handle import SessionHandle
from src.session.manager import SessionManager, SessionRuntime
from src.tools.artifact import ToolDescriptor
from src.tools.context import ExecutionContext
from src.tools.registry import ToolCatalog
from src.tools.response import ToolResponse

logger = structlog.get_logger()


@dataclass(frozen=True)
class DispatchRequest:
    session: SessionHandle | str
    tool_id: str
    arguments: dict[str, Any] | str | None = None  # dict, or raw JSON from the model
    confirmation_token: str | None = None
    capabilities: frozenset[str] | None = None  # None = the session's capabilities
    transport: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    call_id: str | None = None


def _safe_parse_args(raw: dict[str, Any] | str | None) -> tuple[dict, str | None]:
    """Parse tool call arguments. Returns (dict, error_message | None)."""
    if raw is None:
        return {}, None
    if isinstance(raw, dict):
        return raw, None
    if not raw.strip():
        return {}, None
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        return {}, f"JSON parse error: {e}"
    if not isinstance(parsed, dict):
        return {}, f"Expected dict, got {type(parsed).__name__}"
    return parsed, None


def _with_meta(response: ToolResponse, **updates: Any) -> ToolResponse:
    return response.model_copy(update={"meta": response.meta.model_copy(update=updates)})


class ToolOrchestrator:
    def __init__(
        self,
        *,
        catalog: ToolCatalog,
        sessions: SessionManager,
        policy: PolicyEnforcer,
        loop_detector: LoopDetector,
        tool_memory: ToolMemoryStore,
        retry_settings: RetrySettings,
        dedup: ToolMemoryDedup | None = None,
        summarizer: ToolMemorySummarizer | None = None,
        metrics: MetricsStore | None = None,
    ) -> None:
        self._catalog = catalog
        self._sessions = sessions
        self._policy = policy
        self._loop_detector = loop_detector
        self._tool_memory = tool_memory
        self._retry_settings = retry_settings
        self._dedup = dedup
        self._summarizer = summarizer
        self._metrics = metrics
        self._background: set[asyncio.Task] = set()

    async def dispatch(self, request: DispatchRequest) -> ToolResponse:
        call_id = request.call_id or f"call_{uuid.uuid4().hex[:12]}"
        tool_id = request.tool_id

        runtime = self._sessions.get(request.session)
        if runtime is None or not runtime.is_active:
            logger.info("dispatch_session_inactive", session_id=str(request.session), tool_id=tool_id)
            return ToolResponse.failure(
                ErrorKind.SESSION_INACTIVE,
                f"Session {request.session} is not active",
                tool_id=tool_id,
                call_id=call_id,
            )
        handle = runtime.handle

        args, parse_err = _safe_parse_args(request.arguments)
        if parse_err:
            logger.warning(
                "tool_call_args_parse_failed",
                session_id=handle.id,
                tool_name=tool_id,
                error=parse_err,
                raw_args=str(request.arguments)[:200],
            )
            return ToolResponse.failure(
                ErrorKind.VALIDATION,
                f"Invalid arguments: {parse_err}",
                tool_id=tool_id,
                call_id=call_id,
            )

        descriptor = self._catalog.describe(tool_id)
        if descriptor is None:
            logger.info("dispatch_tool_unknown", session_id=handle.id, tool_id=tool_id)
            return ToolResponse.failure(
                ErrorKind.NOT_FOUND,
                f"Tool {tool_id} not found",
                tool_id=tool_id,
                registry_version=self._catalog.version,
                call_id=call_id,
            )

        decision = self._policy.authorize(
            handle,
            descriptor,
            runtime.mode,
            runtime.counters,
            arguments=args,
            confirmation_token=request.confirmation_token,
        )
        if not decision.allowed:
            return _with_meta(decision.to_response(tool_id), call_id=call_id)

        loop = self._loop_detector.check(handle, runtime.turn, tool_id, args)
        if loop.detected:
            self._policy.release(handle, decision)
            return _with_meta(loop.to_response(tool_id), call_id=call_id)

        if self._dedup is not None:
            hit = self._dedup.check(handle, descriptor, args)
            if hit is not None:
                if self._metrics is not None:
                    self._metrics.record_dedup_hit(tool_id)
                response = _with_meta(hit.response, call_id=call_id, guidance=hit.guidance)
                self._loop_detector.record(handle, runtime.turn, tool_id, args, response)
                return response

        context = self._context(runtime, descriptor, args, call_id, request)
        start = time.perf_counter()
        response = await retry_with_backoff(
            lambda: self._catalog.dispatch(tool_id, args, context),
            mode=runtime.mode,
            descriptor=descriptor,
            settings=self._retry_settings,
        )
        elapsed_ms = (time.perf_counter() - start) * 1000
        response = _with_meta(response, call_id=call_id)
        self._observe(tool_id, descriptor.latency_budget_ms, elapsed_ms, response, handle)

        # Session may have ended while the handler was running
        if self._sessions.get(handle) is not runtime or not runtime.is_active:
            logger.info(
                "tool_response_discarded",
                session_id=handle.id,
                tool_id=tool_id,
                call_id=call_id,
                intents=len(response.intents),
            )
            return _with_meta(response, discarded=True)

        self._loop_detector.record(handle, runtime.turn, tool_id, args, response)
        self._tool_memory.record(
            handle,
            ToolCallRecord.from_response(
                call_id=call_id,
                tool_id=tool_id,
                arguments=args,
                turn=runtime.turn,
                response=response,
            ),
        )
        if response.intents:
            self._sessions.apply_intents(runtime, list(response.intents))
        self._schedule_summaries(handle)
        return response

    async def drain(self) -> None:
        """Wait for background summarization to finish (shutdown, tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _context(
        self,
        runtime: SessionRuntime,
        descriptor: ToolDescriptor,
        args: dict[str, Any],
        call_id: str,
        request: DispatchRequest,
    ) -> ExecutionContext:
        capabilities = request.capabilities if request.capabilities is not None else runtime.capabilities
        return ExecutionContext(
            session=runtime.handle,
            mode=runtime.mode,
            arguments=MappingProxyType(dict(args)),
            state=runtime.controller.snapshot(),
            descriptor=descriptor,
            turn=runtime.turn,
            call_id=call_id,
            capabilities=frozenset(capabilities),
            transport=request.transport,
        )

    def _observe(
        self,
        tool_id: str,
        budget_ms: int,
        elapsed_ms: float,
        response: ToolResponse,
        session: SessionHandle,
    ) -> None:
        if elapsed_ms > budget_ms:
            logger.warning(
                "tool_latency_budget_exceeded",
                session_id=session.id,
                tool_id=tool_id,
                duration_ms=round(elapsed_ms, 1),
                budget_ms=budget_ms,
            )
        if self._metrics is None:
            return
        self._metrics.record_tool_execution(tool_id, elapsed_ms)
        if elapsed_ms > budget_ms:
            self._metrics.record_budget_violation(tool_id)
        if response.error_kind is not None:
            self._metrics.record_error(tool_id, response.error_kind)

    def _schedule_summaries(self, session: SessionHandle) -> None:
        if self._summarizer is None or not self._tool_memory.calls_needing_summary(session):
            return
        task = asyncio.create_task(self._summarizer.summarize_pending(session))
        self._background.add(task)
        task.add_done_callback(self._on_summary_done)

    def _on_summary_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        if (exc := task.exception()) is not None:
            logger.error("tool_summary_task_failed", error=str(exc))
