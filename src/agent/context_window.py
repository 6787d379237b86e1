"""Conversation context assembly: raw tail + rolling summary under a token ceiling.

Invoked before each model call. The most recent raw_tail_size messages are
always sent verbatim; everything before them is represented by one summary
that is regenerated wholesale whenever the split point moves past what the
current summary covers. The assembled payload is cached per session, keyed
by a fingerprint of the earliest messages, the message count, and the
state flags that change what the model should see.
"""

from __future__ import annotations

import hashlib
import json
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

import structlog

from src.agent.token_budget import TokenCounter
from src.infra.errors import LLMError
from src.session.handle import SessionHandle

if TYPE_CHECKING:
    from src.agent.model_client import ModelClient
    from src.config.settings import ContextSettings

logger = structlog.get_logger()

_SUMMARY_PROMPT = """\
Please provide a concise summary of the following conversation. Focus on key
topics discussed, important information shared, and the overall context.
Keep it brief but informative.

{conversation}

Summary:"""


@dataclass(frozen=True)
class AssembledContext:
    summary: str | None
    messages: list[dict[str, Any]]
    estimated_tokens: int
    summary_trimmed: bool = False
    dropped_messages: int = 0
    cached: bool = False
    summary_covers: int = 0  # absolute index: summary covers messages [0, summary_covers)


def _detached(payload: AssembledContext, **changes: Any) -> AssembledContext:
    """Copy of a cached payload whose message list the caller may mutate freely."""
    return replace(payload, messages=[dict(m) for m in payload.messages], **changes)


@dataclass
class _CacheEntry:
    payload: AssembledContext
    fingerprint: str
    expires_at: float


@dataclass
class _Window:
    messages: list[dict[str, Any]] = field(default_factory=list)
    evicted: int = 0  # messages dropped from the front by the history cap
    summary: str | None = None
    summary_covers: int = 0
    cache: _CacheEntry | None = None

    @property
    def total(self) -> int:
        return self.evicted + len(self.messages)


def trim_to_words(text: str, max_words: int) -> str:
    """Cut text to max_words, marking the cut with an ellipsis."""
    words = text.split()
    if len(words) <= max_words:
        return text.strip()
    return " ".join(words[:max_words]) + "…"


class ConversationContextManager:
    def __init__(
        self,
        settings: ContextSettings,
        *,
        model_client: ModelClient | None = None,
        token_counter: TokenCounter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._model_client = model_client
        self._counter = token_counter or TokenCounter(settings.tokenizer_model)
        self._clock = clock
        self._windows: dict[SessionHandle, _Window] = {}

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def append(self, session: SessionHandle, role: str, content: str) -> None:
        if not role:
            raise ValueError("role must be non-empty")
        window = self._windows.setdefault(session, _Window())
        window.messages.append({"role": role, "content": content})
        overflow = len(window.messages) - self._settings.max_history_messages
        if overflow > 0:
            del window.messages[:overflow]
            window.evicted += overflow

    def extend(self, session: SessionHandle, messages: Iterable[dict[str, Any]]) -> None:
        for message in messages:
            self.append(session, message["role"], message.get("content") or "")

    def messages(self, session: SessionHandle) -> list[dict[str, Any]]:
        window = self._windows.get(session)
        return [dict(m) for m in window.messages] if window else []

    def invalidate(self, session: SessionHandle) -> None:
        window = self._windows.get(session)
        if window is not None:
            window.cache = None

    def clear_session(self, session: SessionHandle) -> None:
        self._windows.pop(session, None)

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    def fingerprint(
        self, session: SessionHandle, state_flags: dict[str, Any] | None = None
    ) -> str:
        window = self._windows.get(session) or _Window()
        chars = self._settings.fingerprint_chars
        first = [
            {"role": m["role"], "content": (m.get("content") or "")[:chars]}
            for m in window.messages[: self._settings.fingerprint_messages]
        ]
        key = json.dumps(
            {"first_messages": first, "count": window.total, "flags": state_flags or {}},
            sort_keys=True,
            default=str,
        )
        return hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]

    async def assemble(
        self, session: SessionHandle, *, state_flags: dict[str, Any] | None = None
    ) -> AssembledContext:
        """Build the payload for the next model call. Never exceeds max_tokens
        unless a single remaining message does on its own."""
        window = self._windows.setdefault(session, _Window())
        fingerprint = self.fingerprint(session, state_flags)
        now = self._clock()

        if window.cache is not None:
            if window.cache.fingerprint == fingerprint and now < window.cache.expires_at:
                logger.debug("context_cache_hit", session_id=session.id)
                return _detached(window.cache.payload, cached=True)
            reason = "expired" if window.cache.fingerprint == fingerprint else "fingerprint"
            logger.debug("context_cache_invalidated", session_id=session.id, reason=reason)
            window.cache = None

        tail_size = self._settings.raw_tail_size
        summary: str | None = None
        covers = 0
        if window.total > tail_size:
            split = window.total - tail_size
            tail = window.messages[-tail_size:]
            if window.summary is not None and window.summary_covers >= split:
                summary = window.summary
                covers = window.summary_covers
            else:
                head = window.messages[: len(window.messages) - tail_size]
                summary = await self._summarize(session, head)
                covers = split
                window.summary = summary
                window.summary_covers = covers
        else:
            tail = list(window.messages)

        payload = self._enforce_budget(session, summary, [dict(m) for m in tail], covers)
        window.cache = _CacheEntry(
            payload=payload,
            fingerprint=fingerprint,
            expires_at=now + self._settings.cache_ttl_s,
        )
        return _detached(payload)

    def _enforce_budget(
        self,
        session: SessionHandle,
        summary: str | None,
        messages: list[dict[str, Any]],
        covers: int,
    ) -> AssembledContext:
        max_tokens = self._settings.max_tokens
        tokens = self._counter.count_payload(summary, messages)
        summary_trimmed = False
        dropped = 0

        if tokens > max_tokens and summary:
            trimmed = trim_to_words(summary, self._settings.summary_word_limit)
            if trimmed != summary:
                summary = trimmed
                summary_trimmed = True
                tokens = self._counter.count_payload(summary, messages)

        while tokens > max_tokens and len(messages) > 1:
            messages.pop(0)
            dropped += 1
            tokens = self._counter.count_payload(summary, messages)

        if summary_trimmed or dropped:
            logger.info(
                "context_budget_enforced",
                session_id=session.id,
                summary_trimmed=summary_trimmed,
                dropped_messages=dropped,
                estimated_tokens=tokens,
                max_tokens=max_tokens,
            )
        return AssembledContext(
            summary=summary,
            messages=messages,
            estimated_tokens=tokens,
            summary_trimmed=summary_trimmed,
            dropped_messages=dropped,
            summary_covers=covers,
        )

    async def _summarize(self, session: SessionHandle, messages: list[dict[str, Any]]) -> str:
        fallback = f"Previous conversation with {len(messages)} messages."
        if self._model_client is None:
            return fallback

        conversation = "\n\n".join(
            f"{m['role']}: {m.get('content') or ''}" for m in messages
        )
        try:
            text = await self._model_client.chat(
                [{"role": "user", "content": _SUMMARY_PROMPT.format(conversation=conversation)}],
                model=self._settings.summary_model,
                temperature=self._settings.summary_temperature,
            )
        except LLMError as e:
            logger.warning("context_summary_failed", session_id=session.id, error=str(e))
            return fallback

        text = text.strip()
        if not text:
            return fallback
        logger.info(
            "context_summary_generated",
            session_id=session.id,
            covered_messages=len(messages),
            summary_tokens=self._counter.count_text(text),
        )
        return text
