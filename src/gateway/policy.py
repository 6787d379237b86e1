"""Per-call policy checks run before the catalog is touched.

Three checks in fixed order: mode restriction, per-turn quota, confirmation.
Each denial is a distinct ErrorKind because the caller reacts differently:
a mode restriction is final, a budget denial clears next turn, and a
confirmation denial carries a token the caller can come back with.
"""

from __future__ import annotations

import secrets
import time
from collections import Counter
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from src.config.settings import PolicySettings
from src.infra.errors import ErrorKind, PolicyError
from src.infra.metrics import MetricsStore
from src.session.handle import SessionHandle
from src.tools.artifact import ToolDescriptor, canonical_json, hash_arguments
from src.tools.base import ToolMode
from src.tools.response import ConfirmationRequest, ToolResponse

logger = structlog.get_logger()

_PREVIEW_ARGS_CHARS = 200


@dataclass
class TurnCounters:
    """Calls allowed so far in the current turn. Reset at turn boundaries only."""

    turn: int = 0
    by_category: Counter[str] = field(default_factory=Counter)
    total: int = 0

    def consume(self, category: str) -> None:
        self.by_category[category] += 1
        self.total += 1

    def reset(self, turn: int) -> None:
        self.turn = turn
        self.by_category.clear()
        self.total = 0


@dataclass(frozen=True)
class _PendingConfirmation:
    tool_id: str
    args_hash: str
    expires_at: float


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    kind: ErrorKind | None = None
    message: str = ""
    confirmation_request: ConfirmationRequest | None = None
    # Set on an allow that spent a confirmation token; see PolicyEnforcer.release
    confirmed_token: str | None = None
    redeemed: _PendingConfirmation | None = field(default=None, repr=False)

    def to_response(self, tool_id: str) -> ToolResponse:
        """Render a denial in the uniform envelope shape."""
        if self.allowed or self.kind is None:
            raise PolicyError(
                "Only denials render to a response", code="POLICY_NOT_A_DENIAL"
            )
        return ToolResponse.failure(
            self.kind,
            self.message,
            confirmation_request=self.confirmation_request,
            tool_id=tool_id,
        )


_ALLOW = PolicyDecision(allowed=True)


class PolicyEnforcer:
    def __init__(
        self,
        settings: PolicySettings,
        *,
        metrics: MetricsStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._metrics = metrics
        self._clock = clock
        self._pending: dict[SessionHandle, dict[str, _PendingConfirmation]] = {}

    def authorize(
        self,
        session: SessionHandle,
        descriptor: ToolDescriptor,
        mode: ToolMode,
        counters: TurnCounters,
        *,
        arguments: Mapping[str, Any] | None = None,
        confirmation_token: str | None = None,
    ) -> PolicyDecision:
        """Run mode → quota → confirmation. Quota is consumed only on allow."""
        tool_id = descriptor.tool_id

        if mode not in descriptor.allowed_modes:
            allowed = ", ".join(sorted(str(m) for m in descriptor.allowed_modes))
            return self._deny(
                session,
                tool_id,
                ErrorKind.MODE_RESTRICTED,
                f"Tool {tool_id} is not available in {mode} mode (allowed: {allowed}).",
            )

        category = str(descriptor.category)
        category_ceiling = self._settings.category_ceiling(str(mode), category)
        if counters.by_category[category] >= category_ceiling:
            return self._deny(
                session,
                tool_id,
                ErrorKind.BUDGET_EXCEEDED,
                f"Per-turn limit of {category_ceiling} {category} call(s) reached "
                f"in {mode} mode. Answer with what you have.",
            )
        total_ceiling = self._settings.total_ceiling(str(mode))
        if counters.total >= total_ceiling:
            return self._deny(
                session,
                tool_id,
                ErrorKind.BUDGET_EXCEEDED,
                f"Per-turn limit of {total_ceiling} tool call(s) reached in {mode} mode. "
                "Answer with what you have.",
            )

        redeemed = None
        if descriptor.requires_confirmation:
            args = dict(arguments or {})
            redeemed = self._redeem(session, tool_id, args, confirmation_token)
            if redeemed is None:
                request = self._mint(session, descriptor, args)
                return self._deny(
                    session,
                    tool_id,
                    ErrorKind.CONFIRMATION_REQUIRED,
                    f"{tool_id} needs user confirmation. {request.preview}",
                    confirmation_request=request,
                )

        counters.consume(category)
        if redeemed is None:
            return _ALLOW
        return PolicyDecision(allowed=True, confirmed_token=confirmation_token, redeemed=redeemed)

    def release(self, session: SessionHandle, decision: PolicyDecision) -> bool:
        """Return a spent confirmation token when its call was refused downstream.

        The token becomes redeemable again until its original expiry.
        """
        if decision.confirmed_token is None or decision.redeemed is None:
            return False
        if decision.redeemed.expires_at <= self._clock():
            return False
        self._pending.setdefault(session, {})[decision.confirmed_token] = decision.redeemed
        logger.info(
            "confirmation_token_released",
            session_id=session.id,
            tool_id=decision.redeemed.tool_id,
        )
        return True

    def clear_session(self, session: SessionHandle) -> None:
        self._pending.pop(session, None)

    def pending_confirmations(self, session: SessionHandle) -> int:
        self._prune_expired(session)
        return len(self._pending.get(session, {}))

    # ------------------------------------------------------------------
    # Confirmation tokens
    # ------------------------------------------------------------------

    def _mint(
        self, session: SessionHandle, descriptor: ToolDescriptor, arguments: dict[str, Any]
    ) -> ConfirmationRequest:
        """Issue a token for this call, replacing any still pending for the same call."""
        self._prune_expired(session)
        args_hash = hash_arguments(arguments)
        pending = self._pending.setdefault(session, {})
        for stale in [
            t for t, p in pending.items()
            if p.tool_id == descriptor.tool_id and p.args_hash == args_hash
        ]:
            del pending[stale]

        token = secrets.token_urlsafe(16)
        expires_at = self._clock() + self._settings.confirmation_ttl_s
        pending[token] = _PendingConfirmation(
            tool_id=descriptor.tool_id,
            args_hash=args_hash,
            expires_at=expires_at,
        )
        return ConfirmationRequest(
            token=token,
            tool_id=descriptor.tool_id,
            preview=_preview(descriptor, arguments),
            expires_at=expires_at,
        )

    def _redeem(
        self,
        session: SessionHandle,
        tool_id: str,
        arguments: dict[str, Any],
        token: str | None,
    ) -> _PendingConfirmation | None:
        """Consume token if it was minted for this exact call. Single use."""
        if not token:
            return None
        self._prune_expired(session)
        pending = self._pending.get(session, {})
        entry = pending.get(token)
        if entry is None:
            logger.info("confirmation_token_unknown", session_id=session.id, tool_id=tool_id)
            return None
        if entry.tool_id != tool_id or entry.args_hash != hash_arguments(arguments):
            logger.info("confirmation_token_mismatch", session_id=session.id, tool_id=tool_id)
            return None
        return pending.pop(token)

    def _prune_expired(self, session: SessionHandle) -> None:
        pending = self._pending.get(session)
        if not pending:
            return
        now = self._clock()
        for token in [t for t, p in pending.items() if p.expires_at <= now]:
            del pending[token]

    def _deny(
        self,
        session: SessionHandle,
        tool_id: str,
        kind: ErrorKind,
        message: str,
        *,
        confirmation_request: ConfirmationRequest | None = None,
    ) -> PolicyDecision:
        logger.info("policy_denied", session_id=session.id, tool_id=tool_id, kind=str(kind))
        if self._metrics is not None:
            self._metrics.record_policy_denial(kind)
        return PolicyDecision(
            allowed=False,
            kind=kind,
            message=message,
            confirmation_request=confirmation_request,
        )


def _preview(descriptor: ToolDescriptor, arguments: dict[str, Any]) -> str:
    args = canonical_json(arguments)
    if len(args) > _PREVIEW_ARGS_CHARS:
        args = args[:_PREVIEW_ARGS_CHARS] + "…"
    action = descriptor.summary or descriptor.description or descriptor.tool_id
    return f"About to run {descriptor.tool_id} ({action}) with {args}."
