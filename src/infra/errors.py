"""Custom exception hierarchy for Switchyard.

All application-specific exceptions inherit from SwitchyardError,
which carries an error code for operator-facing reporting.

Configuration-level failures (missing registry, locked catalog) are raised.
Domain failures raised by tool handlers (ToolError) are caught at the
dispatch boundary and returned as data inside a ToolResponse.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    """Machine-readable failure kinds carried by every failed ToolResponse.

    Grouped by the layer that produces them.
    """

    # Catalog (pre-execution)
    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL = "INTERNAL"

    # Policy enforcement
    MODE_RESTRICTED = "MODE_RESTRICTED"
    BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
    CONFIRMATION_REQUIRED = "CONFIRMATION_REQUIRED"

    # Loop detection
    LOOP_DETECTED = "LOOP_DETECTED"

    # Tool handlers (domain failures)
    SESSION_INACTIVE = "SESSION_INACTIVE"
    TRANSIENT = "TRANSIENT"
    PERMANENT = "PERMANENT"
    RATE_LIMIT = "RATE_LIMIT"
    AUTH = "AUTH"
    CONFLICT = "CONFLICT"


# Kinds that never reach a handler, so they can never have side effects.
PRE_EXECUTION_KINDS = frozenset({
    ErrorKind.VALIDATION,
    ErrorKind.NOT_FOUND,
    ErrorKind.MODE_RESTRICTED,
    ErrorKind.BUDGET_EXCEEDED,
    ErrorKind.CONFIRMATION_REQUIRED,
    ErrorKind.LOOP_DETECTED,
})

RETRYABLE_KINDS = frozenset({ErrorKind.TRANSIENT, ErrorKind.RATE_LIMIT})

_USER_SAFE_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.VALIDATION: "I couldn't use that tool with the details I had.",
    ErrorKind.NOT_FOUND: "I don't have a way to do that right now.",
    ErrorKind.INTERNAL: "Something went wrong on my side.",
    ErrorKind.MODE_RESTRICTED: "That isn't available in this conversation mode.",
    ErrorKind.BUDGET_EXCEEDED: "I've looked up as much as I can for this reply.",
    ErrorKind.CONFIRMATION_REQUIRED: "I need your confirmation before doing that.",
    ErrorKind.LOOP_DETECTED: "I wasn't able to find more on that.",
    ErrorKind.SESSION_INACTIVE: "This session has already ended.",
    ErrorKind.TRANSIENT: "That didn't go through. Please try again in a moment.",
    ErrorKind.PERMANENT: "I wasn't able to complete that.",
    ErrorKind.RATE_LIMIT: "I'm being rate limited. Please try again shortly.",
    ErrorKind.AUTH: "I'm not authorized to do that.",
    ErrorKind.CONFLICT: "That conflicts with something that already happened.",
}


def user_safe_message(kind: ErrorKind | str) -> str:
    """Natural-language text for an error kind. Never includes raw error text."""
    try:
        return _USER_SAFE_MESSAGES[ErrorKind(kind)]
    except ValueError:
        return _USER_SAFE_MESSAGES[ErrorKind.INTERNAL]


class SwitchyardError(Exception):
    """Base exception for all Switchyard errors."""

    def __init__(self, message: str, *, code: str = "INTERNAL_ERROR") -> None:
        super().__init__(message)
        self.code = code


class CatalogError(SwitchyardError):
    """Registry artifact or handler binding problems. Operator-facing."""

    def __init__(self, message: str, *, code: str = "CATALOG_ERROR") -> None:
        super().__init__(message, code=code)


class CatalogLockedError(CatalogError):
    """Mutation attempted on a locked catalog."""

    def __init__(self, message: str = "Tool catalog is locked") -> None:
        super().__init__(message, code="CATALOG_LOCKED")


class PolicyError(SwitchyardError):
    """Misconfigured policy (not a denial; denials are data)."""

    def __init__(self, message: str, *, code: str = "POLICY_ERROR") -> None:
        super().__init__(message, code=code)


class SessionError(SwitchyardError):
    """Errors in session lifecycle management."""

    def __init__(self, message: str, *, code: str = "SESSION_ERROR") -> None:
        super().__init__(message, code=code)


class LLMError(SwitchyardError):
    """Errors from LLM API calls (timeouts, rate limits, failures)."""

    def __init__(self, message: str, *, code: str = "LLM_ERROR") -> None:
        super().__init__(message, code=code)


class ToolError(SwitchyardError):
    """Expected domain failure raised by a tool handler.

    The catalog catches it and normalizes it into a failed ToolResponse;
    it never propagates past the dispatch boundary.

    retryable defaults to whether kind is one of RETRYABLE_KINDS.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        retryable: bool | None = None,
        idempotency_required: bool = False,
        partial_side_effects: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code=str(kind))
        self.kind = kind
        self.retryable = kind in RETRYABLE_KINDS if retryable is None else retryable
        self.idempotency_required = idempotency_required
        self.partial_side_effects = partial_side_effects
        self.details = details
