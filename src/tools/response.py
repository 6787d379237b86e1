"""ToolResponse envelope and intent vocabulary.

Every dispatch, including policy and loop refusals, returns exactly one
ToolResponse: ok=True with data, or ok=False with a ToolFailure. Intents may
accompany either and are applied once, in order, by the StateController.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from src.infra.errors import RETRYABLE_KINDS, ErrorKind

RESPONSE_SCHEMA_VERSION = "1.0.0"


# ---------------------------------------------------------------------------
# Intents
# ---------------------------------------------------------------------------
# Fields are optional on purpose: a handler omitting a required field is
# tolerated; StateController logs a warning and applies a safe default.


class EndSessionIntent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["END_SESSION"] = "END_SESSION"
    after: Literal["immediate", "current_turn"] | None = None


class SuppressAudioIntent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["SUPPRESS_AUDIO"] = "SUPPRESS_AUDIO"
    value: bool | None = None


class SuppressTranscriptIntent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["SUPPRESS_TRANSCRIPT"] = "SUPPRESS_TRANSCRIPT"
    value: bool | None = None


class SetPendingMessageIntent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["SET_PENDING_MESSAGE"] = "SET_PENDING_MESSAGE"
    message: str | None = None


Intent = Annotated[
    EndSessionIntent | SuppressAudioIntent | SuppressTranscriptIntent | SetPendingMessageIntent,
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class ConfirmationRequest(BaseModel):
    """Attached to CONFIRMATION_REQUIRED failures. Not a permanent failure."""

    model_config = ConfigDict(frozen=True)

    token: str
    tool_id: str
    preview: str
    expires_at: float  # unix seconds


class ToolFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str
    retryable: bool = False
    idempotency_required: bool = False
    partial_side_effects: bool = False
    details: dict[str, Any] | None = None
    confirmation_request: ConfirmationRequest | None = None


class ResponseMeta(BaseModel):
    tool_id: str = ""
    tool_version: str | None = None
    registry_version: str | None = None
    duration_ms: float = 0.0
    response_schema_version: str = RESPONSE_SCHEMA_VERSION
    cached: bool = False
    discarded: bool = False
    call_id: str | None = None
    attempts: int = 1
    guidance: str | None = None  # note for the calling agent, e.g. on a dedup hit


class ToolResponse(BaseModel):
    ok: bool
    data: Any = None
    error: ToolFailure | None = None
    intents: list[Intent] = Field(default_factory=list)
    meta: ResponseMeta = Field(default_factory=ResponseMeta)

    @model_validator(mode="after")
    def _check_discriminant(self) -> ToolResponse:
        if self.ok and self.error is not None:
            raise ValueError("ToolResponse with ok=True must not carry an error")
        if not self.ok and self.error is None:
            raise ValueError("ToolResponse with ok=False must carry an error")
        return self

    @classmethod
    def success(
        cls, data: Any = None, *, intents: list[Any] | None = None, **meta: Any
    ) -> ToolResponse:
        return cls(ok=True, data=data, intents=intents or [], meta=ResponseMeta(**meta))

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        message: str,
        *,
        retryable: bool | None = None,
        idempotency_required: bool = False,
        partial_side_effects: bool = False,
        details: dict[str, Any] | None = None,
        confirmation_request: ConfirmationRequest | None = None,
        intents: list[Any] | None = None,
        **meta: Any,
    ) -> ToolResponse:
        return cls(
            ok=False,
            error=ToolFailure(
                kind=kind,
                message=message,
                retryable=kind in RETRYABLE_KINDS if retryable is None else retryable,
                idempotency_required=idempotency_required,
                partial_side_effects=partial_side_effects,
                details=details,
                confirmation_request=confirmation_request,
            ),
            intents=intents or [],
            meta=ResponseMeta(**meta),
        )

    @property
    def error_kind(self) -> ErrorKind | None:
        return self.error.kind if self.error is not None else None
