from __future__ import annotations

import copy
import json
import time
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog
from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from pydantic import ValidationError

from src.infra.errors import CatalogError, CatalogLockedError, ErrorKind, ToolError
from src.infra.metrics import MetricsStore
from src.tools.artifact import (
    RegistryArtifact,
    ToolDescriptor,
    close_schema,
    compute_content_hash,
)
from src.tools.base import ToolHandler, ToolMode
from src.tools.context import ExecutionContext
from src.tools.response import ToolResponse

logger = structlog.get_logger()

SUPPORTED_PROVIDERS = ("openai", "geminiNative")


@dataclass(frozen=True)
class CatalogSnapshot:
    """Immutable view of a locked catalog, pinned by a session at start."""

    version: str
    content_hash: str
    git_commit: str | None
    tool_ids: tuple[str, ...]


def _format_violation(error: Any) -> str:
    path = "/".join(str(p) for p in error.absolute_path)
    pointer = f"/{path}" if path else "$"
    return f"{pointer}: {error.message}"


class ToolCatalog:
    """Versioned tool contracts loaded once from the registry artifact.

    Lifecycle: load() → bind() each handler → lock(). After lock() no
    descriptor or handler can be added, removed, or replaced, so every
    dispatch within a session's lifetime targets one consistent version.
    """

    def __init__(self, *, metrics: MetricsStore | None = None) -> None:
        self._descriptors: dict[str, ToolDescriptor] = {}
        self._validators: dict[str, Draft202012Validator] = {}
        self._handlers: dict[str, ToolHandler] = {}
        self._version: str | None = None
        self._content_hash: str = ""
        self._git_commit: str | None = None
        self._locked = False
        self._snapshot: CatalogSnapshot | None = None
        self._metrics = metrics

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self, path: Path, *, verify_content_hash: bool = True) -> None:
        """Read and load the registry artifact from disk.

        Raises CatalogError(code="REGISTRY_UNAVAILABLE") if the file is
        missing or unreadable, CatalogError(code="REGISTRY_INVALID") if it
        does not parse.
        """
        self._ensure_unlocked()
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise CatalogError(
                f"Tool registry not found at {path}. Run the registry build step "
                "or set CATALOG_REGISTRY_PATH.",
                code="REGISTRY_UNAVAILABLE",
            ) from e
        except (OSError, json.JSONDecodeError) as e:
            raise CatalogError(
                f"Tool registry at {path} could not be read: {e}",
                code="REGISTRY_UNAVAILABLE",
            ) from e

        try:
            artifact = RegistryArtifact.model_validate(raw)
        except ValidationError as e:
            raise CatalogError(
                f"Tool registry at {path} is invalid: {e}", code="REGISTRY_INVALID"
            ) from e

        self.load_artifact(artifact, verify_content_hash=verify_content_hash)

    def load_artifact(
        self, artifact: RegistryArtifact, *, verify_content_hash: bool = True
    ) -> None:
        """Load descriptors and compile one validator per tool. Replaces prior content."""
        self._ensure_unlocked()
        start = time.perf_counter()

        descriptors: dict[str, ToolDescriptor] = {}
        validators: dict[str, Draft202012Validator] = {}
        for tool in artifact.tools:
            try:
                closed = close_schema(tool.parameters)
                Draft202012Validator.check_schema(closed)
            except (ValueError, SchemaError) as e:
                raise CatalogError(
                    f"Invalid parameter schema for {tool.tool_id}: {e}",
                    code="REGISTRY_INVALID",
                ) from e
            descriptor = tool.model_copy(update={"parameters": closed})
            descriptors[tool.tool_id] = descriptor
            # Validator owns its schema; descriptors handed out are copies
            validators[tool.tool_id] = Draft202012Validator(copy.deepcopy(closed))

        content_hash = compute_content_hash(list(descriptors.values()))
        if (
            verify_content_hash
            and artifact.content_hash
            and artifact.content_hash != content_hash
        ):
            logger.warning(
                "registry_content_hash_mismatch",
                declared=artifact.content_hash,
                computed=content_hash,
                msg="Artifact content differs from its declared hash; "
                "clients caching the declared hash will see skew.",
            )

        self._descriptors = descriptors
        self._validators = validators
        self._handlers = {}
        self._version = artifact.version
        self._git_commit = artifact.git_commit
        self._content_hash = content_hash

        load_ms = (time.perf_counter() - start) * 1000
        if self._metrics is not None:
            self._metrics.record_registry_load_time(load_ms)
        logger.info(
            "registry_loaded",
            version=self._version,
            content_hash=content_hash,
            tool_count=len(descriptors),
            load_ms=round(load_ms, 2),
        )

    def bind(self, handler: ToolHandler) -> None:
        """Bind a handler to the descriptor with the same tool_id."""
        self._ensure_unlocked()
        tool_id = handler.tool_id
        if tool_id not in self._descriptors:
            raise CatalogError(f"No descriptor for handler: {tool_id}", code="HANDLER_UNKNOWN")
        if tool_id in self._handlers:
            raise CatalogError(f"Handler already bound: {tool_id}", code="HANDLER_DUPLICATE")
        self._handlers[tool_id] = handler
        logger.info("tool_handler_bound", tool_id=tool_id)

    def lock(self) -> CatalogSnapshot:
        """Freeze the catalog. Idempotent. Every descriptor must have a handler."""
        if self._snapshot is not None:
            return self._snapshot
        if self._version is None:
            raise CatalogError("Cannot lock before load()", code="REGISTRY_UNAVAILABLE")
        unbound = sorted(set(self._descriptors) - set(self._handlers))
        if unbound:
            raise CatalogError(
                f"Descriptors without handlers: {', '.join(unbound)}",
                code="HANDLER_MISSING",
            )
        self._locked = True
        self._snapshot = CatalogSnapshot(
            version=self._version,
            content_hash=self._content_hash,
            git_commit=self._git_commit,
            tool_ids=tuple(sorted(self._descriptors)),
        )
        logger.info("registry_locked", version=self._version, content_hash=self._content_hash)
        return self._snapshot

    def reload(self, path: Path) -> None:
        """Development only. Fails once locked; drops all bound handlers."""
        self._ensure_unlocked()
        self.load(path)

    def _ensure_unlocked(self) -> None:
        if self._locked:
            raise CatalogLockedError()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    @property
    def locked(self) -> bool:
        return self._locked

    @property
    def version(self) -> str | None:
        return self._version

    @property
    def content_hash(self) -> str:
        return self._content_hash

    def snapshot(self) -> CatalogSnapshot:
        if self._snapshot is None:
            raise CatalogError("Cannot snapshot an unlocked catalog", code="CATALOG_UNLOCKED")
        return self._snapshot

    def describe(self, tool_id: str) -> ToolDescriptor | None:
        """Copy of the descriptor with this exact id, or None."""
        descriptor = self._descriptors.get(tool_id)
        return descriptor.model_copy(deep=True) if descriptor else None

    def list_tools(self, mode: ToolMode | None = None) -> list[ToolDescriptor]:
        """Descriptors available in mode (all when mode is None), ordered by id."""
        return [
            d.model_copy(deep=True) for _, d in sorted(self._descriptors.items())
            if mode is None or mode in d.allowed_modes
        ]

    def provider_schemas(
        self, provider: str = "openai", mode: ToolMode | None = None
    ) -> list[dict]:
        """Pre-computed provider projections from the build step. No runtime conversion."""
        if provider not in SUPPORTED_PROVIDERS:
            raise ValueError(f"Unsupported provider: {provider}")
        return [
            d.provider_schemas[provider]
            for d in self.list_tools(mode)
            if provider in d.provider_schemas
        ]

    def summaries(self, mode: ToolMode | None = None) -> str:
        """Short per-tool summaries for prompt injection."""
        return "\n\n".join(
            f"**{d.tool_id}** ({d.category}): {d.summary or d.description}"
            for d in self.list_tools(mode)
        )

    def documentation(self, tool_id: str) -> str | None:
        descriptor = self._descriptors.get(tool_id)
        return descriptor.documentation if descriptor else None

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def validate_arguments(self, tool_id: str, arguments: Mapping[str, Any]) -> list[str]:
        """Return every schema violation for arguments (empty list = valid)."""
        validator = self._validators[tool_id]
        errors = sorted(validator.iter_errors(dict(arguments)), key=lambda e: list(e.absolute_path))
        return [_format_violation(e) for e in errors]

    async def dispatch(
        self, tool_id: str, raw_args: Mapping[str, Any], context: ExecutionContext
    ) -> ToolResponse:
        """Validate raw_args and run the handler exactly once.

        Always returns a ToolResponse. Validation failures never invoke the
        handler; handler exceptions never escape.
        """
        start = time.perf_counter()
        descriptor = self._descriptors.get(tool_id)
        if descriptor is None:
            return self._stamp(
                ToolResponse.failure(ErrorKind.NOT_FOUND, f"Tool {tool_id} not found"),
                tool_id, None, start,
            )

        violations = self.validate_arguments(tool_id, raw_args)
        if violations:
            logger.info("tool_args_invalid", tool_id=tool_id, violations=violations)
            return self._stamp(
                ToolResponse.failure(
                    ErrorKind.VALIDATION,
                    f"Invalid parameters: {'; '.join(violations)}",
                    details={"violations": violations},
                ),
                tool_id, descriptor, start,
            )

        handler = self._handlers.get(tool_id)
        if handler is None:
            logger.error("tool_handler_missing", tool_id=tool_id)
            return self._stamp(
                ToolResponse.failure(ErrorKind.INTERNAL, f"No handler bound for {tool_id}"),
                tool_id, descriptor, start,
            )

        try:
            result = await handler.execute(dict(raw_args), context)
        except ToolError as e:
            response = ToolResponse.failure(
                e.kind,
                str(e),
                retryable=e.retryable,
                idempotency_required=e.idempotency_required,
                partial_side_effects=e.partial_side_effects,
                details=e.details,
            )
        except Exception as e:
            logger.exception("tool_handler_crashed", tool_id=tool_id)
            response = ToolResponse.failure(
                ErrorKind.INTERNAL,
                f"Unexpected error: {e}",
                partial_side_effects=True,  # unknown how far the handler got
            )
        else:
            if isinstance(result, ToolResponse):
                response = result
            else:
                logger.error(
                    "tool_response_invalid",
                    tool_id=tool_id,
                    returned=type(result).__name__,
                )
                response = ToolResponse.failure(
                    ErrorKind.INTERNAL,
                    "Handler returned an invalid response",
                    partial_side_effects=True,
                )

        return self._stamp(response, tool_id, descriptor, start)

    def _stamp(
        self,
        response: ToolResponse,
        tool_id: str,
        descriptor: ToolDescriptor | None,
        start: float,
    ) -> ToolResponse:
        meta = response.meta.model_copy(update={
            "tool_id": tool_id,
            "tool_version": descriptor.version if descriptor else None,
            "registry_version": self._version,
            "duration_ms": round((time.perf_counter() - start) * 1000, 3),
        })
        return response.model_copy(update={"meta": meta})
