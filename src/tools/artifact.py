"""Registry artifact models.

The artifact is produced by a separate build step and is the only contract
source at runtime. Keys are camelCase on the wire; models expose snake_case.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.tools.base import SideEffects, ToolCategory, ToolMode


class ToolDescriptor(BaseModel):
    """Immutable contract for one tool."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    tool_id: str = Field(alias="toolId", min_length=1)
    version: str
    category: ToolCategory
    side_effects: SideEffects = Field(alias="sideEffects")
    idempotent: bool
    requires_confirmation: bool = Field(alias="requiresConfirmation")
    allowed_modes: frozenset[ToolMode] = Field(alias="allowedModes")
    latency_budget_ms: int = Field(alias="latencyBudgetMs", gt=0)
    parameters: dict[str, Any] = Field(alias="jsonSchema")
    provider_schemas: dict[str, Any] = Field(default_factory=dict, alias="providerSchemas")
    description: str = ""
    summary: str = ""
    documentation: str = ""

    @field_validator("allowed_modes")
    @classmethod
    def _non_empty_modes(cls, v: frozenset[ToolMode]) -> frozenset[ToolMode]:
        if not v:
            raise ValueError("allowedModes must be a non-empty set")
        return v

    @field_validator("parameters")
    @classmethod
    def _object_schema(cls, v: dict[str, Any]) -> dict[str, Any]:
        if v.get("type") != "object":
            raise ValueError("jsonSchema must be an object schema")
        return v


class RegistryArtifact(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    version: str
    content_hash: str | None = Field(None, alias="contentHash")
    git_commit: str | None = Field(None, alias="gitCommit")
    build_timestamp: str | None = Field(None, alias="buildTimestamp")
    tools: list[ToolDescriptor] = Field(default_factory=list)

    @field_validator("tools")
    @classmethod
    def _unique_ids(cls, v: list[ToolDescriptor]) -> list[ToolDescriptor]:
        seen: set[str] = set()
        for tool in v:
            if tool.tool_id in seen:
                raise ValueError(f"Duplicate toolId in registry: {tool.tool_id}")
            seen.add(tool.tool_id)
        return v


def canonical_json(value: Any) -> str:
    """Key-order-independent JSON serialization."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def hash_arguments(arguments: Any) -> str:
    """Order-independent argument fingerprint: {"a":1,"b":2} == {"b":2,"a":1}."""
    return hashlib.sha256(canonical_json(arguments).encode("utf-8")).hexdigest()


def compute_content_hash(tools: list[ToolDescriptor]) -> str:
    """Content-derived version over every descriptor's schema and docs.

    Lets a client detect skew between its cached tool view and the running catalog.
    """
    content = [
        {
            "toolId": t.tool_id,
            "version": t.version,
            "schema": t.parameters,
            "summary": t.summary,
            "documentation": t.documentation,
        }
        for t in sorted(tools, key=lambda t: t.tool_id)
    ]
    return hashlib.sha256(canonical_json(content).encode("utf-8")).hexdigest()[:16]


def close_schema(schema: dict[str, Any], *, path: str = "$") -> dict[str, Any]:
    """Return a copy of schema where every object rejects undeclared properties.

    Raises ValueError if any object explicitly allows additional properties.
    """
    closed = dict(schema)
    if closed.get("type") == "object":
        extra = closed.get("additionalProperties")
        if extra is True or isinstance(extra, dict):
            raise ValueError(f"Schema at {path} allows undeclared properties")
        closed["additionalProperties"] = False
        props = closed.get("properties") or {}
        closed["properties"] = {
            name: close_schema(sub, path=f"{path}.{name}") if isinstance(sub, dict) else sub
            for name, sub in props.items()
        }
    items = closed.get("items")
    if isinstance(items, dict):
        closed["items"] = close_schema(items, path=f"{path}[]")
    return closed
