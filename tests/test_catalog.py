"""Tests for ToolCatalog: artifact loading, bind/lock lifecycle, and dispatch.

Covers:
- load(): missing file, unreadable JSON, invalid artifact, duplicate ids
- schema closing: undeclared properties rejected, open schemas refused at load
- content hash: order-independent, schema-sensitive, mismatch logged not fatal
- bind/lock: unknown/duplicate handler, missing handler, no mutation after lock,
  described and listed descriptors are copies that cannot reach the validators
- dispatch: valid args run the handler exactly once; invalid args never do
- handler failures: ToolError → failure envelope, crash → INTERNAL
- queries: mode filtering, provider projections, summaries
"""

from __future__ import annotations

import json
from types import MappingProxyType

import pytest
from conftest import ScriptedHandler
from structlog.testing import capture_logs

from src.config.settings import CatalogSettings
from src.infra.errors import CatalogError, CatalogLockedError, ErrorKind, ToolError
from src.session.state import SessionState
from src.tools.artifact import RegistryArtifact, close_schema, compute_content_hash
from src.tools.base import ToolMode
from src.tools.builtins import BUILTIN_TOOL_IDS
from src.tools.context import ExecutionContext
from src.tools.registry import ToolCatalog
from src.tools.response import ToolResponse


def _context(catalog, tool_id, args, session, mode=ToolMode.text) -> ExecutionContext:
    return ExecutionContext(
        session=session,
        mode=mode,
        arguments=MappingProxyType(dict(args)),
        state=SessionState(mode=mode),
        descriptor=catalog.describe(tool_id) or catalog.describe("search_docs"),
    )


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


class TestLoad:
    def test_missing_file_is_registry_unavailable(self, tmp_path):
        with pytest.raises(CatalogError) as exc_info:
            ToolCatalog().load(tmp_path / "missing.json")
        assert exc_info.value.code == "REGISTRY_UNAVAILABLE"

    def test_bad_json_is_registry_unavailable(self, tmp_path):
        path = tmp_path / "registry.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(CatalogError) as exc_info:
            ToolCatalog().load(path)
        assert exc_info.value.code == "REGISTRY_UNAVAILABLE"

    def test_artifact_without_version_is_invalid(self, tmp_path):
        path = tmp_path / "registry.json"
        path.write_text(json.dumps({"tools": []}), encoding="utf-8")
        with pytest.raises(CatalogError) as exc_info:
            ToolCatalog().load(path)
        assert exc_info.value.code == "REGISTRY_INVALID"

    def test_duplicate_tool_ids_are_invalid(self, tmp_path, artifact_dict):
        artifact_dict["tools"].append(dict(artifact_dict["tools"][0]))
        path = tmp_path / "registry.json"
        path.write_text(json.dumps(artifact_dict), encoding="utf-8")
        with pytest.raises(CatalogError) as exc_info:
            ToolCatalog().load(path)
        assert exc_info.value.code == "REGISTRY_INVALID"

    def test_loads_from_disk(self, tmp_path, artifact_dict, metrics):
        path = tmp_path / "registry.json"
        path.write_text(json.dumps(artifact_dict), encoding="utf-8")
        catalog = ToolCatalog(metrics=metrics)
        catalog.load(path)
        assert catalog.version == "test-1"
        assert [d.tool_id for d in catalog.list_tools()] == [
            "format_date", "lookup_order", "search_docs", "send_email",
        ]
        assert metrics.registry_load_ms is not None

    def test_shipped_registry_loads(self):
        catalog = ToolCatalog()
        catalog.load(CatalogSettings().registry_path)
        assert {d.tool_id for d in catalog.list_tools()} == BUILTIN_TOOL_IDS


# ---------------------------------------------------------------------------
# Closed schemas
# ---------------------------------------------------------------------------


class TestClosedSchemas:
    def test_loaded_schema_rejects_additional_properties(self, catalog):
        assert catalog.describe("search_docs").parameters["additionalProperties"] is False

    def test_undeclared_field_is_a_violation(self, catalog):
        violations = catalog.validate_arguments("search_docs", {"query": "x", "extra": 1})
        assert violations
        assert any("extra" in v for v in violations)

    def test_open_schema_refused_at_load(self, artifact_dict):
        artifact_dict["tools"][0]["jsonSchema"]["additionalProperties"] = True
        artifact = RegistryArtifact.model_validate(artifact_dict)
        with pytest.raises(CatalogError) as exc_info:
            ToolCatalog().load_artifact(artifact)
        assert exc_info.value.code == "REGISTRY_INVALID"

    def test_close_schema_recurses_into_nested_objects(self):
        closed = close_schema({
            "type": "object",
            "properties": {
                "filter": {"type": "object", "properties": {"tag": {"type": "string"}}},
                "ids": {"type": "array", "items": {"type": "object", "properties": {}}},
            },
        })
        assert closed["additionalProperties"] is False
        assert closed["properties"]["filter"]["additionalProperties"] is False
        assert closed["properties"]["ids"]["items"]["additionalProperties"] is False


# ---------------------------------------------------------------------------
# Content hash
# ---------------------------------------------------------------------------


class TestContentHash:
    def test_independent_of_key_order(self, artifact):
        reordered = artifact.tools[0].model_copy(update={
            "parameters": dict(reversed(list(artifact.tools[0].parameters.items()))),
        })
        assert compute_content_hash([artifact.tools[0]]) == compute_content_hash([reordered])

    def test_independent_of_tool_order(self, artifact):
        tools = list(artifact.tools)
        assert compute_content_hash(tools) == compute_content_hash(list(reversed(tools)))

    def test_changes_with_schema(self, artifact):
        original = artifact.tools[0]
        changed = original.model_copy(update={
            "parameters": {**original.parameters, "required": ["query", "limit"]},
        })
        assert compute_content_hash([original]) != compute_content_hash([changed])

    def test_declared_mismatch_is_logged_not_fatal(self, artifact_dict):
        artifact_dict["contentHash"] = "deadbeefdeadbeef"
        catalog = ToolCatalog()
        with capture_logs() as logs:
            catalog.load_artifact(RegistryArtifact.model_validate(artifact_dict))
        assert catalog.content_hash != "deadbeefdeadbeef"
        assert len(catalog.list_tools()) == 4
        assert any(e["event"] == "registry_content_hash_mismatch" for e in logs)


# ---------------------------------------------------------------------------
# Bind / lock lifecycle
# ---------------------------------------------------------------------------


class TestBindAndLock:
    def test_bind_unknown_handler(self, artifact):
        catalog = ToolCatalog()
        catalog.load_artifact(artifact)
        with pytest.raises(CatalogError) as exc_info:
            catalog.bind(ScriptedHandler("not_declared"))
        assert exc_info.value.code == "HANDLER_UNKNOWN"

    def test_bind_duplicate_handler(self, artifact):
        catalog = ToolCatalog()
        catalog.load_artifact(artifact)
        catalog.bind(ScriptedHandler("search_docs"))
        with pytest.raises(CatalogError) as exc_info:
            catalog.bind(ScriptedHandler("search_docs"))
        assert exc_info.value.code == "HANDLER_DUPLICATE"

    def test_lock_requires_every_handler(self, artifact):
        catalog = ToolCatalog()
        catalog.load_artifact(artifact)
        catalog.bind(ScriptedHandler("search_docs"))
        with pytest.raises(CatalogError) as exc_info:
            catalog.lock()
        assert exc_info.value.code == "HANDLER_MISSING"
        assert "send_email" in str(exc_info.value)
        assert not catalog.locked

    def test_lock_before_load(self):
        with pytest.raises(CatalogError) as exc_info:
            ToolCatalog().lock()
        assert exc_info.value.code == "REGISTRY_UNAVAILABLE"

    def test_lock_is_idempotent(self, catalog):
        first = catalog.snapshot()
        assert catalog.lock() is first
        assert first.version == "test-1"
        assert first.git_commit == "abc1234"
        assert first.tool_ids == ("format_date", "lookup_order", "search_docs", "send_email")

    def test_no_mutation_after_lock(self, catalog, artifact, tmp_path):
        with pytest.raises(CatalogLockedError):
            catalog.bind(ScriptedHandler("search_docs"))
        with pytest.raises(CatalogLockedError):
            catalog.load_artifact(artifact)
        with pytest.raises(CatalogLockedError):
            catalog.reload(tmp_path / "registry.json")

    def test_described_schema_edits_do_not_reach_validation(self, catalog):
        described = catalog.describe("search_docs")
        described.parameters["properties"]["sneaky"] = {"type": "integer"}
        described.parameters["required"].append("sneaky")

        violations = catalog.validate_arguments("search_docs", {"query": "x", "sneaky": 1})
        assert any("sneaky" in v for v in violations)
        assert "sneaky" not in catalog.describe("search_docs").parameters["properties"]
        assert catalog.validate_arguments("search_docs", {"query": "x"}) == []

    def test_listed_descriptors_are_copies(self, catalog):
        listed = {d.tool_id: d for d in catalog.list_tools()}
        listed["lookup_order"].parameters["required"].clear()
        assert catalog.validate_arguments("lookup_order", {}) != []

    def test_snapshot_of_unlocked_catalog(self, artifact):
        catalog = ToolCatalog()
        catalog.load_artifact(artifact)
        with pytest.raises(CatalogError) as exc_info:
            catalog.snapshot()
        assert exc_info.value.code == "CATALOG_UNLOCKED"


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class TestDispatch:
    @pytest.mark.asyncio
    async def test_valid_call_runs_handler_once(self, catalog, handlers, session):
        args = {"query": "refund policy", "limit": 3}
        response = await catalog.dispatch(
            "search_docs", args, _context(catalog, "search_docs", args, session)
        )
        assert response.ok is True
        assert response.data["results"][0]["title"] == "Doc about refund policy"
        assert len(handlers["search_docs"].calls) == 1
        assert response.meta.tool_id == "search_docs"
        assert response.meta.tool_version == "1.0.0"
        assert response.meta.registry_version == "test-1"
        assert response.meta.duration_ms >= 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "args",
        [
            {},  # missing required
            {"query": 5},  # wrong type
            {"query": "x", "limit": 0},  # out of range
            {"query": ""},  # below minLength
            {"query": "x", "verbose": True},  # undeclared
        ],
    )
    async def test_invalid_args_never_reach_handler(self, catalog, handlers, session, args):
        response = await catalog.dispatch(
            "search_docs", args, _context(catalog, "search_docs", args, session)
        )
        assert response.ok is False
        assert response.error.kind == ErrorKind.VALIDATION
        assert response.error.details["violations"]
        assert handlers["search_docs"].calls == []

    @pytest.mark.asyncio
    async def test_unknown_tool(self, catalog, session):
        response = await catalog.dispatch("nope", {}, _context(catalog, "nope", {}, session))
        assert response.error.kind == ErrorKind.NOT_FOUND
        assert response.meta.tool_id == "nope"
        assert response.meta.tool_version is None

    @pytest.mark.asyncio
    async def test_tool_error_becomes_failure_envelope(self, catalog, handlers, session):
        handlers["search_docs"].outcomes.append(
            ToolError(ErrorKind.RATE_LIMIT, "slow down", retryable=True, details={"retry_after": 2})
        )
        args = {"query": "x"}
        response = await catalog.dispatch(
            "search_docs", args, _context(catalog, "search_docs", args, session)
        )
        assert response.ok is False
        assert response.error.kind == ErrorKind.RATE_LIMIT
        assert response.error.retryable is True
        assert response.error.details == {"retry_after": 2}
        assert response.error.partial_side_effects is False

    @pytest.mark.asyncio
    async def test_crash_becomes_internal(self, catalog, handlers, session):
        handlers["format_date"].outcomes.append(RuntimeError("kaboom"))
        response = await catalog.dispatch(
            "format_date", {}, _context(catalog, "format_date", {}, session)
        )
        assert response.error.kind == ErrorKind.INTERNAL
        assert response.error.partial_side_effects is True
        assert "kaboom" in response.error.message

    @pytest.mark.asyncio
    async def test_non_envelope_return_becomes_internal(self, catalog, handlers, session):
        handlers["format_date"].outcomes.append(lambda _a, _c: {"raw": "dict"})
        response = await catalog.dispatch(
            "format_date", {}, _context(catalog, "format_date", {}, session)
        )
        assert response.error.kind == ErrorKind.INTERNAL

    @pytest.mark.asyncio
    async def test_handler_receives_context(self, catalog, handlers, session):
        args = {"date": "2026-01-01"}
        context = _context(catalog, "format_date", args, session)
        await catalog.dispatch("format_date", args, context)
        received_args, received_context = handlers["format_date"].calls[0]
        assert received_args == args
        assert received_context is context


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQueries:
    def test_list_tools_by_mode(self, catalog):
        voice = [d.tool_id for d in catalog.list_tools(ToolMode.voice)]
        assert voice == ["format_date", "search_docs"]

    def test_provider_schemas(self, catalog):
        openai = catalog.provider_schemas("openai", ToolMode.voice)
        assert [s["function"]["name"] for s in openai] == ["format_date", "search_docs"]
        gemini = catalog.provider_schemas("geminiNative")
        assert len(gemini) == 4

    def test_unknown_provider(self, catalog):
        with pytest.raises(ValueError, match="Unsupported provider"):
            catalog.provider_schemas("anthropic")

    def test_summaries_and_documentation(self, catalog):
        summaries = catalog.summaries(ToolMode.text)
        assert "**search_docs** (retrieval): Runs search_docs" in summaries
        assert catalog.documentation("send_email") == "Long-form docs for send_email."
        assert catalog.documentation("nope") is None

    def test_envelope_discriminant(self):
        with pytest.raises(ValueError):
            ToolResponse(ok=True, error={"kind": "INTERNAL", "message": "x"})
        with pytest.raises(ValueError):
            ToolResponse(ok=False)
