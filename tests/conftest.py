"""Shared fixtures: an in-memory registry artifact, scripted handlers, and settings.

The test artifact has one tool per category plus a confirmation-gated action:
- search_docs   retrieval, voice + text
- lookup_order  retrieval, text only
- send_email    action, text only, requires confirmation, not idempotent
- format_date   utility, voice + text
"""

from __future__ import annotations

import copy
import inspect
from typing import Any

import pytest

from src.config.settings import (
    ContextSettings,
    LoggingSettings,
    OpenAISettings,
    RetrySettings,
    Settings,
)
from src.infra.metrics import MetricsStore
from src.session.handle import SessionHandle
from src.tools.artifact import RegistryArtifact
from src.tools.base import ToolHandler
from src.tools.registry import ToolCatalog
from src.tools.response import ToolResponse

SEARCH_SCHEMA = {
    "type": "object",
    "properties": {
        "query": {"type": "string", "minLength": 1},
        "limit": {"type": "integer", "minimum": 1, "maximum": 50},
    },
    "required": ["query"],
}


def _tool(
    tool_id: str,
    *,
    category: str,
    schema: dict,
    side_effects: str = "read_only",
    idempotent: bool = True,
    requires_confirmation: bool = False,
    modes: tuple[str, ...] = ("voice", "text"),
    latency_budget_ms: int = 1000,
) -> dict:
    return {
        "toolId": tool_id,
        "version": "1.0.0",
        "category": category,
        "sideEffects": side_effects,
        "idempotent": idempotent,
        "requiresConfirmation": requires_confirmation,
        "allowedModes": list(modes),
        "latencyBudgetMs": latency_budget_ms,
        "description": f"{tool_id} test tool",
        "summary": f"Runs {tool_id}",
        "documentation": f"Long-form docs for {tool_id}.",
        "jsonSchema": schema,
        "providerSchemas": {
            "openai": {"type": "function", "function": {"name": tool_id}},
            "geminiNative": {"name": tool_id},
        },
    }


ARTIFACT = {
    "version": "test-1",
    "contentHash": None,
    "gitCommit": "abc1234",
    "buildTimestamp": "2026-01-01T00:00:00Z",
    "tools": [
        _tool("search_docs", category="retrieval", schema=SEARCH_SCHEMA),
        _tool(
            "lookup_order",
            category="retrieval",
            modes=("text",),
            schema={
                "type": "object",
                "properties": {"order_id": {"type": "string"}},
                "required": ["order_id"],
            },
        ),
        _tool(
            "send_email",
            category="action",
            side_effects="writes",
            idempotent=False,
            requires_confirmation=True,
            modes=("text",),
            schema={
                "type": "object",
                "properties": {"to": {"type": "string"}, "subject": {"type": "string"}},
                "required": ["to", "subject"],
            },
        ),
        _tool(
            "format_date",
            category="utility",
            side_effects="none",
            schema={"type": "object", "properties": {"date": {"type": "string"}}, "required": []},
        ),
    ],
}


def _default_result(arguments: dict, _context: Any) -> ToolResponse:
    if "query" in arguments:
        return ToolResponse.success({"results": [{"title": f"Doc about {arguments['query']}"}]})
    return ToolResponse.success({"echo": arguments})


class ScriptedHandler(ToolHandler):
    """Records every call; replays scripted outcomes, then falls back to default.

    An outcome is a ToolResponse, an exception to raise, or a callable
    (arguments, context) returning either of those (or an awaitable of one).
    """

    def __init__(self, tool_id: str, *outcomes: Any, default: Any = _default_result) -> None:
        self._tool_id = tool_id
        self.outcomes = list(outcomes)
        self.default = default
        self.calls: list[tuple[dict, Any]] = []

    @property
    def tool_id(self) -> str:
        return self._tool_id

    async def execute(self, arguments: dict, context: Any) -> ToolResponse:
        self.calls.append((arguments, context))
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if callable(outcome):
            outcome = outcome(arguments, context)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


@pytest.fixture()
def artifact_dict() -> dict:
    return copy.deepcopy(ARTIFACT)


@pytest.fixture()
def artifact(artifact_dict) -> RegistryArtifact:
    return RegistryArtifact.model_validate(artifact_dict)


@pytest.fixture()
def handlers() -> dict[str, ScriptedHandler]:
    return {t["toolId"]: ScriptedHandler(t["toolId"]) for t in ARTIFACT["tools"]}


@pytest.fixture()
def metrics() -> MetricsStore:
    return MetricsStore()


@pytest.fixture()
def catalog(artifact, handlers, metrics) -> ToolCatalog:
    """Loaded, fully bound, and locked."""
    catalog = ToolCatalog(metrics=metrics)
    catalog.load_artifact(artifact)
    for handler in handlers.values():
        catalog.bind(handler)
    catalog.lock()
    return catalog


@pytest.fixture()
def session() -> SessionHandle:
    return SessionHandle("sess_test")


@pytest.fixture()
def settings() -> Settings:
    """Deterministic settings: no model client, chars/4 token estimates, fast retries."""
    return Settings(
        openai=OpenAISettings(api_key=""),
        context=ContextSettings(tokenizer_model=None),
        retry=RetrySettings(initial_delay_ms=1.0, max_delay_ms=5.0),
        logging=LoggingSettings(json_output=False),
    )
