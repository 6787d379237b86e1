"""Startup wiring: settings → logging → catalog (load, bind, lock) → stores → orchestrator."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

import structlog

from src.agent.context_window import ConversationContextManager
from src.agent.loop_detector import LoopDetector
from src.agent.model_client import ModelClient, OpenAICompatModelClient
from src.config.settings import Settings, get_settings
from src.gateway.dispatch import ToolOrchestrator
from src.gateway.policy import PolicyEnforcer
from src.infra.logging import setup_logging
from src.infra.metrics import MetricsStore
from src.memory.dedup import ToolMemoryDedup
from src.memory.summarizer import ToolMemorySummarizer
from src.memory.tool_memory import ToolMemoryStore
from src.session.manager import SessionManager
from src.tools.artifact import RegistryArtifact
from src.tools.base import ToolHandler
from src.tools.builtins import register_builtins
from src.tools.registry import ToolCatalog

logger = structlog.get_logger()


@dataclass
class Runtime:
    settings: Settings
    metrics: MetricsStore
    catalog: ToolCatalog
    policy: PolicyEnforcer
    loop_detector: LoopDetector
    tool_memory: ToolMemoryStore
    context: ConversationContextManager
    sessions: SessionManager
    orchestrator: ToolOrchestrator


def build_runtime(
    settings: Settings | None = None,
    *,
    handlers: Iterable[ToolHandler] = (),
    artifact: RegistryArtifact | None = None,
    model_client: ModelClient | None = None,
    configure_logging: bool = True,
) -> Runtime:
    """Build and lock the whole tool orchestration runtime.

    Raises CatalogError when the registry artifact is missing or invalid, or
    when a descriptor is left without a handler: the process must not start
    with a partial tool set.
    """
    settings = settings or get_settings()
    if configure_logging:
        setup_logging(json_output=settings.logging.json_output, log_level=settings.logging.level)

    if model_client is None and settings.openai.api_key:
        model_client = OpenAICompatModelClient.from_settings(settings.openai)
    if model_client is None:
        logger.info("summaries_rule_based", msg="No OPENAI_API_KEY; using fallback summaries")

    metrics = MetricsStore()
    catalog = ToolCatalog(metrics=metrics)
    if artifact is not None:
        catalog.load_artifact(artifact, verify_content_hash=settings.catalog.verify_content_hash)
    else:
        catalog.load(
            settings.catalog.registry_path,
            verify_content_hash=settings.catalog.verify_content_hash,
        )

    tool_memory = ToolMemoryStore(settings.tool_memory)
    register_builtins(catalog, tool_memory=tool_memory)
    for handler in handlers:
        catalog.bind(handler)
    if settings.catalog.lock_on_load:
        catalog.lock()

    policy = PolicyEnforcer(settings.policy, metrics=metrics)
    loop_detector = LoopDetector(settings.loop, metrics=metrics)
    context = ConversationContextManager(settings.context, model_client=model_client)
    sessions = SessionManager(
        policy=policy,
        loop_detector=loop_detector,
        tool_memory=tool_memory,
        context=context,
        catalog=catalog,
    )
    orchestrator = ToolOrchestrator(
        catalog=catalog,
        sessions=sessions,
        policy=policy,
        loop_detector=loop_detector,
        tool_memory=tool_memory,
        retry_settings=settings.retry,
        dedup=ToolMemoryDedup(tool_memory, settings.tool_memory),
        summarizer=ToolMemorySummarizer(tool_memory, settings.tool_memory, model_client),
        metrics=metrics,
    )
    logger.info(
        "runtime_ready",
        registry_version=catalog.version,
        content_hash=catalog.content_hash,
        tools=len(catalog.list_tools()),
        locked=catalog.locked,
    )
    return Runtime(
        settings=settings,
        metrics=metrics,
        catalog=catalog,
        policy=policy,
        loop_detector=loop_detector,
        tool_memory=tool_memory,
        context=context,
        sessions=sessions,
        orchestrator=orchestrator,
    )
