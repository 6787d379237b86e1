from __future__ import annotations

from src.memory.tool_memory import ToolMemoryStore
from src.tools.builtins.end_session import EndSessionTool
from src.tools.builtins.ignore_user import IgnoreUserTool
from src.tools.builtins.query_tool_memory import QueryToolMemoryTool
from src.tools.registry import ToolCatalog

BUILTIN_TOOL_IDS = frozenset({"query_tool_memory", "end_session", "ignore_user"})


def register_builtins(catalog: ToolCatalog, *, tool_memory: ToolMemoryStore) -> None:
    """Bind every built-in handler whose descriptor is in the loaded artifact.

    Artifacts without a given built-in are allowed (e.g. a text-only deployment
    that ships no end_session descriptor).
    """
    handlers = [
        QueryToolMemoryTool(tool_memory),
        EndSessionTool(),
        IgnoreUserTool(),
    ]
    for handler in handlers:
        if catalog.describe(handler.tool_id) is not None:
            catalog.bind(handler)
