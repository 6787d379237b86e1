from __future__ import annotations

from abc import ABC, abstractmethod
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.tools.context import ExecutionContext
    from src.tools.response import ToolResponse


class ToolCategory(StrEnum):
    """Drives per-turn quotas and dedup eligibility."""

    retrieval = "retrieval"
    action = "action"
    utility = "utility"


class SideEffects(StrEnum):
    none = "none"
    read_only = "read_only"
    writes = "writes"


class ToolMode(StrEnum):
    voice = "voice"
    text = "text"


class ToolHandler(ABC):
    """Executable body for one declared tool.

    The contract (schema, category, modes, flags) comes from the registry
    artifact, not from the handler. A handler is bound to exactly one
    descriptor by exact tool_id match.

    Handlers MUST NOT mutate session state directly: state changes are
    returned as intents on the ToolResponse and applied by the session's
    StateController.
    """

    @property
    @abstractmethod
    def tool_id(self) -> str:
        """Exact id of the descriptor this handler implements."""
        ...

    @abstractmethod
    async def execute(
        self, arguments: dict, context: ExecutionContext
    ) -> ToolResponse:
        """Run the tool with schema-validated arguments.

        Raise ToolError for expected domain failures; anything else is
        reported as INTERNAL by the catalog.
        """
        ...
