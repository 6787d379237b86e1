from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.session.handle import SessionHandle
    from src.session.state import SessionState
    from src.tools.artifact import ToolDescriptor
    from src.tools.base import ToolMode


@dataclass(frozen=True)
class ExecutionContext:
    """Per-call context handed to a tool handler by the catalog.

    Owned by exactly one call and never retained past it. state is a frozen
    snapshot; handlers request state changes by returning intents.
    transport carries opaque side-effect handles (socket, live model session)
    supplied by the caller.
    """

    session: SessionHandle
    mode: ToolMode
    arguments: Mapping[str, Any]
    state: SessionState
    descriptor: ToolDescriptor
    turn: int = 0
    call_id: str = ""
    capabilities: frozenset[str] = frozenset()
    transport: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def has_capability(self, name: str) -> bool:
        return name in self.capabilities
