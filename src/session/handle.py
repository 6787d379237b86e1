from __future__ import annotations

import uuid
from dataclasses import dataclass


@dataclass(frozen=True)
class SessionHandle:
    """Opaque session identity shared by every session-scoped store.

    Policy, loop detection, tool memory, and context windows all key their
    per-session data by this type, so isolation is enforced in one place:
    two handles are the same session iff their ids are equal.
    """

    id: str

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("SessionHandle id must be non-empty")

    @classmethod
    def new(cls) -> SessionHandle:
        return cls(id=f"sess_{uuid.uuid4().hex}")

    def __str__(self) -> str:
        return self.id
