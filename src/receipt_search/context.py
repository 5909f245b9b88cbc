"""
Operations context.

The only way pipeline code reaches the document store. Built once at
process start and passed into every operation; there is no module-level
store handle.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .state_store import StateStore


@dataclass(frozen=True)
class OperationsContext:
    """Store handle plus the user an operation runs for."""

    store: StateStore
    user_id: str | None = None

    def for_user(self, user_id: str) -> OperationsContext:
        return replace(self, user_id=user_id)

    def require_user(self) -> str:
        if not self.user_id:
            raise ValueError("Operation requires a user-bound context")
        return self.user_id
