"""Tracker interface consumed by the workflow engine.

The tracker owns work items and their lifecycle column. The engine only mirrors
that state; it never assumes a transition happened unless the tracker said so.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from github_agent_workflow.workflow.lifecycle import LifecycleState


@dataclass(frozen=True, slots=True)
class ItemRef:
    """Opaque reference to an externally tracked work item."""

    id: str
    url: str | None = None
    category: str | None = None

    def __str__(self) -> str:
        return self.id


class UnsupportedOperationError(Exception):
    """Raised when the tracker lacks a capability (e.g. no board-column API)."""

    def __init__(self, operation: str, detail: str = "") -> None:
        message = f"Unsupported tracker operation {operation!r}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.operation = operation
        self.detail = detail


class Tracker(Protocol):
    def create_child_item(self, parent: ItemRef, category: str, body: str) -> ItemRef: ...

    def list_children(self, parent: ItemRef, category: str | None = None) -> list[ItemRef]: ...

    def get_lifecycle_state(self, ref: ItemRef) -> LifecycleState: ...

    def set_lifecycle_state(self, ref: ItemRef, state: LifecycleState) -> None:
        """Move the item to `state`.

        Raises:
            UnsupportedOperationError: the tracker cannot perform column moves.
        """
        ...

    def append_annotation(self, ref: ItemRef, text: str) -> None: ...
