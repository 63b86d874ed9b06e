"""In-memory tracker used for dry runs and tests.

It behaves like a board with a lifecycle column per item. Column moves can be
switched off to exercise the annotation fallback.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field

from github_agent_workflow.tracker.base import ItemRef, UnsupportedOperationError
from github_agent_workflow.workflow.lifecycle import LifecycleState


@dataclass
class _Item:
    ref: ItemRef
    parent: ItemRef | None
    body: str
    state: LifecycleState = LifecycleState.BACKLOG
    annotations: list[str] = field(default_factory=list)


class InMemoryTracker:
    def __init__(self, *, supports_transitions: bool = True, prefix: str = "item") -> None:
        self.supports_transitions = supports_transitions
        self._prefix = prefix
        self._items: dict[str, _Item] = {}
        self._counter = 0
        self._lock = threading.Lock()
        self.set_state_calls: list[tuple[str, LifecycleState]] = []

    def add_item(
        self,
        *,
        body: str = "",
        category: str | None = None,
        parent: ItemRef | None = None,
        state: LifecycleState = LifecycleState.BACKLOG,
    ) -> ItemRef:
        with self._lock:
            self._counter += 1
            ref = ItemRef(id=f"{self._prefix}-{self._counter}", category=category)
            self._items[ref.id] = _Item(ref=ref, parent=parent, body=body, state=state)
            return ref

    def create_child_item(self, parent: ItemRef, category: str, body: str) -> ItemRef:
        self._get(parent)
        return self.add_item(body=body, category=category, parent=parent)

    def list_children(self, parent: ItemRef, category: str | None = None) -> list[ItemRef]:
        with self._lock:
            children = [
                item.ref
                for item in self._items.values()
                if item.parent is not None and item.parent.id == parent.id
            ]
        if category is not None:
            children = [c for c in children if c.category == category]
        return children

    def get_lifecycle_state(self, ref: ItemRef) -> LifecycleState:
        return self._get(ref).state

    def set_lifecycle_state(self, ref: ItemRef, state: LifecycleState) -> None:
        item = self._get(ref)
        if not self.supports_transitions:
            raise UnsupportedOperationError("set_lifecycle_state", "board columns disabled")
        with self._lock:
            self.set_state_calls.append((ref.id, state))
            item.state = state

    def append_annotation(self, ref: ItemRef, text: str) -> None:
        item = self._get(ref)
        with self._lock:
            item.annotations.append(text)

    def annotations(self, ref: ItemRef) -> list[str]:
        return list(self._get(ref).annotations)

    def body(self, ref: ItemRef) -> str:
        return self._get(ref).body

    def _get(self, ref: ItemRef) -> _Item:
        with self._lock:
            item = self._items.get(ref.id)
        if item is None:
            raise KeyError(f"Unknown work item: {ref.id}")
        return item
