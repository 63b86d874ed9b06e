from __future__ import annotations

from enum import Enum


class LifecycleState(str, Enum):
    BACKLOG = "backlog"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    IN_REVIEW = "in_review"
    DONE = "done"

    @property
    def index(self) -> int:
        return _ORDER.index(self)

    @property
    def column(self) -> str:
        """Human-readable board column name."""

        return _COLUMNS[self]

    @classmethod
    def parse(cls, value: str) -> LifecycleState:
        """Parse a state from its value or its column name (case/space insensitive)."""

        normalized = value.strip().lower().replace(" ", "_").replace("-", "_")
        for state in cls:
            if normalized in {state.value, state.column.lower().replace(" ", "_")}:
                return state
        raise ValueError(f"Unknown lifecycle state: {value!r}")


_ORDER: tuple[LifecycleState, ...] = tuple(LifecycleState)

_COLUMNS: dict[LifecycleState, str] = {
    LifecycleState.BACKLOG: "Backlog",
    LifecycleState.READY: "Ready",
    LifecycleState.IN_PROGRESS: "In progress",
    LifecycleState.IN_REVIEW: "In review",
    LifecycleState.DONE: "Done",
}


# Forward-only: any later column is reachable, earlier ones never are.
ALLOWED_TRANSITIONS: dict[LifecycleState, set[LifecycleState]] = {
    state: {later for later in _ORDER if later.index > state.index} for state in _ORDER
}


class IllegalTransitionError(ValueError):
    pass


def check_transition(*, current: LifecycleState, to: LifecycleState) -> None:
    allowed = ALLOWED_TRANSITIONS.get(current, set())
    if to not in allowed:
        raise IllegalTransitionError(f"Illegal transition: {current.value} -> {to.value}")
