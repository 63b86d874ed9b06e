"""Typed, immutable pipeline definitions.

A definition is produced once by :mod:`github_agent_workflow.workflow.loader` and
is shared read-only by every run of it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from .conditions import Condition, CountSource, Reference


class StepMode(str, Enum):
    IMPLEMENT = "implement"
    COMMENT_ONLY = "comment_only"


@dataclass(frozen=True, slots=True)
class Instructions:
    """Opaque payload forwarded to the executor.

    The engine never interprets the text. The mode flag distinguishes roles that
    implement changes from their "only comment" variants.
    """

    text: str = ""
    mode: StepMode = StepMode.IMPLEMENT

    def to_payload(self) -> dict[str, object]:
        return {"text": self.text, "mode": self.mode.value}


@dataclass(frozen=True, slots=True)
class InputSpec:
    name: str
    required: bool = True
    default: object | None = None
    description: str = ""


@dataclass(frozen=True, slots=True)
class OutputSpec:
    name: str
    source: Reference | None = None
    description: str = ""


@dataclass(frozen=True, slots=True)
class FanOutSpec:
    """Where a fan-out step finds its dynamic item list."""

    source: CountSource
    expression: str


@dataclass(frozen=True, slots=True)
class Step:
    id: str
    role: str
    instructions: Instructions = field(default_factory=Instructions)
    requires: tuple[str, ...] = ()
    optional: tuple[str, ...] = ()
    input_map: tuple[tuple[str, Reference], ...] = ()
    condition: Condition | None = None
    condition_text: str = ""
    fan_out: FanOutSpec | None = None
    depends_on: tuple[str, ...] = ()

    @property
    def is_fan_out(self) -> bool:
        return self.fan_out is not None


@dataclass(frozen=True, slots=True)
class WorkflowDefinition:
    id: str
    steps: tuple[Step, ...]
    inputs: tuple[InputSpec, ...] = ()
    outputs: tuple[OutputSpec, ...] = ()
    description: str = ""

    def step(self, step_id: str) -> Step:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    def input_spec(self, name: str) -> InputSpec | None:
        for spec in self.inputs:
            if spec.name == name:
                return spec
        return None

    @property
    def step_ids(self) -> list[str]:
        return [s.id for s in self.steps]

    @property
    def required_inputs(self) -> list[str]:
        return [i.name for i in self.inputs if i.required]
