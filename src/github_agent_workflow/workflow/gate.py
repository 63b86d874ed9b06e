"""Plan presentation and confirmation.

Nothing may run before the gate passes: a caller first gets a :class:`Plan` back
(no side effects), then confirms it with the bound inputs. Optional inputs can
stay unbound; they are resolved lazily when a step needs them.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field

from .definition import InputSpec, StepMode, WorkflowDefinition

logger = logging.getLogger(__name__)

Prompt = Callable[[InputSpec], object | None]


class MissingRequiredInputError(Exception):
    def __init__(self, missing: Sequence[str]) -> None:
        self.missing = tuple(missing)
        super().__init__(f"Missing required inputs: {', '.join(self.missing)}")


class RunCancelled(Exception):
    """The plan was not confirmed; nothing ran."""


def _is_bound(value: object) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


@dataclass(frozen=True, slots=True)
class PlanStep:
    id: str
    role: str
    mode: StepMode
    condition: str = ""
    fan_out: str = ""
    requires: tuple[str, ...] = ()
    optional: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class Plan:
    workflow_id: str
    steps: tuple[PlanStep, ...]
    inputs: tuple[InputSpec, ...]
    bound: dict[str, object] = field(default_factory=dict)
    missing: tuple[str, ...] = ()

    @property
    def ready(self) -> bool:
        return not self.missing

    def render(self) -> str:
        lines = [f"Workflow: {self.workflow_id}", "", "Inputs:"]
        if not self.inputs:
            lines.append("  (none)")
        for spec in self.inputs:
            if spec.required:
                kind = "required"
            elif spec.default is not None:
                kind = f"optional, default {spec.default!r}"
            else:
                kind = "optional"
            value = repr(self.bound[spec.name]) if spec.name in self.bound else "<unbound>"
            lines.append(f"  - {spec.name} ({kind}): {value}")

        lines.extend(["", "Steps:"])
        for number, step in enumerate(self.steps, start=1):
            line = f"  {number}. {step.id} -> {step.role}"
            if step.mode != StepMode.IMPLEMENT:
                line += f" [{step.mode.value}]"
            if step.condition:
                line += f" if {step.condition}"
            if step.fan_out:
                line += f" for each of {step.fan_out}"
            lines.append(line)

        if self.missing:
            lines.extend(["", f"Missing required inputs: {', '.join(self.missing)}"])
        return "\n".join(lines)


class InputGate:
    def __init__(self, definition: WorkflowDefinition, *, prompt: Prompt | None = None) -> None:
        self._definition = definition
        self._prompt = prompt

    def _bind(self, inputs: Mapping[str, object]) -> dict[str, object]:
        declared = {spec.name for spec in self._definition.inputs}
        unknown = sorted(set(inputs) - declared)
        if unknown:
            logger.warning(
                "Ignoring undeclared inputs",
                extra={"workflow_id": self._definition.id, "inputs": unknown},
            )
        return {k: v for k, v in inputs.items() if k in declared and _is_bound(v)}

    def present_plan(self, inputs: Mapping[str, object] | None = None) -> Plan:
        """Describe what would run. Never executes anything."""

        bound = self._bind(inputs or {})
        missing = tuple(name for name in self._definition.required_inputs if name not in bound)
        steps = tuple(
            PlanStep(
                id=step.id,
                role=step.role,
                mode=step.instructions.mode,
                condition=step.condition_text,
                fan_out=step.fan_out.expression if step.fan_out else "",
                requires=step.requires,
                optional=step.optional,
            )
            for step in self._definition.steps
        )
        return Plan(
            workflow_id=self._definition.id,
            steps=steps,
            inputs=self._definition.inputs,
            bound=bound,
            missing=missing,
        )

    def confirm(self, plan: Plan, *, approved: bool) -> dict[str, object]:
        """Pass the gate, returning the bound inputs.

        Raises:
            RunCancelled: the plan was not approved.
            MissingRequiredInputError: a required input has no value.
        """

        if not approved:
            logger.info("Plan not confirmed", extra={"workflow_id": plan.workflow_id})
            raise RunCancelled(f"Run of {plan.workflow_id!r} was not confirmed")
        if plan.missing:
            raise MissingRequiredInputError(plan.missing)
        logger.info(
            "Plan confirmed",
            extra={"workflow_id": plan.workflow_id, "inputs": sorted(plan.bound)},
        )
        return dict(plan.bound)

    def resolve_optional(self, name: str) -> object | None:
        """Value for an unbound optional input: its default, else the prompt's answer."""

        spec = self._definition.input_spec(name)
        if spec is None or spec.required:
            return None
        if spec.default is not None:
            return spec.default
        if self._prompt is None:
            return None
        value = self._prompt(spec)
        return value if _is_bound(value) else None
