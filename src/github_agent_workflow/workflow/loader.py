"""Load and validate workflow definitions.

Definitions come from YAML/JSON mappings or from a markdown step table. A
definition is either returned fully validated or rejected with
:class:`DefinitionError`; nothing is ever partially loaded.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .conditions import (
    ChildrenSource,
    ConditionSyntaxError,
    CountSource,
    InputRef,
    Reference,
    StepOutputRef,
    StepStatusRef,
    parse_condition,
    parse_count_source,
    parse_reference,
    references,
)
from .definition import (
    FanOutSpec,
    InputSpec,
    Instructions,
    OutputSpec,
    Step,
    StepMode,
    WorkflowDefinition,
)

logger = logging.getLogger(__name__)


class DefinitionError(Exception):
    """Malformed pipeline definition. Fatal: no run can start."""

    def __init__(
        self, message: str, *, step_id: str | None = None, reference: str | None = None
    ) -> None:
        super().__init__(message)
        self.step_id = step_id
        self.reference = reference


class RawInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    required: bool = True
    default: Any = None
    description: str = ""


class RawOutput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    source: str | None = None
    description: str = ""


class RawFanOut(BaseModel):
    model_config = ConfigDict(extra="forbid")

    source: str
    category: str | None = None


class RawStep(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    role: str
    instructions: str = ""
    mode: StepMode = StepMode.IMPLEMENT
    requires: list[str] = Field(default_factory=list)
    optional: list[str] = Field(default_factory=list)
    inputs: dict[str, str] = Field(default_factory=dict)
    condition: str | None = None
    fan_out: str | RawFanOut | None = None
    depends_on: list[str] = Field(default_factory=list)


class RawWorkflow(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    description: str = ""
    inputs: list[RawInput] = Field(default_factory=list)
    outputs: list[RawOutput] = Field(default_factory=list)
    steps: list[RawStep]


def load_definition(path: Path) -> WorkflowDefinition:
    """Load a definition file (.yaml, .yml, .json or .md)."""

    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise DefinitionError(f"Cannot read definition {path}: {e}") from e

    suffix = path.suffix.lower()
    if suffix == ".md":
        definition = parse_markdown_definition(text, default_id=path.stem)
    elif suffix in {".yaml", ".yml"}:
        try:
            raw = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise DefinitionError(f"Invalid YAML in {path}: {e}") from e
        definition = parse_definition(raw)
    elif suffix == ".json":
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            raise DefinitionError(f"Invalid JSON in {path}: {e}") from e
        definition = parse_definition(raw)
    else:
        raise DefinitionError(f"Unsupported definition format: {path.suffix or '(none)'}")

    logger.info(
        "Workflow definition loaded",
        extra={"workflow_id": definition.id, "path": str(path), "steps": definition.step_ids},
    )
    return definition


def parse_definition(raw: object) -> WorkflowDefinition:
    """Validate a raw mapping and build the typed definition."""

    if not isinstance(raw, Mapping):
        raise DefinitionError("Definition must be a mapping")
    try:
        workflow = RawWorkflow.model_validate(raw)
    except ValidationError as e:
        raise DefinitionError(f"Invalid definition: {e}") from e
    return _build(workflow)


def _build(raw: RawWorkflow) -> WorkflowDefinition:
    if not raw.id.strip():
        raise DefinitionError("Workflow id is required")
    if not raw.steps:
        raise DefinitionError("Workflow has no steps")

    inputs = _build_inputs(raw.inputs)
    input_names = {i.name for i in inputs}

    steps: list[Step] = []
    seen: dict[str, int] = {}
    for index, raw_step in enumerate(raw.steps):
        step_id = raw_step.id.strip()
        if not step_id:
            raise DefinitionError(f"Step #{index + 1} has no id")
        if step_id in seen:
            raise DefinitionError(f"Duplicate step id {step_id!r}", step_id=step_id)
        if not raw_step.role.strip():
            raise DefinitionError(f"Step {step_id!r} has no bound role", step_id=step_id)
        seen[step_id] = index
        steps.append(_build_step(raw_step, step_id=step_id))

    for step in steps:
        _check_step_inputs(step, inputs)

    _check_acyclic(steps)
    for index, step in enumerate(steps):
        _check_step_references(step, index=index, order=seen, input_names=input_names)

    outputs = []
    for raw_output in raw.outputs:
        source = _parse_ref(raw_output.source, context=f"output {raw_output.name!r}")
        if source is not None:
            _check_reference(source, index=len(steps), order=seen, input_names=input_names)
        outputs.append(
            OutputSpec(name=raw_output.name, source=source, description=raw_output.description)
        )

    return WorkflowDefinition(
        id=raw.id.strip(),
        steps=tuple(steps),
        inputs=tuple(inputs),
        outputs=tuple(outputs),
        description=raw.description,
    )


def _build_inputs(raw_inputs: list[RawInput]) -> list[InputSpec]:
    specs: list[InputSpec] = []
    names: set[str] = set()
    for raw in raw_inputs:
        name = raw.name.strip()
        if not name:
            raise DefinitionError("Input with empty name")
        if name in names:
            raise DefinitionError(f"Duplicate input {name!r}", reference=name)
        if raw.required and raw.default is not None:
            raise DefinitionError(
                f"Required input {name!r} must not declare a default", reference=name
            )
        names.add(name)
        specs.append(
            InputSpec(
                name=name,
                required=raw.required,
                default=raw.default,
                description=raw.description,
            )
        )
    return specs


def _parse_ref(text: str | None, *, context: str, step_id: str | None = None) -> Reference | None:
    if text is None or not text.strip():
        return None
    try:
        return parse_reference(text)
    except ConditionSyntaxError as e:
        raise DefinitionError(f"{context}: {e}", step_id=step_id, reference=text) from e


_CHILDREN_RE = re.compile(r"^children\s*(?:\(\s*category\s*==?\s*[\"']?([^\"')]+?)[\"']?\s*\))?$")


def _parse_fan_out(raw: str | RawFanOut | None, *, step_id: str) -> FanOutSpec | None:
    if raw is None:
        return None
    try:
        if isinstance(raw, RawFanOut):
            source: CountSource = parse_count_source(raw.source, raw.category)
            return FanOutSpec(source=source, expression=str(source))
        text = raw.strip()
        if not text:
            return None
        match = _CHILDREN_RE.match(text)
        if match is not None:
            return FanOutSpec(source=ChildrenSource(match.group(1)), expression=text)
        return FanOutSpec(source=parse_count_source(text), expression=text)
    except ConditionSyntaxError as e:
        raise DefinitionError(
            f"Step {step_id!r} has an invalid fan-out source: {e}", step_id=step_id
        ) from e


def _build_step(raw: RawStep, *, step_id: str) -> Step:
    condition = None
    condition_text = (raw.condition or "").strip()
    if condition_text:
        try:
            condition = parse_condition(condition_text)
        except ConditionSyntaxError as e:
            raise DefinitionError(
                f"Step {step_id!r} has an invalid condition: {e}", step_id=step_id
            ) from e

    input_map: list[tuple[str, Reference]] = []
    for dest, src in raw.inputs.items():
        ref = _parse_ref(src, context=f"Step {step_id!r} input {dest!r}", step_id=step_id)
        if ref is not None:
            input_map.append((dest, ref))

    return Step(
        id=step_id,
        role=raw.role.strip(),
        instructions=Instructions(text=raw.instructions, mode=raw.mode),
        requires=tuple(n.strip() for n in raw.requires if n.strip()),
        optional=tuple(n.strip() for n in raw.optional if n.strip()),
        input_map=tuple(input_map),
        condition=condition,
        condition_text=condition_text,
        fan_out=_parse_fan_out(raw.fan_out, step_id=step_id),
        depends_on=tuple(d.strip() for d in raw.depends_on if d.strip()),
    )


def _check_step_inputs(step: Step, inputs: list[InputSpec]) -> None:
    by_name = {i.name: i for i in inputs}
    for name in step.requires:
        spec = by_name.get(name)
        if spec is None:
            raise DefinitionError(
                f"Step {step.id!r} requires undeclared input {name!r}",
                step_id=step.id,
                reference=name,
            )
        if not spec.required and spec.default is None:
            raise DefinitionError(
                f"Step {step.id!r} requires input {name!r}, which is optional without a default",
                step_id=step.id,
                reference=name,
            )
    for name in step.optional:
        if name not in by_name:
            raise DefinitionError(
                f"Step {step.id!r} reads undeclared input {name!r}",
                step_id=step.id,
                reference=name,
            )


def _step_reads(step: Step) -> list[Reference | CountSource]:
    reads: list[Reference | CountSource] = list(references(step.condition))
    reads.extend(ref for _, ref in step.input_map)
    if step.fan_out is not None:
        reads.append(step.fan_out.source)
    return reads


def _edges(step: Step) -> set[str]:
    deps = set(step.depends_on)
    for ref in _step_reads(step):
        if isinstance(ref, (StepOutputRef, StepStatusRef)):
            deps.add(ref.step_id)
    return deps


def _check_acyclic(steps: list[Step]) -> None:
    known = {s.id for s in steps}
    graph = {s.id: _edges(s) for s in steps}
    for step in steps:
        for dep in step.depends_on:
            if dep not in known:
                raise DefinitionError(
                    f"Step {step.id!r} depends on unknown step {dep!r}",
                    step_id=step.id,
                    reference=dep,
                )

    visiting: list[str] = []
    done: set[str] = set()

    def visit(node: str) -> None:
        if node in done:
            return
        if node in visiting:
            cycle = visiting[visiting.index(node) :] + [node]
            raise DefinitionError(
                f"Dependency cycle: {' -> '.join(cycle)}", step_id=node, reference=cycle[-2]
            )
        visiting.append(node)
        for dep in sorted(graph.get(node, set()) & known):
            visit(dep)
        visiting.pop()
        done.add(node)

    for step in steps:
        visit(step.id)


def _check_reference(
    ref: Reference | CountSource,
    *,
    index: int,
    order: dict[str, int],
    input_names: set[str],
    step_id: str | None = None,
) -> None:
    if isinstance(ref, ChildrenSource):
        return
    if isinstance(ref, InputRef):
        if ref.name not in input_names:
            raise DefinitionError(
                f"Reference {ref} names an undeclared input",
                step_id=step_id,
                reference=str(ref),
            )
        return
    position = order.get(ref.step_id)
    if position is None:
        raise DefinitionError(
            f"Reference {ref} names an unknown step", step_id=step_id, reference=str(ref)
        )
    if position >= index:
        raise DefinitionError(
            f"Reference {ref} reads a step that does not run earlier",
            step_id=step_id,
            reference=str(ref),
        )


def _check_step_references(
    step: Step, *, index: int, order: dict[str, int], input_names: set[str]
) -> None:
    for ref in _step_reads(step):
        _check_reference(ref, index=index, order=order, input_names=input_names, step_id=step.id)
    for dep in step.depends_on:
        if order[dep] >= index:
            raise DefinitionError(
                f"Step {step.id!r} depends on {dep!r}, which is declared later",
                step_id=step.id,
                reference=dep,
            )


_TABLE_SEPARATOR_RE = re.compile(r"^\|?\s*:?-{2,}:?\s*(\|\s*:?-{2,}:?\s*)*\|?$")


# Cell separators; a literal pipe inside a cell is written as \|.
_CELL_SPLIT_RE = re.compile(r"(?<!\\)\|")


def _split_row(line: str) -> list[str]:
    stripped = line.strip()
    if stripped.startswith("|"):
        stripped = stripped[1:]
    if stripped.endswith("|") and not stripped.endswith("\\|"):
        stripped = stripped[:-1]
    return [cell.replace("\\|", "|").strip() for cell in _CELL_SPLIT_RE.split(stripped)]


def _markdown_tables(text: str) -> list[list[dict[str, str]]]:
    tables: list[list[dict[str, str]]] = []
    header: list[str] | None = None
    rows: list[dict[str, str]] = []
    for line in text.splitlines() + [""]:
        if line.strip().startswith("|"):
            if _TABLE_SEPARATOR_RE.match(line.strip()):
                continue
            cells = _split_row(line)
            if header is None:
                header = [c.lower().replace("-", " ").strip() for c in cells]
            else:
                rows.append(dict(zip(header, cells, strict=False)))
            continue
        if header is not None:
            tables.append(rows)
            header, rows = None, []
    return tables


def _cell(row: dict[str, str], *names: str) -> str:
    for name in names:
        value = row.get(name)
        if value is not None:
            value = value.strip().strip("`")
            return "" if value == "-" else value
    return ""


def _names(cell: str) -> list[str]:
    return [n.strip() for n in cell.strip("{}").split(",") if n.strip()]


def parse_markdown_definition(text: str, *, default_id: str = "workflow") -> WorkflowDefinition:
    """Parse a markdown document holding an optional inputs table and a step table."""

    workflow_id = default_id
    for line in text.splitlines():
        if line.startswith("# "):
            workflow_id = line[2:].strip()
            break

    step_rows: list[dict[str, str]] | None = None
    input_rows: list[dict[str, str]] = []
    for table in _markdown_tables(text):
        if not table:
            continue
        columns = set(table[0])
        if "step" in columns and "role" in columns:
            step_rows = table
        elif "input" in columns:
            input_rows = table

    if step_rows is None:
        raise DefinitionError("No step table (columns 'step' and 'role') found")

    steps: list[dict[str, object]] = []
    declared: dict[str, bool] = {}
    for row in step_rows:
        requires = _names(_cell(row, "required inputs", "requires"))
        optional = _names(_cell(row, "optional inputs", "optional"))
        for name in requires:
            declared[name] = True
        for name in optional:
            declared.setdefault(name, False)
        step: dict[str, object] = {
            "id": _cell(row, "step", "step id"),
            "role": _cell(row, "role", "agent"),
            "requires": requires,
            "optional": optional,
            "depends_on": _names(_cell(row, "depends on", "depends_on")),
            "instructions": _cell(row, "instructions"),
        }
        if condition := _cell(row, "condition"):
            step["condition"] = condition
        if fan_out := _cell(row, "fan out", "fan out source", "fanout"):
            step["fan_out"] = fan_out
        if mode := _cell(row, "mode"):
            step["mode"] = mode
        steps.append(step)

    inputs: list[dict[str, object]] = []
    if input_rows:
        for row in input_rows:
            required = _cell(row, "required").lower() in {"yes", "true", "required", "y", "x"}
            default = _cell(row, "default") or None
            inputs.append(
                {
                    "name": _cell(row, "input", "name"),
                    "required": required,
                    "default": default,
                    "description": _cell(row, "description"),
                }
            )
    else:
        inputs = [{"name": name, "required": req} for name, req in declared.items()]

    return parse_definition({"id": workflow_id, "inputs": inputs, "steps": steps})
