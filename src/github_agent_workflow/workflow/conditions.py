"""Step conditions: a tiny predicate language over the run context.

Supported forms:
- flag equality: ``inputs.dry_run == true``, ``plan.outputs.kind != "bug"``,
  ``plan.status == "succeeded"`` or a bare reference meaning ``== true``
- existence counts: ``count(children, category="ops") > 0``,
  ``count(plan.outputs.tasks) >= 2``
- composition: ``and`` / ``or`` / ``not`` (also ``&&``, ``||``, ``!``) and parentheses

Evaluation is pure: it reads values through a :class:`ValueSource` and never
queries external systems. Unknown references are rejected at load time.
"""

from __future__ import annotations

import operator
import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Protocol


class ConditionSyntaxError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class InputRef:
    name: str

    def __str__(self) -> str:
        return f"inputs.{self.name}"


@dataclass(frozen=True, slots=True)
class StepOutputRef:
    step_id: str
    key: str

    def __str__(self) -> str:
        return f"{self.step_id}.outputs.{self.key}"


@dataclass(frozen=True, slots=True)
class StepStatusRef:
    step_id: str

    def __str__(self) -> str:
        return f"{self.step_id}.status"


@dataclass(frozen=True, slots=True)
class ChildrenSource:
    """Child items of the run's work item, optionally filtered by category."""

    category: str | None = None

    def __str__(self) -> str:
        if self.category is None:
            return "children"
        return f'children(category="{self.category}")'


Reference = InputRef | StepOutputRef | StepStatusRef
CountSource = ChildrenSource | StepOutputRef


@dataclass(frozen=True, slots=True)
class FlagEquals:
    ref: Reference
    value: object = True
    negate: bool = False


@dataclass(frozen=True, slots=True)
class CountCompare:
    source: CountSource
    op: str
    value: int


@dataclass(frozen=True, slots=True)
class And:
    parts: tuple[Condition, ...]


@dataclass(frozen=True, slots=True)
class Or:
    parts: tuple[Condition, ...]


@dataclass(frozen=True, slots=True)
class Not:
    part: Condition


Condition = FlagEquals | CountCompare | And | Or | Not


_COMPARATORS: dict[str, Callable[[int, int], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}


class ValueSource(Protocol):
    def resolve(self, ref: Reference) -> object: ...

    def count(self, source: CountSource) -> int: ...


def evaluate(condition: Condition | None, values: ValueSource) -> bool:
    """Evaluate a condition. ``None`` means unconditional."""

    if condition is None:
        return True
    if isinstance(condition, And):
        return all(evaluate(part, values) for part in condition.parts)
    if isinstance(condition, Or):
        return any(evaluate(part, values) for part in condition.parts)
    if isinstance(condition, Not):
        return not evaluate(condition.part, values)
    if isinstance(condition, CountCompare):
        return _COMPARATORS[condition.op](values.count(condition.source), condition.value)
    if isinstance(condition, FlagEquals):
        matched = _loose_equals(values.resolve(condition.ref), condition.value)
        return not matched if condition.negate else matched
    raise TypeError(f"Unsupported condition node: {condition!r}")


_TRUTHY_STRINGS = {"true", "yes", "1"}


def _loose_equals(actual: object, expected: object) -> bool:
    if isinstance(expected, bool):
        if isinstance(actual, str):
            return (actual.strip().lower() in _TRUTHY_STRINGS) is expected
        return bool(actual) is expected
    if isinstance(expected, str) and not isinstance(actual, str) and actual is not None:
        return str(getattr(actual, "value", actual)) == expected
    return actual == expected


def references(condition: Condition | None) -> Iterator[Reference | CountSource]:
    """Yield every reference a condition reads."""

    if condition is None:
        return
    if isinstance(condition, (And, Or)):
        for part in condition.parts:
            yield from references(part)
    elif isinstance(condition, Not):
        yield from references(condition.part)
    elif isinstance(condition, CountCompare):
        yield condition.source
    elif isinstance(condition, FlagEquals):
        yield condition.ref


def children_categories(condition: Condition | None) -> set[str | None]:
    return {ref.category for ref in references(condition) if isinstance(ref, ChildrenSource)}


_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<number>-?\d+)
      | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
      | (?P<op>==|!=|>=|<=|&&|\|\||[><!=(),])
      | (?P<name>[A-Za-z_][A-Za-z0-9_\-]*(?:\.[A-Za-z_][A-Za-z0-9_\-]*)*)
    )""",
    re.VERBOSE,
)


@dataclass(frozen=True, slots=True)
class _Token:
    kind: str
    text: str


def _tokenize(text: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    stripped = text.rstrip()
    while pos < len(stripped):
        match = _TOKEN_RE.match(stripped, pos)
        if match is None or match.end() == pos:
            raise ConditionSyntaxError(f"Unexpected character at {pos} in {text!r}")
        kind = match.lastgroup
        assert kind is not None
        tokens.append(_Token(kind=kind, text=match.group(kind)))
        pos = match.end()
    return tokens


def parse_reference(text: str) -> Reference:
    """Parse ``inputs.x``, ``step.outputs.key``, ``step.status`` or a bare input name."""

    parts = text.strip().split(".")
    if len(parts) == 1 and parts[0]:
        return InputRef(parts[0])
    if len(parts) == 2 and parts[0] == "inputs":
        return InputRef(parts[1])
    if len(parts) == 2 and parts[1] == "status":
        return StepStatusRef(parts[0])
    if len(parts) == 3 and parts[1] == "outputs":
        return StepOutputRef(parts[0], parts[2])
    raise ConditionSyntaxError(f"Invalid reference: {text!r}")


def parse_count_source(text: str, category: str | None = None) -> CountSource:
    if text.strip() == "children":
        return ChildrenSource(category)
    if category is not None:
        raise ConditionSyntaxError("category filter is only valid for children")
    ref = parse_reference(text)
    if not isinstance(ref, StepOutputRef):
        raise ConditionSyntaxError(f"count() needs children or a step output, got {text!r}")
    return ref


class _Parser:
    def __init__(self, text: str) -> None:
        self._text = text
        self._tokens = _tokenize(text)
        self._pos = 0

    def parse(self) -> Condition:
        if not self._tokens:
            raise ConditionSyntaxError("Empty condition")
        node = self._or()
        if self._pos != len(self._tokens):
            raise ConditionSyntaxError(
                f"Unexpected token {self._tokens[self._pos].text!r} in {self._text!r}"
            )
        return node

    def _peek(self) -> _Token | None:
        return self._tokens[self._pos] if self._pos < len(self._tokens) else None

    def _peek_text(self) -> str | None:
        token = self._peek()
        return token.text if token is not None else None

    def _next(self) -> _Token:
        token = self._peek()
        if token is None:
            raise ConditionSyntaxError(f"Unexpected end of condition {self._text!r}")
        self._pos += 1
        return token

    def _expect(self, text: str) -> None:
        token = self._next()
        if token.text != text:
            raise ConditionSyntaxError(f"Expected {text!r}, got {token.text!r} in {self._text!r}")

    def _at_keyword(self, *words: str) -> bool:
        token = self._peek()
        if token is None:
            return False
        return token.text.lower() in words if token.kind == "name" else token.text in words

    def _or(self) -> Condition:
        parts = [self._and()]
        while self._at_keyword("or", "||"):
            self._next()
            parts.append(self._and())
        return parts[0] if len(parts) == 1 else Or(tuple(parts))

    def _and(self) -> Condition:
        parts = [self._not()]
        while self._at_keyword("and", "&&"):
            self._next()
            parts.append(self._not())
        return parts[0] if len(parts) == 1 else And(tuple(parts))

    def _not(self) -> Condition:
        if self._at_keyword("not", "!"):
            self._next()
            return Not(self._not())
        return self._atom()

    def _atom(self) -> Condition:
        token = self._peek()
        if token is not None and token.text == "(":
            self._next()
            node = self._or()
            self._expect(")")
            return node
        token = self._next()
        if token.kind != "name":
            raise ConditionSyntaxError(f"Unexpected token {token.text!r} in {self._text!r}")
        if token.text == "count" and self._peek_text() == "(":
            return self._count()

        ref = parse_reference(token.text)
        op = self._peek_text()
        if op in {"==", "!="}:
            self._next()
            return FlagEquals(ref=ref, value=self._literal(), negate=op == "!=")
        return FlagEquals(ref=ref, value=True)

    def _count(self) -> Condition:
        self._expect("(")
        source_token = self._next()
        if source_token.kind != "name":
            raise ConditionSyntaxError(f"count() needs a source, got {source_token.text!r}")
        category: str | None = None
        if self._peek_text() == ",":
            self._next()
            key = self._next()
            if key.text != "category":
                raise ConditionSyntaxError(f"Unknown count() filter {key.text!r}")
            if self._peek_text() in {"=", "=="}:
                self._next()
            value = self._literal()
            if not isinstance(value, str):
                raise ConditionSyntaxError("category filter must be a string")
            category = value
        self._expect(")")
        source = parse_count_source(source_token.text, category)

        op = self._next()
        if op.text not in _COMPARATORS:
            raise ConditionSyntaxError(f"count() must be compared, got {op.text!r}")
        value = self._literal()
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConditionSyntaxError("count() must be compared with an integer")
        return CountCompare(source=source, op=op.text, value=value)

    def _literal(self) -> object:
        token = self._next()
        if token.kind == "number":
            return int(token.text)
        if token.kind == "string":
            return re.sub(r"\\(.)", r"\1", token.text[1:-1])
        if token.kind == "name":
            lowered = token.text.lower()
            if lowered == "true":
                return True
            if lowered == "false":
                return False
            if lowered in {"null", "none"}:
                return None
            return token.text
        raise ConditionSyntaxError(f"Expected a literal, got {token.text!r} in {self._text!r}")


def parse_condition(text: str) -> Condition:
    return _Parser(text).parse()
