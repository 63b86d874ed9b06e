"""Test configuration and fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from github_agent_workflow.tracker.base import ItemRef
from github_agent_workflow.tracker.memory import InMemoryTracker
from github_agent_workflow.workflow.definition import WorkflowDefinition
from github_agent_workflow.workflow.loader import parse_definition


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Provide a temporary state directory."""
    state_dir = tmp_path / "agent_state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def tracker() -> InMemoryTracker:
    return InMemoryTracker()


@pytest.fixture
def work_item(tracker: InMemoryTracker) -> ItemRef:
    return tracker.add_item(body="# Parent work item")


@pytest.fixture
def scenario_raw() -> dict[str, object]:
    """A analyses, B runs per "ops" child (if any), C implements."""
    return {
        "id": "triage",
        "inputs": [
            {"name": "owner"},
            {"name": "repo"},
            {"name": "id"},
        ],
        "steps": [
            {"id": "A", "role": "analyst", "requires": ["owner", "repo", "id"]},
            {
                "id": "B",
                "role": "ops",
                "condition": 'count(children, category="ops") > 0',
                "fan_out": 'children(category="ops")',
            },
            {"id": "C", "role": "developer"},
        ],
    }


@pytest.fixture
def scenario_definition(scenario_raw: dict[str, object]) -> WorkflowDefinition:
    return parse_definition(scenario_raw)


@pytest.fixture
def scenario_inputs() -> dict[str, object]:
    return {"owner": "acme", "repo": "core", "id": 42}
