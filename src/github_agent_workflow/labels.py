"""Shared GitHub label and marker conventions.

Child items carry their category as a label so they can be filtered by humans
and by the tracker alike. A hidden body marker links a child to its parent on
deployments without the sub-issues API.
"""

from __future__ import annotations

CATEGORY_LABEL_PREFIX = "agent: "
PARENT_MARKER_PREFIX = "agent-workflow-parent:"


def category_label(category: str) -> str:
    normalized = category.strip()
    if not normalized:
        raise ValueError("category is required")
    return f"{CATEGORY_LABEL_PREFIX}{normalized}"


def category_from_labels(labels: list[str]) -> str | None:
    for label in labels:
        if label.startswith(CATEGORY_LABEL_PREFIX):
            return label[len(CATEGORY_LABEL_PREFIX) :].strip() or None
    return None


def parent_marker(parent_id: str) -> str:
    return f"{PARENT_MARKER_PREFIX} {parent_id}"
