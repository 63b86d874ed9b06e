"""Work-item tracker adapters."""

from github_agent_workflow.tracker.base import ItemRef, Tracker, UnsupportedOperationError
from github_agent_workflow.tracker.memory import InMemoryTracker

__all__ = ["InMemoryTracker", "ItemRef", "Tracker", "UnsupportedOperationError"]
