"""Workflow execution engine.

This package holds first-class types for:
- Pipeline definitions and their loader/validator
- The input gate (plan mode + confirmation)
- Conditions, the step scheduler and the agent dispatcher
- Lifecycle state tracking and the final run report

Import concrete components from their modules; this package stays import-light
so tracker adapters can depend on the lifecycle enum.
"""

__all__: list[str] = []
