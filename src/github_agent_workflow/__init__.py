"""GitHub agent workflow engine.

Runs declarative, multi-step agent pipelines against tracked work items:
- definitions loaded from YAML, JSON or a markdown step table
- plan presentation and confirmation before anything runs
- conditional and fan-out steps dispatched to pluggable executors
- lifecycle columns kept consistent, with a comment fallback
"""

__version__ = "0.1.0"

from github_agent_workflow.config import EngineSettings

__all__ = ["__version__", "EngineSettings"]
