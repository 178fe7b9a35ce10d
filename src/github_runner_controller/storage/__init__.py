"""
Persistent store implementations.

``RunnerStore`` defines the interface; ``MemoryRunnerStore`` keeps state
in process and ``SQLRunnerStore`` persists it through SQLAlchemy.
"""

from .base import RunnerStore
from .memory import MemoryRunnerStore
from .sql import SQLRunnerStore

__all__ = ["MemoryRunnerStore", "RunnerStore", "SQLRunnerStore"]
