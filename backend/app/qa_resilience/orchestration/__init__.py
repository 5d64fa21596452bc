"""
Execution Orchestration

Builds execution plans from a test catalogue and run constraints.
"""

from .models import ExecutionPlan, ExecutionConstraints, TestSpec, TestPriority
from .execution_orchestrator import ExecutionOrchestrator

__all__ = [
    "ExecutionPlan",
    "ExecutionConstraints",
    "TestSpec",
    "TestPriority",
    "ExecutionOrchestrator",
]
