from controller.src.models.execution import (
    ExecutionStep,
    ExecutionRequest,
    ExecutionOutcome,
    ExecutionHandle,
)

__all__ = [
    "ExecutionStep",
    "ExecutionRequest",
    "ExecutionOutcome",
    "ExecutionHandle",
]
