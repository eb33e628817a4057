"""
Build and step status enums and their forward-only orderings.
"""

from enum import Enum

class RepoStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DELETED = "deleted"

class BuildStatus(str, Enum):
    WAITING_TO_START = "waiting_to_start"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    CANCELLED = "cancelled"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in BUILD_TERMINAL_STATES

class BuildStepStatus(str, Enum):
    WAITING_TO_START = "waiting_to_start"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    CANCELLED = "cancelled"
    ERRORED = "errored"
    SKIPPED_DEP_ERROR = "skipped_dep_error"

    @property
    def is_terminal(self) -> bool:
        return self in STEP_TERMINAL_STATES

BUILD_TERMINAL_STATES = frozenset({
    BuildStatus.SUCCEEDED,
    BuildStatus.CANCELLED,
    BuildStatus.ERRORED,
})

STEP_TERMINAL_STATES = frozenset({
    BuildStepStatus.SUCCEEDED,
    BuildStepStatus.CANCELLED,
    BuildStepStatus.ERRORED,
    BuildStepStatus.SKIPPED_DEP_ERROR,
})

# Statuses that make every later step of the same build unreachable
STEP_FAILURE_STATES = frozenset({
    BuildStepStatus.CANCELLED,
    BuildStepStatus.ERRORED,
})
