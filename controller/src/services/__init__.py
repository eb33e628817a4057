from controller.src.services.executor import (
    execute_build,
    submit,
    watch,
    teardown,
    ExecutionBackendError,
)

__all__ = [
    "execute_build",
    "submit",
    "watch",
    "teardown",
    "ExecutionBackendError",
]
