from taskforge.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)
from taskforge.backends.command import CommandBackend
from taskforge.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "CommandBackend",
    "ResilientBackend",
    "RetryPolicy",
]
