from loopwright.backends.base import (
    IterationResult,
    WorkerBackend,
    WorkerExecutor,
    completion_signaled,
    extract_blocked_reason,
)
from loopwright.backends.claude import ClaudeCodeBackend
from loopwright.backends.executor import ProcessExecutor, WorkerHandle
from loopwright.backends.opencode import OpenCodeBackend

__all__ = [
    "ClaudeCodeBackend",
    "IterationResult",
    "OpenCodeBackend",
    "ProcessExecutor",
    "WorkerBackend",
    "WorkerExecutor",
    "WorkerHandle",
    "completion_signaled",
    "extract_blocked_reason",
]
