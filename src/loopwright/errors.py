from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from loopwright.gates import GateReport


class LoopwrightError(RuntimeError):
    """Base class for every error raised by loopwright."""


class ConfigError(LoopwrightError):
    """Raised when loopwright.toml is malformed."""


class PlanError(LoopwrightError):
    """Raised when a plan operation cannot be applied."""


class PlanNotFoundError(PlanError):
    pass


class CheckpointNotFoundError(PlanError):
    def __init__(self, checkpoint_id: str) -> None:
        super().__init__(f"Checkpoint not found: {checkpoint_id}")
        self.checkpoint_id = checkpoint_id


class DependencyCycleError(PlanError):
    def __init__(self, checkpoint_ids: Iterable[str]) -> None:
        ids = sorted(checkpoint_ids)
        super().__init__("Dependency cycle detected between checkpoints: " + ", ".join(ids))
        self.checkpoint_ids = ids


class InvalidTransitionError(PlanError):
    pass


class ConcurrentWriteConflict(PlanError):
    pass


class WorkerError(LoopwrightError):
    """Raised when a worker process cannot produce a usable result."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class WorkerProcessError(WorkerError):
    """Non-zero exit, missing binary, or unparsable structured output."""


class WorkerTimeoutError(WorkerError):
    """Worker exceeded the iteration deadline or went idle."""

    def __init__(self, message: str, *, reason: str, backend: str | None = None) -> None:
        super().__init__(message, backend=backend, retriable=True)
        self.reason = reason


class EvaluationError(LoopwrightError):
    """Raised when the expression evaluator itself fails to run."""


class GateFailure(LoopwrightError):
    def __init__(self, checkpoint_id: str | None, report: GateReport) -> None:
        label = checkpoint_id or "gate string"
        super().__init__(f"Gates failed for {label}: {report.summary}")
        self.checkpoint_id = checkpoint_id
        self.report = report
