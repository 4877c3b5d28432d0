from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

COMPLETE_MARKER = "CHECKPOINT_COMPLETE"
BLOCKED_MARKER = "CHECKPOINT_BLOCKED"

_COMPLETE_RE = re.compile(r"CHECKPOINT_COMPLETE(?:[ \t]*:[ \t]*(?P<target>[^\s]+))?", re.IGNORECASE)
_BLOCKED_RE = re.compile(r"CHECKPOINT_BLOCKED:[ \t]*(?P<reason>[^\r\n]*)")


@dataclass(slots=True)
class IterationResult:
    """Outcome of one worker spawn."""

    success: bool
    completion_marker: bool = False
    blocked_reason: str | None = None
    cost: float = 0.0
    tokens_in: int = 0
    tokens_out: int = 0
    session_id: str | None = None
    raw_text: str = ""
    exit_code: int | None = None
    timed_out: bool = False
    timeout_reason: str | None = None
    error: str | None = None
    duration_seconds: float = 0.0
    log_path: Path | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "completion_marker": self.completion_marker,
            "blocked_reason": self.blocked_reason,
            "cost": self.cost,
            "tokens_in": self.tokens_in,
            "tokens_out": self.tokens_out,
            "session_id": self.session_id,
            "exit_code": self.exit_code,
            "timed_out": self.timed_out,
            "timeout_reason": self.timeout_reason,
            "error": self.error,
            "duration_seconds": round(self.duration_seconds, 3),
            "log_path": str(self.log_path) if self.log_path else None,
        }


def completion_signaled(text: str, checkpoint_id: str | None = None) -> bool:
    """True when ``text`` carries a completion marker for ``checkpoint_id``.

    A bare marker always counts. A marker naming another checkpoint does not.
    """
    for match in _COMPLETE_RE.finditer(text or ""):
        target = match.group("target")
        if not target or checkpoint_id is None:
            return True
        if target.strip().strip(".,;`'\"") == checkpoint_id:
            return True
    return False


def extract_blocked_reason(text: str, checkpoint_id: str | None = None) -> str | None:
    match = _BLOCKED_RE.search(text or "")
    if match is None:
        return None
    reason = match.group("reason").strip()
    if checkpoint_id and reason.startswith(f"{checkpoint_id} - "):
        reason = reason[len(checkpoint_id) + 3 :].strip()
    return reason or None


def parse_json_lines(raw_text: str) -> list[dict[str, Any]]:
    events: list[dict[str, Any]] = []
    for line in raw_text.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(event, dict):
            events.append(event)
    return events


class WorkerBackend(ABC):
    """A CLI agent that can be spawned for one iteration.

    The prompt is always written to the process's stdin.
    """

    name: str = "worker"

    def __init__(self, binary: str, *, allowed_tools: list[str] | None = None, model: str = "") -> None:
        self.binary = binary
        self.allowed_tools = list(allowed_tools or [])
        self.model = model

    def new_session_id(self) -> str | None:
        return None

    @abstractmethod
    def build_command(
        self,
        project_path: Path,
        session_id: str | None = None,
        allowed_tools: list[str] | None = None,
    ) -> list[str]:
        """Argument vector for one non-interactive iteration."""

    @abstractmethod
    def parse_output(self, raw_text: str) -> IterationResult:
        """Turn the captured stdout of one iteration into a result."""

    def browser_instructions(self) -> str:
        return ""


class WorkerExecutor(ABC):
    """Spawns a worker for one iteration and waits for its structured result."""

    @abstractmethod
    async def spawn(
        self,
        project_path: Path,
        prompt: str,
        allowed_tools: list[str] | None = None,
        *,
        log_name: str = "iter",
        checkpoint_id: str | None = None,
    ) -> Any:
        """Start a worker and return an opaque handle."""

    @abstractmethod
    async def wait(self, handle: Any, timeout: float | None = None) -> IterationResult:
        """Wait for the worker behind ``handle`` under the configured deadlines."""

    def browser_instructions(self) -> str:
        return ""
