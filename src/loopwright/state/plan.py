from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from loopwright.errors import CheckpointNotFoundError, PlanError

CheckpointStatus = Literal["pending", "in-progress", "done", "failed"]
PlanStatus = Literal["pending", "in-progress", "complete", "failed"]
Severity = Literal["error", "warning"]

CHECKPOINT_STATUSES: tuple[str, ...] = ("pending", "in-progress", "done", "failed")
PLAN_STATUSES: tuple[str, ...] = ("pending", "in-progress", "complete", "failed")
SEVERITIES: tuple[str, ...] = ("error", "warning")
TERMINAL_STATUSES = frozenset({"done", "failed"})
SUMMARY_SEPARATOR = "; "


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class Checkpoint:
    id: str
    description: str = ""
    file: str | None = None
    acceptance: str | None = None
    gates: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    status: CheckpointStatus = "pending"
    ui: bool | None = None
    started: str | None = None
    completed: str | None = None
    failed_at: str | None = None
    failure_reason: str | None = None
    attempts: int = 0

    @property
    def gate_string(self) -> str:
        return "\n".join(gate for gate in self.gates if gate.strip())

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"id": self.id, "status": self.status}
        if self.description:
            payload["description"] = self.description
        optional = {
            "file": self.file,
            "acceptance": self.acceptance,
            "ui": self.ui,
            "started": self.started,
            "completed": self.completed,
            "failed_at": self.failed_at,
            "failure_reason": self.failure_reason,
        }
        if self.gates:
            payload["gates"] = list(self.gates)
        if self.depends_on:
            payload["depends_on"] = list(self.depends_on)
        for key, value in optional.items():
            if value is not None:
                payload[key] = value
        if self.attempts:
            payload["attempts"] = self.attempts
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        try:
            checkpoint_id = str(data["id"]).strip()
        except KeyError as exc:
            raise PlanError(f"Checkpoint is missing an id: {data!r}") from exc
        status = str(data.get("status", "pending"))
        if status not in CHECKPOINT_STATUSES:
            raise PlanError(f"Checkpoint {checkpoint_id} has unknown status: {status}")
        gates = data.get("gates") or []
        if isinstance(gates, str):
            gates = [gates]
        ui = data.get("ui")
        return cls(
            id=checkpoint_id,
            description=str(data.get("description") or ""),
            file=data.get("file"),
            acceptance=data.get("acceptance"),
            gates=[str(gate) for gate in gates],
            depends_on=[str(dep) for dep in data.get("depends_on") or []],
            status=status,  # type: ignore[arg-type]
            ui=bool(ui) if ui is not None else None,
            started=data.get("started"),
            completed=data.get("completed"),
            failed_at=data.get("failed_at"),
            failure_reason=data.get("failure_reason"),
            attempts=int(data.get("attempts", 0)),
        )


@dataclass(slots=True)
class Sign:
    number: int
    iteration: int
    issue: str
    fix: str
    checkpoint: str | None = None
    severity: Severity = "error"
    timestamp: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "number": self.number,
            "iteration": self.iteration,
            "issue": self.issue,
            "fix": self.fix,
            "severity": self.severity,
            "timestamp": self.timestamp,
        }
        if self.checkpoint is not None:
            payload["checkpoint"] = self.checkpoint
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Sign:
        severity = str(data.get("severity", "error"))
        if severity not in SEVERITIES:
            severity = "error"
        checkpoint = data.get("checkpoint")
        return cls(
            number=int(data.get("number", 0)),
            iteration=int(data.get("iteration", 0)),
            issue=str(data.get("issue", "")),
            fix=str(data.get("fix", "")),
            checkpoint=str(checkpoint) if checkpoint is not None else None,
            severity=severity,  # type: ignore[arg-type]
            timestamp=str(data.get("timestamp") or utcnow_iso()),
        )


@dataclass(slots=True)
class Plan:
    title: str
    checkpoints: list[Checkpoint] = field(default_factory=list)
    signs: list[Sign] = field(default_factory=list)
    status: PlanStatus = "in-progress"
    created: str = field(default_factory=utcnow_iso)
    completed_summary: str | None = None

    def by_id(self, checkpoint_id: str) -> Checkpoint | None:
        for checkpoint in self.checkpoints:
            if checkpoint.id == checkpoint_id:
                return checkpoint
        return None

    def require(self, checkpoint_id: str) -> Checkpoint:
        checkpoint = self.by_id(checkpoint_id)
        if checkpoint is None:
            raise CheckpointNotFoundError(checkpoint_id)
        return checkpoint

    def index_of(self, checkpoint_id: str) -> int | None:
        for index, checkpoint in enumerate(self.checkpoints):
            if checkpoint.id == checkpoint_id:
                return index
        return None

    def in_progress_index(self) -> int | None:
        for index, checkpoint in enumerate(self.checkpoints):
            if checkpoint.status == "in-progress":
                return index
        return None

    def all_complete(self) -> bool:
        return all(checkpoint.status == "done" for checkpoint in self.checkpoints)

    def recompute_status(self) -> None:
        if self.all_complete():
            self.status = "complete"
        elif self.status != "failed":
            self.status = "in-progress"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "title": self.title,
            "status": self.status,
            "created": self.created,
            "checkpoints": [checkpoint.to_dict() for checkpoint in self.checkpoints],
            "signs": [sign.to_dict() for sign in self.signs],
        }
        if self.completed_summary:
            payload["completed_summary"] = self.completed_summary
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Plan:
        if not isinstance(data, dict):
            raise PlanError("Plan payload must be a JSON object.")
        status = str(data.get("status", "in-progress"))
        if status not in PLAN_STATUSES:
            raise PlanError(f"Plan has unknown status: {status}")
        return cls(
            title=str(data.get("title", "")),
            checkpoints=[
                Checkpoint.from_dict(item)
                for item in data.get("checkpoints") or []
                if isinstance(item, dict)
            ],
            signs=[Sign.from_dict(item) for item in data.get("signs") or [] if isinstance(item, dict)],
            status=status,  # type: ignore[arg-type]
            created=str(data.get("created") or utcnow_iso()),
            completed_summary=data.get("completed_summary") or None,
        )


def generate_completed_summary(plan: Plan) -> str | None:
    """Rollup of finished work, keeping segments from earlier compressions."""
    parts: list[str] = []
    if plan.completed_summary:
        parts.extend(
            part for part in plan.completed_summary.split(SUMMARY_SEPARATOR) if part.strip()
        )
    known = {part.split(":", maxsplit=1)[0].strip() for part in parts}
    for checkpoint in plan.checkpoints:
        if checkpoint.status != "done" or checkpoint.id in known:
            continue
        if checkpoint.description:
            parts.append(f"{checkpoint.id}: {checkpoint.description}")
        else:
            parts.append(f"{checkpoint.id}: done")
    return SUMMARY_SEPARATOR.join(parts) if parts else None


def compress_plan(plan: Plan) -> Plan:
    """Collapse done checkpoints to id/status/completed plus a text rollup."""
    summary = generate_completed_summary(plan)
    checkpoints = [
        Checkpoint(id=cp.id, status=cp.status, completed=cp.completed)
        if cp.status == "done"
        else cp
        for cp in plan.checkpoints
    ]
    return Plan(
        title=plan.title,
        checkpoints=checkpoints,
        signs=list(plan.signs),
        status=plan.status,
        created=plan.created,
        completed_summary=summary,
    )


def last_iteration(signs: list[Sign]) -> int:
    return max((sign.iteration for sign in signs), default=0)


def recent_signs(signs: list[Sign], count: int) -> list[Sign]:
    """Last ``count`` signs ordered by iteration, oldest first."""
    if count <= 0:
        return []
    ordered = sorted(signs, key=lambda sign: (sign.iteration, sign.number))
    return ordered[-count:]


def signs_within(signs: list[Sign], keep_iterations: int) -> list[Sign]:
    """Signs recorded during the last ``keep_iterations`` iterations."""
    if not signs:
        return []
    newest = max(sign.iteration for sign in signs)
    return [sign for sign in signs if sign.iteration > newest - keep_iterations]


def context_for_iteration(plan: Plan, *, max_signs: int = 5) -> dict[str, Any]:
    from loopwright.state.resolver import blocked, ready

    return {
        "title": plan.title,
        "status": plan.status,
        "completed_summary": generate_completed_summary(plan),
        "active_checkpoints": [
            checkpoint.to_dict() for checkpoint in plan.checkpoints if checkpoint.status != "done"
        ],
        "ready": [checkpoint.id for checkpoint in ready(plan)],
        "blocked": [
            {"id": item.checkpoint.id, "blocked_by": list(item.unmet)} for item in blocked(plan)
        ],
        "recent_signs": [sign.to_dict() for sign in recent_signs(plan.signs, max_signs)],
    }
