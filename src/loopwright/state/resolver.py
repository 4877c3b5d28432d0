from __future__ import annotations

from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass

from loopwright.errors import DependencyCycleError, PlanError
from loopwright.state.plan import Checkpoint, Plan


@dataclass(slots=True, frozen=True)
class BlockedCheckpoint:
    checkpoint: Checkpoint
    unmet: tuple[str, ...]


def _status_by_id(plan: Plan) -> dict[str, str]:
    return {checkpoint.id: checkpoint.status for checkpoint in plan.checkpoints}


def ready(plan: Plan) -> list[Checkpoint]:
    """Pending checkpoints whose dependencies are all done, in plan order."""
    statuses = _status_by_id(plan)
    return [
        checkpoint
        for checkpoint in plan.checkpoints
        if checkpoint.status == "pending"
        and all(statuses.get(dep) == "done" for dep in checkpoint.depends_on)
    ]


def blocked(plan: Plan) -> list[BlockedCheckpoint]:
    """Pending checkpoints with at least one unmet dependency."""
    statuses = _status_by_id(plan)
    result: list[BlockedCheckpoint] = []
    for checkpoint in plan.checkpoints:
        if checkpoint.status != "pending":
            continue
        unmet = tuple(dep for dep in checkpoint.depends_on if statuses.get(dep) != "done")
        if unmet:
            result.append(BlockedCheckpoint(checkpoint=checkpoint, unmet=unmet))
    return result


def current_checkpoint(plan: Plan) -> Checkpoint | None:
    for checkpoint in plan.checkpoints:
        if checkpoint.status == "in-progress":
            return checkpoint
    candidates = ready(plan)
    return candidates[0] if candidates else None


def schedulable(plan: Plan) -> list[Checkpoint]:
    """Open checkpoints (pending or in-progress) whose dependencies are all done."""
    statuses = _status_by_id(plan)
    return [
        checkpoint
        for checkpoint in plan.checkpoints
        if checkpoint.status in ("pending", "in-progress")
        and all(statuses.get(dep) == "done" for dep in checkpoint.depends_on)
    ]


def topo_order(plan: Plan) -> list[str]:
    """Kahn's algorithm with plan-order tie-breaking.

    Dependencies that do not name a checkpoint in the plan are ignored here;
    :func:`validate_plan` reports them. Raises :class:`DependencyCycleError`
    when the order would be shorter than the checkpoint list.
    """
    ids = [checkpoint.id for checkpoint in plan.checkpoints]
    known = set(ids)
    in_degree: dict[str, int] = {}
    dependents: dict[str, list[str]] = {checkpoint_id: [] for checkpoint_id in ids}
    for checkpoint in plan.checkpoints:
        deps = [dep for dep in dict.fromkeys(checkpoint.depends_on) if dep in known]
        in_degree[checkpoint.id] = len(deps)
        for dep in deps:
            dependents[dep].append(checkpoint.id)

    queue = deque(checkpoint_id for checkpoint_id in ids if in_degree[checkpoint_id] == 0)
    order: list[str] = []
    while queue:
        checkpoint_id = queue.popleft()
        order.append(checkpoint_id)
        for dependent in dependents[checkpoint_id]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    if len(order) < len(ids):
        placed = set(order)
        raise DependencyCycleError(checkpoint_id for checkpoint_id in ids if checkpoint_id not in placed)
    return order


def validate_checkpoints(checkpoints: Iterable[Checkpoint]) -> None:
    seen: set[str] = set()
    items = list(checkpoints)
    for checkpoint in items:
        if not checkpoint.id:
            raise PlanError("Checkpoint id must not be empty.")
        if checkpoint.id in seen:
            raise PlanError(f"Duplicate checkpoint id: {checkpoint.id}")
        seen.add(checkpoint.id)
    for checkpoint in items:
        if checkpoint.id in checkpoint.depends_on:
            raise DependencyCycleError([checkpoint.id])
        missing = [dep for dep in checkpoint.depends_on if dep not in seen]
        if missing:
            raise PlanError(
                f"Checkpoint {checkpoint.id} depends on unknown checkpoint(s): {', '.join(missing)}"
            )


def validate_plan(plan: Plan) -> list[str]:
    """Check ids, dependency references and acyclicity; return the topological order."""
    validate_checkpoints(plan.checkpoints)
    return topo_order(plan)
