from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections.abc import Callable, Iterable
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from loopwright.errors import (
    CheckpointNotFoundError,
    ConcurrentWriteConflict,
    InvalidTransitionError,
    PlanError,
    PlanNotFoundError,
)
from loopwright.state.plan import (
    TERMINAL_STATUSES,
    Checkpoint,
    Plan,
    Sign,
    compress_plan,
    signs_within,
    utcnow_iso,
)
from loopwright.state.resolver import current_checkpoint, ready, validate_plan

logger = logging.getLogger(__name__)

PLAN_FILENAME = "LOOP_PLAN.json"
STATE_DIRNAME = ".loopwright"
GITIGNORE_ENTRIES = (PLAN_FILENAME, f"{STATE_DIRNAME}/")
POSITIONS = ("auto", "end", "next")


class PlanStore:
    """Durable plan file with a revision envelope and an exclusive writer lock.

    The plan is read from disk on every call; nothing is cached between
    operations. Every mutation goes through :meth:`update`.
    """

    SCHEMA_VERSION = 1

    def __init__(self, project_path: Path, *, lock_timeout_seconds: float = 5.0) -> None:
        self.project_path = project_path.resolve()
        self.plan_file = self.project_path / PLAN_FILENAME
        self.state_dir = self.project_path / STATE_DIRNAME
        self.lock_file = self.state_dir / "plan.lock"
        self.lock_timeout_seconds = lock_timeout_seconds

    def exists(self) -> bool:
        return self.plan_file.exists()

    @contextmanager
    def _state_lock(self):
        self.state_dir.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise PlanError("Timed out waiting for plan lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_envelope(self) -> dict[str, Any]:
        if not self.plan_file.exists():
            raise PlanNotFoundError(f"No plan found at {self.plan_file}")
        try:
            raw = json.loads(self.plan_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise PlanError(f"Plan file is not valid JSON: {exc}") from exc
        if isinstance(raw, dict) and "plan" in raw and "revision" in raw:
            return {
                "schema_version": int(raw.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw.get("revision") or 1),
                "updated_at": raw.get("updated_at") or utcnow_iso(),
                "plan": raw.get("plan"),
            }
        # bare plan object
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 0,
            "updated_at": utcnow_iso(),
            "plan": raw,
        }

    def _write_envelope(self, plan: Plan, revision: int) -> None:
        envelope = {
            "schema_version": self.SCHEMA_VERSION,
            "revision": revision,
            "updated_at": utcnow_iso(),
            "plan": plan.to_dict(),
        }
        serialized = json.dumps(envelope, ensure_ascii=False, indent=2) + "\n"
        fd, tmp_name = tempfile.mkstemp(
            prefix=".loop-plan-", suffix=".json", dir=self.project_path
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
            os.replace(tmp_name, self.plan_file)
        except OSError:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    def revision(self) -> int:
        return int(self._read_envelope()["revision"])

    def load(self) -> Plan:
        return Plan.from_dict(self._read_envelope()["plan"])

    def save(self, plan: Plan, expected_revision: int | None = None) -> int:
        """Write ``plan``; raise ConcurrentWriteConflict if the revision moved."""
        with self._state_lock():
            current_revision = self.revision() if self.exists() else 0
            if expected_revision is not None and expected_revision != current_revision:
                raise ConcurrentWriteConflict(
                    f"Plan changed on disk (revision {current_revision}, "
                    f"expected {expected_revision})."
                )
            new_revision = current_revision + 1
            self._write_envelope(plan, new_revision)
            return new_revision

    def update(self, mutator: Callable[[Plan], Plan | None], *, attempts: int = 4) -> Plan:
        """Read-modify-write; ``mutator`` edits the plan in place or returns a new one."""
        last_error: ConcurrentWriteConflict | None = None
        for _ in range(attempts):
            envelope = self._read_envelope()
            plan = Plan.from_dict(envelope["plan"])
            result = mutator(plan)
            updated = plan if result is None else result
            try:
                self.save(updated, expected_revision=int(envelope["revision"]))
                return updated
            except ConcurrentWriteConflict as exc:
                last_error = exc
                logger.debug("Plan write conflict, retrying: %s", exc)
                time.sleep(0.01)
        raise last_error or ConcurrentWriteConflict("Plan update failed.")

    def create_plan(
        self,
        title: str,
        checkpoints: Iterable[Checkpoint | dict[str, Any]],
        *,
        overwrite: bool = False,
    ) -> Plan:
        if self.exists() and not overwrite:
            raise PlanError(f"A plan already exists at {self.plan_file}")
        items: list[Checkpoint] = []
        for index, item in enumerate(checkpoints, start=1):
            if isinstance(item, dict):
                payload = dict(item)
                payload.setdefault("id", f"checkpoint-{index}")
                if not str(payload["id"]).strip():
                    payload["id"] = f"checkpoint-{index}"
                checkpoint = Checkpoint.from_dict(payload)
            else:
                checkpoint = item
                if not checkpoint.id:
                    checkpoint.id = f"checkpoint-{index}"
            checkpoint.status = "pending"
            checkpoint.started = None
            items.append(checkpoint)

        plan = Plan(title=title, checkpoints=items, status="in-progress")
        validate_plan(plan)
        for checkpoint in plan.checkpoints:
            if not checkpoint.depends_on:
                checkpoint.status = "in-progress"
                checkpoint.started = utcnow_iso()
                break
        if not plan.checkpoints:
            plan.status = "complete"
        with self._state_lock():
            self._write_envelope(plan, 1)
        logger.info("Created plan %r with %d checkpoint(s)", title, len(plan.checkpoints))
        return plan

    def by_id(self, checkpoint_id: str) -> Checkpoint | None:
        return self.load().by_id(checkpoint_id)

    def current_checkpoint(self) -> Checkpoint | None:
        return current_checkpoint(self.load())

    def all_complete(self) -> bool:
        return self.load().all_complete()

    def mark_done(self, checkpoint_id: str) -> Plan:
        def _mutate(plan: Plan) -> None:
            checkpoint = plan.require(checkpoint_id)
            if checkpoint.status == "done":
                return
            if checkpoint.status == "failed":
                raise InvalidTransitionError(
                    f"Checkpoint {checkpoint_id} has failed and cannot be marked done."
                )
            checkpoint.status = "done"
            checkpoint.completed = utcnow_iso()
            next_ready = ready(plan)
            if next_ready:
                next_ready[0].status = "in-progress"
                next_ready[0].started = utcnow_iso()
            plan.recompute_status()

        return self.update(_mutate)

    def mark_failed(self, checkpoint_id: str, reason: str) -> Plan:
        def _mutate(plan: Plan) -> None:
            checkpoint = plan.require(checkpoint_id)
            if checkpoint.status in TERMINAL_STATUSES:
                raise InvalidTransitionError(
                    f"Checkpoint {checkpoint_id} is already {checkpoint.status}."
                )
            checkpoint.status = "failed"
            checkpoint.failed_at = utcnow_iso()
            checkpoint.failure_reason = reason
            plan.status = "failed"

        return self.update(_mutate)

    def record_attempt(self, checkpoint_id: str) -> Plan:
        def _mutate(plan: Plan) -> None:
            plan.require(checkpoint_id).attempts += 1

        return self.update(_mutate)

    def add_checkpoint(
        self,
        checkpoint: Checkpoint | dict[str, Any],
        position: str = "auto",
    ) -> Plan:
        if isinstance(checkpoint, dict):
            payload = dict(checkpoint)
            payload.setdefault("id", "")
            checkpoint = Checkpoint.from_dict(payload)

        def _mutate(plan: Plan) -> None:
            new_cp = Checkpoint.from_dict(checkpoint.to_dict())
            new_cp.status = "pending"
            if not new_cp.id:
                new_cp.id = _next_checkpoint_id(plan)
            if plan.by_id(new_cp.id) is not None:
                raise PlanError(f"Duplicate checkpoint id: {new_cp.id}")
            index = _insert_position(plan, new_cp, position)
            plan.checkpoints.insert(index, new_cp)
            validate_plan(plan)
            if plan.status == "complete":
                plan.status = "in-progress"

        return self.update(_mutate)

    def append_sign(
        self,
        *,
        iteration: int,
        issue: str,
        fix: str,
        checkpoint: str | None = None,
        severity: str = "error",
    ) -> Sign:
        if severity not in ("error", "warning"):
            raise PlanError(f"Unknown sign severity: {severity}")
        appended: list[Sign] = []

        def _mutate(plan: Plan) -> None:
            appended.clear()
            number = max((sign.number for sign in plan.signs), default=0) + 1
            sign = Sign(
                number=number,
                iteration=iteration,
                issue=issue,
                fix=fix,
                checkpoint=checkpoint,
                severity=severity,  # type: ignore[arg-type]
            )
            plan.signs.append(sign)
            appended.append(sign)

        self.update(_mutate)
        return appended[0]

    def prune_signs(self, keep_iterations: int) -> int:
        """Drop signs older than the retention window; return how many were removed."""
        if keep_iterations < 0:
            raise PlanError("keep_iterations must be >= 0")
        removed: list[int] = [0]

        def _mutate(plan: Plan) -> None:
            kept = signs_within(plan.signs, keep_iterations)
            removed[0] = len(plan.signs) - len(kept)
            plan.signs = kept

        self.update(_mutate)
        return removed[0]

    def compress(self) -> Plan:
        return self.update(compress_plan)


def _next_checkpoint_id(plan: Plan) -> str:
    number = len(plan.checkpoints) + 1
    taken = {checkpoint.id for checkpoint in plan.checkpoints}
    while f"checkpoint-{number}" in taken:
        number += 1
    return f"checkpoint-{number}"


def _insert_position(plan: Plan, checkpoint: Checkpoint, position: str) -> int:
    end = len(plan.checkpoints)
    current = plan.in_progress_index()
    if position == "end":
        return end
    if position == "next":
        return end if current is None else current + 1
    if position == "auto":
        dep_indexes = [
            index for index in (plan.index_of(dep) for dep in checkpoint.depends_on) if index is not None
        ]
        if dep_indexes:
            return max(dep_indexes) + 1
        return end if current is None else current + 1
    anchor = plan.index_of(position)
    if anchor is None:
        raise CheckpointNotFoundError(position)
    return anchor + 1


def check_gitignore(project_path: Path) -> list[str] | None:
    """Loopwright artifacts missing from ``.gitignore``; None outside a git repo."""
    if not (project_path / ".git").is_dir():
        return None
    gitignore = project_path / ".gitignore"
    current = gitignore.read_text(encoding="utf-8") if gitignore.exists() else ""
    lines = {line.strip() for line in current.splitlines()}
    return [entry for entry in GITIGNORE_ENTRIES if entry not in lines]


def add_to_gitignore(project_path: Path, entries: Iterable[str]) -> bool:
    if not (project_path / ".git").is_dir():
        return False
    entries = list(entries)
    if not entries:
        return False
    gitignore = project_path / ".gitignore"
    current = gitignore.read_text(encoding="utf-8") if gitignore.exists() else ""
    prefix = "\n" if current.strip() and not current.endswith("\n") else ""
    section = prefix + "\n# loopwright\n" + "\n".join(entries) + "\n"
    gitignore.write_text(current + section, encoding="utf-8")
    return True

