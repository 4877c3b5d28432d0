from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loopwright.backends.base import IterationResult, WorkerExecutor
from loopwright.config import LoopwrightConfig
from loopwright.errors import PlanError, WorkerError
from loopwright.gates import GateRunner, gate_fix_hint
from loopwright.prompts import build_iteration_prompt
from loopwright.state.plan import Checkpoint, Plan, last_iteration, utcnow_iso
from loopwright.state.plan_store import PlanStore
from loopwright.state.resolver import blocked, current_checkpoint, schedulable, validate_plan
from loopwright.state.snapshots import GitSnapshots

logger = logging.getLogger(__name__)

LoopEventHook = Callable[[dict[str, Any]], None]

TERMINAL_STATUSES = ("complete", "max-iterations", "error", "timeout-exhausted")


@dataclass(slots=True)
class IterationRecord:
    iteration: int
    checkpoint_id: str
    outcome: str
    cost: float = 0.0
    tokens_in: int = 0
    tokens_out: int = 0
    duration_seconds: float = 0.0
    session_id: str | None = None
    gate_summary: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "checkpoint": self.checkpoint_id,
            "outcome": self.outcome,
            "cost": self.cost,
            "tokens_in": self.tokens_in,
            "tokens_out": self.tokens_out,
            "duration_seconds": round(self.duration_seconds, 3),
            "session_id": self.session_id,
            "gate_summary": self.gate_summary,
            "error": self.error,
        }


@dataclass(slots=True)
class LoopSummary:
    status: str
    started_at: str
    ended_at: str | None = None
    iterations: int = 0
    total_cost: float = 0.0
    tokens_in: int = 0
    tokens_out: int = 0
    error: str | None = None
    iteration_log: list[IterationRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "iterations": self.iterations,
            "total_cost": round(self.total_cost, 6),
            "tokens_in": self.tokens_in,
            "tokens_out": self.tokens_out,
            "error": self.error,
            "iteration_log": [record.to_dict() for record in self.iteration_log],
        }


class Scheduler:
    """Drives a plan to completion by spawning one worker per iteration.

    ``max_concurrency == 1`` runs the sequential loop: the in-progress
    checkpoint, else the first ready one. Larger values run a bounded pool
    with at most one active worker per checkpoint. Plan mutations from either
    mode go through ``self._lock``.
    """

    def __init__(
        self,
        store: PlanStore,
        executor: WorkerExecutor,
        gate_runner: GateRunner,
        config: LoopwrightConfig,
        *,
        snapshots: GitSnapshots | None = None,
        event_hook: LoopEventHook | None = None,
    ) -> None:
        self.store = store
        self.executor = executor
        self.gate_runner = gate_runner
        self.config = config
        self.snapshots = snapshots
        self.event_hook = event_hook
        self.log_dir = store.project_path / config.loop.log_dir
        self._lock = asyncio.Lock()
        self._started = 0.0
        self._iteration_base = 0
        self._summary = LoopSummary(status="error", started_at=utcnow_iso())

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _runtime_exhausted(self) -> bool:
        ceiling = self.config.loop.max_runtime_seconds
        return bool(ceiling) and time.monotonic() - self._started >= ceiling

    def _remaining_runtime(self) -> float | None:
        ceiling = self.config.loop.max_runtime_seconds
        if not ceiling:
            return None
        return max(0.0, ceiling - (time.monotonic() - self._started))

    def _finish(self, status: str, error: str | None = None) -> LoopSummary:
        summary = self._summary
        summary.status = status
        summary.error = error
        summary.ended_at = utcnow_iso()
        if error:
            logger.error("Loop finished: %s (%s)", status, error)
        else:
            logger.info(
                "Loop finished: %s after %d iteration(s), total cost $%.4f",
                status,
                summary.iterations,
                summary.total_cost,
            )
        self._emit({"event": "loop_finished", **summary.to_dict()})
        return summary

    @staticmethod
    def _deadlock_message(plan: Plan) -> str:
        waiting = [
            f"{item.checkpoint.id} (waiting on {', '.join(item.unmet)})" for item in blocked(plan)
        ]
        if not waiting:
            return "No schedulable checkpoint remains."
        return "No schedulable checkpoint remains; blocked: " + "; ".join(waiting)

    async def run(self) -> LoopSummary:
        self._started = time.monotonic()
        self._summary = LoopSummary(status="error", started_at=utcnow_iso())
        try:
            plan = self.store.load()
            validate_plan(plan)
        except PlanError as exc:
            return self._finish("error", str(exc))
        # Iteration numbers continue from the signs already recorded.
        self._iteration_base = last_iteration(plan.signs)
        try:
            if self.config.loop.max_concurrency > 1:
                return await self._run_parallel()
            return await self._run_sequential()
        except PlanError as exc:
            return self._finish("error", str(exc))

    async def _run_sequential(self) -> LoopSummary:
        started = 0
        while True:
            plan = self.store.load()
            if plan.all_complete():
                return self._finish("complete")
            if started >= self.config.loop.max_iterations:
                return self._finish("max-iterations")
            if self._runtime_exhausted():
                return self._finish("timeout-exhausted")
            checkpoint = current_checkpoint(plan)
            if checkpoint is None:
                return self._finish("error", self._deadlock_message(plan))
            started += 1
            await self._run_iteration(self._iteration_base + started, checkpoint.id)

    async def _run_parallel(self) -> LoopSummary:
        limit = self.config.loop.max_concurrency
        active: dict[asyncio.Task[IterationRecord], str] = {}
        started = 0
        try:
            while True:
                plan = self.store.load()
                if not active:
                    if plan.all_complete():
                        return self._finish("complete")
                    if started >= self.config.loop.max_iterations:
                        return self._finish("max-iterations")
                if self._runtime_exhausted():
                    await self._cancel(active)
                    return self._finish("timeout-exhausted")

                assigned = set(active.values())
                for checkpoint in schedulable(plan):
                    if len(active) >= limit or started >= self.config.loop.max_iterations:
                        break
                    if checkpoint.id in assigned:
                        continue
                    started += 1
                    task = asyncio.create_task(
                        self._run_iteration(self._iteration_base + started, checkpoint.id)
                    )
                    active[task] = checkpoint.id
                    assigned.add(checkpoint.id)

                if not active:
                    return self._finish("error", self._deadlock_message(plan))

                done, _ = await asyncio.wait(
                    active,
                    timeout=self._remaining_runtime(),
                    return_when=asyncio.FIRST_COMPLETED,
                )
                for task in done:
                    active.pop(task)
                    task.result()
        finally:
            await self._cancel(active)

    @staticmethod
    async def _cancel(active: dict[asyncio.Task[IterationRecord], str]) -> None:
        for task in active:
            task.cancel()
        if active:
            await asyncio.gather(*active, return_exceptions=True)
        active.clear()

    async def _run_iteration(self, iteration: int, checkpoint_id: str) -> IterationRecord:
        async with self._lock:
            plan = self.store.record_attempt(checkpoint_id)
        checkpoint = plan.require(checkpoint_id)
        prompt = build_iteration_prompt(
            plan,
            checkpoint,
            max_signs=self.config.loop.max_signs_in_prompt,
            browser_instructions=self.executor.browser_instructions(),
        )
        logger.info("Iteration %d: %s - %s", iteration, checkpoint.id, checkpoint.description)
        self._emit(
            {"event": "iteration_started", "iteration": iteration, "checkpoint": checkpoint.id}
        )

        try:
            handle = await self.executor.spawn(
                self.store.project_path,
                prompt,
                self.config.backend.allowed_tools or None,
                log_name=f"iter-{iteration}",
                checkpoint_id=checkpoint.id,
            )
            result = await self.executor.wait(handle)
        except WorkerError as exc:
            result = IterationResult(success=False, error=str(exc))

        record = await self._handle_outcome(iteration, checkpoint, result)
        self._write_meta(record, result)

        summary = self._summary
        summary.iterations += 1
        summary.total_cost += record.cost
        summary.tokens_in += record.tokens_in
        summary.tokens_out += record.tokens_out
        summary.iteration_log.append(record)
        logger.info(
            "Iteration %d: %s %s, cost $%.4f (total $%.4f)",
            iteration,
            checkpoint.id,
            record.outcome,
            record.cost,
            summary.total_cost,
        )
        self._emit({"event": "iteration_finished", **record.to_dict()})

        retention = self.config.loop.sign_retention_iterations
        if retention:
            async with self._lock:
                self.store.prune_signs(retention)
        return record

    async def _handle_outcome(
        self,
        iteration: int,
        checkpoint: Checkpoint,
        result: IterationResult,
    ) -> IterationRecord:
        record = IterationRecord(
            iteration=iteration,
            checkpoint_id=checkpoint.id,
            outcome="partial",
            cost=result.cost,
            tokens_in=result.tokens_in,
            tokens_out=result.tokens_out,
            duration_seconds=result.duration_seconds,
            session_id=result.session_id,
            error=result.error,
        )

        if result.timed_out:
            reason = result.timeout_reason or "iteration"
            record.outcome = "idle-timeout" if reason == "idle" else "timeout"
            await self._record_sign(
                iteration,
                checkpoint.id,
                issue=f"Worker hit the {reason} timeout on {checkpoint.id}",
                fix="Work in smaller steps and report completion before the deadline",
                severity="warning",
            )
            return record

        if not result.success:
            record.outcome = "failed"
            if result.blocked_reason:
                await self._record_sign(
                    iteration, checkpoint.id, issue=result.blocked_reason, fix="Needs resolution"
                )
            return record

        if not result.completion_marker:
            if result.blocked_reason:
                await self._record_sign(
                    iteration, checkpoint.id, issue=result.blocked_reason, fix="Needs resolution"
                )
            return record

        verdict = await self.gate_runner.gates_passed(checkpoint.gate_string)
        record.gate_summary = verdict.message
        if not verdict.passed:
            record.outcome = "gate-failed"
            logger.warning("Gates failed for %s: %s", checkpoint.id, verdict.message)
            self._emit(
                {
                    "event": "gate_failed",
                    "iteration": iteration,
                    "checkpoint": checkpoint.id,
                    "summary": verdict.message,
                }
            )
            fix = gate_fix_hint(verdict.report) if verdict.report else "Re-check the gates"
            await self._record_sign(
                iteration,
                checkpoint.id,
                issue=f"Gates failed for {checkpoint.id}: {verdict.message}",
                fix=fix,
            )
            return record

        try:
            async with self._lock:
                self.store.mark_done(checkpoint.id)
        except PlanError as exc:
            record.outcome = "failed"
            record.error = str(exc)
            logger.warning("Could not mark %s done: %s", checkpoint.id, exc)
            return record

        record.outcome = "completed"
        self._emit({"event": "checkpoint_done", "iteration": iteration, "checkpoint": checkpoint.id})
        if self.snapshots is not None and self.config.loop.auto_commit:
            await asyncio.to_thread(
                self.snapshots.snapshot_checkpoint, checkpoint.id, checkpoint.description
            )
        return record

    async def _record_sign(
        self,
        iteration: int,
        checkpoint_id: str,
        *,
        issue: str,
        fix: str,
        severity: str = "error",
    ) -> None:
        async with self._lock:
            sign = self.store.append_sign(
                iteration=iteration,
                checkpoint=checkpoint_id,
                issue=issue,
                fix=fix,
                severity=severity,
            )
        logger.info("Sign %d recorded for %s: %s", sign.number, checkpoint_id, issue)
        self._emit({"event": "sign_recorded", **sign.to_dict()})

    def _write_meta(self, record: IterationRecord, result: IterationResult) -> None:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        meta = {
            **record.to_dict(),
            "exit_code": result.exit_code,
            "timed_out": result.timed_out,
            "timeout_reason": result.timeout_reason,
            "completion_marker": result.completion_marker,
            "blocked_reason": result.blocked_reason,
            "log_path": str(result.log_path) if result.log_path else None,
        }
        meta_path = self.log_dir / f"iter-{record.iteration}.meta.json"
        meta_path.write_text(json.dumps(meta, ensure_ascii=False, indent=2), encoding="utf-8")


def write_summary(path: Path, summary: LoopSummary) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
