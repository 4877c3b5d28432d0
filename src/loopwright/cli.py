from __future__ import annotations

import asyncio
import functools
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from loopwright.activity import ActivityProbe
from loopwright.backends import ClaudeCodeBackend, OpenCodeBackend, ProcessExecutor, WorkerBackend
from loopwright.config import CONFIG_FILENAME, LoopwrightConfig, load_config, save_config
from loopwright.errors import LoopwrightError
from loopwright.gates import (
    AgentBrowserChecker,
    AgentJudge,
    CommandEvaluator,
    ExpressionEvaluator,
    GateRunner,
    PythonEvaluator,
)
from loopwright.scheduler import Scheduler, write_summary
from loopwright.state import GitSnapshots, PlanStore, SignsLedger
from loopwright.state.plan import Checkpoint, last_iteration, recent_signs
from loopwright.state.plan_store import POSITIONS, add_to_gitignore, check_gitignore
from loopwright.state.resolver import blocked, ready, topo_order
from loopwright.state.snapshots import SnapshotError

LOG_FORMAT = "[loopwright] %(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class Runtime:
    project_path: Path
    config_path: Path
    config: LoopwrightConfig
    store: PlanStore
    snapshots: GitSnapshots

    @property
    def log_dir(self) -> Path:
        return self.project_path / self.config.loop.log_dir


def _resolve_config_path(project_path: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = project_path / config_path
    return config_path.resolve()


def _load_runtime(project_value: str, config_value: str) -> Runtime:
    project_path = Path(project_value).resolve()
    config_path = _resolve_config_path(project_path, config_value)
    config = load_config(config_path)
    return Runtime(
        project_path=project_path,
        config_path=config_path,
        config=config,
        store=PlanStore(project_path),
        snapshots=GitSnapshots(project_path),
    )


def _build_backend(config: LoopwrightConfig) -> WorkerBackend:
    backend = config.backend
    if backend.platform == "opencode":
        return OpenCodeBackend(
            backend.binary or "opencode",
            agent=backend.agent,
            allowed_tools=backend.allowed_tools,
            model=backend.model,
        )
    return ClaudeCodeBackend(
        backend.binary or "claude",
        allowed_tools=backend.allowed_tools,
        mcp_config=backend.mcp_config,
        model=backend.model,
        verbose=backend.verbose,
    )


def _build_executor(runtime: Runtime) -> ProcessExecutor:
    loop = runtime.config.loop
    return ProcessExecutor(
        _build_backend(runtime.config),
        log_dir=runtime.log_dir,
        iteration_timeout=loop.iteration_timeout_seconds,
        idle_timeout=loop.idle_timeout_seconds,
        poll_interval=loop.poll_interval_seconds,
    )


def _build_gate_runner(runtime: Runtime, executor: ProcessExecutor) -> GateRunner:
    validation = runtime.config.validation
    evaluator: ExpressionEvaluator
    if validation.eval_command:
        evaluator = CommandEvaluator(
            validation.eval_command,
            project_path=runtime.project_path,
            timeout=validation.eval_timeout_seconds,
        )
    else:
        evaluator = PythonEvaluator(runtime.project_path, timeout=validation.eval_timeout_seconds)
    browser = judge = None
    if validation.agent_checks:
        browser = AgentBrowserChecker(executor, runtime.project_path)
        judge = AgentJudge(executor, runtime.project_path)
    return GateRunner(
        evaluator,
        target=validation.eval_target,
        browser=browser,
        judge=judge,
        screenshot_dir=runtime.project_path / validation.screenshot_dir,
    )


def _log_event(event: dict[str, Any]) -> None:
    logging.getLogger("loopwright.events").debug(json.dumps(event, ensure_ascii=False, default=str))


def _guarded(func: Callable[..., None]) -> Callable[..., None]:
    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> None:
        try:
            func(*args, **kwargs)
        except LoopwrightError as exc:
            raise click.ClickException(str(exc)) from exc

    return wrapper


def _runtime_options(func: Callable[..., None]) -> Callable[..., None]:
    func = click.option(
        "--config", "config_value", default=CONFIG_FILENAME, show_default=True
    )(func)
    func = click.option(
        "--project",
        "project_value",
        default=".",
        show_default=True,
        type=click.Path(file_okay=False),
    )(func)
    return func


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Loopwright: drive a checkpoint plan to completion with short-lived agent workers."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)


@cli.command("init")
@click.option("--plan-file", type=click.Path(exists=True, dir_okay=False), default=None)
@click.option("--platform", type=click.Choice(["claude", "opencode"]), default=None)
@click.option("--overwrite", is_flag=True, default=False, help="Replace an existing plan.")
@click.option("--gitignore/--no-gitignore", default=True, show_default=True)
@_runtime_options
@_guarded
def init_command(
    plan_file: str | None,
    platform: str | None,
    overwrite: bool,
    gitignore: bool,
    project_value: str,
    config_value: str,
) -> None:
    runtime = _load_runtime(project_value, config_value)
    if platform:
        runtime.config.backend.platform = platform  # type: ignore[assignment]
    save_config(runtime.config_path, runtime.config)
    click.echo(f"Config: {runtime.config_path}")

    if plan_file:
        try:
            payload = json.loads(Path(plan_file).read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise click.ClickException(f"Plan file is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise click.ClickException("Plan file must contain a JSON object.")
        plan = runtime.store.create_plan(
            str(payload.get("title", "")),
            payload.get("checkpoints", []),
            overwrite=overwrite,
        )
        click.echo(f"Plan: {plan.title} ({len(plan.checkpoints)} checkpoints)")

    missing = check_gitignore(runtime.project_path)
    if missing:
        if gitignore:
            add_to_gitignore(runtime.project_path, missing)
            click.echo(f"Added to .gitignore: {', '.join(missing)}")
        else:
            click.echo(f"Not in .gitignore: {', '.join(missing)}")


@cli.command("run")
@click.option("--max-iterations", type=int, default=None)
@click.option("--concurrency", type=int, default=None)
@click.option("--iteration-timeout", type=float, default=None, help="Seconds, 0 disables.")
@click.option("--idle-timeout", type=float, default=None, help="Seconds, 0 disables.")
@click.option("--json", "as_json", is_flag=True, default=False)
@_runtime_options
@_guarded
def run_command(
    max_iterations: int | None,
    concurrency: int | None,
    iteration_timeout: float | None,
    idle_timeout: float | None,
    as_json: bool,
    project_value: str,
    config_value: str,
) -> None:
    runtime = _load_runtime(project_value, config_value)
    loop = runtime.config.loop
    if max_iterations is not None:
        loop.max_iterations = max_iterations
    if concurrency is not None:
        loop.max_concurrency = concurrency
    if iteration_timeout is not None:
        loop.iteration_timeout_seconds = iteration_timeout
    if idle_timeout is not None:
        loop.idle_timeout_seconds = idle_timeout
    runtime.config.validate()

    executor = _build_executor(runtime)
    scheduler = Scheduler(
        runtime.store,
        executor,
        _build_gate_runner(runtime, executor),
        runtime.config,
        snapshots=runtime.snapshots,
        event_hook=_log_event,
    )
    summary = asyncio.run(scheduler.run())
    write_summary(runtime.log_dir / "last-run.json", summary)

    if as_json:
        _echo_json(summary.to_dict())
    else:
        click.echo(f"Status: {summary.status}")
        click.echo(f"Iterations: {summary.iterations}")
        click.echo(f"Cost: ${summary.total_cost:.4f}")
        click.echo(f"Tokens: {summary.tokens_in} in / {summary.tokens_out} out")
    if summary.status == "error":
        raise click.ClickException(summary.error or "Loop ended with an error.")


@cli.command("status")
@click.option("--json", "as_json", is_flag=True, default=False)
@_runtime_options
@_guarded
def status_command(as_json: bool, project_value: str, config_value: str) -> None:
    runtime = _load_runtime(project_value, config_value)
    plan = runtime.store.load()
    probe = ActivityProbe(runtime.project_path, runtime.store.plan_file, runtime.log_dir)
    threshold = runtime.config.loop.idle_timeout_seconds or 600.0
    payload = {
        "title": plan.title,
        "status": plan.status,
        "checkpoints": [
            {"id": cp.id, "status": cp.status, "attempts": cp.attempts, "description": cp.description}
            for cp in plan.checkpoints
        ],
        "ready": [cp.id for cp in ready(plan)],
        "blocked": [{"id": item.checkpoint.id, "blocked_by": list(item.unmet)} for item in blocked(plan)],
        "recent_signs": [
            sign.to_dict()
            for sign in recent_signs(plan.signs, runtime.config.loop.max_signs_in_prompt)
        ],
        "activity": probe.stuck_diagnostic(time.time(), threshold),
    }
    if as_json:
        _echo_json(payload)
        return

    done = sum(1 for cp in plan.checkpoints if cp.status == "done")
    click.echo(f"{plan.title} [{plan.status}] {done}/{len(plan.checkpoints)} done")
    for item in payload["checkpoints"]:
        click.echo(f"  {item['status']:<12} {item['id']}  {item['description']}")
    if payload["ready"]:
        click.echo(f"Ready: {', '.join(payload['ready'])}")
    for item in payload["blocked"]:
        click.echo(f"Blocked: {item['id']} (waiting on {', '.join(item['blocked_by'])})")
    for sign in payload["recent_signs"]:
        click.echo(f"Sign {sign['number']} [{sign['severity']}]: {sign['issue']} -> {sign['fix']}")
    if payload["activity"]["possibly_stuck"]:
        idle = payload["activity"]["idle_seconds"]
        click.echo(f"Warning: no activity for {idle:.0f}s, the worker may be stuck.")


@cli.command("order")
@_runtime_options
@_guarded
def order_command(project_value: str, config_value: str) -> None:
    runtime = _load_runtime(project_value, config_value)
    for index, checkpoint_id in enumerate(topo_order(runtime.store.load()), start=1):
        click.echo(f"{index}. {checkpoint_id}")


@cli.command("add")
@click.argument("description")
@click.option("--id", "checkpoint_id", default="")
@click.option("--file", "file_path", default=None)
@click.option("--acceptance", default=None)
@click.option("--gate", "gates", multiple=True)
@click.option("--depends-on", "depends_on", multiple=True)
@click.option("--ui/--no-ui", default=None)
@click.option(
    "--position",
    default="auto",
    show_default=True,
    help=f"One of {', '.join(POSITIONS)} or a checkpoint id to insert after.",
)
@_runtime_options
@_guarded
def add_command(
    description: str,
    checkpoint_id: str,
    file_path: str | None,
    acceptance: str | None,
    gates: tuple[str, ...],
    depends_on: tuple[str, ...],
    ui: bool | None,
    position: str,
    project_value: str,
    config_value: str,
) -> None:
    runtime = _load_runtime(project_value, config_value)
    checkpoint = Checkpoint(
        id=checkpoint_id,
        description=description,
        file=file_path,
        acceptance=acceptance,
        gates=list(gates),
        depends_on=list(depends_on),
        ui=ui,
    )
    before = {cp.id for cp in runtime.store.load().checkpoints}
    plan = runtime.store.add_checkpoint(checkpoint, position=position)
    added = next(cp.id for cp in plan.checkpoints if cp.id not in before)
    click.echo(f"Added checkpoint {added} at position {plan.index_of(added) + 1}")


@cli.command("done")
@click.argument("checkpoint_id")
@_runtime_options
@_guarded
def done_command(checkpoint_id: str, project_value: str, config_value: str) -> None:
    runtime = _load_runtime(project_value, config_value)
    plan = runtime.store.mark_done(checkpoint_id)
    click.echo(f"Checkpoint {checkpoint_id} done. Plan status: {plan.status}")
    current = next((cp for cp in plan.checkpoints if cp.status == "in-progress"), None)
    if current is not None:
        click.echo(f"Now in progress: {current.id}")


@cli.command("fail")
@click.argument("checkpoint_id")
@click.option("--reason", required=True)
@_runtime_options
@_guarded
def fail_command(checkpoint_id: str, reason: str, project_value: str, config_value: str) -> None:
    runtime = _load_runtime(project_value, config_value)
    runtime.store.mark_failed(checkpoint_id, reason)
    click.echo(f"Checkpoint {checkpoint_id} failed: {reason}")


@cli.command("sign")
@click.option("--issue", required=True)
@click.option("--fix", required=True)
@click.option("--checkpoint", "checkpoint_id", default=None)
@click.option("--iteration", type=int, default=None, help="Defaults to the latest recorded iteration.")
@click.option("--severity", type=click.Choice(["error", "warning"]), default="error", show_default=True)
@_runtime_options
@_guarded
def sign_command(
    issue: str,
    fix: str,
    checkpoint_id: str | None,
    iteration: int | None,
    severity: str,
    project_value: str,
    config_value: str,
) -> None:
    runtime = _load_runtime(project_value, config_value)
    plan = runtime.store.load()
    if checkpoint_id:
        plan.require(checkpoint_id)
    if iteration is None:
        iteration = last_iteration(plan.signs)
    sign = SignsLedger(runtime.store).append(
        iteration, issue, fix, checkpoint=checkpoint_id, severity=severity
    )
    click.echo(f"Recorded sign {sign.number}")


@cli.command("prune-signs")
@click.option("--keep", "keep_iterations", type=int, required=True)
@_runtime_options
@_guarded
def prune_signs_command(keep_iterations: int, project_value: str, config_value: str) -> None:
    runtime = _load_runtime(project_value, config_value)
    removed = SignsLedger(runtime.store).prune(keep_iterations)
    click.echo(f"Removed {removed} sign(s)")


@cli.command("compress")
@_runtime_options
@_guarded
def compress_command(project_value: str, config_value: str) -> None:
    runtime = _load_runtime(project_value, config_value)
    plan = runtime.store.compress()
    click.echo(plan.completed_summary or "Nothing to compress.")


@cli.command("validate")
@click.argument("gate_string", required=False)
@click.option("--checkpoint", "checkpoint_id", default=None)
@click.option("--json", "as_json", is_flag=True, default=False)
@_runtime_options
@_guarded
def validate_command(
    gate_string: str | None,
    checkpoint_id: str | None,
    as_json: bool,
    project_value: str,
    config_value: str,
) -> None:
    runtime = _load_runtime(project_value, config_value)
    if checkpoint_id:
        gate_string = runtime.store.load().require(checkpoint_id).gate_string
    if gate_string is None:
        raise click.UsageError("Pass a gate string or --checkpoint.")
    runner = _build_gate_runner(runtime, _build_executor(runtime))
    report = asyncio.run(runner.run_all(gate_string))
    if as_json:
        _echo_json(report.to_dict())
    else:
        for result in report.results:
            detail = result.error or result.note or result.actual or ""
            click.echo(f"  {result.status:<8} {result.item.raw}  {detail}".rstrip())
        click.echo(report.summary)
    if report.failed_count:
        raise click.ClickException(report.summary)


@cli.command("snapshots")
@_runtime_options
@_guarded
def snapshots_command(project_value: str, config_value: str) -> None:
    runtime = _load_runtime(project_value, config_value)
    snapshots = runtime.snapshots.list_snapshots()
    if not snapshots:
        click.echo("No snapshots found.")
        return
    for snapshot in snapshots:
        click.echo(f"{snapshot.commit_hash[:8]}  {snapshot.subject}")


@cli.command("rollback")
@click.argument("ref")
@_runtime_options
@_guarded
def rollback_command(ref: str, project_value: str, config_value: str) -> None:
    runtime = _load_runtime(project_value, config_value)
    try:
        snapshot = runtime.snapshots.rollback(ref)
    except SnapshotError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Rolled back to {snapshot.commit_hash[:8]} ({snapshot.subject})")
