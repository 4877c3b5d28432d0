import json
import subprocess
from pathlib import Path
from typing import Any

from click.testing import CliRunner

from loopwright.backends import ClaudeCodeBackend, IterationResult, OpenCodeBackend, WorkerExecutor
from loopwright.cli import _build_backend, cli
from loopwright.config import LoopwrightConfig, load_config


class FakeExecutor(WorkerExecutor):
    def __init__(self) -> None:
        self.spawned: list[str] = []

    async def spawn(
        self,
        project_path: Path,
        prompt: str,
        allowed_tools: list[str] | None = None,
        *,
        log_name: str = "iter",
        checkpoint_id: str | None = None,
    ) -> Any:
        _ = prompt, allowed_tools, log_name
        (project_path / f"{checkpoint_id}.txt").write_text("done\n", encoding="utf-8")
        self.spawned.append(checkpoint_id or "")
        return checkpoint_id

    async def wait(self, handle: Any, timeout: float | None = None) -> IterationResult:
        return IterationResult(
            success=True,
            completion_marker=True,
            raw_text=f"CHECKPOINT_COMPLETE: {handle}",
            cost=0.05,
        )


def _init_git_repo(repo_path: Path) -> None:
    subprocess.run(["git", "init"], cwd=repo_path, check=True, text=True, capture_output=True)
    subprocess.run(
        ["git", "config", "user.email", "test@example.com"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    subprocess.run(
        ["git", "config", "user.name", "Test User"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    subprocess.run(
        ["git", "add", "README.md"], cwd=repo_path, check=True, text=True, capture_output=True
    )
    subprocess.run(
        ["git", "commit", "-m", "seed"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )


def _write_plan_file(path: Path) -> Path:
    path.write_text(
        json.dumps(
            {
                "title": "Todo app",
                "checkpoints": [
                    {"id": "schema", "description": "Define schema"},
                    {"id": "api", "description": "Build API", "depends_on": ["schema"]},
                ],
            }
        ),
        encoding="utf-8",
    )
    return path


def _init_project(tmp_path: Path) -> tuple[Path, CliRunner]:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    plan_file = _write_plan_file(tmp_path / "plan.json")
    runner = CliRunner()
    result = runner.invoke(cli, ["init", "--project", str(repo), "--plan-file", str(plan_file)])
    assert result.exit_code == 0, result.output
    return repo, runner


def test_cli_full_loop_lifecycle(tmp_path: Path, monkeypatch) -> None:
    repo, runner = _init_project(tmp_path)
    assert (repo / "loopwright.toml").exists()
    assert "LOOP_PLAN.json" in (repo / ".gitignore").read_text(encoding="utf-8")

    executor = FakeExecutor()
    monkeypatch.setattr("loopwright.cli._build_executor", lambda runtime: executor)

    order_result = runner.invoke(cli, ["order", "--project", str(repo)])
    assert order_result.exit_code == 0
    assert "1. schema" in order_result.output
    assert "2. api" in order_result.output

    run_result = runner.invoke(cli, ["run", "--project", str(repo)])
    assert run_result.exit_code == 0, run_result.output
    assert "Status: complete" in run_result.output
    assert "Iterations: 2" in run_result.output
    assert executor.spawned == ["schema", "api"]

    last_run = json.loads((repo / ".loopwright/logs/last-run.json").read_text(encoding="utf-8"))
    assert last_run["status"] == "complete"

    status_result = runner.invoke(cli, ["status", "--project", str(repo), "--json"])
    assert status_result.exit_code == 0
    status = json.loads(status_result.output)
    assert status["status"] == "complete"
    assert [item["status"] for item in status["checkpoints"]] == ["done", "done"]

    snapshots_result = runner.invoke(cli, ["snapshots", "--project", str(repo)])
    assert snapshots_result.exit_code == 0
    assert "loopwright: checkpoint schema - Define schema" in snapshots_result.output
    assert "loopwright: checkpoint api - Build API" in snapshots_result.output

    rollback_result = runner.invoke(cli, ["rollback", "schema", "--project", str(repo)])
    assert rollback_result.exit_code == 0
    assert not (repo / "api.txt").exists()
    assert (repo / "schema.txt").exists()


def test_cli_plan_editing_commands(tmp_path: Path) -> None:
    repo, runner = _init_project(tmp_path)
    project = ["--project", str(repo)]

    add_result = runner.invoke(
        cli,
        ["add", "Render list view", "--id", "ui", "--depends-on", "api", "--gate", "1 + 1 => 2", *project],
    )
    assert add_result.exit_code == 0, add_result.output
    assert "Added checkpoint ui at position 3" in add_result.output

    done_result = runner.invoke(cli, ["done", "schema", *project])
    assert done_result.exit_code == 0
    assert "Now in progress: api" in done_result.output

    sign_result = runner.invoke(
        cli,
        ["sign", "--issue", "tests flaky", "--fix", "pin seed", "--checkpoint", "api", "--iteration", "4", *project],
    )
    assert sign_result.exit_code == 0
    assert "Recorded sign 1" in sign_result.output

    status_result = runner.invoke(cli, ["status", *project])
    assert status_result.exit_code == 0
    assert "Blocked: ui (waiting on api)" in status_result.output
    assert "tests flaky -> pin seed" in status_result.output

    compress_result = runner.invoke(cli, ["compress", *project])
    assert compress_result.exit_code == 0
    assert "schema: Define schema" in compress_result.output

    prune_result = runner.invoke(cli, ["prune-signs", "--keep", "1", *project])
    assert prune_result.exit_code == 0
    assert "Removed 0 sign(s)" in prune_result.output

    fail_result = runner.invoke(cli, ["fail", "api", "--reason", "blocked upstream", *project])
    assert fail_result.exit_code == 0
    plan = json.loads((repo / "LOOP_PLAN.json").read_text(encoding="utf-8"))["plan"]
    assert plan["status"] == "failed"


def test_cli_validate_gate_strings(tmp_path: Path) -> None:
    repo, runner = _init_project(tmp_path)
    project = ["--project", str(repo)]

    ok_result = runner.invoke(cli, ["validate", "1 + 1 => 2 | 'a' * 2 => aa", *project])
    assert ok_result.exit_code == 0, ok_result.output
    assert "PASSED: 2 of 2" in ok_result.output

    bad_result = runner.invoke(cli, ["validate", "1 + 1 => 3", "--json", *project])
    assert bad_result.exit_code != 0
    assert '"failed_count": 1' in bad_result.output

    pending_result = runner.invoke(cli, ["validate", "--checkpoint", "api", *project])
    assert pending_result.exit_code == 0
    assert "No validations defined" in pending_result.output


def test_cli_errors_are_reported(tmp_path: Path) -> None:
    runner = CliRunner()

    status_result = runner.invoke(cli, ["status", "--project", str(tmp_path)])
    assert status_result.exit_code != 0
    assert "No plan found" in status_result.output

    (tmp_path / "loopwright.toml").write_text("[loop]\nmax_iterations = 0\n", encoding="utf-8")
    run_result = runner.invoke(cli, ["run", "--project", str(tmp_path)])
    assert run_result.exit_code != 0
    assert "max_iterations" in run_result.output

    repo, runner = _init_project(tmp_path)
    done_result = runner.invoke(cli, ["done", "ghost", "--project", str(repo)])
    assert done_result.exit_code != 0
    assert "Checkpoint not found: ghost" in done_result.output

    validate_result = runner.invoke(cli, ["validate", "--project", str(repo)])
    assert validate_result.exit_code != 0


def test_init_platform_and_backend_selection(tmp_path: Path) -> None:
    runner = CliRunner()
    result = runner.invoke(
        cli, ["init", "--project", str(tmp_path), "--platform", "opencode", "--no-gitignore"]
    )
    assert result.exit_code == 0, result.output

    config = load_config(tmp_path / "loopwright.toml")
    assert config.backend.platform == "opencode"
    assert isinstance(_build_backend(config), OpenCodeBackend)
    assert isinstance(_build_backend(LoopwrightConfig.default()), ClaudeCodeBackend)


def test_init_rejects_plan_file_that_is_not_an_object(tmp_path: Path) -> None:
    plan_file = tmp_path / "plan.json"
    plan_file.write_text(json.dumps([{"id": "schema"}]), encoding="utf-8")

    result = CliRunner().invoke(cli, ["init", "--project", str(tmp_path), "--plan-file", str(plan_file)])

    assert result.exit_code != 0
    assert "must contain a JSON object" in result.output
    assert not (tmp_path / "LOOP_PLAN.json").exists()


def test_sign_defaults_to_latest_recorded_iteration(tmp_path: Path) -> None:
    repo, runner = _init_project(tmp_path)
    project = ["--project", str(repo)]

    runner.invoke(cli, ["sign", "--issue", "first", "--fix", "f", "--iteration", "7", *project])
    result = runner.invoke(cli, ["sign", "--issue", "second", "--fix", "f", *project])

    assert result.exit_code == 0, result.output
    signs = json.loads((repo / "LOOP_PLAN.json").read_text(encoding="utf-8"))["plan"]["signs"]
    assert [(sign["issue"], sign["iteration"]) for sign in signs] == [("first", 7), ("second", 7)]
