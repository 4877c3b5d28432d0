import subprocess
from pathlib import Path

import pytest

from loopwright.state.snapshots import GitSnapshots, SnapshotError, commit_message


def _run(cmd: list[str], cwd: Path) -> subprocess.CompletedProcess[str]:
    return subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "seed.txt").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "seed.txt"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


def test_commit_message_format() -> None:
    assert commit_message("api") == "loopwright: checkpoint api"
    assert commit_message("api", "Build API") == "loopwright: checkpoint api - Build API"


def test_snapshot_and_rollback(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    snapshots = GitSnapshots(tmp_path)

    (tmp_path / "schema.sql").write_text("create table todo;\n", encoding="utf-8")
    first = snapshots.snapshot_checkpoint("schema", "Define schema")
    (tmp_path / "api.py").write_text("print('api')\n", encoding="utf-8")
    second = snapshots.snapshot_checkpoint("api", "Build API")

    assert first and second and first != second
    listed = snapshots.list_snapshots()
    assert [snapshot.checkpoint_id for snapshot in listed] == ["schema", "api"]
    assert listed[1].commit_hash == second
    assert snapshots.resolve(second[:10]).checkpoint_id == "api"

    restored = snapshots.rollback("schema")

    assert restored.commit_hash == first
    assert not (tmp_path / "api.py").exists()
    assert (tmp_path / "schema.sql").exists()


def test_snapshot_with_nothing_to_commit_is_skipped(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    snapshots = GitSnapshots(tmp_path)

    assert snapshots.snapshot_checkpoint("noop") is None
    with pytest.raises(SnapshotError, match="Nothing to commit"):
        snapshots.commit_all("empty")


def test_snapshots_outside_git(tmp_path: Path) -> None:
    snapshots = GitSnapshots(tmp_path)

    assert snapshots.git_enabled is False
    assert snapshots.snapshot_checkpoint("a") is None
    assert snapshots.list_snapshots() == []
    with pytest.raises(SnapshotError):
        snapshots.rollback("a")


def test_rollback_unknown_ref(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    with pytest.raises(SnapshotError, match="Snapshot not found"):
        GitSnapshots(tmp_path).rollback("missing")


def test_snapshots_without_git_binary(tmp_path: Path, monkeypatch) -> None:
    _init_git_repo(tmp_path)
    empty_bin = tmp_path / "nobin"
    empty_bin.mkdir()
    monkeypatch.setenv("PATH", str(empty_bin))
    snapshots = GitSnapshots(tmp_path)

    assert snapshots.git_enabled is False
    assert snapshots.snapshot_checkpoint("a", "Anything") is None
    assert snapshots.list_snapshots() == []
