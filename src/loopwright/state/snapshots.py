from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loopwright.errors import LoopwrightError

logger = logging.getLogger(__name__)

COMMIT_PREFIX = "loopwright: checkpoint "


class SnapshotError(LoopwrightError):
    """Raised when a git snapshot operation fails."""


@dataclass(slots=True)
class Snapshot:
    commit_hash: str
    subject: str
    checkpoint_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "commit_hash": self.commit_hash,
            "subject": self.subject,
            "checkpoint_id": self.checkpoint_id,
        }


def commit_message(checkpoint_id: str, description: str = "") -> str:
    message = f"{COMMIT_PREFIX}{checkpoint_id}"
    if description:
        message += f" - {description}"
    return message


class GitSnapshots:
    """Rollback points recorded as plain git commits after each finished checkpoint."""

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root.resolve()

    @property
    def git_enabled(self) -> bool:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", "rev-parse", "--is-inside-work-tree"],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
            )
        except OSError as exc:
            logger.debug("git unavailable in %s: %s", self.repo_root, exc)
            return False
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise SnapshotError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def commit_all(self, message: str) -> str:
        if not self.git_enabled:
            raise SnapshotError("No git repository found. Snapshots are disabled.")
        self._run_git(["add", "-A"])
        status = self._run_git(["status", "--porcelain"])
        if not status.stdout.strip():
            raise SnapshotError("Nothing to commit.")
        self._run_git(["commit", "-m", message, "--no-verify"])
        return self._run_git(["rev-parse", "HEAD"]).stdout.strip()

    def snapshot_checkpoint(self, checkpoint_id: str, description: str = "") -> str | None:
        """Best-effort commit; returns the commit hash or None."""
        if not self.git_enabled:
            logger.debug("Skipping snapshot for %s: not a git repository", checkpoint_id)
            return None
        try:
            commit_hash = self.commit_all(commit_message(checkpoint_id, description))
        except (SnapshotError, OSError) as exc:
            logger.warning("Snapshot for %s skipped: %s", checkpoint_id, exc)
            return None
        logger.info("Snapshot %s recorded for checkpoint %s", commit_hash[:8], checkpoint_id)
        return commit_hash

    def list_snapshots(self) -> list[Snapshot]:
        if not self.git_enabled:
            return []
        proc = self._run_git(
            ["log", "--reverse", "--pretty=format:%H%x09%s", "HEAD"],
            check=False,
        )
        if proc.returncode != 0 or not proc.stdout.strip():
            return []
        snapshots: list[Snapshot] = []
        for line in proc.stdout.splitlines():
            commit_hash, _, subject = line.partition("\t")
            if not subject.startswith(COMMIT_PREFIX):
                continue
            checkpoint_id = subject[len(COMMIT_PREFIX) :].split(" - ", maxsplit=1)[0].strip()
            snapshots.append(
                Snapshot(
                    commit_hash=commit_hash.strip(),
                    subject=subject.strip(),
                    checkpoint_id=checkpoint_id or None,
                )
            )
        return snapshots

    def resolve(self, ref: str) -> Snapshot | None:
        for snapshot in reversed(self.list_snapshots()):
            if snapshot.checkpoint_id == ref or snapshot.commit_hash.startswith(ref):
                return snapshot
        return None

    def rollback(self, ref: str) -> Snapshot:
        if not self.git_enabled:
            raise SnapshotError("Rollback requires a git repository.")
        snapshot = self.resolve(ref)
        if snapshot is None:
            raise SnapshotError(f"Snapshot not found: {ref}")
        self._run_git(["reset", "--hard", snapshot.commit_hash])
        return snapshot
