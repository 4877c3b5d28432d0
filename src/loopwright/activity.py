from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Any

SKIPPED_DIRS = frozenset(
    {".git", "node_modules", "__pycache__", ".venv", "target", ".cpcache", ".shadow-cljs"}
)


def _mtime(path: Path) -> float | None:
    try:
        return path.stat().st_mtime
    except OSError:
        return None


def _newest_in_tree(root: Path) -> float | None:
    newest: float | None = None
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [name for name in dirnames if name not in SKIPPED_DIRS]
        for filename in filenames:
            mtime = _mtime(Path(dirpath) / filename)
            if mtime is not None and (newest is None or mtime > newest):
                newest = mtime
    return newest


def latest_activity(project_path: Path, plan_file: Path, log_dir: Path) -> float | None:
    """Newest mtime across the plan file, the log directory and the source tree."""
    candidates = [
        _mtime(plan_file),
        _newest_in_tree(log_dir) if log_dir.is_dir() else None,
        _newest_in_tree(project_path) if project_path.is_dir() else None,
    ]
    known = [value for value in candidates if value is not None]
    return max(known) if known else None


class ActivityProbe:
    def __init__(self, project_path: Path, plan_file: Path, log_dir: Path) -> None:
        self.project_path = project_path
        self.plan_file = plan_file
        self.log_dir = log_dir

    def latest(self) -> float | None:
        return latest_activity(self.project_path, self.plan_file, self.log_dir)

    def stuck_diagnostic(self, now: float | None = None, threshold: float = 600.0) -> dict[str, Any]:
        current = time.time() if now is None else now
        last = self.latest()
        idle = None if last is None else max(0.0, current - last)
        return {
            "last_activity": last,
            "idle_seconds": idle,
            "possibly_stuck": idle is not None and idle > threshold,
        }
