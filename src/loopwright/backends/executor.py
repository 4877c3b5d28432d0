from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path

from loopwright.activity import ActivityProbe
from loopwright.backends.base import (
    IterationResult,
    WorkerBackend,
    WorkerExecutor,
    completion_signaled,
    extract_blocked_reason,
)
from loopwright.errors import WorkerProcessError, WorkerTimeoutError
from loopwright.state.plan_store import PLAN_FILENAME

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerHandle:
    process: asyncio.subprocess.Process
    project_path: Path
    log_path: Path
    session_id: str | None
    started_at: float
    checkpoint_id: str | None = None


class ProcessExecutor(WorkerExecutor):
    """Spawns backend processes and waits on them under iteration and idle deadlines."""

    def __init__(
        self,
        backend: WorkerBackend,
        *,
        log_dir: Path,
        iteration_timeout: float | None = None,
        idle_timeout: float | None = None,
        poll_interval: float = 2.0,
        kill_grace_seconds: float = 2.0,
    ) -> None:
        self.backend = backend
        self.log_dir = log_dir
        self.iteration_timeout = iteration_timeout or None
        self.idle_timeout = idle_timeout or None
        self.poll_interval = poll_interval
        self.kill_grace_seconds = kill_grace_seconds

    async def spawn(
        self,
        project_path: Path,
        prompt: str,
        allowed_tools: list[str] | None = None,
        *,
        log_name: str = "iter",
        checkpoint_id: str | None = None,
    ) -> WorkerHandle:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.log_dir / f"{log_name}.json"
        session_id = self.backend.new_session_id()
        command = self.backend.build_command(project_path, session_id, allowed_tools)
        logger.debug("Spawning %s worker: %s", self.backend.name, command[0])
        with log_path.open("wb") as log_handle:
            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    cwd=str(project_path),
                    stdin=asyncio.subprocess.PIPE,
                    stdout=log_handle,
                    stderr=asyncio.subprocess.DEVNULL,
                )
            except FileNotFoundError as exc:
                raise WorkerProcessError(
                    f"Worker binary not found: {command[0]}",
                    backend=self.backend.name,
                    retriable=False,
                ) from exc
        handle = WorkerHandle(
            process=process,
            project_path=project_path,
            log_path=log_path,
            session_id=session_id,
            started_at=time.monotonic(),
            checkpoint_id=checkpoint_id,
        )
        await self._send_prompt(process, prompt)
        return handle

    @staticmethod
    async def _send_prompt(process: asyncio.subprocess.Process, prompt: str) -> None:
        if process.stdin is None:
            return
        try:
            process.stdin.write(prompt.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Worker closed stdin before the prompt was fully written")
        finally:
            process.stdin.close()

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace_seconds)
        except TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    async def _idle_watch(self, handle: WorkerHandle) -> None:
        probe = ActivityProbe(handle.project_path, handle.project_path / PLAN_FILENAME, self.log_dir)
        last_seen = await asyncio.to_thread(probe.latest)
        last_change = time.monotonic()
        while True:
            await asyncio.sleep(self.poll_interval)
            current = await asyncio.to_thread(probe.latest)
            now = time.monotonic()
            if current is not None and (last_seen is None or current > last_seen):
                last_seen = current
                last_change = now
            elif now - last_change >= (self.idle_timeout or 0.0):
                return

    async def wait(
        self,
        handle: WorkerHandle,
        timeout: float | None = None,
        *,
        watch_idle: bool = True,
    ) -> IterationResult:
        """Wait for exit, the iteration deadline, or the idle watcher, whichever comes first."""
        deadline = timeout if timeout is not None else self.iteration_timeout
        exit_task = asyncio.ensure_future(handle.process.wait())
        watchers: dict[asyncio.Future, str] = {}
        if deadline:
            remaining = max(0.0, deadline - (time.monotonic() - handle.started_at))
            watchers[asyncio.ensure_future(asyncio.sleep(remaining))] = "iteration"
        if watch_idle and self.idle_timeout:
            watchers[asyncio.ensure_future(self._idle_watch(handle))] = "idle"

        timeout_reason: str | None = None
        try:
            done, _ = await asyncio.wait(
                {exit_task, *watchers}, return_when=asyncio.FIRST_COMPLETED
            )
            if exit_task not in done:
                timeout_reason = next(reason for task, reason in watchers.items() if task in done)
                logger.warning(
                    "Worker for %s hit the %s timeout; terminating",
                    handle.checkpoint_id or "iteration",
                    timeout_reason,
                )
                await self._terminate(handle.process)
                await exit_task
        except asyncio.CancelledError:
            exit_task.cancel()
            await self._terminate(handle.process)
            raise
        finally:
            for task in watchers:
                task.cancel()

        return self._collect(handle, timeout_reason)

    def browser_instructions(self) -> str:
        return self.backend.browser_instructions()

    def _collect(self, handle: WorkerHandle, timeout_reason: str | None) -> IterationResult:
        duration = time.monotonic() - handle.started_at
        try:
            raw = handle.log_path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            raw = ""
        result = self.backend.parse_output(raw)
        result.exit_code = handle.process.returncode
        result.duration_seconds = duration
        result.log_path = handle.log_path
        if result.session_id is None:
            result.session_id = handle.session_id

        if timeout_reason is not None:
            error = WorkerTimeoutError(
                f"Worker exceeded the {timeout_reason} timeout after {duration:.1f}s",
                reason=timeout_reason,
                backend=self.backend.name,
            )
            result.success = False
            result.timed_out = True
            result.timeout_reason = timeout_reason
            result.error = str(error)
        elif result.exit_code not in (0, None):
            error = WorkerProcessError(
                f"Worker exited with code {result.exit_code}: {result.error or 'no error detail'}",
                backend=self.backend.name,
                exit_code=result.exit_code,
            )
            result.success = False
            result.error = str(error)

        result.completion_marker = completion_signaled(result.raw_text, handle.checkpoint_id)
        result.blocked_reason = extract_blocked_reason(result.raw_text, handle.checkpoint_id)
        return result

    async def run_once(
        self,
        project_path: Path,
        prompt: str,
        *,
        log_name: str = "oneshot",
        allowed_tools: list[str] | None = None,
    ) -> IterationResult:
        handle = await self.spawn(project_path, prompt, allowed_tools, log_name=log_name)
        return await self.wait(handle, watch_idle=False)
