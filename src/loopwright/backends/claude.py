from __future__ import annotations

import json
import uuid
from pathlib import Path
from typing import Any

from loopwright.backends.base import IterationResult, WorkerBackend, parse_json_lines

DEFAULT_ALLOWED_TOOLS = [
    "Bash",
    "Edit",
    "Read",
    "Write",
    "Glob",
    "Grep",
    "mcp__claude-in-chrome__*",
    "mcp__playwright__*",
]


class ClaudeCodeBackend(WorkerBackend):
    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        *,
        allowed_tools: list[str] | None = None,
        mcp_config: str = "",
        model: str = "",
        verbose: bool = False,
    ) -> None:
        super().__init__(
            binary or "claude",
            allowed_tools=allowed_tools or DEFAULT_ALLOWED_TOOLS,
            model=model,
        )
        self.mcp_config = mcp_config
        self.verbose = verbose

    def new_session_id(self) -> str:
        return str(uuid.uuid4())

    def build_command(
        self,
        project_path: Path,
        session_id: str | None = None,
        allowed_tools: list[str] | None = None,
    ) -> list[str]:
        _ = project_path
        tools = allowed_tools if allowed_tools is not None else self.allowed_tools
        command = [
            self.binary,
            "-p",
            "--output-format",
            "stream-json" if self.verbose else "json",
            "--dangerously-skip-permissions",
        ]
        if tools:
            command.extend(["--allowedTools", ",".join(tools)])
        if self.mcp_config:
            command.extend(["--mcp-config", self.mcp_config])
        if self.model:
            command.extend(["--model", self.model])
        if session_id:
            command.extend(["--session-id", session_id])
        if self.verbose:
            command.append("--verbose")
        return command

    @staticmethod
    def _result_payload(raw_text: str) -> dict[str, Any] | None:
        content = raw_text.strip()
        try:
            payload = json.loads(content)
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, dict):
            return payload

        events = parse_json_lines(content)
        if not events:
            return None
        result = next((event for event in events if event.get("type") == "result"), None)
        cost = next((event for event in events if "total_cost_usd" in event), None)
        if result is None:
            return events[-1]
        merged = dict(result)
        if cost is not None:
            merged.setdefault("total_cost_usd", cost.get("total_cost_usd"))
            merged.setdefault("usage", cost.get("usage"))
        return merged

    def parse_output(self, raw_text: str) -> IterationResult:
        if not raw_text.strip():
            return IterationResult(success=False, error="Worker produced no output.")
        payload = self._result_payload(raw_text)
        if payload is None:
            return IterationResult(
                success=False,
                raw_text=raw_text,
                error="Failed to parse worker output as JSON.",
            )

        usage = payload.get("usage") if isinstance(payload.get("usage"), dict) else {}
        is_error = bool(payload.get("is_error"))
        success = not is_error and payload.get("subtype") == "success"
        result_text = payload.get("result")
        error = None
        if not success:
            error = str(payload.get("error") or payload.get("subtype") or "Worker reported an error.")
        return IterationResult(
            success=success,
            cost=float(payload.get("total_cost_usd") or 0.0),
            tokens_in=int(usage.get("input_tokens") or 0),
            tokens_out=int(usage.get("output_tokens") or 0),
            session_id=payload.get("session_id"),
            raw_text=result_text if isinstance(result_text, str) else "",
            error=error,
        )

    def browser_instructions(self) -> str:
        return (
            "### Visual validation (do not skip)\n"
            "For UI checkpoints you must take a screenshot before reporting completion.\n\n"
            "Chrome MCP workflow:\n"
            "1. mcp__claude-in-chrome__tabs_context_mcp with createIfEmpty=true\n"
            "2. mcp__claude-in-chrome__tabs_create_mcp (returns a tabId)\n"
            "3. mcp__claude-in-chrome__navigate with the app url and tabId\n"
            "4. mcp__claude-in-chrome__computer with action='screenshot' and tabId\n\n"
            "Playwright MCP works too: browser_navigate, browser_wait_for, "
            "browser_take_screenshot.\n\n"
            "The checkpoint is rejected without screenshot evidence."
        )
