from __future__ import annotations

from pathlib import Path

from loopwright.backends.base import IterationResult, WorkerBackend, parse_json_lines


class OpenCodeBackend(WorkerBackend):
    """``opencode run --format json`` emits JSONL events: text, tool_use, step_finish, error."""

    name = "opencode"

    def __init__(
        self,
        binary: str = "opencode",
        *,
        agent: str = "build",
        allowed_tools: list[str] | None = None,
        model: str = "",
    ) -> None:
        super().__init__(binary or "opencode", allowed_tools=allowed_tools, model=model)
        self.agent = agent

    def build_command(
        self,
        project_path: Path,
        session_id: str | None = None,
        allowed_tools: list[str] | None = None,
    ) -> list[str]:
        _ = session_id, allowed_tools
        command = [self.binary, "run", "--format", "json", "--dir", str(project_path)]
        if self.agent:
            command.extend(["--agent", self.agent])
        if self.model:
            command.extend(["--model", self.model])
        return command

    def parse_output(self, raw_text: str) -> IterationResult:
        events = parse_json_lines(raw_text)
        if not events:
            return IterationResult(
                success=False,
                raw_text=raw_text,
                error="No output from OpenCode.",
            )

        texts: list[str] = []
        cost = 0.0
        tokens_in = 0
        tokens_out = 0
        error: str | None = None
        session_id: str | None = None
        for event in events:
            if session_id is None and isinstance(event.get("sessionID"), str):
                session_id = event["sessionID"]
            part = event.get("part") if isinstance(event.get("part"), dict) else {}
            kind = event.get("type")
            if kind == "text" and isinstance(part.get("text"), str):
                texts.append(part["text"])
            elif kind == "step_finish":
                cost += float(part.get("cost") or 0.0)
                tokens = part.get("tokens") if isinstance(part.get("tokens"), dict) else {}
                tokens_in += int(tokens.get("input") or 0)
                tokens_out += int(tokens.get("output") or 0)
            elif kind == "error" and error is None:
                details = event.get("error") if isinstance(event.get("error"), dict) else {}
                data = details.get("data") if isinstance(details.get("data"), dict) else {}
                error = str(data.get("message") or details.get("name") or "Unknown error")

        if error is None and not texts:
            error = "No output from OpenCode."
        return IterationResult(
            success=error is None,
            cost=cost,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            session_id=session_id,
            raw_text="\n".join(texts),
            error=error,
        )

    def browser_instructions(self) -> str:
        return (
            "### Visual validation (do not skip)\n"
            "For UI checkpoints you must take a screenshot before reporting completion.\n\n"
            "Playwright MCP workflow:\n"
            "1. mcp__playwright__browser_navigate to the app url\n"
            "2. mcp__playwright__browser_wait_for with time=3\n"
            "3. mcp__playwright__browser_take_screenshot\n\n"
            "The checkpoint is rejected without screenshot evidence."
        )
