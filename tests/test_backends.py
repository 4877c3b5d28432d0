import json
from pathlib import Path

from loopwright.backends import ClaudeCodeBackend, OpenCodeBackend, completion_signaled, extract_blocked_reason
from loopwright.backends.claude import DEFAULT_ALLOWED_TOOLS


def test_completion_marker_matching() -> None:
    assert completion_signaled("All done.\nCHECKPOINT_COMPLETE", "api") is True
    assert completion_signaled("CHECKPOINT_COMPLETE: api", "api") is True
    assert completion_signaled("CHECKPOINT_COMPLETE: `api`.", "api") is True
    assert completion_signaled("CHECKPOINT_COMPLETE: schema", "api") is False
    assert completion_signaled("CHECKPOINT_COMPLETE: schema", None) is True
    assert completion_signaled("still working", "api") is False
    assert completion_signaled("", "api") is False


def test_blocked_reason_extraction() -> None:
    assert extract_blocked_reason("CHECKPOINT_BLOCKED: database is down\nmore", "api") == "database is down"
    assert extract_blocked_reason("CHECKPOINT_BLOCKED: api - missing key", "api") == "missing key"
    assert extract_blocked_reason("CHECKPOINT_BLOCKED:   ", "api") is None
    assert extract_blocked_reason("no marker here") is None


def test_claude_build_command(tmp_path: Path) -> None:
    backend = ClaudeCodeBackend(
        "claude",
        allowed_tools=["Bash", "Edit"],
        mcp_config="mcp.json",
        model="sonnet",
    )

    command = backend.build_command(tmp_path, "session-1")

    assert command[:5] == ["claude", "-p", "--output-format", "json", "--dangerously-skip-permissions"]
    assert command[command.index("--allowedTools") + 1] == "Bash,Edit"
    assert command[command.index("--mcp-config") + 1] == "mcp.json"
    assert command[command.index("--model") + 1] == "sonnet"
    assert command[command.index("--session-id") + 1] == "session-1"
    assert "--verbose" not in command

    verbose = ClaudeCodeBackend(verbose=True).build_command(tmp_path, None, ["Read"])
    assert verbose[3] == "stream-json"
    assert verbose[-1] == "--verbose"
    assert verbose[verbose.index("--allowedTools") + 1] == "Read"


def test_claude_defaults_allowed_tools() -> None:
    assert ClaudeCodeBackend().allowed_tools == DEFAULT_ALLOWED_TOOLS
    assert len(ClaudeCodeBackend().new_session_id()) == 36


def test_claude_parse_single_result() -> None:
    payload = {
        "type": "result",
        "subtype": "success",
        "is_error": False,
        "result": "Implemented.\nCHECKPOINT_COMPLETE: api",
        "total_cost_usd": 0.25,
        "session_id": "abc",
        "usage": {"input_tokens": 1200, "output_tokens": 300},
    }

    result = ClaudeCodeBackend().parse_output(json.dumps(payload))

    assert result.success is True
    assert result.cost == 0.25
    assert (result.tokens_in, result.tokens_out) == (1200, 300)
    assert result.session_id == "abc"
    assert result.raw_text.endswith("CHECKPOINT_COMPLETE: api")


def test_claude_parse_stream_and_errors() -> None:
    lines = [
        json.dumps({"type": "system", "subtype": "init"}),
        "not json",
        json.dumps(
            {
                "type": "result",
                "subtype": "error_max_turns",
                "is_error": True,
                "result": "",
                "total_cost_usd": 0.1,
            }
        ),
    ]
    result = ClaudeCodeBackend().parse_output("\n".join(lines))
    assert result.success is False
    assert result.error == "error_max_turns"
    assert result.cost == 0.1

    empty = ClaudeCodeBackend().parse_output("   ")
    assert (empty.success, empty.error) == (False, "Worker produced no output.")

    garbage = ClaudeCodeBackend().parse_output("Traceback: boom")
    assert garbage.error == "Failed to parse worker output as JSON."


def test_opencode_build_command(tmp_path: Path) -> None:
    command = OpenCodeBackend(model="anthropic/claude-sonnet").build_command(tmp_path, "ignored")

    assert command[:6] == ["opencode", "run", "--format", "json", "--dir", str(tmp_path)]
    assert command[command.index("--agent") + 1] == "build"
    assert command[-2:] == ["--model", "anthropic/claude-sonnet"]
    assert OpenCodeBackend().new_session_id() is None


def test_opencode_parse_events() -> None:
    events = [
        {"type": "step_start", "sessionID": "ses_1", "part": {}},
        {"type": "text", "sessionID": "ses_1", "part": {"text": "Working on it"}},
        {"type": "step_finish", "part": {"cost": 0.02, "tokens": {"input": 100, "output": 20}}},
        {"type": "text", "part": {"text": "CHECKPOINT_COMPLETE: ui"}},
        {"type": "step_finish", "part": {"cost": 0.03, "tokens": {"input": 50, "output": 10}}},
    ]
    result = OpenCodeBackend().parse_output("\n".join(json.dumps(event) for event in events))

    assert result.success is True
    assert result.session_id == "ses_1"
    assert result.raw_text == "Working on it\nCHECKPOINT_COMPLETE: ui"
    assert round(result.cost, 4) == 0.05
    assert (result.tokens_in, result.tokens_out) == (150, 30)


def test_opencode_parse_error_and_empty() -> None:
    error_event = {"type": "error", "error": {"name": "APIError", "data": {"message": "rate limited"}}}
    result = OpenCodeBackend().parse_output(json.dumps(error_event))
    assert (result.success, result.error) == (False, "rate limited")

    empty = OpenCodeBackend().parse_output("")
    assert (empty.success, empty.error) == (False, "No output from OpenCode.")
