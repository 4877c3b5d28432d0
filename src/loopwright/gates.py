from __future__ import annotations

import asyncio
import itertools
import logging
import re
import shlex
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from loopwright.errors import EvaluationError, GateFailure, WorkerError

if TYPE_CHECKING:
    from loopwright.backends.executor import ProcessExecutor

logger = logging.getLogger(__name__)

ItemType = Literal["expression", "visual", "judged"]
ItemStatus = Literal["passed", "failed", "pending"]

VISUAL_ACTIONS = ("screenshot", "navigate", "snapshot", "click", "wait")
IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".webp")

_TAGS: dict[str, ItemType] = {
    "expr:": "expression",
    "repl:": "expression",
    "visual:": "visual",
    "chrome:": "visual",
    "judge:": "judged",
}
_SPLIT_RE = re.compile(r"\s*\|\s*|\n")
_EXPECTED_RE = re.compile(r"^(?P<expr>.+?)\s*=>\s*(?P<expected>.+)$", re.DOTALL)
_VISUAL_VERDICT_RE = re.compile(r"\b(SUCCESS|FAILED)\b")
_JUDGE_VERDICT_RE = re.compile(r"\b(PASS|FAIL)\b")


@dataclass(slots=True)
class ValidationItem:
    type: ItemType
    raw: str
    expression: str | None = None
    expected: str | None = None
    action: str | None = None
    args: str = ""
    criteria: str | None = None


def parse_item(text: str) -> ValidationItem:
    item = text.strip()
    kind: ItemType = "expression"
    body = item
    for tag, tag_type in _TAGS.items():
        if item.startswith(tag):
            kind = tag_type
            body = item[len(tag) :].strip()
            break

    if kind == "visual":
        action, _, args = body.partition(" ")
        return ValidationItem(type="visual", raw=item, action=action.strip(), args=args.strip())
    if kind == "judged":
        return ValidationItem(type="judged", raw=item, criteria=body)
    match = _EXPECTED_RE.match(body)
    if match:
        return ValidationItem(
            type="expression",
            raw=item,
            expression=match.group("expr").strip(),
            expected=match.group("expected").strip(),
        )
    return ValidationItem(type="expression", raw=item, expression=body)


def parse_gate_string(gate_string: str | None) -> list[ValidationItem]:
    """Split on ``|`` or newlines; untagged items are expressions."""
    if not gate_string or not gate_string.strip():
        return []
    return [parse_item(part) for part in _SPLIT_RE.split(gate_string) if part.strip()]


@dataclass(slots=True)
class EvaluationResult:
    success: bool
    value: str = ""
    error: str | None = None


class ExpressionEvaluator(ABC):
    @abstractmethod
    async def evaluate(self, expression: str, target: str = "") -> EvaluationResult:
        """Evaluate ``expression`` against ``target``; raise EvaluationError on infrastructure failure."""


async def _run_command(args: list[str], *, cwd: Path | None, timeout: float) -> tuple[int, str, str]:
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd) if cwd else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise EvaluationError(f"Evaluator binary not found: {args[0]}") from exc
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError as exc:
        process.kill()
        await process.wait()
        raise EvaluationError(f"Evaluation timed out after {timeout}s") from exc
    return (
        process.returncode if process.returncode is not None else -1,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


class PythonEvaluator(ExpressionEvaluator):
    """Evaluates Python expressions in a fresh interpreter rooted at the project."""

    SCRIPT = "import sys\nprint(eval(sys.argv[1]))\n"

    def __init__(self, project_path: Path | None = None, *, timeout: float = 30.0) -> None:
        self.project_path = project_path
        self.timeout = timeout

    async def evaluate(self, expression: str, target: str = "") -> EvaluationResult:
        _ = target
        code, stdout, stderr = await _run_command(
            [sys.executable, "-c", self.SCRIPT, expression],
            cwd=self.project_path,
            timeout=self.timeout,
        )
        if code != 0:
            lines = [line for line in stderr.strip().splitlines() if line.strip()]
            return EvaluationResult(success=False, error=lines[-1] if lines else "Evaluation failed")
        return EvaluationResult(success=True, value=stdout.strip())


class CommandEvaluator(ExpressionEvaluator):
    """Runs a command template such as ``clj-nrepl-eval -p {target} {expression}``."""

    def __init__(
        self,
        template: str,
        *,
        project_path: Path | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.template = template
        self.project_path = project_path
        self.timeout = timeout

    def build_args(self, expression: str, target: str = "") -> list[str]:
        try:
            command = self.template.format(
                expression=shlex.quote(expression),
                target=shlex.quote(target) if target else "",
            )
        except (KeyError, IndexError) as exc:
            raise EvaluationError(f"Invalid eval command template: {self.template}") from exc
        args = shlex.split(command)
        if not args:
            raise EvaluationError("Eval command template is empty.")
        return args

    async def evaluate(self, expression: str, target: str = "") -> EvaluationResult:
        code, stdout, stderr = await _run_command(
            self.build_args(expression, target),
            cwd=self.project_path,
            timeout=self.timeout,
        )
        if code != 0:
            return EvaluationResult(success=False, error=stderr.strip() or "Evaluation failed")
        return EvaluationResult(success=True, value=stdout.strip())


class BrowserChecker(ABC):
    @abstractmethod
    async def check(self, instruction: str) -> str:
        """Carry out a browser instruction; the reply should contain SUCCESS or FAILED."""


class Judge(ABC):
    @abstractmethod
    async def judge(self, criteria: str, screenshot: Path | None = None) -> str:
        """Assess criteria; the reply should contain PASS or FAIL."""


_gate_log_ids = itertools.count(1)


def _gate_log_name(kind: str) -> str:
    return f"{kind}-{next(_gate_log_ids)}"


class AgentBrowserChecker(BrowserChecker):
    """Delegates browser checks to a one-shot worker with browser tools."""

    def __init__(self, executor: ProcessExecutor, project_path: Path) -> None:
        self.executor = executor
        self.project_path = project_path

    async def check(self, instruction: str) -> str:
        result = await self.executor.run_once(
            self.project_path, instruction, log_name=_gate_log_name("gate-visual")
        )
        if not result.success:
            logger.warning("Browser check worker failed: %s", result.error)
        return result.raw_text


class AgentJudge(Judge):
    def __init__(self, executor: ProcessExecutor, project_path: Path) -> None:
        self.executor = executor
        self.project_path = project_path

    async def judge(self, criteria: str, screenshot: Path | None = None) -> str:
        lines = [
            "You are reviewing work in this project against a single criterion.",
            f"Criterion: {criteria}",
        ]
        if screenshot is not None:
            lines.append(f"Inspect the screenshot at {screenshot} as evidence.")
        lines.append("Do not modify any files. End your reply with 'VERDICT: PASS' or 'VERDICT: FAIL'.")
        result = await self.executor.run_once(
            self.project_path, "\n".join(lines), log_name=_gate_log_name("gate-judge")
        )
        if not result.success:
            logger.warning("Judge worker failed: %s", result.error)
        return result.raw_text


def visual_instruction(action: str, args: str) -> str:
    steps = {
        "screenshot": f"Take a screenshot of {args or 'the current page'} and confirm it renders.",
        "navigate": f"Navigate the browser to {args} and confirm the page loads.",
        "snapshot": f"Capture an accessibility snapshot of {args or 'the current page'}.",
        "click": f"Click the element {args} and confirm the click succeeds.",
        "wait": f"Wait for {args} and confirm the condition is met.",
    }
    return (
        f"{steps[action]}\n"
        "Do not modify any files. Reply with SUCCESS if the step worked, "
        "otherwise FAILED followed by the reason."
    )


def latest_screenshot(screenshot_dir: Path | None) -> Path | None:
    if screenshot_dir is None or not screenshot_dir.is_dir():
        return None
    images = [
        path
        for path in screenshot_dir.iterdir()
        if path.is_file() and path.suffix.lower() in IMAGE_SUFFIXES
    ]
    if not images:
        return None
    return max(images, key=lambda path: path.stat().st_mtime)


def _last_verdict(pattern: re.Pattern[str], text: str) -> str | None:
    matches = pattern.findall(text or "")
    return matches[-1] if matches else None


@dataclass(slots=True)
class ItemResult:
    item: ValidationItem
    status: ItemStatus
    actual: str | None = None
    expected: str | None = None
    error: str | None = None
    note: str | None = None

    @property
    def passed(self) -> bool:
        return self.status == "passed"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"raw": self.item.raw, "type": self.item.type, "status": self.status}
        for key in ("actual", "expected", "error", "note"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


@dataclass(slots=True)
class GateReport:
    all_passed: bool
    passed_count: int
    failed_count: int
    pending_count: int
    results: list[ItemResult] = field(default_factory=list)
    summary: str = ""

    def failures(self) -> list[ItemResult]:
        return [result for result in self.results if result.status == "failed"]

    def to_dict(self) -> dict[str, Any]:
        return {
            "all_passed": self.all_passed,
            "passed_count": self.passed_count,
            "failed_count": self.failed_count,
            "pending_count": self.pending_count,
            "summary": self.summary,
            "results": [result.to_dict() for result in self.results],
        }


@dataclass(slots=True)
class GateVerdict:
    passed: bool
    message: str
    report: GateReport | None = None


def summarize(results: list[ItemResult]) -> GateReport:
    passed = sum(1 for result in results if result.status == "passed")
    failed = sum(1 for result in results if result.status == "failed")
    pending = sum(1 for result in results if result.status == "pending")
    total = len(results)
    if total == 0:
        summary = "No validations defined"
    elif failed:
        summary = f"FAILED: {failed} of {total}"
    elif pending:
        summary = f"PENDING: {pending} of {total} require manual or agent execution"
    else:
        summary = f"PASSED: {passed} of {total}"
    return GateReport(
        all_passed=failed == 0 and pending == 0,
        passed_count=passed,
        failed_count=failed,
        pending_count=pending,
        results=results,
        summary=summary,
    )


class GateRunner:
    def __init__(
        self,
        evaluator: ExpressionEvaluator | None = None,
        *,
        target: str = "",
        browser: BrowserChecker | None = None,
        judge: Judge | None = None,
        screenshot_dir: Path | None = None,
    ) -> None:
        self.evaluator = evaluator
        self.target = target
        self.browser = browser
        self.judge = judge
        self.screenshot_dir = screenshot_dir

    async def _run_expression(self, item: ValidationItem) -> ItemResult:
        if self.evaluator is None:
            return ItemResult(item=item, status="pending", note="No expression evaluator configured")
        try:
            outcome = await self.evaluator.evaluate(item.expression or "", self.target)
        except EvaluationError as exc:
            return ItemResult(item=item, status="failed", expected=item.expected, error=str(exc))
        if not outcome.success:
            return ItemResult(
                item=item,
                status="failed",
                expected=item.expected,
                error=outcome.error or "Evaluation failed",
            )
        actual = outcome.value.strip()
        if item.expected is not None and actual != item.expected.strip():
            return ItemResult(item=item, status="failed", actual=actual, expected=item.expected)
        return ItemResult(item=item, status="passed", actual=actual, expected=item.expected)

    async def _run_visual(self, item: ValidationItem) -> ItemResult:
        action = item.action or ""
        if action not in VISUAL_ACTIONS:
            return ItemResult(item=item, status="failed", error=f"Unknown visual action: {action}")
        if self.browser is None:
            return ItemResult(
                item=item,
                status="pending",
                note=f"Visual check requires browser automation: {action} {item.args}".strip(),
            )
        try:
            reply = await self.browser.check(visual_instruction(action, item.args))
        except WorkerError as exc:
            return ItemResult(item=item, status="pending", note=f"Browser check unavailable: {exc}")
        verdict = _last_verdict(_VISUAL_VERDICT_RE, reply)
        if verdict == "SUCCESS":
            return ItemResult(item=item, status="passed", actual=reply.strip())
        if verdict == "FAILED":
            return ItemResult(item=item, status="failed", actual=reply.strip())
        return ItemResult(item=item, status="pending", note="Browser check gave no verdict")

    async def _run_judged(self, item: ValidationItem) -> ItemResult:
        if self.judge is None:
            return ItemResult(
                item=item,
                status="pending",
                note=f"Judged check requires an evaluator: {item.criteria}",
            )
        try:
            reply = await self.judge.judge(item.criteria or "", latest_screenshot(self.screenshot_dir))
        except WorkerError as exc:
            return ItemResult(item=item, status="pending", note=f"Judge unavailable: {exc}")
        verdict = _last_verdict(_JUDGE_VERDICT_RE, reply)
        if verdict == "PASS":
            return ItemResult(item=item, status="passed", actual=reply.strip())
        if verdict == "FAIL":
            return ItemResult(item=item, status="failed", actual=reply.strip())
        return ItemResult(item=item, status="pending", note="Judge verdict unclear")

    async def run_item(self, item: ValidationItem) -> ItemResult:
        if item.type == "visual":
            return await self._run_visual(item)
        if item.type == "judged":
            return await self._run_judged(item)
        return await self._run_expression(item)

    async def run_all(self, gate_string: str | None) -> GateReport:
        results = [await self.run_item(item) for item in parse_gate_string(gate_string)]
        return summarize(results)

    async def gates_passed(self, gate_string: str | None) -> GateVerdict:
        if not gate_string or not gate_string.strip():
            return GateVerdict(passed=True, message="No gates defined")
        report = await self.run_all(gate_string)
        return GateVerdict(passed=report.all_passed, message=report.summary, report=report)

    async def ensure_gates_passed(
        self,
        gate_string: str | None,
        checkpoint_id: str | None = None,
    ) -> GateVerdict:
        verdict = await self.gates_passed(gate_string)
        if not verdict.passed:
            raise GateFailure(checkpoint_id, verdict.report or summarize([]))
        return verdict


def gate_fix_hint(report: GateReport) -> str:
    hints: list[str] = []
    for result in report.results:
        if result.status == "failed":
            if result.expected is not None and result.actual is not None:
                hints.append(f"{result.item.raw}: expected {result.expected}, got {result.actual}")
            else:
                hints.append(f"{result.item.raw}: {result.error or result.actual or 'failed'}")
        elif result.status == "pending":
            hints.append(f"{result.item.raw}: {result.note or 'unresolved'}")
    return "; ".join(hints) or "Re-check the gates before signaling completion"
