from __future__ import annotations

from loopwright.state.plan import Sign, recent_signs
from loopwright.state.plan_store import PlanStore


class SignsLedger:
    """Append-only failure memory stored inside the plan file."""

    def __init__(self, store: PlanStore) -> None:
        self.store = store

    def append(
        self,
        iteration: int,
        issue: str,
        fix: str,
        *,
        checkpoint: str | None = None,
        severity: str = "error",
    ) -> Sign:
        return self.store.append_sign(
            iteration=iteration,
            issue=issue,
            fix=fix,
            checkpoint=checkpoint,
            severity=severity,
        )

    def all(self) -> list[Sign]:
        return list(self.store.load().signs)

    def recent(self, count: int) -> list[Sign]:
        return recent_signs(self.store.load().signs, count)

    def prune(self, keep_iterations: int) -> int:
        return self.store.prune_signs(keep_iterations)


def format_signs(signs: list[Sign]) -> str:
    blocks: list[str] = []
    for sign in signs:
        header = f"### Sign {sign.number} (iteration {sign.iteration}, {sign.severity})"
        if sign.checkpoint:
            header += f" - {sign.checkpoint}"
        blocks.append(f"{header}\n**Issue:** {sign.issue}\n**Fix:** {sign.fix}")
    return "\n\n".join(blocks)
