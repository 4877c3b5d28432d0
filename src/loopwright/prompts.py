from __future__ import annotations

import json

from loopwright.state.plan import Checkpoint, Plan, context_for_iteration, recent_signs
from loopwright.state.plan_store import PLAN_FILENAME
from loopwright.state.signs import format_signs

UI_KEYWORDS = (
    "ui",
    "view",
    "screen",
    "page",
    "component",
    "display",
    "show",
    "render",
    "mobile",
    "web",
    "frontend",
    "button",
    "form",
    "list",
    "card",
)


def is_ui_checkpoint(checkpoint: Checkpoint) -> bool:
    """Explicit ``ui`` tag wins; otherwise fall back to description keywords."""
    if checkpoint.ui is not None:
        return checkpoint.ui
    description = checkpoint.description.lower()
    return any(keyword in description for keyword in UI_KEYWORDS)


def build_iteration_prompt(
    plan: Plan,
    checkpoint: Checkpoint,
    *,
    max_signs: int = 5,
    browser_instructions: str = "",
) -> str:
    context = context_for_iteration(plan, max_signs=max_signs)
    context.pop("recent_signs")
    signs = recent_signs(plan.signs, max_signs)
    ui = is_ui_checkpoint(checkpoint)

    sections: list[str] = [
        f"# Loop: {plan.title}",
        "You are working on a focused checkpoint. Complete this ONE task, then exit.",
    ]
    detail = [f"## Current checkpoint: {checkpoint.id}", f"**Task:** {checkpoint.description}"]
    if checkpoint.file:
        detail.append(f"**File:** {checkpoint.file}")
    if checkpoint.acceptance:
        detail.append(f"**Acceptance criteria:** {checkpoint.acceptance}")
    if checkpoint.gates:
        detail.append("**Gates (must pass before completion):**")
        detail.extend(f"- {gate}" for gate in checkpoint.gates)
    sections.append("\n".join(detail))

    steps = [
        f"1. Read the current state: {PLAN_FILENAME} and the files involved.",
        "2. Implement the checkpoint task.",
        "3. Verify the acceptance criteria and gates yourself.",
    ]
    if ui and browser_instructions:
        steps.append("4. Perform visual validation as described below.")
    steps.append(
        f"{len(steps) + 1}. Print 'CHECKPOINT_COMPLETE: {checkpoint.id}' when done, "
        "or 'CHECKPOINT_BLOCKED: <reason>' if you are stuck."
    )
    sections.append("## Instructions\n" + "\n".join(steps))
    if ui and browser_instructions:
        sections.append(browser_instructions)

    sections.append(
        "## Plan context\n```json\n" + json.dumps(context, ensure_ascii=False, indent=2) + "\n```"
    )
    if signs:
        sections.append("## Previous learnings (signs)\n\n" + format_signs(signs))
    sections.append("Focus ONLY on this checkpoint. Do not work ahead.")
    return "\n\n".join(sections)
