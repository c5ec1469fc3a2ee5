"""Autonomy modes and the directive text a worker receives for each of them."""

from __future__ import annotations

import logging
from typing import Any

from strandworks.errors import InvalidModeError, NotFoundError
from strandworks.models import Goal, Strand, Task
from strandworks.state.store import EntityStore

logger = logging.getLogger(__name__)

AUTONOMY_MODES = ("full", "plan", "step", "supervised")
DEFAULT_AUTONOMY_MODE = "plan"

MODE_DESCRIPTIONS = {
    "full": "Work end to end without approval gates.",
    "plan": "Write a plan and wait for approval before executing it.",
    "step": "Execute one step at a time and check in after each.",
    "supervised": "Every action needs explicit sign-off.",
}

_DIRECTIVES = {
    "full": "\n".join(
        [
            "## Autonomy: Full",
            "You have full autonomy for this task. Proceed directly with implementation,",
            "make reasonable decisions on your own and report when the work is complete.",
        ]
    ),
    "plan": "\n".join(
        [
            "## Autonomy: Plan Approval Required",
            "Before making any changes, write your implementation plan to PLAN.md and",
            "mark it as awaiting approval. Do not start executing until the plan is approved.",
        ]
    ),
    "step": "\n".join(
        [
            "## Autonomy: Step-by-Step",
            "Work one step at a time. After each step, report what you did and wait for",
            "confirmation before moving on to the next one.",
        ]
    ),
    "supervised": "\n".join(
        [
            "## Autonomy: Supervised",
            "You are working under close supervision. Describe every action before taking",
            "it and wait for explicit approval. Do not modify files without sign-off.",
        ]
    ),
}


def is_valid_mode(mode: Any) -> bool:
    return isinstance(mode, str) and mode in AUTONOMY_MODES


def resolve_mode(
    task: Task | None = None, goal: Goal | None = None, strand: Strand | None = None
) -> str:
    """Return the first recognized override walking task, goal then strand."""
    for entity in (task, goal, strand):
        mode = getattr(entity, "autonomy_mode", None) if entity is not None else None
        if is_valid_mode(mode):
            return mode
    return DEFAULT_AUTONOMY_MODE


def build_directive(mode: str | None) -> str:
    if not is_valid_mode(mode):
        mode = DEFAULT_AUTONOMY_MODE
    return _DIRECTIVES[mode]


def _validate(mode: str | None) -> None:
    if mode is not None and not is_valid_mode(mode):
        raise InvalidModeError(
            f"Invalid mode: {mode!r}. Must be one of: {', '.join(AUTONOMY_MODES)}"
        )


def set_task_autonomy(store: EntityStore, goal_id: str, task_id: str, mode: str | None) -> Task:
    _validate(mode)
    with store.transaction() as doc:
        goal = doc.goal(goal_id)
        if goal is None:
            raise NotFoundError(f"Goal {goal_id} not found")
        task = goal.task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found in goal {goal_id}")
        task.autonomy_mode = mode
        task.touch()
        goal.touch()
    logger.info("Task %s autonomy set to %s", task_id, mode or "inherited")
    return task


def set_goal_autonomy(store: EntityStore, goal_id: str, mode: str | None) -> Goal:
    _validate(mode)
    with store.transaction() as doc:
        goal = doc.goal(goal_id)
        if goal is None:
            raise NotFoundError(f"Goal {goal_id} not found")
        goal.autonomy_mode = mode
        goal.touch()
    logger.info("Goal %s autonomy set to %s", goal_id, mode or "inherited")
    return goal


def set_strand_autonomy(store: EntityStore, strand_id: str, mode: str | None) -> Strand:
    _validate(mode)
    with store.transaction() as doc:
        strand = doc.strand(strand_id)
        if strand is None:
            raise NotFoundError(f"Strand {strand_id} not found")
        strand.autonomy_mode = mode
        strand.touch()
    logger.info("Strand %s autonomy set to %s", strand_id, mode or "inherited")
    return strand


def get_task_autonomy_info(store: EntityStore, goal_id: str, task_id: str) -> dict[str, Any]:
    doc = store.load()
    goal = doc.goal(goal_id)
    if goal is None:
        raise NotFoundError(f"Goal {goal_id} not found")
    task = goal.task(task_id)
    if task is None:
        raise NotFoundError(f"Task {task_id} not found in goal {goal_id}")
    strand = doc.strand(goal.strand_id)
    mode = resolve_mode(task, goal, strand)
    return {
        "goal_id": goal_id,
        "task_id": task_id,
        "mode": mode,
        "directive": build_directive(mode),
        "task_mode": task.autonomy_mode,
        "goal_mode": goal.autonomy_mode,
        "strand_mode": strand.autonomy_mode if strand else None,
        "default_mode": DEFAULT_AUTONOMY_MODE,
    }
