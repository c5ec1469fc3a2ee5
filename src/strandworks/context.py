"""Text blocks handed to worker sessions."""

from __future__ import annotations

from strandworks.models import Goal, Strand, Task

PROJECT_SUMMARY_CAP = 15


def build_goal_context(goal: Goal | None, current_session_key: str | None = None) -> str | None:
    if goal is None:
        return None

    lines = [f'<goal id="{goal.id}" status="{goal.status}">', f"# {goal.title}"]

    meta = []
    if goal.priority:
        meta.append(goal.priority)
    if goal.deadline:
        meta.append(f"Deadline: {goal.deadline}")
    if meta:
        lines.append(" · ".join(meta))

    if goal.worktree:
        lines.append(f"Workspace: {goal.worktree.path} (branch: {goal.worktree.branch})")

    if goal.description:
        lines.extend(["", goal.description])

    if goal.tasks:
        done_count = sum(1 for task in goal.tasks if task.done)
        lines.extend(["", f"Tasks ({done_count}/{len(goal.tasks)} done):"])
        for task in goal.tasks:
            if current_session_key and task.session_key == current_session_key:
                suffix = " <- you"
            elif task.session_key:
                suffix = f" (agent: {task.session_key})"
            elif not task.done:
                suffix = " (unassigned)"
            else:
                suffix = ""
            lines.append(f"- [{task.status}] {task.text} [{task.id}]{suffix}")
            if task.done and task.summary:
                lines.append(f"  > {task.summary}")

    lines.append("</goal>")
    return "\n".join(lines)


def build_project_summary(
    strand: Strand | None, goals: list[Goal], current_goal_id: str | None = None
) -> str | None:
    if strand is None or not goals:
        return None

    lines = [f'<project name="{strand.name}" id="{strand.id}" goals="{len(goals)}">']
    for index, goal in enumerate(goals[:PROJECT_SUMMARY_CAP], start=1):
        suffix = ""
        if goal.id == current_goal_id:
            suffix = " <- this goal"
        elif goal.status == "active" and goal.tasks:
            done = sum(1 for task in goal.tasks if task.done)
            suffix = f" ({done}/{len(goal.tasks)} tasks)"
        lines.append(f"{index}. [{goal.status}] {goal.title} ({goal.id}){suffix}")

    remaining = len(goals) - PROJECT_SUMMARY_CAP
    if remaining > 0:
        lines.append(f"... and {remaining} more")
    lines.append("</project>")
    return "\n".join(lines)


def build_assignment_context(
    *,
    task: Task,
    goal: Goal,
    strand: Strand | None,
    sibling_goals: list[Goal],
    session_key: str,
    directive: str,
    working_dir: str | None,
    plan_file: str,
) -> str:
    """Assemble the full instruction text for a freshly spawned worker.

    Expects ``task.session_key`` to be set already so the goal context marks
    the worker's own task.
    """
    completion = (
        f'When you finish this task you MUST report it done for task "{task.id}" '
        "with a short summary. Your work is not recorded until you do."
    )
    summary = build_project_summary(strand, sibling_goals, goal.id)
    goal_context = build_goal_context(goal, session_key) or ""

    sections: list[str | None] = [
        f"**REQUIRED:** {completion}",
        "",
        f"{summary}\n\n{goal_context}" if summary else goal_context,
        "",
    ]
    if goal.plan_ref:
        sections.extend(["---", "## Plan (for reference)", "", goal.plan_ref, "---", ""])
    sections.extend(["---", f"## Your Assignment: {task.text}"])
    if task.description:
        sections.extend(["", task.description])
    sections.append("")
    if working_dir:
        sections.extend(
            [
                f"**Working Directory:** `{working_dir}`",
                f"Start by running `cd {working_dir}` so you work in the right checkout.",
                "",
            ]
        )
    sections.extend(
        [
            directive,
            "",
            f"**Plan File:** if you write a plan, put it at `{plan_file}`.",
            "",
            f'**REMINDER:** report task "{task.id}" done with a summary when you finish.',
        ]
    )
    return "\n".join(line for line in sections if line is not None)
