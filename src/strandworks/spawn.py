from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

from strandworks.autonomy import build_directive, resolve_mode
from strandworks.context import build_assignment_context
from strandworks.errors import AlreadyAssignedError, NotFoundError, ValidationError
from strandworks.models import Document, Goal, Task
from strandworks.state.store import EntityStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SpawnedSession:
    session_key: str
    goal_id: str
    task_id: str
    task_text: str
    agent_id: str
    autonomy_mode: str
    task_context: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_key": self.session_key,
            "goal_id": self.goal_id,
            "task_id": self.task_id,
            "task_text": self.task_text,
            "agent_id": self.agent_id,
            "autonomy_mode": self.autonomy_mode,
            "task_context": self.task_context,
        }


def new_session_key(agent_id: str) -> str:
    return f"agent:{agent_id}:webchat:task-{uuid4().hex[:12]}"


class SpawnExecutor:
    """Attaches worker sessions to tasks."""

    def __init__(
        self,
        store: EntityStore,
        *,
        default_agent: str = "main",
        plans_dir: Path | None = None,
    ) -> None:
        self.store = store
        self.default_agent = default_agent
        self.plans_dir = plans_dir or store.data_dir / "plans"

    def plan_file_path(self, agent_id: str, goal_id: str, task_id: str) -> Path:
        return self.plans_dir / agent_id / goal_id / task_id / "PLAN.md"

    def spawn(self, goal_id: str, task_id: str, agent_id: str | None = None) -> SpawnedSession:
        with self.store.transaction() as doc:
            goal = doc.goal(goal_id)
            if goal is None:
                raise NotFoundError(f"Goal {goal_id} not found")
            task = goal.task(task_id)
            if task is None:
                raise NotFoundError(f"Task {task_id} not found in goal {goal_id}")
            return self.spawn_in(doc, goal, task, agent_id)

    def spawn_in(
        self, doc: Document, goal: Goal, task: Task, agent_id: str | None = None
    ) -> SpawnedSession:
        """Assign a session to ``task`` inside an already-open transaction."""
        if task.session_key:
            raise AlreadyAssignedError(
                f"Task {task.id} already has a session ({task.session_key})",
                details={"session_key": task.session_key},
            )
        if task.done:
            raise ValidationError(f"Task {task.id} is already done")

        agent = agent_id or task.agent_id or self.default_agent
        session_key = new_session_key(agent)
        while session_key in doc.session_index:
            session_key = new_session_key(agent)

        strand = doc.strand(goal.strand_id)
        mode = resolve_mode(task, goal, strand)
        working_dir = None
        if goal.worktree:
            working_dir = goal.worktree.path
        elif strand and strand.workspace:
            working_dir = strand.workspace.path

        task.session_key = session_key
        task.status = "in-progress"
        task.autonomy_mode = mode
        task.touch()
        task_context = build_assignment_context(
            task=task,
            goal=goal,
            strand=strand,
            sibling_goals=doc.goals_for_strand(goal.strand_id),
            session_key=session_key,
            directive=build_directive(mode),
            working_dir=working_dir,
            plan_file=str(self.plan_file_path(agent, goal.id, task.id)),
        )
        goal.sessions.append(session_key)
        goal.touch()
        doc.session_index[session_key] = {"goal_id": goal.id}

        logger.info("Spawned %s for task %s in goal %s (%s)", session_key, task.id, goal.id, mode)
        return SpawnedSession(
            session_key=session_key,
            goal_id=goal.id,
            task_id=task.id,
            task_text=task.text,
            agent_id=agent,
            autonomy_mode=mode,
            task_context=task_context,
        )
