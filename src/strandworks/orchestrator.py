"""Strand, goal and task management on top of the entity store."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from strandworks.autonomy import AUTONOMY_MODES, is_valid_mode
from strandworks.dependencies import validate_goal_dependencies, validate_task_dependencies
from strandworks.errors import InvalidModeError, NotFoundError, ValidationError
from strandworks.models import Document, Goal, Strand, Task, Workspace, Worktree, utcnow_iso
from strandworks.planning import NullPlanParser, PlanParser, TaskDraft
from strandworks.state.store import EntityStore
from strandworks.workspace import WorkspaceManager

logger = logging.getLogger(__name__)

STRAND_FIELDS = ("name", "description", "color", "keywords", "autonomy_mode")
GOAL_FIELDS = (
    "title",
    "description",
    "notes",
    "priority",
    "deadline",
    "phase",
    "status",
    "autonomy_mode",
    "plan_ref",
)
TASK_FIELDS = ("text", "description", "priority", "status", "agent_id")
EDITABLE_GOAL_STATUSES = ("active", "blocked")
EDITABLE_TASK_STATUSES = ("pending", "blocked")


def _require_text(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required")
    return value.strip()


def _check_mode(mode: Any) -> None:
    if mode is not None and not is_valid_mode(mode):
        raise InvalidModeError(
            f"Invalid mode: {mode!r}. Must be one of: {', '.join(AUTONOMY_MODES)}"
        )


def _get_strand(doc: Document, strand_id: str) -> Strand:
    strand = doc.strand(strand_id)
    if strand is None:
        raise NotFoundError(f"Strand {strand_id} not found")
    return strand


def _get_goal(doc: Document, goal_id: str) -> Goal:
    goal = doc.goal(goal_id)
    if goal is None:
        raise NotFoundError(f"Goal {goal_id} not found")
    return goal


def _get_task(goal: Goal, task_id: str) -> Task:
    task = goal.task(task_id)
    if task is None:
        raise NotFoundError(f"Task {task_id} not found in goal {goal.id}")
    return task


def _coerce_draft(item: TaskDraft | dict[str, Any] | str) -> TaskDraft:
    if isinstance(item, TaskDraft):
        draft = item
    elif isinstance(item, dict):
        draft = TaskDraft.from_dict(item)
    elif isinstance(item, str):
        draft = TaskDraft(text=item.strip())
    else:
        raise ValidationError("Task drafts must be objects or strings")
    if not draft.text:
        raise ValidationError("Task text is required")
    return draft


class Orchestrator:
    def __init__(
        self,
        store: EntityStore,
        workspaces: WorkspaceManager,
        *,
        workspaces_dir: Path | None = None,
        plan_parser: PlanParser | None = None,
    ) -> None:
        self.store = store
        self.workspaces = workspaces
        # None disables workspace provisioning.
        self.workspaces_dir = workspaces_dir
        self.plan_parser = plan_parser or NullPlanParser()

    # Strands

    def create_strand(
        self,
        name: str,
        *,
        description: str = "",
        color: str | None = None,
        keywords: Iterable[str] | None = None,
        remote_url: str | None = None,
        autonomy_mode: str | None = None,
    ) -> Strand:
        name = _require_text(name, "name")
        _check_mode(autonomy_mode)
        strand = Strand(
            id=self.store.new_id("strand"),
            name=name,
            description=description or "",
            color=color or None,
            keywords=[str(item) for item in keywords or []],
            autonomy_mode=autonomy_mode,
        )

        if self.workspaces_dir is not None:
            ws = self.workspaces.create_strand_workspace(
                self.workspaces_dir, strand.id, name, remote_url
            )
            if ws.ok and ws.path:
                strand.workspace = Workspace(path=ws.path, remote_url=remote_url or None)
            else:
                logger.error(
                    "Workspace creation failed for strand %s (%s): %s",
                    strand.id,
                    ws.error_kind,
                    ws.error,
                )

        try:
            with self.store.transaction() as doc:
                doc.strands.insert(0, strand)
        except Exception:
            if strand.workspace is not None:
                self.workspaces.remove_strand_workspace(Path(strand.workspace.path))
            raise
        logger.info("Created strand %s (%s)", strand.id, name)
        return strand

    def list_strands(self) -> list[dict[str, Any]]:
        doc = self.store.load()
        strands = []
        for strand in doc.strands:
            payload = strand.to_dict()
            payload["goal_count"] = len(doc.goals_for_strand(strand.id))
            strands.append(payload)
        return strands

    def get_strand(self, strand_id: str) -> dict[str, Any]:
        doc = self.store.load()
        strand = _get_strand(doc, strand_id)
        return {
            "strand": strand.to_dict(),
            "goals": [goal.to_dict() for goal in doc.goals_for_strand(strand_id)],
        }

    def update_strand(self, strand_id: str, fields: dict[str, Any]) -> Strand:
        if "name" in fields:
            fields = {**fields, "name": _require_text(fields["name"], "name")}
        if "autonomy_mode" in fields:
            _check_mode(fields["autonomy_mode"])
        if "keywords" in fields and not isinstance(fields["keywords"], list):
            raise ValidationError("keywords must be a list")

        with self.store.transaction() as doc:
            strand = _get_strand(doc, strand_id)
            for key in STRAND_FIELDS:
                if key in fields:
                    setattr(strand, key, fields[key])
            strand.touch()
        return strand

    def delete_strand(self, strand_id: str) -> dict[str, Any]:
        # The workspace is removed only once the record is gone.
        with self.store.transaction() as doc:
            strand = _get_strand(doc, strand_id)
            workspace = strand.workspace
            goal_ids = {goal.id for goal in doc.goals_for_strand(strand_id)}
            sessions: set[str] = set()
            for goal in doc.goals_for_strand(strand_id):
                sessions.update(goal.sessions)
                sessions.update(task.session_key for task in goal.tasks if task.session_key)
            for key, value in list(doc.session_index.items()):
                if value["goal_id"] in goal_ids:
                    del doc.session_index[key]
            for key, value in list(doc.session_strand_index.items()):
                if value == strand_id:
                    sessions.add(key)
                    del doc.session_strand_index[key]
            doc.goals = [goal for goal in doc.goals if goal.id not in goal_ids]
            doc.strands = [item for item in doc.strands if item.id != strand_id]

        if workspace is not None:
            removal = self.workspaces.remove_strand_workspace(Path(workspace.path))
            if not removal.ok:
                logger.error("Workspace removal failed for strand %s: %s", strand_id, removal.error)
        logger.info("Deleted strand %s with %d goal(s)", strand_id, len(goal_ids))
        return {"deleted": strand_id, "goals": sorted(goal_ids), "sessions": sorted(sessions)}

    def bind_session(
        self, session_key: str, strand_id: str | None = None, name: str | None = None
    ) -> Strand:
        session_key = _require_text(session_key, "session_key")
        if strand_id is None:
            strand = self.create_strand(_require_text(name, "strand_id or name"))
            strand_id = strand.id
        with self.store.transaction() as doc:
            strand = _get_strand(doc, strand_id)
            doc.session_strand_index[session_key] = strand_id
        logger.info("Bound session %s to strand %s", session_key, strand_id)
        return strand

    # Goals

    def create_goal(
        self,
        strand_id: str,
        title: str,
        *,
        description: str = "",
        notes: str = "",
        priority: str | None = None,
        deadline: str | None = None,
        depends_on: list[str] | None = None,
        phase: int | None = None,
        autonomy_mode: str | None = None,
        plan_ref: str | None = None,
        tasks: Iterable[TaskDraft | dict[str, Any] | str] | None = None,
        create_worktree: bool = True,
    ) -> Goal:
        title = _require_text(title, "title")
        _check_mode(autonomy_mode)
        if phase is not None and (not isinstance(phase, int) or isinstance(phase, bool)):
            raise ValidationError("phase must be an integer")
        drafts = [_coerce_draft(item) for item in tasks or []]
        goal_id = self.store.new_id("goal")

        doc = self.store.load()
        strand = _get_strand(doc, strand_id)
        deps = validate_goal_dependencies(doc, goal_id, strand_id, depends_on or [])

        worktree = None
        if create_worktree and self.workspaces_dir is not None and strand.workspace:
            wt = self.workspaces.create_goal_worktree(Path(strand.workspace.path), goal_id, title)
            if wt.ok and wt.path and wt.branch:
                worktree = Worktree(path=wt.path, branch=wt.branch)
            else:
                logger.error(
                    "Worktree creation failed for goal %s (%s): %s",
                    goal_id,
                    wt.error_kind,
                    wt.error,
                )

        goal = Goal(
            id=goal_id,
            title=title,
            strand_id=strand_id,
            description=description or "",
            notes=notes or "",
            priority=priority or None,
            deadline=deadline or None,
            worktree=worktree,
            depends_on=deps,
            phase=phase,
            autonomy_mode=autonomy_mode,
            plan_ref=plan_ref or None,
            tasks=[
                Task(
                    id=self.store.new_id("task"),
                    text=draft.text,
                    description=draft.description,
                    priority=draft.priority,
                )
                for draft in drafts
            ],
        )

        try:
            with self.store.transaction() as doc:
                _get_strand(doc, strand_id)
                # Re-check against the state the goal is actually inserted into.
                validate_goal_dependencies(doc, goal_id, strand_id, deps)
                doc.goals.append(goal)
        except Exception:
            if worktree is not None and strand.workspace:
                self.workspaces.remove_goal_worktree(
                    Path(strand.workspace.path), goal_id, worktree.branch
                )
            raise

        logger.info("Created goal %s in strand %s", goal_id, strand_id)
        return goal

    def get_goal(self, goal_id: str) -> Goal:
        return _get_goal(self.store.load(), goal_id)

    def list_goals(self, strand_id: str | None = None) -> list[Goal]:
        doc = self.store.load()
        if strand_id is None:
            return list(doc.goals)
        _get_strand(doc, strand_id)
        return doc.goals_for_strand(strand_id)

    def update_goal(self, goal_id: str, fields: dict[str, Any]) -> Goal:
        if "title" in fields:
            fields = {**fields, "title": _require_text(fields["title"], "title")}
        if "status" in fields and fields["status"] not in EDITABLE_GOAL_STATUSES:
            raise ValidationError(
                f"status must be one of: {', '.join(EDITABLE_GOAL_STATUSES)}"
            )
        if "autonomy_mode" in fields:
            _check_mode(fields["autonomy_mode"])
        phase = fields.get("phase")
        if phase is not None and (not isinstance(phase, int) or isinstance(phase, bool)):
            raise ValidationError("phase must be an integer")

        with self.store.transaction() as doc:
            goal = _get_goal(doc, goal_id)
            if "status" in fields and goal.status == "done":
                raise ValidationError(f"Goal {goal_id} is already done")
            for key in GOAL_FIELDS:
                if key in fields:
                    setattr(goal, key, fields[key])
            goal.touch()
        return goal

    def delete_goal(self, goal_id: str) -> dict[str, Any]:
        doc = self.store.load()
        goal = _get_goal(doc, goal_id)
        dependents = [other.id for other in doc.goals if goal_id in other.depends_on]
        if dependents:
            raise ValidationError(
                f"Goal {goal_id} is required by: {', '.join(dependents)}",
                details={"dependents": dependents},
            )
        strand = doc.strand(goal.strand_id)
        if goal.worktree and strand and strand.workspace:
            removal = self.workspaces.remove_goal_worktree(
                Path(strand.workspace.path), goal_id, goal.worktree.branch
            )
            if not removal.ok:
                logger.warning("Worktree removal for goal %s failed: %s", goal_id, removal.error)

        with self.store.transaction() as doc:
            _get_goal(doc, goal_id)
            dependents = [other.id for other in doc.goals if goal_id in other.depends_on]
            if dependents:
                raise ValidationError(f"Goal {goal_id} is required by: {', '.join(dependents)}")
            sessions = [
                key for key, value in doc.session_index.items() if value["goal_id"] == goal_id
            ]
            for key in sessions:
                del doc.session_index[key]
            doc.goals = [item for item in doc.goals if item.id != goal_id]
        logger.info("Deleted goal %s", goal_id)
        return {"deleted": goal_id, "sessions": sessions}

    def set_goal_dependencies(self, goal_id: str, depends_on: list[str]) -> Goal:
        with self.store.transaction() as doc:
            goal = _get_goal(doc, goal_id)
            goal.depends_on = validate_goal_dependencies(doc, goal_id, goal.strand_id, depends_on)
            goal.touch()
        return goal

    # Tasks

    def add_task(
        self,
        goal_id: str,
        text: str,
        *,
        description: str = "",
        priority: str | None = None,
        depends_on: list[str] | None = None,
        agent_id: str | None = None,
        autonomy_mode: str | None = None,
    ) -> Task:
        text = _require_text(text, "text")
        _check_mode(autonomy_mode)
        with self.store.transaction() as doc:
            goal = _get_goal(doc, goal_id)
            if goal.status == "done":
                raise ValidationError(f"Goal {goal_id} is already done")
            task = Task(
                id=self.store.new_id("task"),
                text=text,
                description=description or "",
                priority=priority or None,
                agent_id=agent_id or None,
                autonomy_mode=autonomy_mode,
            )
            task.depends_on = validate_task_dependencies(goal, task.id, depends_on or [])
            goal.tasks.append(task)
            goal.touch()
        return task

    def update_task(self, goal_id: str, task_id: str, fields: dict[str, Any]) -> Task:
        if "session_key" in fields:
            raise ValidationError("Tasks cannot be reassigned to another session")
        if "text" in fields:
            fields = {**fields, "text": _require_text(fields["text"], "text")}
        if "status" in fields and fields["status"] not in EDITABLE_TASK_STATUSES:
            raise ValidationError(
                f"status must be one of: {', '.join(EDITABLE_TASK_STATUSES)}"
            )

        with self.store.transaction() as doc:
            goal = _get_goal(doc, goal_id)
            task = _get_task(goal, task_id)
            if "status" in fields and task.done:
                raise ValidationError(f"Task {task_id} is already done")
            if fields.get("status") == "pending" and task.session_key:
                raise ValidationError(f"Task {task_id} already has a session")
            for key in TASK_FIELDS:
                if key in fields:
                    setattr(task, key, fields[key])
            task.touch()
            goal.touch()
        return task

    def set_task_dependencies(self, goal_id: str, task_id: str, depends_on: list[str]) -> Task:
        with self.store.transaction() as doc:
            goal = _get_goal(doc, goal_id)
            task = _get_task(goal, task_id)
            task.depends_on = validate_task_dependencies(goal, task_id, depends_on)
            task.touch()
            goal.touch()
        return task

    def create_tasks_from_plan(self, goal_id: str, plan_content: str | None = None) -> list[Task]:
        goal = self.get_goal(goal_id)
        content = plan_content if plan_content is not None else goal.plan_ref
        if not content or not content.strip():
            raise ValidationError(f"Goal {goal_id} has no plan content")
        drafts = self.plan_parser.parse(content)
        if drafts is None:
            raise ValidationError("No plan detected")
        created = [
            Task(
                id=self.store.new_id("task"),
                text=draft.text,
                description=draft.description,
                priority=draft.priority,
            )
            for draft in map(_coerce_draft, drafts)
        ]

        with self.store.transaction() as doc:
            goal = _get_goal(doc, goal_id)
            goal.tasks.extend(created)
            if plan_content is not None:
                goal.plan_ref = plan_content
            goal.updated_at = utcnow_iso()
        logger.info("Created %d task(s) from plan for goal %s", len(created), goal_id)
        return created
