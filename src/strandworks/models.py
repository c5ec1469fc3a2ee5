from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

TASK_STATUSES = ("pending", "in-progress", "done", "blocked")
GOAL_STATUSES = ("active", "done", "blocked")
MERGE_STATUSES = ("pending", "merged", "conflict", "error")
PUSH_STATUSES = ("pushed", "failed")


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if isinstance(item, str) and item]


def _optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


@dataclass(slots=True)
class Workspace:
    path: str
    remote_url: str | None = None
    created_at: str = field(default_factory=utcnow_iso)

    @classmethod
    def from_dict(cls, payload: Any) -> Workspace | None:
        if not isinstance(payload, dict) or not payload.get("path"):
            return None
        return cls(
            path=str(payload["path"]),
            remote_url=_optional_str(payload.get("remote_url")),
            created_at=str(payload.get("created_at") or utcnow_iso()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "remote_url": self.remote_url, "created_at": self.created_at}


@dataclass(slots=True)
class Worktree:
    path: str
    branch: str
    created_at: str = field(default_factory=utcnow_iso)

    @classmethod
    def from_dict(cls, payload: Any) -> Worktree | None:
        if not isinstance(payload, dict) or not payload.get("path") or not payload.get("branch"):
            return None
        return cls(
            path=str(payload["path"]),
            branch=str(payload["branch"]),
            created_at=str(payload.get("created_at") or utcnow_iso()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "branch": self.branch, "created_at": self.created_at}


@dataclass(slots=True)
class Task:
    id: str
    text: str
    description: str = ""
    status: str = "pending"
    priority: str | None = None
    session_key: str | None = None
    depends_on: list[str] = field(default_factory=list)
    summary: str = ""
    autonomy_mode: str | None = None
    agent_id: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    completed_at: str | None = None

    @property
    def done(self) -> bool:
        return self.status == "done"

    def touch(self) -> None:
        self.updated_at = utcnow_iso()

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        status = str(payload.get("status") or "pending")
        if status not in TASK_STATUSES:
            status = "pending"
        if payload.get("done") is True:
            status = "done"
        return cls(
            id=str(payload["id"]),
            text=str(payload.get("text", "")),
            description=str(payload.get("description") or ""),
            status=status,
            priority=_optional_str(payload.get("priority")),
            session_key=_optional_str(payload.get("session_key")),
            depends_on=_str_list(payload.get("depends_on")),
            summary=str(payload.get("summary") or ""),
            autonomy_mode=_optional_str(payload.get("autonomy_mode")),
            agent_id=_optional_str(payload.get("agent_id")),
            created_at=str(payload.get("created_at") or utcnow_iso()),
            updated_at=str(payload.get("updated_at") or utcnow_iso()),
            completed_at=_optional_str(payload.get("completed_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "description": self.description,
            "status": self.status,
            "done": self.done,
            "priority": self.priority,
            "session_key": self.session_key,
            "depends_on": list(self.depends_on),
            "summary": self.summary,
            "autonomy_mode": self.autonomy_mode,
            "agent_id": self.agent_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }


@dataclass(slots=True)
class Goal:
    id: str
    title: str
    strand_id: str
    description: str = ""
    notes: str = ""
    status: str = "active"
    completed: bool = False
    priority: str | None = None
    deadline: str | None = None
    worktree: Worktree | None = None
    tasks: list[Task] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    phase: int | None = None
    autonomy_mode: str | None = None
    plan_ref: str | None = None
    sessions: list[str] = field(default_factory=list)
    merge_status: str | None = None
    merge_error: str | None = None
    push_status: str | None = None
    push_error: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    completed_at: str | None = None
    closed_at: str | None = None

    def task(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def task_map(self) -> dict[str, Task]:
        return {task.id: task for task in self.tasks}

    @property
    def all_tasks_done(self) -> bool:
        return bool(self.tasks) and all(task.done for task in self.tasks)

    def touch(self) -> None:
        self.updated_at = utcnow_iso()

    def mark_done(self) -> None:
        now = utcnow_iso()
        self.status = "done"
        self.completed = True
        self.completed_at = now
        self.updated_at = now

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Goal:
        status = str(payload.get("status") or "active")
        if status not in GOAL_STATUSES:
            status = "active"
        phase = payload.get("phase")
        merge_status = _optional_str(payload.get("merge_status"))
        if merge_status not in MERGE_STATUSES:
            merge_status = None
        push_status = _optional_str(payload.get("push_status"))
        if push_status not in PUSH_STATUSES:
            push_status = None
        return cls(
            id=str(payload["id"]),
            title=str(payload.get("title", "")),
            strand_id=str(payload.get("strand_id") or ""),
            description=str(payload.get("description") or ""),
            notes=str(payload.get("notes") or ""),
            status=status,
            completed=bool(payload.get("completed", status == "done")),
            priority=_optional_str(payload.get("priority")),
            deadline=_optional_str(payload.get("deadline")),
            worktree=Worktree.from_dict(payload.get("worktree")),
            tasks=[
                Task.from_dict(item)
                for item in payload.get("tasks", [])
                if isinstance(item, dict) and item.get("id")
            ],
            depends_on=_str_list(payload.get("depends_on")),
            phase=phase if isinstance(phase, int) and not isinstance(phase, bool) else None,
            autonomy_mode=_optional_str(payload.get("autonomy_mode")),
            plan_ref=_optional_str(payload.get("plan_ref")),
            sessions=_str_list(payload.get("sessions")),
            merge_status=merge_status,
            merge_error=_optional_str(payload.get("merge_error")),
            push_status=push_status,
            push_error=_optional_str(payload.get("push_error")),
            created_at=str(payload.get("created_at") or utcnow_iso()),
            updated_at=str(payload.get("updated_at") or utcnow_iso()),
            completed_at=_optional_str(payload.get("completed_at")),
            closed_at=_optional_str(payload.get("closed_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "strand_id": self.strand_id,
            "description": self.description,
            "notes": self.notes,
            "status": self.status,
            "completed": self.completed,
            "priority": self.priority,
            "deadline": self.deadline,
            "worktree": self.worktree.to_dict() if self.worktree else None,
            "tasks": [task.to_dict() for task in self.tasks],
            "depends_on": list(self.depends_on),
            "phase": self.phase,
            "autonomy_mode": self.autonomy_mode,
            "plan_ref": self.plan_ref,
            "sessions": list(self.sessions),
            "merge_status": self.merge_status,
            "merge_error": self.merge_error,
            "push_status": self.push_status,
            "push_error": self.push_error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
            "closed_at": self.closed_at,
        }


@dataclass(slots=True)
class Strand:
    id: str
    name: str
    description: str = ""
    color: str | None = None
    keywords: list[str] = field(default_factory=list)
    workspace: Workspace | None = None
    autonomy_mode: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    def touch(self) -> None:
        self.updated_at = utcnow_iso()

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Strand:
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name", "")),
            description=str(payload.get("description") or ""),
            color=_optional_str(payload.get("color")),
            keywords=_str_list(payload.get("keywords")),
            workspace=Workspace.from_dict(payload.get("workspace")),
            autonomy_mode=_optional_str(payload.get("autonomy_mode")),
            created_at=str(payload.get("created_at") or utcnow_iso()),
            updated_at=str(payload.get("updated_at") or utcnow_iso()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "color": self.color,
            "keywords": list(self.keywords),
            "workspace": self.workspace.to_dict() if self.workspace else None,
            "autonomy_mode": self.autonomy_mode,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(slots=True)
class Document:
    """The whole persisted orchestration state.

    Strands own goals through ``Goal.strand_id`` and goals own their tasks
    directly. ``session_index`` maps a spawned worker session to its goal and
    ``session_strand_index`` maps an interactive session to the strand it is
    bound to.
    """

    strands: list[Strand] = field(default_factory=list)
    goals: list[Goal] = field(default_factory=list)
    session_index: dict[str, dict[str, str]] = field(default_factory=dict)
    session_strand_index: dict[str, str] = field(default_factory=dict)

    def strand(self, strand_id: str) -> Strand | None:
        for strand in self.strands:
            if strand.id == strand_id:
                return strand
        return None

    def goal(self, goal_id: str) -> Goal | None:
        for goal in self.goals:
            if goal.id == goal_id:
                return goal
        return None

    def goals_for_strand(self, strand_id: str) -> list[Goal]:
        return [goal for goal in self.goals if goal.strand_id == strand_id]

    @classmethod
    def from_dict(cls, payload: Any) -> Document:
        if not isinstance(payload, dict):
            return cls()
        session_index: dict[str, dict[str, str]] = {}
        raw_index = payload.get("session_index", {})
        if isinstance(raw_index, dict):
            for key, value in raw_index.items():
                if isinstance(value, dict) and value.get("goal_id"):
                    session_index[str(key)] = {"goal_id": str(value["goal_id"])}
        strand_index: dict[str, str] = {}
        raw_strand_index = payload.get("session_strand_index", {})
        if isinstance(raw_strand_index, dict):
            for key, value in raw_strand_index.items():
                if isinstance(value, str) and value:
                    strand_index[str(key)] = value
        return cls(
            strands=[
                Strand.from_dict(item)
                for item in payload.get("strands", [])
                if isinstance(item, dict) and item.get("id")
            ],
            goals=[
                Goal.from_dict(item)
                for item in payload.get("goals", [])
                if isinstance(item, dict) and item.get("id")
            ],
            session_index=session_index,
            session_strand_index=strand_index,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "strands": [strand.to_dict() for strand in self.strands],
            "goals": [goal.to_dict() for goal in self.goals],
            "session_index": {key: dict(value) for key, value in self.session_index.items()},
            "session_strand_index": dict(self.session_strand_index),
        }
