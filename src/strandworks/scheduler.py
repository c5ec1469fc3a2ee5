"""Dependency-gated scheduling of worker sessions.

Store mutations always happen inside ``store.transaction()``; git commands
run only after the transaction that decided on them has been committed, and
their outcome is recorded in a fresh transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from strandworks.errors import (
    BlockedError,
    MergeConflictError,
    NotFoundError,
    OrchestrationError,
    ToolFailureError,
    ValidationError,
)
from strandworks.models import Document, Goal, Task, utcnow_iso
from strandworks.spawn import SpawnedSession, SpawnExecutor
from strandworks.state.store import EntityStore
from strandworks.transport import NullTransport, SessionTransport, TransportError
from strandworks.workspace import MISSING_BRANCH, WorkspaceManager, WorkspaceResult

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class KickoffResult:
    goal_id: str
    spawned: list[SpawnedSession] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "goal_id": self.goal_id,
            "spawned": [session.to_dict() for session in self.spawned],
            "errors": list(self.errors),
            "message": self.message,
        }


@dataclass(slots=True)
class CompletionResult:
    goal_id: str
    task_id: str | None = None
    already_done: bool = False
    goal_completed: bool = False
    merge: WorkspaceResult | None = None
    spawned: list[SpawnedSession] = field(default_factory=list)
    unblocked_goals: list[str] = field(default_factory=list)
    cascades: list[KickoffResult] = field(default_factory=list)
    kickoff_error: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "goal_id": self.goal_id,
            "task_id": self.task_id,
            "already_done": self.already_done,
            "goal_completed": self.goal_completed,
            "spawned": [session.to_dict() for session in self.spawned],
            "unblocked_goals": list(self.unblocked_goals),
            "cascades": [result.to_dict() for result in self.cascades],
        }
        if self.merge is not None:
            payload["merge"] = self.merge.to_dict()
        if self.kickoff_error is not None:
            payload["kickoff_error"] = self.kickoff_error
        return payload


@dataclass(slots=True)
class _MergeClaim:
    goal_id: str
    title: str
    workspace: Path
    worktree: Path
    branch: str
    remote_url: str | None = None


def compute_eligible_tasks(goal: Goal) -> list[Task]:
    """Tasks that are unassigned, not done or blocked and whose dependencies are done."""
    done_ids = {task.id for task in goal.tasks if task.done}
    return [
        task
        for task in goal.tasks
        if not task.session_key
        and task.status not in ("done", "blocked")
        and all(dep in done_ids for dep in task.depends_on)
    ]


def unmet_goal_dependencies(doc: Document, goal: Goal) -> list[str]:
    unmet = []
    for dep in goal.depends_on:
        other = doc.goal(dep)
        if other is None or other.status != "done":
            unmet.append(dep)
    return unmet


def _workspace_of(doc: Document, goal: Goal) -> Path | None:
    if goal.worktree is None:
        return None
    strand = doc.strand(goal.strand_id)
    if strand and strand.workspace:
        return Path(strand.workspace.path)
    # worktrees live at <workspace>/goals/<goal_id>
    return Path(goal.worktree.path).parent.parent


def _remote_of(doc: Document, goal: Goal) -> str | None:
    strand = doc.strand(goal.strand_id)
    if strand is None or strand.workspace is None:
        return None
    return strand.workspace.remote_url


def _merge_failure(goal_id: str, merge: WorkspaceResult) -> OrchestrationError:
    details = {"goal_id": goal_id, "merge": merge.to_dict()}
    if merge.conflict:
        return MergeConflictError(
            f"Merging {merge.branch} for goal {goal_id} hit conflicts", details=details
        )
    return ToolFailureError(
        f"Merging {merge.branch} for goal {goal_id} failed: {merge.error}", details=details
    )


class Scheduler:
    def __init__(
        self,
        store: EntityStore,
        spawner: SpawnExecutor,
        workspaces: WorkspaceManager,
        transport: SessionTransport | None = None,
        *,
        auto_kickoff_unblocked_goals: bool = True,
    ) -> None:
        self.store = store
        self.spawner = spawner
        self.workspaces = workspaces
        self.transport = transport or NullTransport()
        self.auto_kickoff_unblocked_goals = auto_kickoff_unblocked_goals

    def eligible_tasks(self, goal_id: str) -> list[Task]:
        goal = self.store.load().goal(goal_id)
        if goal is None:
            raise NotFoundError(f"Goal {goal_id} not found")
        return compute_eligible_tasks(goal)

    def kickoff(self, goal_id: str, *, deliver: bool = False) -> KickoffResult:
        """Spawn sessions for every eligible task of a goal.

        Manual kickoffs hand the sessions back to the caller; cascades pass
        ``deliver=True`` so the transport starts them.
        """
        with self.store.transaction() as doc:
            goal = doc.goal(goal_id)
            if goal is None:
                raise NotFoundError(f"Goal {goal_id} not found")
            unmet = unmet_goal_dependencies(doc, goal)
            if unmet:
                logger.warning("Kickoff of goal %s blocked by %s", goal_id, ", ".join(unmet))
                raise BlockedError(
                    f"Goal {goal_id} is blocked by unfinished goals: {', '.join(unmet)}",
                    details={"blocked_by": unmet},
                )

            result = KickoffResult(goal_id=goal_id)
            for task in compute_eligible_tasks(goal):
                try:
                    result.spawned.append(self.spawner.spawn_in(doc, goal, task))
                except OrchestrationError as exc:
                    result.errors.append({"task_id": task.id, **exc.to_dict()})
            if result.spawned and goal.status != "done":
                goal.status = "active"
                goal.touch()

        if result.spawned:
            result.message = f"Spawned {len(result.spawned)} session(s) for goal {goal_id}"
            logger.info(result.message)
        else:
            result.message = f"No eligible tasks in goal {goal_id}"
        if deliver:
            self.deliver(result.spawned)
        return result

    def deliver(self, sessions: list[SpawnedSession]) -> list[str]:
        """Hand sessions to the transport; failed ones stay in-progress for an operator."""
        delivered = []
        for session in sessions:
            try:
                accepted = self.transport.deliver(session.session_key, session.task_context)
            except TransportError as exc:
                logger.warning("Delivery to %s failed: %s", session.session_key, exc)
                continue
            if accepted:
                delivered.append(session.session_key)
            else:
                logger.warning("Transport refused session %s", session.session_key)
        return delivered

    def complete_task(self, goal_id: str, task_id: str, summary: str = "") -> CompletionResult:
        result = CompletionResult(goal_id=goal_id, task_id=task_id)
        claim: _MergeClaim | None = None
        with self.store.transaction() as doc:
            goal = doc.goal(goal_id)
            if goal is None:
                raise NotFoundError(f"Goal {goal_id} not found")
            task = goal.task(task_id)
            if task is None:
                raise NotFoundError(f"Task {task_id} not found in goal {goal_id}")
            if task.done:
                result.already_done = True
                return result

            now = utcnow_iso()
            task.status = "done"
            if summary:
                task.summary = summary
            task.completed_at = now
            task.updated_at = now
            goal.touch()

            all_done = goal.all_tasks_done
            strand_id = goal.strand_id
            if all_done:
                claim = self._claim_finalization(doc, goal)
                result.goal_completed = goal.status == "done"

        logger.info("Task %s in goal %s completed", task_id, goal_id)
        if not all_done:
            try:
                kickoff = self.kickoff(goal_id, deliver=True)
            except BlockedError as exc:
                result.kickoff_error = exc.to_dict()
            else:
                result.spawned = kickoff.spawned
            return result

        if claim is not None:
            result.merge = self._run_merge(claim)
            result.goal_completed = result.merge.ok
        if result.goal_completed:
            logger.info("Goal %s completed", goal_id)
            self._cascade(strand_id, result)
        return result

    def _claim_finalization(self, doc: Document, goal: Goal) -> _MergeClaim | None:
        """Mark a goal done, or claim its merge when it has a worktree.

        Returns the claim for the caller to execute once the transaction ends.
        """
        if goal.status == "done" or goal.merge_status == "pending":
            return None
        workspace = _workspace_of(doc, goal)
        if goal.worktree is None or workspace is None:
            goal.mark_done()
            return None
        goal.merge_status = "pending"
        goal.merge_error = None
        goal.touch()
        return _MergeClaim(
            goal_id=goal.id,
            title=goal.title,
            workspace=workspace,
            worktree=Path(goal.worktree.path),
            branch=goal.worktree.branch,
            remote_url=_remote_of(doc, goal),
        )

    def _run_merge(self, claim: _MergeClaim) -> WorkspaceResult:
        if claim.worktree.exists():
            commit = self.workspaces.commit_worktree_changes(
                claim.worktree, f"Goal complete: {claim.title or claim.goal_id}"
            )
            if commit.committed:
                logger.info("Committed pending worktree changes for goal %s", claim.goal_id)
            elif not commit.ok:
                logger.warning("Auto-commit failed for goal %s: %s", claim.goal_id, commit.error)

        pushes: list[WorkspaceResult] = []
        if claim.remote_url:
            pushes.append(self.workspaces.push_branch(claim.workspace, claim.branch))

        merge = self.workspaces.merge_goal_branch(claim.workspace, claim.branch)

        if merge.ok and claim.remote_url:
            main_branch = self.workspaces.get_main_branch(claim.workspace)
            pushes.append(self.workspaces.push_branch(claim.workspace, main_branch))
        failed_push = next((push for push in pushes if not push.ok), None)
        if failed_push is not None:
            logger.warning(
                "Push of %s for goal %s failed: %s",
                failed_push.branch,
                claim.goal_id,
                failed_push.error,
            )

        with self.store.transaction() as doc:
            goal = doc.goal(claim.goal_id)
            if goal is None:
                return merge
            if pushes:
                goal.push_status = "failed" if failed_push else "pushed"
                goal.push_error = failed_push.error if failed_push else None
            if merge.ok:
                goal.merge_status = "merged"
                goal.merge_error = None
                goal.mark_done()
            else:
                goal.status = "blocked"
                goal.merge_status = "conflict" if merge.conflict else "error"
                goal.merge_error = merge.error
                goal.touch()

        if merge.ok:
            logger.info("Merged %s for goal %s", claim.branch, claim.goal_id)
        elif merge.conflict:
            logger.error("Merge conflict on %s for goal %s", claim.branch, claim.goal_id)
        else:
            logger.error("Merge of %s failed (%s): %s", claim.branch, merge.error_kind, merge.error)
        return merge

    def find_unblocked_goals(self, strand_id: str) -> list[str]:
        doc = self.store.load()
        unblocked = []
        for goal in doc.goals_for_strand(strand_id):
            if goal.status == "done" or not goal.tasks or goal.sessions or not goal.depends_on:
                continue
            if not unmet_goal_dependencies(doc, goal):
                unblocked.append(goal.id)
        return unblocked

    def _cascade(self, strand_id: str, result: CompletionResult) -> None:
        result.unblocked_goals = self.find_unblocked_goals(strand_id)
        if not result.unblocked_goals or not self.auto_kickoff_unblocked_goals:
            return
        for goal_id in result.unblocked_goals:
            try:
                result.cascades.append(self.kickoff(goal_id, deliver=True))
            except OrchestrationError as exc:
                logger.warning("Cascade kickoff of goal %s failed: %s", goal_id, exc)
                result.cascades.append(
                    KickoffResult(goal_id=goal_id, errors=[exc.to_dict()], message=str(exc))
                )

    def complete_session(self, session_key: str, summary: str = "") -> CompletionResult:
        doc = self.store.load()
        entry = doc.session_index.get(session_key)
        if not entry:
            raise NotFoundError(f"Session {session_key} not found")
        goal = doc.goal(entry["goal_id"])
        if goal is None:
            raise NotFoundError(f"Goal {entry['goal_id']} not found")
        for task in goal.tasks:
            if task.session_key == session_key:
                return self.complete_task(goal.id, task.id, summary)
        raise NotFoundError(f"No task in goal {goal.id} is assigned to session {session_key}")

    def retry_merge(self, goal_id: str) -> CompletionResult:
        result = CompletionResult(goal_id=goal_id)
        with self.store.transaction() as doc:
            goal = doc.goal(goal_id)
            if goal is None:
                raise NotFoundError(f"Goal {goal_id} not found")
            if goal.worktree is None:
                raise ValidationError(f"Goal {goal_id} has no worktree to merge")
            if not goal.all_tasks_done:
                raise ValidationError(f"Goal {goal_id} still has unfinished tasks")
            if goal.merge_status == "merged":
                result.already_done = True
                return result
            if goal.merge_status == "pending":
                raise ValidationError(f"A merge for goal {goal_id} is already running")
            goal.status = "active"
            claim = self._claim_finalization(doc, goal)
            strand_id = goal.strand_id

        if claim is None:
            result.goal_completed = True
        else:
            result.merge = self._run_merge(claim)
            if not result.merge.ok:
                raise _merge_failure(goal_id, result.merge)
            result.goal_completed = True
        self._cascade(strand_id, result)
        return result

    def close_goal(self, goal_id: str) -> dict[str, Any]:
        doc = self.store.load()
        goal = doc.goal(goal_id)
        if goal is None:
            raise NotFoundError(f"Goal {goal_id} not found")
        workspace = _workspace_of(doc, goal)

        removal = None
        if goal.worktree is not None and workspace is not None:
            removal = self.workspaces.remove_goal_worktree(
                workspace, goal_id, goal.worktree.branch, keep_branch=True
            )
            if not removal.ok:
                logger.warning("Worktree removal for goal %s failed: %s", goal_id, removal.error)

        released = []
        with self.store.transaction() as doc:
            goal = doc.goal(goal_id)
            if goal is None:
                raise NotFoundError(f"Goal {goal_id} not found")
            for task in goal.tasks:
                if not task.done and task.session_key:
                    doc.session_index.pop(task.session_key, None)
                    released.append(task.session_key)
                    task.session_key = None
                    task.status = "pending"
                    task.touch()
            now = utcnow_iso()
            goal.status = "done"
            goal.completed = True
            goal.closed_at = now
            goal.completed_at = goal.completed_at or now
            goal.updated_at = now
            if removal is None or removal.ok:
                goal.worktree = None
            payload = goal.to_dict()

        logger.info("Closed goal %s, released %d session(s)", goal_id, len(released))
        return {
            "goal": payload,
            "released_sessions": released,
            "worktree": removal.to_dict() if removal else None,
        }

    def branch_status(self, goal_id: str) -> WorkspaceResult:
        doc = self.store.load()
        goal = doc.goal(goal_id)
        if goal is None:
            raise NotFoundError(f"Goal {goal_id} not found")
        workspace = _workspace_of(doc, goal)
        if goal.worktree is None or workspace is None:
            raise ValidationError(f"Goal {goal_id} has no worktree")
        status = self.workspaces.check_branch_status(workspace, goal.worktree.branch)
        if status.ok:
            return status
        details = {"goal_id": goal_id, "status": status.to_dict()}
        if status.error_kind == MISSING_BRANCH:
            raise NotFoundError(
                status.error or f"Branch not found: {goal.worktree.branch}", details=details
            )
        raise ToolFailureError(status.error or "Branch status check failed", details=details)

    def retry_push(self, goal_id: str) -> WorkspaceResult:
        """Push a goal's branch to the strand's remote again and record the outcome."""
        doc = self.store.load()
        goal = doc.goal(goal_id)
        if goal is None:
            raise NotFoundError(f"Goal {goal_id} not found")
        if goal.worktree is None:
            raise ValidationError(f"Goal {goal_id} has no worktree branch")
        strand = doc.strand(goal.strand_id)
        if strand is None or strand.workspace is None or not strand.workspace.remote_url:
            raise ValidationError(f"Strand of goal {goal_id} has no remote configured")

        push = self.workspaces.push_branch(Path(strand.workspace.path), goal.worktree.branch)

        with self.store.transaction() as doc:
            goal = doc.goal(goal_id)
            if goal is not None:
                goal.push_status = "pushed" if push.ok else "failed"
                goal.push_error = None if push.ok else push.error
                goal.touch()
        if not push.ok:
            raise ToolFailureError(
                f"Pushing {push.branch} for goal {goal_id} failed: {push.error}",
                details={"goal_id": goal_id, "push": push.to_dict()},
            )
        return push

    def push_main(self, strand_id: str) -> WorkspaceResult:
        strand = self.store.load().strand(strand_id)
        if strand is None:
            raise NotFoundError(f"Strand {strand_id} not found")
        if strand.workspace is None or not strand.workspace.remote_url:
            raise ValidationError(f"Strand {strand_id} has no workspace with a remote")
        workspace = Path(strand.workspace.path)
        main_branch = self.workspaces.get_main_branch(workspace)
        push = self.workspaces.push_branch(workspace, main_branch)
        if not push.ok:
            raise ToolFailureError(
                f"Pushing {main_branch} for strand {strand_id} failed: {push.error}",
                details={"strand_id": strand_id, "push": push.to_dict()},
            )
        return push
