"""Method-name dispatch for the external gateway.

Each registered method validates its own parameter bag and reports through
``respond(ok, payload, error)`` exactly once. Orchestration and store errors
are translated here; nothing raised by the core escapes :meth:`Gateway.call`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from strandworks.autonomy import (
    AUTONOMY_MODES,
    DEFAULT_AUTONOMY_MODE,
    MODE_DESCRIPTIONS,
    get_task_autonomy_info,
    set_goal_autonomy,
    set_strand_autonomy,
    set_task_autonomy,
)
from strandworks.errors import ErrorKind, OrchestrationError, ValidationError
from strandworks.orchestrator import Orchestrator
from strandworks.scheduler import Scheduler, compute_eligible_tasks
from strandworks.spawn import SpawnExecutor
from strandworks.state.store import EntityStore, StoreError

logger = logging.getLogger(__name__)

Params = dict[str, Any]
Responder = Callable[[bool, Any, dict[str, Any] | None], None]
Handler = Callable[[Params], Any]

_MISSING = object()


def _require_str(params: Params, key: str) -> str:
    value = params.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{key} is required")
    return value.strip()


def _optional_str(params: Params, key: str) -> str | None:
    value = params.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    return value


def _optional_list(params: Params, key: str) -> list[Any] | None:
    value = params.get(key)
    if value is None:
        return None
    if not isinstance(value, list):
        raise ValidationError(f"{key} must be a list")
    return value


def _require_list(params: Params, key: str) -> list[Any]:
    value = _optional_list(params, key)
    if value is None:
        raise ValidationError(f"{key} is required")
    return value


def _optional_int(params: Params, key: str) -> int | None:
    value = params.get(key)
    if value is None:
        return None
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer")
    return value


def _mode_param(params: Params) -> str | None:
    """``mode`` must be present; ``null`` clears the override."""
    value = params.get("mode", _MISSING)
    if value is _MISSING:
        raise ValidationError("mode is required")
    if value is not None and not isinstance(value, str):
        raise ValidationError("mode must be a string or null")
    return value


def _fields(params: Params, allowed: tuple[str, ...]) -> dict[str, Any]:
    return {key: params[key] for key in allowed if key in params}


class Gateway:
    def __init__(
        self,
        store: EntityStore,
        orchestrator: Orchestrator,
        scheduler: Scheduler,
        spawner: SpawnExecutor,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.scheduler = scheduler
        self.spawner = spawner
        self._handlers: dict[str, Handler] = {
            "strands.create": self._strands_create,
            "strands.list": self._strands_list,
            "strands.get": self._strands_get,
            "strands.update": self._strands_update,
            "strands.delete": self._strands_delete,
            "strands.bindSession": self._strands_bind_session,
            "goals.create": self._goals_create,
            "goals.get": self._goals_get,
            "goals.list": self._goals_list,
            "goals.update": self._goals_update,
            "goals.delete": self._goals_delete,
            "goals.setDependencies": self._goals_set_dependencies,
            "goals.addTask": self._goals_add_task,
            "goals.updateTask": self._goals_update_task,
            "goals.setTaskDependencies": self._goals_set_task_dependencies,
            "goals.createTasksFromPlan": self._goals_create_tasks_from_plan,
            "goals.eligibleTasks": self._goals_eligible_tasks,
            "goals.kickoff": self._goals_kickoff,
            "goals.spawnTaskSession": self._goals_spawn_task_session,
            "goals.completeTask": self._goals_complete_task,
            "goals.completeSession": self._goals_complete_session,
            "goals.branchStatus": self._goals_branch_status,
            "goals.retryMerge": self._goals_retry_merge,
            "goals.retryPush": self._goals_retry_push,
            "goals.pushMain": self._goals_push_main,
            "goals.close": self._goals_close,
            "autonomy.modes": self._autonomy_modes,
            "autonomy.setTask": self._autonomy_set_task,
            "autonomy.setGoal": self._autonomy_set_goal,
            "autonomy.setStrand": self._autonomy_set_strand,
            "autonomy.getTaskInfo": self._autonomy_get_task_info,
        }

    def methods(self) -> list[str]:
        return list(self._handlers)

    def call(self, method: str, params: Params | None, respond: Responder) -> None:
        handler = self._handlers.get(method)
        if handler is None:
            respond(False, None, ValidationError(f"Unknown method: {method}").to_dict())
            return
        if params is None:
            params = {}
        if not isinstance(params, dict):
            respond(False, None, ValidationError("params must be an object").to_dict())
            return

        try:
            payload = handler(params)
        except OrchestrationError as exc:
            logger.debug("%s failed: %s", method, exc)
            respond(False, None, exc.to_dict())
            return
        except StoreError as exc:
            logger.error("%s failed to access the store: %s", method, exc)
            respond(False, None, {"kind": str(ErrorKind.STORAGE_FAILURE), "message": str(exc)})
            return
        respond(True, payload, None)

    def invoke(
        self, method: str, params: Params | None = None
    ) -> tuple[bool, Any, dict[str, Any] | None]:
        """Synchronous helper returning the ``(ok, payload, error)`` triple."""
        outcome: list[tuple[bool, Any, dict[str, Any] | None]] = []
        self.call(method, params, lambda ok, payload, error: outcome.append((ok, payload, error)))
        return outcome[0]

    # strands.*

    def _strands_create(self, params: Params) -> Any:
        strand = self.orchestrator.create_strand(
            _require_str(params, "name"),
            description=_optional_str(params, "description") or "",
            color=_optional_str(params, "color"),
            keywords=_optional_list(params, "keywords"),
            remote_url=_optional_str(params, "remote_url"),
            autonomy_mode=_optional_str(params, "autonomy_mode"),
        )
        return {"strand": strand.to_dict()}

    def _strands_list(self, params: Params) -> Any:
        return {"strands": self.orchestrator.list_strands()}

    def _strands_get(self, params: Params) -> Any:
        return self.orchestrator.get_strand(_require_str(params, "strand_id"))

    def _strands_update(self, params: Params) -> Any:
        strand = self.orchestrator.update_strand(
            _require_str(params, "strand_id"),
            _fields(params, ("name", "description", "color", "keywords", "autonomy_mode")),
        )
        return {"strand": strand.to_dict()}

    def _strands_delete(self, params: Params) -> Any:
        return self.orchestrator.delete_strand(_require_str(params, "strand_id"))

    def _strands_bind_session(self, params: Params) -> Any:
        strand = self.orchestrator.bind_session(
            _require_str(params, "session_key"),
            strand_id=_optional_str(params, "strand_id"),
            name=_optional_str(params, "name"),
        )
        return {"strand": strand.to_dict(), "session_key": params["session_key"].strip()}

    # goals.*

    def _goals_create(self, params: Params) -> Any:
        create_worktree = params.get("create_worktree", True)
        if not isinstance(create_worktree, bool):
            raise ValidationError("create_worktree must be a boolean")
        goal = self.orchestrator.create_goal(
            _require_str(params, "strand_id"),
            _require_str(params, "title"),
            description=_optional_str(params, "description") or "",
            notes=_optional_str(params, "notes") or "",
            priority=_optional_str(params, "priority"),
            deadline=_optional_str(params, "deadline"),
            depends_on=_optional_list(params, "depends_on"),
            phase=_optional_int(params, "phase"),
            autonomy_mode=_optional_str(params, "autonomy_mode"),
            plan_ref=_optional_str(params, "plan_ref"),
            tasks=_optional_list(params, "tasks"),
            create_worktree=create_worktree,
        )
        return {"goal": goal.to_dict()}

    def _goals_get(self, params: Params) -> Any:
        return {"goal": self.orchestrator.get_goal(_require_str(params, "goal_id")).to_dict()}

    def _goals_list(self, params: Params) -> Any:
        goals = self.orchestrator.list_goals(_optional_str(params, "strand_id"))
        return {"goals": [goal.to_dict() for goal in goals]}

    def _goals_update(self, params: Params) -> Any:
        goal = self.orchestrator.update_goal(
            _require_str(params, "goal_id"),
            _fields(
                params,
                (
                    "title",
                    "description",
                    "notes",
                    "priority",
                    "deadline",
                    "phase",
                    "status",
                    "autonomy_mode",
                    "plan_ref",
                ),
            ),
        )
        return {"goal": goal.to_dict()}

    def _goals_delete(self, params: Params) -> Any:
        return self.orchestrator.delete_goal(_require_str(params, "goal_id"))

    def _goals_set_dependencies(self, params: Params) -> Any:
        goal = self.orchestrator.set_goal_dependencies(
            _require_str(params, "goal_id"), _require_list(params, "depends_on")
        )
        return {"goal": goal.to_dict()}

    def _goals_add_task(self, params: Params) -> Any:
        task = self.orchestrator.add_task(
            _require_str(params, "goal_id"),
            _require_str(params, "text"),
            description=_optional_str(params, "description") or "",
            priority=_optional_str(params, "priority"),
            depends_on=_optional_list(params, "depends_on"),
            agent_id=_optional_str(params, "agent_id"),
            autonomy_mode=_optional_str(params, "autonomy_mode"),
        )
        return {"task": task.to_dict()}

    def _goals_update_task(self, params: Params) -> Any:
        task = self.orchestrator.update_task(
            _require_str(params, "goal_id"),
            _require_str(params, "task_id"),
            _fields(
                params, ("text", "description", "priority", "status", "agent_id", "session_key")
            ),
        )
        return {"task": task.to_dict()}

    def _goals_set_task_dependencies(self, params: Params) -> Any:
        task = self.orchestrator.set_task_dependencies(
            _require_str(params, "goal_id"),
            _require_str(params, "task_id"),
            _require_list(params, "depends_on"),
        )
        return {"task": task.to_dict()}

    def _goals_create_tasks_from_plan(self, params: Params) -> Any:
        tasks = self.orchestrator.create_tasks_from_plan(
            _require_str(params, "goal_id"), _optional_str(params, "plan_content")
        )
        return {"tasks": [task.to_dict() for task in tasks]}

    def _goals_eligible_tasks(self, params: Params) -> Any:
        goal = self.orchestrator.get_goal(_require_str(params, "goal_id"))
        return {"tasks": [task.to_dict() for task in compute_eligible_tasks(goal)]}

    def _goals_kickoff(self, params: Params) -> Any:
        deliver = params.get("deliver", False)
        if not isinstance(deliver, bool):
            raise ValidationError("deliver must be a boolean")
        return self.scheduler.kickoff(_require_str(params, "goal_id"), deliver=deliver).to_dict()

    def _goals_spawn_task_session(self, params: Params) -> Any:
        session = self.spawner.spawn(
            _require_str(params, "goal_id"),
            _require_str(params, "task_id"),
            _optional_str(params, "agent_id"),
        )
        return session.to_dict()

    def _goals_complete_task(self, params: Params) -> Any:
        result = self.scheduler.complete_task(
            _require_str(params, "goal_id"),
            _require_str(params, "task_id"),
            _optional_str(params, "summary") or "",
        )
        return result.to_dict()

    def _goals_complete_session(self, params: Params) -> Any:
        result = self.scheduler.complete_session(
            _require_str(params, "session_key"), _optional_str(params, "summary") or ""
        )
        return result.to_dict()

    def _goals_branch_status(self, params: Params) -> Any:
        return self.scheduler.branch_status(_require_str(params, "goal_id")).to_dict()

    def _goals_retry_merge(self, params: Params) -> Any:
        goal_id = _require_str(params, "goal_id")
        result = self.scheduler.retry_merge(goal_id)
        goal = self.orchestrator.get_goal(goal_id)
        payload = result.to_dict()
        payload["merge_status"] = goal.merge_status
        payload["merge_error"] = goal.merge_error
        return payload

    def _goals_retry_push(self, params: Params) -> Any:
        goal_id = _require_str(params, "goal_id")
        push = self.scheduler.retry_push(goal_id)
        return {"push": push.to_dict(), "goal": self.orchestrator.get_goal(goal_id).to_dict()}

    def _goals_push_main(self, params: Params) -> Any:
        return {"push": self.scheduler.push_main(_require_str(params, "strand_id")).to_dict()}

    def _goals_close(self, params: Params) -> Any:
        return self.scheduler.close_goal(_require_str(params, "goal_id"))

    # autonomy.*

    def _autonomy_modes(self, params: Params) -> Any:
        return {
            "modes": [
                {"id": mode, "description": MODE_DESCRIPTIONS[mode]} for mode in AUTONOMY_MODES
            ],
            "default": DEFAULT_AUTONOMY_MODE,
        }

    def _autonomy_set_task(self, params: Params) -> Any:
        task = set_task_autonomy(
            self.store,
            _require_str(params, "goal_id"),
            _require_str(params, "task_id"),
            _mode_param(params),
        )
        return {"task": task.to_dict()}

    def _autonomy_set_goal(self, params: Params) -> Any:
        goal = set_goal_autonomy(self.store, _require_str(params, "goal_id"), _mode_param(params))
        return {"goal": goal.to_dict()}

    def _autonomy_set_strand(self, params: Params) -> Any:
        strand = set_strand_autonomy(
            self.store, _require_str(params, "strand_id"), _mode_param(params)
        )
        return {"strand": strand.to_dict()}

    def _autonomy_get_task_info(self, params: Params) -> Any:
        return get_task_autonomy_info(
            self.store, _require_str(params, "goal_id"), _require_str(params, "task_id")
        )
