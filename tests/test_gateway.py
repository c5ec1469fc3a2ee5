from pathlib import Path
from typing import Any

import pytest
from conftest import commit_file, make_bare_remote, run_git

from strandworks.cli import Runtime, build_runtime
from strandworks.config import StrandworksConfig
from strandworks.gateway import Gateway

EXPECTED_METHODS = {
    "strands.create",
    "strands.list",
    "strands.get",
    "strands.update",
    "strands.delete",
    "strands.bindSession",
    "goals.create",
    "goals.get",
    "goals.list",
    "goals.update",
    "goals.delete",
    "goals.setDependencies",
    "goals.addTask",
    "goals.updateTask",
    "goals.setTaskDependencies",
    "goals.createTasksFromPlan",
    "goals.eligibleTasks",
    "goals.kickoff",
    "goals.spawnTaskSession",
    "goals.completeTask",
    "goals.completeSession",
    "goals.branchStatus",
    "goals.retryMerge",
    "goals.retryPush",
    "goals.pushMain",
    "goals.close",
    "autonomy.modes",
    "autonomy.setTask",
    "autonomy.setGoal",
    "autonomy.setStrand",
    "autonomy.getTaskInfo",
}


class Recorder:
    def __init__(self) -> None:
        self.calls: list[tuple[bool, Any, dict[str, Any] | None]] = []

    def __call__(self, ok: bool, payload: Any, error: dict[str, Any] | None) -> None:
        self.calls.append((ok, payload, error))


def _call(gateway: Gateway, method: str, params: dict[str, Any] | None = None):
    recorder = Recorder()
    gateway.call(method, params, recorder)
    assert len(recorder.calls) == 1
    return recorder.calls[0]


def _ok(gateway: Gateway, method: str, params: dict[str, Any] | None = None) -> Any:
    ok, payload, error = _call(gateway, method, params)
    assert ok, error
    assert error is None
    return payload


def _error(gateway: Gateway, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    ok, payload, error = _call(gateway, method, params)
    assert not ok
    assert payload is None
    return error


def test_registry_lists_every_method(runtime: Runtime) -> None:
    assert set(runtime.gateway.methods()) == EXPECTED_METHODS


def test_unknown_method_and_missing_params(runtime: Runtime) -> None:
    gateway = runtime.gateway

    assert _error(gateway, "goals.explode")["kind"] == "ValidationError"
    assert _error(gateway, "strands.create", {})["message"] == "name is required"
    assert _error(gateway, "goals.kickoff", {"goal_id": 7})["kind"] == "ValidationError"
    assert _error(gateway, "goals.get", ["not", "a", "dict"])["kind"] == "ValidationError"
    missing_mode = _error(gateway, "autonomy.setStrand", {"strand_id": "x"})
    assert missing_mode["message"] == "mode is required"


def test_not_found_and_invalid_mode_kinds(runtime: Runtime) -> None:
    gateway = runtime.gateway
    strand = _ok(gateway, "strands.create", {"name": "Project"})["strand"]

    error = _error(gateway, "goals.get", {"goal_id": "goal_missing"})
    assert error["kind"] == "NotFound"
    assert "not found" in error["message"]

    error = _error(gateway, "autonomy.setStrand", {"strand_id": strand["id"], "mode": "wild"})
    assert error["kind"] == "InvalidMode"
    assert "Invalid mode" in error["message"]


def test_full_flow_through_gateway(runtime: Runtime) -> None:
    gateway = runtime.gateway
    strand = _ok(gateway, "strands.create", {"name": "Project", "autonomy_mode": "supervised"})[
        "strand"
    ]
    g1 = _ok(gateway, "goals.create", {"strand_id": strand["id"], "title": "G1"})["goal"]
    g2 = _ok(
        gateway,
        "goals.create",
        {"strand_id": strand["id"], "title": "G2", "depends_on": [g1["id"]], "tasks": ["later"]},
    )["goal"]
    t1 = _ok(gateway, "goals.addTask", {"goal_id": g1["id"], "text": "first"})["task"]
    t2 = _ok(gateway, "goals.addTask", {"goal_id": g1["id"], "text": "second"})["task"]
    _ok(
        gateway,
        "goals.setTaskDependencies",
        {"goal_id": g1["id"], "task_id": t2["id"], "depends_on": [t1["id"]]},
    )
    _ok(gateway, "autonomy.setTask", {"goal_id": g1["id"], "task_id": t1["id"], "mode": "full"})

    eligible = _ok(gateway, "goals.eligibleTasks", {"goal_id": g1["id"]})["tasks"]
    assert [task["id"] for task in eligible] == [t1["id"]]

    blocked = _error(gateway, "goals.kickoff", {"goal_id": g2["id"]})
    assert blocked["kind"] == "Blocked"

    kickoff = _ok(gateway, "goals.kickoff", {"goal_id": g1["id"]})
    assert [session["task_id"] for session in kickoff["spawned"]] == [t1["id"]]
    assert kickoff["spawned"][0]["autonomy_mode"] == "full"

    again = _error(gateway, "goals.spawnTaskSession", {"goal_id": g1["id"], "task_id": t1["id"]})
    assert again["kind"] == "AlreadyAssigned"

    info = _ok(gateway, "autonomy.getTaskInfo", {"goal_id": g1["id"], "task_id": t2["id"]})
    assert info["mode"] == "supervised"

    first = _ok(
        gateway,
        "goals.completeSession",
        {"session_key": kickoff["spawned"][0]["session_key"], "summary": "ok"},
    )
    assert [session["task_id"] for session in first["spawned"]] == [t2["id"]]

    second = _ok(gateway, "goals.completeTask", {"goal_id": g1["id"], "task_id": t2["id"]})
    assert second["goal_completed"] is True
    assert second["unblocked_goals"] == [g2["id"]]

    goals = _ok(gateway, "goals.list", {"strand_id": strand["id"]})["goals"]
    by_id = {goal["id"]: goal for goal in goals}
    assert by_id[g1["id"]]["status"] == "done"
    assert len(by_id[g2["id"]]["sessions"]) == 1


def test_autonomy_modes(runtime: Runtime) -> None:
    payload = _ok(runtime.gateway, "autonomy.modes")

    assert [mode["id"] for mode in payload["modes"]] == ["full", "plan", "step", "supervised"]
    assert payload["default"] == "plan"


def test_autonomy_mode_can_be_cleared(runtime: Runtime) -> None:
    gateway = runtime.gateway
    strand = _ok(gateway, "strands.create", {"name": "Project", "autonomy_mode": "full"})["strand"]

    cleared = _ok(gateway, "autonomy.setStrand", {"strand_id": strand["id"], "mode": None})

    assert cleared["strand"]["autonomy_mode"] is None


def test_branch_status_without_worktree(runtime: Runtime) -> None:
    gateway = runtime.gateway
    strand = _ok(gateway, "strands.create", {"name": "Project"})["strand"]
    goal = _ok(gateway, "goals.create", {"strand_id": strand["id"], "title": "G"})["goal"]

    error = _error(gateway, "goals.branchStatus", {"goal_id": goal["id"]})
    assert error["kind"] == "ValidationError"


def test_store_failures_surface_as_storage_failure(config: StrandworksConfig) -> None:
    config.store.lock_timeout_seconds = 0.1
    runtime = build_runtime(config)
    runtime.store.lock_file.write_text("held", encoding="utf-8")

    error = _error(runtime.gateway, "strands.create", {"name": "Project"})

    assert error["kind"] == "StorageFailure"
    assert "Timed out" in error["message"]


@pytest.mark.parametrize(
    ("method", "params"),
    [
        ("goals.close", {}),
        ("goals.retryMerge", {}),
        ("goals.completeSession", {}),
        ("goals.setDependencies", {"goal_id": "g"}),
    ],
)
def test_required_parameters(runtime: Runtime, method: str, params: dict[str, Any]) -> None:
    assert _error(runtime.gateway, method, params)["kind"] == "ValidationError"


def _conflicting_goal(runtime: Runtime) -> tuple[Path, dict[str, Any]]:
    gateway = runtime.gateway
    strand = _ok(gateway, "strands.create", {"name": "Repo"})["strand"]
    workspace = Path(strand["workspace"]["path"])
    commit_file(workspace, "README.md", "seed\n", "seed")
    goal = _ok(
        gateway, "goals.create", {"strand_id": strand["id"], "title": "Edit", "tasks": ["edit"]}
    )["goal"]
    commit_file(Path(goal["worktree"]["path"]), "README.md", "branch\n", "branch edit")
    commit_file(workspace, "README.md", "main\n", "main edit")
    return workspace, goal


def test_merge_failures_carry_merge_conflict_kind(git_runtime: Runtime) -> None:
    gateway = git_runtime.gateway
    workspace, goal = _conflicting_goal(git_runtime)
    task_id = goal["tasks"][0]["id"]

    completed = _ok(gateway, "goals.completeTask", {"goal_id": goal["id"], "task_id": task_id})
    assert completed["merge"]["conflict"] is True
    assert completed["goal_completed"] is False

    error = _error(gateway, "goals.retryMerge", {"goal_id": goal["id"]})

    assert error["kind"] == "MergeConflict"
    assert error["details"]["merge"]["error_kind"] == "conflict"
    stored = _ok(gateway, "goals.get", {"goal_id": goal["id"]})["goal"]
    assert (stored["status"], stored["merge_status"]) == ("blocked", "conflict")
    assert (workspace / "README.md").read_text(encoding="utf-8") == "main\n"


def test_branch_status_of_deleted_branch_is_not_found(git_runtime: Runtime) -> None:
    gateway = git_runtime.gateway
    workspace, goal = _conflicting_goal(git_runtime)
    run_git(workspace, "worktree", "remove", "--force", goal["worktree"]["path"])
    run_git(workspace, "branch", "-D", goal["worktree"]["branch"])

    error = _error(gateway, "goals.branchStatus", {"goal_id": goal["id"]})

    assert error["kind"] == "NotFound"


def test_push_methods(git_runtime: Runtime, tmp_path: Path) -> None:
    gateway = git_runtime.gateway
    remote = make_bare_remote(tmp_path / "remote")
    strand = _ok(gateway, "strands.create", {"name": "Remote", "remote_url": str(remote)})[
        "strand"
    ]
    goal = _ok(gateway, "goals.create", {"strand_id": strand["id"], "title": "Publish"})["goal"]
    local = _ok(gateway, "strands.create", {"name": "Local"})["strand"]

    pushed = _ok(gateway, "goals.retryPush", {"goal_id": goal["id"]})
    main = _ok(gateway, "goals.pushMain", {"strand_id": strand["id"]})

    assert pushed["push"]["pushed"] is True
    assert pushed["goal"]["push_status"] == "pushed"
    assert main["push"]["branch"] == "main"
    no_remote = _error(gateway, "goals.pushMain", {"strand_id": local["id"]})
    assert no_remote["kind"] == "ValidationError"
    assert _error(gateway, "goals.retryPush", {})["kind"] == "ValidationError"
