import shutil
import threading
from pathlib import Path

import pytest
from conftest import RecordingTransport, commit_file, make_bare_remote, run_git

from strandworks.cli import Runtime, build_runtime
from strandworks.config import StrandworksConfig
from strandworks.errors import (
    BlockedError,
    MergeConflictError,
    NotFoundError,
    ToolFailureError,
    ValidationError,
)
from strandworks.models import Goal, Task
from strandworks.scheduler import compute_eligible_tasks
from strandworks.transport import SessionTransport, TransportError


class FailingTransport(SessionTransport):
    def deliver(self, session_key: str, task_context: str) -> bool:
        raise TransportError("gateway down")


def _chain_goal(runtime: Runtime, strand_id: str | None = None, title: str = "Chain"):
    if strand_id is None:
        strand_id = runtime.orchestrator.create_strand("Project").id
    goal = runtime.orchestrator.create_goal(strand_id, title)
    t1 = runtime.orchestrator.add_task(goal.id, "T1")
    t2 = runtime.orchestrator.add_task(goal.id, "T2", depends_on=[t1.id])
    t3 = runtime.orchestrator.add_task(goal.id, "T3", depends_on=[t2.id])
    return goal, t1, t2, t3


def test_compute_eligible_tasks() -> None:
    goal = Goal(
        id="g",
        title="g",
        strand_id="s",
        tasks=[
            Task(id="a", text="a", status="done"),
            Task(id="b", text="b", depends_on=["a"]),
            Task(id="c", text="c", depends_on=["b"]),
            Task(id="d", text="d", session_key="agent:main:webchat:task-1"),
            Task(id="e", text="e", status="blocked"),
            Task(id="f", text="f", depends_on=["ghost"]),
            Task(id="h", text="h"),
        ],
    )

    assert [task.id for task in compute_eligible_tasks(goal)] == ["b", "h"]


def test_linear_chain_cascades_one_task_at_a_time(
    runtime: Runtime, transport: RecordingTransport
) -> None:
    goal, t1, t2, t3 = _chain_goal(runtime)

    kickoff = runtime.scheduler.kickoff(goal.id)
    assert [session.task_id for session in kickoff.spawned] == [t1.id]
    assert transport.delivered == []

    first = runtime.scheduler.complete_task(goal.id, t1.id, "T1 done")
    assert [session.task_id for session in first.spawned] == [t2.id]
    assert transport.keys == [first.spawned[0].session_key]

    second = runtime.scheduler.complete_task(goal.id, t2.id, "T2 done")
    assert [session.task_id for session in second.spawned] == [t3.id]

    third = runtime.scheduler.complete_task(goal.id, t3.id, "T3 done")
    assert third.spawned == []
    assert third.goal_completed

    stored = runtime.store.load().goal(goal.id)
    assert stored.status == "done"
    assert stored.completed is True
    assert len(stored.sessions) == 3
    assert stored.task(t1.id).summary == "T1 done"
    assert all(task.done for task in stored.tasks)


def test_parallel_tasks_fan_out(runtime: Runtime) -> None:
    strand = runtime.orchestrator.create_strand("Project")
    goal = runtime.orchestrator.create_goal(strand.id, "Fan out", tasks=["A", "B", "C"])

    result = runtime.scheduler.kickoff(goal.id)

    assert len(result.spawned) == 3
    assert len({session.session_key for session in result.spawned}) == 3
    assert runtime.scheduler.kickoff(goal.id).spawned == []


def test_kickoff_with_no_tasks_is_a_noop(runtime: Runtime) -> None:
    strand = runtime.orchestrator.create_strand("Project")
    goal = runtime.orchestrator.create_goal(strand.id, "Empty")

    result = runtime.scheduler.kickoff(goal.id)

    assert result.spawned == []
    assert "No eligible tasks" in result.message


def test_kickoff_unknown_goal(runtime: Runtime) -> None:
    with pytest.raises(NotFoundError):
        runtime.scheduler.kickoff("goal_missing")


def test_goal_dependency_blocks_kickoff_until_prerequisite_completes(
    runtime: Runtime, transport: RecordingTransport
) -> None:
    strand = runtime.orchestrator.create_strand("Project")
    g1 = runtime.orchestrator.create_goal(strand.id, "G1", tasks=["setup"])
    g2 = runtime.orchestrator.create_goal(strand.id, "G2", tasks=["build"], depends_on=[g1.id])

    with pytest.raises(BlockedError) as excinfo:
        runtime.scheduler.kickoff(g2.id)
    assert excinfo.value.details["blocked_by"] == [g1.id]
    assert runtime.store.load().goal(g2.id).sessions == []

    session = runtime.scheduler.kickoff(g1.id).spawned[0]
    result = runtime.scheduler.complete_task(g1.id, session.task_id)

    assert result.goal_completed
    assert result.unblocked_goals == [g2.id]
    assert len(result.cascades) == 1
    cascade_session = result.cascades[0].spawned[0]
    assert cascade_session.task_id == g2.tasks[0].id
    assert cascade_session.session_key in transport.keys


def test_unblocked_goals_are_only_reported_when_auto_kickoff_is_off(
    config: StrandworksConfig, transport: RecordingTransport
) -> None:
    config.scheduler.auto_kickoff_unblocked_goals = False
    runtime = build_runtime(config, transport=transport)
    strand = runtime.orchestrator.create_strand("Project")
    g1 = runtime.orchestrator.create_goal(strand.id, "G1", tasks=["setup"])
    g2 = runtime.orchestrator.create_goal(strand.id, "G2", tasks=["build"], depends_on=[g1.id])

    result = runtime.scheduler.complete_task(g1.id, g1.tasks[0].id)

    assert result.unblocked_goals == [g2.id]
    assert result.cascades == []
    assert runtime.store.load().goal(g2.id).sessions == []
    assert [session.task_id for session in runtime.scheduler.kickoff(g2.id).spawned] == [
        g2.tasks[0].id
    ]


def test_second_completion_is_a_noop(runtime: Runtime) -> None:
    goal, t1, _, _ = _chain_goal(runtime)
    runtime.scheduler.kickoff(goal.id)

    first = runtime.scheduler.complete_task(goal.id, t1.id, "first")
    second = runtime.scheduler.complete_task(goal.id, t1.id, "second")

    assert not first.already_done
    assert second.already_done
    assert second.spawned == []
    stored = runtime.store.load().goal(goal.id)
    assert stored.task(t1.id).summary == "first"
    assert len(stored.sessions) == 2


def test_concurrent_completions_finalize_once(runtime: Runtime) -> None:
    strand = runtime.orchestrator.create_strand("Project")
    g1 = runtime.orchestrator.create_goal(strand.id, "G1", tasks=["a", "b", "c", "d"])
    runtime.orchestrator.create_goal(strand.id, "G2", tasks=["next"], depends_on=[g1.id])
    runtime.scheduler.kickoff(g1.id)

    results = []
    lock = threading.Lock()

    def complete(task_id: str) -> None:
        outcome = runtime.scheduler.complete_task(g1.id, task_id)
        with lock:
            results.append(outcome)

    threads = [
        threading.Thread(target=complete, args=(task.id,)) for task in g1.tasks for _ in range(2)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(1 for outcome in results if outcome.already_done) == 4
    assert sum(1 for outcome in results if outcome.goal_completed) == 1
    assert sum(len(outcome.cascades) for outcome in results) == 1
    g2 = runtime.store.load().goals[1]
    assert len(g2.sessions) == 1


def test_failed_delivery_leaves_task_in_progress(config: StrandworksConfig) -> None:
    runtime = build_runtime(config, transport=FailingTransport())
    goal, t1, t2, _ = _chain_goal(runtime)
    runtime.scheduler.kickoff(goal.id)

    result = runtime.scheduler.complete_task(goal.id, t1.id)

    assert [session.task_id for session in result.spawned] == [t2.id]
    stored = runtime.store.load().goal(goal.id).task(t2.id)
    assert stored.status == "in-progress"
    assert stored.session_key == result.spawned[0].session_key


def test_complete_session_resolves_task(runtime: Runtime) -> None:
    goal, t1, t2, _ = _chain_goal(runtime)
    session = runtime.scheduler.kickoff(goal.id).spawned[0]

    result = runtime.scheduler.complete_session(session.session_key, "via session")

    assert result.task_id == t1.id
    assert runtime.store.load().goal(goal.id).task(t1.id).summary == "via session"
    with pytest.raises(NotFoundError):
        runtime.scheduler.complete_session("agent:main:webchat:task-unknown")


def test_close_goal_releases_unfinished_sessions(runtime: Runtime) -> None:
    goal, t1, t2, _ = _chain_goal(runtime)
    runtime.scheduler.kickoff(goal.id)
    runtime.scheduler.complete_task(goal.id, t1.id)
    t2_key = runtime.store.load().goal(goal.id).task(t2.id).session_key

    payload = runtime.scheduler.close_goal(goal.id)

    assert payload["released_sessions"] == [t2_key]
    doc = runtime.store.load()
    closed = doc.goal(goal.id)
    assert closed.status == "done"
    assert closed.completed is True
    assert closed.closed_at is not None
    assert closed.task(t2.id).session_key is None
    assert t2_key not in doc.session_index
    assert closed.task(t1.id).session_key is not None


# Goals with git worktrees


def _worktree_goal(runtime: Runtime, title: str, task_text: str = "Implement"):
    doc = runtime.store.load()
    strand = doc.strands[0] if doc.strands else runtime.orchestrator.create_strand("Repo")
    goal = runtime.orchestrator.create_goal(strand.id, title, tasks=[task_text])
    assert goal.worktree is not None
    return strand, goal


def _seed_main(runtime: Runtime) -> Path:
    strand = runtime.orchestrator.create_strand("Repo")
    workspace = Path(strand.workspace.path)
    commit_file(workspace, "README.md", "seed\n", "seed")
    return workspace


def test_worktree_goal_merges_on_completion(git_runtime: Runtime) -> None:
    workspace = _seed_main(git_runtime)
    _, goal = _worktree_goal(git_runtime, "Add feature")
    session = git_runtime.scheduler.kickoff(goal.id).spawned[0]
    assert goal.worktree.path in session.task_context
    # Uncommitted work is committed before the merge.
    (Path(goal.worktree.path) / "feature.txt").write_text("feature\n", encoding="utf-8")

    result = git_runtime.scheduler.complete_task(goal.id, goal.tasks[0].id, "built it")

    assert result.merge is not None and result.merge.merged
    assert result.goal_completed
    stored = git_runtime.store.load().goal(goal.id)
    assert stored.status == "done"
    assert stored.merge_status == "merged"
    assert (workspace / "feature.txt").read_text(encoding="utf-8") == "feature\n"


def test_merge_conflict_blocks_goal_and_dependents(git_runtime: Runtime) -> None:
    workspace = _seed_main(git_runtime)
    strand, g1 = _worktree_goal(git_runtime, "Rewrite readme")
    g2 = git_runtime.orchestrator.create_goal(
        strand.id, "Follow up", tasks=["Polish"], depends_on=[g1.id]
    )
    commit_file(Path(g1.worktree.path), "README.md", "branch\n", "branch edit")
    commit_file(workspace, "README.md", "main\n", "main edit")
    git_runtime.scheduler.kickoff(g1.id)

    result = git_runtime.scheduler.complete_task(g1.id, g1.tasks[0].id)

    assert result.merge is not None and result.merge.conflict
    assert not result.goal_completed
    assert result.cascades == []
    stored = git_runtime.store.load().goal(g1.id)
    assert stored.status == "blocked"
    assert stored.merge_status == "conflict"
    assert stored.merge_error
    assert (workspace / "README.md").read_text(encoding="utf-8") == "main\n"
    with pytest.raises(BlockedError):
        git_runtime.scheduler.kickoff(g2.id)

    with pytest.raises(MergeConflictError) as excinfo:
        git_runtime.scheduler.retry_merge(g1.id)
    assert excinfo.value.details["merge"]["conflict"] is True
    assert git_runtime.store.load().goal(g1.id).merge_status == "conflict"
    assert (workspace / "README.md").read_text(encoding="utf-8") == "main\n"

    # Resolve on the goal branch, then retry.
    wt = Path(g1.worktree.path)
    run_git(wt, "merge", "main", "-X", "ours", "-m", "resolve")
    retry = git_runtime.scheduler.retry_merge(g1.id)

    assert retry.goal_completed
    assert retry.unblocked_goals == [g2.id]
    assert git_runtime.store.load().goal(g1.id).merge_status == "merged"
    assert (workspace / "README.md").read_text(encoding="utf-8") == "branch\n"


def test_branch_status_for_goal(git_runtime: Runtime) -> None:
    _seed_main(git_runtime)
    _, goal = _worktree_goal(git_runtime, "Status")
    commit_file(Path(goal.worktree.path), "a.txt", "a\n", "one")
    commit_file(Path(goal.worktree.path), "b.txt", "b\n", "two")

    status = git_runtime.scheduler.branch_status(goal.id)

    assert status.ok
    assert (status.ahead, status.behind) == (2, 0)


def test_branch_status_reports_missing_branch(git_runtime: Runtime) -> None:
    workspace = _seed_main(git_runtime)
    _, goal = _worktree_goal(git_runtime, "Vanished")
    run_git(workspace, "worktree", "remove", "--force", goal.worktree.path)
    run_git(workspace, "branch", "-D", goal.worktree.branch)

    with pytest.raises(NotFoundError) as excinfo:
        git_runtime.scheduler.branch_status(goal.id)

    assert excinfo.value.details["status"]["error_kind"] == "missing_branch"


# Strands cloned from a remote


def _remote_goal(runtime: Runtime, remote: Path, title: str = "Publish"):
    strand = runtime.orchestrator.create_strand("Remote", remote_url=str(remote))
    assert strand.workspace is not None and strand.workspace.remote_url == str(remote)
    goal = runtime.orchestrator.create_goal(strand.id, title, tasks=["Ship"])
    return strand, goal


def test_merge_pushes_goal_branch_and_main(git_runtime: Runtime, tmp_path: Path) -> None:
    remote = make_bare_remote(tmp_path / "remote")
    strand, goal = _remote_goal(git_runtime, remote)
    (Path(goal.worktree.path) / "feature.txt").write_text("feature\n", encoding="utf-8")
    git_runtime.scheduler.kickoff(goal.id)

    result = git_runtime.scheduler.complete_task(goal.id, goal.tasks[0].id)

    assert result.goal_completed
    stored = git_runtime.store.load().goal(goal.id)
    assert (stored.push_status, stored.push_error) == ("pushed", None)
    workspace = Path(strand.workspace.path)
    remote_main = run_git(remote, "rev-parse", "refs/heads/main")
    assert remote_main == run_git(workspace, "rev-parse", "main")
    assert run_git(remote, "rev-parse", f"refs/heads/{goal.worktree.branch}") == run_git(
        workspace, "rev-parse", goal.worktree.branch
    )


def test_failed_push_is_recorded_and_retried(git_runtime: Runtime, tmp_path: Path) -> None:
    remote = make_bare_remote(tmp_path / "remote")
    strand, goal = _remote_goal(git_runtime, remote)
    shutil.rmtree(remote)
    git_runtime.scheduler.kickoff(goal.id)

    result = git_runtime.scheduler.complete_task(goal.id, goal.tasks[0].id)

    # The merge is local, so the goal still completes.
    assert result.goal_completed
    stored = git_runtime.store.load().goal(goal.id)
    assert stored.merge_status == "merged"
    assert stored.push_status == "failed"
    assert stored.push_error
    with pytest.raises(ToolFailureError):
        git_runtime.scheduler.retry_push(goal.id)

    workspace = Path(strand.workspace.path)
    fresh = tmp_path / "fresh.git"
    run_git(tmp_path, "init", "--bare", str(fresh))
    run_git(workspace, "remote", "set-url", "origin", str(fresh))

    pushed = git_runtime.scheduler.retry_push(goal.id)
    main = git_runtime.scheduler.push_main(strand.id)

    assert pushed.pushed and main.pushed
    stored = git_runtime.store.load().goal(goal.id)
    assert (stored.push_status, stored.push_error) == ("pushed", None)
    assert run_git(fresh, "rev-parse", "refs/heads/main") == run_git(workspace, "rev-parse", "main")


def test_push_requires_a_remote(git_runtime: Runtime) -> None:
    _seed_main(git_runtime)
    strand, goal = _worktree_goal(git_runtime, "Local only")

    with pytest.raises(ValidationError, match="no remote"):
        git_runtime.scheduler.retry_push(goal.id)
    with pytest.raises(ValidationError, match="remote"):
        git_runtime.scheduler.push_main(strand.id)
    assert git_runtime.store.load().goal(goal.id).push_status is None
