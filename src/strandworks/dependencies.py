from __future__ import annotations

from collections.abc import Iterable, Mapping

from strandworks.errors import CrossScopeReferenceError, CycleDetectedError, ValidationError
from strandworks.models import Document, Goal

WHITE, GREY, BLACK = 0, 1, 2


def find_cycle(graph: Mapping[str, Iterable[str]]) -> list[str] | None:
    """Return one cycle as a list of ids (first id repeated at the end), or None.

    Edges pointing at ids that are not keys of ``graph`` are ignored.
    """
    color = {node: WHITE for node in graph}
    for root in graph:
        if color[root] != WHITE:
            continue
        path: list[str] = [root]
        stack = [iter(graph[root])]
        color[root] = GREY
        while stack:
            advanced = False
            for neighbour in stack[-1]:
                state = color.get(neighbour)
                if state is None or state == BLACK:
                    continue
                if state == GREY:
                    return path[path.index(neighbour) :] + [neighbour]
                color[neighbour] = GREY
                path.append(neighbour)
                stack.append(iter(graph[neighbour]))
                advanced = True
                break
            if not advanced:
                color[path.pop()] = BLACK
                stack.pop()
    return None


def _normalize(depends_on: object) -> list[str]:
    if not isinstance(depends_on, list) or not all(
        isinstance(item, str) and item for item in depends_on
    ):
        raise ValidationError("depends_on must be a list of ids")
    # Preserve order, drop duplicates.
    return list(dict.fromkeys(depends_on))


def validate_task_dependencies(goal: Goal, task_id: str, depends_on: object) -> list[str]:
    deps = _normalize(depends_on)
    tasks = goal.task_map()
    for dep in deps:
        if dep == task_id:
            raise CycleDetectedError(f"Task {task_id} cannot depend on itself")
        if dep not in tasks:
            raise CrossScopeReferenceError(
                f"Task {dep} is not part of goal {goal.id}", details={"task_id": dep}
            )

    graph = {tid: list(task.depends_on) for tid, task in tasks.items()}
    graph[task_id] = deps
    cycle = find_cycle(graph)
    if cycle:
        raise CycleDetectedError(
            "Task dependency cycle: " + " -> ".join(cycle), details={"cycle": cycle}
        )
    return deps


def validate_goal_dependencies(
    doc: Document, goal_id: str, strand_id: str, depends_on: object
) -> list[str]:
    deps = _normalize(depends_on)
    siblings = {goal.id: goal for goal in doc.goals_for_strand(strand_id)}
    for dep in deps:
        if dep == goal_id:
            raise CycleDetectedError(f"Goal {goal_id} cannot depend on itself")
        if dep not in siblings:
            raise CrossScopeReferenceError(
                f"Goal {dep} is not part of strand {strand_id}", details={"goal_id": dep}
            )

    graph = {gid: list(goal.depends_on) for gid, goal in siblings.items()}
    graph[goal_id] = deps
    cycle = find_cycle(graph)
    if cycle:
        raise CycleDetectedError(
            "Goal dependency cycle: " + " -> ".join(cycle), details={"cycle": cycle}
        )
    return deps
