from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from strandworks.autonomy import (
    AUTONOMY_MODES,
    set_goal_autonomy,
    set_strand_autonomy,
    set_task_autonomy,
)
from strandworks.config import StrandworksConfig, load_config, normalize_log_level, save_config
from strandworks.errors import OrchestrationError
from strandworks.gateway import Gateway
from strandworks.orchestrator import Orchestrator
from strandworks.planning import PlanParser
from strandworks.scheduler import Scheduler, compute_eligible_tasks
from strandworks.spawn import SpawnExecutor
from strandworks.state import EntityStore, StoreError
from strandworks.transport import SessionTransport
from strandworks.workspace import WorkspaceManager

INHERIT = "inherit"


@dataclass(slots=True)
class Runtime:
    config: StrandworksConfig
    store: EntityStore
    workspaces: WorkspaceManager
    spawner: SpawnExecutor
    scheduler: Scheduler
    orchestrator: Orchestrator
    gateway: Gateway


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def build_runtime(
    config: StrandworksConfig,
    *,
    transport: SessionTransport | None = None,
    plan_parser: PlanParser | None = None,
) -> Runtime:
    store = EntityStore(config.data_dir, lock_timeout_seconds=config.store.lock_timeout_seconds)
    workspaces = WorkspaceManager(
        default_branch=config.workspaces.default_branch,
        author_name=config.workspaces.git_author_name,
        author_email=config.workspaces.git_author_email,
        clone_timeout_seconds=config.workspaces.clone_timeout_seconds,
    )
    spawner = SpawnExecutor(store, default_agent=config.scheduler.default_agent)
    scheduler = Scheduler(
        store,
        spawner,
        workspaces,
        transport,
        auto_kickoff_unblocked_goals=config.scheduler.auto_kickoff_unblocked_goals,
    )
    orchestrator = Orchestrator(
        store,
        workspaces,
        workspaces_dir=config.workspaces_dir if config.workspaces.enabled else None,
        plan_parser=plan_parser,
    )
    return Runtime(
        config=config,
        store=store,
        workspaces=workspaces,
        spawner=spawner,
        scheduler=scheduler,
        orchestrator=orchestrator,
        gateway=Gateway(store, orchestrator, scheduler, spawner),
    )


def _resolve_config_path(config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = Path.cwd() / config_path
    return config_path.resolve()


def _runtime(ctx: click.Context) -> Runtime:
    return build_runtime(ctx.obj["config"])


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@click.group()
@click.option("--config", "config_value", default="strandworks.toml", show_default=True)
@click.option("--log-level", default=None, help="Overrides logging.level from the config file.")
@click.pass_context
def cli(ctx: click.Context, config_value: str, log_level: str | None) -> None:
    """Strandworks CLI."""
    config_path = _resolve_config_path(config_value)
    try:
        config = load_config(config_path)
        level = normalize_log_level(log_level) if log_level else config.logging.level
    except (ValueError, TypeError) as exc:
        raise click.ClickException(f"Invalid configuration: {exc}") from exc
    configure_logging(level)
    ctx.obj = {"config_path": config_path, "config": config}


@cli.command("init")
@click.pass_context
def init_command(ctx: click.Context) -> None:
    config_path: Path = ctx.obj["config_path"]
    config: StrandworksConfig = ctx.obj["config"]
    save_config(config_path, config)
    config.data_dir.mkdir(parents=True, exist_ok=True)
    if config.workspaces.enabled:
        config.workspaces_dir.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized Strandworks in {config.root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Data: {config.data_dir}")
    if config.workspaces.enabled:
        click.echo(f"Workspaces: {config.workspaces_dir}")


@cli.group("strand")
def strand_group() -> None:
    """Manage strands."""


@strand_group.command("create")
@click.argument("name")
@click.option("--description", default="")
@click.option("--remote-url", default=None)
@click.option("--autonomy", type=click.Choice(AUTONOMY_MODES), default=None)
@click.pass_context
def strand_create_command(
    ctx: click.Context, name: str, description: str, remote_url: str | None, autonomy: str | None
) -> None:
    runtime = _runtime(ctx)
    try:
        strand = runtime.orchestrator.create_strand(
            name, description=description, remote_url=remote_url, autonomy_mode=autonomy
        )
    except (OrchestrationError, StoreError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Created strand {strand.id}")
    if strand.workspace:
        click.echo(f"Workspace: {strand.workspace.path}")


@strand_group.command("list")
@click.pass_context
def strand_list_command(ctx: click.Context) -> None:
    runtime = _runtime(ctx)
    strands = runtime.orchestrator.list_strands()
    if not strands:
        click.echo("No strands found.")
        return
    for strand in strands:
        click.echo(f"{strand['id']} {strand['name']} ({strand['goal_count']} goals)")


@strand_group.command("show")
@click.argument("strand_id")
@click.pass_context
def strand_show_command(ctx: click.Context, strand_id: str) -> None:
    runtime = _runtime(ctx)
    try:
        payload = runtime.orchestrator.get_strand(strand_id)
    except (OrchestrationError, StoreError) as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(payload)


@cli.group("goal")
def goal_group() -> None:
    """Manage goals."""


@goal_group.command("create")
@click.argument("strand_id")
@click.argument("title")
@click.option("--description", default="")
@click.option("--depends-on", "depends_on", multiple=True)
@click.option("--phase", type=int, default=None)
@click.option("--task", "tasks", multiple=True, help="Initial task text; repeatable.")
@click.option("--no-worktree", is_flag=True, default=False)
@click.pass_context
def goal_create_command(
    ctx: click.Context,
    strand_id: str,
    title: str,
    description: str,
    depends_on: tuple[str, ...],
    phase: int | None,
    tasks: tuple[str, ...],
    no_worktree: bool,
) -> None:
    runtime = _runtime(ctx)
    try:
        goal = runtime.orchestrator.create_goal(
            strand_id,
            title,
            description=description,
            depends_on=list(depends_on),
            phase=phase,
            tasks=list(tasks),
            create_worktree=not no_worktree,
        )
    except (OrchestrationError, StoreError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Created goal {goal.id}")
    if goal.worktree:
        click.echo(f"Worktree: {goal.worktree.path} ({goal.worktree.branch})")
    for task in goal.tasks:
        click.echo(f"  {task.id} {task.text}")


@goal_group.command("show")
@click.argument("goal_id")
@click.pass_context
def goal_show_command(ctx: click.Context, goal_id: str) -> None:
    runtime = _runtime(ctx)
    try:
        goal = runtime.orchestrator.get_goal(goal_id)
    except (OrchestrationError, StoreError) as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(goal.to_dict())


@cli.group("task")
def task_group() -> None:
    """Manage tasks."""


@task_group.command("add")
@click.argument("goal_id")
@click.argument("text")
@click.option("--description", default="")
@click.option("--priority", default=None)
@click.option("--depends-on", "depends_on", multiple=True)
@click.pass_context
def task_add_command(
    ctx: click.Context,
    goal_id: str,
    text: str,
    description: str,
    priority: str | None,
    depends_on: tuple[str, ...],
) -> None:
    runtime = _runtime(ctx)
    try:
        task = runtime.orchestrator.add_task(
            goal_id,
            text,
            description=description,
            priority=priority,
            depends_on=list(depends_on),
        )
    except (OrchestrationError, StoreError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Added task {task.id}")


@task_group.command("depends")
@click.argument("goal_id")
@click.argument("task_id")
@click.argument("depends_on", nargs=-1)
@click.pass_context
def task_depends_command(
    ctx: click.Context, goal_id: str, task_id: str, depends_on: tuple[str, ...]
) -> None:
    runtime = _runtime(ctx)
    try:
        task = runtime.orchestrator.set_task_dependencies(goal_id, task_id, list(depends_on))
    except (OrchestrationError, StoreError) as exc:
        raise click.ClickException(str(exc)) from exc
    deps = ", ".join(task.depends_on) or "nothing"
    click.echo(f"Task {task.id} depends on {deps}")


@cli.command("eligible")
@click.argument("goal_id")
@click.pass_context
def eligible_command(ctx: click.Context, goal_id: str) -> None:
    runtime = _runtime(ctx)
    try:
        goal = runtime.orchestrator.get_goal(goal_id)
    except (OrchestrationError, StoreError) as exc:
        raise click.ClickException(str(exc)) from exc
    eligible = compute_eligible_tasks(goal)
    if not eligible:
        click.echo("No eligible tasks.")
        return
    for task in eligible:
        click.echo(f"{task.id} {task.text}")


@cli.command("kickoff")
@click.argument("goal_id")
@click.option("--deliver", is_flag=True, default=False, help="Hand sessions to the transport.")
@click.pass_context
def kickoff_command(ctx: click.Context, goal_id: str, deliver: bool) -> None:
    runtime = _runtime(ctx)
    try:
        result = runtime.scheduler.kickoff(goal_id, deliver=deliver)
    except (OrchestrationError, StoreError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(result.message)
    for session in result.spawned:
        click.echo(f"  {session.session_key} -> {session.task_id} [{session.autonomy_mode}]")


@cli.command("complete")
@click.argument("goal_id")
@click.argument("task_id")
@click.option("--summary", default="")
@click.pass_context
def complete_command(ctx: click.Context, goal_id: str, task_id: str, summary: str) -> None:
    runtime = _runtime(ctx)
    try:
        result = runtime.scheduler.complete_task(goal_id, task_id, summary)
    except (OrchestrationError, StoreError) as exc:
        raise click.ClickException(str(exc)) from exc

    if result.already_done:
        click.echo(f"Task {task_id} was already done.")
        return
    click.echo(f"Completed task {task_id}")
    for session in result.spawned:
        click.echo(f"  spawned {session.session_key} -> {session.task_id}")
    if result.merge is not None and not result.merge.ok:
        label = "conflict" if result.merge.conflict else result.merge.error_kind
        click.echo(f"Merge failed ({label}); goal {goal_id} is blocked.")
    if result.goal_completed:
        click.echo(f"Goal {goal_id} is done.")
    for cascade in result.cascades:
        click.echo(f"  {cascade.message}")


@cli.command("status")
@click.option("--strand", "strand_id", default=None)
@click.pass_context
def status_command(ctx: click.Context, strand_id: str | None) -> None:
    runtime = _runtime(ctx)
    try:
        goals = runtime.orchestrator.list_goals(strand_id)
    except (OrchestrationError, StoreError) as exc:
        raise click.ClickException(str(exc)) from exc
    if not goals:
        click.echo("No goals found.")
        return
    for goal in goals:
        done = sum(1 for task in goal.tasks if task.done)
        merge = f" merge={goal.merge_status}" if goal.merge_status else ""
        progress = f"{done}/{len(goal.tasks)} tasks"
        click.echo(f"{goal.id} [{goal.status}] {goal.title} ({progress}){merge}")


@cli.command("merge")
@click.argument("goal_id")
@click.pass_context
def merge_command(ctx: click.Context, goal_id: str) -> None:
    runtime = _runtime(ctx)
    try:
        result = runtime.scheduler.retry_merge(goal_id)
    except (OrchestrationError, StoreError) as exc:
        raise click.ClickException(str(exc)) from exc
    if result.already_done:
        click.echo(f"Goal {goal_id} is already merged.")
    else:
        click.echo(f"Merged goal {goal_id}.")


@cli.command("push")
@click.argument("target_id")
@click.option("--main", "push_main", is_flag=True, help="Push the strand's main branch.")
@click.pass_context
def push_command(ctx: click.Context, target_id: str, push_main: bool) -> None:
    """Push a goal branch, or with --main a strand's main branch, to its remote."""
    runtime = _runtime(ctx)
    try:
        if push_main:
            push = runtime.scheduler.push_main(target_id)
        else:
            push = runtime.scheduler.retry_push(target_id)
    except (OrchestrationError, StoreError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Pushed {push.branch}.")


@cli.group("autonomy")
def autonomy_group() -> None:
    """Autonomy overrides."""


@autonomy_group.command("set")
@click.argument("mode", type=click.Choice([*AUTONOMY_MODES, INHERIT]))
@click.option("--strand", "strand_id", default=None)
@click.option("--goal", "goal_id", default=None)
@click.option("--task", "task_id", default=None)
@click.pass_context
def autonomy_set_command(
    ctx: click.Context,
    mode: str,
    strand_id: str | None,
    goal_id: str | None,
    task_id: str | None,
) -> None:
    runtime = _runtime(ctx)
    value = None if mode == INHERIT else mode
    try:
        if task_id:
            if not goal_id:
                raise click.ClickException("--task requires --goal")
            set_task_autonomy(runtime.store, goal_id, task_id, value)
            target = f"task {task_id}"
        elif goal_id:
            set_goal_autonomy(runtime.store, goal_id, value)
            target = f"goal {goal_id}"
        elif strand_id:
            set_strand_autonomy(runtime.store, strand_id, value)
            target = f"strand {strand_id}"
        else:
            raise click.ClickException("One of --strand, --goal or --task is required")
    except (OrchestrationError, StoreError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Autonomy for {target} set to {mode}")


@cli.command("call")
@click.argument("method")
@click.argument("params_json", required=False, default="{}")
@click.pass_context
def call_command(ctx: click.Context, method: str, params_json: str) -> None:
    try:
        params = json.loads(params_json)
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"PARAMS_JSON is not valid JSON: {exc}") from exc

    runtime = _runtime(ctx)
    ok, payload, error = runtime.gateway.invoke(method, params)
    if not ok:
        raise click.ClickException(f"{error['kind']}: {error['message']}")
    _echo_json(payload)
