"""Git-backed workspaces for strands and worktrees for goals.

Every public operation returns a :class:`WorkspaceResult` and never raises:
git and filesystem failures are translated into ``ok=False`` results with an
``error_kind`` telling the failure paths apart.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

GOALS_DIR = "goals"
BRANCH_PREFIX = "goal/"
MAX_SLUG_LENGTH = 60
PLACEHOLDER_SLUG = "workspace"
CONFLICT_MARKERS = ("CONFLICT", "Automatic merge failed", "Merge conflict")
CONFLICT_LINE_PATTERN = re.compile(r"CONFLICT.*?:\s*(?:Merge conflict in\s+)?(.+)")

INVALID_REMOTE = "invalid_remote"
MISSING_BRANCH = "missing_branch"
CONFLICT = "conflict"
CONCURRENT_MODIFICATION = "concurrent_modification"
FILESYSTEM = "filesystem"
TOOL_FAILURE = "tool_failure"


class GitCommandError(RuntimeError):
    """Raised internally when a git invocation exits non-zero."""

    def __init__(self, message: str, *, output: str = "", returncode: int | None = None) -> None:
        super().__init__(message)
        self.output = output
        self.returncode = returncode


@dataclass(slots=True)
class WorkspaceResult:
    ok: bool
    path: str | None = None
    branch: str | None = None
    existed: bool = False
    merged: bool = False
    conflict: bool = False
    committed: bool = False
    pushed: bool = False
    error: str | None = None
    error_kind: str | None = None
    ahead: int | None = None
    behind: int | None = None
    conflict_files: list[str] = field(default_factory=list)

    @classmethod
    def failure(
        cls, error: str, error_kind: str, *, conflict: bool = False, **fields: Any
    ) -> WorkspaceResult:
        return cls(ok=False, error=error, error_kind=error_kind, conflict=conflict, **fields)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"ok": self.ok}
        for key in ("path", "branch", "error", "error_kind", "ahead", "behind"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        for key in ("existed", "merged", "conflict", "committed", "pushed"):
            if getattr(self, key):
                payload[key] = True
        if self.conflict_files:
            payload["conflict_files"] = list(self.conflict_files)
        return payload


def sanitize_dir_name(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", str(name).lower()).strip("-")
    return slug[:MAX_SLUG_LENGTH] or PLACEHOLDER_SLUG


def _id_fragment(entity_id: str, prefix: str, length: int) -> str:
    bare = entity_id[len(prefix) :] if entity_id.startswith(prefix) else entity_id
    return bare[:length]


def strand_workspace_path(base_dir: Path, strand_id: str, name: str) -> Path:
    slug = sanitize_dir_name(name)
    return base_dir / f"{slug}-{_id_fragment(strand_id, 'strand_', 8)}"


def goal_worktree_path(workspace: Path, goal_id: str) -> Path:
    return workspace / GOALS_DIR / goal_id


def goal_branch_name(goal_id: str, title: str | None = None) -> str:
    if not title or not re.search(r"[A-Za-z0-9]", title):
        return f"{BRANCH_PREFIX}{goal_id}"
    return f"{BRANCH_PREFIX}{sanitize_dir_name(title)}"


def _output_of(proc: subprocess.CompletedProcess[str]) -> str:
    return "\n".join(part for part in (proc.stdout.strip(), proc.stderr.strip()) if part)


class WorkspaceManager:
    def __init__(
        self,
        *,
        default_branch: str = "main",
        author_name: str = "Strandworks",
        author_email: str = "strandworks@localhost",
        clone_timeout_seconds: float = 120.0,
    ) -> None:
        self.default_branch = default_branch
        self.author_name = author_name
        self.author_email = author_email
        self.clone_timeout_seconds = clone_timeout_seconds

    def _git_env(self) -> dict[str, str]:
        env = os.environ.copy()
        env.update(
            {
                "GIT_AUTHOR_NAME": self.author_name,
                "GIT_AUTHOR_EMAIL": self.author_email,
                "GIT_COMMITTER_NAME": self.author_name,
                "GIT_COMMITTER_EMAIL": self.author_email,
                "GIT_TERMINAL_PROMPT": "0",
            }
        )
        return env

    def _run_git(
        self,
        args: list[str],
        cwd: Path,
        *,
        check: bool = True,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=cwd,
            text=True,
            capture_output=True,
            env=self._git_env(),
            timeout=timeout,
        )
        if check and proc.returncode != 0:
            output = _output_of(proc)
            raise GitCommandError(
                proc.stderr.strip() or proc.stdout.strip() or f"git {args[0]} failed",
                output=output,
                returncode=proc.returncode,
            )
        return proc

    def _branch_exists(self, repo: Path, branch: str) -> bool:
        proc = self._run_git(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], repo, check=False
        )
        return proc.returncode == 0

    def _is_worktree_root(self, path: Path) -> bool:
        # A plain directory inside the workspace resolves to the workspace's toplevel.
        proc = self._run_git(["rev-parse", "--show-toplevel"], path, check=False)
        if proc.returncode != 0 or not proc.stdout.strip():
            return False
        return Path(proc.stdout.strip()).resolve() == path.resolve()

    def _exclude_goals_dir(self, repo: Path) -> None:
        proc = self._run_git(["rev-parse", "--git-path", "info/exclude"], repo)
        exclude_file = Path(proc.stdout.strip())
        if not exclude_file.is_absolute():
            exclude_file = repo / exclude_file
        exclude_file.parent.mkdir(parents=True, exist_ok=True)
        existing = exclude_file.read_text(encoding="utf-8") if exclude_file.exists() else ""
        entry = f"/{GOALS_DIR}/"
        if entry not in existing.splitlines():
            prefix = "" if not existing or existing.endswith("\n") else "\n"
            exclude_file.write_text(f"{existing}{prefix}{entry}\n", encoding="utf-8")

    def create_strand_workspace(
        self,
        base_dir: Path,
        strand_id: str,
        name: str,
        remote_url: str | None = None,
    ) -> WorkspaceResult:
        ws_path = strand_workspace_path(base_dir, strand_id, name)
        try:
            base_dir.mkdir(parents=True, exist_ok=True)
            if ws_path.exists():
                return WorkspaceResult(ok=True, path=str(ws_path), existed=True)

            if remote_url:
                proc = self._run_git(
                    ["clone", remote_url, str(ws_path)],
                    base_dir,
                    check=False,
                    timeout=self.clone_timeout_seconds,
                )
                if proc.returncode != 0:
                    shutil.rmtree(ws_path, ignore_errors=True)
                    return WorkspaceResult.failure(
                        _output_of(proc) or f"Could not clone {remote_url}",
                        INVALID_REMOTE,
                        path=str(ws_path),
                    )
            else:
                ws_path.mkdir(parents=True)
                self._run_git(["init"], ws_path)
                self._run_git(
                    ["symbolic-ref", "HEAD", f"refs/heads/{self.default_branch}"], ws_path
                )
                self._run_git(["commit", "--allow-empty", "-m", "Initial commit"], ws_path)

            (ws_path / GOALS_DIR).mkdir(parents=True, exist_ok=True)
            self._exclude_goals_dir(ws_path)
            logger.info("Created strand workspace %s", ws_path)
            return WorkspaceResult(ok=True, path=str(ws_path))
        except subprocess.TimeoutExpired:
            shutil.rmtree(ws_path, ignore_errors=True)
            return WorkspaceResult.failure(
                f"Timed out cloning {remote_url}", INVALID_REMOTE, path=str(ws_path)
            )
        except GitCommandError as exc:
            return WorkspaceResult.failure(str(exc), TOOL_FAILURE, path=str(ws_path))
        except OSError as exc:
            return WorkspaceResult.failure(str(exc), FILESYSTEM, path=str(ws_path))

    def create_goal_worktree(
        self, workspace: Path, goal_id: str, title: str | None = None
    ) -> WorkspaceResult:
        wt_path = goal_worktree_path(workspace, goal_id)
        branch = goal_branch_name(goal_id, title)
        try:
            if wt_path.exists():
                if self._is_worktree_root(wt_path):
                    proc = self._run_git(
                        ["rev-parse", "--abbrev-ref", "HEAD"], wt_path, check=False
                    )
                    if proc.returncode == 0 and proc.stdout.strip():
                        branch = proc.stdout.strip()
                    return WorkspaceResult(
                        ok=True, path=str(wt_path), branch=branch, existed=True
                    )
                if any(wt_path.iterdir()):
                    return WorkspaceResult.failure(
                        f"{wt_path} exists but is not a git worktree",
                        FILESYSTEM,
                        path=str(wt_path),
                        branch=branch,
                    )
                # Empty leftover directory; git worktree add fills it.
                wt_path.rmdir()

            if not workspace.is_dir():
                return WorkspaceResult.failure(
                    f"Workspace does not exist: {workspace}", FILESYSTEM, path=str(wt_path)
                )

            if branch != f"{BRANCH_PREFIX}{goal_id}" and self._branch_exists(workspace, branch):
                branch = f"{branch}-{_id_fragment(goal_id, 'goal_', 6)}"

            wt_path.parent.mkdir(parents=True, exist_ok=True)
            self._run_git(["worktree", "add", str(wt_path), "-b", branch], workspace)
            logger.info("Created worktree %s on branch %s", wt_path, branch)
            return WorkspaceResult(ok=True, path=str(wt_path), branch=branch)
        except GitCommandError as exc:
            kind = CONCURRENT_MODIFICATION if "index.lock" in exc.output else TOOL_FAILURE
            return WorkspaceResult.failure(str(exc), kind, path=str(wt_path), branch=branch)
        except OSError as exc:
            return WorkspaceResult.failure(str(exc), FILESYSTEM, path=str(wt_path), branch=branch)

    def remove_goal_worktree(
        self,
        workspace: Path,
        goal_id: str,
        branch: str | None = None,
        *,
        keep_branch: bool = False,
    ) -> WorkspaceResult:
        wt_path = goal_worktree_path(workspace, goal_id)
        branch_name = branch or goal_branch_name(goal_id)
        try:
            if not workspace.exists():
                return WorkspaceResult(ok=True, path=str(wt_path))
            if wt_path.exists():
                self._run_git(["worktree", "remove", "--force", str(wt_path)], workspace)
            self._run_git(["worktree", "prune"], workspace, check=False)
            if not keep_branch and self._branch_exists(workspace, branch_name):
                # The branch may still be checked out elsewhere.
                self._run_git(["branch", "-D", branch_name], workspace, check=False)
            return WorkspaceResult(ok=True, path=str(wt_path), branch=branch_name)
        except GitCommandError as exc:
            return WorkspaceResult.failure(str(exc), TOOL_FAILURE, path=str(wt_path))
        except OSError as exc:
            return WorkspaceResult.failure(str(exc), FILESYSTEM, path=str(wt_path))

    def remove_strand_workspace(self, workspace: Path) -> WorkspaceResult:
        try:
            if workspace.exists():
                shutil.rmtree(workspace)
                logger.info("Removed strand workspace %s", workspace)
            return WorkspaceResult(ok=True, path=str(workspace))
        except OSError as exc:
            return WorkspaceResult.failure(str(exc), FILESYSTEM, path=str(workspace))

    def get_main_branch(self, workspace: Path) -> str:
        try:
            proc = self._run_git(["branch", "--list", "main", "master"], workspace, check=False)
            lines = [line.strip() for line in proc.stdout.splitlines() if line.strip()]
            for line in lines:
                if line.startswith("* "):
                    return line[2:].strip()
            for candidate in ("main", "master"):
                if candidate in lines:
                    return candidate
            head = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], workspace, check=False)
            name = head.stdout.strip()
            return name if head.returncode == 0 and name and name != "HEAD" else "main"
        except OSError:
            return "main"

    def commit_worktree_changes(self, worktree: Path, message: str) -> WorkspaceResult:
        try:
            status = self._run_git(["status", "--porcelain"], worktree)
            if not status.stdout.strip():
                return WorkspaceResult(ok=True, path=str(worktree))
            self._run_git(["add", "-A"], worktree)
            self._run_git(["commit", "-m", message], worktree)
            return WorkspaceResult(ok=True, path=str(worktree), committed=True)
        except GitCommandError as exc:
            kind = CONCURRENT_MODIFICATION if "index.lock" in exc.output else TOOL_FAILURE
            return WorkspaceResult.failure(str(exc), kind, path=str(worktree))
        except OSError as exc:
            return WorkspaceResult.failure(str(exc), FILESYSTEM, path=str(worktree))

    def push_branch(self, repo: Path, branch: str, remote: str = "origin") -> WorkspaceResult:
        """Push ``branch`` to ``remote`` and set it as the upstream."""
        try:
            if not repo.is_dir():
                return WorkspaceResult.failure(
                    f"Repository does not exist: {repo}", FILESYSTEM, branch=branch
                )
            if self._run_git(["remote", "get-url", remote], repo, check=False).returncode != 0:
                return WorkspaceResult.failure(
                    f"No remote named {remote}", INVALID_REMOTE, path=str(repo), branch=branch
                )
            if not self._branch_exists(repo, branch):
                return WorkspaceResult.failure(
                    f"Branch not found: {branch}", MISSING_BRANCH, path=str(repo), branch=branch
                )
            proc = self._run_git(
                ["push", "-u", remote, branch],
                repo,
                check=False,
                timeout=self.clone_timeout_seconds,
            )
            if proc.returncode != 0:
                return WorkspaceResult.failure(
                    _output_of(proc) or f"git push {remote} {branch} failed",
                    TOOL_FAILURE,
                    path=str(repo),
                    branch=branch,
                )
            logger.info("Pushed %s to %s", branch, remote)
            return WorkspaceResult(ok=True, path=str(repo), branch=branch, pushed=True)
        except subprocess.TimeoutExpired:
            return WorkspaceResult.failure(
                f"Timed out pushing {branch} to {remote}", TOOL_FAILURE, branch=branch
            )
        except OSError as exc:
            return WorkspaceResult.failure(str(exc), FILESYSTEM, branch=branch)

    def _index_locked(self, workspace: Path) -> bool:
        proc = self._run_git(["rev-parse", "--git-path", "index.lock"], workspace, check=False)
        if proc.returncode != 0:
            return False
        lock_path = Path(proc.stdout.strip())
        if not lock_path.is_absolute():
            lock_path = workspace / lock_path
        return lock_path.exists()

    def _tracked_changes(self, workspace: Path) -> list[str]:
        proc = self._run_git(["status", "--porcelain", "--untracked-files=no"], workspace)
        return [line for line in proc.stdout.splitlines() if line.strip()]

    def merge_goal_branch(self, workspace: Path, branch: str) -> WorkspaceResult:
        try:
            if not workspace.is_dir():
                return WorkspaceResult.failure(
                    f"Workspace does not exist: {workspace}", FILESYSTEM, branch=branch
                )
            if not self._branch_exists(workspace, branch):
                return WorkspaceResult.failure(
                    f"Branch not found: {branch}", MISSING_BRANCH, branch=branch
                )
            if self._index_locked(workspace):
                return WorkspaceResult.failure(
                    "Another git process holds the index lock.",
                    CONCURRENT_MODIFICATION,
                    branch=branch,
                )
            dirty = self._tracked_changes(workspace)
            if dirty:
                return WorkspaceResult.failure(
                    "Main working copy has uncommitted changes: " + ", ".join(dirty[:5]),
                    CONCURRENT_MODIFICATION,
                    branch=branch,
                )

            main_branch = self.get_main_branch(workspace)
            current = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], workspace).stdout.strip()
            if current != main_branch:
                self._run_git(["checkout", main_branch], workspace)
            head_before = self._run_git(["rev-parse", "HEAD"], workspace).stdout.strip()

            proc = self._run_git(
                ["merge", branch, "--no-ff", "-m", f"Merge {branch} into {main_branch}"],
                workspace,
                check=False,
            )
            if proc.returncode == 0:
                logger.info("Merged %s into %s", branch, main_branch)
                return WorkspaceResult(ok=True, path=str(workspace), branch=branch, merged=True)

            output = _output_of(proc)
            if any(marker in output for marker in CONFLICT_MARKERS):
                abort = self._run_git(["merge", "--abort"], workspace, check=False)
                if abort.returncode != 0:
                    self._run_git(["reset", "--hard", head_before], workspace, check=False)
                conflict_files = [
                    match.group(1).strip()
                    for match in map(CONFLICT_LINE_PATTERN.search, output.splitlines())
                    if match
                ]
                logger.warning("Merge of %s into %s aborted on conflict", branch, main_branch)
                return WorkspaceResult.failure(
                    output,
                    CONFLICT,
                    conflict=True,
                    path=str(workspace),
                    branch=branch,
                    conflict_files=conflict_files,
                )

            # Leave no half-applied merge behind on other failures either.
            self._run_git(["merge", "--abort"], workspace, check=False)
            kind = CONCURRENT_MODIFICATION if "index.lock" in output else TOOL_FAILURE
            return WorkspaceResult.failure(
                output or "git merge failed", kind, path=str(workspace), branch=branch
            )
        except GitCommandError as exc:
            kind = CONCURRENT_MODIFICATION if "index.lock" in exc.output else TOOL_FAILURE
            return WorkspaceResult.failure(str(exc), kind, branch=branch)
        except OSError as exc:
            return WorkspaceResult.failure(str(exc), FILESYSTEM, branch=branch)

    def check_branch_status(self, workspace: Path, branch: str) -> WorkspaceResult:
        try:
            if not workspace.is_dir():
                return WorkspaceResult.failure(
                    f"Workspace does not exist: {workspace}", FILESYSTEM, branch=branch
                )
            if not self._branch_exists(workspace, branch):
                return WorkspaceResult.failure(
                    f"Branch not found: {branch}", MISSING_BRANCH, branch=branch
                )
            main_branch = self.get_main_branch(workspace)
            counts = self._run_git(
                ["rev-list", "--left-right", "--count", f"{main_branch}...{branch}"], workspace
            ).stdout.split()
            behind, ahead = (int(counts[0]), int(counts[1])) if len(counts) == 2 else (0, 0)

            conflict_files: list[str] = []
            if behind > 0 and ahead > 0:
                proc = self._run_git(
                    ["merge-tree", "--write-tree", "--name-only", main_branch, branch],
                    workspace,
                    check=False,
                )
                # Exit status 1 means conflicts; anything else is an old git without --write-tree.
                if proc.returncode == 1:
                    for line in proc.stdout.splitlines():
                        match = CONFLICT_LINE_PATTERN.search(line)
                        if match:
                            conflict_files.append(match.group(1).strip())
                    if not conflict_files:
                        conflict_files = ["(conflict detected)"]

            return WorkspaceResult(
                ok=True,
                path=str(workspace),
                branch=branch,
                ahead=ahead,
                behind=behind,
                conflict_files=conflict_files,
            )
        except GitCommandError as exc:
            return WorkspaceResult.failure(str(exc), TOOL_FAILURE, branch=branch)
        except (OSError, ValueError) as exc:
            return WorkspaceResult.failure(str(exc), FILESYSTEM, branch=branch)
