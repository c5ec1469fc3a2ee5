import os
import subprocess
from pathlib import Path

import pytest

from strandworks.cli import Runtime, build_runtime
from strandworks.config import StrandworksConfig
from strandworks.transport import SessionTransport

GIT_ENV = {
    **os.environ,
    "GIT_AUTHOR_NAME": "Test User",
    "GIT_AUTHOR_EMAIL": "test@example.com",
    "GIT_COMMITTER_NAME": "Test User",
    "GIT_COMMITTER_EMAIL": "test@example.com",
}


def run_git(cwd: Path, *args: str) -> str:
    proc = subprocess.run(
        ["git", *args], cwd=cwd, check=True, text=True, capture_output=True, env=GIT_ENV
    )
    return proc.stdout.strip()


def commit_file(repo: Path, name: str, content: str, message: str) -> None:
    (repo / name).write_text(content, encoding="utf-8")
    run_git(repo, "add", name)
    run_git(repo, "commit", "-m", message)


def make_bare_remote(base: Path) -> Path:
    seed = base / "seed"
    seed.mkdir(parents=True)
    run_git(seed, "init")
    run_git(seed, "symbolic-ref", "HEAD", "refs/heads/main")
    commit_file(seed, "README.md", "seed\n", "initial")
    remote = base / "origin.git"
    run_git(base, "clone", "--bare", str(seed), str(remote))
    return remote


class RecordingTransport(SessionTransport):
    def __init__(self) -> None:
        self.delivered: list[tuple[str, str]] = []

    def deliver(self, session_key: str, task_context: str) -> bool:
        self.delivered.append((session_key, task_context))
        return True

    @property
    def keys(self) -> list[str]:
        return [key for key, _ in self.delivered]


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def config(tmp_path: Path) -> StrandworksConfig:
    config = StrandworksConfig.default(tmp_path)
    config.workspaces.enabled = False
    return config


@pytest.fixture
def runtime(config: StrandworksConfig, transport: RecordingTransport) -> Runtime:
    return build_runtime(config, transport=transport)


@pytest.fixture
def git_runtime(tmp_path: Path, transport: RecordingTransport) -> Runtime:
    config = StrandworksConfig.default(tmp_path)
    return build_runtime(config, transport=transport)
