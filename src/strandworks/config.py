from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


@dataclass(slots=True)
class StoreConfig:
    data_dir: str = ".strandworks"
    lock_timeout_seconds: float = 3.0


@dataclass(slots=True)
class WorkspacesConfig:
    enabled: bool = True
    base_dir: str = "workspaces"
    default_branch: str = "main"
    git_author_name: str = "Strandworks"
    git_author_email: str = "strandworks@localhost"
    clone_timeout_seconds: float = 120.0


@dataclass(slots=True)
class SchedulerConfig:
    default_agent: str = "main"
    auto_kickoff_unblocked_goals: bool = True


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(slots=True)
class StrandworksConfig:
    store: StoreConfig = field(default_factory=StoreConfig)
    workspaces: WorkspacesConfig = field(default_factory=WorkspacesConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    root: Path = field(default_factory=Path.cwd)

    @classmethod
    def default(cls, root: Path | None = None) -> StrandworksConfig:
        return cls(root=(root or Path.cwd()).resolve())

    @classmethod
    def from_dict(cls, data: dict, root: Path | None = None) -> StrandworksConfig:
        config = cls(
            store=StoreConfig(**data.get("store", {})),
            workspaces=WorkspacesConfig(**data.get("workspaces", {})),
            scheduler=SchedulerConfig(**data.get("scheduler", {})),
            logging=LoggingConfig(**data.get("logging", {})),
            root=(root or Path.cwd()).resolve(),
        )
        config.logging.level = normalize_log_level(config.logging.level)
        return config

    def to_dict(self) -> dict:
        return {
            "store": {
                "data_dir": self.store.data_dir,
                "lock_timeout_seconds": self.store.lock_timeout_seconds,
            },
            "workspaces": {
                "enabled": self.workspaces.enabled,
                "base_dir": self.workspaces.base_dir,
                "default_branch": self.workspaces.default_branch,
                "git_author_name": self.workspaces.git_author_name,
                "git_author_email": self.workspaces.git_author_email,
                "clone_timeout_seconds": self.workspaces.clone_timeout_seconds,
            },
            "scheduler": {
                "default_agent": self.scheduler.default_agent,
                "auto_kickoff_unblocked_goals": self.scheduler.auto_kickoff_unblocked_goals,
            },
            "logging": {
                "level": self.logging.level,
            },
        }

    def _resolve(self, value: str) -> Path:
        path = Path(value).expanduser()
        if not path.is_absolute():
            path = self.root / path
        return path.resolve()

    @property
    def data_dir(self) -> Path:
        return self._resolve(self.store.data_dir)

    @property
    def workspaces_dir(self) -> Path:
        return self._resolve(self.workspaces.base_dir)


def normalize_log_level(value: str) -> str:
    normalized = str(value).strip().upper()
    if normalized not in LOG_LEVELS:
        raise ValueError(f"logging.level must be one of {', '.join(LOG_LEVELS)}")
    return normalized


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: StrandworksConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["store", "workspaces", "scheduler", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> StrandworksConfig:
    root = path.resolve().parent
    if not path.exists():
        return StrandworksConfig.default(root)
    return StrandworksConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")), root)


def save_config(path: Path, config: StrandworksConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
