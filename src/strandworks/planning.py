from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass(slots=True)
class TaskDraft:
    text: str
    description: str = ""
    priority: str | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TaskDraft:
        priority = payload.get("priority")
        return cls(
            text=str(payload.get("text", "")).strip(),
            description=str(payload.get("description") or ""),
            priority=str(priority) if priority else None,
        )


class PlanParser(ABC):
    """Turns free-form plan text into ordered task drafts."""

    @abstractmethod
    def parse(self, text: str) -> list[TaskDraft] | None:
        """Return the drafts, or ``None`` when the text holds no plan."""
        raise NotImplementedError


class NullPlanParser(PlanParser):
    def parse(self, text: str) -> list[TaskDraft] | None:
        return None
