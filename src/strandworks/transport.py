from __future__ import annotations

import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class TransportError(RuntimeError):
    """Raised when an assignment cannot be handed to a worker session."""


class SessionTransport(ABC):
    """Delivers a task assignment to a worker session.

    Delivery means "accepted"; formatting, retries and acknowledgements belong
    to the implementation.
    """

    @abstractmethod
    def deliver(self, session_key: str, task_context: str) -> bool:
        raise NotImplementedError


class NullTransport(SessionTransport):
    def deliver(self, session_key: str, task_context: str) -> bool:
        logger.debug("Dropping assignment for %s (%d chars)", session_key, len(task_context))
        return True
