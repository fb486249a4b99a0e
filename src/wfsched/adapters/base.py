from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from wfsched.models.enums import WorkerResult

if TYPE_CHECKING:
    from wfsched.core.matrix import JobInstance


class DispatchError(Exception):
    """The worker could not accept the instance (unavailable, no capacity)."""


@dataclass
class WorkerOutcome:
    status: WorkerResult
    metadata: dict[str, Any] = field(default_factory=dict)


class Worker(ABC):
    @abstractmethod
    async def execute(
        self, instance: JobInstance, deadline: datetime, env: dict[str, str]
    ) -> WorkerOutcome:
        """Run one instance to completion. Raises DispatchError if it cannot start."""

    @abstractmethod
    async def cancel(self, instance: JobInstance) -> None:
        """Best-effort stop of a running instance."""
