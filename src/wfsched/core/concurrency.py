"""Concurrency Group Manager: at most one active holder per named group.

A holder is a whole run (workflow-level concurrency) or a (run, job) lease
(job-level concurrency). The registry is process-wide and shared by every
run the engine executes; groups are evicted once nothing holds or waits on
them.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Protocol

from wfsched.models.enums import AdmissionOutcome

logger = logging.getLogger(__name__)


class GroupHolder(Protocol):
    holder_id: str

    async def preempt(self, group_key: str, reason: str) -> None:
        """Cancel every non-terminal instance covered by this holder."""


@dataclass
class ConcurrencyGroup:
    key: str
    active: GroupHolder | None = None
    queue: deque[tuple[GroupHolder, asyncio.Future]] = field(default_factory=deque)


@dataclass
class AdmissionDecision:
    outcome: AdmissionOutcome
    group_key: str
    preempted: list[str] = field(default_factory=list)
    position: int = 0
    _promoted: asyncio.Future | None = None

    async def wait(self) -> bool:
        """Wait until the holder is active. False if it was dropped while queued."""
        if self._promoted is None:
            return True
        return await self._promoted

    def abandon(self) -> None:
        """Stop waiting; the manager skips this holder on its next promotion."""
        if self._promoted is not None and not self._promoted.done():
            self._promoted.set_result(False)


def derive_group_key(prefix: str, *candidates: str | None) -> str:
    """Build ``prefix-<first non-empty candidate>``.

    Callers pass the scoping fields in priority order, e.g.
    ``derive_group_key("tests", head_ref, ref, run_id)``.
    """
    for value in candidates:
        if value:
            return f"{prefix}-{value}"
    raise ValueError(f"No scoping value for concurrency group '{prefix}'")


def cancel_in_progress_for(trigger_event: str, events: list[str]) -> bool:
    """Whether a run triggered by trigger_event preempts the group holder."""
    return trigger_event in events


class ConcurrencyGroupManager:
    def __init__(self):
        self._groups: dict[str, ConcurrencyGroup] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _serialized(self, group_key: str):
        lock = self._locks.setdefault(group_key, asyncio.Lock())
        self._lock_users[group_key] = self._lock_users.get(group_key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[group_key] -= 1
            if not self._lock_users[group_key]:
                del self._lock_users[group_key]
                if group_key not in self._groups:
                    self._locks.pop(group_key, None)

    async def admit(
        self, group_key: str, cancel_in_progress: bool, holder: GroupHolder
    ) -> AdmissionDecision:
        superseded: list[GroupHolder] = []
        async with self._serialized(group_key):
            group = self._groups.setdefault(group_key, ConcurrencyGroup(group_key))

            if group.active is None:
                group.active = holder
                logger.info("Group %s: %s admitted", group_key, holder.holder_id)
                return AdmissionDecision(AdmissionOutcome.ADMITTED, group_key)

            if not cancel_in_progress:
                promoted = asyncio.get_running_loop().create_future()
                group.queue.append((holder, promoted))
                logger.info(
                    "Group %s: %s queued behind %s (position %d)",
                    group_key, holder.holder_id, group.active.holder_id, len(group.queue),
                )
                return AdmissionDecision(
                    AdmissionOutcome.QUEUED, group_key,
                    position=len(group.queue), _promoted=promoted,
                )

            superseded.append(group.active)
            while group.queue:
                queued, promoted = group.queue.popleft()
                if not promoted.done():
                    promoted.set_result(False)
                superseded.append(queued)
            group.active = holder

        reason = f"superseded by {holder.holder_id}"
        for old in superseded:
            logger.warning(
                "ALERT [preempted] group %s: cancelling %s (%s)",
                group_key, old.holder_id, reason,
            )
            await old.preempt(group_key, reason)
        return AdmissionDecision(
            AdmissionOutcome.PREEMPTED, group_key,
            preempted=[h.holder_id for h in superseded],
        )

    async def release(self, group_key: str, holder: GroupHolder) -> None:
        """Drop holder from the group and promote the next queued holder."""
        async with self._serialized(group_key):
            group = self._groups.get(group_key)
            if group is None:
                return

            if group.active is holder:
                group.active = None
                while group.queue:
                    nxt, promoted = group.queue.popleft()
                    if promoted.done():
                        continue
                    group.active = nxt
                    promoted.set_result(True)
                    logger.info("Group %s: %s promoted", group_key, nxt.holder_id)
                    break
            else:
                kept = deque()
                for queued, promoted in group.queue:
                    if queued is holder:
                        if not promoted.done():
                            promoted.set_result(False)
                    else:
                        kept.append((queued, promoted))
                group.queue = kept

            if group.active is None and not group.queue:
                del self._groups[group_key]

    def active_holder(self, group_key: str) -> str | None:
        group = self._groups.get(group_key)
        if group is None or group.active is None:
            return None
        return group.active.holder_id

    def snapshot(self) -> dict[str, dict]:
        return {
            key: {
                "active": group.active.holder_id if group.active else None,
                "queued": [h.holder_id for h, _ in group.queue],
            }
            for key, group in sorted(self._groups.items())
        }

    def __len__(self) -> int:
        return len(self._groups)
