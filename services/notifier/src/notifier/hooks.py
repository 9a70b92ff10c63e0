from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from common.utils import log_event

from notifier.assignment import AssignmentStore, assign_on_unambiguous_match
from notifier.dispatch import NotificationDispatcher
from notifier.models import Audience, DispatchSummary, JobEvent
from notifier.registry import VendorMatch

LOGGER = logging.getLogger("jobboard.notifier.hooks")


class AudienceResolver(Protocol):
    async def resolve_audience(self, match: VendorMatch | None = None) -> Audience: ...


class JobCreatedHook:
    """Runs after a job write succeeds; nothing it does can fail the write."""

    def __init__(
        self,
        registry: AudienceResolver,
        dispatcher: NotificationDispatcher,
        *,
        assignments: AssignmentStore | None = None,
        vendor_matching: bool = True,
        auto_assign: bool = True,
    ) -> None:
        self.registry = registry
        self.dispatcher = dispatcher
        self.assignments = assignments
        self.vendor_matching = vendor_matching
        self.auto_assign = auto_assign
        self._tasks: set[asyncio.Task[DispatchSummary | None]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def _apply_assignment_rule(self, job: JobEvent, audience: Audience) -> None:
        if not self.auto_assign or self.assignments is None:
            return
        try:
            await assign_on_unambiguous_match(job, audience, self.assignments)
        except Exception:
            log_event(
                LOGGER,
                "auto_assign_failed",
                level=logging.ERROR,
                exc_info=True,
                job_id=job.id,
            )

    async def run(self, job: JobEvent) -> DispatchSummary | None:
        try:
            match = VendorMatch.for_job(job) if self.vendor_matching else None
            audience = await self.registry.resolve_audience(match)
            await self._apply_assignment_rule(job, audience)
            return await self.dispatcher.dispatch(job, audience)
        except Exception as exc:
            self.dispatcher.stats.observe_handler_error()
            log_event(
                LOGGER,
                "hook_failed",
                level=logging.ERROR,
                exc_info=True,
                job_id=job.id,
                so_number=job.so_number,
                error=str(exc),
            )
            return None

    def schedule(self, job: JobEvent) -> asyncio.Task[DispatchSummary | None]:
        task = asyncio.create_task(self.run(job), name=f"job-created-hook:{job.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self, timeout: float | None = None) -> None:
        if not self._tasks:
            return
        await asyncio.wait(set(self._tasks), timeout=timeout)
