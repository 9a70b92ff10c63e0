from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Mapping
from typing import Any

from common.utils import log_event

from notifier.dispatch import NotificationDispatcher
from notifier.hooks import AudienceResolver
from notifier.models import DispatchSummary, JobEvent

LOGGER = logging.getLogger("jobboard.notifier.watcher")

INSERT_ONLY_PIPELINE = [{"$match": {"operationType": "insert"}}]


async def supports_change_streams(client: Any) -> bool:
    """Change streams need a replica set member or a mongos router."""
    try:
        hello = await client.admin.command("hello")
    except Exception as exc:
        log_event(
            LOGGER,
            "watcher_topology_check_failed",
            level=logging.WARNING,
            error=str(exc),
        )
        return False
    return bool(hello.get("setName")) or hello.get("msg") == "isdbgrid"


class JobWatcher:
    """Notifies every account holding a token whenever a job document is inserted."""

    def __init__(
        self,
        client: Any,
        jobs: Any,
        registry: AudienceResolver,
        dispatcher: NotificationDispatcher,
    ) -> None:
        self.client = client
        self.jobs = jobs
        self.registry = registry
        self.dispatcher = dispatcher
        self.supported: bool | None = None
        self._stream: Any | None = None
        self._consumer: asyncio.Task[None] | None = None
        self._handlers: set[asyncio.Task[DispatchSummary | None]] = set()
        self._starting = False

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    @property
    def in_flight(self) -> int:
        return len(self._handlers)

    async def start(self) -> bool:
        if self.running or self._starting:
            return self.running
        self._starting = True
        try:
            self.supported = await supports_change_streams(self.client)
            if not self.supported:
                log_event(
                    LOGGER,
                    "watcher_unsupported",
                    level=logging.WARNING,
                    reason="Mongo topology does not support change streams",
                )
                return False

            try:
                stream = await self.jobs.watch(
                    INSERT_ONLY_PIPELINE, full_document="updateLookup"
                )
            except Exception as exc:
                log_event(
                    LOGGER,
                    "watcher_start_failed",
                    level=logging.WARNING,
                    exc_info=True,
                    error=str(exc),
                )
                return False

            self._stream = stream
            self._consumer = asyncio.create_task(self._consume(), name="job-watcher")
            log_event(LOGGER, "watcher_started", pipeline=INSERT_ONLY_PIPELINE)
            return True
        finally:
            self._starting = False

    async def _consume(self) -> None:
        stream = self._stream
        if stream is None:
            return
        try:
            async for change in stream:
                task = asyncio.create_task(self.handle_event(change))
                self._handlers.add(task)
                task.add_done_callback(self._handlers.discard)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log_event(
                LOGGER,
                "watcher_stream_error",
                level=logging.ERROR,
                exc_info=True,
                error=str(exc),
            )

    async def handle_event(self, change: Mapping[str, Any]) -> DispatchSummary | None:
        try:
            document = change.get("fullDocument") or {}
            job = JobEvent.from_document(document)
            audience = await self.registry.resolve_audience(None)
            return await self.dispatcher.dispatch(job, audience)
        except Exception as exc:
            self.dispatcher.stats.observe_handler_error()
            log_event(
                LOGGER,
                "event_handler_failed",
                level=logging.ERROR,
                exc_info=True,
                error=str(exc),
            )
            return None

    async def stop(self) -> None:
        """Stops picking up events; handlers already running are left to finish."""
        consumer = self._consumer
        stream = self._stream
        self._consumer = None
        self._stream = None

        if consumer is not None:
            consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await consumer
        if stream is not None:
            try:
                await stream.close()
            except Exception as exc:
                log_event(
                    LOGGER,
                    "watcher_close_failed",
                    level=logging.WARNING,
                    error=str(exc),
                )
        if consumer is not None or stream is not None:
            log_event(LOGGER, "watcher_stopped", in_flight=len(self._handlers))

    async def drain(self, timeout: float | None = None) -> None:
        if not self._handlers:
            return
        await asyncio.wait(set(self._handlers), timeout=timeout)
