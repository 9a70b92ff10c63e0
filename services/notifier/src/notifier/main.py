from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any

from common.utils import log_event
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from notifier.assignment import AssignmentStore, MongoAssignmentStore
from notifier.config import NotifierSettings
from notifier.delivery import PushDeliveryClient
from notifier.dispatch import NotificationDispatcher
from notifier.hooks import JobCreatedHook
from notifier.models import (
    DeliveryStatsSnapshot,
    JobCreatedResponse,
    JobCreateRequest,
    TokenRegistrationRequest,
)
from notifier.registry import MongoTokenRegistry
from notifier.stats import DeliveryStats
from notifier.store import (
    ASSIGNMENTS_COLLECTION,
    JOBS_COLLECTION,
    USERS_COLLECTION,
    VENDORS_COLLECTION,
    DuplicateJobError,
    MongoJobStore,
    create_mongo_client,
    get_database,
)
from notifier.watcher import JobWatcher

LOGGER = logging.getLogger("jobboard.notifier.api")


class WatcherStatus(BaseModel):
    enabled: bool
    running: bool
    supported: bool | None = None
    in_flight: int = 0


class TokenRegistrationResponse(BaseModel):
    registered: bool


class TokenRevocationResponse(BaseModel):
    removed: bool


def create_app(
    settings: NotifierSettings | None = None,
    *,
    job_store: Any | None = None,
    registry: Any | None = None,
    assignments: AssignmentStore | None = None,
    delivery_client: Any | None = None,
    mongo_client: Any | None = None,
) -> FastAPI:
    resolved = settings or NotifierSettings.from_env()
    needs_mongo = (
        job_store is None
        or registry is None
        or (resolved.auto_assign and assignments is None)
        or resolved.watcher_enabled
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = mongo_client
        owns_client = False
        if client is None and needs_mongo:
            client = create_mongo_client(resolved)
            owns_client = True
        database = get_database(client, resolved) if client is not None else None

        store = job_store
        if store is None:
            store = MongoJobStore(database[JOBS_COLLECTION])
            await store.ensure_indexes()
        token_registry = registry or MongoTokenRegistry(
            database[USERS_COLLECTION], database[VENDORS_COLLECTION]
        )
        assignment_store = assignments
        if assignment_store is None and resolved.auto_assign and database is not None:
            assignment_store = MongoAssignmentStore(
                database[ASSIGNMENTS_COLLECTION], database[JOBS_COLLECTION]
            )

        push_client = delivery_client or PushDeliveryClient.from_settings(resolved)
        push_client.initialize()

        stats = DeliveryStats()
        dispatcher = NotificationDispatcher(
            push_client,
            batch_size=resolved.batch_size,
            token_filter=resolved.token_filter,
            prune_invalid=resolved.prune_invalid_tokens,
            pruner=token_registry if resolved.prune_invalid_tokens else None,
            stats=stats,
        )
        hook = None
        if resolved.hook_enabled:
            hook = JobCreatedHook(
                token_registry,
                dispatcher,
                assignments=assignment_store,
                vendor_matching=resolved.vendor_matching,
                auto_assign=resolved.auto_assign,
            )
        watcher = None
        if resolved.watcher_enabled and database is not None:
            watcher = JobWatcher(client, database[JOBS_COLLECTION], token_registry, dispatcher)

        app.state.settings = resolved
        app.state.job_store = store
        app.state.registry = token_registry
        app.state.dispatcher = dispatcher
        app.state.stats = stats
        app.state.hook = hook
        app.state.watcher = watcher
        try:
            if watcher is not None:
                await watcher.start()
            yield
        finally:
            if watcher is not None:
                await watcher.stop()
                await watcher.drain(timeout=resolved.send_timeout_seconds)
            if hook is not None:
                await hook.drain(timeout=resolved.send_timeout_seconds)
            if owns_client:
                await client.close()

    app = FastAPI(title="JobBoard Notifier", version="0.3.0", lifespan=lifespan)

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - started) * 1000
            log_event(
                LOGGER,
                "request_complete",
                level=logging.ERROR,
                exc_info=True,
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                status_code=500,
                duration_ms=round(duration_ms, 3),
                error=str(exc),
            )
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error", "request_id": request_id},
                headers={"x-request-id": request_id},
            )

        duration_ms = (time.perf_counter() - started) * 1000
        response.headers["x-request-id"] = request_id
        log_event(
            LOGGER,
            "request_complete",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 3),
        )
        return response

    def require_api_key(request: Request) -> None:
        expected = request.app.state.settings.api_key
        if not expected:
            return
        if request.headers.get("x-api-key", "") != expected:
            raise HTTPException(status_code=401, detail="Unauthorized")

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "notifier"}

    @app.get("/metrics", response_model=DeliveryStatsSnapshot)
    async def metrics(request: Request) -> DeliveryStatsSnapshot:
        return request.app.state.stats.snapshot()

    @app.get("/watcher", response_model=WatcherStatus)
    async def watcher_status(request: Request) -> WatcherStatus:
        watcher: JobWatcher | None = request.app.state.watcher
        if watcher is None:
            return WatcherStatus(enabled=False, running=False)
        return WatcherStatus(
            enabled=True,
            running=watcher.running,
            supported=watcher.supported,
            in_flight=watcher.in_flight,
        )

    @app.post(
        "/jobs",
        response_model=JobCreatedResponse,
        status_code=201,
        dependencies=[Depends(require_api_key)],
    )
    async def create_job(payload: JobCreateRequest, request: Request) -> JobCreatedResponse:
        try:
            job = await request.app.state.job_store.create(payload)
        except DuplicateJobError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

        hook: JobCreatedHook | None = request.app.state.hook
        if hook is not None:
            # Detached from the response; delivery outcome never reaches the caller.
            hook.schedule(job)
        return JobCreatedResponse(
            id=job.id,
            so_number=job.so_number or payload.so_number,
            status="available",
            notification_scheduled=hook is not None,
        )

    @app.post(
        "/accounts/{account_id}/tokens",
        response_model=TokenRegistrationResponse,
        dependencies=[Depends(require_api_key)],
    )
    async def register_token(
        account_id: str,
        payload: TokenRegistrationRequest,
        request: Request,
    ) -> TokenRegistrationResponse:
        try:
            registered = await request.app.state.registry.add_token(account_id, payload.token)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if not registered:
            raise HTTPException(status_code=404, detail="Account not found")
        return TokenRegistrationResponse(registered=True)

    @app.post(
        "/accounts/{account_id}/tokens/revoke",
        response_model=TokenRevocationResponse,
        dependencies=[Depends(require_api_key)],
    )
    async def revoke_token(
        account_id: str,
        payload: TokenRegistrationRequest,
        request: Request,
    ) -> TokenRevocationResponse:
        try:
            removed = await request.app.state.registry.remove_token(account_id, payload.token)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if not removed:
            raise HTTPException(status_code=404, detail="Account not found")
        return TokenRevocationResponse(removed=True)

    return app


app = create_app()
