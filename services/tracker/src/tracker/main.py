from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import logging
import os
import tempfile
import threading
import time
import uuid
from contextlib import asynccontextmanager

from common.utils import now_utc_iso
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from tracker.filters import classify_user_agent
from tracker.hooks import HookDispatcher
from tracker.job import RecomputationJob
from tracker.models import (
    ChangedFileRecord,
    EditHookRequest,
    FavoriteHookRequest,
    FileEvent,
    HookResponse,
    MetricsSnapshot,
    ProcessedFileRecord,
    RecomputeHistoryResponse,
    RecomputeRun,
    UserProfile,
)
from tracker.nodes import FilesystemNodeResolver, NodeResolver
from tracker.profiles import KeywordProfileBuilder
from tracker.readers import ReaderRegistry
from tracker.repository import LedgerRepository, StorageError
from tracker.scheduler import DEFAULT_INTERVAL_SECONDS, RecomputeScheduler

DEFAULT_STATE_DIR = os.path.join(tempfile.gettempdir(), "recommendation-assistant")
DEFAULT_DB_PATH = os.path.join(DEFAULT_STATE_DIR, "tracker.sqlite3")
DEFAULT_DATA_ROOT = os.path.join(DEFAULT_STATE_DIR, "data")

SCOPE_HOOKS = "hooks"
SCOPE_RECOMPUTE = "recompute"
LOGGER = logging.getLogger("assistant.tracker")


def parse_api_tokens(raw: str) -> dict[str, set[str]]:
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError("TRACKER_API_TOKENS_JSON must be a JSON object.")

    token_map: dict[str, set[str]] = {}
    for token, scopes_value in parsed.items():
        if not isinstance(token, str) or not token.strip():
            raise ValueError("Token keys must be non-empty strings.")
        if isinstance(scopes_value, str):
            scopes = {scopes_value.strip()} if scopes_value.strip() else set()
        elif isinstance(scopes_value, list):
            scopes = {
                str(scope).strip()
                for scope in scopes_value
                if isinstance(scope, str) and scope.strip()
            }
        else:
            raise ValueError("Token scopes must be a string or list of strings.")
        token_map[token] = scopes
    return token_map


def parse_bool(raw: str | None, default: bool) -> bool:
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def build_auth_subject(token: str) -> str:
    token_digest = hashlib.sha1(token.encode()).hexdigest()[:12]
    return f"token:{token_digest}"


class MetricsStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._totals = {"requests": 0, "errors": 0, "hooks_handled": 0, "hooks_ignored": 0}
        self._endpoints: dict[str, dict[str, float | int]] = {}

    def observe(self, *, method: str, path: str, status_code: int, duration_ms: float) -> None:
        key = f"{method} {path}"
        bucket = f"{status_code // 100}xx"
        with self._lock:
            self._totals["requests"] += 1
            if status_code >= 400:
                self._totals["errors"] += 1
            endpoint = self._endpoints.setdefault(
                key,
                {
                    "count": 0,
                    "2xx": 0,
                    "4xx": 0,
                    "5xx": 0,
                    "latency_ms_sum": 0.0,
                    "latency_ms_avg": 0.0,
                },
            )
            endpoint["count"] = int(endpoint["count"]) + 1
            if bucket in ("2xx", "4xx", "5xx"):
                endpoint[bucket] = int(endpoint[bucket]) + 1
            endpoint["latency_ms_sum"] = float(endpoint["latency_ms_sum"]) + duration_ms
            endpoint["latency_ms_avg"] = (
                float(endpoint["latency_ms_sum"]) / int(endpoint["count"])
            )

    def observe_hook(self, handled: bool) -> None:
        with self._lock:
            self._totals["hooks_handled" if handled else "hooks_ignored"] += 1

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                generated_at=now_utc_iso(),
                totals=dict(self._totals),
                endpoints={key: dict(value) for key, value in self._endpoints.items()},
            )


def create_app(
    *,
    database_path: str | None = None,
    data_root: str | None = None,
    resolver: NodeResolver | None = None,
    readers: ReaderRegistry | None = None,
    recompute_interval_seconds: float | None = None,
    scheduler_enabled: bool | None = None,
    api_key: str | None = None,
    api_tokens: dict[str, list[str] | set[str]] | None = None,
) -> FastAPI:
    resolved_path = database_path or os.getenv("TRACKER_DB_PATH", DEFAULT_DB_PATH)
    resolved_data_root = data_root or os.getenv("TRACKER_DATA_ROOT", DEFAULT_DATA_ROOT)
    resolved_interval = recompute_interval_seconds or float(
        os.getenv("TRACKER_RECOMPUTE_INTERVAL_SECONDS", str(DEFAULT_INTERVAL_SECONDS))
    )
    resolved_scheduler_enabled = (
        scheduler_enabled
        if scheduler_enabled is not None
        else parse_bool(os.getenv("TRACKER_SCHEDULER_ENABLED"), True)
    )
    resolved_api_key = (api_key or os.getenv("TRACKER_API_KEY", "")).strip() or None
    resolved_token_map: dict[str, set[str]] = {}
    if api_tokens is not None:
        resolved_token_map = {
            token: {str(scope).strip() for scope in scopes if str(scope).strip()}
            for token, scopes in api_tokens.items()
            if token.strip()
        }
    else:
        raw_tokens = os.getenv("TRACKER_API_TOKENS_JSON", "").strip()
        if raw_tokens:
            resolved_token_map = parse_api_tokens(raw_tokens)

    if resolved_api_key:
        resolved_token_map.setdefault(resolved_api_key, set()).add("*")

    repository = LedgerRepository(database_path=resolved_path)
    resolved_resolver = resolver or FilesystemNodeResolver(resolved_data_root)
    dispatcher = HookDispatcher(repository, resolved_resolver)
    job = RecomputationJob(
        repository,
        resolved_resolver,
        readers or ReaderRegistry.default(),
        KeywordProfileBuilder(repository),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await run_in_threadpool(repository.connect)
        scheduler = RecomputeScheduler(job, interval_seconds=resolved_interval)
        app.state.repository = repository
        app.state.dispatcher = dispatcher
        app.state.scheduler = scheduler
        app.state.auth_token_scopes = resolved_token_map
        app.state.metrics = MetricsStore()
        scheduler_task: asyncio.Task | None = None
        if resolved_scheduler_enabled:
            scheduler_task = asyncio.create_task(scheduler.run())
        try:
            yield
        finally:
            scheduler.stop()
            if scheduler_task is not None:
                with contextlib.suppress(asyncio.CancelledError):
                    await scheduler_task
            await run_in_threadpool(repository.close)

    app = FastAPI(title="RecommendationAssistant Tracker", version="0.3.0", lifespan=lifespan)

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
        LOGGER.error(
            json.dumps(
                {
                    "event": "storage_error",
                    "request_id": getattr(request.state, "request_id", None),
                    "path": request.url.path,
                    "error": str(exc),
                }
            )
        )
        return JSONResponse(status_code=503, content={"detail": "Ledger unavailable"})

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - started) * 1000
            request.app.state.metrics.observe(
                method=request.method,
                path=request.url.path,
                status_code=500,
                duration_ms=duration_ms,
            )
            LOGGER.exception(
                json.dumps(
                    {
                        "event": "request_complete",
                        "request_id": request_id,
                        "method": request.method,
                        "path": request.url.path,
                        "status_code": 500,
                        "duration_ms": round(duration_ms, 3),
                        "error": str(exc),
                    }
                )
            )
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error", "request_id": request_id},
                headers={"x-request-id": request_id},
            )

        duration_ms = (time.perf_counter() - started) * 1000
        request.app.state.metrics.observe(
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
        response.headers["x-request-id"] = request_id
        LOGGER.info(
            json.dumps(
                {
                    "event": "request_complete",
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round(duration_ms, 3),
                    "source_ip": request.client.host if request.client else None,
                }
            )
        )
        return response

    def require_scope(request: Request, *, scope: str) -> str | None:
        token_map: dict[str, set[str]] = request.app.state.auth_token_scopes
        if not token_map:
            return None
        provided = request.headers.get("x-api-key", "")
        if not provided:
            raise HTTPException(status_code=401, detail="Unauthorized")
        scopes = token_map.get(provided)
        if scopes is None:
            raise HTTPException(status_code=401, detail="Unauthorized")
        if "*" not in scopes and scope not in scopes:
            raise HTTPException(status_code=403, detail="Forbidden")
        return build_auth_subject(provided)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "tracker"}

    @app.get("/metrics", response_model=MetricsSnapshot)
    async def metrics(request: Request) -> MetricsSnapshot:
        return request.app.state.metrics.snapshot()

    @app.post("/hooks/edit", response_model=HookResponse)
    async def edit_hook(payload: EditHookRequest, request: Request) -> HookResponse:
        require_scope(request, scope=SCOPE_HOOKS)
        user_agent = request.headers.get("user-agent")
        event = FileEvent(
            path=payload.path,
            user_id=payload.user_id,
            client=payload.client or classify_user_agent(user_agent),
            user_agent=user_agent,
        )
        handled = await run_in_threadpool(request.app.state.dispatcher.on_edit, event)
        request.app.state.metrics.observe_hook(handled)
        return HookResponse(handled=handled)

    @app.post("/hooks/favorite", response_model=HookResponse)
    async def favorite_hook(payload: FavoriteHookRequest, request: Request) -> HookResponse:
        require_scope(request, scope=SCOPE_HOOKS)
        handled = await run_in_threadpool(
            request.app.state.dispatcher.on_favorite,
            payload.user_id,
            payload.file_id,
            payload.caller,
        )
        request.app.state.metrics.observe_hook(handled)
        return HookResponse(handled=handled)

    @app.get("/ledger/changed", response_model=list[ChangedFileRecord])
    async def list_changed(
        request: Request,
        user_id: str | None = None,
        limit: int = Query(default=100, ge=1, le=1000),
    ) -> list[ChangedFileRecord]:
        return await run_in_threadpool(
            request.app.state.repository.list_changed,
            user_id=user_id,
            limit=limit,
        )

    @app.get("/ledger/processed", response_model=list[ProcessedFileRecord])
    async def list_processed(
        request: Request,
        domain: str | None = None,
    ) -> list[ProcessedFileRecord]:
        return await run_in_threadpool(request.app.state.repository.list_processed, domain)

    @app.post("/recompute", response_model=RecomputeRun)
    async def recompute(request: Request) -> RecomputeRun:
        require_scope(request, scope=SCOPE_RECOMPUTE)
        return await request.app.state.scheduler.run_once("manual")

    @app.post("/recompute/scheduled", response_model=RecomputeRun)
    async def scheduled_recompute(request: Request) -> RecomputeRun:
        require_scope(request, scope=SCOPE_RECOMPUTE)
        return await request.app.state.scheduler.run_once("scheduled")

    @app.get("/recompute/history", response_model=RecomputeHistoryResponse)
    async def recompute_history(
        request: Request,
        limit: int = Query(default=25, ge=1, le=200),
    ) -> RecomputeHistoryResponse:
        runs = await run_in_threadpool(request.app.state.repository.list_recompute_runs, limit)
        return RecomputeHistoryResponse(runs=runs)

    @app.get("/profiles/{user_id}", response_model=UserProfile)
    async def get_profile(user_id: str, request: Request) -> UserProfile:
        profile = await run_in_threadpool(request.app.state.repository.get_user_profile, user_id)
        if profile is None:
            raise HTTPException(status_code=404, detail="Unknown user_id")
        return profile

    return app


app = create_app()
