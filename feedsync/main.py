from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Mapping

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from feedsync.config import FEED_TYPES, EngineSettings
from feedsync.errors import ApiError
from feedsync.feeds import create_feed_clients_from_env
from feedsync.orchestrator import SyncOrchestrator
from feedsync.publishers import create_publisher_from_env
from feedsync.schemas import (
    IncidentLinkRequest,
    IncidentSubmissionRequest,
    ManualIncidentUpdateRequest,
    ModerationRequest,
    RepublishRequest,
    SyncRequest,
    TenantConfigRequest,
    error_envelope,
    success_envelope,
)
from feedsync.store import store
from feedsync.sync_state import SyncStateRegistry, create_sync_state_backend_from_env

logger = logging.getLogger(__name__)


def create_orchestrator_from_env(environ: Mapping[str, str] | None = None) -> SyncOrchestrator:
    env = os.environ if environ is None else environ
    return SyncOrchestrator(
        store=store,
        feed_clients=create_feed_clients_from_env(env),
        publisher=create_publisher_from_env(env),
        sync_states=SyncStateRegistry(create_sync_state_backend_from_env(env)),
        settings=EngineSettings.from_env(env),
    )


orchestrator = create_orchestrator_from_env()


def _trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def _request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex[:12]}"


def _error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
    details: dict[str, object] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=_trace_id_from_request(request),
            details=details,
        ),
    )


def _scoped_tenant(request: Request, tenant_id: str) -> str:
    header_tenant = request.headers.get("x-tenant-id")
    if header_tenant and header_tenant != tenant_id:
        raise ApiError(
            code="TENANT_SCOPE_VIOLATION",
            message="tenant mismatch",
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )
    return tenant_id


def _check_feed_type(feed_type: str) -> str:
    if feed_type not in FEED_TYPES:
        raise ApiError(
            code="FEED_TYPE_UNSUPPORTED",
            message=f"unsupported feed type: {feed_type}",
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    return feed_type


def create_app() -> FastAPI:
    app = FastAPI(title="Feed Sync Engine API", version="0.1.0")
    cors_origins = os.environ.get("CORS_ALLOW_ORIGINS", "")
    allow_origins = [x.strip() for x in cors_origins.split(",") if x.strip()]
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        response = await call_next(request)
        response.headers["x-trace-id"] = _trace_id_from_request(request)
        response.headers["x-request-id"] = _request_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.code == "TENANT_SCOPE_VIOLATION":
            logger.warning("api_tenant_scope_violation path=%s", request.url.path)
        return _error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
            details=exc.details,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return _error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return _error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return _error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, _trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, _trace_id_from_request(request))

    @app.post("/api/v1/tenants/{tenant_id}/feeds/{feed_type}/sync")
    def trigger_sync(tenant_id: str, feed_type: str, request: Request, payload: SyncRequest | None = None):
        tenant_id = _scoped_tenant(request, tenant_id)
        result = orchestrator.run_sync(
            tenant_id=tenant_id,
            feed_type=_check_feed_type(feed_type),
            force=bool(payload and payload.force),
        )
        message = "rate_limited" if result["skipped_rate_limited"] else "ok"
        return success_envelope(result, _trace_id_from_request(request), message=message)

    @app.get("/api/v1/tenants/{tenant_id}/feeds/{feed_type}/active")
    def list_active_records(tenant_id: str, feed_type: str, request: Request):
        tenant_id = _scoped_tenant(request, tenant_id)
        items = orchestrator.get_active_records(tenant_id=tenant_id, feed_type=_check_feed_type(feed_type))
        return success_envelope({"items": items, "total": len(items)}, _trace_id_from_request(request))

    @app.get("/api/v1/tenants/{tenant_id}/feeds/{feed_type}/sync-state")
    def get_sync_state(tenant_id: str, feed_type: str, request: Request):
        tenant_id = _scoped_tenant(request, tenant_id)
        state = orchestrator.sync_states.get(tenant_id=tenant_id, feed_type=_check_feed_type(feed_type))
        return success_envelope(state.as_dict(), _trace_id_from_request(request))

    @app.post("/api/v1/tenants/{tenant_id}/feeds/{feed_type}/records/{record_id}/republish")
    def republish_record(
        tenant_id: str,
        feed_type: str,
        record_id: str,
        request: Request,
        payload: RepublishRequest | None = None,
    ):
        tenant_id = _scoped_tenant(request, tenant_id)
        data = orchestrator.republish(
            tenant_id=tenant_id,
            feed_type=_check_feed_type(feed_type),
            record_id=record_id,
            reset_attempts_requested=bool(payload and payload.reset_attempts),
        )
        return success_envelope(data, _trace_id_from_request(request))

    @app.post("/api/v1/tenants/{tenant_id}/incidents/submissions")
    def submit_incident(tenant_id: str, payload: IncidentSubmissionRequest, request: Request):
        tenant_id = _scoped_tenant(request, tenant_id)
        data = orchestrator.submit_incident(tenant_id=tenant_id, data=payload.submission_data())
        status_code = 201 if data["created"] else 200
        return JSONResponse(status_code=status_code, content=success_envelope(data, _trace_id_from_request(request)))

    @app.post("/api/v1/tenants/{tenant_id}/incidents/manual")
    def create_manual_incident(tenant_id: str, payload: IncidentSubmissionRequest, request: Request):
        tenant_id = _scoped_tenant(request, tenant_id)
        data = orchestrator.submit_incident(tenant_id=tenant_id, data=payload.submission_data(), source="manual")
        status_code = 201 if data["created"] else 200
        return JSONResponse(status_code=status_code, content=success_envelope(data, _trace_id_from_request(request)))

    @app.patch("/api/v1/tenants/{tenant_id}/incidents/manual/{record_id}")
    def update_manual_incident(tenant_id: str, record_id: str, payload: ManualIncidentUpdateRequest, request: Request):
        tenant_id = _scoped_tenant(request, tenant_id)
        data = orchestrator.update_manual_incident(
            tenant_id=tenant_id,
            record_id=record_id,
            data=payload.model_dump(mode="json", exclude_none=True),
        )
        return success_envelope(data, _trace_id_from_request(request))

    @app.post("/api/v1/tenants/{tenant_id}/incidents/{record_id}/moderation")
    def moderate_incident(tenant_id: str, record_id: str, payload: ModerationRequest, request: Request):
        tenant_id = _scoped_tenant(request, tenant_id)
        data = orchestrator.moderate_incident(
            tenant_id=tenant_id,
            record_id=record_id,
            decision=payload.decision,
            note=payload.note,
        )
        return success_envelope(data, _trace_id_from_request(request))

    @app.post("/api/v1/tenants/{tenant_id}/incidents/groups")
    def link_incidents(tenant_id: str, payload: IncidentLinkRequest, request: Request):
        tenant_id = _scoped_tenant(request, tenant_id)
        data = orchestrator.link_incidents(tenant_id=tenant_id, record_ids=payload.record_ids)
        return JSONResponse(status_code=201, content=success_envelope(data, _trace_id_from_request(request)))

    @app.get("/api/v1/tenants/{tenant_id}/config")
    def get_tenant_config(tenant_id: str, request: Request):
        tenant_id = _scoped_tenant(request, tenant_id)
        config = store.tenant_config_or_default(tenant_id=tenant_id)
        return success_envelope(config.as_dict(), _trace_id_from_request(request))

    @app.put("/api/v1/tenants/{tenant_id}/config")
    def put_tenant_config(tenant_id: str, payload: TenantConfigRequest, request: Request):
        tenant_id = _scoped_tenant(request, tenant_id)
        data = orchestrator.update_tenant_config(
            tenant_id=tenant_id,
            data=payload.config_data(),
            confirm=payload.confirm,
        )
        return success_envelope(data, _trace_id_from_request(request))

    @app.post("/api/v1/tenants/{tenant_id}/maintenance/run")
    def run_maintenance(tenant_id: str, request: Request):
        tenant_id = _scoped_tenant(request, tenant_id)
        data = orchestrator.run_maintenance(tenant_id=tenant_id)
        return success_envelope(data, _trace_id_from_request(request))

    @app.get("/api/v1/tenants/{tenant_id}/audit-logs")
    def list_audit_logs(
        tenant_id: str,
        request: Request,
        action: str | None = Query(default=None),
        limit: int = Query(default=100, ge=1, le=1000),
    ):
        tenant_id = _scoped_tenant(request, tenant_id)
        items = store.list_audit_logs(tenant_id=tenant_id, action=action, limit=limit)
        return success_envelope({"items": items, "total": len(items)}, _trace_id_from_request(request))

    @app.get("/api/v1/tenants/{tenant_id}/audit-logs/verify")
    def verify_audit_logs(tenant_id: str, request: Request):
        tenant_id = _scoped_tenant(request, tenant_id)
        data = store.verify_audit_integrity(tenant_id=tenant_id)
        return success_envelope(data, _trace_id_from_request(request))

    return app


app = create_app()
