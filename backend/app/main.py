import time
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import settings
from .db import close_pools, get_admin_conn
from .logs import json_log
from .routers.sync import router as sync_router

SERVICE_NAME = "kasse-sync"

app = FastAPI(title="Kasse Sync API", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)


def _request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _is_dev() -> bool:
    return settings.env in {"local", "dev"}


@app.exception_handler(RequestValidationError)
def _validation_failed(_req: Request, exc: RequestValidationError):
    content = {"detail": "validation failed"}
    if _is_dev():
        content["errors"] = exc.errors()
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(Exception)
def _unhandled(req: Request, exc: Exception):
    rid = _request_id(req)
    json_log("error", "http.request.unhandled", request_id=rid, method=req.method, path=req.url.path, error=str(exc))
    content = {"detail": "internal error", "request_id": rid}
    if _is_dev():
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)


@app.middleware("http")
async def _access_log(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.monotonic()
    fields = {
        "request_id": rid,
        "method": request.method,
        "path": request.url.path,
        "client_ip": request.client.host if request.client else None,
    }

    try:
        response = await call_next(request)
    except Exception as exc:
        json_log("error", "http.request.error", duration_ms=int((time.monotonic() - started) * 1000), error=str(exc), **fields)
        raise

    response.headers["X-Request-Id"] = rid
    response.headers["X-Content-Type-Options"] = "nosniff"
    # Probes hit /health* every few seconds; keep them out of the log.
    if not fields["path"].startswith("/health"):
        json_log(
            "info",
            "http.request",
            status_code=response.status_code,
            duration_ms=int((time.monotonic() - started) * 1000),
            **fields,
        )
    return response


# /sync answers CORS itself (allow-list or wildcard), so there is no CORSMiddleware.
app.include_router(sync_router)


@app.on_event("shutdown")
def _shutdown():
    close_pools()


def _db_error() -> Optional[str]:
    try:
        with get_admin_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                cur.fetchone()
    except Exception as exc:
        return str(exc)
    return None


def _db_probe(req: Request, ok_status: str, **extra):
    err = _db_error()
    body = {
        "status": ok_status if err is None else "degraded",
        "env": settings.env,
        "db": "ok" if err is None else "down",
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "request_id": _request_id(req),
        **extra,
    }
    if err is None:
        return body
    if _is_dev():
        body["error"] = err
    return JSONResponse(status_code=503, content=body)


@app.get("/health")
def health(req: Request):
    return _db_probe(req, "ok", started_at=STARTED_AT_UTC.isoformat())


@app.get("/health/live")
def health_live(req: Request):
    return {"status": "ok", "env": settings.env, "service": SERVICE_NAME, "request_id": _request_id(req)}


@app.get("/health/ready")
def health_ready(req: Request):
    return _db_probe(req, "ready")


@app.get("/meta")
def meta():
    return {
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "env": settings.env,
        "uptime_seconds": int((datetime.now(timezone.utc) - STARTED_AT_UTC).total_seconds()),
        "started_at": STARTED_AT_UTC.isoformat(),
    }
