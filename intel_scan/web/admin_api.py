from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBasic, HTTPBasicCredentials, HTTPBearer
from pydantic import BaseModel, Field

from intel_scan.rules.models import ScanConfig
from intel_scan.services.email_sender import SmtpEmailSender
from intel_scan.services.report_store import ReportStore
from intel_scan.services.run_lock import DEFAULT_LOCK_PATH, RunLockError, scan_lock
from intel_scan.workers.daily_scan import handle_event


logger = logging.getLogger(__name__)

ScanRunner = Callable[[dict[str, Any], bool], dict[str, Any]]


class ReportReader(Protocol):
    def get(self, report_date: str) -> dict[str, Any] | None: ...

    def list_dates(self, limit: int = 100) -> list[str]: ...


class ScanRequest(BaseModel):
    lookback_hours: int | None = Field(default=None, ge=1, le=24 * 365)
    send: bool = False


basic = HTTPBasic(auto_error=False)
bearer = HTTPBearer(auto_error=False)


def _is_loopback(host: str | None) -> bool:
    return host in {"127.0.0.1", "::1", "localhost"}


def _auth_guard(
    request: Request,
    basic_cred: HTTPBasicCredentials | None = Depends(basic),
    bearer_cred: HTTPAuthorizationCredentials | None = Depends(bearer),
) -> dict[str, str]:
    admin_token = os.environ.get("ADMIN_TOKEN", "").strip()
    admin_user = os.environ.get("ADMIN_USER", "").strip()
    admin_pass = os.environ.get("ADMIN_PASS", "").strip()

    if admin_token:
        if bearer_cred and bearer_cred.scheme.lower() == "bearer" and bearer_cred.credentials == admin_token:
            return {"auth": "bearer", "principal": "token-user"}
        raise HTTPException(
            status_code=401,
            detail="unauthorized: bearer token required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if admin_user and admin_pass:
        if basic_cred and basic_cred.username == admin_user and basic_cred.password == admin_pass:
            return {"auth": "basic", "principal": basic_cred.username}
        raise HTTPException(
            status_code=401,
            detail="unauthorized: basic auth required",
            headers={"WWW-Authenticate": 'Basic realm="ScanAdminAPI"'},
        )

    host = request.client.host if request.client else None
    if _is_loopback(host):
        return {"auth": "local", "principal": "localhost"}
    raise HTTPException(
        status_code=401,
        detail="unauthorized: configure ADMIN_TOKEN or ADMIN_USER/ADMIN_PASS",
        headers={"WWW-Authenticate": 'Basic realm="ScanAdminAPI"'},
    )


def default_runner(config: ScanConfig, store: ReportStore) -> ScanRunner:
    def _run(event: dict[str, Any], send: bool) -> dict[str, Any]:
        with scan_lock(DEFAULT_LOCK_PATH, trigger="admin-api"):
            return handle_event(
                event,
                config,
                email_sender=SmtpEmailSender.from_env() if send else None,
                report_store=store,
                send=send,
            )

    return _run


def create_app(config: ScanConfig, *, store: ReportReader, runner: ScanRunner) -> FastAPI:
    app = FastAPI(title="Daily Scan Admin API", version="1.0.0")

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(_: Request, exc: HTTPException) -> JSONResponse:  # type: ignore[override]
        payload = {"ok": False, "error": {"code": f"HTTP_{exc.status_code}", "message": str(exc.detail)}}
        return JSONResponse(status_code=exc.status_code, content=payload, headers=exc.headers)

    @app.get("/healthz")
    def healthz() -> dict[str, Any]:
        # No auth: used by container healthchecks.
        return {
            "ok": True,
            "service": "scan-admin-api",
            "timezone": config.scan.timezone,
            "scan_time": config.scan.scan_time,
            "sources": len(config.sources),
            "ts": datetime.now(timezone.utc).isoformat(),
        }

    @app.post("/api/scan")
    def trigger_scan(payload: ScanRequest, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        event: dict[str, Any] = {}
        if payload.lookback_hours is not None:
            event["lookback_hours"] = payload.lookback_hours
        try:
            summary = runner(event, payload.send)
        except RunLockError as e:
            raise HTTPException(status_code=409, detail=str(e)) from e
        logger.info("manual scan done date=%s ok=%s", summary.get("date"), summary.get("ok"))
        return summary

    @app.get("/api/reports")
    def list_reports(limit: int = 30, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        dates = store.list_dates(limit=max(1, min(int(limit), 365)))
        return {"ok": True, "dates": dates}

    @app.get("/api/reports/{report_date}")
    def get_report(report_date: str, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        report = store.get(report_date)
        if report is None:
            raise HTTPException(status_code=404, detail=f"report not found: {report_date}")
        return report

    return app


def run_server(config: ScanConfig) -> None:
    store = ReportStore.from_env()
    app = create_app(config, store=store, runner=default_runner(config, store))
    host = os.environ.get("ADMIN_API_HOST", "127.0.0.1")
    port = int(os.environ.get("ADMIN_API_PORT", "8789"))
    uvicorn.run(app, host=host, port=port, reload=False)
