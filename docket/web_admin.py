from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from docket.caldav_client import CalDAVService
from docket.calendar_view import events_in_window
from docket.config_manager import ConfigManager
from docket.errors import AccountConnectionError, NotFoundError, SyncError
from docket.logging_setup import setup_logging
from docket.scheduler import SyncScheduler
from docket.state_store import StateStore
from docket.sync_engine import SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class AppContext:
    def __init__(self, config_path: str, state_path: str, run_scheduler: bool = True) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)
        self.run_scheduler = run_scheduler


def _http_error(exc: SyncError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, AccountConnectionError):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=409, detail=str(exc))


def create_app() -> FastAPI:
    config_path = os.getenv("DOCKET_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("DOCKET_STATE_PATH", "data/state.db")
    run_scheduler = os.getenv("DOCKET_SCHEDULER", "1").strip().lower() not in {"0", "false", "no", "off"}
    context = AppContext(config_path=config_path, state_path=state_path, run_scheduler=run_scheduler)

    app = FastAPI(title="Docket Sync", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        setup_logging(app.state.context.config_manager.load().logging)
        if app.state.context.run_scheduler:
            app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, Any]:
        return {"status": "ok", "last_sync": app.state.context.scheduler.last_run()}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        if not isinstance(request.payload, dict):
            raise HTTPException(status_code=400, detail="payload must be an object")
        app.state.context.config_manager.update(request.payload)
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.post("/api/sync")
    def run_sync(background: bool = False) -> dict[str, Any]:
        if background:
            app.state.context.scheduler.trigger_manual()
            return {"message": "sync triggered"}
        report = app.state.context.sync_engine.sync_all(trigger="manual")
        return {"message": "sync completed", "report": report.to_dict()}

    @app.post("/api/accounts/{account_id}/sync")
    def run_account_sync(account_id: str) -> dict[str, Any]:
        try:
            report = app.state.context.sync_engine.sync_account(account_id, trigger="manual")
        except SyncError as exc:
            raise _http_error(exc) from exc
        return {"message": "sync completed", "report": report.to_dict()}

    @app.post("/api/accounts/{account_id}/repair")
    def repair_account(account_id: str) -> dict[str, Any]:
        try:
            result = app.state.context.sync_engine.repair(account_id)
        except SyncError as exc:
            raise _http_error(exc) from exc
        return {"message": "repair completed", "result": result.to_dict()}

    @app.get("/api/accounts/{account_id}/calendars")
    def list_calendars(account_id: str) -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        account = config.get_account(account_id)
        if account is None:
            raise HTTPException(status_code=404, detail=f"Unknown account: {account_id}")
        service = CalDAVService(account, timeout_seconds=config.sync.request_timeout_seconds)
        try:
            calendars = service.list_collections()
        except SyncError as exc:
            raise _http_error(exc) from exc
        return {"calendars": [calendar.to_dict() for calendar in calendars]}

    @app.get("/api/events")
    def list_events(
        start: str,
        end: str,
        account_id: list[str] | None = Query(default=None),
    ) -> dict[str, Any]:
        enabled = [account.account_id for account in app.state.context.config_manager.load().enabled_accounts()]
        account_ids = enabled if account_id is None else [item for item in account_id if item in enabled]
        try:
            events = events_in_window(app.state.context.state_store, start, end, account_ids)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"events": [event.to_dict() for event in events]}

    @app.get("/api/sync/runs")
    def sync_runs(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit)}

    @app.get("/api/audit")
    def audit_events(limit: int = 100, run_id: int | None = None, account_id: str | None = None) -> dict[str, Any]:
        return {
            "events": app.state.context.state_store.recent_audit_events(
                limit=limit,
                run_id=run_id,
                account_id=account_id,
            )
        }

    return app


app = create_app()
