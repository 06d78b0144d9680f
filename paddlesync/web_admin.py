from __future__ import annotations

import os
import secrets
from typing import Any

from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel, Field

from paddlesync.config_manager import ConfigManager
from paddlesync.errors import (
    ConfigurationError,
    FeedTooLargeError,
    FetchTimeoutError,
    IcalSyncError,
    MassDeletionBlockedError,
    NetworkError,
    PayloadError,
    TeamNotFoundError,
)
from paddlesync.event_store import EventStore
from paddlesync.scheduler import SyncScheduler
from paddlesync.sync_service import SyncService


class SyncRequest(BaseModel):
    override_url: str | None = Field(default=None, max_length=2048)


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.event_store = EventStore(state_path)
        self.sync_service = SyncService(self.config_manager, self.event_store)
        self.scheduler = SyncScheduler(self.sync_service, self.config_manager)


def _status_for(exc: IcalSyncError) -> int:
    if isinstance(exc, TeamNotFoundError):
        return 404
    if isinstance(exc, ConfigurationError):
        return 400
    if isinstance(exc, FetchTimeoutError):
        return 504
    if isinstance(exc, NetworkError):
        return 502
    if isinstance(exc, FeedTooLargeError):
        return 413
    if isinstance(exc, PayloadError):
        return 422
    if isinstance(exc, MassDeletionBlockedError):
        return 409
    return 500


def _bearer_matches(authorization: str | None, secret: str) -> bool:
    if not secret or not authorization:
        return False
    return secrets.compare_digest(authorization, f"Bearer {secret}")


def create_app() -> FastAPI:
    config_path = os.getenv("PADDLESYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("PADDLESYNC_STATE_PATH", "data/paddlesync.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Paddlesync", version="0.1.0")
    app.state.context = context

    def _require_cron_secret(authorization: str | None) -> None:
        secret = app.state.context.config_manager.load().cron.secret
        if not _bearer_matches(authorization, secret):
            raise HTTPException(status_code=401, detail="Unauthorized")

    @app.on_event("startup")
    def _startup() -> None:
        if app.state.context.config_manager.load().scheduler.enabled:
            app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.post("/api/teams/{team_id}/sync")
    def sync_team(team_id: str, request: SyncRequest | None = None) -> dict[str, Any]:
        override_url = request.override_url if request is not None else None
        try:
            result = app.state.context.sync_service.sync_team_events(team_id, override_url)
        except IcalSyncError as exc:
            raise HTTPException(
                status_code=_status_for(exc),
                detail=str(exc),
                headers={"X-Sync-Error": exc.kind},
            ) from exc
        payload = result.to_dict()
        payload["details"] = result.details
        return payload

    @app.get("/api/teams/{team_id}/sync-history")
    def sync_history(team_id: str, page: int = 1, limit: int = 10) -> dict[str, Any]:
        return app.state.context.sync_service.sync_history(team_id, page=page, limit=limit)

    @app.get("/api/cron/ical-sync")
    def cron_ical_sync(authorization: str | None = Header(default=None)) -> dict[str, Any]:
        _require_cron_secret(authorization)
        reports = app.state.context.sync_service.sync_all_teams()
        return {"success": True, "results": [report.to_dict() for report in reports]}

    @app.post("/api/sync/run")
    def trigger_sync(authorization: str | None = Header(default=None)) -> dict[str, str]:
        _require_cron_secret(authorization)
        scheduler = app.state.context.scheduler
        if not scheduler.is_running:
            raise HTTPException(status_code=409, detail="Scheduler is not running")
        scheduler.trigger_manual()
        return {"message": "sync triggered"}

    return app
