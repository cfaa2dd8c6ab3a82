from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from calhook.config_manager import MASK, ConfigManager
from calhook.connector import CalendarSourceConnector
from calhook.errors import CalhookError, GoogleCalendarNotConfiguredError
from calhook.google_client import GoogleCalendarClient
from calhook.models import PushNotification
from calhook.scheduler import RenewalScheduler
from calhook.state_store import StateStore


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.connector = CalendarSourceConnector(self.config_manager, self.state_store)
        self.scheduler = RenewalScheduler(self.connector, self.config_manager)


def _masked_meta(config_dict: dict[str, Any]) -> dict[str, Any]:
    has_access_token = bool(config_dict.get("google", {}).get("access_token", "").strip())
    return {"google": {"access_token": {"is_masked": has_access_token}}}


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    current_access_token = str(current.get("google", {}).get("access_token", ""))

    google = sanitized.get("google")
    if isinstance(google, dict):
        access_token = google.get("access_token")
        if access_token is not None:
            token_text = str(access_token).strip()
            if token_text in {"", MASK}:
                if current_access_token:
                    google.pop("access_token", None)
                else:
                    google["access_token"] = ""
        if not google:
            sanitized.pop("google", None)

    return sanitized


def _http_error(exc: CalhookError) -> HTTPException:
    if isinstance(exc, GoogleCalendarNotConfiguredError):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=502, detail=f"{type(exc).__name__}: {exc}")


def create_app() -> FastAPI:
    config_path = os.getenv("CALHOOK_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("CALHOOK_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="calhook", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/webhooks/google-calendar")
    def google_calendar_webhook(request: Request) -> dict[str, Any]:
        notification = PushNotification.from_headers(request.headers)
        try:
            result = app.state.context.connector.run(notification)
        except CalhookError as exc:
            raise _http_error(exc) from exc
        return result.to_dict()

    @app.post("/api/activate")
    def activate() -> dict[str, Any]:
        try:
            resources = app.state.context.connector.activate()
        except CalhookError as exc:
            raise _http_error(exc) from exc
        return {"resources": [resource.to_dict() for resource in resources]}

    @app.post("/api/deactivate")
    def deactivate() -> dict[str, Any]:
        try:
            outcome = app.state.context.connector.deactivate()
        except CalhookError as exc:
            raise _http_error(exc) from exc
        return {"stopped": outcome}

    @app.post("/api/renew")
    def renew() -> dict[str, str]:
        app.state.context.scheduler.trigger_now()
        return {"message": "renewal check triggered"}

    @app.get("/api/resources")
    def resources() -> dict[str, Any]:
        records = app.state.context.state_store.list_resources()
        return {"resources": [record.to_dict() for record in records]}

    @app.get("/api/events")
    def emitted_events(limit: int = 50) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_emitted_events(limit=limit)}

    @app.get("/api/calendars")
    def list_calendars() -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        client = GoogleCalendarClient(config.google)
        try:
            calendars = client.list_calendars()
        except CalhookError as exc:
            raise _http_error(exc) from exc
        watched = set(config.watch.calendar_ids)
        return {
            "calendars": [
                {**calendar.to_dict(), "watched": calendar.calendar_id in watched} for calendar in calendars
            ]
        }

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        raw = app.state.context.config_manager.load().to_dict()
        return {"config": app.state.context.config_manager.masked(), "meta": _masked_meta(raw)}

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        app.state.context.config_manager.update(sanitized_payload)
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        return {
            "runs": app.state.context.state_store.recent_sync_runs(limit=limit),
            "last_renewal_check": app.state.context.state_store.get("last_renewal_check"),
            "last_notification_at": app.state.context.state_store.get("last_notification_at"),
        }

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, action: str | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, action=action)}

    return app


app = create_app()
