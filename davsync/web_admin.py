from __future__ import annotations

import os
from typing import Any, Literal

from fastapi import FastAPI, HTTPException
from pydantic import AwareDatetime, BaseModel, Field

from davsync.config_manager import ConfigManager
from davsync.models import EventDraft, SyncMode
from davsync.secret_box import SecretBox
from davsync.state_store import StateStore
from davsync.sync_engine import SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class ConnectProviderRequest(BaseModel):
    provider_type: Literal["caldav", "apple"] = "caldav"
    server_url: str = Field(min_length=1)
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class CalendarSettingsRequest(BaseModel):
    calendar_id: str = Field(min_length=1)
    sync_enabled: bool | None = None
    is_primary: bool | None = None


class EventDraftRequest(BaseModel):
    title: str = Field(min_length=1)
    start: AwareDatetime
    end: AwareDatetime
    all_day: bool = False
    provider_event_id: str | None = None
    description: str | None = None
    location: str | None = None
    calendar_id: str | None = None


class AppContext:
    def __init__(self, config_path: str, state_path: str | None = None) -> None:
        self.config_manager = ConfigManager(config_path)
        config = self.config_manager.load()
        self.state_store = StateStore(state_path or config.database.path)

    def secret_box(self) -> SecretBox:
        config = self.config_manager.load()
        try:
            return SecretBox.from_config(config.secrets.encryption_key)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    def sync_engine(self) -> SyncEngine:
        config = self.config_manager.load()
        return SyncEngine(self.state_store, self.secret_box(), sync_config=config.sync)


def create_app() -> FastAPI:
    config_path = os.getenv("DAVSYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("DAVSYNC_STATE_PATH") or None
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="davsync admin", version="0.1.0")
    app.state.context = context

    def _require_provider(provider_id: str) -> None:
        if app.state.context.state_store.get_provider(provider_id) is None:
            raise HTTPException(status_code=404, detail="provider not found")

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        app.state.context.config_manager.update(request.payload)
        return {"message": "config updated", "config": app.state.context.config_manager.masked()}

    @app.get("/api/providers")
    def list_providers() -> dict[str, Any]:
        providers = app.state.context.state_store.list_providers()
        return {"providers": [provider.to_dict() for provider in providers]}

    @app.post("/api/providers")
    def connect_provider(request: ConnectProviderRequest) -> dict[str, Any]:
        credential = app.state.context.secret_box().encrypt(request.password)
        provider = app.state.context.state_store.save_provider(
            provider_type=request.provider_type,
            username=request.username.strip(),
            server_url=request.server_url.strip(),
            credential=credential,
        )
        return {"message": "provider connected", "provider": provider.to_dict()}

    @app.delete("/api/providers/{provider_id}")
    def disconnect_provider(provider_id: str) -> dict[str, Any]:
        if not app.state.context.state_store.delete_provider(provider_id):
            raise HTTPException(status_code=404, detail="provider not found")
        return {"message": "provider disconnected"}

    @app.get("/api/providers/{provider_id}/calendars")
    def list_calendars(provider_id: str) -> dict[str, Any]:
        provider = app.state.context.state_store.get_provider(provider_id)
        if provider is None:
            raise HTTPException(status_code=404, detail="provider not found")
        return {"calendars": [calendar.to_dict() for calendar in provider.calendars]}

    @app.put("/api/providers/{provider_id}/calendars")
    def update_calendar(provider_id: str, request: CalendarSettingsRequest) -> dict[str, Any]:
        _require_provider(provider_id)
        updated = app.state.context.state_store.update_calendar_settings(
            provider_id,
            request.calendar_id,
            sync_enabled=request.sync_enabled,
            is_primary=request.is_primary,
        )
        if not updated:
            raise HTTPException(status_code=404, detail="calendar not found")
        provider = app.state.context.state_store.get_provider(provider_id)
        return {"calendars": [calendar.to_dict() for calendar in provider.calendars]}

    @app.get("/api/providers/{provider_id}/events")
    def list_events(provider_id: str, calendar_id: str | None = None) -> dict[str, Any]:
        _require_provider(provider_id)
        events = app.state.context.state_store.list_events(provider_id, calendar_id)
        return {"events": [event.to_dict() for event in events]}

    @app.post("/api/providers/{provider_id}/sync")
    async def run_sync(provider_id: str, mode: SyncMode = SyncMode.INCREMENTAL) -> dict[str, Any]:
        _require_provider(provider_id)
        engine = app.state.context.sync_engine()
        if mode is SyncMode.FULL:
            result = await engine.perform_full_sync(provider_id)
        else:
            result = await engine.perform_incremental_sync(provider_id)
        return result.to_dict()

    @app.post("/api/providers/{provider_id}/events")
    async def push_event(provider_id: str, request: EventDraftRequest) -> dict[str, Any]:
        _require_provider(provider_id)
        draft = EventDraft(**request.model_dump())
        result = await app.state.context.sync_engine().create_or_update_remote_event(provider_id, draft)
        return result.to_dict()

    @app.delete("/api/providers/{provider_id}/events/{provider_event_id}")
    async def delete_event(provider_id: str, provider_event_id: str, calendar_id: str | None = None) -> dict[str, Any]:
        _require_provider(provider_id)
        result = await app.state.context.sync_engine().delete_remote_event(
            provider_id, provider_event_id, calendar_id
        )
        return result.to_dict()

    @app.get("/api/sync/runs")
    def sync_runs(limit: int = 20, provider_id: str | None = None) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit, provider_id=provider_id)}

    return app


app = create_app()
