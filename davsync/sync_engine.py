from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, TypeVar

from davsync.caldav_client import CalDAVClient, CalDAVCredential, normalize_calendar_id
from davsync.errors import (
    AuthError,
    IllegalTransition,
    NoTargetCalendarError,
    ProviderNotFoundError,
    StoreApplyError,
    SyncError,
    SyncTokenInvalidated,
    TransientNetworkError,
    UnsupportedProviderError,
)
from davsync.models import (
    CALDAV_PROVIDER_TYPES,
    CalendarRef,
    CalendarSyncState,
    EventDraft,
    OutboundResult,
    ProviderConnection,
    RemoteCalendar,
    SyncConfig,
    SyncCursor,
    SyncMode,
    SyncResult,
)
from davsync.normalizer import Normalizer, is_override_event_id, mint_uid, normalizer_for
from davsync.reconciler import ChangeSet, full_sync_changes, incremental_changes
from davsync.secret_box import SecretBox
from davsync.state_store import StateStore


logger = logging.getLogger(__name__)

T = TypeVar("T")

_START_STATES = {
    CalendarSyncState.UNSYNCED,
    CalendarSyncState.FAILED,
    CalendarSyncState.SYNCED,
}
_TRANSITIONS: dict[CalendarSyncState, set[CalendarSyncState]] = {
    **{
        state: {CalendarSyncState.FULL_SYNC_IN_FLIGHT, CalendarSyncState.INCREMENTAL_SYNC_IN_FLIGHT}
        for state in _START_STATES
    },
    CalendarSyncState.FULL_SYNC_IN_FLIGHT: {CalendarSyncState.SYNCED, CalendarSyncState.FAILED},
    CalendarSyncState.INCREMENTAL_SYNC_IN_FLIGHT: {
        CalendarSyncState.SYNCED,
        CalendarSyncState.FAILED,
        CalendarSyncState.FULL_SYNC_IN_FLIGHT,
    },
}


def select_target_calendar(provider: ProviderConnection, calendar_id: str | None = None) -> str:
    """Explicit calendar, else the primary one, else the first enabled one."""
    if calendar_id:
        return calendar_id
    for calendar in provider.calendars:
        if calendar.is_primary:
            return calendar.calendar_id
    enabled = provider.enabled_calendars()
    if enabled:
        return enabled[0].calendar_id
    raise NoTargetCalendarError(f"provider {provider.provider_id} has no calendar to write to")


@dataclass
class SyncContext:
    """State of one sync invocation for one provider.

    Created per call and passed by handle; the engine keeps no per-provider
    state between invocations.
    """

    provider: ProviderConnection
    mode: SyncMode
    normalizer: Normalizer
    session: Any = None
    states: dict[str, CalendarSyncState] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    changes_applied: int = 0
    parse_skips: int = 0

    def state(self, calendar: CalendarRef) -> CalendarSyncState:
        return self.states.get(calendar.calendar_id, calendar.sync_state)

    def transition(self, calendar: CalendarRef, new_state: CalendarSyncState) -> None:
        current = self.state(calendar)
        if new_state not in _TRANSITIONS.get(current, set()):
            raise IllegalTransition(f"{calendar.calendar_id}: {current.value} -> {new_state.value}")
        logger.debug("%s: %s -> %s", calendar.calendar_id, current.value, new_state.value)
        self.states[calendar.calendar_id] = new_state

    def in_flight(self) -> list[str]:
        return [calendar_id for calendar_id, state in self.states.items() if state.in_flight]


class SyncEngine:
    def __init__(
        self,
        state_store: StateStore,
        secret_box: SecretBox,
        client: CalDAVClient | None = None,
        sync_config: SyncConfig | None = None,
    ) -> None:
        self.state_store = state_store
        self.secret_box = secret_box
        self.sync_config = sync_config or SyncConfig()
        self.client = client or CalDAVClient(timeout_seconds=self.sync_config.request_timeout_seconds)

    async def _store(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await asyncio.to_thread(func, *args, **kwargs)

    async def _load_provider(self, provider_id: str) -> ProviderConnection:
        provider = await self._store(self.state_store.get_provider, provider_id)
        if provider is None:
            raise ProviderNotFoundError(f"provider not found: {provider_id}")
        if provider.provider_type not in CALDAV_PROVIDER_TYPES:
            raise UnsupportedProviderError(f"provider type {provider.provider_type!r} is not CalDAV-based")
        return provider

    async def _authenticate(self, provider: ProviderConnection) -> Any:
        try:
            password = self.secret_box.open(provider.credential)
            return await self.client.authenticate(
                CalDAVCredential(
                    server_url=provider.server_url,
                    username=provider.username,
                    password=password,
                )
            )
        except AuthError:
            logger.warning("provider %s needs reauthorization", provider.provider_id)
            await self._store(self.state_store.set_needs_reauth, provider.provider_id, True)
            raise

    async def _refresh_calendars(self, provider: ProviderConnection, session: Any) -> list[RemoteCalendar]:
        remote_calendars = await self.client.discover_calendars(session)
        provider.calendars = await self._store(
            self.state_store.merge_calendars,
            provider.provider_id,
            remote_calendars,
            enable_new=self.sync_config.enable_new_calendars,
        )
        return remote_calendars

    # Inbound

    async def perform_full_sync(self, provider_id: str) -> SyncResult:
        return await self._run(provider_id, SyncMode.FULL)

    async def perform_incremental_sync(self, provider_id: str) -> SyncResult:
        return await self._run(provider_id, SyncMode.INCREMENTAL)

    async def _run(self, provider_id: str, mode: SyncMode) -> SyncResult:
        started = time.monotonic()
        run_id: int | None = None
        ctx: SyncContext | None = None
        status = "failed"
        try:
            run_id = await self._store(self.state_store.start_sync_run, provider_id=provider_id, mode=mode.value)
            provider = await self._load_provider(provider_id)
            ctx = SyncContext(provider=provider, mode=mode, normalizer=normalizer_for(provider.provider_type))
            ctx.session = await self._authenticate(provider)
            remote_calendars = await self._refresh_calendars(provider, ctx.session)
            await self._sync_calendars(ctx, remote_calendars)
            if ctx.errors:
                message = "; ".join(f"{cid}: {err}" for cid, err in sorted(ctx.errors.items()))
            else:
                synced = sum(1 for state in ctx.states.values() if state is CalendarSyncState.SYNCED)
                message = f"Synced {synced} calendars, {ctx.changes_applied} changes applied."
                await self._store(self.state_store.update_last_sync, provider_id, datetime.now(timezone.utc))
                status = "success"
        except AuthError as exc:
            message = f"authentication failed: {exc}"
        except SyncError as exc:
            message = f"{type(exc).__name__}: {exc}"
            logger.warning("%s sync of %s failed: %s", mode.value, provider_id, message)
        except Exception as exc:
            message = f"{type(exc).__name__}: {exc}"
            logger.exception("%s sync of %s crashed", mode.value, provider_id)

        duration_ms = int((time.monotonic() - started) * 1000)
        changes_applied = ctx.changes_applied if ctx else 0
        parse_skips = ctx.parse_skips if ctx else 0
        try:
            if ctx is not None:
                for calendar_id in ctx.in_flight():
                    # Abandoned units keep their cursor; only the state is recorded.
                    ctx.states[calendar_id] = CalendarSyncState.FAILED
                    await self._store(
                        self.state_store.set_calendar_state,
                        provider_id,
                        calendar_id,
                        CalendarSyncState.FAILED,
                        message,
                    )
            if run_id is not None:
                await self._store(
                    self.state_store.finish_sync_run,
                    run_id=run_id,
                    status=status,
                    message=message,
                    duration_ms=duration_ms,
                    changes_applied=changes_applied,
                    parse_skips=parse_skips,
                )
        except Exception:
            logger.exception("could not record sync run for %s", provider_id)
        logger.info("%s sync of %s finished: %s (%s)", mode.value, provider_id, status, message)
        return SyncResult(
            status=status,
            message=message,
            mode=mode.value,
            duration_ms=duration_ms,
            changes_applied=changes_applied,
            parse_skips=parse_skips,
            calendars={cid: state.value for cid, state in ctx.states.items()} if ctx else {},
        )

    async def _sync_calendars(self, ctx: SyncContext, remote_calendars: list[RemoteCalendar]) -> None:
        remote_by_id = {normalize_calendar_id(remote.calendar_id): remote for remote in remote_calendars}
        for calendar in ctx.provider.enabled_calendars():
            remote = remote_by_id.get(normalize_calendar_id(calendar.calendar_id))
            if remote is None:
                logger.warning("calendar %s is no longer offered by the server; skipping", calendar.calendar_id)
                continue
            previous = calendar.sync_state
            try:
                await self._sync_calendar(ctx, calendar, remote)
            except AuthError:
                ctx.transition(calendar, CalendarSyncState.FAILED)
                await self._persist_state(ctx, calendar, "authentication failed")
                raise
            except (TransientNetworkError, StoreApplyError) as exc:
                ctx.transition(calendar, CalendarSyncState.FAILED)
                ctx.errors[calendar.calendar_id] = str(exc)
                logger.warning("sync of calendar %s failed: %s", calendar.calendar_id, exc)
                await self._persist_state(ctx, calendar, str(exc))
                continue
            if ctx.state(calendar) is not previous or calendar.last_error:
                await self._persist_state(ctx, calendar, None)

    async def _persist_state(self, ctx: SyncContext, calendar: CalendarRef, error: str | None) -> None:
        await self._store(
            self.state_store.set_calendar_state,
            ctx.provider.provider_id,
            calendar.calendar_id,
            ctx.state(calendar),
            error,
        )

    async def _sync_calendar(self, ctx: SyncContext, calendar: CalendarRef, remote: RemoteCalendar) -> None:
        if ctx.mode is SyncMode.FULL:
            ctx.transition(calendar, CalendarSyncState.FULL_SYNC_IN_FLIGHT)
            await self._full_sync(ctx, calendar, remote)
            return

        if calendar.ctag is not None and calendar.ctag == remote.ctag:
            ctx.transition(calendar, CalendarSyncState.INCREMENTAL_SYNC_IN_FLIGHT)
            logger.debug("calendar %s unchanged (ctag %s)", calendar.calendar_id, remote.ctag)
            ctx.transition(calendar, CalendarSyncState.SYNCED)
            return

        if not calendar.sync_token:
            ctx.transition(calendar, CalendarSyncState.FULL_SYNC_IN_FLIGHT)
            await self._full_sync(ctx, calendar, remote)
            return

        ctx.transition(calendar, CalendarSyncState.INCREMENTAL_SYNC_IN_FLIGHT)
        try:
            report = await self.client.fetch_changes(ctx.session, calendar.calendar_id, calendar.sync_token)
        except SyncTokenInvalidated as exc:
            logger.info("falling back to full sync for %s: %s", calendar.calendar_id, exc.reason or exc)
            ctx.transition(calendar, CalendarSyncState.FULL_SYNC_IN_FLIGHT)
            await self._full_sync(ctx, calendar, remote)
            return

        known_hrefs = await self._store(
            self.state_store.event_ids_by_href, ctx.provider.provider_id, calendar.calendar_id
        )
        change_set = incremental_changes(report, calendar, ctx.normalizer, known_hrefs)
        cursor = SyncCursor(calendar_id=calendar.calendar_id, ctag=remote.ctag, sync_token=report.new_sync_token)
        await self._apply(ctx, calendar, change_set, cursor)

    async def _full_sync(self, ctx: SyncContext, calendar: CalendarRef, remote: RemoteCalendar) -> None:
        objects = await self.client.fetch_all_objects(ctx.session, calendar.calendar_id)
        change_set = full_sync_changes(objects, calendar, ctx.normalizer)
        cursor = SyncCursor(calendar_id=calendar.calendar_id, ctag=remote.ctag, sync_token=remote.sync_token)
        await self._apply(ctx, calendar, change_set, cursor)

    async def _apply(
        self, ctx: SyncContext, calendar: CalendarRef, change_set: ChangeSet, cursor: SyncCursor
    ) -> None:
        ctx.parse_skips += len(change_set.skipped)
        if change_set.entries:
            ctx.changes_applied += await self._store(
                self.state_store.sync_events, ctx.provider.provider_id, change_set.entries, cursor
            )
        await self._store(
            self.state_store.update_cursor,
            ctx.provider.provider_id,
            calendar.calendar_id,
            cursor.ctag,
            cursor.sync_token,
        )
        ctx.transition(calendar, CalendarSyncState.SYNCED)
        logger.info(
            "calendar %s synced: %d upserts, %d deletes, %d skipped",
            calendar.calendar_id,
            len(change_set.upserts),
            len(change_set.deletes),
            len(change_set.skipped),
        )

    # Outbound

    async def _open_outbound(self, provider_id: str) -> tuple[ProviderConnection, Any]:
        provider = await self._load_provider(provider_id)
        session = await self._authenticate(provider)
        if not provider.calendars:
            await self._refresh_calendars(provider, session)
        return provider, session

    async def create_or_update_remote_event(self, provider_id: str, draft: EventDraft) -> OutboundResult:
        uid = draft.provider_event_id or mint_uid()
        try:
            if is_override_event_id(uid):
                return OutboundResult(ok=False, message="recurrence instances cannot be written individually")
            provider, session = await self._open_outbound(provider_id)
            calendar_id = select_target_calendar(provider, draft.calendar_id)
            document = normalizer_for(provider.provider_type).build_document(draft, uid)
            href = await self.client.create_object(session, calendar_id, uid, document)
        except SyncError as exc:
            logger.warning("remote write to %s failed: %s", provider_id, exc)
            return OutboundResult(ok=False, message=f"{type(exc).__name__}: {exc}", provider_event_id=uid)
        except Exception as exc:
            logger.exception("remote write to %s crashed", provider_id)
            return OutboundResult(ok=False, message=f"{type(exc).__name__}: {exc}", provider_event_id=uid)
        return OutboundResult(
            ok=True,
            message="remote event saved",
            provider_event_id=uid,
            calendar_id=calendar_id,
            remote_url=href,
        )

    async def delete_remote_event(
        self, provider_id: str, provider_event_id: str, calendar_id: str | None = None
    ) -> OutboundResult:
        try:
            if is_override_event_id(provider_event_id):
                return OutboundResult(
                    ok=False,
                    message="recurrence instances cannot be deleted individually",
                    provider_event_id=provider_event_id,
                )
            provider, session = await self._open_outbound(provider_id)
            target = select_target_calendar(provider, calendar_id)
            stored = await self._store(self.state_store.get_event, provider_id, provider_event_id, target)
            href = stored.metadata.remote_url if stored else ""
            deleted = await self.client.delete_object(session, target, provider_event_id, href)
        except SyncError as exc:
            logger.warning("remote delete on %s failed: %s", provider_id, exc)
            return OutboundResult(
                ok=False, message=f"{type(exc).__name__}: {exc}", provider_event_id=provider_event_id
            )
        except Exception as exc:
            logger.exception("remote delete on %s crashed", provider_id)
            return OutboundResult(
                ok=False, message=f"{type(exc).__name__}: {exc}", provider_event_id=provider_event_id
            )
        if not deleted:
            return OutboundResult(
                ok=False,
                message="remote event not found",
                provider_event_id=provider_event_id,
                calendar_id=target,
            )
        return OutboundResult(
            ok=True,
            message="remote event deleted",
            provider_event_id=provider_event_id,
            calendar_id=target,
            remote_url=href,
        )
