import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest import mock

from davsync.errors import (
    AuthError,
    IllegalTransition,
    NoTargetCalendarError,
    StoreApplyError,
    SyncTokenInvalidated,
    TransientNetworkError,
)
from davsync.models import (
    CalendarRef,
    CalendarSyncState,
    ChangeReport,
    EventDraft,
    ProviderConnection,
    RemoteCalendar,
    RemoteObject,
    SyncMode,
)
from davsync.normalizer import ICalendarNormalizer
from davsync.secret_box import SecretBox
from davsync.state_store import StateStore
from davsync.sync_engine import SyncContext, SyncEngine, select_target_calendar


WORK = "https://dav.example.com/cal/work/"
HOME = "https://dav.example.com/cal/home/"


def _ics(uid: str, summary: str = "Event") -> str:
    return (
        "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:-//test//EN\r\n"
        "BEGIN:VEVENT\r\n"
        f"UID:{uid}\r\nSUMMARY:{summary}\r\n"
        "DTSTART:20260310T080000Z\r\nDTEND:20260310T090000Z\r\n"
        "END:VEVENT\r\nEND:VCALENDAR\r\n"
    )


def _obj(uid: str, summary: str = "Event", calendar_id: str = WORK) -> RemoteObject:
    return RemoteObject(href=f"{calendar_id}{uid}.ics", data=_ics(uid, summary), etag=f"etag-{uid}-{summary}")


class FakeCalDAVClient:
    """In-memory server: one dict of href -> object per calendar."""

    def __init__(self) -> None:
        self.calendars = {
            WORK: RemoteCalendar(calendar_id=WORK, display_name="Work", ctag="ctag-1", sync_token="tok-1"),
        }
        self.objects: dict[str, dict[str, RemoteObject]] = {WORK: {}}
        self.changes: dict[str, ChangeReport] = {}
        self.auth_error: Exception | None = None
        self.fetch_all_error: Exception | None = None
        self.fetch_changes_error: Exception | None = None
        self.calls: list[tuple[str, str]] = []
        self.saved: list[tuple[str, str, str]] = []
        self.deleted: list[tuple[str, str, str]] = []

    async def authenticate(self, credential):
        self.calls.append(("authenticate", credential.password))
        if self.auth_error:
            raise self.auth_error
        return object()

    async def discover_calendars(self, session):
        return list(self.calendars.values())

    async def fetch_all_objects(self, session, calendar_id):
        self.calls.append(("fetch_all_objects", calendar_id))
        if self.fetch_all_error:
            raise self.fetch_all_error
        return list(self.objects[calendar_id].values())

    async def fetch_changes(self, session, calendar_id, sync_token):
        self.calls.append(("fetch_changes", calendar_id))
        if self.fetch_changes_error:
            raise self.fetch_changes_error
        return self.changes[calendar_id]

    async def create_object(self, session, calendar_id, uid, document):
        self.saved.append((calendar_id, uid, document))
        return f"{calendar_id}{uid}.ics"

    async def delete_object(self, session, calendar_id, uid, href=""):
        self.deleted.append((calendar_id, uid, href))
        return uid != "missing"

    def put(self, obj: RemoteObject, calendar_id: str = WORK) -> None:
        self.objects[calendar_id][obj.href] = obj

    def bump(self, calendar_id: str = WORK, ctag: str = "", sync_token: str | None = None) -> None:
        calendar = self.calendars[calendar_id]
        calendar.ctag = ctag
        if sync_token is not None:
            calendar.sync_token = sync_token


class SyncEngineTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.secret_box = SecretBox("unit-test-key")
        self.provider = self.store.save_provider(
            provider_type="caldav",
            username="alice",
            server_url="https://dav.example.com/",
            credential=self.secret_box.encrypt("app-password"),
        )
        self.client = FakeCalDAVClient()
        self.engine = SyncEngine(self.store, self.secret_box, client=self.client)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def stored_ids(self, calendar_id: str = WORK) -> list[str]:
        return [event.provider_event_id for event in self.store.list_events(self.provider.provider_id, calendar_id)]

    def work_calendar(self) -> CalendarRef:
        return self.store.get_provider(self.provider.provider_id).calendar(WORK)


class InboundSyncTests(SyncEngineTestCase):
    async def test_full_sync_stores_events_and_cursor(self) -> None:
        self.client.put(_obj("a"))
        self.client.put(_obj("b"))

        result = await self.engine.perform_full_sync(self.provider.provider_id)

        self.assertTrue(result.ok, result.message)
        self.assertEqual(result.changes_applied, 2)
        self.assertEqual(result.calendars, {WORK: "synced"})
        self.assertEqual(self.stored_ids(), ["a", "b"])
        calendar = self.work_calendar()
        self.assertEqual((calendar.ctag, calendar.sync_token), ("ctag-1", "tok-1"))
        self.assertEqual(calendar.sync_state, CalendarSyncState.SYNCED)
        self.assertIn(("authenticate", "app-password"), self.client.calls)
        self.assertIsNotNone(self.store.get_provider(self.provider.provider_id).last_sync_at)

    async def test_unchanged_ctag_skips_fetch_and_writes(self) -> None:
        self.client.put(_obj("a"))
        await self.engine.perform_full_sync(self.provider.provider_id)
        self.client.calls.clear()

        with mock.patch.object(self.store, "sync_events", wraps=self.store.sync_events) as sync_events, \
                mock.patch.object(self.store, "update_cursor", wraps=self.store.update_cursor) as update_cursor, \
                mock.patch.object(self.store, "set_calendar_state", wraps=self.store.set_calendar_state) as set_state:
            result = await self.engine.perform_incremental_sync(self.provider.provider_id)

        self.assertTrue(result.ok, result.message)
        self.assertEqual(result.changes_applied, 0)
        sync_events.assert_not_called()
        update_cursor.assert_not_called()
        set_state.assert_not_called()
        self.assertNotIn(("fetch_changes", WORK), self.client.calls)
        self.assertNotIn(("fetch_all_objects", WORK), self.client.calls)

    async def test_incremental_applies_modifications_and_single_delete(self) -> None:
        self.client.put(_obj("a"))
        self.client.put(_obj("b"))
        await self.engine.perform_full_sync(self.provider.provider_id)

        self.client.bump(ctag="ctag-2")
        self.client.changes[WORK] = ChangeReport(
            modified=[_obj("a", "Renamed")],
            deleted=[f"{WORK}b.ics"],
            new_sync_token="tok-2",
        )
        with mock.patch.object(self.store, "sync_events", wraps=self.store.sync_events) as sync_events:
            result = await self.engine.perform_incremental_sync(self.provider.provider_id)

        self.assertTrue(result.ok, result.message)
        entries = sync_events.call_args.args[1]
        self.assertEqual([entry.provider_event_id for entry in entries if entry.action == "delete"], ["b"])
        self.assertEqual(self.stored_ids(), ["a"])
        self.assertEqual(self.store.get_event(self.provider.provider_id, "a").title, "Renamed")
        calendar = self.work_calendar()
        self.assertEqual((calendar.ctag, calendar.sync_token), ("ctag-2", "tok-2"))

    async def test_remote_deletion_is_a_single_delete_entry(self) -> None:
        self.client.put(_obj("a"))
        await self.engine.perform_full_sync(self.provider.provider_id)
        del self.client.objects[WORK][f"{WORK}a.ics"]
        self.client.bump(ctag="ctag-2")
        self.client.changes[WORK] = ChangeReport(deleted=[f"{WORK}a.ics"], new_sync_token="tok-2")

        with mock.patch.object(self.store, "sync_events", wraps=self.store.sync_events) as sync_events:
            result = await self.engine.perform_incremental_sync(self.provider.provider_id)

        self.assertTrue(result.ok, result.message)
        entries = sync_events.call_args.args[1]
        self.assertEqual([(entry.action, entry.provider_event_id) for entry in entries], [("delete", "a")])
        self.assertEqual(self.stored_ids(), [])

    async def test_override_removed_upstream_is_dropped(self) -> None:
        master = (
            "BEGIN:VEVENT\r\nUID:s1\r\nSUMMARY:Standup\r\n"
            "DTSTART:20260302T090000Z\r\nDTEND:20260302T093000Z\r\n"
            "RRULE:FREQ=WEEKLY\r\nEND:VEVENT\r\n"
        )
        override = (
            "BEGIN:VEVENT\r\nUID:s1\r\nSUMMARY:Standup (moved)\r\n"
            "RECURRENCE-ID:20260309T090000Z\r\n"
            "DTSTART:20260309T110000Z\r\nDTEND:20260309T113000Z\r\nEND:VEVENT\r\n"
        )
        header = "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:-//test//EN\r\n"
        href = f"{WORK}s1.ics"
        self.client.put(RemoteObject(href=href, data=f"{header}{master}{override}END:VCALENDAR\r\n", etag="e1"))
        await self.engine.perform_full_sync(self.provider.provider_id)
        self.assertEqual(self.stored_ids(), ["s1", "s1#20260309T090000Z"])

        self.client.bump(ctag="ctag-2")
        self.client.changes[WORK] = ChangeReport(
            modified=[RemoteObject(href=href, data=f"{header}{master}END:VCALENDAR\r\n", etag="e2")],
            new_sync_token="tok-2",
        )
        result = await self.engine.perform_incremental_sync(self.provider.provider_id)

        self.assertTrue(result.ok, result.message)
        self.assertEqual(self.stored_ids(), ["s1"])

    async def test_rejected_token_falls_back_to_full_sync(self) -> None:
        self.client.put(_obj("a"))
        await self.engine.perform_full_sync(self.provider.provider_id)

        self.client.put(_obj("c"))
        self.client.bump(ctag="ctag-3", sync_token="tok-3")
        self.client.fetch_changes_error = SyncTokenInvalidated(WORK, "tok-1", "valid-sync-token")
        self.client.calls.clear()

        result = await self.engine.perform_incremental_sync(self.provider.provider_id)

        self.assertTrue(result.ok, result.message)
        self.assertEqual(self.client.calls[1:], [("fetch_changes", WORK), ("fetch_all_objects", WORK)])
        self.assertEqual(self.stored_ids(), ["a", "c"])
        calendar = self.work_calendar()
        self.assertEqual((calendar.ctag, calendar.sync_token), ("ctag-3", "tok-3"))
        self.assertEqual(calendar.sync_state, CalendarSyncState.SYNCED)

    async def test_token_fallback_matches_direct_full_sync(self) -> None:
        self.client.put(_obj("a"))
        self.client.put(_obj("b", "Draft"))
        await self.engine.perform_full_sync(self.provider.provider_id)
        self.client.put(_obj("b", "Final"))
        self.client.bump(ctag="ctag-4", sync_token="tok-4")

        self.client.fetch_changes_error = SyncTokenInvalidated(WORK, "tok-1")
        await self.engine.perform_incremental_sync(self.provider.provider_id)
        via_fallback = [event.to_dict() for event in self.store.list_events(self.provider.provider_id)]

        await self.engine.perform_full_sync(self.provider.provider_id)
        via_full = [event.to_dict() for event in self.store.list_events(self.provider.provider_id)]

        self.assertEqual(via_fallback, via_full)

    async def test_repeated_sync_converges(self) -> None:
        self.client.put(_obj("a"))
        await self.engine.perform_full_sync(self.provider.provider_id)
        first = [event.to_dict() for event in self.store.list_events(self.provider.provider_id)]
        await self.engine.perform_full_sync(self.provider.provider_id)
        second = [event.to_dict() for event in self.store.list_events(self.provider.provider_id)]
        self.assertEqual(first, second)

    async def test_full_sync_never_deletes(self) -> None:
        self.client.put(_obj("a"))
        self.client.put(_obj("b"))
        await self.engine.perform_full_sync(self.provider.provider_id)
        del self.client.objects[WORK][f"{WORK}b.ics"]

        with mock.patch.object(self.store, "sync_events", wraps=self.store.sync_events) as sync_events:
            await self.engine.perform_full_sync(self.provider.provider_id)

        entries = sync_events.call_args.args[1]
        self.assertTrue(all(entry.action == "upsert" for entry in entries))
        self.assertEqual(self.stored_ids(), ["a", "b"])

    async def test_store_failure_keeps_cursor(self) -> None:
        self.client.put(_obj("a"))
        await self.engine.perform_full_sync(self.provider.provider_id)
        self.client.bump(ctag="ctag-5")
        self.client.changes[WORK] = ChangeReport(modified=[_obj("a", "Changed")], new_sync_token="tok-5")

        with mock.patch.object(self.store, "sync_events", side_effect=StoreApplyError("disk full")):
            result = await self.engine.perform_incremental_sync(self.provider.provider_id)

        self.assertFalse(result.ok)
        self.assertIn("disk full", result.message)
        calendar = self.work_calendar()
        self.assertEqual((calendar.ctag, calendar.sync_token), ("ctag-1", "tok-1"))
        self.assertEqual(calendar.sync_state, CalendarSyncState.FAILED)
        self.assertEqual(calendar.last_error, "disk full")

    async def test_transient_error_on_one_calendar_does_not_stop_others(self) -> None:
        self.client.calendars[HOME] = RemoteCalendar(calendar_id=HOME, display_name="Home", ctag="h1", sync_token="ht1")
        self.client.objects[HOME] = {}
        self.client.put(_obj("h", calendar_id=HOME), calendar_id=HOME)

        real_fetch = self.client.fetch_all_objects

        async def flaky_fetch(session, calendar_id):
            if calendar_id == WORK:
                raise TransientNetworkError("timed out")
            return await real_fetch(session, calendar_id)

        self.client.fetch_all_objects = flaky_fetch
        result = await self.engine.perform_full_sync(self.provider.provider_id)

        self.assertFalse(result.ok)
        self.assertEqual(result.calendars, {WORK: "failed", HOME: "synced"})
        self.assertEqual(self.stored_ids(HOME), ["h"])
        self.assertEqual(self.work_calendar().sync_state, CalendarSyncState.FAILED)
        self.assertIsNone(self.work_calendar().ctag)

    async def test_failed_calendar_recovers_and_clears_error(self) -> None:
        self.client.put(_obj("a"))
        self.client.fetch_all_error = TransientNetworkError("503")
        await self.engine.perform_full_sync(self.provider.provider_id)
        self.assertEqual(self.work_calendar().last_error, "503")

        self.client.fetch_all_error = None
        result = await self.engine.perform_incremental_sync(self.provider.provider_id)

        self.assertTrue(result.ok, result.message)
        self.assertEqual(self.work_calendar().sync_state, CalendarSyncState.SYNCED)
        self.assertIsNone(self.work_calendar().last_error)

    async def test_auth_failure_flags_reauth(self) -> None:
        self.client.auth_error = AuthError("401")

        result = await self.engine.perform_incremental_sync(self.provider.provider_id)

        self.assertFalse(result.ok)
        self.assertIn("authentication failed", result.message)
        self.assertTrue(self.store.get_provider(self.provider.provider_id).needs_reauth)
        runs = self.store.recent_sync_runs(provider_id=self.provider.provider_id)
        self.assertEqual(runs[0]["status"], "failed")

    async def test_undecryptable_credential_is_auth_failure(self) -> None:
        engine = SyncEngine(self.store, SecretBox("another-key"), client=self.client)
        result = await engine.perform_full_sync(self.provider.provider_id)
        self.assertFalse(result.ok)
        self.assertTrue(self.store.get_provider(self.provider.provider_id).needs_reauth)

    async def test_unknown_provider_returns_failure(self) -> None:
        result = await self.engine.perform_full_sync("nope")
        self.assertFalse(result.ok)
        self.assertIn("ProviderNotFoundError", result.message)

    async def test_unexpected_exception_is_reported_not_raised(self) -> None:
        self.client.fetch_all_error = RuntimeError("bug")
        with self.assertLogs("davsync.sync_engine", level="ERROR"):
            result = await self.engine.perform_full_sync(self.provider.provider_id)
        self.assertFalse(result.ok)
        self.assertEqual(self.work_calendar().sync_state, CalendarSyncState.FAILED)

    async def test_parse_skips_are_counted(self) -> None:
        self.client.put(_obj("a"))
        self.client.put(RemoteObject(href=f"{WORK}broken.ics", data="nonsense"))
        with self.assertLogs("davsync.normalizer", level="WARNING"):
            result = await self.engine.perform_full_sync(self.provider.provider_id)
        self.assertTrue(result.ok, result.message)
        self.assertEqual(result.parse_skips, 1)
        self.assertEqual(self.stored_ids(), ["a"])

    async def test_disabled_calendar_is_not_synced(self) -> None:
        await self.engine.perform_full_sync(self.provider.provider_id)
        self.store.update_calendar_settings(self.provider.provider_id, WORK, sync_enabled=False)
        self.client.bump(ctag="ctag-9")
        self.client.calls.clear()

        result = await self.engine.perform_incremental_sync(self.provider.provider_id)

        self.assertTrue(result.ok, result.message)
        self.assertEqual(result.calendars, {})
        self.assertEqual(self.client.calls, [("authenticate", "app-password")])


class OutboundTests(SyncEngineTestCase):
    async def asyncSetUp(self) -> None:
        self.client.calendars[HOME] = RemoteCalendar(calendar_id=HOME, display_name="Home")
        self.client.objects[HOME] = {}
        await self.engine.perform_full_sync(self.provider.provider_id)

    async def test_create_targets_primary_calendar_and_mints_uid(self) -> None:
        draft = EventDraft(
            title="Dentist",
            start=datetime(2026, 6, 1, 14, 0, tzinfo=timezone.utc),
            end=datetime(2026, 6, 1, 15, 0, tzinfo=timezone.utc),
        )
        result = await self.engine.create_or_update_remote_event(self.provider.provider_id, draft)

        self.assertTrue(result.ok, result.message)
        self.assertEqual(result.calendar_id, WORK)
        self.assertTrue(result.provider_event_id.endswith("@davsync"))
        calendar_id, uid, document = self.client.saved[0]
        self.assertEqual((calendar_id, uid), (WORK, result.provider_event_id))
        self.assertIn("SUMMARY:Dentist", document)
        self.assertEqual(result.remote_url, f"{WORK}{uid}.ics")

    async def test_update_keeps_uid_and_honours_calendar(self) -> None:
        draft = EventDraft(
            title="Dentist",
            start=datetime(2026, 6, 1, 14, 0, tzinfo=timezone.utc),
            end=datetime(2026, 6, 1, 15, 0, tzinfo=timezone.utc),
            provider_event_id="existing@example.com",
            calendar_id=HOME,
        )
        result = await self.engine.create_or_update_remote_event(self.provider.provider_id, draft)
        self.assertTrue(result.ok, result.message)
        self.assertEqual(self.client.saved[0][:2], (HOME, "existing@example.com"))

    async def test_override_ids_are_rejected(self) -> None:
        draft = EventDraft(
            title="Moved",
            start=datetime(2026, 6, 1, 14, 0, tzinfo=timezone.utc),
            end=datetime(2026, 6, 1, 15, 0, tzinfo=timezone.utc),
            provider_event_id="series@example.com#20260601T140000Z",
        )
        result = await self.engine.create_or_update_remote_event(self.provider.provider_id, draft)
        self.assertFalse(result.ok)
        self.assertEqual(self.client.saved, [])

        result = await self.engine.delete_remote_event(self.provider.provider_id, "series@example.com#20260601T140000Z")
        self.assertFalse(result.ok)
        self.assertEqual(self.client.deleted, [])

    async def test_delete_uses_stored_remote_url(self) -> None:
        self.client.put(_obj("a"))
        self.client.bump(ctag="ctag-2")
        await self.engine.perform_full_sync(self.provider.provider_id)

        result = await self.engine.delete_remote_event(self.provider.provider_id, "a")

        self.assertTrue(result.ok, result.message)
        self.assertEqual(self.client.deleted, [(WORK, "a", f"{WORK}a.ics")])

    async def test_delete_of_missing_remote_event(self) -> None:
        result = await self.engine.delete_remote_event(self.provider.provider_id, "missing", HOME)
        self.assertFalse(result.ok)
        self.assertEqual(result.message, "remote event not found")
        self.assertEqual(self.client.deleted, [(HOME, "missing", "")])

    async def test_outbound_auth_failure_is_returned(self) -> None:
        self.client.auth_error = AuthError("401")
        draft = EventDraft(
            title="x",
            start=datetime(2026, 6, 1, 14, 0, tzinfo=timezone.utc),
            end=datetime(2026, 6, 1, 15, 0, tzinfo=timezone.utc),
        )
        result = await self.engine.create_or_update_remote_event(self.provider.provider_id, draft)
        self.assertFalse(result.ok)
        self.assertIn("AuthError", result.message)


class StateMachineTests(unittest.TestCase):
    def _ctx(self, state: CalendarSyncState) -> tuple[SyncContext, CalendarRef]:
        calendar = CalendarRef(calendar_id=WORK, sync_state=state)
        provider = ProviderConnection(
            provider_id="p1",
            provider_type="caldav",
            username="u",
            server_url="https://dav.example.com/",
            credential=None,
            calendars=[calendar],
        )
        return SyncContext(provider=provider, mode=SyncMode.INCREMENTAL, normalizer=ICalendarNormalizer()), calendar

    def test_incremental_may_fall_back_to_full(self) -> None:
        ctx, calendar = self._ctx(CalendarSyncState.SYNCED)
        ctx.transition(calendar, CalendarSyncState.INCREMENTAL_SYNC_IN_FLIGHT)
        ctx.transition(calendar, CalendarSyncState.FULL_SYNC_IN_FLIGHT)
        ctx.transition(calendar, CalendarSyncState.SYNCED)
        self.assertEqual(ctx.state(calendar), CalendarSyncState.SYNCED)
        self.assertEqual(ctx.in_flight(), [])

    def test_illegal_transitions_raise(self) -> None:
        ctx, calendar = self._ctx(CalendarSyncState.UNSYNCED)
        with self.assertRaises(IllegalTransition):
            ctx.transition(calendar, CalendarSyncState.SYNCED)
        ctx.transition(calendar, CalendarSyncState.FULL_SYNC_IN_FLIGHT)
        self.assertEqual(ctx.in_flight(), [WORK])
        with self.assertRaises(IllegalTransition):
            ctx.transition(calendar, CalendarSyncState.INCREMENTAL_SYNC_IN_FLIGHT)

    def test_context_does_not_mutate_calendar(self) -> None:
        ctx, calendar = self._ctx(CalendarSyncState.FAILED)
        ctx.transition(calendar, CalendarSyncState.FULL_SYNC_IN_FLIGHT)
        self.assertEqual(calendar.sync_state, CalendarSyncState.FAILED)


class TargetCalendarTests(unittest.TestCase):
    def _provider(self, calendars: list[CalendarRef]) -> ProviderConnection:
        return ProviderConnection(
            provider_id="p1",
            provider_type="caldav",
            username="u",
            server_url="https://dav.example.com/",
            credential=None,
            calendars=calendars,
        )

    def test_explicit_then_primary_then_first_enabled(self) -> None:
        calendars = [
            CalendarRef(calendar_id="a", sync_enabled=False),
            CalendarRef(calendar_id="b"),
            CalendarRef(calendar_id="c", is_primary=True),
        ]
        self.assertEqual(select_target_calendar(self._provider(calendars), "a"), "a")
        self.assertEqual(select_target_calendar(self._provider(calendars)), "c")
        calendars[2].is_primary = False
        self.assertEqual(select_target_calendar(self._provider(calendars)), "b")

    def test_no_calendar_raises(self) -> None:
        with self.assertRaises(NoTargetCalendarError):
            select_target_calendar(self._provider([]))


if __name__ == "__main__":
    unittest.main()
