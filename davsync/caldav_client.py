from __future__ import annotations

import asyncio
import contextlib
import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterator, TypeVar

import caldav
from caldav.elements import dav
from caldav.elements.base import ValuedBaseElement
from caldav.lib import error as dav_error
from icalendar import Calendar as ICalendar

from davsync.errors import AuthError, SyncTokenInvalidated, TransientNetworkError
from davsync.models import ChangeReport, RemoteCalendar, RemoteObject


logger = logging.getLogger(__name__)

T = TypeVar("T")


class GetCTag(ValuedBaseElement):
    tag = "{http://calendarserver.org/ns/}getctag"


class SyncToken(ValuedBaseElement):
    tag = "{DAV:}sync-token"


class CalendarColor(ValuedBaseElement):
    tag = "{http://apple.com/ns/ical/}calendar-color"


def data_hash(raw_ical: str) -> str:
    return hashlib.sha1(raw_ical.encode("utf-8")).hexdigest()  # nosec B324


def normalize_calendar_id(value: str) -> str:
    return str(value or "").strip().rstrip("/")


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _extract_uid_from_raw_ical(raw_data: Any) -> str:
    try:
        calendar_obj = ICalendar.from_ical(_decode_raw_ical(raw_data))
    except ValueError:
        return ""
    for component in calendar_obj.walk("VEVENT"):
        return str(component.get("UID", "")).strip()
    return ""


def _prop_text(props: dict[str, Any], tag: str) -> str | None:
    value = props.get(tag)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _resource_etag(resource: Any) -> str:
    props = getattr(resource, "props", None) or {}
    etag = props.get(dav.GetEtag.tag) if isinstance(props, dict) else None
    return str(etag or "").strip('"')


@contextlib.contextmanager
def translate_errors(action: str) -> Iterator[None]:
    """Map caldav and transport failures onto the sync error taxonomy."""
    try:
        yield
    except dav_error.AuthorizationError as exc:
        raise AuthError(f"{action}: server rejected credentials") from exc
    except dav_error.DAVError as exc:
        raise TransientNetworkError(f"{action}: {exc}") from exc
    except OSError as exc:
        # requests' ConnectionError and Timeout derive from IOError.
        raise TransientNetworkError(f"{action}: {exc}") from exc


@dataclass
class CalDAVCredential:
    server_url: str
    username: str
    password: str


@dataclass
class CalDAVSession:
    client: Any
    principal: Any
    calendars: dict[str, Any]


class CalDAVClient:
    """Awaitable CalDAV protocol boundary.

    Every blocking `caldav` call runs in a worker thread. The client holds no
    sync state; callers pass the session returned by `authenticate`.
    """

    def __init__(self, timeout_seconds: int = 30) -> None:
        self.timeout_seconds = timeout_seconds

    async def _run(self, action: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        with translate_errors(action):
            return await asyncio.to_thread(func, *args, **kwargs)

    async def authenticate(self, credential: CalDAVCredential) -> CalDAVSession:
        if not credential.server_url or not credential.username:
            raise AuthError("CalDAV connection is incomplete.")

        def _connect() -> CalDAVSession:
            client = caldav.DAVClient(
                url=credential.server_url,
                username=credential.username,
                password=credential.password,
                timeout=self.timeout_seconds,
            )
            principal = client.principal()
            return CalDAVSession(client=client, principal=principal, calendars={})

        session = await self._run("authenticate", _connect)
        logger.debug("authenticated %s against %s", credential.username, credential.server_url)
        return session

    async def discover_calendars(self, session: CalDAVSession) -> list[RemoteCalendar]:
        def _discover() -> list[RemoteCalendar]:
            session.calendars = {}
            discovered: list[RemoteCalendar] = []
            for calendar in session.principal.calendars():
                calendar_id = str(calendar.url)
                session.calendars[normalize_calendar_id(calendar_id)] = calendar
                props = calendar.get_properties(
                    [dav.DisplayName(), GetCTag(), SyncToken(), CalendarColor()]
                )
                discovered.append(
                    RemoteCalendar(
                        calendar_id=calendar_id,
                        display_name=_prop_text(props, dav.DisplayName.tag) or calendar_id,
                        color=_prop_text(props, CalendarColor.tag),
                        ctag=_prop_text(props, GetCTag.tag),
                        sync_token=_prop_text(props, SyncToken.tag),
                    )
                )
            return discovered

        return await self._run("discover calendars", _discover)

    def _get_calendar(self, session: CalDAVSession, calendar_id: str) -> Any:
        key = normalize_calendar_id(calendar_id)
        calendar = session.calendars.get(key)
        if calendar is None:
            calendar = session.client.calendar(url=calendar_id)
            session.calendars[key] = calendar
        return calendar

    async def fetch_all_objects(self, session: CalDAVSession, calendar_id: str) -> list[RemoteObject]:
        def _fetch() -> list[RemoteObject]:
            calendar = self._get_calendar(session, calendar_id)
            objects: list[RemoteObject] = []
            for resource in calendar.events():
                if resource.data is None:
                    continue
                objects.append(
                    RemoteObject(
                        href=str(resource.url),
                        data=_decode_raw_ical(resource.data),
                        etag=_resource_etag(resource),
                    )
                )
            return objects

        objects = await self._run(f"fetch objects of {calendar_id}", _fetch)
        logger.debug("fetched %d objects from %s", len(objects), calendar_id)
        return objects

    async def fetch_changes(
        self, session: CalDAVSession, calendar_id: str, sync_token: str
    ) -> ChangeReport:
        def _fetch() -> ChangeReport:
            calendar = self._get_calendar(session, calendar_id)
            try:
                collection = calendar.objects_by_sync_token(sync_token=sync_token, load_objects=True)
            except dav_error.AuthorizationError:
                raise
            except (dav_error.ReportError, dav_error.NotFoundError) as exc:
                raise SyncTokenInvalidated(calendar_id, sync_token, str(exc)) from exc
            report = ChangeReport(new_sync_token=getattr(collection, "sync_token", None) or None)
            for resource in collection:
                href = str(resource.url)
                if resource.data is None:
                    report.deleted.append(href)
                    continue
                report.modified.append(
                    RemoteObject(
                        href=href,
                        data=_decode_raw_ical(resource.data),
                        etag=_resource_etag(resource),
                    )
                )
            return report

        report = await self._run(f"fetch changes of {calendar_id}", _fetch)
        logger.debug(
            "change report for %s: %d modified, %d deleted",
            calendar_id,
            len(report.modified),
            len(report.deleted),
        )
        return report

    def _find_resource_by_uid(self, calendar: Any, uid: str) -> Any:
        if not uid:
            return None
        try:
            resource = calendar.event_by_uid(uid)
            if isinstance(resource, list):
                resource = resource[0] if resource else None
            if resource is not None:
                return resource
        except dav_error.NotFoundError:
            pass

        for resource in calendar.events():
            if _extract_uid_from_raw_ical(getattr(resource, "data", "")) == uid:
                return resource
        return None

    async def create_object(
        self, session: CalDAVSession, calendar_id: str, uid: str, document: str
    ) -> str:
        def _save() -> str:
            calendar = self._get_calendar(session, calendar_id)
            existing = self._find_resource_by_uid(calendar, uid)
            if existing is not None:
                existing.data = document
                existing.save()
                return str(existing.url)
            created = calendar.save_event(document)
            return str(created.url)

        href = await self._run(f"save {uid} to {calendar_id}", _save)
        logger.info("saved remote object %s", href)
        return href

    async def delete_object(
        self, session: CalDAVSession, calendar_id: str, uid: str, href: str = ""
    ) -> bool:
        def _delete() -> bool:
            calendar = self._get_calendar(session, calendar_id)
            resource = None
            if href:
                try:
                    resource = calendar.event_by_url(href)
                    resource.load()
                except dav_error.NotFoundError:
                    resource = None
            if resource is None:
                resource = self._find_resource_by_uid(calendar, uid)
            if resource is None:
                return False
            resource.delete()
            return True

        deleted = await self._run(f"delete {uid} from {calendar_id}", _delete)
        if deleted:
            logger.info("deleted remote object %s from %s", uid, calendar_id)
        else:
            logger.info("remote object %s not found in %s", uid, calendar_id)
        return deleted
