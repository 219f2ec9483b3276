from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent
from icalendar.prop import vRecur

from davsync.caldav_client import data_hash
from davsync.errors import ParseError, UnsupportedProviderError
from davsync.models import (
    Attendee,
    CalendarRef,
    CanonicalEvent,
    EventDraft,
    EventMetadata,
    Organizer,
    Recurrence,
    Reminder,
    RemoteObject,
    date_to_datetime,
    parse_iso_datetime,
)


logger = logging.getLogger(__name__)

PRODID = "-//davsync//CalDAV Sync//EN"
UID_DOMAIN = "davsync"
OVERRIDE_SEPARATOR = "#"

_EVENT_STATUS = {"CONFIRMED": "confirmed", "TENTATIVE": "tentative", "CANCELLED": "cancelled"}
_PARTSTAT = {
    "ACCEPTED": "accepted",
    "DECLINED": "declined",
    "TENTATIVE": "tentative",
    "NEEDS-ACTION": "needsAction",
}
_TRANSPARENCY = {"OPAQUE": "opaque", "TRANSPARENT": "transparent"}
_CRITICAL_PROPERTIES = {"UID", "DTSTART", "DTEND", "DURATION", "RECURRENCE-ID", "RRULE"}


class Normalizer(Protocol):
    def parse_with_report(
        self, obj: RemoteObject, calendar: CalendarRef
    ) -> tuple[list[CanonicalEvent], list[ParseError]]: ...

    def parse(self, obj: RemoteObject, calendar: CalendarRef) -> list[CanonicalEvent]: ...

    def build_document(self, draft: EventDraft, uid: str) -> str: ...


def mint_uid() -> str:
    return f"{uuid.uuid4().hex}@{UID_DOMAIN}"


def override_event_id(uid: str, recurrence_id: datetime) -> str:
    stamp = recurrence_id.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return f"{uid}{OVERRIDE_SEPARATOR}{stamp}"


def is_override_event_id(provider_event_id: str) -> bool:
    return OVERRIDE_SEPARATOR in provider_event_id


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _strip_mailto(value: Any) -> str:
    text = str(value or "").strip()
    if text.lower().startswith("mailto:"):
        return text[len("mailto:") :]
    return text


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _document_timezone(calendar_obj: ICalendar) -> tzinfo:
    name = _text(calendar_obj.get("X-WR-TIMEZONE"))
    if name:
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.debug("ignoring unknown X-WR-TIMEZONE %r", name)
    return timezone.utc


def _to_instant(value: date | datetime, default_tz: tzinfo) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=default_tz)
        return value
    return date_to_datetime(value)


def map_event_status(value: Any) -> str | None:
    text = _text(value)
    if text is None:
        return None
    return _EVENT_STATUS.get(text.upper(), "unknown")


def map_attendee_status(value: Any) -> str:
    text = _text(value)
    if text is None:
        return "needsAction"
    return _PARTSTAT.get(text.upper(), "unknown")


class ICalendarNormalizer:
    """Turns iCalendar documents into canonical events and back."""

    def parse(self, obj: RemoteObject, calendar: CalendarRef) -> list[CanonicalEvent]:
        events, _skipped = self.parse_with_report(obj, calendar)
        return events

    def parse_with_report(
        self, obj: RemoteObject, calendar: CalendarRef
    ) -> tuple[list[CanonicalEvent], list[ParseError]]:
        try:
            calendar_obj = ICalendar.from_ical(obj.data)
        except ValueError as exc:
            skip = ParseError(f"unreadable calendar document: {exc}", href=obj.href)
            logger.warning("skipping %s: %s", obj.href, skip)
            return [], [skip]

        default_tz = _document_timezone(calendar_obj)
        etag = obj.etag or data_hash(obj.data)
        events: list[CanonicalEvent] = []
        skipped: list[ParseError] = []
        for vevent in calendar_obj.walk("VEVENT"):
            try:
                events.append(self._parse_vevent(vevent, obj, calendar, etag, default_tz))
            except ParseError as exc:
                skipped.append(exc)
                logger.warning("skipping component in %s: %s", obj.href, exc)
            except (ValueError, TypeError, KeyError, AttributeError) as exc:
                skip = ParseError(str(exc) or type(exc).__name__, href=obj.href, uid=_text(vevent.get("UID")) or "")
                skipped.append(skip)
                logger.warning("skipping component in %s: %s", obj.href, skip)
        return events, skipped

    def _parse_vevent(
        self,
        vevent: ICEvent,
        obj: RemoteObject,
        calendar: CalendarRef,
        etag: str,
        default_tz: tzinfo,
    ) -> CanonicalEvent:
        uid = _text(vevent.get("UID")) or ""
        broken = sorted({name for name, _msg in getattr(vevent, "errors", []) if name in _CRITICAL_PROPERTIES})
        if broken:
            raise ParseError(f"malformed {', '.join(broken)}", href=obj.href, uid=uid)
        if not uid:
            raise ParseError("VEVENT without UID", href=obj.href)
        if vevent.get("DTSTART") is None:
            raise ParseError("VEVENT without DTSTART", href=obj.href, uid=uid)

        dtstart_raw = vevent.decoded("DTSTART")
        all_day = isinstance(dtstart_raw, date) and not isinstance(dtstart_raw, datetime)
        start = _to_instant(dtstart_raw, default_tz)
        end = self._resolve_end(vevent, start, all_day, default_tz)
        if end < start:
            raise ParseError("DTEND precedes DTSTART", href=obj.href, uid=uid)

        provider_event_id = uid
        recurrence_id = None
        if vevent.get("RECURRENCE-ID") is not None:
            recurrence_id = _to_instant(vevent.decoded("RECURRENCE-ID"), default_tz)
            provider_event_id = override_event_id(uid, recurrence_id)

        return CanonicalEvent(
            provider_event_id=provider_event_id,
            series_id=uid,
            title=_text(vevent.get("SUMMARY")),
            description=_text(vevent.get("DESCRIPTION")),
            start=start,
            end=end,
            all_day=all_day,
            location=_text(vevent.get("LOCATION")),
            status=map_event_status(vevent.get("STATUS")),
            recurrence=self._recurrence(vevent, default_tz),
            recurrence_id=recurrence_id,
            reminders=self._reminders(vevent, start, obj.href),
            attendees=self._attendees(vevent),
            organizer=self._organizer(vevent),
            transparency=_TRANSPARENCY.get((_text(vevent.get("TRANSP")) or "").upper()),
            etag=etag,
            metadata=EventMetadata(
                calendar_id=calendar.calendar_id,
                calendar_name=calendar.display_name,
                remote_url=obj.href,
            ),
        )

    @staticmethod
    def _resolve_end(vevent: ICEvent, start: datetime, all_day: bool, default_tz: tzinfo) -> datetime:
        if vevent.get("DTEND") is not None:
            return _to_instant(vevent.decoded("DTEND"), default_tz)
        if vevent.get("DURATION") is not None:
            duration = vevent.decoded("DURATION")
            if isinstance(duration, timedelta):
                return start + duration
        if all_day:
            return start + timedelta(days=1)
        return start

    @staticmethod
    def _recurrence(vevent: ICEvent, default_tz: tzinfo) -> Recurrence | None:
        rules = _as_list(vevent.get("RRULE"))
        if not rules:
            return None
        if len(rules) > 1:
            logger.warning("%s has %d RRULEs; keeping the first", _text(vevent.get("UID")), len(rules))
        rrule = rules[0]
        if not isinstance(rrule, vRecur):
            raise ValueError(f"unparseable RRULE: {rrule}")
        exceptions: set[datetime] = set()
        for exdate in _as_list(vevent.get("EXDATE")):
            for value in getattr(exdate, "dts", []):
                exceptions.add(_to_instant(value.dt, default_tz))
        return Recurrence(
            rule=rrule.to_ical().decode("utf-8"),
            exceptions=sorted(exceptions),
        )

    @staticmethod
    def _reminders(vevent: ICEvent, start: datetime, href: str) -> list[Reminder]:
        reminders: list[Reminder] = []
        for valarm in vevent.walk("VALARM"):
            try:
                if valarm.get("TRIGGER") is None:
                    continue
                trigger = valarm.decoded("TRIGGER")
                if isinstance(trigger, timedelta):
                    seconds = -trigger.total_seconds()
                elif isinstance(trigger, datetime):
                    seconds = (start - _to_instant(trigger, timezone.utc)).total_seconds()
                else:
                    continue
                action = (_text(valarm.get("ACTION")) or "").upper()
                reminders.append(
                    Reminder(
                        type="email" if action == "EMAIL" else "notification",
                        minutes_before=max(0, int(seconds // 60)),
                    )
                )
            except (ValueError, TypeError) as exc:
                logger.warning("skipping alarm in %s: %s", href, exc)
        return reminders

    @staticmethod
    def _attendees(vevent: ICEvent) -> list[Attendee]:
        attendees: list[Attendee] = []
        for prop in _as_list(vevent.get("ATTENDEE")):
            email = _strip_mailto(prop)
            if not email:
                continue
            params = getattr(prop, "params", {})
            attendees.append(
                Attendee(
                    email=email,
                    name=_text(params.get("CN")),
                    status=map_attendee_status(params.get("PARTSTAT")),
                    optional=str(params.get("ROLE", "")).upper() == "OPT-PARTICIPANT",
                )
            )
        return attendees

    @staticmethod
    def _organizer(vevent: ICEvent) -> Organizer | None:
        prop = vevent.get("ORGANIZER")
        if prop is None:
            return None
        email = _strip_mailto(prop)
        if not email:
            return None
        params = getattr(prop, "params", {})
        return Organizer(email=email, name=_text(params.get("CN")))

    def build_document(self, draft: EventDraft, uid: str) -> str:
        calendar_obj = ICalendar()
        calendar_obj.add("PRODID", PRODID)
        calendar_obj.add("VERSION", "2.0")
        vevent = ICEvent()
        vevent.add("UID", uid)
        vevent.add("SUMMARY", draft.title)
        if draft.description:
            vevent.add("DESCRIPTION", draft.description)
        if draft.location:
            vevent.add("LOCATION", draft.location)
        if draft.all_day:
            vevent.add("DTSTART", draft.start.date())
            vevent.add("DTEND", draft.end.date())
        else:
            vevent.add("DTSTART", parse_iso_datetime(draft.start))
            vevent.add("DTEND", parse_iso_datetime(draft.end))
        vevent.add("DTSTAMP", datetime.now(timezone.utc))
        calendar_obj.add_component(vevent)
        return calendar_obj.to_ical().decode("utf-8")


_NORMALIZERS: dict[str, Normalizer] = {
    "caldav": ICalendarNormalizer(),
    "apple": ICalendarNormalizer(),
}


def normalizer_for(provider_type: str) -> Normalizer:
    try:
        return _NORMALIZERS[provider_type]
    except KeyError:
        raise UnsupportedProviderError(f"no normalizer for provider type {provider_type!r}") from None
