from __future__ import annotations

import posixpath
from dataclasses import dataclass, field
from typing import Iterable, Mapping
from urllib.parse import unquote, urlsplit

from davsync.errors import ParseError
from davsync.models import CalendarRef, ChangeEntry, ChangeReport, RemoteObject
from davsync.normalizer import Normalizer


@dataclass
class ChangeSet:
    entries: list[ChangeEntry] = field(default_factory=list)
    skipped: list[ParseError] = field(default_factory=list)

    @property
    def upserts(self) -> list[ChangeEntry]:
        return [entry for entry in self.entries if entry.action == "upsert"]

    @property
    def deletes(self) -> list[ChangeEntry]:
        return [entry for entry in self.entries if entry.action == "delete"]

    def __len__(self) -> int:
        return len(self.entries)


def href_key(href: str) -> str:
    return urlsplit(str(href or "")).path.rstrip("/")


def event_id_from_href(href: str) -> str:
    name = unquote(posixpath.basename(href_key(href)))
    if name.lower().endswith(".ics"):
        name = name[: -len(".ics")]
    return name


def upserts_for(
    objects: Iterable[RemoteObject], calendar: CalendarRef, normalizer: Normalizer
) -> ChangeSet:
    change_set = ChangeSet()
    for obj in objects:
        events, skipped = normalizer.parse_with_report(obj, calendar)
        change_set.skipped.extend(skipped)
        change_set.entries.extend(ChangeEntry.upsert(event) for event in events)
    return change_set


def full_sync_changes(
    objects: Iterable[RemoteObject], calendar: CalendarRef, normalizer: Normalizer
) -> ChangeSet:
    """Upserts for every event found; absence from the fetch never deletes."""
    return upserts_for(objects, calendar, normalizer)


def incremental_changes(
    report: ChangeReport,
    calendar: CalendarRef,
    normalizer: Normalizer,
    known_hrefs: Mapping[str, str],
) -> ChangeSet:
    """Upserts for added/modified objects, deletes for reported removals.

    `known_hrefs` maps `href_key(remote_url)` to the stored provider event id;
    unknown hrefs fall back to the resource name without its `.ics` suffix.
    """
    change_set = upserts_for([*report.added, *report.modified], calendar, normalizer)
    seen: set[str] = set()
    for href in report.deleted:
        provider_event_id = known_hrefs.get(href_key(href)) or event_id_from_href(href)
        if not provider_event_id or provider_event_id in seen:
            continue
        seen.add(provider_event_id)
        change_set.entries.append(ChangeEntry.delete(provider_event_id))
    return change_set
