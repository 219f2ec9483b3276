import unittest

from davsync.models import CalendarRef, ChangeReport, RemoteObject
from davsync.normalizer import ICalendarNormalizer
from davsync.reconciler import event_id_from_href, full_sync_changes, href_key, incremental_changes


CALENDAR = CalendarRef(calendar_id="https://dav.example.com/cal/home/", display_name="Home")


def _ics(uid: str, summary: str = "Event") -> str:
    return (
        "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:-//test//EN\r\n"
        "BEGIN:VEVENT\r\n"
        f"UID:{uid}\r\nSUMMARY:{summary}\r\n"
        "DTSTART:20260310T080000Z\r\nDTEND:20260310T090000Z\r\n"
        "END:VEVENT\r\nEND:VCALENDAR\r\n"
    )


class ReconcilerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.normalizer = ICalendarNormalizer()

    def test_full_sync_only_upserts(self) -> None:
        objects = [
            RemoteObject(href="/cal/home/a.ics", data=_ics("a")),
            RemoteObject(href="/cal/home/b.ics", data=_ics("b")),
        ]
        change_set = full_sync_changes(objects, CALENDAR, self.normalizer)

        self.assertEqual(len(change_set), 2)
        self.assertEqual(change_set.deletes, [])
        self.assertEqual([entry.provider_event_id for entry in change_set.upserts], ["a", "b"])

    def test_incremental_emits_one_delete_per_removed_object(self) -> None:
        report = ChangeReport(
            modified=[RemoteObject(href="/cal/home/kept.ics", data=_ics("kept", "Renamed"))],
            deleted=[
                "https://dav.example.com/cal/home/gone.ics",
                "/cal/home/gone.ics",
            ],
            new_sync_token="token-2",
        )
        change_set = incremental_changes(
            report,
            CALENDAR,
            self.normalizer,
            known_hrefs={"/cal/home/gone.ics": "gone-uid@example.com"},
        )

        self.assertEqual(len(change_set.deletes), 1)
        self.assertEqual(change_set.deletes[0].provider_event_id, "gone-uid@example.com")
        self.assertEqual(len(change_set.upserts), 1)
        self.assertEqual(change_set.upserts[0].event.title, "Renamed")

    def test_unknown_deleted_href_falls_back_to_resource_name(self) -> None:
        report = ChangeReport(deleted=["/cal/home/some%20event.ics"])
        change_set = incremental_changes(report, CALENDAR, self.normalizer, known_hrefs={})
        self.assertEqual([entry.provider_event_id for entry in change_set.deletes], ["some event"])

    def test_unparseable_objects_are_reported_not_applied(self) -> None:
        report = ChangeReport(
            added=[RemoteObject(href="/cal/home/broken.ics", data="garbage")],
            modified=[RemoteObject(href="/cal/home/ok.ics", data=_ics("ok"))],
        )
        with self.assertLogs("davsync.normalizer", level="WARNING"):
            change_set = incremental_changes(report, CALENDAR, self.normalizer, known_hrefs={})

        self.assertEqual([entry.provider_event_id for entry in change_set.entries], ["ok"])
        self.assertEqual(len(change_set.skipped), 1)

    def test_href_helpers(self) -> None:
        self.assertEqual(href_key("https://dav.example.com/cal/home/x.ics"), "/cal/home/x.ics")
        self.assertEqual(href_key("/cal/home/"), "/cal/home")
        self.assertEqual(event_id_from_href("/cal/home/x.ICS"), "x")
        self.assertEqual(event_id_from_href("/cal/home/plain"), "plain")


if __name__ == "__main__":
    unittest.main()
