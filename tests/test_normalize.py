"""Tests for mapping Google events onto mirrored events."""

from datetime import datetime, timezone

import pytest

from labcal.errors import EventNormalizationError
from labcal.models import SyncStatus
from labcal.sync.normalize import map_response_status, map_visibility, normalize_google_event

from helpers import google_event


def test_timed_event():
    event = google_event(
        "evt-1",
        summary="Group meeting",
        description="Agenda attached",
        location="Room 2.14",
        attendees=[
            {"email": "pi@example.org", "displayName": "PI", "responseStatus": "accepted"},
            {"email": "student@example.org", "responseStatus": "needsAction"},
            {"displayName": "No email"},
        ],
        reminders={"useDefault": False, "overrides": [{"method": "email", "minutes": 30}]},
        visibility="private",
        extendedProperties={"private": {"x": "dropped"}},
    )

    mirrored = normalize_google_event(event, "google-c1", "primary", owner_id=1)

    assert mirrored.external_id == "evt-1"
    assert mirrored.title == "Group meeting"
    assert mirrored.start == datetime(2026, 10, 20, 9, 0, tzinfo=timezone.utc)
    assert mirrored.end == datetime(2026, 10, 20, 10, 0, tzinfo=timezone.utc)
    assert not mirrored.is_all_day
    assert [(a.email, a.response) for a in mirrored.attendees] == [
        ("pi@example.org", "accepted"),
        ("student@example.org", "none"),
    ]
    assert mirrored.reminders[0].method == "email"
    assert mirrored.reminders[0].minutes_before == 30
    assert mirrored.visibility == "private"
    assert mirrored.read_only is True
    assert mirrored.sync_status == SyncStatus.SYNCED
    assert mirrored.external_url == "https://calendar.google.com/event?eid=evt-1"
    assert not hasattr(mirrored, "extendedProperties")


def test_all_day_event():
    event = google_event("evt-2", start={"date": "2026-12-24"}, end={"date": "2026-12-25"})

    mirrored = normalize_google_event(event, "google-c1", "primary", owner_id=1)

    assert mirrored.is_all_day
    assert mirrored.start == datetime(2026, 12, 24, tzinfo=timezone.utc)
    assert mirrored.end == datetime(2026, 12, 25, tzinfo=timezone.utc)


def test_offset_datetimes_are_preserved():
    event = google_event(
        "evt-3",
        start={"dateTime": "2026-10-20T09:00:00+02:00"},
        end={"dateTime": "2026-10-20T10:00:00+02:00"},
    )

    mirrored = normalize_google_event(event, "google-c1", "primary", owner_id=1)

    assert mirrored.start == datetime(2026, 10, 20, 7, 0, tzinfo=timezone.utc)


def test_missing_title_gets_placeholder():
    event = google_event("evt-4")
    del event["summary"]

    assert normalize_google_event(event, "google-c1", "primary", owner_id=1).title == "(No title)"


def test_missing_start_is_rejected():
    event = google_event("evt-5", start={})

    with pytest.raises(EventNormalizationError):
        normalize_google_event(event, "google-c1", "primary", owner_id=1)


@pytest.mark.parametrize(
    "visibility, expected",
    [("private", "private"), ("confidential", "private"), ("public", "organisation"), ("default", "lab"), (None, "lab")],
)
def test_map_visibility(visibility, expected):
    assert map_visibility(visibility) == expected


def test_map_response_status():
    assert map_response_status("tentative") == "tentative"
    assert map_response_status("needsAction") == "none"
