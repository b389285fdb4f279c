"""Mapping of Google Calendar events onto the mirrored event shape."""

from datetime import date, datetime, time, timezone
from typing import Optional

from labcal.errors import EventNormalizationError
from labcal.models import Attendee, MirroredEvent, Reminder, SyncStatus

CALENDAR_SOURCE = "google"

_RESPONSE_STATUS = {
    "accepted": "accepted",
    "declined": "declined",
    "tentative": "tentative",
}

# Google: default, public, private, confidential
_VISIBILITY = {
    "private": "private",
    "confidential": "private",
    "public": "organisation",
}


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_boundary(boundary: dict) -> tuple[Optional[datetime], bool]:
    """Return (instant, is_all_day) for a Google start/end object."""
    if boundary.get("dateTime"):
        return _parse_datetime(boundary["dateTime"]), False
    if boundary.get("date"):
        day = date.fromisoformat(boundary["date"])
        return datetime.combine(day, time.min, tzinfo=timezone.utc), True
    return None, False


def map_response_status(status: Optional[str]) -> str:
    return _RESPONSE_STATUS.get(status or "", "none")


def map_visibility(visibility: Optional[str]) -> str:
    return _VISIBILITY.get(visibility or "", "lab")


def normalize_google_event(
    event: dict,
    connection_id: str,
    calendar_id: str,
    owner_id: int,
    synced_at: Optional[datetime] = None,
) -> MirroredEvent:
    """
    Build a mirrored event from a Google event resource.

    Fields we do not map are dropped. Provider-sourced events are always
    read-only; ``external_url`` points at the event in Google Calendar so the
    user can edit it there.

    Raises:
        EventNormalizationError: the event has no usable start or end
    """
    if not event.get("id"):
        raise EventNormalizationError("Event has no id")

    start, start_all_day = _parse_boundary(event.get("start") or {})
    end, _ = _parse_boundary(event.get("end") or {})
    if start is None or end is None:
        raise EventNormalizationError(f"Event {event['id']} missing start or end time")

    attendees = [
        Attendee(
            email=attendee.get("email", ""),
            display_name=attendee.get("displayName"),
            response=map_response_status(attendee.get("responseStatus")),
        )
        for attendee in event.get("attendees", [])
        if attendee.get("email")
    ]

    reminders = [
        Reminder(method=override.get("method", "popup"), minutes_before=int(override.get("minutes", 0)))
        for override in (event.get("reminders") or {}).get("overrides", [])
    ]

    return MirroredEvent(
        connection_id=connection_id,
        external_id=event["id"],
        calendar_id=calendar_id,
        owner_id=owner_id,
        calendar_source=CALENDAR_SOURCE,
        title=event.get("summary") or "(No title)",
        description=event.get("description") or "",
        location=event.get("location") or "",
        start=start,
        end=end,
        is_all_day=start_all_day,
        attendees=attendees,
        reminders=reminders,
        visibility=map_visibility(event.get("visibility")),
        read_only=True,
        sync_status=SyncStatus.SYNCED,
        last_synced_at=synced_at or datetime.now(timezone.utc),
        external_url=event.get("htmlLink") or "",
        remote_created_at=_parse_datetime(event.get("created")),
        remote_updated_at=_parse_datetime(event.get("updated")),
    )
