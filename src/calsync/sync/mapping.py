"""Translation between remote events and local events."""

from __future__ import annotations

from datetime import UTC, datetime, time, timedelta

from calsync.models import (
    Event,
    EventFields,
    ExternalCalendar,
    MirrorLink,
    RemoteEvent,
    RemoteEventTime,
    RemoteEventWrite,
)

DEFAULT_TITLE = "(No title)"
DEFAULT_EVENT_DURATION = timedelta(hours=1)
DEFAULT_TIME_ZONE = "UTC"


def _same_email(a: str | None, b: str | None) -> bool:
    if not a or not b:
        return False
    return a.strip().casefold() == b.strip().casefold()


def compute_is_editable(
    user_email: str | None,
    *,
    creator_email: str | None,
    organizer_email: str | None,
    guests_can_modify: bool | None,
) -> bool:
    """The local user may edit a remote item they created or organize, or one open to guests."""
    if _same_email(creator_email, user_email) or _same_email(organizer_email, user_email):
        return True
    return guests_can_modify is True


def parse_boundary(value: RemoteEventTime | None) -> datetime | None:
    """Timestamp of an event boundary; all-day dates are midnight UTC."""
    if value is None:
        return None
    if value.date_time is not None:
        parsed = datetime.fromisoformat(value.date_time.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed
    if value.date is not None:
        return datetime.fromisoformat(value.date).replace(tzinfo=UTC)
    return None


def remote_to_local(
    item: RemoteEvent,
    mapping: ExternalCalendar,
    *,
    user_email: str | None,
) -> EventFields | None:
    """Map a live remote item onto the local event shape.

    Returns None when the item has no id or no usable start boundary.
    """
    if item.id is None:
        return None
    start_at = parse_boundary(item.start)
    if start_at is None:
        return None
    end_at = parse_boundary(item.end) or start_at + DEFAULT_EVENT_DURATION
    if end_at < start_at:
        end_at = start_at

    all_day = bool(item.start and item.start.date and not item.start.date_time)
    time_zone = (item.start.time_zone if item.start else None) or (
        item.end.time_zone if item.end else None
    )
    is_editable = compute_is_editable(
        user_email,
        creator_email=item.creator_email,
        organizer_email=item.organizer_email,
        guests_can_modify=item.guests_can_modify,
    )
    return EventFields(
        user_id=mapping.user_id,
        calendar_id=mapping.local_calendar_id,
        title=item.summary or DEFAULT_TITLE,
        description=item.description,
        location=item.location,
        start_at=start_at,
        end_at=end_at,
        all_day=all_day,
        time_zone=time_zone,
        busy="free" if item.transparency == "transparent" else "busy",
        visibility="private" if item.visibility in ("private", "confidential") else "public",
        creator_email=item.creator_email,
        organizer_email=item.organizer_email,
        guests_can_modify=item.guests_can_modify,
        mirror=MirrorLink(
            provider=mapping.provider,
            remote_calendar_id=mapping.remote_calendar_id,
            remote_event_id=item.id,
            is_editable=is_editable,
            recurring_event_id=item.recurring_event_id,
        ),
    )


def _date_of(value: datetime) -> str:
    return value.astimezone(UTC).date().isoformat()


def event_boundary(event: Event, value: datetime) -> RemoteEventTime:
    """Provider time shape: date-only for all-day events, date-time plus zone otherwise."""
    if event.all_day:
        return RemoteEventTime(date=_date_of(value))
    return RemoteEventTime(
        date_time=value.isoformat(),
        time_zone=event.time_zone or DEFAULT_TIME_ZONE,
    )


def _all_day_end(event: Event) -> datetime:
    # All-day end dates are exclusive; a same-day event ends the next midnight.
    if event.end_at <= event.start_at:
        return datetime.combine(event.start_at.astimezone(UTC).date(), time(), UTC) + timedelta(
            days=1
        )
    return event.end_at


TIME_FIELDS = frozenset({"start_at", "end_at", "all_day", "time_zone"})


def local_to_remote(event: Event, changed: frozenset[str] | None = None) -> RemoteEventWrite:
    """Build an insert body (``changed`` is None) or a patch of the *changed* fields."""
    full = changed is None
    body = RemoteEventWrite()
    if full or "title" in changed:
        body.summary = event.title
    if full or "description" in changed:
        body.description = event.description or ""
    if full or "location" in changed:
        body.location = event.location or ""
    if full or changed & TIME_FIELDS:
        end_at = _all_day_end(event) if event.all_day else event.end_at
        body.start = event_boundary(event, event.start_at)
        body.end = event_boundary(event, end_at)
    return body
