"""Summary aggregation: apportions tracked time to languages, projects, files, hours and days."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable

from pydantic import BaseModel, Field

from hackhours.db import Event, Session, Store, get_events_in_range, get_sessions_in_range
from hackhours.errors import InvalidRange
from hackhours.timeutil import date_key, hour_of, minutes_to_ms, now_ms, validate_range

HOURS_PER_DAY = 24


def _empty_hours() -> list[int]:
    return [0] * HOURS_PER_DAY


class Summary(BaseModel):
    """Time apportioned over a query window. All values are milliseconds."""

    total_time_ms: int = 0
    files_edited: dict[str, int] = Field(default_factory=dict)
    languages: dict[str, int] = Field(default_factory=dict)
    projects: dict[str, int] = Field(default_factory=dict)
    activity_by_day: dict[str, int] = Field(default_factory=dict)
    activity_by_hour: list[int] = Field(default_factory=_empty_hours)
    activity_by_hour_by_language: dict[str, list[int]] = Field(default_factory=dict)


def summarize(
    events: Iterable[Event],
    sessions: Iterable[Session],
    start: int,
    end: int,
    idle_cap_ms: int,
    now: int,
) -> Summary:
    """Apportion time to buckets for the window [start, end].

    Each event is credited with the time until the next event of its
    session, or until the session's end (``now`` for open sessions or
    sessions not supplied), clipped to ``end`` and capped at
    ``idle_cap_ms``. ``total_time_ms`` is the sum of these credits, so every
    breakdown sums to it exactly.

    Args:
        events: Events already fetched for the window.
        sessions: Sessions overlapping the window.
        start: Window start in ms (inclusive).
        end: Window end in ms (inclusive).
        idle_cap_ms: Most time a single event may be credited with.
        now: Current time in ms, used as the end of open sessions.

    Returns:
        The Summary.

    Raises:
        InvalidRange: If the window is malformed or the cap is negative.
    """
    validate_range(start, end)
    if idle_cap_ms < 0:
        raise InvalidRange(start, end, f"idle cap must not be negative, got {idle_cap_ms}")

    session_ends = {s.session_id: s.end_timestamp for s in sessions}
    # dicts keep arrival order, and sorted() is stable
    events_by_session: dict[str, list[Event]] = defaultdict(list)
    for event in events:
        events_by_session[event.session_id].append(event)

    total = 0
    files: dict[str, int] = defaultdict(int)
    languages: dict[str, int] = defaultdict(int)
    projects: dict[str, int] = defaultdict(int)
    by_day: dict[str, int] = defaultdict(int)
    by_hour = _empty_hours()
    by_hour_by_language: dict[str, list[int]] = defaultdict(_empty_hours)

    for session_id, session_events in events_by_session.items():
        ordered = sorted(session_events, key=lambda e: e.timestamp)
        session_end = session_ends.get(session_id)
        if session_end is None:
            session_end = now

        for i, event in enumerate(ordered):
            boundary = ordered[i + 1].timestamp if i + 1 < len(ordered) else session_end
            boundary = min(boundary, end)
            duration = max(0, min(boundary - event.timestamp, idle_cap_ms))
            if duration <= 0:
                continue

            hour = hour_of(event.timestamp)
            total += duration
            files[event.file_path] += duration
            languages[event.language] += duration
            projects[event.project] += duration
            by_day[date_key(event.timestamp)] += duration
            by_hour[hour] += duration
            by_hour_by_language[event.language][hour] += duration

    return Summary(
        total_time_ms=total,
        files_edited=dict(files),
        languages=dict(languages),
        projects=dict(projects),
        activity_by_day=dict(by_day),
        activity_by_hour=by_hour,
        activity_by_hour_by_language=dict(by_hour_by_language),
    )


def build_summary(
    store: Store,
    start: int,
    end: int,
    idle_minutes: int | float,
    now: int | None = None,
) -> Summary:
    """Fetch events and sessions for [start, end] and summarize them."""
    events = get_events_in_range(store, start, end)
    sessions = get_sessions_in_range(store, start, end)
    return summarize(
        events,
        sessions,
        start,
        end,
        minutes_to_ms(idle_minutes),
        now_ms() if now is None else now,
    )
