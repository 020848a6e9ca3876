"""Session segmentation: turns file activity into Session records.

The tracker is either idle (no open session) or active (one open session
with a last-activity timestamp). Activity signals open or extend the
session; a periodic idle check closes it once the gap since the last
activity exceeds the idle threshold. A closed session ends at its last
activity, not at the moment idleness was detected, so durations do not
depend on how often the idle check runs.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

from hackhours.db import Aggregate, Event, Session, Store, get_open_sessions
from hackhours.lang import detect_language, resolve_project_root
from hackhours.timeutil import date_key, minutes_to_ms, now_ms

logger = logging.getLogger(__name__)

IDLE = "idle"
ACTIVE = "active"


@dataclass
class ActiveSession:
    """In-memory state of the open session."""

    session_id: str
    start_timestamp: int
    last_activity: int
    files: set[str] = field(default_factory=set)
    languages: set[str] = field(default_factory=set)


def _merge_json_list(existing: str, additions: set[str]) -> str:
    try:
        current = json.loads(existing or "[]")
    except json.JSONDecodeError:
        logger.warning("Discarding malformed aggregate list: %r", existing)
        current = []
    return json.dumps(sorted(set(current) | additions))


class SessionTracker:
    """Owns the single open session and writes sessions, events and aggregates.

    ``on_activity``, ``on_idle_check`` and ``on_stop`` are serialized by one
    lock, and each holds it until its storage writes have completed.
    """

    def __init__(
        self,
        store: Store,
        *,
        idle_minutes: int | float,
        directories: list[str],
        clock: Callable[[], int] = now_ms,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        """Initialize the tracker.

        Args:
            store: Storage holding the sessions, events and aggregates collections.
            idle_minutes: Inactivity after which the open session is closed.
            directories: Tracked directories, used to resolve each file's project.
            clock: Source of "now" in ms when a caller does not pass one.
            id_factory: Generates session IDs.
        """
        self._store = store
        self._directories = list(directories)
        self._clock = clock
        self._id_factory = id_factory
        self.idle_ms = minutes_to_ms(idle_minutes)
        self._lock = threading.Lock()
        self._active: ActiveSession | None = None

    @property
    def state(self) -> str:
        return ACTIVE if self._active is not None else IDLE

    @property
    def active_session(self) -> ActiveSession | None:
        return self._active

    def on_activity(self, file_path: str, now: int | None = None) -> Event:
        """Record a file touch, opening a session if none is open.

        Returns:
            The Event written.

        Raises:
            PersistenceFailure: If a write fails. ``last_activity`` is never
                advanced past what was durably written.
        """
        with self._lock:
            now = self._clock() if now is None else now
            file_path = os.path.abspath(file_path)
            event_language = detect_language(file_path)

            active = self._active
            if active is None:
                active = self._start_session(now)
                # The session row is durable now; keep memory in step with it
                # even if the event write below fails.
                self._active = active

            event = Event(
                timestamp=now,
                file_path=file_path,
                language=event_language,
                project=resolve_project_root(file_path, self._directories),
                session_id=active.session_id,
            )
            self._store.events.append(event)

            # Signals can arrive slightly out of order; the end never moves back
            active.last_activity = max(active.last_activity, now)
            active.files.add(file_path)
            active.languages.add(event_language)
            return event

    def on_idle_check(self, now: int | None = None) -> Session | None:
        """Close the open session if it has been idle longer than the threshold.

        Returns:
            The closed Session, or None if nothing was closed.
        """
        with self._lock:
            if self._active is None:
                return None
            now = self._clock() if now is None else now
            if now - self._active.last_activity <= self.idle_ms:
                return None
            logger.debug(
                "Session %s idle for %d ms, closing",
                self._active.session_id,
                now - self._active.last_activity,
            )
            return self._close_active()

    def on_stop(self, now: int | None = None) -> Session | None:
        """Close the open session unconditionally, ending at its last activity.

        ``now`` is accepted for symmetry with the other triggers; the end
        timestamp is always the last activity.
        """
        with self._lock:
            if self._active is None:
                return None
            return self._close_active()

    def close_orphaned_sessions(self) -> list[Session]:
        """Close sessions left open in storage by a previous process.

        Each orphan ends at its last recorded event, or at its start if it
        has none. The tracker's own open session is left alone.

        Returns:
            The sessions that were closed.
        """
        closed = []
        with self._lock:
            for orphan in get_open_sessions(self._store):
                if self._active is not None and orphan.session_id == self._active.session_id:
                    continue
                events = self._store.events.find({"session_id": orphan.session_id})
                end = max((e.timestamp for e in events), default=orphan.start_timestamp)
                logger.info("Closing orphaned session %s", orphan.session_id)
                closed.append(
                    self._close(
                        orphan.session_id,
                        orphan.start_timestamp,
                        end,
                        files={e.file_path for e in events},
                        languages={e.language for e in events},
                    )
                )
        return closed

    def _start_session(self, now: int) -> ActiveSession:
        session = Session(
            session_id=self._id_factory(),
            start_timestamp=now,
            end_timestamp=None,
            duration_ms=0,
        )
        self._store.sessions.append(session)
        logger.info("Started session %s", session.session_id)
        return ActiveSession(
            session_id=session.session_id,
            start_timestamp=now,
            last_activity=now,
        )

    def _close_active(self) -> Session:
        active = self._active
        assert active is not None
        return self._close(
            active.session_id,
            active.start_timestamp,
            active.last_activity,
            files=active.files,
            languages=active.languages,
            on_closed=self._clear_active,
        )

    def _clear_active(self) -> None:
        self._active = None

    def _close(
        self,
        session_id: str,
        start: int,
        end: int,
        *,
        files: set[str],
        languages: set[str],
        on_closed: Callable[[], None] | None = None,
    ) -> Session:
        """Persist a session's end, then roll its duration into the end day's aggregate.

        ``on_closed`` runs once the session row is closed, before the
        aggregate write, so a failed aggregate write cannot leave the
        tracker pointing at a session storage already considers closed.
        """
        duration_ms = max(0, end - start)
        self._store.sessions.update_matching(
            {"session_id": session_id},
            {"end_timestamp": end, "duration_ms": duration_ms},
        )
        if on_closed is not None:
            on_closed()
        logger.info("Closed session %s (%d ms)", session_id, duration_ms)

        self._roll_into_aggregate(date_key(end), duration_ms, files, languages)
        return Session(
            session_id=session_id,
            start_timestamp=start,
            end_timestamp=end,
            duration_ms=duration_ms,
        )

    def _roll_into_aggregate(
        self, day: str, duration_ms: int, files: set[str], languages: set[str]
    ) -> None:
        existing = self._store.aggregates.get_one({"date": day})
        if existing is None:
            self._store.aggregates.append(
                Aggregate(
                    date=day,
                    total_time_ms=duration_ms,
                    files_edited=json.dumps(sorted(files)),
                    languages_used=json.dumps(sorted(languages)),
                )
            )
            return
        self._store.aggregates.update_matching(
            {"date": day},
            {
                "total_time_ms": existing.total_time_ms + duration_ms,
                "files_edited": _merge_json_list(existing.files_edited, files),
                "languages_used": _merge_json_list(existing.languages_used, languages),
            },
        )
