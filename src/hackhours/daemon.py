"""Background tracking: file watcher, idle ticker and daemon lifecycle.

The daemon runs two threads that feed one SessionTracker: a polling file
watcher delivering activity signals and a ticker firing the idle check.
A PID state file guards against running two daemons against one store.
"""

from __future__ import annotations

import fnmatch
import json
import logging
import os
import signal
import subprocess
import sys
import threading
import time
from collections.abc import Callable
from pathlib import Path

from pydantic import BaseModel, ValidationError

from hackhours.config import HACKHOURS_HOME, Config
from hackhours.db import Store
from hackhours.errors import AlreadyRunning, NotRunning, PersistenceFailure
from hackhours.session import SessionTracker
from hackhours.timeutil import now_ms

logger = logging.getLogger(__name__)

STATE_PATH = HACKHOURS_HOME / "state.json"
IDLE_CHECK_INTERVAL = 10.0
POLL_INTERVAL = 1.0
STOP_TIMEOUT = 10.0


class DaemonState(BaseModel):
    """Recorded identity of the running daemon."""

    pid: int
    started_at: int


def read_state(path: Path = STATE_PATH) -> DaemonState | None:
    """Read the state file. Returns None if it is missing or unreadable."""
    if not path.exists():
        return None
    try:
        return DaemonState.model_validate(json.loads(path.read_text(encoding="utf-8")))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.warning("Ignoring unreadable state file %s: %s", path, e)
        return None


def write_state(state: DaemonState, path: Path = STATE_PATH) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(state.model_dump_json(indent=2), encoding="utf-8")


def clear_state(path: Path = STATE_PATH) -> None:
    path.unlink(missing_ok=True)


def is_process_alive(pid: int) -> bool:
    """Probe a PID with signal 0."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    return True


def live_daemon(path: Path = STATE_PATH) -> DaemonState | None:
    """Return the recorded daemon if its process is alive, clearing stale state."""
    state = read_state(path)
    if state is None:
        return None
    if not is_process_alive(state.pid):
        logger.info("Clearing stale state for dead pid %d", state.pid)
        clear_state(path)
        return None
    return state


def start_daemon(
    config_path: Path,
    state_path: Path = STATE_PATH,
    *,
    popen: Callable[..., subprocess.Popen] = subprocess.Popen,
) -> int:
    """Spawn a detached ``hackhours daemon`` process and record its PID.

    Returns:
        PID of the spawned daemon.

    Raises:
        AlreadyRunning: If a live daemon is already recorded.
    """
    existing = live_daemon(state_path)
    if existing is not None:
        raise AlreadyRunning(existing.pid)

    # List args, not shell=True
    child = popen(
        [
            sys.executable,
            "-m",
            "hackhours.cli",
            "--config",
            str(config_path),
            "daemon",
            "--state",
            str(state_path),
        ],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )
    write_state(DaemonState(pid=child.pid, started_at=now_ms()), state_path)
    logger.info("Spawned daemon pid %d", child.pid)
    return child.pid


def stop_daemon(
    state_path: Path = STATE_PATH,
    *,
    timeout: float = STOP_TIMEOUT,
    check_interval: float = 0.1,
) -> bool:
    """Send SIGTERM to the recorded daemon and wait for it to exit.

    The state file is left to the exiting daemon, so a ``start`` issued
    while it is still closing its session is rejected. It is only cleared
    here once the process is gone and the file still names it.

    Returns:
        True if the daemon exited within ``timeout`` seconds, False if it
        is still shutting down.

    Raises:
        NotRunning: If no daemon is recorded or the recorded one is dead.
    """
    state = live_daemon(state_path)
    if state is None:
        raise NotRunning()
    try:
        os.kill(state.pid, signal.SIGTERM)
    except ProcessLookupError as e:
        clear_state(state_path)
        raise NotRunning() from e

    deadline = time.monotonic() + timeout
    while is_process_alive(state.pid):
        if time.monotonic() >= deadline:
            logger.warning("Daemon pid %d still running %.1fs after SIGTERM", state.pid, timeout)
            return False
        time.sleep(check_interval)

    current = read_state(state_path)
    if current is not None and current.pid == state.pid:
        clear_state(state_path)
    return True


def is_excluded(path: str, patterns: list[str]) -> bool:
    return any(fnmatch.fnmatch(path, pattern) for pattern in patterns)


class FileWatcher:
    """Polls tracked directories and reports added or modified files.

    The first scan only records a baseline; files that already exist are
    not reported until they change.
    """

    def __init__(
        self,
        directories: list[str],
        on_change: Callable[[str], None],
        *,
        exclude: list[str] | None = None,
        poll_interval: float = POLL_INTERVAL,
    ) -> None:
        self.directories = [os.path.abspath(d) for d in directories]
        self.exclude = list(exclude or [])
        self.poll_interval = poll_interval
        self._on_change = on_change
        self._snapshot: dict[str, int] = {}
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def scan(self) -> dict[str, int]:
        """Map every non-excluded file under the tracked directories to its mtime (ns)."""
        found: dict[str, int] = {}
        for root_dir in self.directories:
            for dirpath, dirnames, filenames in os.walk(root_dir):
                dirnames[:] = [
                    d for d in dirnames
                    if not is_excluded(os.path.join(dirpath, d) + os.sep, self.exclude)
                ]
                for name in filenames:
                    path = os.path.join(dirpath, name)
                    if is_excluded(path, self.exclude):
                        continue
                    try:
                        found[path] = os.stat(path).st_mtime_ns
                    except FileNotFoundError:
                        # Removed between listing and stat
                        continue
        return found

    def poll(self) -> list[str]:
        """Rescan and report each file that appeared or changed since the last scan."""
        current = self.scan()
        changed = [
            path for path, mtime in current.items()
            if self._snapshot.get(path) != mtime
        ]
        self._snapshot = current
        for path in changed:
            self._on_change(path)
        return changed

    def start(self) -> None:
        if self._thread is not None:
            return
        self._snapshot = self.scan()
        self._stop.clear()
        self._thread = threading.Thread(target=self._poll_loop, name="FileWatcher", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=self.poll_interval + 1.0)
        self._thread = None

    def _poll_loop(self) -> None:
        while not self._stop.wait(self.poll_interval):
            try:
                self.poll()
            except OSError as e:
                logger.warning("File scan failed: %s", e)
            except Exception:
                logger.exception("Unexpected error while polling for changes")


class IdleTicker:
    """Calls ``tick`` every ``interval`` seconds on a background thread until stopped."""

    def __init__(self, tick: Callable[[], None], interval: float = IDLE_CHECK_INTERVAL) -> None:
        self.interval = interval
        self._tick = tick
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="IdleTicker", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=self.interval + 1.0)
        self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self._tick()
            except Exception:
                logger.exception("Idle tick failed")


def _handle_activity(tracker: SessionTracker, path: str) -> None:
    try:
        tracker.on_activity(path)
    except PersistenceFailure as e:
        logger.warning("Dropped activity for %r: %s", path, e)
    except Exception:
        logger.exception("Dropped activity for %r", path)


def _handle_idle_check(tracker: SessionTracker) -> None:
    try:
        tracker.on_idle_check()
    except PersistenceFailure as e:
        logger.warning("Idle check failed: %s", e)
    except Exception:
        logger.exception("Idle check failed")


def run_daemon(
    config: Config,
    *,
    state_path: Path = STATE_PATH,
    stop_event: threading.Event | None = None,
    install_signal_handlers: bool = True,
    idle_check_interval: float = IDLE_CHECK_INTERVAL,
    poll_interval: float = POLL_INTERVAL,
) -> None:
    """Run the tracker in the foreground until SIGTERM/SIGINT or ``stop_event``.

    On the way out the watcher and ticker are stopped first, then the open
    session is closed so its time is not lost.

    Raises:
        AlreadyRunning: If another live daemon is recorded.
        PersistenceFailure: If the store cannot be opened.
    """
    existing = live_daemon(state_path)
    if existing is not None and existing.pid != os.getpid():
        raise AlreadyRunning(existing.pid)
    write_state(DaemonState(pid=os.getpid(), started_at=now_ms()), state_path)

    stop_event = stop_event or threading.Event()
    if install_signal_handlers:
        for signum in (signal.SIGTERM, signal.SIGINT):
            signal.signal(signum, lambda *_: stop_event.set())

    store = None
    try:
        store = Store.open(config.db_path, check_same_thread=False)
        tracker = SessionTracker(
            store,
            idle_minutes=config.idle_minutes,
            directories=config.directories,
        )
        tracker.close_orphaned_sessions()

        watcher = FileWatcher(
            config.directories,
            lambda path: _handle_activity(tracker, path),
            exclude=config.exclude,
            poll_interval=poll_interval,
        )
        ticker = IdleTicker(lambda: _handle_idle_check(tracker), idle_check_interval)
        watcher.start()
        ticker.start()
        logger.info("Tracking %s (idle after %d min)", ", ".join(config.directories), config.idle_minutes)

        while not stop_event.wait(1.0):
            pass

        logger.info("Shutting down")
        watcher.stop()
        ticker.stop()
        tracker.on_stop()
    finally:
        if store is not None:
            store.close()
        state = read_state(state_path)
        if state is not None and state.pid == os.getpid():
            clear_state(state_path)
