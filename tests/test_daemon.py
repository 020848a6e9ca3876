"""Tests for daemon state, file watcher, idle ticker and the run loop."""

import os
import signal
import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from hackhours import daemon
from hackhours.config import Config
from hackhours.daemon import (
    DaemonState,
    FileWatcher,
    IdleTicker,
    _handle_activity,
    clear_state,
    is_excluded,
    is_process_alive,
    live_daemon,
    read_state,
    run_daemon,
    start_daemon,
    stop_daemon,
    write_state,
)
from hackhours.db import Session, Store
from hackhours.errors import AlreadyRunning, NotRunning
from hackhours.session import ACTIVE, SessionTracker


def fake_kill(alive: set[int], sent: list[tuple[int, int]], *, survives_term: bool = False):
    """os.kill stand-in: signal 0 probes ``alive``, other signals are recorded.

    SIGTERM removes the pid from ``alive`` unless ``survives_term`` is set.
    """

    def kill(pid: int, sig: int) -> None:
        if pid not in alive:
            raise ProcessLookupError(pid)
        if sig != 0:
            sent.append((pid, sig))
        if sig == signal.SIGTERM and not survives_term:
            alive.discard(pid)

    return kill


class TestState:
    """Tests for the PID state file."""

    def test_write_read_clear(self, tmp_path: Path):
        """State written to disk reads back equal and is gone after clearing."""
        path = tmp_path / "state.json"
        write_state(DaemonState(pid=123, started_at=456), path)

        assert read_state(path) == DaemonState(pid=123, started_at=456)

        clear_state(path)
        assert read_state(path) is None

    def test_clear_missing_is_noop(self, tmp_path: Path):
        """Clearing a state file that does not exist does not raise."""
        clear_state(tmp_path / "state.json")

    def test_unreadable_state_is_ignored(self, tmp_path: Path):
        """A corrupt state file reads as no state."""
        path = tmp_path / "state.json"
        path.write_text("garbage")
        assert read_state(path) is None

    def test_is_process_alive(self):
        """The current process is alive; pid 0 never is."""
        assert is_process_alive(os.getpid())
        assert not is_process_alive(0)

    def test_dead_process(self, monkeypatch):
        """A pid that os.kill cannot find is reported dead."""
        monkeypatch.setattr(daemon.os, "kill", fake_kill(alive=set(), sent=[]))
        assert not is_process_alive(99999)

    def test_live_daemon_clears_stale_state(self, tmp_path: Path, monkeypatch):
        """State naming a dead pid is removed and treated as no daemon."""
        path = tmp_path / "state.json"
        write_state(DaemonState(pid=99999, started_at=0), path)
        monkeypatch.setattr(daemon.os, "kill", fake_kill(alive=set(), sent=[]))

        assert live_daemon(path) is None
        assert not path.exists()


class TestStartStop:
    """Tests for start_daemon / stop_daemon."""

    def test_start_spawns_and_records_pid(self, tmp_path: Path):
        """start_daemon launches a detached `hackhours daemon` and records its pid."""
        state_path = tmp_path / "state.json"
        popen = MagicMock()
        popen.return_value.pid = 4242

        pid = start_daemon(tmp_path / "config.json", state_path, popen=popen)

        assert pid == 4242
        assert read_state(state_path).pid == 4242
        args = popen.call_args.args[0]
        assert args[1:4] == ["-m", "hackhours.cli", "--config"]
        assert "daemon" in args
        assert popen.call_args.kwargs["start_new_session"] is True

    def test_start_rejects_live_daemon(self, tmp_path: Path):
        """A recorded live pid makes start fail without spawning anything."""
        state_path = tmp_path / "state.json"
        write_state(DaemonState(pid=os.getpid(), started_at=0), state_path)
        popen = MagicMock()

        with pytest.raises(AlreadyRunning) as exc_info:
            start_daemon(tmp_path / "config.json", state_path, popen=popen)

        assert exc_info.value.pid == os.getpid()
        popen.assert_not_called()

    def test_start_replaces_stale_state(self, tmp_path: Path, monkeypatch):
        """A recorded dead pid does not block a new start."""
        state_path = tmp_path / "state.json"
        write_state(DaemonState(pid=99999, started_at=0), state_path)
        monkeypatch.setattr(daemon.os, "kill", fake_kill(alive=set(), sent=[]))
        popen = MagicMock()
        popen.return_value.pid = 777

        assert start_daemon(tmp_path / "config.json", state_path, popen=popen) == 777

    def test_stop_signals_waits_and_clears(self, tmp_path: Path, monkeypatch):
        """stop_daemon sends SIGTERM, sees the process exit, then clears the state."""
        state_path = tmp_path / "state.json"
        write_state(DaemonState(pid=555, started_at=0), state_path)
        sent: list[tuple[int, int]] = []
        monkeypatch.setattr(daemon.os, "kill", fake_kill(alive={555}, sent=sent))

        assert stop_daemon(state_path, timeout=1.0, check_interval=0.01) is True
        assert sent == [(555, signal.SIGTERM)]
        assert not state_path.exists()

    def test_start_rejected_while_stopping_daemon_is_alive(self, tmp_path: Path, monkeypatch):
        """A daemon still shutting down keeps its state, so a new start is refused."""
        state_path = tmp_path / "state.json"
        write_state(DaemonState(pid=555, started_at=0), state_path)
        monkeypatch.setattr(
            daemon.os, "kill", fake_kill(alive={555}, sent=[], survives_term=True)
        )
        popen = MagicMock()

        assert stop_daemon(state_path, timeout=0.05, check_interval=0.01) is False
        assert read_state(state_path).pid == 555
        with pytest.raises(AlreadyRunning) as exc_info:
            start_daemon(tmp_path / "config.json", state_path, popen=popen)

        assert exc_info.value.pid == 555
        popen.assert_not_called()

    def test_stop_keeps_state_written_by_a_newer_daemon(self, tmp_path: Path, monkeypatch):
        """Once the old daemon is gone, state naming another pid is left alone."""
        state_path = tmp_path / "state.json"
        write_state(DaemonState(pid=555, started_at=0), state_path)
        alive = {555}

        def kill(pid: int, sig: int) -> None:
            if pid not in alive:
                raise ProcessLookupError(pid)
            if sig == signal.SIGTERM:
                alive.discard(pid)
                write_state(DaemonState(pid=556, started_at=1), state_path)

        monkeypatch.setattr(daemon.os, "kill", kill)

        assert stop_daemon(state_path, timeout=1.0, check_interval=0.01) is True
        assert read_state(state_path).pid == 556

    def test_stop_without_state(self, tmp_path: Path):
        """Stopping with no recorded daemon raises NotRunning."""
        with pytest.raises(NotRunning):
            stop_daemon(tmp_path / "state.json")

    def test_stop_dead_process(self, tmp_path: Path, monkeypatch):
        """Stopping a recorded but dead daemon raises NotRunning and clears state."""
        state_path = tmp_path / "state.json"
        write_state(DaemonState(pid=555, started_at=0), state_path)
        monkeypatch.setattr(daemon.os, "kill", fake_kill(alive=set(), sent=[]))

        with pytest.raises(NotRunning):
            stop_daemon(state_path)
        assert not state_path.exists()


class TestFileWatcher:
    """Tests for the polling file watcher."""

    def test_exclude_globs(self):
        """Exclude patterns match directories and file suffixes."""
        patterns = ["**/node_modules/**", "**/*.log"]
        assert is_excluded("/work/app/node_modules/x/index.js", patterns)
        assert is_excluded("/work/app/node_modules/", patterns)
        assert is_excluded("/work/app/debug.log", patterns)
        assert not is_excluded("/work/app/src/index.js", patterns)

    def test_reports_new_and_modified_files(self, tmp_path: Path):
        """poll reports files created or modified since the baseline."""
        existing = tmp_path / "a.py"
        existing.write_text("x")
        seen: list[str] = []
        watcher = FileWatcher([str(tmp_path)], seen.append)
        watcher._snapshot = watcher.scan()

        assert watcher.poll() == []

        created = tmp_path / "b.ts"
        created.write_text("y")
        stat = existing.stat()
        os.utime(existing, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000_000))

        changed = watcher.poll()

        assert sorted(changed) == sorted([str(existing), str(created)])
        assert seen == changed

    def test_skips_excluded_paths(self, tmp_path: Path):
        """scan never descends into or returns excluded paths."""
        (tmp_path / "node_modules").mkdir()
        (tmp_path / "node_modules" / "dep.js").write_text("x")
        (tmp_path / "build.log").write_text("x")
        (tmp_path / "main.go").write_text("x")
        watcher = FileWatcher(
            [str(tmp_path)], lambda path: None, exclude=["**/node_modules/**", "**/*.log"]
        )

        assert list(watcher.scan()) == [str(tmp_path / "main.go")]

    def test_start_and_stop(self, tmp_path: Path):
        """A started watcher notices a new file on its background thread."""
        seen = threading.Event()
        watcher = FileWatcher([str(tmp_path)], lambda path: seen.set(), poll_interval=0.01)

        watcher.start()
        (tmp_path / "new.py").write_text("x")
        assert seen.wait(timeout=5)
        watcher.stop()

    def test_undecodable_file_name_does_not_stop_tracking(self, tmp_path: Path):
        """A file name that is not valid UTF-8 is dropped; later activity still records."""
        try:
            with open(os.path.join(os.fsencode(tmp_path), b"bad\xff.py"), "wb") as f:
                f.write(b"x")
        except OSError:
            pytest.skip("filesystem rejects non-UTF-8 file names")

        with Store.open_in_memory() as store:
            tracker = SessionTracker(store, idle_minutes=2, directories=[str(tmp_path)])
            watcher = FileWatcher([str(tmp_path)], lambda path: _handle_activity(tracker, path))

            assert len(watcher.poll()) == 1
            assert store.events.get_all() == []
            assert tracker.state == ACTIVE

            (tmp_path / "good.py").write_text("y")
            watcher.poll()

            events = store.events.get_all()
            assert [e.file_path for e in events] == [str(tmp_path / "good.py")]
            assert len(store.sessions.get_all()) == 1

    def test_poll_loop_survives_callback_errors(self, tmp_path: Path):
        """An exception from the change callback is logged and polling continues."""
        seen: list[str] = []
        second = threading.Event()

        def on_change(path: str) -> None:
            seen.append(path)
            if len(seen) == 1:
                raise RuntimeError("boom")
            second.set()

        watcher = FileWatcher([str(tmp_path)], on_change, poll_interval=0.01)
        watcher.start()
        try:
            (tmp_path / "one.py").write_text("x")
            for i in range(500):
                if second.wait(timeout=0.02):
                    break
                (tmp_path / f"more{i}.py").write_text("x")
            assert second.is_set()
        finally:
            watcher.stop()


class TestHandlers:
    """Tests for the signal handlers wrapping the tracker."""

    def test_handle_activity_logs_unexpected_errors(self, caplog):
        """Unexpected tracker errors are logged, not raised into the watcher."""
        tracker = MagicMock()
        tracker.on_activity.side_effect = RuntimeError("boom")

        _handle_activity(tracker, "/work/app/a.py")

        assert "Dropped activity" in caplog.text


class TestIdleTicker:
    """Tests for IdleTicker."""

    def test_ticks_until_stopped(self):
        """The ticker calls its callback repeatedly until stopped."""
        ticks = threading.Semaphore(0)
        ticker = IdleTicker(ticks.release, interval=0.01)

        ticker.start()
        assert ticks.acquire(timeout=5)
        assert ticks.acquire(timeout=5)
        ticker.stop()

    def test_keeps_ticking_after_an_error(self):
        """A tick that raises does not end the ticker thread."""
        calls: list[int] = []
        recovered = threading.Event()

        def tick() -> None:
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            recovered.set()

        ticker = IdleTicker(tick, interval=0.01)
        ticker.start()
        try:
            assert recovered.wait(timeout=5)
        finally:
            ticker.stop()


class TestRunDaemon:
    """Tests for the daemon run loop."""

    def make_config(self, tmp_path: Path) -> Config:
        project = tmp_path / "project"
        project.mkdir()
        return Config(directories=[str(project)], data_dir=str(tmp_path / "data"), idle_minutes=2)

    def test_closes_orphans_and_clears_state(self, tmp_path: Path):
        """Startup closes sessions left open by a crash; exit clears the state file."""
        config = self.make_config(tmp_path)
        state_path = tmp_path / "state.json"
        with Store.open(config.db_path) as store:
            store.sessions.append(Session(session_id="crashed", start_timestamp=1000))
        stop = threading.Event()
        stop.set()

        run_daemon(config, state_path=state_path, stop_event=stop, install_signal_handlers=False)

        with Store.open(config.db_path) as store:
            assert store.sessions.get_all()[0].end_timestamp == 1000
        assert not state_path.exists()

    def test_tracks_activity_and_closes_on_stop(self, tmp_path: Path):
        """File changes become events, and shutdown closes the open session."""
        config = self.make_config(tmp_path)
        state_path = tmp_path / "state.json"
        stop = threading.Event()
        runner = threading.Thread(
            target=run_daemon,
            args=(config,),
            kwargs={
                "state_path": state_path,
                "stop_event": stop,
                "install_signal_handlers": False,
                "poll_interval": 0.01,
                "idle_check_interval": 0.01,
            },
        )
        runner.start()
        try:
            target = Path(config.directories[0]) / "main.py"
            for i in range(500):
                # Keep touching the file until the watcher has taken its baseline and sees a change
                target.write_text(f"print({i})")
                threading.Event().wait(0.02)
                if config.db_path.exists():
                    with Store.open(config.db_path) as store:
                        if store.events.get_all():
                            break
        finally:
            stop.set()
            runner.join(timeout=10)

        with Store.open(config.db_path) as store:
            events = store.events.get_all()
            sessions = store.sessions.get_all()
        assert events
        assert {e.language for e in events} == {"Python"}
        assert len(sessions) == 1
        assert sessions[0].end_timestamp is not None

    def test_rejects_second_daemon(self, tmp_path: Path, monkeypatch):
        """A run refuses to start while another live daemon is recorded."""
        config = self.make_config(tmp_path)
        state_path = tmp_path / "state.json"
        write_state(DaemonState(pid=555, started_at=0), state_path)
        monkeypatch.setattr(daemon.os, "kill", fake_kill(alive={555}, sent=[]))

        with pytest.raises(AlreadyRunning):
            run_daemon(config, state_path=state_path, stop_event=threading.Event(), install_signal_handlers=False)
        assert read_state(state_path).pid == 555

    def test_clears_state_when_store_cannot_open(self, tmp_path: Path):
        """A store that fails to open does not leave this process recorded as running."""
        blocker = tmp_path / "data"
        blocker.write_text("not a directory")
        config = Config(directories=[str(tmp_path)], data_dir=str(blocker), idle_minutes=2)
        state_path = tmp_path / "state.json"

        with pytest.raises(OSError):
            run_daemon(
                config,
                state_path=state_path,
                stop_event=threading.Event(),
                install_signal_handlers=False,
            )

        assert not state_path.exists()
