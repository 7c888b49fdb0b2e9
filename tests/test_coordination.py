"""
Tests for the marker files shared by the interactive session and the daemon.
"""

import os
import asyncio
from pathlib import Path
from unittest.mock import patch

import pytest

from trassenger import coordination
from trassenger.audit import AuditLog
from trassenger.coordination import (
    ActiveSessionMarker,
    SingleInstanceMarker,
    InstanceAlreadyRunning,
    StaleCoordinationMarker,
    install_signal_handlers,
)

# Far above any pid_max; never a live process
DEAD_PID = 2 ** 31 - 2


class TestActiveSessionMarker:
    """Presence flag for the interactive session."""

    def test_context_manager_creates_and_removes(self, tmp_path):
        """Test the marker exists exactly while held."""
        marker = ActiveSessionMarker(tmp_path / "tui.running")

        with marker:
            assert marker.exists()
            assert marker.is_present()
        assert not marker.exists()

    def test_removed_on_exception(self, tmp_path):
        """Test an error inside the session still removes the marker."""
        marker = ActiveSessionMarker(tmp_path / "tui.running")

        with pytest.raises(RuntimeError):
            with marker:
                raise RuntimeError("crash")
        assert not marker.exists()

    def test_release_is_idempotent(self, tmp_path):
        """Test releasing twice is harmless."""
        marker = ActiveSessionMarker(tmp_path / "tui.running")
        marker.acquire()
        marker.release()
        marker.release()
        assert not marker.exists()

    def test_empty_file_counts_as_present(self, tmp_path):
        """Test a bare touched file from another client is honoured."""
        path = tmp_path / "tui.running"
        path.touch()
        assert ActiveSessionMarker(path).is_present()

    def test_dead_owner_is_reclaimed(self, tmp_path):
        """Test a marker left by a killed session is removed and audited."""
        path = tmp_path / "tui.running"
        path.write_text(str(DEAD_PID))
        audit = AuditLog(tmp_path / "logs")

        assert not ActiveSessionMarker(path, audit).is_present()
        assert not path.exists()
        events = audit.get_recent_events(event_type="marker_reclaimed")
        assert events[0]['stale_pid'] == DEAD_PID
        audit.close()


class TestSingleInstanceMarker:
    """At most one live daemon."""

    def test_records_own_pid(self, tmp_path):
        """Test the marker holds the current pid while held."""
        marker = SingleInstanceMarker(tmp_path / "daemon.pid")
        with marker:
            assert marker.read_owner() == os.getpid()
        assert not marker.exists()

    def test_live_owner_refuses_second_instance(self, tmp_path):
        """Test a marker owned by a live process raises and is left untouched."""
        path = tmp_path / "daemon.pid"
        path.write_text("4242")

        with patch.object(coordination.psutil, "pid_exists", return_value=True):
            with pytest.raises(InstanceAlreadyRunning) as exc_info:
                SingleInstanceMarker(path).acquire()

        assert exc_info.value.pid == 4242
        assert path.read_text() == "4242"

    def test_stale_marker_reclaimed(self, tmp_path):
        """Test a dead owner's marker is taken over by the new instance."""
        path = tmp_path / "daemon.pid"
        path.write_text(str(DEAD_PID))

        marker = SingleInstanceMarker(path)
        with marker:
            assert marker.read_owner() == os.getpid()

    def test_garbage_content_is_stale(self, tmp_path):
        """Test an unparsable marker is treated as stale."""
        path = tmp_path / "daemon.pid"
        path.write_text("not a pid")

        marker = SingleInstanceMarker(path)
        with pytest.raises(StaleCoordinationMarker):
            marker.check_owner()

        marker.acquire()
        assert marker.read_owner() == os.getpid()
        marker.release()

    def test_stale_marker_audited(self, tmp_path):
        """Test reclaiming writes an audit event."""
        path = tmp_path / "daemon.pid"
        path.write_text(str(DEAD_PID))
        audit = AuditLog(tmp_path / "logs", role="daemon")

        with SingleInstanceMarker(path, audit):
            pass

        events = audit.get_recent_events(event_type="marker_reclaimed")
        assert events[0]['marker'] == "daemon.pid"
        assert events[0]['role'] == "daemon"
        audit.close()

    def test_second_holder_in_same_process_refused(self, tmp_path):
        """Test exclusive creation stops a racing second acquirer."""
        path = tmp_path / "daemon.pid"
        first = SingleInstanceMarker(path)
        first.acquire()

        with patch.object(SingleInstanceMarker, "check_owner", return_value=None):
            with pytest.raises(InstanceAlreadyRunning):
                SingleInstanceMarker(path).acquire()

        first.release()
        assert not path.exists()
        assert list(tmp_path.iterdir()) == []

    def test_marker_never_visible_without_pid(self, tmp_path):
        """Test the marker file appears with the pid already written."""
        path = tmp_path / "daemon.pid"
        real_link = os.link
        linked_content = []

        def recording_link(src, dst):
            linked_content.append(Path(src).read_text())
            real_link(src, dst)

        with patch.object(coordination.os, "link", side_effect=recording_link):
            with SingleInstanceMarker(path):
                assert path.read_text() == str(os.getpid())

        assert linked_content == [str(os.getpid())]
        assert list(tmp_path.iterdir()) == []

    def test_lost_race_keeps_winner_pid(self, tmp_path):
        """Test a racing acquirer leaves the winner's marker and pid intact."""
        path = tmp_path / "daemon.pid"
        path.write_text("4242")

        # The check saw no marker; the winner created it right after
        with patch.object(SingleInstanceMarker, "exists", return_value=False):
            with pytest.raises(InstanceAlreadyRunning) as exc_info:
                SingleInstanceMarker(path).acquire()

        assert exc_info.value.pid == 4242
        assert path.read_text() == "4242"
        assert [p.name for p in tmp_path.iterdir()] == ["daemon.pid"]


class TestSignalHandling:
    """Termination signals unwind through the markers."""

    @pytest.mark.asyncio
    async def test_cancellation_releases_marker(self, tmp_path):
        """Test cancelling the main task removes the marker."""
        path = tmp_path / "daemon.pid"
        started = asyncio.Event()

        async def main():
            with SingleInstanceMarker(path):
                started.set()
                await asyncio.sleep(3600)

        task = asyncio.ensure_future(main())
        await started.wait()
        assert path.exists()

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_installs_loop_handlers(self):
        """Test every termination signal is routed to task.cancel."""
        loop = asyncio.get_running_loop()
        task = asyncio.ensure_future(asyncio.sleep(3600))

        with patch.object(loop, "add_signal_handler") as add_handler:
            install_signal_handlers(task, loop)

        registered = [c.args[0] for c in add_handler.call_args_list]
        assert registered == list(coordination.TERMINATION_SIGNALS)
        assert all(c.args[1] == task.cancel for c in add_handler.call_args_list)
        task.cancel()
