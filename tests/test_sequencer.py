"""Tests for playlist sequencing inside one mpv instance."""

import threading
from unittest.mock import MagicMock

from conftest import FakeMPV, RecordingReporter, wait_for

from jfplayer.server.player import Player
from jfplayer.server.sequencer import PlaylistSequencer
from jfplayer.server.session import Credentials, PlaybackSession, PlaylistItem

CREDS = Credentials("http://jf:8096", "u1", "tok")


def setup_playlist(ids=("A", "B"), **kw):
    session = PlaybackSession()
    playlist = [PlaylistItem(f"/m/{i}.mkv", i) for i in ids]
    gen, _ = session.begin(MagicMock(), "/tmp/s.sock", playlist, CREDS)
    mpv = FakeMPV()
    reporter = RecordingReporter()
    exited = threading.Event()
    seq = PlaylistSequencer(session, mpv, reporter, gen, len(ids), exited, **kw)
    return session, gen, mpv, reporter, seq, exited


class TestPlaylistAdvance:
    def test_advance_reports_stop_then_start(self):
        session, gen, mpv, reporter, seq, _ = setup_playlist()
        mpv.properties.update({"playlist-pos": 0, "time-pos": 1790.0, "duration": 1800.0})
        seq.step()
        assert reporter.kinds() == []

        mpv.properties.update({"playlist-pos": 1, "time-pos": 0.5, "duration": 0})
        seq.step()
        assert reporter.kinds() == ["stop", "start"]
        (_, stop), (_, start) = [c for c in reporter.calls if c[0] != "progress"]
        assert stop.item_id == "A"
        assert stop.position == 1800.0
        assert start.item_id == "B"
        assert start.position == 0.0
        assert seq.last_observed_index == 1
        assert session.snapshot().item_id == "B"

        # Same index again: nothing new
        seq.step()
        seq.step()
        assert reporter.kinds() == ["stop", "start"]

    def test_jump_over_items(self):
        session, gen, mpv, reporter, seq, _ = setup_playlist(("A", "B", "C"))
        mpv.properties["playlist-pos"] = 2
        seq.step()
        assert [ctx.item_id for _, ctx in reporter.calls if _ != "progress"] == ["A", "C"]
        assert seq.last_observed_index == 2

    def test_backwards_move_ignored(self):
        session, gen, mpv, reporter, seq, _ = setup_playlist(("A", "B", "C"))
        mpv.properties["playlist-pos"] = 2
        seq.step()
        mpv.properties["playlist-pos"] = 1
        seq.step()
        assert reporter.kinds() == ["stop", "start"]
        assert seq.last_observed_index == 2

    def test_no_reply_means_no_change(self):
        session, gen, mpv, reporter, seq, _ = setup_playlist()
        seq.step()
        mpv.properties["playlist-pos"] = -1
        seq.step()
        mpv.properties["playlist-pos"] = 5
        seq.step()
        assert reporter.calls == []

    def test_single_item_never_polls_playlist(self):
        session, gen, mpv, reporter, seq, _ = setup_playlist(("A",))
        mpv.properties["playlist-pos"] = 1
        seq.step()
        assert reporter.calls == []

    def test_finished_session_ignores_advance(self):
        session, gen, mpv, reporter, seq, _ = setup_playlist()
        session.finish(gen)
        mpv.properties["playlist-pos"] = 1
        seq.step()
        assert reporter.calls == []
        assert seq.last_observed_index == 0


class TestPositionRefresh:
    def test_position_stored_in_session(self):
        session, gen, mpv, reporter, seq, _ = setup_playlist(("A",))
        mpv.properties.update({"time-pos": 42.0, "duration": 100.0, "pause": True})
        seq.step()
        snap = session.snapshot()
        assert snap.position == 42.0
        assert snap.duration == 100.0
        assert snap.paused is True

    def test_progress_report_every_n_ticks(self):
        session, gen, mpv, reporter, seq, _ = setup_playlist(("A",), progress_every=3)
        mpv.properties["time-pos"] = 1.0
        for _ in range(7):
            seq.step()
        assert [k for k, _ in reporter.calls] == ["progress", "progress"]


class TestRunLoop:
    def test_stops_when_process_exits(self):
        session, gen, mpv, reporter, seq, exited = setup_playlist(poll_interval=0.01)
        t = threading.Thread(target=seq.run, daemon=True)
        t.start()
        mpv.properties["playlist-pos"] = 1
        assert wait_for(lambda: reporter.kinds() == ["stop", "start"])
        exited.set()
        t.join(timeout=2)
        assert not t.is_alive()

    def test_tick_errors_do_not_kill_loop(self):
        session, gen, mpv, reporter, seq, exited = setup_playlist(("A",), poll_interval=0.01)
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return None

        mpv.get_playback_state = flaky
        t = threading.Thread(target=seq.run, daemon=True)
        t.start()
        assert wait_for(lambda: len(calls) >= 3)
        exited.set()
        t.join(timeout=2)


class ExitingProcess:
    """Process stand-in whose exit the test triggers."""

    def __init__(self):
        self.exited = threading.Event()

    def wait(self, timeout=None):
        self.exited.wait(timeout)
        return 0


class TestAdvanceRacingExit:
    def test_exit_during_advance_reports_in_order(self, config_store):
        reporter = RecordingReporter()
        player = Player(config_store, reporter=reporter)
        session = player.session
        process = ExitingProcess()
        playlist = [PlaylistItem("/m/A.mkv", "A"), PlaylistItem("/m/B.mkv", "B")]
        gen, _ = session.begin(process, "/tmp/s.sock", playlist, CREDS)

        exited = threading.Event()
        mpv = FakeMPV()
        seq = PlaylistSequencer(session, mpv, reporter, gen, 2, exited)
        watchers = []
        real_advance = session.advance

        def advance_then_exit(*args):
            result = real_advance(*args)
            # The player exits right after the playlist moved on
            process.exited.set()
            watcher = threading.Thread(target=player._watch, args=(process, gen, exited))
            watcher.start()
            watchers.append(watcher)
            watcher.join(0.2)
            return result

        session.advance = advance_then_exit
        mpv.properties.update({"playlist-pos": 1, "duration": 1800.0})
        seq.step()
        for w in watchers:
            w.join(2)

        assert [(kind, ctx.item_id) for kind, ctx in reporter.calls] == [
            ("stop", "A"), ("start", "B"), ("stop", "B"),
        ]
        assert not session.snapshot().playing
