"""Playlist sequencer.

Runs in the background for as long as an IPC-capable player is alive. Every
tick it asks mpv which playlist entry is playing; when that moves forward,
the previous item is reported as stopped (fully watched) and the new one as
started. It also keeps the session's position/duration/pause state fresh and
sends a periodic progress report.

The exit watcher owns the end of the session: the sequencer just stops
polling once the process-exit event fires.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from jfplayer.server.mpv_client import MPVClient
    from jfplayer.server.reporter import ProgressReporter
    from jfplayer.server.session import PlaybackSession

logger = logging.getLogger(__name__)

POLL_INTERVAL = 1.0
PROGRESS_EVERY = 10  # ticks between progress reports


class PlaylistSequencer:
    """Tracks playlist advances inside one player invocation.

    Args:
        session: shared playback session
        mpv: IPC client bound to this process's endpoint
        reporter: progress reporter
        generation: session generation this sequencer belongs to
        item_count: number of entries handed to the player
        exited: set by the exit watcher when the process is gone
    """

    def __init__(
        self,
        session: "PlaybackSession",
        mpv: "MPVClient",
        reporter: "ProgressReporter",
        generation: int,
        item_count: int,
        exited: threading.Event,
        poll_interval: float = POLL_INTERVAL,
        progress_every: int = PROGRESS_EVERY,
    ):
        self._session = session
        self._mpv = mpv
        self._reporter = reporter
        self._generation = generation
        self._item_count = item_count
        self._exited = exited
        self._poll_interval = poll_interval
        self._progress_every = progress_every
        self._ticks = 0
        self.last_observed_index = 0

    def run(self):
        """Poll until the player process exits."""
        logger.debug("Sequencer started (generation %d, %d items)",
                     self._generation, self._item_count)
        while not self._exited.wait(self._poll_interval):
            try:
                self.step()
            except Exception:
                logger.exception("Sequencer tick failed")
        logger.debug("Sequencer finished (generation %d)", self._generation)

    def step(self):
        """One poll: playlist position first, then playback position."""
        self._ticks += 1
        if self._item_count > 1:
            self._check_playlist_pos()
        self._refresh_position()

    def _check_playlist_pos(self):
        index = self._mpv.get_property("playlist-pos")
        # None (no reply) and -1 (nothing loaded) mean "no change"
        if not isinstance(index, int) or isinstance(index, bool):
            return
        if index == self.last_observed_index:
            return
        if not 0 <= index < self._item_count:
            return

        with self._session.reports_lock:
            transition = self._session.advance(self._generation, self.last_observed_index, index)
            if transition is None:
                # Backwards move, or the session already ended
                return
            finished, started = transition
            self._reporter.report_stop(finished)
            self._reporter.report_start(started)
        logger.info("Playlist advanced %d -> %d (item %s -> %s)",
                    self.last_observed_index, index, finished.item_id, started.item_id)
        self.last_observed_index = index

    def _refresh_position(self):
        state = self._mpv.get_playback_state()
        if state is None:
            return
        ctx = self._session.update_position(
            self._generation, playlist_index=self.last_observed_index, **state,
        )
        if ctx is not None and self._ticks % self._progress_every == 0:
            self._reporter.report_progress(ctx)
