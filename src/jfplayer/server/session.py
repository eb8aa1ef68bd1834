"""Playback session state.

One ``PlaybackSession`` describes the external player that is currently
running, if any, together with what is needed to report its progress to the
media server. Request handlers, the exit watcher and the playlist sequencer
all go through its methods; each method takes the lock for the duration of
one state transition and never does I/O while holding it.

Every launched process gets a new generation number. Background tasks hold
on to the generation they were started for, so a task that outlives its
process can never touch the session that replaced it.

Transitions that produce reports (``advance`` and ``finish``) are made while
holding ``reports_lock`` and their reports are queued before it is released,
so the media server sees them in the order the transitions happened.
"""

from __future__ import annotations

import subprocess
import threading
import uuid
from dataclasses import dataclass, field, replace


@dataclass(frozen=True)
class PlaylistItem:
    path: str
    item_id: str = ""


@dataclass(frozen=True)
class Credentials:
    """Media-server context passed through from the browser."""

    server_url: str = ""
    user_id: str = ""
    token: str = ""

    @property
    def configured(self) -> bool:
        return bool(self.server_url or self.user_id or self.token)


@dataclass(frozen=True)
class ReportContext:
    """Everything a single start/stop report needs, copied out of the session."""

    item_id: str
    credentials: Credentials
    play_session_id: str
    position: float = 0.0
    duration: float = 0.0
    paused: bool = False


@dataclass
class SessionSnapshot:
    """Read-only copy of the session for status queries."""

    generation: int = 0
    process: subprocess.Popen | None = None
    ipc_endpoint: str = ""
    item_id: str = ""
    credentials: Credentials = field(default_factory=Credentials)
    position: float = 0.0
    duration: float = 0.0
    paused: bool = False
    playlist: tuple[PlaylistItem, ...] = ()
    playlist_index: int = 0

    @property
    def playing(self) -> bool:
        return self.process is not None


def new_play_session_id() -> str:
    return uuid.uuid4().hex


class PlaybackSession:
    """The single lock-guarded record of what is currently playing."""

    def __init__(self):
        self._lock = threading.Lock()
        self.reports_lock = threading.Lock()
        self._generation = 0
        self._reset()

    def _reset(self):
        self._process: subprocess.Popen | None = None
        self._ipc_endpoint = ""
        self._item_id = ""
        self._credentials = Credentials()
        self._play_session_id = ""
        self._position = 0.0
        self._duration = 0.0
        self._paused = False
        self._playlist: tuple[PlaylistItem, ...] = ()
        self._playlist_index = 0

    def _context(self) -> ReportContext:
        return ReportContext(
            item_id=self._item_id,
            credentials=self._credentials,
            play_session_id=self._play_session_id,
            position=self._position,
            duration=self._duration,
            paused=self._paused,
        )

    def begin(
        self,
        process: subprocess.Popen,
        ipc_endpoint: str,
        items: list[PlaylistItem],
        credentials: Credentials,
        start_position: float = 0.0,
    ) -> tuple[int, ReportContext]:
        """Record a freshly spawned player. Returns (generation, start context)."""
        with self._lock:
            self._generation += 1
            self._reset()
            self._process = process
            self._ipc_endpoint = ipc_endpoint
            self._playlist = tuple(items)
            self._item_id = items[0].item_id if items else ""
            self._credentials = credentials
            self._play_session_id = new_play_session_id()
            self._position = start_position
            return self._generation, self._context()

    def snapshot(self) -> SessionSnapshot:
        with self._lock:
            return SessionSnapshot(
                generation=self._generation,
                process=self._process,
                ipc_endpoint=self._ipc_endpoint,
                item_id=self._item_id,
                credentials=self._credentials,
                position=self._position,
                duration=self._duration,
                paused=self._paused,
                playlist=self._playlist,
                playlist_index=self._playlist_index,
            )

    def is_current(self, generation: int) -> bool:
        with self._lock:
            return self._process is not None and self._generation == generation

    def update_position(
        self,
        generation: int,
        position: float,
        duration: float | None = None,
        paused: bool | None = None,
        playlist_index: int | None = None,
    ) -> ReportContext | None:
        """Store freshly polled playback state.

        Ignored (returns None) if the session has moved on to another
        process or has already been finished. With ``playlist_index`` the
        state is also dropped when the playlist advanced since it was read.
        """
        with self._lock:
            if self._process is None or self._generation != generation:
                return None
            if playlist_index is not None and playlist_index != self._playlist_index:
                return None
            self._position = position
            if duration:
                self._duration = duration
            if paused is not None:
                self._paused = paused
            return self._context()

    def advance(
        self, generation: int, from_index: int, to_index: int
    ) -> tuple[ReportContext, ReportContext] | None:
        """Move the active playlist entry from ``from_index`` to ``to_index``.

        Returns (finished item context, started item context), or None if the
        transition is stale: another process, an already-finished session,
        an index that isn't the current one, or a backwards/out-of-range move.
        The finished item is reported as fully watched.
        """
        with self._lock:
            if self._process is None or self._generation != generation:
                return None
            if from_index != self._playlist_index:
                return None
            if not from_index < to_index < len(self._playlist):
                return None

            finished = self._context()
            if finished.duration > 0:
                finished = replace(finished, position=finished.duration)

            self._playlist_index = to_index
            self._item_id = self._playlist[to_index].item_id
            self._play_session_id = new_play_session_id()
            self._position = 0.0
            self._duration = 0.0
            self._paused = False
            return finished, self._context()

    def finish(self, generation: int) -> ReportContext | None:
        """Clear the session after its process exited.

        Only the first call for a generation gets the final context back;
        later calls (or calls for an older generation) get None.
        """
        with self._lock:
            if self._process is None or self._generation != generation:
                return None
            final = self._context()
            self._reset()
            return final
