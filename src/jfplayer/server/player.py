"""Player process manager.

Launches the configured external player for one item or a playlist and
follows it until it exits:

1. Translate each server path with the configured mappings
2. Look up the resume position (if asked to)
3. Stop whatever is still playing
4. Spawn the player (with an IPC endpoint for mpv)
5. Report playback start
6. Watch the process; for mpv, poll it through the sequencer
7. On exit, report playback stop and clear the session
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
from typing import TYPE_CHECKING, Callable
from urllib.parse import quote

from jfplayer.server.mpv_client import MPVClient, default_ipc_path, remove_stale_socket
from jfplayer.server.path_mapping import check_unc_path, translate
from jfplayer.server.reporter import ProgressReporter
from jfplayer.server.sequencer import POLL_INTERVAL, PlaylistSequencer
from jfplayer.server.session import Credentials, PlaybackSession, PlaylistItem, SessionSnapshot

if TYPE_CHECKING:
    from jfplayer.config import ConfigStore, PlayerConfig

logger = logging.getLogger(__name__)

QUIT_TIMEOUT = 3.0        # wait for mpv to act on an IPC quit
TERMINATE_TIMEOUT = 5.0   # wait after SIGTERM before SIGKILL
CLEANUP_TIMEOUT = 5.0     # wait for the old watcher when replacing a session

# Characters url.PathEscape-style encoding leaves alone
_PATH_SAFE = ":@&=+$,;!*'()"


class LaunchError(Exception):
    """The player process could not be started."""


def player_kind(key: str, player: "PlayerConfig") -> str:
    """Classify a player as "mpv", "vlc" or something else."""
    exe = os.path.basename(player.path).lower()
    for kind in ("mpv", "vlc"):
        if key.lower() == kind or exe.startswith(kind):
            return kind
    return key.lower()


def supports_ipc(kind: str) -> bool:
    return kind == "mpv"


def encode_path(path: str) -> str:
    return quote(path, safe=_PATH_SAFE)


def build_command(
    player: "PlayerConfig",
    kind: str,
    paths: list[str],
    ipc_endpoint: str = "",
    start_position: float = 0,
) -> list[str]:
    """Full argv: executable, base args, IPC arg, resume arg, then paths."""
    cmd = [player.path, *player.args]
    if ipc_endpoint:
        cmd.append(f"--input-ipc-server={ipc_endpoint}")
    if start_position > 0:
        if kind == "mpv":
            cmd.append(f"--start={int(start_position)}")
        elif kind == "vlc":
            cmd.append(f"--start-time={int(start_position)}")
    cmd.extend(paths)
    return cmd


class Player:
    """Owns the single external player process and its session.

    Args:
        config_store: current configuration (mappings, player selection)
        reporter: progress reporter for the media server
        session: shared session record (one is created if not given)
        mpv_factory: builds an IPC client for an endpoint
        poll_interval: sequencer poll interval in seconds
    """

    def __init__(
        self,
        config_store: "ConfigStore",
        reporter: ProgressReporter | None = None,
        session: PlaybackSession | None = None,
        mpv_factory: Callable[[str], MPVClient] = MPVClient,
        poll_interval: float = POLL_INTERVAL,
    ):
        self.config_store = config_store
        self.reporter = reporter or ProgressReporter()
        self.session = session or PlaybackSession()
        self._mpv_factory = mpv_factory
        self._poll_interval = poll_interval
        self._launch_lock = threading.Lock()
        self._watchers: dict[int, threading.Thread] = {}
        self._watchers_lock = threading.Lock()

    def play(
        self,
        items: list[PlaylistItem],
        credentials: Credentials | None = None,
        resume: bool = False,
    ) -> list[str]:
        """Start playing one or more items. Returns the translated paths.

        Raises LaunchError if the player can't be started; in that case no
        session is created.
        """
        if not items:
            raise ValueError("nothing to play")
        credentials = credentials or Credentials()
        config = self.config_store.get()

        translated = []
        for item in items:
            path = translate(item.path, config.path_mappings)
            logger.info("Playing: %s -> %s", item.path, path)
            check_unc_path(path)
            translated.append(path)

        key, player = config.selected_player()
        kind = player_kind(key, player)
        ipc_endpoint = default_ipc_path(config.ipc_path) if supports_ipc(kind) else ""

        start_position = 0.0
        if resume and items[0].item_id:
            start_position = self.reporter.fetch_resume_position(credentials, items[0].item_id)

        player_paths = [encode_path(p) if config.url_encode else p for p in translated]
        cmd = build_command(player, kind, player_paths, ipc_endpoint, start_position)

        with self._launch_lock:
            # Only one player at a time: replace whatever is still running
            if self.stop(wait=True):
                logger.info("Replaced running player")

            if ipc_endpoint:
                remove_stale_socket(ipc_endpoint)

            logger.info("Command: %s", shlex.join(cmd))
            try:
                process = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                )
            except (OSError, ValueError) as e:
                logger.error("Error starting player: %s", e)
                raise LaunchError(f"failed to start player: {e}") from e

            playlist = [
                PlaylistItem(path=path, item_id=item.item_id)
                for path, item in zip(translated, items)
            ]
            generation, start_ctx = self.session.begin(
                process, ipc_endpoint, playlist, credentials, start_position,
            )
            # Queue the start report before any watcher can queue a stop
            self.reporter.report_start(start_ctx)
            self._start_background(process, generation, ipc_endpoint, len(playlist))

        return translated

    def _start_background(self, process, generation: int, ipc_endpoint: str, item_count: int):
        exited = threading.Event()
        mpv = self._mpv_factory(ipc_endpoint) if ipc_endpoint else None

        watcher = threading.Thread(
            target=self._watch,
            args=(process, generation, exited),
            daemon=True,
            name=f"player-watcher-{generation}",
        )
        with self._watchers_lock:
            self._watchers[generation] = watcher
        watcher.start()

        if mpv is not None:
            sequencer = PlaylistSequencer(
                self.session, mpv, self.reporter, generation, item_count, exited,
                poll_interval=self._poll_interval,
            )
            threading.Thread(
                target=sequencer.run, daemon=True, name=f"sequencer-{generation}",
            ).start()

    def _watch(self, process: subprocess.Popen, generation: int, exited: threading.Event):
        """Wait for the player to exit, then report stop and clear the session.

        The IPC endpoint dies with the process, so the final position is the
        last one polled (by the sequencer, or by stop() just before quitting).
        """
        try:
            exit_code = process.wait()
            exited.set()
            with self.session.reports_lock:
                final = self.session.finish(generation)
                if final is not None:
                    self.reporter.report_stop(final)
            if final is not None:
                logger.info("Player exited (code %s) at %.0fs", exit_code, final.position)
        except Exception:
            logger.exception("Player watcher failed")
        finally:
            exited.set()
            with self._watchers_lock:
                self._watchers.pop(generation, None)

    def _refresh_position(self, snap: SessionSnapshot, mpv: MPVClient):
        state = mpv.get_playback_state()
        if state is not None:
            self.session.update_position(
                snap.generation, playlist_index=snap.playlist_index, **state,
            )

    def stop(self, wait: bool = False) -> bool:
        """Stop the current player, if any. Returns False if nothing was playing.

        Tries a graceful IPC quit first and falls back to terminating the
        process. The exit watcher does the reporting either way. With
        ``wait`` the call also waits for that cleanup to finish.
        """
        snap = self.session.snapshot()
        if not snap.playing:
            return False
        process = snap.process

        graceful = False
        if snap.ipc_endpoint:
            mpv = self._mpv_factory(snap.ipc_endpoint)
            self._refresh_position(snap, mpv)
            if mpv.quit():
                try:
                    process.wait(timeout=QUIT_TIMEOUT)
                    graceful = True
                except subprocess.TimeoutExpired:
                    logger.warning("Player ignored IPC quit, terminating")

        if not graceful:
            self._kill(process)
        logger.info("Playback stopped (%s)", "ipc" if graceful else "terminated")

        if wait:
            with self._watchers_lock:
                watcher = self._watchers.get(snap.generation)
            if watcher is not None and watcher is not threading.current_thread():
                watcher.join(timeout=CLEANUP_TIMEOUT)
        return True

    @staticmethod
    def _kill(process: subprocess.Popen):
        """Terminate the process, escalating to kill if it hangs."""
        if process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=TERMINATE_TIMEOUT)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()

    def get_status(self) -> dict:
        """Status for the page script; ``playing`` means a process is tracked."""
        snap = self.session.snapshot()
        if not snap.playing:
            return {"playing": False, "paused": False, "itemId": "", "position": 0, "duration": 0}

        position, duration, paused = snap.position, snap.duration, snap.paused
        if snap.ipc_endpoint:
            state = self._mpv_factory(snap.ipc_endpoint).get_playback_state()
            if state is not None:
                ctx = self.session.update_position(
                    snap.generation, playlist_index=snap.playlist_index, **state,
                )
                if ctx is not None:
                    position, duration, paused = ctx.position, ctx.duration, ctx.paused

        return {
            "playing": True,
            "paused": paused,
            "itemId": snap.item_id,
            "position": position,
            "duration": duration,
        }

    def shutdown(self):
        """Stop playback and wait for cleanup (daemon exit)."""
        self.stop(wait=True)
        self.reporter.flush()
