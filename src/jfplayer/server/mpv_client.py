"""mpv JSON IPC client.

Talks to a running mpv through its ``--input-ipc-server`` endpoint: a Unix
domain socket on Linux/macOS, a named pipe on Windows. Every call opens a
fresh connection, sends one request line, reads one reply line and closes.
Ref: https://mpv.io/manual/master/#json-ipc
"""

import json
import logging
import os
import socket
import sys
import time

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 0.5

if sys.platform == "win32":
    DEFAULT_IPC_PATH = r"\\.\pipe\jf-external-player-mpv"
else:
    DEFAULT_IPC_PATH = "/tmp/jf-external-player-mpv.sock"


class MPVError(Exception):
    """Error communicating with mpv."""


def default_ipc_path(override: str = "") -> str:
    return override or DEFAULT_IPC_PATH


class _PipeChannel:
    """Blocking named-pipe channel (Windows). No per-read timeout."""

    def __init__(self, path: str, timeout: float):
        deadline = time.monotonic() + timeout
        while True:
            try:
                self._f = open(path, "r+b", buffering=0)
                return
            except FileNotFoundError:
                raise
            except OSError:
                # Pipe busy: mpv serves one client at a time
                if time.monotonic() >= deadline:
                    raise
                time.sleep(0.05)

    def sendall(self, data: bytes):
        self._f.write(data)

    def recv(self, size: int) -> bytes:
        return self._f.read(size)

    def close(self):
        self._f.close()


def _open_channel(path: str, timeout: float):
    if sys.platform == "win32":
        return _PipeChannel(path, timeout)
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        sock.connect(path)
    except OSError:
        sock.close()
        raise
    return sock


class MPVClient:
    """Request/response client for mpv's JSON IPC protocol.

    Usage:
        client = MPVClient("/tmp/jf-external-player-mpv.sock")
        pos = client.get_property("time-pos")
        client.command("quit")

    ``request`` raises MPVError; the convenience helpers swallow it and
    return a default, since a player that isn't up yet (or has just exited)
    is the normal case.
    """

    def __init__(self, socket_path: str = DEFAULT_IPC_PATH, timeout: float = DEFAULT_TIMEOUT):
        self.socket_path = socket_path
        self.timeout = timeout
        self._request_id = 0

    def request(self, *args) -> dict:
        """Send ``{"command": [...]}`` and return mpv's reply object."""
        self._request_id += 1
        request_id = self._request_id
        msg = json.dumps({"command": list(args), "request_id": request_id}) + "\n"

        try:
            channel = _open_channel(self.socket_path, self.timeout)
        except OSError as e:
            raise MPVError(f"cannot connect to {self.socket_path}: {e}") from e

        try:
            channel.sendall(msg.encode("utf-8"))
            return self._read_reply(channel, request_id)
        except (socket.timeout, OSError) as e:
            raise MPVError(f"IPC request {args[0]!r} failed: {e}") from e
        finally:
            try:
                channel.close()
            except OSError:
                pass

    def _read_reply(self, channel, request_id: int) -> dict:
        """Read lines until the reply to our request shows up."""
        buf = b""
        deadline = time.monotonic() + self.timeout
        while time.monotonic() < deadline:
            while b"\n" in buf:
                line, buf = buf.split(b"\n", 1)
                if not line.strip():
                    continue
                try:
                    msg = json.loads(line)
                except json.JSONDecodeError:
                    raise MPVError(f"malformed reply: {line[:80]!r}")
                if not isinstance(msg, dict):
                    raise MPVError(f"unexpected reply: {line[:80]!r}")
                # Skip event messages, wait for our response
                if "event" in msg:
                    continue
                if msg.get("request_id", request_id) == request_id:
                    return msg
            chunk = channel.recv(4096)
            if not chunk:
                raise MPVError("connection closed before reply")
            buf += chunk
        raise MPVError("timed out waiting for reply")

    def command(self, *args) -> bool:
        """Send a command; True if mpv answered with success."""
        try:
            resp = self.request(*args)
        except MPVError as e:
            logger.debug("mpv command %s failed: %s", args, e)
            return False
        return resp.get("error") == "success"

    def get_property(self, name: str, default=None):
        """Get an mpv property value, or ``default`` if unavailable.

        Properties used here:
            time-pos      - Current position in seconds
            duration      - Total duration in seconds
            pause         - Whether paused (bool)
            playlist-pos  - Index of the current playlist entry
        """
        try:
            resp = self.request("get_property", name)
        except MPVError as e:
            logger.debug("mpv get_property %s failed: %s", name, e)
            return default
        if resp.get("error") == "success":
            return resp.get("data")
        return default

    def get_playback_state(self) -> dict | None:
        """Position, duration and pause state, or None if mpv isn't answering."""
        position = self.get_property("time-pos")
        if position is None:
            return None
        return {
            "position": float(position),
            "duration": float(self.get_property("duration") or 0),
            "paused": bool(self.get_property("pause", False)),
        }

    def quit(self) -> bool:
        """Tell mpv to exit."""
        return self.command("quit")


def remove_stale_socket(path: str):
    """Delete a leftover Unix socket from a previous mpv."""
    if sys.platform == "win32" or not os.path.exists(path):
        return
    try:
        os.remove(path)
        logger.info("Removed stale mpv socket: %s", path)
    except OSError as e:
        logger.warning("Could not remove stale mpv socket %s: %s", path, e)
