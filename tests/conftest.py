"""Shared test fixtures for the jf-external-player test suite."""

import sys
import time
from unittest.mock import MagicMock

import pytest

from jfplayer.config import Config, ConfigStore, PathMapping, PlayerConfig, save_config
from jfplayer.server.app import create_app
from jfplayer.server.discovery import ServerDiscovery
from jfplayer.server.player import Player
from jfplayer.server.reporter import ProgressReporter

# Stand-in "players": the Python interpreter ignores the extra argv we append
SLEEPER = PlayerConfig(name="sleeper", path=sys.executable,
                       args=("-c", "import time; time.sleep(30)"))
QUICK = PlayerConfig(name="quick", path=sys.executable, args=("-c", "pass"))


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Poll until predicate() is truthy or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


class RecordingReporter(ProgressReporter):
    """ProgressReporter that records reports instead of sending them."""

    def __init__(self):
        super().__init__(client=MagicMock())
        self.calls = []
        self.resume_position = 0.0
        self.resume_requests = []

    def report_start(self, ctx):
        self.calls.append(("start", ctx))

    def report_progress(self, ctx):
        self.calls.append(("progress", ctx))

    def report_stop(self, ctx):
        self.calls.append(("stop", ctx))

    def fetch_resume_position(self, credentials, item_id):
        self.resume_requests.append(item_id)
        return self.resume_position

    def kinds(self):
        return [kind for kind, _ in self.calls if kind != "progress"]


class FakeMPV:
    """Scriptable stand-in for MPVClient."""

    def __init__(self, socket_path: str = ""):
        self.socket_path = socket_path
        self.properties = {}
        self.quit_ok = False
        self.quit_calls = 0

    def get_property(self, name, default=None):
        value = self.properties.get(name)
        return default if value is None else value

    def get_playback_state(self):
        if self.properties.get("time-pos") is None:
            return None
        return {
            "position": float(self.properties["time-pos"]),
            "duration": float(self.properties.get("duration") or 0),
            "paused": bool(self.properties.get("pause", False)),
        }

    def quit(self):
        self.quit_calls += 1
        return self.quit_ok


@pytest.fixture
def config_path(tmp_path):
    return tmp_path / "config.json"


def make_store(path, **overrides) -> ConfigStore:
    """Write a config with the given overrides and open a store on it."""
    fields = {
        "player": "sleeper",
        "players": {"sleeper": SLEEPER, "quick": QUICK},
        "path_mappings": (PathMapping("prefix", "/mnt/movies", "\\\\server\\Movies"),),
    }
    fields.update(overrides)
    save_config(Config(**fields), path)
    return ConfigStore.open(path)


@pytest.fixture
def config_store(config_path):
    return make_store(config_path)


@pytest.fixture
def reporter():
    return RecordingReporter()


@pytest.fixture
def fake_mpv():
    return FakeMPV()


@pytest.fixture
def player(config_store, reporter, fake_mpv):
    p = Player(config_store, reporter=reporter, mpv_factory=lambda path: fake_mpv,
               poll_interval=0.02)
    yield p
    p.stop(wait=True)


@pytest.fixture
def app(config_store, player):
    """Flask app backed by the test config and a recording reporter."""
    discovery = ServerDiscovery(config_store, probe=lambda *a: [])
    app = create_app(config_store, player=player, discovery=discovery)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    """Create a Flask test client."""
    return app.test_client()
