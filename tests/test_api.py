"""Tests for the Flask REST API."""

import json

from conftest import wait_for

from jfplayer.__about__ import __version__
from jfplayer.config import load_config
from jfplayer.server.discovery import DiscoveredServer


def _json(resp):
    return json.loads(resp.data)


class TestHealth:
    def test_health(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert _json(resp) == {"status": "ok", "version": __version__}

    def test_cors_headers(self, client):
        resp = client.get("/api/health")
        assert resp.headers["Access-Control-Allow-Origin"] == "*"
        assert "POST" in resp.headers["Access-Control-Allow-Methods"]

    def test_preflight(self, client):
        resp = client.options("/api/playlist")
        assert resp.status_code == 200
        assert resp.headers["Access-Control-Allow-Origin"] == "*"


class TestPlayback:
    def test_status_idle(self, client):
        assert _json(client.get("/api/status")) == {
            "playing": False, "paused": False, "itemId": "", "position": 0, "duration": 0,
        }

    def test_stop_when_idle(self, client, reporter):
        resp = client.post("/api/stop")
        assert resp.status_code == 200
        assert _json(resp) == {"status": "stopped"}
        assert reporter.calls == []
        assert _json(client.get("/api/status"))["playing"] is False

    def test_play_missing_path(self, client):
        resp = client.get("/api/play")
        assert resp.status_code == 400
        assert "missing 'path'" in _json(resp)["error"]

    def test_play(self, client, reporter):
        resp = client.get("/api/play", query_string={
            "path": "/mnt/movies/Foo/Foo.mkv", "itemId": "i1",
            "serverUrl": "http://jf:8096", "userId": "u", "token": "t",
        })
        assert resp.status_code == 200
        assert _json(resp) == {"status": "playing", "path": "\\\\server\\Movies\\Foo\\Foo.mkv"}
        assert reporter.kinds() == ["start"]
        ctx = reporter.calls[0][1]
        assert ctx.credentials.server_url == "http://jf:8096"
        assert ctx.credentials.token == "t"

        status = _json(client.get("/api/status"))
        assert status["playing"] is True
        assert status["itemId"] == "i1"

        assert _json(client.post("/api/stop")) == {"status": "stopped"}
        assert wait_for(lambda: reporter.kinds() == ["start", "stop"])
        assert _json(client.get("/api/status"))["playing"] is False

    def test_play_resume_flag(self, client, reporter):
        reporter.resume_position = 30.0
        client.get("/api/play", query_string={
            "path": "/mnt/movies/a.mkv", "itemId": "i1", "serverUrl": "http://jf",
            "userId": "u", "token": "t", "resume": "true",
        })
        assert reporter.resume_requests == ["i1"]

    def test_play_launch_failure(self, app, client, config_store):
        from jfplayer.config import PlayerConfig
        config_store.update(player="ghost", players={
            "ghost": PlayerConfig("ghost", "/nonexistent/player", ()),
        })
        resp = client.get("/api/play", query_string={"path": "/mnt/movies/a.mkv"})
        assert resp.status_code == 500
        assert "failed to start player" in _json(resp)["error"]

    def test_playlist(self, client, reporter):
        resp = client.post("/api/playlist", json={
            "items": [
                {"path": "/mnt/movies/1.mkv", "itemId": "a"},
                {"itemId": "no-path"},
                {"path": "/mnt/movies/2.mkv", "itemId": "b"},
            ],
            "serverUrl": "http://jf", "userId": "u", "token": "t",
        })
        assert resp.status_code == 200
        assert _json(resp) == {"status": "playing", "items": 2}
        assert [ctx.item_id for _, ctx in reporter.calls] == ["a"]

    def test_playlist_empty(self, client):
        resp = client.post("/api/playlist", json={"items": [{"itemId": "x"}]})
        assert resp.status_code == 400

    def test_playlist_no_body(self, client):
        assert client.post("/api/playlist").status_code == 400

    def test_playlist_items_not_list(self, client):
        resp = client.post("/api/playlist", json={"items": "nope"})
        assert resp.status_code == 400


class TestConfigApi:
    def test_get_config(self, client):
        data = _json(client.get("/api/config"))
        assert data["player"] == "sleeper"
        assert data["path_mappings"] == [
            {"type": "prefix", "match": "/mnt/movies", "replace": "\\\\server\\Movies"},
        ]

    def test_post_config_replaces_document(self, client, config_store, config_path):
        data = _json(client.get("/api/config"))
        data["path_mappings"] = [{"type": "regex", "match": "^/x/(\\w+)", "replace": "X:\\$1"}]
        data["url_encode"] = True
        resp = client.post("/api/config", json=data)
        assert resp.status_code == 200
        assert _json(client.get("/api/config")) == data
        saved = load_config(config_path)
        assert saved.url_encode is True
        assert saved.path_mappings[0].kind == "regex"

    def test_post_config_requires_object(self, client):
        assert client.post("/api/config", json=[1, 2]).status_code == 400

    def test_config_form(self, client, config_store, monkeypatch):
        monkeypatch.setattr("jfplayer.server.app.shutil.which", lambda p: "/usr/bin/" + p)
        resp = client.post("/config", data={
            "player": "vlc",
            "mapping_type_0": "wildcard",
            "mapping_match_0": "nfs://*/media",
            "mapping_replace_0": "\\\\nas\\media",
            "mapping_match_1": "",
            "mapping_type_3": "prefix",
            "mapping_match_3": "/mnt",
            "mapping_replace_3": "M:",
            "url_encode": "1",
        })
        assert resp.status_code == 200
        body = _json(resp)
        assert body["status"] == "saved"
        config = config_store.get()
        assert config.player == "vlc"
        assert config.url_encode is True
        assert [(m.kind, m.pattern) for m in config.path_mappings] == [
            ("wildcard", "nfs://*/media"), ("prefix", "/mnt"),
        ]

    def test_config_form_player_not_found(self, client, config_store, monkeypatch):
        monkeypatch.setattr("jfplayer.server.app.shutil.which", lambda p: None)
        resp = client.post("/config", data={"player": "mpv"})
        assert resp.status_code == 400
        assert "not found" in _json(resp)["error"]
        assert config_store.get().player == "sleeper"

    def test_config_form_accepts_json(self, client):
        data = _json(client.get("/api/config"))
        data["url_encode"] = True
        resp = client.post("/config", json=data)
        assert resp.status_code == 200
        assert _json(resp)["url_encode"] is True


class TestServers:
    def test_set_server_urls(self, client, config_store):
        resp = client.post("/api/servers", json={"server_urls": ["http://jf:8096/*", " "]})
        assert _json(resp) == {"status": "saved", "server_urls": ["http://jf:8096/*"]}
        config = config_store.get()
        assert config.server_urls == ("http://jf:8096/*",)
        assert config.server_urls_set is True

    def test_set_server_urls_form(self, client, config_store):
        client.post("/api/servers", data={"server_url": ["http://a/*", "http://b/*"]})
        assert config_store.get().server_urls == ("http://a/*", "http://b/*")


class TestDiscover:
    def test_discover_runs_scan(self, app, client):
        app.discovery._probe = lambda msg, platform, targets, timeout: (
            [DiscoveredServer("Home", "10.0.0.2", "http://10.0.0.2:8096/*", platform)]
            if platform == "jellyfin" else []
        )
        data = _json(client.get("/api/discover"))
        assert data["status"] == "complete"
        assert data["servers"] == [{
            "name": "Home", "address": "10.0.0.2",
            "url": "http://10.0.0.2:8096/*", "platform": "jellyfin",
        }]

    def test_discover_status(self, client, config_store):
        config_store.update(server_urls=("http://x/*",))
        data = _json(client.get("/api/discover?status=1"))
        assert data == {"status": "complete", "servers": ["http://x/*"]}

    def test_discover_reset(self, client, config_store):
        config_store.update(server_urls=("http://x/*",), server_urls_set=True)
        resp = client.post("/api/discover/reset")
        assert _json(resp) == {"status": "reset"}
        config = config_store.get()
        assert config.server_urls == ()
        assert config.server_urls_set is False
