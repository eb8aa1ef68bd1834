"""Flask REST API for jf-external-player.

The page script running inside the Emby/Jellyfin web UI calls these
endpoints on localhost to start, stop and watch external playback.
"""

import logging
import shutil

from flask import Flask, jsonify, request

from jfplayer.__about__ import __version__
from jfplayer.config import ConfigStore, PathMapping, config_from_dict
from jfplayer.server.discovery import ServerDiscovery
from jfplayer.server.player import LaunchError, Player
from jfplayer.server.session import Credentials, PlaylistItem

logger = logging.getLogger(__name__)

MAX_FORM_MAPPINGS = 100


def _truthy(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")


def _credentials(data) -> Credentials:
    return Credentials(
        server_url=str(data.get("serverUrl") or ""),
        user_id=str(data.get("userId") or ""),
        token=str(data.get("token") or ""),
    )


def _mappings_from_form(form) -> list[PathMapping]:
    """Collect mapping_{type,match,replace}_N rows; gaps in N are allowed."""
    mappings = []
    for i in range(MAX_FORM_MAPPINGS + 1):
        match = form.get(f"mapping_match_{i}", "")
        if not match:
            continue
        mappings.append(PathMapping(
            kind=form.get(f"mapping_type_{i}") or "prefix",
            pattern=match,
            replacement=form.get(f"mapping_replace_{i}", ""),
        ))
    return mappings


def create_app(
    config_store: ConfigStore,
    player: Player | None = None,
    discovery: ServerDiscovery | None = None,
) -> Flask:
    """Create and configure the Flask application.

    Args:
        config_store: loaded configuration (and where to save it)
        player: player process manager. Built from config_store if None.
        discovery: server discovery. Built from config_store if None.
    """
    app = Flask(__name__)

    player = player or Player(config_store)
    discovery = discovery or ServerDiscovery(config_store)

    # Global JSON error handler - prevents bare HTML 500s
    @app.errorhandler(Exception)
    def handle_exception(e):
        from werkzeug.exceptions import HTTPException
        if isinstance(e, HTTPException):
            return e
        logger.exception("Unhandled error: %s", e)
        return jsonify({"error": str(e)}), 500

    # The caller is a page script on the media server's origin
    @app.after_request
    def add_cors_headers(response):
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        return response

    app.config_store = config_store
    app.player = player
    app.discovery = discovery

    @app.route("/api/health")
    def health():
        return jsonify({"status": "ok", "version": __version__})

    # --- Playback ---

    @app.route("/api/play")
    def play():
        """Play a single item: ?path=&itemId=&serverUrl=&userId=&token=&resume="""
        args = request.args
        path = args.get("path", "")
        if not path:
            return jsonify({"error": "missing 'path' parameter"}), 400

        item = PlaylistItem(path=path, item_id=args.get("itemId", ""))
        try:
            translated = player.play([item], _credentials(args), resume=_truthy(args.get("resume")))
        except LaunchError as e:
            return jsonify({"error": str(e)}), 500
        return jsonify({"status": "playing", "path": translated[0]})

    @app.route("/api/playlist", methods=["POST"])
    def playlist():
        """Play several items in one player instance."""
        data = request.get_json(silent=True) or {}
        raw_items = data.get("items") or []
        if not isinstance(raw_items, list):
            return jsonify({"error": "'items' must be a list"}), 400

        items = [
            PlaylistItem(path=str(i.get("path") or ""), item_id=str(i.get("itemId") or ""))
            for i in raw_items
            if isinstance(i, dict) and i.get("path")
        ]
        if not items:
            return jsonify({"error": "no items to play"}), 400

        try:
            player.play(items, _credentials(data), resume=_truthy(data.get("resume")))
        except LaunchError as e:
            return jsonify({"error": str(e)}), 500
        logger.info("Playlist started with %d items", len(items))
        return jsonify({"status": "playing", "items": len(items)})

    @app.route("/api/stop", methods=["POST"])
    def stop():
        player.stop()
        return jsonify({"status": "stopped"})

    @app.route("/api/status")
    def status():
        return jsonify(player.get_status())

    # --- Configuration ---

    @app.route("/api/config")
    def get_config():
        return jsonify(config_store.get().to_dict())

    @app.route("/api/config", methods=["POST"])
    def save_config():
        """Replace the whole configuration document."""
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({"error": "JSON object required"}), 400
        config = config_from_dict(data)
        try:
            config_store.replace(config)
        except OSError as e:
            return jsonify({"error": f"Failed to save: {e}"}), 500
        return jsonify(config.to_dict())

    @app.route("/config", methods=["POST"])
    def save_config_form():
        """Config form: player selection, mapping rows and url_encode."""
        if request.is_json:
            return save_config()

        form = request.form
        current = config_store.get()
        key = form.get("player", "")
        if key not in ("mpv", "vlc"):
            key = "mpv"

        player_path = key
        if key in current.players and current.players[key].path:
            player_path = current.players[key].path
        if shutil.which(player_path) is None:
            return jsonify({
                "error": f"Player '{player_path}' not found on PATH. "
                         "Please install it or configure a custom path.",
            }), 400

        try:
            config = config_store.update(
                player=key,
                path_mappings=tuple(_mappings_from_form(form)),
                url_encode=form.get("url_encode") == "1",
            )
        except OSError as e:
            return jsonify({"error": f"Failed to save: {e}"}), 500
        return jsonify({"status": "saved", "config": config.to_dict()})

    @app.route("/api/servers", methods=["POST"])
    def save_servers():
        """Explicitly set the media server URLs (turns off auto-discovery)."""
        data = request.get_json(silent=True) or {}
        if data:
            urls = data.get("server_urls") or []
        else:
            urls = request.form.getlist("server_url")
        if not isinstance(urls, list):
            return jsonify({"error": "'server_urls' must be a list"}), 400
        urls = [str(u).strip() for u in urls if str(u).strip()]
        try:
            config = config_store.update(server_urls=tuple(urls), server_urls_set=True)
        except OSError as e:
            return jsonify({"error": f"Failed to save: {e}"}), 500
        return jsonify({"status": "saved", "server_urls": list(config.server_urls)})

    # --- Discovery ---

    @app.route("/api/discover")
    def discover():
        if request.args.get("status") == "1":
            return jsonify({
                "status": "scanning" if discovery.running else "complete",
                "servers": list(config_store.get().server_urls),
            })
        servers = discovery.run(update_config=False)
        if servers is None:
            # A scan is already running; hand back what we had
            servers = discovery.last_results
        return jsonify({"status": "complete", "servers": [s.to_dict() for s in servers]})

    @app.route("/api/discover/reset", methods=["GET", "POST"])
    def discover_reset():
        try:
            config_store.update(server_urls=(), server_urls_set=False)
        except OSError as e:
            return jsonify({"error": f"Failed to save: {e}"}), 500
        discovery.clear()
        discovery.start_background()
        return jsonify({"status": "reset"})

    return app
