"""CLI entry point for jf-external-player.

jf-external-player: runs the localhost daemon the page script talks to.
"""

import argparse
import logging
import sys


def run_server(argv=None):
    """Entry point for the jf-external-player command."""
    parser = argparse.ArgumentParser(
        description="jf-external-player - open Emby/Jellyfin items in mpv or VLC"
    )
    parser.add_argument(
        "--port", type=int, default=None, help="Port to listen on (overrides config)"
    )
    parser.add_argument(
        "--config", default=None,
        help="Path to config.json (default: ~/.config/jf-external-player/config.json)",
    )
    parser.add_argument(
        "--debug", action="store_true", help="Enable Flask debug mode"
    )
    parser.add_argument(
        "--log-level", default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)"
    )
    parser.add_argument(
        "--quiet", action="store_true",
        help="Suppress per-request werkzeug logs"
    )
    parser.add_argument(
        "--no-discovery", action="store_true",
        help="Don't scan the network for media servers on startup"
    )
    args = parser.parse_args(argv)

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    log = logging.getLogger("jfplayer")

    from jfplayer.config import ConfigError, ConfigStore, ensure_config_dir, resolve_config_path
    from jfplayer.server.app import create_app

    config_path = resolve_config_path(args.config)
    try:
        ensure_config_dir(config_path)
    except ConfigError as e:
        log.error("%s", e)
        sys.exit(1)

    config_store = ConfigStore.open(config_path)
    config = config_store.get()
    port = args.port or config.port

    app = create_app(config_store)

    if args.quiet:
        logging.getLogger("werkzeug").setLevel(logging.WARNING)

    # Auto-discover servers on startup if not configured by user
    if not args.no_discovery and not config.server_urls_set:
        log.info("Server URLs not configured, starting network discovery...")
        app.discovery.start_background()

    log.info("Starting server on 127.0.0.1:%d", port)
    log.info("Config: %s", config_path)
    log.info("Play endpoint: http://127.0.0.1:%d/api/play?path=...", port)

    try:
        app.run(
            host="127.0.0.1",
            port=port,
            debug=args.debug,
            threaded=True,  # status polls arrive while play/stop requests run
            use_reloader=False,  # Don't reload - we have background threads
        )
    except OSError as e:
        log.error("Cannot listen on 127.0.0.1:%d: %s", port, e)
        sys.exit(1)
    finally:
        app.player.shutdown()


if __name__ == "__main__":
    run_server()
