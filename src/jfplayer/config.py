"""Configuration loader for jf-external-player.

The configuration is a single JSON document. It is read once at startup and
rewritten wholesale on every save; fields missing from the file are filled
in from the defaults below.
"""

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "JF_EXTERNAL_PLAYER_CONFIG"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / "jf-external-player" / "config.json"

MAPPING_KINDS = ("prefix", "wildcard", "regex")


class ConfigError(Exception):
    """The configuration file location cannot be used."""


@dataclass(frozen=True)
class PathMapping:
    """A single path rewrite rule.

    Serialized with the keys ``type``, ``match`` and ``replace``.
    """

    kind: str = "prefix"
    pattern: str = ""
    replacement: str = ""

    def to_dict(self) -> dict:
        return {"type": self.kind, "match": self.pattern, "replace": self.replacement}


@dataclass(frozen=True)
class PlayerConfig:
    """How to invoke one external player."""

    name: str = "mpv"
    path: str = "mpv"
    args: tuple[str, ...] = ("--fs",)

    def to_dict(self) -> dict:
        return {"name": self.name, "path": self.path, "args": list(self.args)}


DEFAULT_PLAYER_KEY = "mpv"
DEFAULT_PLAYER = PlayerConfig(name="mpv", path="mpv", args=("--fs",))


def default_players() -> dict[str, PlayerConfig]:
    return {
        "mpv": PlayerConfig(name="mpv", path="mpv", args=("--fs",)),
        "vlc": PlayerConfig(name="VLC", path="vlc", args=("--fullscreen",)),
    }


def default_mappings() -> tuple[PathMapping, ...]:
    # Two blank rows so the config form always has something to fill in
    return (PathMapping(), PathMapping())


@dataclass(frozen=True)
class Config:
    """Top-level configuration. Immutable; saving replaces it as a whole."""

    port: int = 9998
    player: str = DEFAULT_PLAYER_KEY
    players: dict[str, PlayerConfig] = field(default_factory=default_players)
    path_mappings: tuple[PathMapping, ...] = field(default_factory=default_mappings)
    url_encode: bool = False
    server_urls: tuple[str, ...] = ()
    server_urls_set: bool = False
    ipc_path: str = ""

    def selected_player(self) -> tuple[str, PlayerConfig]:
        """Return (key, PlayerConfig) for the selected player.

        An unknown key falls back to the built-in mpv definition.
        """
        player = self.players.get(self.player)
        if player is None:
            logger.warning("Unknown player %r, falling back to mpv", self.player)
            return DEFAULT_PLAYER_KEY, DEFAULT_PLAYER
        return self.player, player

    def to_dict(self) -> dict:
        return {
            "port": self.port,
            "player": self.player,
            "players": {k: p.to_dict() for k, p in self.players.items()},
            "path_mappings": [m.to_dict() for m in self.path_mappings],
            "url_encode": self.url_encode,
            "server_urls": list(self.server_urls),
            "server_urls_set": self.server_urls_set,
            "ipc_path": self.ipc_path,
        }


def resolve_config_path(path: str | None = None) -> Path:
    """Pick the config file location.

    Search order:
    1. Explicit path argument
    2. $JF_EXTERNAL_PLAYER_CONFIG
    3. ~/.config/jf-external-player/config.json
    """
    if path:
        return Path(path)
    env = os.environ.get(CONFIG_ENV_VAR)
    if env:
        return Path(env)
    return DEFAULT_CONFIG_PATH


def ensure_config_dir(path: Path):
    """Create the directory holding the config file.

    Raises ConfigError if it cannot be created; this is fatal at startup.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigError(f"Cannot create config directory {path.parent}: {e}") from e


def load_config(path: Path) -> Config:
    """Load configuration from a JSON file.

    A missing file is created with the defaults. A malformed file is logged
    and replaced in memory by the defaults (the file itself is left alone so
    the user can fix it).
    """
    if not path.exists():
        config = Config()
        try:
            save_config(config, path)
            logger.info("Wrote default config to %s", path)
        except OSError as e:
            logger.warning("Could not write default config to %s: %s", path, e)
        return config

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Failed to read config %s, using defaults: %s", path, e)
        return Config()

    if not isinstance(data, dict):
        logger.warning("Config %s is not a JSON object, using defaults", path)
        return Config()

    return _parse_config(data)


def save_config(config: Config, path: Path):
    """Write the whole configuration document."""
    data = json.dumps(config.to_dict(), indent=2)
    with open(path, "w", encoding="utf-8") as f:
        f.write(data + "\n")


def _get(data: dict, key: str, kind, default):
    """Fetch a typed field, falling back to the default with a warning."""
    if key not in data:
        return default
    value = data[key]
    # bool is an int subclass; don't let true/false pass as a port
    if kind is int and isinstance(value, bool):
        value = None
    if not isinstance(value, kind):
        logger.warning("Config field %r has invalid value %r, using default", key, value)
        return default
    return value


def _parse_players(raw) -> dict[str, PlayerConfig]:
    if not isinstance(raw, dict) or not raw:
        return default_players()
    players = {}
    for key, p in raw.items():
        if not isinstance(p, dict):
            logger.warning("Ignoring invalid player entry %r", key)
            continue
        args = p.get("args") or []
        if not isinstance(args, list):
            args = []
        players[key] = PlayerConfig(
            name=str(p.get("name", key)),
            path=str(p.get("path", "")),
            args=tuple(str(a) for a in args),
        )
    return players or default_players()


def _parse_mappings(raw) -> tuple[PathMapping, ...]:
    if not isinstance(raw, list):
        return default_mappings()
    mappings = []
    for m in raw:
        if not isinstance(m, dict):
            logger.warning("Ignoring invalid path mapping %r", m)
            continue
        kind = str(m.get("type") or "prefix")
        if kind not in MAPPING_KINDS:
            logger.warning("Unknown mapping type %r, treating as prefix", kind)
        mappings.append(PathMapping(
            kind=kind,
            pattern=str(m.get("match", "")),
            replacement=str(m.get("replace", "")),
        ))
    return tuple(mappings)


def _parse_config(data: dict) -> Config:
    """Parse a JSON dict into Config, default-filling missing fields."""
    defaults = Config()
    urls = _get(data, "server_urls", list, list(defaults.server_urls))
    return Config(
        port=_get(data, "port", int, defaults.port),
        player=_get(data, "player", str, defaults.player),
        players=_parse_players(data.get("players")),
        path_mappings=(
            _parse_mappings(data["path_mappings"])
            if "path_mappings" in data else defaults.path_mappings
        ),
        url_encode=_get(data, "url_encode", bool, defaults.url_encode),
        server_urls=tuple(str(u) for u in urls),
        server_urls_set=_get(data, "server_urls_set", bool, defaults.server_urls_set),
        ipc_path=_get(data, "ipc_path", str, defaults.ipc_path),
    )


def config_from_dict(data: dict) -> Config:
    """Build a Config from a request payload (same schema as the file)."""
    return _parse_config(data)


class ConfigStore:
    """Holds the current configuration behind its own lock.

    Readers grab the current immutable Config; writers replace it and
    persist the new document.
    """

    def __init__(self, path: Path, config: Config | None = None):
        self.path = path
        self._lock = threading.Lock()
        self._config = config if config is not None else Config()

    @classmethod
    def open(cls, path: Path) -> "ConfigStore":
        return cls(path, load_config(path))

    def get(self) -> Config:
        with self._lock:
            return self._config

    def replace(self, config: Config):
        """Write a new configuration to disk, then make it current.

        If the write fails the previous configuration stays in effect.
        """
        with self._lock:
            save_config(config, self.path)
            self._config = config
        logger.info("Configuration saved to %s", self.path)

    def update(self, **changes) -> Config:
        """Replace selected fields and save. Returns the new config."""
        with self._lock:
            current = asdict_shallow(self._config)
            current.update(changes)
            config = Config(**current)
            save_config(config, self.path)
            self._config = config
            return config


def asdict_shallow(config: Config) -> dict:
    """Field dict of a Config without recursing into nested dataclasses."""
    return {name: getattr(config, name) for name in Config.__dataclass_fields__}
