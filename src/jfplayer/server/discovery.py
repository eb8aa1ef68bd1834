"""Emby/Jellyfin server discovery.

Both servers answer a UDP broadcast on port 7359 with a small JSON blob
describing themselves. We send both probes to every broadcast address we
can work out, collect replies for a few seconds, and offer the results as
URL match patterns for the page script.
"""

from __future__ import annotations

import ipaddress
import json
import logging
import socket
import threading
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from jfplayer.config import ConfigStore

logger = logging.getLogger(__name__)

DISCOVERY_PORT = 7359
DISCOVERY_TIMEOUT = 3.0
DEFAULT_SERVER_PORT = 8096

PROBES = (
    ("Who is JellyfinServer?", "jellyfin"),
    ("who is EmbyServer?", "emby"),
)


@dataclass
class DiscoveredServer:
    """A media server that answered the broadcast."""

    name: str
    address: str
    url: str
    platform: str  # "jellyfin" or "emby"

    def to_dict(self) -> dict:
        return asdict(self)


def parse_response(data: bytes, sender_ip: str, platform: str) -> DiscoveredServer | None:
    """Turn one UDP reply into a DiscoveredServer (None if it isn't JSON)."""
    try:
        info = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if not isinstance(info, dict):
        return None
    url = info.get("LocalAddress") or info.get("Address") or ""
    if not url:
        url = f"http://{sender_ip}:{DEFAULT_SERVER_PORT}"
    return DiscoveredServer(
        name=str(info.get("Name", "")),
        address=sender_ip,
        url=url.rstrip("/") + "/*",
        platform=platform,
    )


def broadcast_addresses() -> list[str]:
    """Global broadcast plus the /24 broadcast of the primary interface."""
    addresses = ["255.255.255.255"]
    local_ip = _get_local_ip()
    if local_ip != "127.0.0.1":
        net = ipaddress.ip_network(f"{local_ip}/24", strict=False)
        bcast = str(net.broadcast_address)
        if bcast not in addresses:
            addresses.append(bcast)
            logger.info("Discovery: will try broadcast %s (from %s)", bcast, local_ip)
    return addresses


def _get_local_ip() -> str:
    """Get the local IP address (best effort)."""
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except OSError:
        return "127.0.0.1"


def _probe(message: str, platform: str, targets: list[str], timeout: float) -> list[DiscoveredServer]:
    found = []
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    except OSError as e:
        logger.warning("Discovery: failed to create socket: %s", e)
        return found

    with sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.settimeout(timeout)
        for target in targets:
            try:
                sock.sendto(message.encode("utf-8"), (target, DISCOVERY_PORT))
            except OSError as e:
                logger.debug("Discovery: failed to send to %s: %s", target, e)

        while True:
            try:
                data, (sender_ip, _port) = sock.recvfrom(4096)
            except OSError:
                break  # timeout or error
            server = parse_response(data, sender_ip, platform)
            if server:
                found.append(server)
    return found


class ServerDiscovery:
    """Runs discovery scans and caches the last result.

    Only one scan runs at a time; a second request while one is running
    returns None straight away.
    """

    def __init__(self, config_store: "ConfigStore", timeout: float = DISCOVERY_TIMEOUT, probe=_probe):
        self._config_store = config_store
        self._timeout = timeout
        self._probe = probe
        self._lock = threading.Lock()
        self._running = False
        self._last: list[DiscoveredServer] = []

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    @property
    def last_results(self) -> list[DiscoveredServer]:
        with self._lock:
            return list(self._last)

    def clear(self):
        with self._lock:
            self._last = []

    def run(self, update_config: bool = False) -> list[DiscoveredServer] | None:
        """Scan the network. Optionally add found URLs to the config."""
        with self._lock:
            if self._running:
                return None
            self._running = True

        try:
            servers = self._scan()
            with self._lock:
                self._last = servers
            if update_config and servers:
                self._add_to_config(servers)
            return servers
        finally:
            with self._lock:
                self._running = False

    def _scan(self) -> list[DiscoveredServer]:
        targets = broadcast_addresses()
        results: list[list[DiscoveredServer]] = [[] for _ in PROBES]

        def worker(i, message, platform):
            results[i] = self._probe(message, platform, targets, self._timeout)

        threads = [
            threading.Thread(target=worker, args=(i, msg, plat), daemon=True)
            for i, (msg, plat) in enumerate(PROBES)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        servers = []
        seen = set()
        for found in results:
            for server in found:
                key = (server.address, server.platform)
                if key in seen:
                    continue
                seen.add(key)
                servers.append(server)
                logger.info("Discovery: found %s server %r at %s",
                            server.platform, server.name, server.url)
        return servers

    def _add_to_config(self, servers: list[DiscoveredServer]):
        config = self._config_store.get()
        if config.server_urls_set:
            return
        urls = list(config.server_urls)
        for server in servers:
            if server.url not in urls:
                urls.append(server.url)
        try:
            self._config_store.update(server_urls=tuple(urls))
        except OSError as e:
            logger.warning("Discovery: could not save server URLs: %s", e)
            return
        logger.info("Discovery: auto-configured %d server URL(s)", len(urls))

    def start_background(self):
        """Run a scan in a background thread and store the results."""
        threading.Thread(
            target=self.run, kwargs={"update_config": True},
            daemon=True, name="discovery",
        ).start()
