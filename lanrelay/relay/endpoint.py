"""Where the relay can be reached on the LAN."""

from __future__ import annotations

import socket
from dataclasses import dataclass

from loguru import logger


@dataclass
class Endpoint:
    """Advertised address of this relay.

    ``port`` is filled in by the server once the listener is bound, so an
    ephemeral port (0) is reported correctly.
    """

    address: str = "127.0.0.1"
    port: int = 0
    ws_path: str = "/ws"

    @property
    def http_url(self) -> str:
        return f"http://{self.address}:{self.port}"

    @property
    def ws_url(self) -> str:
        return f"ws://{self.address}:{self.port}{self.ws_path}"


def detect_lan_address() -> str:
    """Return the first non-loopback IPv4 address of this host.

    A connected UDP socket reveals the interface the OS would route through;
    no packet is sent.  Falls back to the hostname lookup, then loopback.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect(("10.255.255.255", 1))
        address = sock.getsockname()[0]
        if address and not address.startswith("127."):
            return address
    except OSError as exc:
        logger.debug("[Relay/Endpoint] route probe failed: {}", exc)
    finally:
        sock.close()

    try:
        address = socket.gethostbyname(socket.gethostname())
        if not address.startswith("127."):
            return address
    except OSError as exc:
        logger.debug("[Relay/Endpoint] hostname lookup failed: {}", exc)

    return "127.0.0.1"
