"""WebSocket relay server.

One listener serves both the WebSocket endpoint (``ws_path``) and a small
JSON status API on the same port:

- ``GET /api/status``: health snapshot (reachability probe)
- ``GET /api/rooms``: live rooms and their members
- ``GET /api/transfers``: relayed transfers in flight

Each WebSocket connection is handled by one task: register (``welcome``),
then one ``dispatch`` per frame in arrival order, then a single cleanup when
the connection ends for any reason.
"""

from __future__ import annotations

import asyncio
import json
import signal
from http import HTTPStatus
from typing import Any
from urllib.parse import urlparse

from loguru import logger
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosed
from websockets.frames import CloseCode
from websockets.http11 import Request, Response

from lanrelay.config.schema import Config
from lanrelay.relay.endpoint import Endpoint, detect_lan_address
from lanrelay.relay.errors import LimitExceeded
from lanrelay.relay.registry import ClientRegistry
from lanrelay.relay.resilience import Watchdog
from lanrelay.relay.rooms import RoomManager
from lanrelay.relay.router import MessageRouter
from lanrelay.relay.status import StatusResponder
from lanrelay.relay.transfer import TransferCoordinator

_WILDCARD_HOSTS = {"", "0.0.0.0", "::"}


class RelayServer:
    """Owns every piece of relay state for one listener.

    Parameters
    ----------
    config:
        Root configuration; defaults apply when omitted.
    """

    def __init__(self, config: Config | None = None) -> None:
        self.config = config or Config()
        server_cfg = self.config.server
        limits = self.config.limits

        self.endpoint = Endpoint(
            address=self._advertised_address(),
            port=server_cfg.port,
            ws_path=server_cfg.ws_path,
        )
        self.registry = ClientRegistry(
            self.endpoint,
            max_clients=limits.max_clients,
            send_timeout=limits.send_timeout,
            max_buffered_bytes=limits.max_buffered_bytes,
        )
        self.rooms = RoomManager(
            self.registry,
            self.endpoint,
            max_rooms=limits.max_rooms,
            max_room_name_len=limits.max_room_name_len,
            max_room_id_len=limits.max_room_id_len,
        )
        self.transfers = TransferCoordinator(
            retain_chunks=False,
            max_transfers=limits.max_transfers,
            max_chunks=limits.max_chunks_per_transfer,
            max_file_size=limits.max_file_size,
            scope_by_sender=True,
        )
        self.status = StatusResponder(self.registry, self.rooms, self.transfers, self.endpoint)
        self.router = MessageRouter(self.registry, self.rooms, self.status, self.transfers)
        self._routes = self.status.routes(server_cfg.status_path)
        self._server: Server | None = None
        self._sweeper = Watchdog(
            "transfers",
            self._expire_idle_transfers,
            interval=self.config.transfer.sweep_interval,
        )

    # -- lifecycle -----------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._server is not None

    async def start(self) -> dict[str, Any]:
        """Bind the listener. Returns ``{address, port, httpUrl, wsUrl}``."""
        if self._server is not None:
            return self.info()

        cfg = self.config.server
        self._server = await serve(
            self._handle_connection,
            cfg.host,
            cfg.port,
            process_request=self._process_request,
            max_size=self.config.limits.max_message_bytes,
        )
        sockets = list(self._server.sockets)
        if sockets:
            self.endpoint.port = sockets[0].getsockname()[1]

        if self.config.transfer.idle_timeout > 0:
            self._sweeper.start()

        info = self.info()
        logger.info(
            "[Relay/Server] listening on {}:{} ({}, status {})",
            cfg.host, self.endpoint.port, info["wsUrl"], cfg.status_path,
        )
        return info

    async def stop(self) -> None:
        """Close every connection and the listener."""
        self._sweeper.stop()
        if self._server is None:
            return
        server, self._server = self._server, None
        server.close()
        await server.wait_closed()
        logger.info("[Relay/Server] stopped")

    async def serve_forever(self) -> None:
        """Run until SIGINT or SIGTERM."""
        await self.start()
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                # Windows event loops; Ctrl+C still raises KeyboardInterrupt
                logger.debug("[Relay/Server] no signal handler for {}", sig)
        try:
            await stop.wait()
        finally:
            await self.stop()

    def info(self) -> dict[str, Any]:
        return {
            "address": self.endpoint.address,
            "port": self.endpoint.port,
            "httpUrl": self.endpoint.http_url,
            "wsUrl": self.endpoint.ws_url,
        }

    # -- connections ---------------------------------------------------------

    async def _handle_connection(self, connection: ServerConnection) -> None:
        address = _remote_host(connection)
        user_agent = ""
        if connection.request is not None:
            user_agent = connection.request.headers.get("User-Agent", "")

        try:
            client_id = await self.registry.register(connection, address, user_agent)
        except LimitExceeded as exc:
            logger.warning("[Relay/Server] refusing {}: {}", address, exc)
            await connection.close(CloseCode.TRY_AGAIN_LATER, "server full")
            return

        try:
            async for raw in connection:
                await self.router.dispatch(client_id, raw)
        except ConnectionClosed as exc:
            logger.debug("[Relay/Server] {} connection closed: {}", client_id, exc)
        finally:
            await self.router.disconnect(client_id)

    # -- plain HTTP ----------------------------------------------------------

    def _process_request(self, connection: ServerConnection, request: Request) -> Response | None:
        """Answer status routes; let WebSocket upgrades on ``ws_path`` through."""
        path = urlparse(request.path).path
        is_upgrade = request.headers.get("Upgrade", "").lower() == "websocket"

        if not is_upgrade:
            provider = self._routes.get(path)
            if provider is not None:
                try:
                    return _json_response(HTTPStatus.OK, provider())
                except Exception as exc:
                    logger.warning("[Relay/Server] status handler error for {}: {}", path, exc)
                    return _json_response(HTTPStatus.INTERNAL_SERVER_ERROR, {"error": str(exc)})

        if path != self.config.server.ws_path:
            return _json_response(HTTPStatus.NOT_FOUND, {"error": "Not Found"})
        return None

    # -- housekeeping --------------------------------------------------------

    def _expire_idle_transfers(self) -> None:
        expired = self.transfers.expire_idle(self.config.transfer.idle_timeout)
        if expired:
            logger.info("[Relay/Server] forgot {} idle transfers", len(expired))

    def _advertised_address(self) -> str:
        cfg = self.config.server
        if cfg.advertise_address:
            return cfg.advertise_address
        if cfg.host not in _WILDCARD_HOSTS:
            return cfg.host
        return detect_lan_address()


def _json_response(status: HTTPStatus, data: Any) -> Response:
    body = json.dumps(data, ensure_ascii=False, default=str).encode("utf-8")
    headers = Headers([
        ("Content-Type", "application/json"),
        ("Content-Length", str(len(body))),
        ("Access-Control-Allow-Origin", "*"),
        ("Connection", "close"),
    ])
    return Response(status.value, status.phrase, headers, body)


def _remote_host(connection: ServerConnection) -> str:
    remote = connection.remote_address
    if isinstance(remote, (tuple, list)) and remote:
        return str(remote[0])
    return str(remote or "")
