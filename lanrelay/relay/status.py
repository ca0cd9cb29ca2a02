"""Read-only snapshots of relay state.

Used for the ``device-list`` reply and for the HTTP status probe that
callers hit before deciding whether this relay is reachable.  Nothing here
mutates state.
"""

from __future__ import annotations

import time
from typing import Any, Callable

from lanrelay.relay.endpoint import Endpoint
from lanrelay.relay.ids import iso_timestamp, now_ms
from lanrelay.relay.protocol import DeviceEntry, DeviceList, DeviceListServerInfo
from lanrelay.relay.registry import ClientRegistry
from lanrelay.relay.rooms import RoomManager
from lanrelay.relay.transfer import TransferCoordinator


class StatusResponder:
    """Builds device lists and health snapshots.

    Parameters
    ----------
    registry / rooms / transfers:
        The live server state to read from.
    endpoint:
        Advertised address reported in every snapshot.
    """

    def __init__(
        self,
        registry: ClientRegistry,
        rooms: RoomManager,
        transfers: TransferCoordinator,
        endpoint: Endpoint,
    ) -> None:
        self.registry = registry
        self.rooms = rooms
        self.transfers = transfers
        self.endpoint = endpoint
        self._start_time = time.time()

    @property
    def uptime(self) -> float:
        return time.time() - self._start_time

    def device_list(self, requesting_id: str | None = None) -> DeviceList:
        """Every connected client except the requester."""
        devices = [
            DeviceEntry(
                id=c.client_id,
                name=f"Device {c.client_id[:8]}",
                address=c.address,
                connected_at=iso_timestamp(c.connected_at),
                room=c.room_id,
            )
            for c in self.registry.list_others(requesting_id)
        ]
        return DeviceList(
            devices=devices,
            server_info=DeviceListServerInfo(
                address=self.endpoint.address,
                port=self.endpoint.port,
                client_count=self.registry.count,
            ),
        )

    def status(self) -> dict[str, Any]:
        """Health snapshot served on the status path."""
        return {
            "status": "running",
            "address": self.endpoint.address,
            "port": self.endpoint.port,
            "clientCount": self.registry.count,
            "roomCount": self.rooms.count,
            "transferCount": self.transfers.count,
            "uptime": round(self.uptime, 3),
            "timestamp": now_ms(),
        }

    def rooms_snapshot(self) -> list[dict[str, Any]]:
        return [
            {
                "roomId": r.room_id,
                "name": r.display_name,
                "members": r.member_ids,
                "createdAt": iso_timestamp(r.created_at),
            }
            for r in self.rooms.list_rooms()
        ]

    def transfers_snapshot(self) -> list[dict[str, Any]]:
        return self.transfers.list_sessions()

    def routes(self, status_path: str = "/api/status") -> dict[str, Callable[[], Any]]:
        """HTTP GET path → snapshot provider."""
        base = status_path.rsplit("/", 1)[0] or ""
        return {
            status_path: self.status,
            f"{base}/rooms": self.rooms_snapshot,
            f"{base}/transfers": self.transfers_snapshot,
        }
