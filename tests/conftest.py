"""Shared fakes and fixtures for relay tests."""

from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any

import pytest
from websockets.protocol import State

from lanrelay.relay.endpoint import Endpoint
from lanrelay.relay.registry import ClientRegistry
from lanrelay.relay.rooms import RoomManager
from lanrelay.relay.router import MessageRouter
from lanrelay.relay.status import StatusResponder
from lanrelay.relay.transfer import TransferCoordinator


class FakeConnection:
    """Stands in for a websockets connection: records every frame sent."""

    def __init__(self) -> None:
        self.state = State.OPEN
        self.sent: list[str] = []

    async def send(self, text: str) -> None:
        self.sent.append(text)

    def messages(self) -> list[dict[str, Any]]:
        return [json.loads(t) for t in self.sent]

    def of_type(self, kind: str) -> list[dict[str, Any]]:
        return [m for m in self.messages() if m.get("type") == kind]

    def clear(self) -> None:
        self.sent.clear()


@pytest.fixture
def endpoint() -> Endpoint:
    return Endpoint(address="192.168.1.10", port=8080)


@pytest.fixture
def registry(endpoint: Endpoint) -> ClientRegistry:
    return ClientRegistry(endpoint)


@pytest.fixture
def rooms(registry: ClientRegistry, endpoint: Endpoint) -> RoomManager:
    return RoomManager(registry, endpoint, max_rooms=8)


@pytest.fixture
def hub(endpoint: Endpoint) -> SimpleNamespace:
    """Server-side components wired the way RelayServer wires them."""
    registry = ClientRegistry(endpoint)
    rooms = RoomManager(registry, endpoint)
    transfers = TransferCoordinator(
        retain_chunks=False, max_chunks=100, max_file_size=10_000, scope_by_sender=True,
    )
    status = StatusResponder(registry, rooms, transfers, endpoint)
    router = MessageRouter(registry, rooms, status, transfers)
    ns = SimpleNamespace(
        endpoint=endpoint,
        registry=registry,
        rooms=rooms,
        transfers=transfers,
        status=status,
        router=router,
    )

    async def connect(address: str = "192.168.1.20") -> tuple[str, FakeConnection]:
        conn = FakeConnection()
        client_id = await registry.register(conn, address, "pytest")
        conn.clear()
        return client_id, conn

    async def send(client_id: str, message: dict[str, Any]) -> None:
        await router.dispatch(client_id, json.dumps(message))

    ns.connect = connect
    ns.send = send
    return ns


@pytest.fixture
def make_conn():
    return FakeConnection
