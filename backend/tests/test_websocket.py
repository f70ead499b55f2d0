"""End-to-end tests for the WebSocket room endpoint.

These run the real endpoint through Starlette's TestClient, so connect,
replace and disconnect go through the same cleanup path as production.
Each socket's cleanup ends with a ``connection_info`` broadcast to its
room; tests wait for that on another socket before checking state.
"""

from __future__ import annotations

import contextlib
import os
from decimal import Decimal
from unittest.mock import patch

# Disable rate limiting before importing the app module
os.environ.setdefault("RATE_LIMIT_ENABLED", "0")

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.config import RoomConfig
from app.models import SubBalance
from app.registry import RoomRegistry
from app.ws_manager import ConnectionManager


@contextlib.asynccontextmanager
async def _noop_lifespan(app):
    yield


with patch("app.main.lifespan", _noop_lifespan):
    from app.main import app as fastapi_app


def _config(stake: int) -> RoomConfig:
    return RoomConfig(
        stake=stake,
        house_cut_rate=Decimal("0.20"),
        registration_seconds=30,
        call_interval_seconds=2,
        claim_window_seconds=1,
        announce_seconds=5,
        card_pool_size=100,
        auto_restart=True,
    )


@pytest.fixture
def connections():
    return ConnectionManager()


@pytest.fixture
def registry(ledger, connections, round_store, clock):
    return RoomRegistry.build([_config(10), _config(50)], ledger, connections, round_store, clock)


@pytest.fixture
def client(registry, ledger, round_store, connections):
    fastapi_app.state.registry = registry
    fastapi_app.state.ledger = ledger
    fastapi_app.state.round_store = round_store
    fastapi_app.state.connections = connections
    # One portal (event loop) for every socket; no Redis, no round timer
    with patch.object(fastapi_app.router, "lifespan_context", _noop_lifespan):
        with TestClient(fastapi_app) as c:
            yield c


def _types(ws, n: int) -> list[str]:
    return [ws.receive_json()["type"] for _ in range(n)]


def _connect(stack: contextlib.ExitStack, client: TestClient, path: str):
    ws = stack.enter_context(client.websocket_connect(path))
    assert _types(ws, 2) == ["snapshot", "connection_info"]
    return ws


def _select(ws, card_number: int) -> dict:
    ws.send_json({"type": "select_card", "data": {"card_number": card_number}})
    messages = [ws.receive_json() for _ in range(3)]
    assert [m["type"] for m in messages] == ["registration_opened", "card_taken", "card_selected"]
    return messages[-1]


def _wait_cleanup(observer, connected: int) -> None:
    """Block until a socket in the observer's room has been cleaned up."""
    while True:
        msg = observer.receive_json()
        if msg["type"] == "connection_info" and msg["data"]["connected"] == connected:
            return


class TestConnect:
    def test_snapshot_then_connection_info(self, client):
        with client.websocket_connect("/ws/50/alice") as ws:
            snapshot = ws.receive_json()
            assert snapshot["type"] == "snapshot"
            assert snapshot["data"]["stake"] == 50
            assert snapshot["data"]["you"] is None
            assert ws.receive_json() == {
                "type": "connection_info",
                "data": {"stake": 50, "connected": 1},
            }

    def test_unknown_room_closed(self, client):
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws/20/alice"):
                pass
        assert exc.value.code == 4004

    def test_reserved_id_closed(self, client):
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws/10/@house"):
                pass
        assert exc.value.code == 4003

    def test_select_card_over_socket(self, client, ledger, registry):
        client.portal.call(ledger.deposit, "alice", 100, SubBalance.PLAY)
        with contextlib.ExitStack() as stack:
            ws = _connect(stack, client, "/ws/10/alice")

            reply = _select(ws, 7)

            assert reply["data"] == {"card_number": 7, "released": None}
            assert registry.get(10).card_pool.holder(7) == "alice"

    def test_bad_json_ignored(self, client):
        with contextlib.ExitStack() as stack:
            ws = _connect(stack, client, "/ws/10/alice")
            ws.send_text("{not json")
            ws.send_json(["not", "a", "dict"])
            ws.send_json({"type": "snapshot"})
            assert ws.receive_json()["type"] == "snapshot"


class TestDisconnect:
    def test_disconnect_during_registration_refunds(self, client, ledger, registry):
        client.portal.call(ledger.deposit, "alice", 100, SubBalance.PLAY)
        with contextlib.ExitStack() as stack:
            bob = _connect(stack, client, "/ws/10/bob")
            alice = _connect(stack, client, "/ws/10/alice")
            _select(alice, 7)

            alice.close()
            _wait_cleanup(bob, connected=1)

            assert "alice" not in registry.get(10).participants
            assert registry.get(10).card_pool.holder(7) is None
            assert client.portal.call(ledger.get_balance, "alice").play == 100

    def test_reconnect_replaces_old_socket(self, client, ledger, registry):
        client.portal.call(ledger.deposit, "alice", 100, SubBalance.PLAY)
        with contextlib.ExitStack() as stack:
            old = _connect(stack, client, "/ws/10/alice")
            _select(old, 7)

            new = stack.enter_context(client.websocket_connect("/ws/10/alice"))
            snapshot = new.receive_json()
            assert snapshot["data"]["you"]["card_number"] == 7
            assert new.receive_json()["data"]["connected"] == 1

            # The server closed the replaced socket
            with pytest.raises(WebSocketDisconnect) as exc:
                old.receive_json()
            assert exc.value.code == 4001

            # Its cleanup must not take the seat the new socket holds
            old.close()
            _wait_cleanup(new, connected=1)

            assert registry.room_of("alice").stake == 10
            assert "alice" in registry.get(10).participants
            assert client.portal.call(ledger.get_balance, "alice").play == 90

    def test_closing_previous_tier_keeps_new_seat(self, client, ledger, registry):
        client.portal.call(ledger.deposit, "alice", 100, SubBalance.PLAY)
        with contextlib.ExitStack() as stack:
            bob = _connect(stack, client, "/ws/10/bob")
            ws10 = _connect(stack, client, "/ws/10/alice")
            ws50 = _connect(stack, client, "/ws/50/alice")
            _select(ws50, 7)

            ws10.close()
            _wait_cleanup(bob, connected=1)

            assert registry.room_of("alice").stake == 50
            assert registry.get(50).card_pool.holder(7) == "alice"
            assert client.portal.call(ledger.get_balance, "alice").play == 50
