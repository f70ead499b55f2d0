"""Shared fixtures: fake Redis, a controllable clock, and a recording broadcaster."""

from __future__ import annotations

import json
from decimal import Decimal
from typing import Collection

import fakeredis
import fakeredis.aioredis
import pytest

from app.caller import Caller
from app.cards import BingoCard
from app.config import RoomConfig
from app.ledger import RedisLedger
from app.room import Room
from app.round_store import RoundStore


class FakeClock:
    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingBroadcaster:
    """Collects every message a room sends, in order."""

    def __init__(self) -> None:
        self.broadcasts: list[tuple[int, dict, frozenset]] = []
        self.direct: list[tuple[int, str, dict]] = []

    async def broadcast_to_all(self, code: int, message: str, exclude: Collection[str] = ()) -> None:
        self.broadcasts.append((code, json.loads(message), frozenset(exclude)))

    async def send_to_player(self, code: int, player_id: str, message: str) -> None:
        self.direct.append((code, player_id, json.loads(message)))

    def types(self) -> list[str]:
        return [m["type"] for _, m, _ in self.broadcasts]

    def of_type(self, msg_type: str) -> list[dict]:
        return [m["data"] for _, m, _ in self.broadcasts if m["type"] == msg_type]


class FixedCaller(Caller):
    """Caller that draws a scripted order, then the rest ascending."""

    def __init__(self, order: list[int]) -> None:
        self._order = list(order)
        super().__init__()

    def _generate(self):
        rest = [n for n in range(1, 76) if n not in self._order]
        for number in self._order + rest:
            self.drawn.append(number)
            yield number


def make_grid(first_row: list[int], base: int = 100) -> list[list[int]]:
    """A valid 5x5 grid whose first row is ``first_row``; other cells are unique fillers."""
    grid = [list(first_row)]
    filler = base
    for r in range(1, 5):
        row = []
        for c in range(5):
            if r == 2 and c == 2:
                row.append(0)
            else:
                row.append(filler)
                filler += 1
        grid.append(row)
    return grid


@pytest.fixture
def redis():
    return fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def ledger(redis):
    return RedisLedger(redis)


@pytest.fixture
def round_store(redis):
    return RoundStore(redis)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def room_config():
    return RoomConfig(
        stake=10,
        house_cut_rate=Decimal("0.20"),
        registration_seconds=30,
        call_interval_seconds=2,
        claim_window_seconds=1,
        announce_seconds=5,
        card_pool_size=100,
        auto_restart=True,
    )


@pytest.fixture
def make_room(ledger, broadcaster, round_store, clock, room_config):
    """Build a room; ``grids`` maps card number -> grid, ``order`` scripts the draws."""

    def _make(config: RoomConfig | None = None, grids=None, order=None, **kwargs) -> Room:
        grids = grids or {}

        def card_factory(card_number, rng=None):
            grid = grids.get(card_number) or make_grid(
                [c * 15 + 1 for c in range(5)], base=1000 + card_number * 30
            )
            return BingoCard(card_number, grid)

        def caller_factory(rng=None):
            return FixedCaller(order or [])

        return Room(
            config or room_config,
            kwargs.pop("ledger", ledger),
            broadcaster,
            kwargs.pop("round_store", round_store),
            clock=clock,
            card_factory=card_factory,
            caller_factory=caller_factory,
            **kwargs,
        )

    return _make
