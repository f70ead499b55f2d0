"""Tests for the room registry and the round timer."""

from __future__ import annotations

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from app.config import RoomConfig
from app.exceptions import NotInRoom, UnknownRoom
from app.models import SubBalance
from app.registry import RoomRegistry
from app.room import Phase
from app.timer import RoundTimer


def _config(stake: int, **overrides) -> RoomConfig:
    values = dict(
        stake=stake,
        house_cut_rate=Decimal("0.20"),
        registration_seconds=30,
        call_interval_seconds=2,
        claim_window_seconds=1,
        announce_seconds=5,
        card_pool_size=100,
        auto_restart=True,
    )
    values.update(overrides)
    return RoomConfig(**values)


@pytest.fixture
def registry(ledger, broadcaster, round_store, clock):
    return RoomRegistry.build([_config(10), _config(50)], ledger, broadcaster, round_store, clock)


# ── Registry ─────────────────────────────────────────────────────────

class TestRegistry:
    def test_one_room_per_stake(self, registry):
        assert len(registry) == 2
        assert registry.stakes() == [10, 50]
        assert registry.get(50).stake == 50

    def test_unknown_stake(self, registry):
        with pytest.raises(UnknownRoom):
            registry.get(20)

    def test_duplicate_stake_rejected(self, ledger, broadcaster):
        with pytest.raises(ValueError):
            RoomRegistry.build([_config(10), _config(10)], ledger, broadcaster)

    async def test_join_returns_snapshot(self, registry):
        snap = await registry.join_room("alice", 10)
        assert snap["stake"] == 10
        assert snap["phase"] == "idle"
        assert snap["you"] is None
        assert registry.room_of("alice").stake == 10

    async def test_events_before_join_rejected(self, registry):
        with pytest.raises(NotInRoom):
            await registry.select_card("alice", 1)
        with pytest.raises(NotInRoom):
            await registry.claim_win("alice")

    async def test_select_card_routes_to_joined_room(self, registry, ledger):
        await ledger.deposit("alice", 100, SubBalance.PLAY)
        await registry.join_room("alice", 50)

        await registry.select_card("alice", 7)

        assert registry.get(50).phase is Phase.REGISTRATION
        assert registry.get(10).phase is Phase.IDLE
        assert (await ledger.get_balance("alice")).play == 50

    async def test_switching_rooms_leaves_previous(self, registry, ledger):
        await ledger.deposit("alice", 100, SubBalance.PLAY)
        await registry.join_room("alice", 10)
        await registry.select_card("alice", 7)

        await registry.join_room("alice", 50)

        assert "alice" not in registry.get(10).participants
        assert (await ledger.get_balance("alice")).play == 100
        assert registry.room_of("alice").stake == 50

    async def test_leave_detaches(self, registry):
        await registry.join_room("alice", 10)
        await registry.leave("alice")
        with pytest.raises(NotInRoom):
            registry.room_of("alice")
        # A second leave is harmless
        await registry.leave("alice")

    async def test_leave_for_previous_tier_keeps_new_seat(self, registry, ledger):
        await ledger.deposit("alice", 100, SubBalance.PLAY)
        await registry.join_room("alice", 10)
        await registry.join_room("alice", 50)
        await registry.select_card("alice", 7)

        # The tier-10 socket closes after the tier-50 one opened
        await registry.leave("alice", 10)

        assert registry.room_of("alice").stake == 50
        assert "alice" in registry.get(50).participants
        assert (await ledger.get_balance("alice")).play == 50

        await registry.leave("alice", 50)
        assert "alice" not in registry.get(50).participants
        assert (await ledger.get_balance("alice")).play == 100

    def test_snapshots_sorted_by_stake(self, registry):
        assert [s["stake"] for s in registry.snapshots()] == [10, 50]


# ── Timer ────────────────────────────────────────────────────────────

class TestRoundTimer:
    async def test_tick_fires_only_due_rooms(self, registry, ledger, clock):
        await ledger.deposit("alice", 100, SubBalance.PLAY)
        await ledger.deposit("bob", 100, SubBalance.PLAY)
        await registry.join_room("alice", 10)
        await registry.select_card("alice", 1)
        clock.advance(10)
        await registry.join_room("bob", 50)
        await registry.select_card("bob", 1)

        timer = RoundTimer(registry, clock=clock)
        clock.advance(20)
        fired = await timer.tick()

        assert fired == [10]
        assert registry.get(10).phase is Phase.RUNNING
        assert registry.get(50).phase is Phase.REGISTRATION

    async def test_tick_without_deadlines(self, registry, clock):
        assert await RoundTimer(registry, clock=clock).tick() == []

    async def test_room_error_does_not_stop_others(self, registry, clock):
        for room in registry:
            room.deadline = clock.now
        registry.get(10).on_deadline = AsyncMock(side_effect=RuntimeError("boom"))
        registry.get(50).on_deadline = AsyncMock()

        fired = await RoundTimer(registry, clock=clock).tick()

        assert sorted(fired) == [10, 50]
        registry.get(50).on_deadline.assert_awaited_once()

    async def test_start_and_stop(self, registry, clock):
        timer = RoundTimer(registry, clock=clock)
        timer.start()
        task = timer._task
        timer.start()
        assert timer._task is task
        timer.stop()
        await asyncio.gather(task, return_exceptions=True)
        assert task.done()
