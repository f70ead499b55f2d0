"""Room registry: the stake-tier rooms for this process and who is in which.

Built once at startup and handed to every handler; routes inbound
participant events to the room the participant joined.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Iterable, Iterator, Optional

from app.card_pool import Reservation
from app.config import RoomConfig
from app.exceptions import NotInRoom, UnknownRoom
from app.ledger import Ledger
from app.room import Broadcaster, Room, RoundRecorder

logger = logging.getLogger(__name__)


class RoomRegistry:
    def __init__(self, rooms: Iterable[Room]) -> None:
        self._rooms: dict[int, Room] = {}
        for room in rooms:
            if room.stake in self._rooms:
                raise ValueError(f"Duplicate room for stake {room.stake}")
            self._rooms[room.stake] = room
        # participant -> stake of the room they are attached to
        self._attached: dict[str, int] = {}

    @classmethod
    def build(
        cls,
        configs: Iterable[RoomConfig],
        ledger: Ledger,
        broadcaster: Broadcaster,
        round_store: Optional[RoundRecorder] = None,
        clock: Callable[[], float] = time.time,
    ) -> RoomRegistry:
        rooms = [
            Room(config, ledger, broadcaster, round_store, clock=clock) for config in configs
        ]
        logger.info("Rooms ready for stakes %s", ", ".join(str(r.stake) for r in rooms))
        return cls(rooms)

    def __iter__(self) -> Iterator[Room]:
        return iter(self._rooms.values())

    def __len__(self) -> int:
        return len(self._rooms)

    def get(self, stake: int) -> Room:
        room = self._rooms.get(stake)
        if room is None:
            raise UnknownRoom(stake)
        return room

    def room_of(self, participant_id: str) -> Room:
        stake = self._attached.get(participant_id)
        if stake is None:
            raise NotInRoom(participant_id)
        return self._rooms[stake]

    def stakes(self) -> list[int]:
        return sorted(self._rooms)

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    async def join_room(self, participant_id: str, stake: int) -> dict[str, Any]:
        """Attach a participant to a stake tier's room and return its snapshot.

        Joining a different tier first leaves the current one.
        """
        room = self.get(stake)
        current = self._attached.get(participant_id)
        if current is not None and current != stake:
            await self.leave(participant_id)
        self._attached[participant_id] = stake
        return await room.join(participant_id)

    async def select_card(self, participant_id: str, card_number: int) -> Reservation:
        return await self.room_of(participant_id).select_card(participant_id, card_number)

    async def claim_win(self, participant_id: str) -> dict[str, Any]:
        return await self.room_of(participant_id).claim(participant_id)

    async def leave(self, participant_id: str, stake: Optional[int] = None) -> None:
        """Detach a participant from their room.

        With ``stake`` given, only a participant still attached to that tier
        is detached; a stale socket for a tier they already switched away
        from must not evict them from the new one.
        """
        current = self._attached.get(participant_id)
        if current is None or (stake is not None and current != stake):
            return
        del self._attached[participant_id]
        await self._rooms[current].leave(participant_id)

    def snapshots(self) -> list[dict[str, Any]]:
        return [self._rooms[s].snapshot() for s in self.stakes()]
