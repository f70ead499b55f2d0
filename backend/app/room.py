"""Room state machine: one authoritative room per stake tier.

Drives a room through idle -> registration -> running -> announce and back,
owns the card pool, caller and settlement for its rounds, and is the only
thing that mutates round state.  Every entry point (card selection, claims,
disconnects, timer wakeups) runs under the room's lock, so events are
applied one at a time in arrival order.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
import uuid
from enum import Enum
from typing import Any, Callable, Collection, Optional, Protocol

from app.caller import Caller
from app.card_pool import CardPool, Reservation
from app.cards import BingoCard, generate_card
from app.config import RoomConfig
from app.evaluator import winning_lines
from app.exceptions import InvalidClaim, InvalidPhaseAction, StorageUnavailable
from app.ledger import Ledger
from app.models import RoundSummary, RoundWinner, SubBalance, TransactionKind
from app.settlement import Payout, Settlement

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    IDLE = "idle"
    REGISTRATION = "registration"
    RUNNING = "running"
    ANNOUNCE = "announce"


class Broadcaster(Protocol):
    async def broadcast_to_all(
        self, code: int, message: str, exclude: Collection[str] = ()
    ) -> None: ...

    async def send_to_player(self, code: int, player_id: str, message: str) -> None: ...


class RoundRecorder(Protocol):
    async def store_round_summary(self, summary: RoundSummary) -> None: ...


class Participant:
    """A paid registrant for the current round."""

    __slots__ = ("participant_id", "card_number", "card", "connected")

    def __init__(self, participant_id: str, card_number: int) -> None:
        self.participant_id = participant_id
        self.card_number = card_number
        self.card: Optional[BingoCard] = None  # dealt when the round starts
        self.connected = True

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "participant_id": self.participant_id,
            "card_number": self.card_number,
            "connected": self.connected,
        }
        if self.card is not None:
            d["card"] = self.card.to_dict()
        return d


def _message(msg_type: str, data: dict[str, Any]) -> str:
    return json.dumps({"type": msg_type, "data": data})


class Room:
    """One stake tier's recurring bingo rounds."""

    def __init__(
        self,
        config: RoomConfig,
        ledger: Ledger,
        broadcaster: Broadcaster,
        round_store: Optional[RoundRecorder] = None,
        *,
        settlement: Optional[Settlement] = None,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
        card_factory: Callable[..., BingoCard] = generate_card,
        caller_factory: Callable[..., Caller] = Caller,
    ) -> None:
        self.config = config
        self.stake = config.stake
        self._ledger = ledger
        self._broadcaster = broadcaster
        self._round_store = round_store
        self._settlement = settlement or Settlement(ledger)
        self._clock = clock
        self._rng = rng
        self._card_factory = card_factory
        self._caller_factory = caller_factory
        self._lock = asyncio.Lock()

        self.phase = Phase.IDLE
        self.deadline: Optional[float] = None
        self.card_pool = CardPool(config.card_pool_size)
        self._reset_round()

    def _reset_round(self) -> None:
        self.round_id: Optional[str] = None
        self.called_numbers: list[int] = []
        self.pot = 0
        self.winners: dict[str, int] = {}  # participant -> card number, claim order
        self.participants: dict[str, Participant] = {}
        self.card_pool.clear()
        self._next_round_id: Optional[str] = None
        self._caller: Optional[Caller] = None
        self._claim_window_open = False
        self._payout: Optional[Payout] = None
        self._started_at: Optional[float] = None
        self._finished_at: Optional[float] = None

    def _new_round_id(self) -> str:
        return f"BB{self.stake}-{uuid.uuid4().hex[:10].upper()}"

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def join(self, participant_id: str) -> dict[str, Any]:
        """Attach (or re-attach) a connection and return the room snapshot."""
        async with self._lock:
            await self._apply_due_registration()
            participant = self.participants.get(participant_id)
            if participant is not None:
                participant.connected = True
            return self.snapshot(participant_id)

    async def select_card(self, participant_id: str, card_number: int) -> Reservation:
        """Reserve a card, debiting the stake on the participant's first pick.

        Picking again while registered swaps cards without a second debit.
        """
        async with self._lock:
            await self._apply_due_registration()
            if self.phase is Phase.IDLE:
                await self._open_registration()
            if self.phase is not Phase.REGISTRATION:
                raise InvalidPhaseAction("select a card", self.phase.value)

            participant = self.participants.get(participant_id)
            if participant is not None and participant.card_number == card_number:
                return Reservation(participant_id, card_number, None)

            reservation = self.card_pool.reserve(participant_id, card_number)
            if participant is None:
                try:
                    await self._ledger.debit(
                        participant_id,
                        self.stake,
                        TransactionKind.STAKE_DEBIT,
                        balance=SubBalance.PLAY,
                        round_id=self._next_round_id,
                    )
                except Exception:
                    self.card_pool.release(participant_id)
                    raise
                self.participants[participant_id] = Participant(participant_id, card_number)
                logger.info(
                    "Room %d: %s registered with card %d (%d players)",
                    self.stake,
                    participant_id,
                    card_number,
                    len(self.participants),
                )
            else:
                participant.card_number = card_number

            if reservation.released is not None:
                await self._broadcast("card_released", {"card_number": reservation.released})
            await self._broadcast(
                "card_taken",
                {"card_number": card_number, "players_count": len(self.participants)},
            )
            return reservation

    async def claim(self, participant_id: str) -> dict[str, Any]:
        """Validate a bingo claim against the numbers called so far."""
        async with self._lock:
            if self.phase is not Phase.RUNNING:
                raise InvalidPhaseAction("claim bingo", self.phase.value)
            participant = self.participants.get(participant_id)
            if participant is None or participant.card is None:
                raise InvalidClaim("Not playing in this round")

            lines = winning_lines(participant.card.grid, self.called_numbers)
            if not lines:
                raise InvalidClaim(f"Card {participant.card_number} has no completed line")

            result = {
                "round_id": self.round_id,
                "card_number": participant.card_number,
                "lines": lines,
            }
            if participant_id in self.winners:
                return result

            self.winners[participant_id] = participant.card_number
            logger.info(
                "Room %d: bingo by %s (card %d, %s) after %d calls",
                self.stake,
                participant_id,
                participant.card_number,
                ",".join(lines),
                len(self.called_numbers),
            )
            await self._broadcast(
                "bingo_accepted",
                {
                    "round_id": self.round_id,
                    "participant_id": participant_id,
                    "card_number": participant.card_number,
                    "lines": lines,
                    "winners": self._winners_list(),
                },
            )

            if not self._claim_window_open:
                # No more draws; claims keep coming in until the window closes
                self._claim_window_open = True
                if self.config.claim_window_seconds > 0:
                    self.deadline = self._clock() + self.config.claim_window_seconds
                else:
                    await self._announce()
            return result

    async def leave(self, participant_id: str) -> None:
        """Handle a disconnect.

        During registration the card is released and the stake refunded.
        Later on the participant stays in the round and can still win.
        """
        async with self._lock:
            await self._apply_due_registration()
            participant = self.participants.get(participant_id)
            if participant is None:
                return

            if self.phase is Phase.REGISTRATION:
                await self._ledger.credit(
                    participant_id,
                    self.stake,
                    TransactionKind.STAKE_REFUND,
                    balance=SubBalance.PLAY,
                    round_id=self._next_round_id,
                )
                del self.participants[participant_id]
                released = self.card_pool.release(participant_id)
                logger.info(
                    "Room %d: %s left registration, stake refunded", self.stake, participant_id
                )
                if released is not None:
                    await self._broadcast(
                        "card_released",
                        {"card_number": released, "players_count": len(self.participants)},
                    )
            else:
                participant.connected = False

    async def on_deadline(self) -> None:
        """Timer wakeup.  Ignored unless the current deadline is actually due."""
        async with self._lock:
            if self.deadline is None or self._clock() < self.deadline:
                return
            await self._fire_deadline()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _apply_due_registration(self) -> None:
        # A registration whose deadline has passed is closed before anything
        # else is applied, even if the timer has not ticked yet.
        if (
            self.phase is Phase.REGISTRATION
            and self.deadline is not None
            and self._clock() >= self.deadline
        ):
            await self._fire_deadline()

    async def _fire_deadline(self) -> None:
        self.deadline = None
        if self.phase is Phase.REGISTRATION:
            await self._start_round()
        elif self.phase is Phase.RUNNING:
            if self._claim_window_open:
                await self._announce()
            else:
                await self._draw_next()
        elif self.phase is Phase.ANNOUNCE:
            if self._payout is None:
                await self._settle_round()
            else:
                await self._finish_announce()

    async def _open_registration(self) -> None:
        self._reset_round()
        self.phase = Phase.REGISTRATION
        self._next_round_id = self._new_round_id()
        self.deadline = self._clock() + self.config.registration_seconds
        logger.info("Room %d: registration open for round %s", self.stake, self._next_round_id)
        await self._broadcast(
            "registration_opened",
            {
                "stake": self.stake,
                "available_cards": self.card_pool.available(),
                "duration_ms": int(self.config.registration_seconds * 1000),
                "ends_at": self.deadline,
            },
        )

    async def _go_idle(self, reason: Optional[str] = None) -> None:
        self._reset_round()
        self.phase = Phase.IDLE
        self.deadline = None
        logger.info("Room %d: idle%s", self.stake, f" ({reason})" if reason else "")
        if reason:
            await self._broadcast("round_cancelled", {"stake": self.stake, "reason": reason})
        else:
            await self._broadcast("snapshot", self.snapshot())

    async def _start_round(self) -> None:
        if not self.participants:
            await self._go_idle("No players")
            return

        self.phase = Phase.RUNNING
        self.round_id = self._next_round_id
        self._next_round_id = None
        self.pot = self.stake * len(self.participants)
        self._started_at = self._clock()
        self._caller = self._caller_factory(self._rng)
        for participant in self.participants.values():
            participant.card = self._card_factory(participant.card_number, self._rng)

        logger.info(
            "Room %d: round %s started, %d players, pot %d",
            self.stake,
            self.round_id,
            len(self.participants),
            self.pot,
        )
        base = {
            "round_id": self.round_id,
            "stake": self.stake,
            "pot": self.pot,
            "players_count": len(self.participants),
        }
        for participant in self.participants.values():
            await self._broadcaster.send_to_player(
                self.stake,
                participant.participant_id,
                _message("round_started", {**base, "card": participant.card.to_dict()}),
            )
        await self._broadcaster.broadcast_to_all(
            self.stake,
            _message("round_started", {**base, "card": None}),
            exclude=set(self.participants),
        )
        self.deadline = self._clock() + self.config.call_interval_seconds

    async def _draw_next(self) -> None:
        number = self._caller.next_number()
        if number is None:
            self._award_unclaimed()
            await self._announce()
            return
        self.called_numbers.append(number)
        await self._broadcast(
            "number_drawn",
            {
                "round_id": self.round_id,
                "number": number,
                "called_so_far": list(self.called_numbers),
            },
        )
        self.deadline = self._clock() + self.config.call_interval_seconds

    def _award_unclaimed(self) -> None:
        """Add every completed but unclaimed card to the winners.

        Only used once the caller has run dry: with no draws left nobody
        can claim later, so a card that already holds a line wins anyway.
        """
        for participant in self.participants.values():
            pid = participant.participant_id
            if pid in self.winners or participant.card is None:
                continue
            lines = winning_lines(participant.card.grid, self.called_numbers)
            if lines:
                self.winners[pid] = participant.card_number
                logger.info(
                    "Room %d: unclaimed bingo awarded to %s (card %d, %s)",
                    self.stake,
                    pid,
                    participant.card_number,
                    ",".join(lines),
                )

    async def _announce(self) -> None:
        self.phase = Phase.ANNOUNCE
        self.deadline = None
        self._finished_at = self._clock()
        await self._settle_round()

    async def _settle_round(self) -> None:
        try:
            payout = await self._settlement.settle(
                self.round_id,
                self.pot,
                self.config.house_cut_rate,
                list(self.winners),
            )
        except StorageUnavailable:
            logger.exception(
                "Room %d: settlement of round %s failed, will retry", self.stake, self.round_id
            )
            self.deadline = self._clock() + self.config.announce_seconds
            return

        self._payout = payout
        await self._broadcast(
            "round_ended",
            {
                "round_id": self.round_id,
                "winners": self._winners_list(),
                "prize_per_winner": payout.prize_per_winner,
                "house_take": payout.house_take,
                "pot": self.pot,
                "called_numbers": list(self.called_numbers),
                "next_start_at": self._clock() + self.config.announce_seconds,
            },
        )
        await self._record_round(payout)
        self.deadline = self._clock() + self.config.announce_seconds

    async def _finish_announce(self) -> None:
        # The round can no longer be settled again once the room moves on
        self._settlement.forget(self.round_id)
        if self.config.auto_restart:
            await self._open_registration()
        else:
            await self._go_idle()

    async def _record_round(self, payout: Payout) -> None:
        if self._round_store is None:
            return
        summary = RoundSummary(
            round_id=self.round_id,
            stake=self.stake,
            called_numbers=list(self.called_numbers),
            winners=[
                RoundWinner(participant_id=pid, card_number=card, prize=payout.prize_per_winner)
                for pid, card in self.winners.items()
            ],
            pot=self.pot,
            house_take=payout.house_take,
            participant_count=len(self.participants),
            started_at=self._started_at,
            finished_at=self._finished_at,
        )
        try:
            await self._round_store.store_round_summary(summary)
        except StorageUnavailable:
            # Settlement is already committed to the ledger; the summary is only a report
            logger.warning(
                "Room %d: could not persist summary of round %s",
                self.stake,
                self.round_id,
                exc_info=True,
            )

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def _winners_list(self) -> list[dict[str, Any]]:
        prize = self._payout.prize_per_winner if self._payout is not None else None
        return [
            {"participant_id": pid, "card_number": card, "prize": prize}
            for pid, card in self.winners.items()
        ]

    def snapshot(self, participant_id: Optional[str] = None) -> dict[str, Any]:
        """Room state for a (re)joining client."""
        d: dict[str, Any] = {
            "stake": self.stake,
            "phase": self.phase.value,
            "round_id": self.round_id,
            "called_so_far": list(self.called_numbers),
            "pot": self.pot,
            "players_count": len(self.participants),
            "ends_at": self.deadline,
            "winners": self._winners_list(),
        }
        if self.phase is Phase.REGISTRATION:
            d["available_cards"] = self.card_pool.available()
        if participant_id is not None:
            participant = self.participants.get(participant_id)
            d["you"] = participant.to_dict() if participant is not None else None
        return d

    async def _broadcast(self, msg_type: str, data: dict[str, Any]) -> None:
        await self._broadcaster.broadcast_to_all(self.stake, _message(msg_type, data))
