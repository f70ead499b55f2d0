"""Pot settlement: house cut, per-winner prize, and ledger credits.

All arithmetic is integer (the rate is a Decimal), and whatever the
division by the winner count leaves over goes to the house, so

    pot == house_take + prize_per_winner * len(winners)

holds for every settlement.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from typing import Optional, Sequence

from app.ledger import HOUSE_ACCOUNT, Ledger
from app.models import SubBalance, TransactionKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Payout:
    pot: int
    house_cut: int
    prize_per_winner: int
    remainder: int
    house_take: int
    winners: tuple[str, ...]

    @property
    def total_prizes(self) -> int:
        return self.prize_per_winner * len(self.winners)

    def to_dict(self) -> dict:
        return {
            "pot": self.pot,
            "house_cut": self.house_cut,
            "prize_per_winner": self.prize_per_winner,
            "remainder": self.remainder,
            "house_take": self.house_take,
            "total_prizes": self.total_prizes,
        }


def compute_payout(pot: int, house_cut_rate: Decimal, winners: Sequence[str]) -> Payout:
    if pot < 0:
        raise ValueError("Pot cannot be negative")
    rate = Decimal(house_cut_rate)
    if not Decimal(0) <= rate <= Decimal(1):
        raise ValueError(f"House cut rate must be within [0, 1], got {rate}")

    house_cut = int((Decimal(pot) * rate).to_integral_value(rounding=ROUND_FLOOR))
    distributable = pot - house_cut
    prize_per_winner = distributable // len(winners) if winners else 0
    remainder = distributable - prize_per_winner * len(winners)
    payout = Payout(
        pot=pot,
        house_cut=house_cut,
        prize_per_winner=prize_per_winner,
        remainder=remainder,
        house_take=house_cut + remainder,
        winners=tuple(winners),
    )
    assert payout.house_take + payout.total_prizes == pot
    return payout


class Settlement:
    """Pays out rounds through the ledger, at most once per round.

    Credits carry a reference derived from the round id, so a settlement
    that failed half-way can be re-run without paying anyone twice.
    """

    def __init__(self, ledger: Ledger) -> None:
        self._ledger = ledger
        self._settled: dict[str, Payout] = {}

    def is_settled(self, round_id: str) -> bool:
        return round_id in self._settled

    def forget(self, round_id: Optional[str]) -> None:
        """Drop the record of a finished round.

        Ledger references still stop a late repeat from paying twice.
        """
        self._settled.pop(round_id, None)

    async def settle(
        self,
        round_id: str,
        pot: int,
        house_cut_rate: Decimal,
        winners: Sequence[str],
    ) -> Payout:
        settled = self._settled.get(round_id)
        if settled is not None:
            logger.warning("Round %s already settled, ignoring repeat settlement", round_id)
            return settled

        if len(set(winners)) != len(winners):
            raise ValueError("Winners must be unique")

        payout = compute_payout(pot, house_cut_rate, winners)

        if payout.prize_per_winner > 0:
            for participant_id in payout.winners:
                await self._ledger.credit(
                    participant_id,
                    payout.prize_per_winner,
                    TransactionKind.PRIZE_CREDIT,
                    balance=SubBalance.MAIN,
                    round_id=round_id,
                    reference=f"{round_id}:prize:{participant_id}",
                )
        if payout.house_take > 0:
            await self._ledger.credit(
                HOUSE_ACCOUNT,
                payout.house_take,
                TransactionKind.HOUSE_CUT,
                balance=SubBalance.MAIN,
                round_id=round_id,
                reference=f"{round_id}:house",
            )

        self._settled[round_id] = payout
        logger.info(
            "Settled round %s: pot=%d winners=%d prize=%d house=%d",
            round_id,
            pot,
            len(payout.winners),
            payout.prize_per_winner,
            payout.house_take,
        )
        return payout
