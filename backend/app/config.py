"""Room and withdrawal settings read from the environment."""

from __future__ import annotations

import os
from decimal import Decimal

from pydantic import BaseModel, Field

STAKES = os.getenv("BINGO_STAKES", "10,50")
HOUSE_CUT_RATE = os.getenv("BINGO_HOUSE_CUT_RATE", "0.20")
REGISTRATION_SECONDS = float(os.getenv("BINGO_REGISTRATION_SECONDS", "30"))
CALL_INTERVAL_SECONDS = float(os.getenv("BINGO_CALL_INTERVAL_SECONDS", "2.0"))
CLAIM_WINDOW_SECONDS = float(os.getenv("BINGO_CLAIM_WINDOW_SECONDS", "1.0"))
ANNOUNCE_SECONDS = float(os.getenv("BINGO_ANNOUNCE_SECONDS", "5"))
CARD_POOL_SIZE = int(os.getenv("BINGO_CARD_POOL_SIZE", "100"))
AUTO_RESTART = os.getenv("BINGO_AUTO_RESTART", "1") != "0"

# Bounds for a single withdrawal request, in main-balance units
WITHDRAWAL_MIN = int(os.getenv("BINGO_WITHDRAWAL_MIN", "50"))
WITHDRAWAL_MAX = int(os.getenv("BINGO_WITHDRAWAL_MAX", "10000"))


class RoomConfig(BaseModel):
    """Settings for a single stake tier."""

    stake: int = Field(..., gt=0)
    house_cut_rate: Decimal = Field(default=Decimal("0.20"), ge=0, le=1)
    registration_seconds: float = Field(default=30, gt=0)
    call_interval_seconds: float = Field(default=2.0, gt=0)
    claim_window_seconds: float = Field(default=1.0, ge=0)  # 0 = announce on first claim
    announce_seconds: float = Field(default=5, ge=0)
    card_pool_size: int = Field(default=100, ge=1)
    auto_restart: bool = True  # reopen registration after announce, else go idle


def _parse_stakes(raw: str) -> list[int]:
    stakes: list[int] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        stake = int(part)
        if stake not in stakes:
            stakes.append(stake)
    if not stakes:
        raise ValueError("BINGO_STAKES must name at least one stake tier")
    return stakes


def load_room_configs() -> list[RoomConfig]:
    """Build one RoomConfig per configured stake tier.

    ``BINGO_HOUSE_CUT_RATE_<stake>`` overrides the global rate for one tier.
    """
    configs = []
    for stake in _parse_stakes(STAKES):
        rate = os.getenv(f"BINGO_HOUSE_CUT_RATE_{stake}", HOUSE_CUT_RATE)
        configs.append(
            RoomConfig(
                stake=stake,
                house_cut_rate=Decimal(rate),
                registration_seconds=REGISTRATION_SECONDS,
                call_interval_seconds=CALL_INTERVAL_SECONDS,
                claim_window_seconds=CLAIM_WINDOW_SECONDS,
                announce_seconds=ANNOUNCE_SECONDS,
                card_pool_size=CARD_POOL_SIZE,
                auto_restart=AUTO_RESTART,
            )
        )
    return configs
