"""Bingo card grids."""

from __future__ import annotations

import random
from typing import Optional

GRID_SIZE = 5
FREE = 0  # value of the free centre cell
CENTRE = GRID_SIZE // 2

COLUMN_LETTERS = "BINGO"

# Column c draws from COLUMN_RANGES[c] (inclusive), B=1-15 ... O=61-75
COLUMN_RANGES: list[tuple[int, int]] = [
    (1 + 15 * c, 15 + 15 * c) for c in range(GRID_SIZE)
]

Grid = list[list[int]]


class BingoCard:
    """A 5x5 grid of distinct numbers with a free centre, tied to a card number."""

    __slots__ = ("card_number", "grid")

    def __init__(self, card_number: int, grid: Grid) -> None:
        _validate(grid)
        self.card_number = card_number
        self.grid = grid

    def __repr__(self) -> str:
        return f"BingoCard(#{self.card_number})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BingoCard):
            return NotImplemented
        return self.card_number == other.card_number and self.grid == other.grid

    def numbers(self) -> set[int]:
        return {n for row in self.grid for n in row if n != FREE}

    def to_dict(self) -> dict:
        return {"card_number": self.card_number, "grid": [list(r) for r in self.grid]}

    @classmethod
    def from_dict(cls, data: dict) -> BingoCard:
        return cls(data["card_number"], [list(r) for r in data["grid"]])


def generate_card(card_number: int, rng: Optional[random.Random] = None) -> BingoCard:
    """Deal a random card: five numbers per column from that column's range."""
    rng = rng or random.SystemRandom()
    columns = [rng.sample(range(lo, hi + 1), GRID_SIZE) for lo, hi in COLUMN_RANGES]
    grid = [
        [FREE if (r == CENTRE and c == CENTRE) else columns[c][r] for c in range(GRID_SIZE)]
        for r in range(GRID_SIZE)
    ]
    return BingoCard(card_number, grid)


def _validate(grid: Grid) -> None:
    if len(grid) != GRID_SIZE or any(len(row) != GRID_SIZE for row in grid):
        raise ValueError("Card grid must be 5x5")
    if grid[CENTRE][CENTRE] != FREE:
        raise ValueError("Card centre must be the free cell")
    values = [n for row in grid for n in row if n != FREE]
    if len(values) != len(set(values)):
        raise ValueError("Card numbers must be distinct")
