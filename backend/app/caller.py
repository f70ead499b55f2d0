"""Number caller: the draw order for one round."""

from __future__ import annotations

import random
from typing import Iterator, Optional

LOWEST_NUMBER = 1
HIGHEST_NUMBER = 75


class Caller:
    """Lazily yields 1..75 in random order, each number once.

    One instance per round; a finished or abandoned sequence is never
    restarted.  Pacing is left to the room.
    """

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self._rng = rng or random.SystemRandom()
        self._numbers = self._generate()
        self.drawn: list[int] = []

    def _generate(self) -> Iterator[int]:
        remaining = list(range(LOWEST_NUMBER, HIGHEST_NUMBER + 1))
        while remaining:
            # Swap-remove a random pick so each draw is O(1)
            idx = self._rng.randrange(len(remaining))
            remaining[idx], remaining[-1] = remaining[-1], remaining[idx]
            number = remaining.pop()
            self.drawn.append(number)
            yield number

    def draw(self) -> Iterator[int]:
        return self._numbers

    def next_number(self) -> Optional[int]:
        return next(self._numbers, None)

    @property
    def remaining(self) -> int:
        return HIGHEST_NUMBER - LOWEST_NUMBER + 1 - len(self.drawn)

    @property
    def exhausted(self) -> bool:
        return self.remaining == 0
