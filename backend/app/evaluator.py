"""Bingo win detection.

A card wins when every cell of any row, any column, or either diagonal
has been called.  The free centre cell always counts as called.  Only set
membership matters, never the order numbers were drawn in.
"""

from __future__ import annotations

from typing import Collection, Sequence

from app.cards import FREE, GRID_SIZE


def _lines(grid: Sequence[Sequence[int]]) -> list[tuple[str, list[int]]]:
    lines: list[tuple[str, list[int]]] = []
    for r in range(GRID_SIZE):
        lines.append((f"row:{r}", list(grid[r])))
    for c in range(GRID_SIZE):
        lines.append((f"col:{c}", [grid[r][c] for r in range(GRID_SIZE)]))
    lines.append(("diag:main", [grid[i][i] for i in range(GRID_SIZE)]))
    lines.append(("diag:anti", [grid[i][GRID_SIZE - 1 - i] for i in range(GRID_SIZE)]))
    return lines


def _complete(cells: list[int], called: Collection[int]) -> bool:
    return all(n == FREE or n in called for n in cells)


def winning_lines(grid: Sequence[Sequence[int]], called: Collection[int]) -> list[str]:
    """Names of every completed line, e.g. ``["row:2", "diag:main"]``."""
    called = set(called)
    return [name for name, cells in _lines(grid) if _complete(cells, called)]


def is_winner(grid: Sequence[Sequence[int]], called: Collection[int]) -> bool:
    called = set(called)
    return any(_complete(cells, called) for _name, cells in _lines(grid))
