"""Head-centred byte tape used by the BFQ interpreter."""

from __future__ import annotations
from typing import List, Optional, Tuple

import numpy as np


def cell_round(n: int) -> int:
    """Round a byte to the nearest multiple of five; the step up wraps."""
    rem = n % 5
    base = 5 * (n // 5)
    if rem <= 2:
        return base
    return (base + 5) & 0xFF


def _randomized(values: List[int], rng: np.random.Generator) -> List[int]:
    if not values:
        return values
    arr = np.asarray(values, dtype=np.int16)
    mask = rng.random(arr.size) < 0.5
    deltas = rng.integers(-5, 6, size=arr.size)
    arr = np.where(mask, arr + deltas, arr)
    return [int(v) for v in np.mod(arr, 256)]


def _repeated(values: List[int], times: int) -> List[int]:
    if not values:
        return values
    return [int(v) for v in np.repeat(np.asarray(values, dtype=np.uint8), times)]


class Tape:
    """Unbounded tape stored as two stacks around the active cell.

    ``left`` and ``right`` hold the cells already visited on either side of the
    head, the top of each stack being the cell adjacent to the head. Cells never
    visited are implicitly zero and are not materialised.
    """

    def __init__(self, rng: Optional[np.random.Generator] = None) -> None:
        self.left: List[int] = []
        self.right: List[int] = []
        self.cell = 0
        self.rng = rng if rng is not None else np.random.default_rng()

    def get(self) -> int:
        return self.cell

    def set(self, value: int) -> None:
        self.cell = value & 0xFF

    def get_next(self) -> int:
        return self.right[-1] if self.right else 0

    def set_next(self, value: int) -> None:
        if self.right:
            self.right[-1] = value & 0xFF
        else:
            self.right.append(value & 0xFF)

    def next(self) -> None:
        self.left.append(self.cell)
        self.cell = self.right.pop() if self.right else 0

    def prev(self) -> None:
        self.right.append(self.cell)
        self.cell = self.left.pop() if self.left else 0

    def insert_left(self, value: int) -> None:
        self.left.append(value & 0xFF)

    def insert_right(self, value: int) -> None:
        self.right.append(value & 0xFF)

    def delete_left(self) -> int:
        return self.left.pop() if self.left else 0

    def delete_right(self) -> int:
        return self.right.pop() if self.right else 0

    def expand_2(self) -> None:
        self.left = _repeated(self.left, 2)
        self.right = _repeated(self.right, 2)
        self.right.append(self.cell)

    def expand_3(self) -> None:
        self.left = _repeated(self.left, 3)
        self.right = _repeated(self.right, 3)
        self.right.append(self.cell)
        self.right.append(self.cell)

    def randomize(self) -> None:
        # Each visited cell has an even chance of moving by -5..5.
        self.left = _randomized(self.left, self.rng)
        self.right = _randomized(self.right, self.rng)
        if self.rng.random() < 0.5:
            self.cell = (self.cell + int(self.rng.integers(-5, 6))) & 0xFF

    def random_bit(self) -> bool:
        return bool(self.rng.integers(0, 2))

    def random_byte(self) -> int:
        return int(self.rng.integers(0, 256))

    def cells(self) -> Tuple[List[int], int]:
        """Visited cells from left to right, and the index of the head among them."""
        ordered = self.left + [self.cell] + self.right[::-1]
        return ordered, len(self.left)

    def snapshot(self, width: int = 8) -> str:
        ordered, head = self.cells()
        lo = max(0, head - width)
        hi = min(len(ordered), head + width + 1)
        parts = [f"[{v}]" if i == head else str(v) for i, v in enumerate(ordered[lo:hi], start=lo)]
        prefix = "... " if lo > 0 else ""
        suffix = " ..." if hi < len(ordered) else ""
        return prefix + " ".join(parts) + suffix

    def __repr__(self) -> str:
        return f"Tape({self.snapshot()})"
