"""Deterministic pseudo-random source shared by every generation stage.

The generator is a 32-bit linear congruential generator.  It is tiny, fast
and, most importantly, reproducible: the same seed yields the same stream of
floats on every platform and Python version, which the standard
:mod:`random` module does not promise across releases.

Example
-------
>>> rng = SeededRng(42)
>>> 0.0 <= rng.next() < 1.0
True
>>> rng.int(1, 6) in range(1, 7)
True

Design Notes
------------
- Each component receives its own :class:`SeededRng` built from an
  arithmetically derived sub-seed.  No module keeps a global instance.
- :func:`deterministic_unit` performs a single LCG step without any state
  and is used where a stable per-slot coin flip is needed.
"""

from __future__ import annotations

import math
from typing import List, Sequence, TypeVar

__all__ = ["SeededRng", "deterministic_unit", "MAX_SAFE_INTEGER"]

T = TypeVar("T")

_MULTIPLIER = 1664525
_INCREMENT = 1013904223
_MODULUS = 2 ** 32

# Upper bound used when callers want a "very large" integer draw.
MAX_SAFE_INTEGER = 2 ** 53 - 1


class SeededRng:
    """Seeded LCG producing floats in ``[0, 1)``, integers and choices."""

    def __init__(self, seed: int) -> None:
        self.state = int(seed) % _MODULUS

    def next(self) -> float:
        """Advance the generator and return a float in ``[0, 1)``."""

        self.state = (_MULTIPLIER * self.state + _INCREMENT) % _MODULUS
        return self.state / _MODULUS

    def int(self, low: int, high: int) -> int:
        """Return an integer between ``low`` and ``high`` inclusive."""

        return math.floor(self.next() * (high - low + 1)) + low

    def pick(self, items: Sequence[T]) -> T:
        """Return one element of ``items``.

        Raises
        ------
        ValueError
            If ``items`` is empty.
        """

        if len(items) == 0:
            raise ValueError("Cannot pick from empty list.")
        return items[math.floor(self.next() * len(items))]

    def shuffle(self, items: Sequence[T]) -> List[T]:
        """Return a Fisher-Yates shuffled copy of ``items``."""

        result = list(items)
        for i in range(len(result) - 1, 0, -1):
            j = self.int(0, i)
            result[i], result[j] = result[j], result[i]
        return result


def deterministic_unit(seed: int) -> float:
    """Return a float in ``[0, 1)`` from one LCG step applied to ``seed``."""

    state = (_MULTIPLIER * (int(seed) % _MODULUS) + _INCREMENT) % _MODULUS
    return state / _MODULUS
