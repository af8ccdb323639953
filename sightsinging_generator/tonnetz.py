"""Pitch-class adjacency graph used by the harmony walk.

Each of the twelve pitch classes connects to the pitch classes a perfect
fifth, a major third and a minor third above it.  Chord roots reachable in one
or two hops are treated as "close" harmonic neighbours.

Example
-------
>>> graph = build_tonnetz("C")
>>> sorted(graph.one_step[0])
[3, 4, 7]
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Tuple

from . import KEY_TO_PC

__all__ = ["TonnetzGraph", "build_tonnetz", "EDGE_INTERVALS"]

# ``(relation, semitones)`` pairs defining the outgoing edges of every node.
EDGE_INTERVALS: Tuple[Tuple[str, int], ...] = (("P5", 7), ("M3", 4), ("m3", 3))


@dataclass(frozen=True)
class TonnetzGraph:
    root_pc: int
    edges: Tuple[Tuple[int, int, str], ...]
    one_step: Dict[int, FrozenSet[int]]
    two_step: Dict[int, FrozenSet[int]]

    def distance(self, start: int, end: int) -> int:
        """Return the breadth-first hop count from ``start`` to ``end``."""

        if start == end:
            return 0
        visited = {start}
        frontier: List[int] = [start]
        hops = 0
        while frontier:
            hops += 1
            following: List[int] = []
            for pc in frontier:
                for nxt in sorted(self.one_step[pc]):
                    if nxt == end:
                        return hops
                    if nxt not in visited:
                        visited.add(nxt)
                        following.append(nxt)
            frontier = following
        return 999


def build_tonnetz(key: str) -> TonnetzGraph:
    """Return the adjacency graph rooted at the tonic of ``key``."""

    edges = []
    for pc in range(12):
        for relation, interval in EDGE_INTERVALS:
            edges.append((pc, (pc + interval) % 12, relation))

    one_step: Dict[int, FrozenSet[int]] = {}
    for pc in range(12):
        one_step[pc] = frozenset(dst for src, dst, _ in edges if src == pc)

    two_step: Dict[int, FrozenSet[int]] = {}
    for pc in range(12):
        reach = set()
        for mid in one_step[pc]:
            reach.update(end for end in one_step[mid] if end != pc)
        two_step[pc] = frozenset(reach)

    return TonnetzGraph(KEY_TO_PC.get(key, 0), tuple(edges), one_step, two_step)
