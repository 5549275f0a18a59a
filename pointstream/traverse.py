from __future__ import annotations

from collections import deque
from typing import Container, List, Sequence

from common.types import ScoredCandidate
from pointstream.errors import HierarchyError
from pointstream.hierarchy import Tileset
from pointstream.significance import REFINE_THRESHOLD, score, should_refine


def collect_candidates(
    tileset: Tileset,
    viewpoint: Sequence[float],
    resident: Container[str],
    refine_threshold: float = REFINE_THRESHOLD,
) -> List[ScoredCandidate]:
    """
    Breadth-first walk from the root collecting tiles worth loading.

    Every visited node not in `resident` is emitted with its score, in
    visitation order. Children are only visited when their parent's score
    is above `refine_threshold`; emitting a node and refining it are
    independent decisions on the same score.
    """
    if tileset.origin_offset is None:
        raise ValueError("tileset origin offset has not been resolved")
    hierarchy = tileset.hierarchy
    out: List[ScoredCandidate] = []
    visited = set()
    queue = deque([hierarchy.root])
    while queue:
        idx = queue.popleft()
        if idx in visited:
            raise HierarchyError(f"tile {hierarchy.node(idx).id!r} reached twice during traversal")
        visited.add(idx)

        node = hierarchy.node(idx)
        s = score(node, viewpoint, tileset.origin_offset)
        if node.id not in resident:
            out.append(ScoredCandidate(node=node, score=s))
        if should_refine(s, refine_threshold):
            queue.extend(node.children)
    return out
