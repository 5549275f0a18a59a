from __future__ import annotations

import math
from typing import Sequence

from common.geo import distance, region_center, to_local
from common.types import TileNode

# A node is refined into its children only while its score stays above this.
REFINE_THRESHOLD = 0.01


def score(node: TileNode, viewpoint: Sequence[float], origin_offset: Sequence[float]) -> float:
    """
    Inverse-distance weighted geometric error of a tile.

    The region center is moved into the shared frame (minus `origin_offset`)
    before measuring its distance to `viewpoint`. Large, coarse, near tiles
    score highest. A viewpoint sitting exactly on the center scores +inf.
    """
    center = to_local(region_center(node.bounding_region), origin_offset)
    d = distance(center, viewpoint)
    if d == 0.0:
        return math.inf
    return node.geometric_error / d


def should_refine(node_score: float, threshold: float = REFINE_THRESHOLD) -> bool:
    return node_score > threshold
