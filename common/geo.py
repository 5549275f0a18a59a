from __future__ import annotations

from typing import Sequence
import math

from common.types import Vec3, as_vec3


# -------------------------
# Bounding regions
# -------------------------
# Canonical axis order: [west, south, east, north, bottom, top].
# The alternative [west, south, bottom, east, north, top] layout is NOT accepted.
REGION_AXES = ("west", "south", "east", "north", "bottom", "top")


def region_center(region: Sequence[float]) -> Vec3:
    """
    Center (x, y, z) of a six-value bounding region.

    x is the west/east midpoint, y the south/north midpoint and z the
    bottom/top midpoint, all in the tileset's CRS units.
    """
    if len(region) != 6:
        raise ValueError("bounding region must be [west, south, east, north, bottom, top]")
    west, south, east, north, bottom, top = (float(v) for v in region)
    return (0.5 * west + 0.5 * east, 0.5 * south + 0.5 * north, 0.5 * bottom + 0.5 * top)


# -------------------------
# Shared coordinate frame
# -------------------------
def to_local(p: Sequence[float], origin_offset: Sequence[float]) -> Vec3:
    """Express a tileset-CRS point relative to the tileset origin offset."""
    x, y, z = as_vec3(p)
    ox, oy, oz = as_vec3(origin_offset)
    return (x - ox, y - oy, z - oz)


def distance(a: Sequence[float], b: Sequence[float]) -> float:
    """Euclidean distance between two 3-vectors."""
    ax, ay, az = as_vec3(a)
    bx, by, bz = as_vec3(b)
    return math.hypot(ax - bx, ay - by, az - bz)
