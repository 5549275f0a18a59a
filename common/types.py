from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, TYPE_CHECKING
import math
import numpy as np

if TYPE_CHECKING:  # pragma: no cover
    from pointstream.errors import TileContentFailure


Vec3 = Tuple[float, float, float]

# [west, south, east, north, bottom, top]
Region = Tuple[float, float, float, float, float, float]


def as_vec3(x) -> Vec3:
    """Coerce any 3-sequence (list, tuple, ndarray) to a float triple."""
    if len(x) != 3:
        raise ValueError("Expected a 3-vector")
    return (float(x[0]), float(x[1]), float(x[2]))


@dataclass(frozen=True, slots=True)
class TileNode:
    """
    One node of the tile hierarchy.

    Attributes:
        id: identifier unique within a tileset; key of the resident set.
        bounding_region: (west, south, east, north, bottom, top).
        geometric_error: worldspace deviation if this tile is used without refining.
        content_ref: opaque reference handed to the transport, never interpreted here.
        children: arena indices of the child nodes (empty for leaves).
    """
    id: str
    bounding_region: Region
    geometric_error: float
    content_ref: str
    children: Tuple[int, ...] = ()

    def __post_init__(self) -> None:
        if len(self.bounding_region) != 6:
            raise ValueError(f"tile {self.id!r}: bounding region must have 6 values")
        region = tuple(float(v) for v in self.bounding_region)
        if not all(math.isfinite(v) for v in region):
            raise ValueError(f"tile {self.id!r}: bounding region must be finite")
        err = float(self.geometric_error)
        if not math.isfinite(err) or err < 0:
            raise ValueError(f"tile {self.id!r}: geometric error must be finite and >= 0")
        # frozen: go through object.__setattr__ for normalisation
        object.__setattr__(self, "bounding_region", region)
        object.__setattr__(self, "geometric_error", err)
        object.__setattr__(self, "children", tuple(int(c) for c in self.children))

    @property
    def is_leaf(self) -> bool:
        return not self.children


@dataclass(frozen=True, slots=True)
class ScoredCandidate:
    """A (node, score) pair living for a single evaluation round."""
    node: TileNode
    score: float


@dataclass(slots=True)
class RawTileContent:
    """
    Tile payload as returned by the transport.

    Attributes:
        positions: (N,3) float32 array, relative to `offset`.
        offset: embedded position offset of this tile (tileset CRS units).
        attributes: optional per-point arrays keyed by name (intensity, classification, ...).
    """
    positions: np.ndarray
    offset: Vec3
    attributes: Dict[str, np.ndarray] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.positions, np.ndarray):
            raise TypeError("positions must be a numpy ndarray")
        if self.positions.ndim != 2 or self.positions.shape[1] != 3:
            raise ValueError("positions must have shape (N, 3)")
        self.offset = as_vec3(self.offset)
        for name, arr in self.attributes.items():
            if len(arr) != len(self.positions):
                raise ValueError(f"attribute {name!r} length does not match point count")

    @property
    def point_count(self) -> int:
        return int(self.positions.shape[0])


@dataclass(slots=True)
class TileContent:
    """Render-ready tile: positions plus offset local to the tileset origin."""
    node_id: str
    positions: np.ndarray = field(repr=False)
    local_offset: Vec3
    attributes: Dict[str, np.ndarray] = field(default_factory=dict, repr=False)

    @property
    def point_count(self) -> int:
        return int(self.positions.shape[0])

    def to_meta(self) -> Dict[str, Any]:
        """Metadata without point buffers (safe to log/serialize)."""
        return {
            "node_id": self.node_id,
            "point_count": self.point_count,
            "local_offset": list(self.local_offset),
            "attributes": sorted(self.attributes),
        }


@dataclass(slots=True)
class LoadResult:
    """Outcome of one tile load; exactly one of `content` / `error` is set."""
    node_id: str
    content: Optional[TileContent] = None
    error: Optional["TileContentFailure"] = None
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None and self.content is not None
