from __future__ import annotations

"""
Tile hierarchy model.

The tree is stored as an arena: a tuple of TileNode values where each node
refers to its children by arena index. Construction validates the structure
once (single root, no shared or self-referential children, no cycles, every
node reachable), so traversal never has to guard against bad input again.

Accepted tileset payloads (JSON, as returned by the tileset endpoint):

    nested:  {"root": {"id": "r", "boundingRegion": [...], "geometricError": 10,
                       "content": {"uri": "r.bin"}, "children": [{...}, ...]},
              "offset": [x, y, z]}

    flat:    {"root": "r",
              "tiles": [{"id": "r", ..., "children": ["a", "b"]}, ...],
              "offset": [x, y, z]}

Bounding regions are always [west, south, east, north, bottom, top].
"""

import dataclasses
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterator, List, Mapping, Optional, Sequence, Tuple

from common.geo import REGION_AXES
from common.types import TileNode, Vec3, as_vec3
from pointstream.errors import HierarchyError


class TileHierarchy:
    """Immutable, validated arena of tile nodes."""

    def __init__(self, nodes: Sequence[TileNode], root: int = 0):
        self._nodes: Tuple[TileNode, ...] = tuple(nodes)
        self.root = int(root)
        self._index: Dict[str, int] = {}
        self._validate()

    # -------- public API --------

    def node(self, index: int) -> TileNode:
        return self._nodes[index]

    def index_of(self, node_id: str) -> int:
        try:
            return self._index[node_id]
        except KeyError:
            raise KeyError(f"unknown tile id: {node_id!r}") from None

    def get(self, node_id: str) -> Optional[TileNode]:
        i = self._index.get(node_id)
        return None if i is None else self._nodes[i]

    @property
    def root_node(self) -> TileNode:
        return self._nodes[self.root]

    def depth(self) -> int:
        """Number of levels in the tree (1 for a lone root)."""
        levels = 0
        frontier = [self.root]
        while frontier:
            levels += 1
            frontier = [c for i in frontier for c in self._nodes[i].children]
        return levels

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[TileNode]:
        return iter(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._index

    # -------- internals --------

    def _validate(self) -> None:
        n = len(self._nodes)
        if n == 0:
            raise HierarchyError("tile hierarchy is empty")
        if not (0 <= self.root < n):
            raise HierarchyError(f"root index {self.root} out of range")

        for i, node in enumerate(self._nodes):
            if node.id in self._index:
                raise HierarchyError(f"duplicate tile id: {node.id!r}")
            self._index[node.id] = i

        parent: Dict[int, int] = {}
        for i, node in enumerate(self._nodes):
            for c in node.children:
                if not (0 <= c < n):
                    raise HierarchyError(f"tile {node.id!r} has child index {c} out of range")
                if c == i:
                    raise HierarchyError(f"tile {node.id!r} lists itself as a child")
                if c == self.root:
                    raise HierarchyError(f"tile {node.id!r} lists the root as a child (cycle)")
                if c in parent:
                    other = self._nodes[parent[c]].id
                    raise HierarchyError(
                        f"tile {self._nodes[c].id!r} is shared by parents {other!r} and {node.id!r}"
                    )
                parent[c] = i

        # With at most one parent per node and none for the root, any cycle
        # is disconnected from the root and shows up as unreachable.
        seen = {self.root}
        queue = deque([self.root])
        while queue:
            for c in self._nodes[queue.popleft()].children:
                if c not in seen:
                    seen.add(c)
                    queue.append(c)
        if len(seen) != n:
            missing = sorted(self._nodes[i].id for i in range(n) if i not in seen)
            raise HierarchyError(f"tiles unreachable from root (cycle or orphan): {missing[:10]}")


@dataclass(frozen=True)
class Tileset:
    """
    Rooted tile hierarchy plus the origin offset shared by all tile geometry.

    `origin_offset` is None only until the root tile's content has been
    resolved (see StreamingSession.open); a streaming round requires it.
    """
    hierarchy: TileHierarchy
    origin_offset: Optional[Vec3] = None
    point_count: Optional[int] = None

    @property
    def root(self) -> TileNode:
        return self.hierarchy.root_node

    @property
    def resolved(self) -> bool:
        return self.origin_offset is not None

    def with_origin(self, offset) -> "Tileset":
        return dataclasses.replace(self, origin_offset=as_vec3(offset))


# -------------------------
# Payload parsing
# -------------------------
def _content_ref(raw: Mapping[str, Any], node_id: str) -> str:
    c = raw.get("content")
    if c is None:
        return node_id
    if isinstance(c, str):
        return c
    if isinstance(c, Mapping) and c.get("uri"):
        return str(c["uri"])
    raise HierarchyError(f"tile {node_id!r}: unsupported content reference {c!r}")


def _make_node(raw: Any, children: Tuple[int, ...]) -> TileNode:
    if not isinstance(raw, Mapping):
        raise HierarchyError(f"tile entry must be an object, got {type(raw).__name__}")
    if "id" not in raw:
        raise HierarchyError("tile entry is missing 'id'")
    node_id = str(raw["id"])
    region = raw.get("boundingRegion", raw.get("bounding_region"))
    if not isinstance(region, (list, tuple)) or len(region) != len(REGION_AXES):
        raise HierarchyError(f"tile {node_id!r}: boundingRegion must be [{', '.join(REGION_AXES)}]")
    try:
        return TileNode(
            id=node_id,
            bounding_region=tuple(region),
            geometric_error=raw.get("geometricError", raw.get("geometric_error")),
            content_ref=_content_ref(raw, node_id),
            children=children,
        )
    except (TypeError, ValueError) as e:
        raise HierarchyError(str(e)) from e


def _parse_nested(root: Mapping[str, Any]) -> TileHierarchy:
    # Breadth-first numbering: index 0 is the root.
    order: List[Any] = [root]
    child_idx: List[List[int]] = []
    seen = {id(root)}
    i = 0
    while i < len(order):
        raw = order[i]
        kids = (raw.get("children") or []) if isinstance(raw, Mapping) else []
        idxs = []
        for kid in kids:
            if id(kid) in seen:
                raise HierarchyError("tile hierarchy is cyclic or shares a child between parents")
            seen.add(id(kid))
            idxs.append(len(order))
            order.append(kid)
        child_idx.append(idxs)
        i += 1
    nodes = [_make_node(raw, tuple(kids)) for raw, kids in zip(order, child_idx)]
    return TileHierarchy(nodes, root=0)


def _parse_flat(tiles: Sequence[Any], root_id: Optional[str]) -> TileHierarchy:
    if not tiles:
        raise HierarchyError("tileset has no tiles")
    ids: Dict[str, int] = {}
    for i, raw in enumerate(tiles):
        if not isinstance(raw, Mapping) or "id" not in raw:
            raise HierarchyError(f"tile entry {i} is missing 'id'")
        tid = str(raw["id"])
        if tid in ids:
            raise HierarchyError(f"duplicate tile id: {tid!r}")
        ids[tid] = i
    nodes = []
    for raw in tiles:
        kids = []
        for cid in raw.get("children") or []:
            if str(cid) not in ids:
                raise HierarchyError(f"tile {raw['id']!r} references unknown child {cid!r}")
            kids.append(ids[str(cid)])
        nodes.append(_make_node(raw, tuple(kids)))
    if root_id is None:
        root = 0
    elif str(root_id) in ids:
        root = ids[str(root_id)]
    else:
        raise HierarchyError(f"root tile {root_id!r} not found")
    return TileHierarchy(nodes, root=root)


def parse_tileset(payload: Mapping[str, Any]) -> Tileset:
    """Build a validated Tileset from a decoded tileset JSON payload."""
    if not isinstance(payload, Mapping):
        raise HierarchyError("tileset payload must be a JSON object")
    root = payload.get("root")
    if "tiles" in payload:
        hierarchy = _parse_flat(payload["tiles"], None if root is None else str(root))
    elif isinstance(root, Mapping):
        hierarchy = _parse_nested(root)
    else:
        raise HierarchyError("tileset payload needs a nested 'root' object or a flat 'tiles' list")

    offset = payload.get("offset")
    try:
        origin = None if offset is None else as_vec3(offset)
    except (TypeError, ValueError) as e:
        raise HierarchyError(f"invalid tileset offset: {offset!r}") from e
    count = payload.get("pointCount")
    return Tileset(hierarchy=hierarchy, origin_offset=origin, point_count=None if count is None else int(count))


# -------------------------
# Resident / in-flight tracking
# -------------------------
class ResidentSet:
    """
    Tile ids already fetched this session, plus ids currently being fetched.

    Both sets are guarded by one lock; `try_begin` is the atomic
    check-then-mark used at dispatch time so overlapping rounds never
    start the same tile twice. Resident ids are never removed.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._resident: set = set()
        self._in_flight: set = set()

    def try_begin(self, node_id: str) -> bool:
        with self._lock:
            if node_id in self._resident or node_id in self._in_flight:
                return False
            self._in_flight.add(node_id)
            return True

    def complete(self, node_id: str) -> None:
        with self._lock:
            self._in_flight.discard(node_id)
            self._resident.add(node_id)

    def abandon(self, node_id: str) -> None:
        with self._lock:
            self._in_flight.discard(node_id)

    def snapshot(self) -> FrozenSet[str]:
        """Resident and in-flight ids; everything a new round must skip."""
        with self._lock:
            return frozenset(self._resident | self._in_flight)

    def resident_ids(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._resident)

    def in_flight_ids(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._in_flight)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {"resident": len(self._resident), "in_flight": len(self._in_flight)}

    def __contains__(self, node_id: object) -> bool:
        with self._lock:
            return node_id in self._resident

    def __len__(self) -> int:
        with self._lock:
            return len(self._resident)
