from __future__ import annotations

"""
Fetch executor: loads the tiles selected for a round concurrently.

Each selected tile becomes one future on a thread pool. A tile is marked
in flight in the ResidentSet before its future is submitted, and moved to
resident (or dropped) when the future finishes, so a later round started
while loads are still running never picks the same tile again.

The renderer is called from the worker thread as soon as each tile
completes; nothing waits for the rest of the batch.
"""

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence

import numpy as np

from common.geo import to_local
from common.logging_setup import get_logger
from common.types import LoadResult, RawTileContent, TileContent, TileNode, Vec3
from common.utils import RunningStats, elapsed_ms
from pointstream.errors import TileContentFailure
from pointstream.hierarchy import ResidentSet, Tileset


log = get_logger("pointstream.executor")


class TileTransport(Protocol):
    def fetch_tileset_root(self, table: str, output_crs: str, filters) -> Tileset: ...

    def fetch_tile_content(self, content_ref: str) -> RawTileContent: ...


class TileRenderer(Protocol):
    def add_tile(self, positions: np.ndarray, local_offset: Vec3) -> None: ...


@dataclass
class LoadRound:
    """Handle on the loads dispatched by one evaluation round."""
    number: int
    futures: Dict[str, "Future[LoadResult]"] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    candidates: int = 0

    @property
    def dispatched(self) -> List[str]:
        return list(self.futures)

    def done(self) -> bool:
        return all(f.done() for f in self.futures.values())

    def wait(self, timeout: Optional[float] = None) -> List[LoadResult]:
        """Join every load of this round; results in dispatch (priority) order."""
        _, pending = wait_futures(list(self.futures.values()), timeout=timeout)
        if pending:
            raise TimeoutError(f"round {self.number}: {len(pending)} loads still running")
        return [f.result() for f in self.futures.values()]

    def summary(self) -> Dict:
        return {
            "round": self.number,
            "candidates": self.candidates,
            "dispatched": self.dispatched,
            "skipped": list(self.skipped),
        }


class FetchExecutor:
    def __init__(
        self,
        tileset: Tileset,
        transport: TileTransport,
        renderer: TileRenderer,
        resident: ResidentSet,
        max_workers: int = 10,
    ):
        """
        Params:
            tileset: resolved tileset (origin offset known)
            transport: fetches tile content by content reference
            renderer: receives (positions, local_offset) per loaded tile
            resident: shared resident/in-flight tracker
            max_workers: concurrent loads
        """
        if tileset.origin_offset is None:
            raise ValueError("tileset origin offset has not been resolved")
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.tileset = tileset
        self.transport = transport
        self.renderer = renderer
        self.resident = resident
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="tileload")
        self._stats_lock = threading.Lock()
        self._latency = RunningStats()
        self._failed = 0

    # ----------------------------
    # Public API
    # ----------------------------
    def load_tile(self, node: TileNode) -> LoadResult:
        """
        Fetch, normalise and hand one tile to the renderer.

        Never raises: transport errors come back as a failed LoadResult and
        leave the tile out of the resident set. The caller must already have
        marked the tile in flight (see dispatch).
        """
        t0 = time.perf_counter()
        try:
            raw = self.transport.fetch_tile_content(node.content_ref)
            content = TileContent(
                node_id=node.id,
                positions=raw.positions,
                local_offset=to_local(raw.offset, self.tileset.origin_offset),
                attributes=dict(raw.attributes),
            )
        except Exception as e:
            return self._fail(node, e, t0)

        self.resident.complete(node.id)
        dt = elapsed_ms(t0)
        with self._stats_lock:
            self._latency.add(dt)
        try:
            self.renderer.add_tile(content.positions, content.local_offset)
        except Exception:
            log.exception("Renderer rejected tile", extra={"extra": {"tile": node.id}})
        log.debug("Tile loaded", extra={"extra": {**content.to_meta(), "ms": round(dt, 1)}})
        return LoadResult(node_id=node.id, content=content, elapsed_ms=dt)

    def dispatch(self, nodes: Sequence[TileNode], number: int = 0) -> LoadRound:
        """
        Start one load per node, in the given (priority) order.

        Nodes already resident or in flight are skipped; the check and the
        in-flight mark happen atomically per node.
        """
        rnd = LoadRound(number=number)
        for node in nodes:
            if not self.resident.try_begin(node.id):
                rnd.skipped.append(node.id)
                continue
            try:
                rnd.futures[node.id] = self._pool.submit(self.load_tile, node)
            except BaseException:
                self.resident.abandon(node.id)
                raise
        return rnd

    def _fail(self, node: TileNode, exc: Exception, t0: float) -> LoadResult:
        self.resident.abandon(node.id)
        if isinstance(exc, TileContentFailure):
            err = exc
            err.node_id = err.node_id or node.id
        else:
            err = TileContentFailure(
                f"failed to load tile {node.id!r}: {exc}", node_id=node.id, content_ref=node.content_ref
            )
            err.__cause__ = exc
        with self._stats_lock:
            self._failed += 1
        log.warning(
            "Tile load failed",
            extra={"extra": {"tile": node.id, "content_ref": node.content_ref, "error": str(exc)}},
        )
        return LoadResult(node_id=node.id, error=err, elapsed_ms=elapsed_ms(t0))

    def stats(self) -> Dict:
        with self._stats_lock:
            return {
                "loaded": self._latency.n,
                "failed": self._failed,
                "mean_ms": round(self._latency.mean, 2),
                "std_ms": round(self._latency.std, 2),
            }

    def close(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    def __enter__(self) -> "FetchExecutor":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
