from __future__ import annotations

from typing import Dict, Optional

from common.logging_setup import get_logger, setup_logging
from pointstream.client import PointStreamClient
from pointstream.config import StreamingConfig
from pointstream.errors import TilesetFetchFailure
from pointstream.executor import FetchExecutor, LoadRound, TileRenderer, TileTransport
from pointstream.hierarchy import ResidentSet, Tileset
from pointstream.scheduler import LoadScheduler, ViewpointProvider


log = get_logger("pointstream.session")


class StreamingSession:
    """
    One viewer session: a fetched tileset, its resident set and a scheduler.

    Use StreamingSession.open(); a failed tileset fetch raises
    TilesetFetchFailure and leaves nothing behind.
    """

    def __init__(
        self,
        config: StreamingConfig,
        tileset: Tileset,
        transport: TileTransport,
        renderer: TileRenderer,
        viewpoint: ViewpointProvider,
    ):
        self.config = config
        self.tileset = tileset
        self.resident = ResidentSet()
        self.executor = FetchExecutor(
            tileset, transport, renderer, self.resident, max_workers=config.concurrency
        )
        self.scheduler = LoadScheduler(
            self.executor, viewpoint, budget=config.budget, refine_threshold=config.refine_threshold
        )

    @classmethod
    def open(
        cls,
        config: StreamingConfig,
        renderer: TileRenderer,
        viewpoint: ViewpointProvider,
        transport: Optional[TileTransport] = None,
    ) -> "StreamingSession":
        setup_logging(config.log_level)
        if transport is None:
            transport = PointStreamClient(config.base_url, api_key=config.api_key, timeout=config.timeout_s)

        try:
            tileset = transport.fetch_tileset_root(config.table, config.output_crs, config.filters)
        except TilesetFetchFailure:
            raise
        except Exception as e:
            raise TilesetFetchFailure(f"tileset fetch failed: {e}") from e

        if tileset.origin_offset is None:
            tileset = tileset.with_origin(_resolve_origin(transport, tileset))

        log.info(
            "Streaming session opened",
            extra={"extra": {
                "table": config.table,
                "tiles": len(tileset.hierarchy),
                "depth": tileset.hierarchy.depth(),
                "origin_offset": list(tileset.origin_offset),
                "budget": config.budget,
            }},
        )
        return cls(config, tileset, transport, renderer, viewpoint)

    def evaluate_and_load(self) -> LoadRound:
        return self.scheduler.evaluate_and_load()

    def stats(self) -> Dict:
        return {
            "rounds": self.scheduler.rounds,
            "tiles": len(self.tileset.hierarchy),
            **self.resident.stats(),
            "loads": self.executor.stats(),
        }

    def close(self) -> None:
        self.executor.close()

    def __enter__(self) -> "StreamingSession":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def _resolve_origin(transport: TileTransport, tileset: Tileset):
    # The tileset carried no offset: the root tile's embedded offset becomes the origin.
    try:
        raw = transport.fetch_tile_content(tileset.root.content_ref)
    except Exception as e:
        raise TilesetFetchFailure(f"could not resolve origin from root tile: {e}") from e
    return raw.offset
