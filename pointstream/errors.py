from __future__ import annotations

from typing import Optional


class PointStreamError(Exception):
    """Base class for streaming controller errors."""


class TilesetFetchFailure(PointStreamError):
    """The root tileset could not be retrieved; fatal to session initialisation."""


class EmptyTilesetError(TilesetFetchFailure):
    """The query matched no points, so there is nothing to stream."""


class HierarchyError(PointStreamError, ValueError):
    """Malformed tile hierarchy (cycle, shared child, unreachable node, bad values)."""


class TileContentFailure(PointStreamError):
    """
    Content for a single tile could not be fetched or decoded.

    Recoverable: the tile stays out of the resident set and is offered
    again as a candidate in later rounds.
    """

    def __init__(self, message: str, *, node_id: Optional[str] = None, content_ref: Optional[str] = None):
        super().__init__(message)
        self.node_id = node_id
        self.content_ref = content_ref
