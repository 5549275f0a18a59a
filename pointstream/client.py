from __future__ import annotations

"""
HTTP transport for the point-cloud tile service.

Usage:
    client = PointStreamClient("https://api.example.com")  # api key from POINTSTREAM_API_KEY
    tileset = client.fetch_tileset_root("turku", "EPSG:3857", TilesetFilters(max_points=5_000_000))
    raw = client.fetch_tile_content(tileset.root.content_ref)
    # raw.positions -> (N,3) float32, relative to raw.offset

Wire format of a tile (GET /tiles/{content_ref}):
    body:   N*3 little-endian float32 positions, followed by one block per
            attribute (N values each) in the order listed in the header
    header: X-Tile-Metadata = {"offset": [x, y, z], "point_count": N,
                               "attributes": {"intensity": "uint16", "classification": "uint8"}}

Retries and backoff are left to the requests.Session handed in (mount an
HTTPAdapter with a urllib3 Retry if needed).
"""

import json
import os
from typing import Any, Dict, Mapping, Optional
from urllib.parse import quote

import numpy as np
import requests

from common.logging_setup import get_logger
from common.types import RawTileContent
from pointstream.config import API_KEY_ENV, TilesetFilters
from pointstream.errors import EmptyTilesetError, HierarchyError, TileContentFailure, TilesetFetchFailure
from pointstream.hierarchy import Tileset, parse_tileset


log = get_logger("pointstream.client")

METADATA_HEADER = "X-Tile-Metadata"
_ATTRIBUTE_DTYPES = ("uint8", "uint16", "uint32", "int8", "int16", "int32", "float32", "float64")


def decode_tile_content(body: bytes, meta: Mapping[str, Any]) -> RawTileContent:
    """Decode a tile body using its X-Tile-Metadata descriptor."""
    if not isinstance(meta, Mapping):
        raise TileContentFailure(f"tile metadata must be a JSON object, got {type(meta).__name__}")
    try:
        count = meta["point_count"]
        offset = meta["offset"]
    except KeyError as e:
        raise TileContentFailure(f"tile metadata incomplete: missing {e}") from e
    if isinstance(count, bool) or not (
        isinstance(count, int) or (isinstance(count, float) and count.is_integer())
    ):
        raise TileContentFailure(f"tile metadata point_count must be an integer, got {count!r}")
    n = int(count)
    if n < 0:
        raise TileContentFailure("tile metadata has negative point_count")

    attrs = meta.get("attributes") or {}
    if not isinstance(attrs, Mapping):
        raise TileContentFailure("tile metadata attributes must map name to dtype")
    layout = []
    for name, dt in attrs.items():
        if dt not in _ATTRIBUTE_DTYPES:
            raise TileContentFailure(f"unsupported attribute dtype {dt!r} for {name!r}")
        layout.append((str(name), np.dtype(dt).newbyteorder("<")))

    pos_bytes = n * 3 * 4
    expected = pos_bytes + sum(n * dt.itemsize for _, dt in layout)
    if len(body) != expected:
        raise TileContentFailure(f"tile body is {len(body)} bytes, expected {expected}")

    if n == 0:
        positions = np.empty((0, 3), dtype=np.float32)
        attributes: Dict[str, np.ndarray] = {name: np.empty(0, dtype=dt) for name, dt in layout}
    else:
        positions = np.frombuffer(body, dtype="<f4", count=n * 3).reshape(n, 3)
        attributes = {}
        cursor = pos_bytes
        for name, dt in layout:
            attributes[name] = np.frombuffer(body, dtype=dt, count=n, offset=cursor)
            cursor += n * dt.itemsize
    try:
        return RawTileContent(positions=positions, offset=offset, attributes=attributes)
    except (TypeError, ValueError) as e:
        raise TileContentFailure(f"invalid tile content: {e}") from e


class PointStreamClient:
    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
    ):
        """
        Params:
            base_url: service root, e.g. https://api.example.com
            api_key: API key (falls back to env POINTSTREAM_API_KEY)
            session: optional requests.Session for connection reuse
            timeout: per-request timeout in seconds
        """
        self.api_key = api_key or os.getenv(API_KEY_ENV)
        if not self.api_key:
            raise ValueError(
                "API key is required. "
                f"Set {API_KEY_ENV} environment variable or pass api_key=..."
            )
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = float(timeout)

    # ----------------------------
    # Public API
    # ----------------------------
    def build_tileset_request(
        self, table: str, output_crs: str, filters: Optional[TilesetFilters] = None
    ) -> Dict[str, Any]:
        """JSON body of the tileset query (no request performed)."""
        f = filters or TilesetFilters()
        return {
            "tableName": table,
            "outputCRS": output_crs,
            "queryBoundary": {"Polygon": [f.query_boundary]} if f.query_boundary else None,
            "queryCRS": f.query_crs or output_crs,
            "maxPoints": f.max_points,
            "maxDensity": f.max_density,
            "sourceFileFilter": f.source_file_filter,
            "classFilter": f.class_filter,
        }

    def fetch_tileset_root(
        self, table: str, output_crs: str, filters: Optional[TilesetFilters] = None
    ) -> Tileset:
        """
        Query the tileset for `table` and return the validated hierarchy.

        Raises TilesetFetchFailure on any transport, HTTP, JSON or structure
        error; EmptyTilesetError when the query matches no points.
        """
        url = f"{self.base_url}/tileset"
        body = self.build_tileset_request(table, output_crs, filters)
        try:
            r = self.session.post(url, json=body, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as e:
            raise TilesetFetchFailure(f"tileset request failed: {e}") from e
        if r.status_code != 200:
            raise TilesetFetchFailure(f"Tileset API error {r.status_code}: {r.text[:200]}")
        try:
            payload = r.json()
        except ValueError as e:
            raise TilesetFetchFailure("tileset response is not valid JSON") from e

        try:
            tileset = parse_tileset(payload)
        except HierarchyError as e:
            raise TilesetFetchFailure(f"tileset hierarchy rejected: {e}") from e
        if tileset.point_count == 0:
            raise EmptyTilesetError(f"table {table!r} returned no points for this query")
        log.info(
            "Tileset fetched",
            extra={"extra": {"table": table, "tiles": len(tileset.hierarchy), "points": tileset.point_count}},
        )
        return tileset

    def fetch_tile_content(self, content_ref: str) -> RawTileContent:
        """Fetch and decode one tile; raises TileContentFailure."""
        url = f"{self.base_url}/tiles/{quote(str(content_ref), safe='/')}"
        try:
            r = self.session.get(url, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as e:
            raise TileContentFailure(f"tile request failed: {e}", content_ref=content_ref) from e
        if r.status_code != 200:
            raise TileContentFailure(
                f"Tile API error {r.status_code}: {r.text[:200]}", content_ref=content_ref
            )
        raw_meta = r.headers.get(METADATA_HEADER)
        if not raw_meta:
            raise TileContentFailure(f"missing {METADATA_HEADER} header", content_ref=content_ref)
        try:
            meta = json.loads(raw_meta)
        except ValueError as e:
            raise TileContentFailure(f"malformed {METADATA_HEADER} header", content_ref=content_ref) from e
        try:
            return decode_tile_content(r.content, meta)
        except TileContentFailure as e:
            e.content_ref = content_ref
            raise

    # ----------------------------
    # internals
    # ----------------------------
    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}
