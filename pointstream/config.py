from __future__ import annotations

"""
Session configuration.

Credentials and endpoint live in an explicit StreamingConfig handed to
StreamingSession.open(); nothing is read from process-wide state except the
POINTSTREAM_API_KEY fallback at load time.

Example config/pointstream.yaml:

    api:
      base_url: https://api.example.com
      api_key: null            # falls back to env POINTSTREAM_API_KEY
      timeout_s: 10
    tileset:
      table: turku
      output_crs: EPSG:3857
      filters:
        query_boundary: [[2488624, 8505802], [2488741, 8505971], [2489471, 8505522]]
        query_crs: EPSG:3857
        max_points: 5000000
    streaming:
      budget: 10
      refine_threshold: 0.01
      max_concurrency: null    # defaults to budget
    logging:
      level: INFO
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml

from pointstream.scheduler import DEFAULT_BUDGET
from pointstream.significance import REFINE_THRESHOLD


API_KEY_ENV = "POINTSTREAM_API_KEY"
DEFAULT_CONFIG_PATH = "config/pointstream.yaml"


@dataclass
class TilesetFilters:
    """Server-side query restrictions applied when the tileset is built."""
    query_boundary: Optional[List[List[float]]] = None
    query_crs: Optional[str] = None
    max_points: Optional[int] = None
    max_density: Optional[float] = None
    source_file_filter: Optional[List[int]] = None
    class_filter: Optional[List[int]] = None

    def __post_init__(self) -> None:
        if self.query_boundary is not None:
            ring = [[float(x), float(y)] for x, y in self.query_boundary]
            if len(ring) < 3:
                raise ValueError("query_boundary needs at least 3 vertices")
            if ring[0] != ring[-1]:
                ring.append(list(ring[0]))  # close the ring
            self.query_boundary = ring
        if self.max_points is not None and int(self.max_points) <= 0:
            raise ValueError("max_points must be > 0")

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "TilesetFilters":
        d = dict(d or {})
        known = {k: d.pop(k) for k in list(d) if k in cls.__dataclass_fields__}
        if d:
            raise ValueError(f"unknown filter keys: {sorted(d)}")
        return cls(**known)


@dataclass
class StreamingConfig:
    base_url: str = "https://api.lumidb.com"
    api_key: Optional[str] = None
    table: str = "turku"
    output_crs: str = "EPSG:3857"
    filters: TilesetFilters = field(default_factory=TilesetFilters)
    refine_threshold: float = REFINE_THRESHOLD
    budget: int = DEFAULT_BUDGET
    max_concurrency: Optional[int] = None
    timeout_s: float = 10.0
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if int(self.budget) < 1:
            raise ValueError("budget must be >= 1")
        if float(self.refine_threshold) < 0:
            raise ValueError("refine_threshold must be >= 0")
        if self.max_concurrency is not None and int(self.max_concurrency) < 1:
            raise ValueError("max_concurrency must be >= 1")
        if float(self.timeout_s) <= 0:
            raise ValueError("timeout_s must be > 0")

    @property
    def concurrency(self) -> int:
        """Concurrent loads per session; the budget unless set explicitly."""
        return int(self.max_concurrency or self.budget)

    @classmethod
    def from_dict(cls, P: Dict[str, Any]) -> "StreamingConfig":
        api = P.get("api", {}) or {}
        ts = P.get("tileset", {}) or {}
        st = P.get("streaming", {}) or {}
        lg = P.get("logging", {}) or {}
        defaults = cls()
        return cls(
            base_url=str(api.get("base_url", defaults.base_url)),
            api_key=api.get("api_key") or os.getenv(API_KEY_ENV),
            table=str(ts.get("table", defaults.table)),
            output_crs=str(ts.get("output_crs", defaults.output_crs)),
            filters=TilesetFilters.from_dict(ts.get("filters")),
            refine_threshold=float(st.get("refine_threshold", defaults.refine_threshold)),
            budget=int(st.get("budget", defaults.budget)),
            max_concurrency=st.get("max_concurrency"),
            timeout_s=float(api.get("timeout_s", defaults.timeout_s)),
            log_level=str(lg.get("level", defaults.log_level)),
        )


def load_config(path: str = DEFAULT_CONFIG_PATH) -> StreamingConfig:
    """Read a YAML config; built-in defaults when the file does not exist."""
    if not Path(path).exists():
        return StreamingConfig.from_dict({})
    with open(path, "r") as f:
        return StreamingConfig.from_dict(yaml.safe_load(f) or {})


def parse_vec3(s: str) -> Sequence[float]:
    """'x,y,z' -> [x, y, z] (CLI helper)."""
    parts = [p for p in s.replace(" ", "").split(",") if p]
    if len(parts) != 3:
        raise ValueError("Viewpoint must be x,y,z")
    return [float(p) for p in parts]
