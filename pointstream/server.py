from __future__ import annotations

"""
Host surface for a streaming session.

- PUT  /viewpoint  {"x","y","z"}   sets the position sampled by the next round
- POST /evaluate?wait=false        runs one evaluation round
- GET  /tiles                      tiles handed to the scene so far
- GET  /health, /stats

Run:
    POINTSTREAM_API_KEY=... pointstream-server --config config/pointstream.yaml --port 8000
"""

import argparse
import threading
from typing import Dict, List, Optional

import numpy as np
import uvicorn
from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel

from common.types import Vec3, as_vec3
from common.utils import iso_now_ms
from pointstream.config import DEFAULT_CONFIG_PATH, load_config, parse_vec3
from pointstream.errors import TilesetFetchFailure
from pointstream.session import StreamingSession


class ViewpointState:
    """Thread-safe viewpoint holder; the session samples it once per round."""

    def __init__(self, position: Vec3 = (0.0, 0.0, 0.0)):
        self._lock = threading.Lock()
        self._position = as_vec3(position)

    def set(self, position) -> None:
        with self._lock:
            self._position = as_vec3(position)

    def current_position(self) -> Vec3:
        with self._lock:
            return self._position


class SceneBuffer:
    """Collects tiles handed over by the executor (called from worker threads)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tiles: List[Dict] = []

    def add_tile(self, positions: np.ndarray, local_offset: Vec3) -> None:
        entry = {
            "point_count": int(positions.shape[0]),
            "local_offset": list(as_vec3(local_offset)),
            "added": iso_now_ms(),
        }
        with self._lock:
            self._tiles.append(entry)

    def tiles(self) -> List[Dict]:
        with self._lock:
            return list(self._tiles)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tiles)


class Viewpoint(BaseModel):
    x: float
    y: float
    z: float


def build_app(session: StreamingSession, viewpoint: ViewpointState, scene: SceneBuffer) -> FastAPI:
    app = FastAPI(title="PointStream Tile Streaming API", version="1.0.0")

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "table": session.config.table,
            "rounds": session.scheduler.rounds,
            "resident": session.resident.stats(),
        }

    @app.get("/stats")
    def stats():
        return session.stats()

    @app.put("/viewpoint")
    def put_viewpoint(v: Viewpoint):
        viewpoint.set((v.x, v.y, v.z))
        return {"viewpoint": list(viewpoint.current_position())}

    @app.post("/evaluate")
    def evaluate(wait: bool = Query(False), timeout: Optional[float] = Query(None, gt=0)):
        rnd = session.evaluate_and_load()
        out = rnd.summary()
        if wait:
            try:
                results = rnd.wait(timeout=timeout)
            except TimeoutError as e:
                raise HTTPException(status_code=504, detail=str(e))
            out["loaded"] = [r.node_id for r in results if r.ok]
            out["failed"] = {r.node_id: str(r.error) for r in results if not r.ok}
        return out

    @app.get("/tiles")
    def tiles():
        return {"count": len(scene), "tiles": scene.tiles()}

    return app


# -------- local dev entrypoint --------
def main() -> None:
    ap = argparse.ArgumentParser(description="PointStream tile streaming server")
    ap.add_argument("--config", default=DEFAULT_CONFIG_PATH)
    ap.add_argument("--viewpoint", default="0,0,0", help="Initial viewpoint x,y,z (tileset-local frame)")
    ap.add_argument("--host", default="0.0.0.0")
    ap.add_argument("--port", type=int, default=8000)
    args = ap.parse_args()

    config = load_config(args.config)
    viewpoint = ViewpointState(as_vec3(parse_vec3(args.viewpoint)))
    scene = SceneBuffer()
    try:
        session = StreamingSession.open(config, renderer=scene, viewpoint=viewpoint)
    except TilesetFetchFailure as e:
        raise SystemExit(f"Could not open tileset {config.table!r}: {e}")
    try:
        uvicorn.run(build_app(session, viewpoint, scene), host=args.host, port=args.port)
    finally:
        session.close()


if __name__ == "__main__":
    main()
