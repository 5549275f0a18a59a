"""
Integration tests: session initialisation, repeated rounds and the HTTP host surface
"""

import os
import sys
import threading

import pytest
from fastapi.testclient import TestClient

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from pointstream.config import StreamingConfig
from pointstream.errors import TilesetFetchFailure
from pointstream.server import SceneBuffer, ViewpointState, build_app
from pointstream.session import StreamingSession
from tests.fakes import FakeTransport, FixedViewpoint, RecordingRenderer, make_tileset


def _city_tileset(origin=(2488000.0, 8505000.0, 0.0)):
    # Quadtree-ish: root, 4 quadrants, 2 leaves under the quadrant nearest the viewer.
    ox, oy, _ = origin if origin is not None else (0.0, 0.0, 0.0)
    return make_tileset(
        [
            ("root", (ox, oy, 50), 40.0, ["q0", "q1", "q2", "q3"]),
            ("q0", (ox + 25, oy + 25, 0), 10.0, ["q0a", "q0b"]),
            ("q1", (ox - 25, oy + 25, 0), 10.0, []),
            ("q2", (ox - 25, oy - 25, 0), 10.0, []),
            ("q3", (ox + 25, oy - 25, 0), 10.0, []),
            ("q0a", (ox + 20, oy + 20, 0), 2.0, []),
            ("q0b", (ox + 30, oy + 30, 0), 2.0, []),
        ],
        origin=origin,
    )


class TestStreamingSession:
    def test_open_and_stream_until_complete(self):
        transport = FakeTransport(_city_tileset(), offset=(2488000.0, 8505000.0, 0.0))
        renderer = RecordingRenderer()
        config = StreamingConfig(api_key="k", budget=3)
        with StreamingSession.open(config, renderer, FixedViewpoint((20, 20, 0)), transport=transport) as s:
            loaded = []
            for _ in range(5):
                loaded += [r.node_id for r in s.evaluate_and_load().wait(timeout=5) if r.ok]
            stats = s.stats()
        assert sorted(loaded) == sorted(["root", "q0", "q1", "q2", "q3", "q0a", "q0b"])
        assert len(renderer.tiles) == 7
        assert all(offset == (0.0, 0.0, 0.0) for _, offset in renderer.tiles)
        assert stats["resident"] == 7
        assert stats["rounds"] == 5
        assert transport.tileset_calls[0][0] == "turku"

    def test_failed_tile_retried_in_later_round(self):
        transport = FakeTransport(_city_tileset(), fail={"q1.bin"})
        config = StreamingConfig(api_key="k", budget=10)
        with StreamingSession.open(config, RecordingRenderer(), FixedViewpoint(), transport=transport) as s:
            first = s.evaluate_and_load().wait(timeout=5)
            assert "q1" not in s.resident
            assert {r.node_id for r in first if not r.ok} == {"q1"}
            transport.fail.clear()
            second = s.evaluate_and_load().wait(timeout=5)
        assert [r.node_id for r in second] == ["q1"]
        assert second[0].ok
        assert transport.calls_for("q1.bin") == 2

    def test_overlapping_rounds(self):
        """A tile still in flight from round 1 is not re-selected by round 2"""
        gate = threading.Event()
        transport = FakeTransport(_city_tileset(), gates={"q0a.bin": gate})
        config = StreamingConfig(api_key="k", budget=2)
        s = StreamingSession.open(config, RecordingRenderer(), FixedViewpoint((20, 20, 0)), transport=transport)
        try:
            r1 = s.evaluate_and_load()
            assert r1.dispatched == ["q0a", "q0"]
            r2 = s.evaluate_and_load()
            assert "q0a" not in r2.dispatched
            assert set(r1.dispatched).isdisjoint(r2.dispatched)
        finally:
            gate.set()
            s.close()
        assert transport.calls_for("q0a.bin") == 1

    def test_tileset_failure_is_fatal(self):
        config = StreamingConfig(api_key="k")
        with pytest.raises(TilesetFetchFailure):
            StreamingSession.open(config, RecordingRenderer(), FixedViewpoint(), transport=FakeTransport(None))

    def test_origin_resolved_from_root_content(self):
        transport = FakeTransport(_city_tileset(origin=None), offset=(7.0, 8.0, 9.0))
        config = StreamingConfig(api_key="k")
        with StreamingSession.open(config, RecordingRenderer(), FixedViewpoint(), transport=transport) as s:
            assert s.tileset.origin_offset == (7.0, 8.0, 9.0)
            assert "root" not in s.resident

    def test_origin_resolution_failure_is_fatal(self):
        transport = FakeTransport(_city_tileset(origin=None), fail={"root.bin"})
        with pytest.raises(TilesetFetchFailure, match="origin"):
            StreamingSession.open(StreamingConfig(api_key="k"), RecordingRenderer(), FixedViewpoint(), transport=transport)


class TestServer:
    @pytest.fixture
    def client(self):
        transport = FakeTransport(_city_tileset())
        viewpoint = ViewpointState()
        scene = SceneBuffer()
        session = StreamingSession.open(
            StreamingConfig(api_key="k", budget=4), scene, viewpoint, transport=transport
        )
        with TestClient(build_app(session, viewpoint, scene)) as c:
            yield c
        session.close()

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "ok"
        assert r.json()["rounds"] == 0

    def test_viewpoint_and_evaluate(self, client):
        r = client.put("/viewpoint", json={"x": 20, "y": 20, "z": 0})
        assert r.json()["viewpoint"] == [20.0, 20.0, 0.0]

        r = client.post("/evaluate", params={"wait": "true", "timeout": 5})
        assert r.status_code == 200
        body = r.json()
        assert body["round"] == 1
        assert len(body["dispatched"]) == 4
        assert sorted(body["loaded"]) == sorted(body["dispatched"])
        assert body["failed"] == {}

        r = client.get("/tiles")
        assert r.json()["count"] == 4

        stats = client.get("/stats").json()
        assert stats["resident"] == 4
        assert stats["loads"]["loaded"] == 4
