"""
Unit tests for top-K selection and evaluation rounds
"""

import os
import sys

import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.types import ScoredCandidate, TileNode
from pointstream.executor import FetchExecutor
from pointstream.hierarchy import ResidentSet
from pointstream.scheduler import DEFAULT_BUDGET, LoadScheduler, select_for_load
from tests.fakes import FakeTransport, FixedViewpoint, RecordingRenderer, make_tileset, region_at


def _cand(nid, s):
    node = TileNode(id=nid, bounding_region=region_at(0, 0, 0), geometric_error=1.0, content_ref=nid)
    return ScoredCandidate(node=node, score=s)


class TestSelectForLoad:
    def test_budget_one_picks_highest(self):
        """Two equal-region candidates scoring 0.5 and 0.3: budget 1 keeps only 0.5"""
        out = select_for_load([_cand("low", 0.3), _cand("high", 0.5)], budget=1)
        assert [n.id for n in out] == ["high"]

    def test_sorted_descending_and_truncated(self):
        cands = [_cand(str(i), s) for i, s in enumerate([0.1, 0.9, 0.4, float("inf"), 0.2])]
        out = select_for_load(cands, budget=3)
        assert [n.id for n in out] == ["3", "1", "2"]

    def test_fewer_than_budget_returns_all_sorted(self):
        cands = [_cand("a", 0.2), _cand("b", 0.7)]
        assert [n.id for n in select_for_load(cands, budget=10)] == ["b", "a"]

    def test_ties_keep_visitation_order(self):
        cands = [_cand("first", 0.5), _cand("second", 0.5), _cand("third", 0.5)]
        assert [n.id for n in select_for_load(cands, budget=2)] == ["first", "second"]

    def test_zero_budget(self):
        assert select_for_load([_cand("a", 1.0)], budget=0) == []

    def test_negative_budget_rejected(self):
        with pytest.raises(ValueError):
            select_for_load([], budget=-1)

    def test_default_budget(self):
        cands = [_cand(str(i), float(i)) for i in range(25)]
        assert DEFAULT_BUDGET == 10
        assert len(select_for_load(cands)) == 10


def _wide_tileset():
    # root plus 6 children, each closer to the viewpoint than the last
    kids = [f"c{i}" for i in range(6)]
    specs = [("root", (0, 0, 1000), 100.0, kids)]
    specs += [(k, (100.0 * (6 - i), 0, 0), 1.0, []) for i, k in enumerate(kids)]
    return make_tileset(specs)


class TestLoadScheduler:
    def _scheduler(self, budget, transport=None):
        ts = _wide_tileset()
        transport = transport or FakeTransport()
        executor = FetchExecutor(ts, transport, RecordingRenderer(), ResidentSet(), max_workers=budget)
        return LoadScheduler(executor, FixedViewpoint((0, 0, 0)), budget=budget), transport

    def test_round_dispatches_in_priority_order(self):
        sched, _ = self._scheduler(budget=3)
        try:
            rnd = sched.evaluate_and_load()
            # root: 100/1000 = 0.1, c5: 1/100, c4: 1/200 ...
            assert rnd.dispatched == ["root", "c5", "c4"]
            assert rnd.candidates == 7
            assert rnd.number == 1
            rnd.wait(timeout=5)
        finally:
            sched.executor.close()

    def test_resident_tiles_never_reselected(self):
        sched, transport = self._scheduler(budget=3)
        try:
            first = sched.evaluate_and_load()
            first.wait(timeout=5)
            second = sched.evaluate_and_load()
            second.wait(timeout=5)
            assert set(first.dispatched).isdisjoint(second.dispatched)
            assert second.dispatched == ["c3", "c2", "c1"]
            for nid in first.dispatched + second.dispatched:
                assert transport.calls_for(f"{nid}.bin") == 1
            assert sched.rounds == 2
        finally:
            sched.executor.close()

    def test_viewpoint_sampled_once_per_round(self):
        sched, _ = self._scheduler(budget=2)
        try:
            sched.evaluate_and_load().wait(timeout=5)
            sched.evaluate_and_load().wait(timeout=5)
            assert sched.viewpoint.samples == 2
        finally:
            sched.executor.close()

    def test_invalid_budget(self):
        ts = _wide_tileset()
        executor = FetchExecutor(ts, FakeTransport(), RecordingRenderer(), ResidentSet())
        try:
            with pytest.raises(ValueError):
                LoadScheduler(executor, FixedViewpoint(), budget=0)
        finally:
            executor.close()
