from __future__ import annotations

import threading
from typing import List, Protocol, Sequence

from common.logging_setup import get_logger
from common.types import ScoredCandidate, TileNode, Vec3, as_vec3
from pointstream.executor import FetchExecutor, LoadRound
from pointstream.significance import REFINE_THRESHOLD
from pointstream.traverse import collect_candidates


log = get_logger("pointstream.scheduler")

DEFAULT_BUDGET = 10


class ViewpointProvider(Protocol):
    def current_position(self) -> Vec3: ...


def select_for_load(candidates: Sequence[ScoredCandidate], budget: int = DEFAULT_BUDGET) -> List[TileNode]:
    """
    Greedy top-K: highest score first, at most `budget` nodes.

    The sort is stable, so equal scores keep their visitation order.
    """
    if budget < 0:
        raise ValueError("budget must be >= 0")
    ranked = sorted(candidates, key=lambda c: c.score, reverse=True)
    return [c.node for c in ranked[:budget]]


class LoadScheduler:
    """
    Runs evaluation rounds: sample viewpoint → traverse → rank → dispatch.

    Every round starts from scratch; the only state carried between rounds
    lives in the executor's ResidentSet.
    """

    def __init__(
        self,
        executor: FetchExecutor,
        viewpoint: ViewpointProvider,
        budget: int = DEFAULT_BUDGET,
        refine_threshold: float = REFINE_THRESHOLD,
    ):
        if budget < 1:
            raise ValueError("budget must be >= 1")
        self.executor = executor
        self.viewpoint = viewpoint
        self.budget = int(budget)
        self.refine_threshold = float(refine_threshold)
        self._rounds = 0
        self._rounds_lock = threading.Lock()

    @property
    def rounds(self) -> int:
        return self._rounds

    def evaluate_and_load(self) -> LoadRound:
        """
        One evaluation round. Returns as soon as the loads are dispatched;
        call `.wait()` on the result to join them.
        """
        with self._rounds_lock:
            self._rounds += 1
            number = self._rounds

        position = as_vec3(self.viewpoint.current_position())
        excluded = self.executor.resident.snapshot()
        candidates = collect_candidates(
            self.executor.tileset, position, excluded, refine_threshold=self.refine_threshold
        )
        selected = select_for_load(candidates, self.budget)
        rnd = self.executor.dispatch(selected, number=number)
        rnd.candidates = len(candidates)

        log.info(
            "Evaluation round dispatched",
            extra={"extra": {
                "round": number,
                "viewpoint": list(position),
                "candidates": len(candidates),
                "selected": len(selected),
                "dispatched": len(rnd.futures),
                "skipped": len(rnd.skipped),
            }},
        )
        return rnd
