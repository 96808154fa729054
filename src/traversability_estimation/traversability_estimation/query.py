#
# Copyright (c) 2022, Takahiro Miki. All rights reserved.
# Licensed under the MIT license. See LICENSE file in the project root for details.
#
import logging
from typing import List, Optional, Sequence, Tuple

from traversability_estimation.errors import (
    EmptyBatchRequest,
    EngineNotReady,
    FootprintCheckFailed,
    MapStoreError,
    RecomputeFailed,
)
from traversability_estimation.grid_map import GridMap
from traversability_estimation.interfaces import (
    FootprintPath,
    GridMapInfo,
    MapStore,
    TraversabilityResult,
)
from traversability_estimation.orchestrator import UpdateOrchestrator

_LOGGER = logging.getLogger(__name__)


class QueryDispatcher:
    """Read-only queries against the engine's current traversability map."""

    def __init__(self, orchestrator: UpdateOrchestrator, logger=None):
        self.orchestrator = orchestrator
        self.engine = orchestrator.engine
        self.param = orchestrator.param
        self.logger = logger if logger is not None else _LOGGER

    def get_submap_info(self, timeout: Optional[float] = None) -> GridMapInfo:
        """Describe the traversability map, updating it first if no timer does.

        Waits for the first computation to finish. ``timeout`` falls back to
        ``readiness_timeout``; 0 means wait forever.

        Raises:
            RecomputeFailed: the on-demand update failed.
            EngineNotReady: the map was not ready before the timeout.
        """
        if not self.param.periodic_updates:
            if not self.orchestrator.run_update_cycle():
                raise RecomputeFailed("Cannot update traversability!")

        if timeout is None:
            timeout = self.param.readiness_timeout
        if not self.orchestrator.wait_until_ready(timeout if timeout > 0.0 else None):
            raise EngineNotReady(f"Traversability map not computed within {timeout} s.")

        with self.orchestrator.engine_lock:
            grid = self.engine.get_traversability_map()
            frame_id = self.engine.get_map_frame_id()
        return GridMapInfo.from_grid(grid, frame_id)

    def get_submap(
        self,
        position: Tuple[float, float],
        length: Tuple[float, float],
        layers: Sequence[str] = (),
    ) -> GridMap:
        """Cut a submap of the traversability map.

        An empty ``layers`` returns every layer, otherwise the named ones in
        the requested order.

        Raises:
            EngineNotReady: no traversability map was computed yet.
            PartialOverlapFailure: the request is not fully inside the map.
            UnknownLayer: a requested layer does not exist.
        """
        if not self.orchestrator.engine_ready:
            raise EngineNotReady("Traversability map not computed yet.")
        with self.orchestrator.engine_lock:
            grid = self.engine.get_traversability_map()
        submap = grid.get_submap(position, length)
        if layers:
            submap = submap.copy(layers)
        return submap

    def check_footprint_paths(self, paths: Sequence[FootprintPath]) -> List[TraversabilityResult]:
        """Evaluate every path in order. Any failed path fails the whole batch.

        Raises:
            EmptyBatchRequest: ``paths`` is empty.
            FootprintCheckFailed: one of the paths could not be evaluated.
        """
        if len(paths) == 0:
            raise EmptyBatchRequest("No footprint path available to check!")

        results: List[TraversabilityResult] = []
        with self.orchestrator.engine_lock:
            for i, path in enumerate(paths):
                result = self.engine.check_footprint_path(path)
                if result is None:
                    raise FootprintCheckFailed(f"Footprint path {i} of {len(paths)} could not be checked.")
                results.append(result)
        return results

    def compute_traversability_footprint(self) -> bool:
        with self.orchestrator.engine_lock:
            return self.engine.compute_footprint_polygon(self.param.footprint_yaw)

    def persist_current_map(self, store: MapStore) -> bool:
        if not self.orchestrator.engine_ready:
            self.logger.warning("Traversability map not computed yet, nothing to save.")
            return False
        with self.orchestrator.engine_lock:
            grid = self.engine.get_traversability_map()
        try:
            store.save(grid)
        except MapStoreError as exc:
            self.logger.error(f"Saving traversability map failed: {exc}")
            return False
        return True
