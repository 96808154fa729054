#
# Copyright (c) 2022, Takahiro Miki. All rights reserved.
# Licensed under the MIT license. See LICENSE file in the project root for details.
#
import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from traversability_estimation.errors import (
    ConfigReloadFailed,
    RecomputeFailed,
    SourceCallFailed,
    SourceUnreachable,
    TransformUnavailable,
    TraversabilityError,
)
from traversability_estimation.filter_config import load_filter_config
from traversability_estimation.grid_map import ELEVATION_LAYERS, GridMap
from traversability_estimation.interfaces import (
    ElevationSource,
    FrameTransformer,
    SubmapRequest,
    TraversabilityEngine,
)
from traversability_estimation.parameter import Parameter

_LOGGER = logging.getLogger(__name__)


class ElevationSourceMode(enum.Enum):
    REMOTE_PULL = "remote_pull"
    IMAGE_PUSH = "image_push"


@dataclass
class UpdateCycleState:
    mode: ElevationSourceMode = ElevationSourceMode.REMOTE_PULL
    # Last grid handed to the engine, restored when a recompute fails.
    last_elevation_grid: Optional[GridMap] = None
    # Overlay base for image frames. Only on_image_elevation touches it.
    image_grid: Optional[GridMap] = None
    engine_ready: bool = False


class UpdateOrchestrator:
    """Selects the elevation source and drives traversability updates.

    All engine mutations go through this class. ``engine_lock`` is shared with
    the query side so reads never interleave with a running update.
    """

    def __init__(
        self,
        param: Parameter,
        engine: TraversabilityEngine,
        source: Optional[ElevationSource] = None,
        transformer: Optional[FrameTransformer] = None,
        logger=None,
    ):
        self.param = param
        self.engine = engine
        self.source = source
        self.transformer = transformer
        self.logger = logger if logger is not None else _LOGGER

        self._state = UpdateCycleState()
        self._mode_lock = threading.Lock()
        self.engine_lock = threading.RLock()
        self._ready = threading.Event()
        if engine.is_ready():
            self._mark_ready()

        self._cycle_cond = threading.Condition()
        self._cycle_in_flight = False
        self._last_cycle_ok = False
        self.cycle_count = 0

    @property
    def mode(self) -> ElevationSourceMode:
        return self._state.mode

    @property
    def engine_ready(self) -> bool:
        return self._state.engine_ready

    @property
    def last_elevation_grid(self) -> Optional[GridMap]:
        return self._state.last_elevation_grid

    @property
    def image_grid(self) -> Optional[GridMap]:
        return self._state.image_grid

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        """Block until the first traversability map was computed."""
        return self._ready.wait(timeout)

    def _mark_ready(self) -> None:
        if not self._ready.is_set():
            self._state.engine_ready = True
            self._ready.set()
            self.logger.info("Traversability map initialized.")

    def on_image_elevation(
        self,
        image: np.ndarray,
        resolution: Optional[float] = None,
        height_range: Optional[Tuple[float, float]] = None,
        position: Optional[Tuple[float, float]] = None,
    ) -> GridMap:
        """Overlay an image-encoded elevation layer and push it to the engine.

        The first image switches the source to IMAGE_PUSH for good. No
        traversability is computed here; the next update cycle does that.
        """
        resolution = self.param.resolution if resolution is None else resolution
        min_height, max_height = self.param.height_range if height_range is None else height_range
        position = self.param.image_position if position is None else position

        # Lock order: _mode_lock, then engine_lock. A remote commit checks the
        # mode under engine_lock, so the switch is atomic for it.
        with self._mode_lock, self.engine_lock:
            if self._state.mode is not ElevationSourceMode.IMAGE_PUSH:
                grid = GridMap.from_image(image, resolution, position, frame_id=self.engine.get_map_frame_id())
                grid.add("upper_bound", 0.0)
                grid.add("lower_bound", 0.0)
                grid.add("uncertainty_range", grid.get("upper_bound") - grid.get("lower_bound"))
                grid.basic_layers = ["elevation"]
                self._state.image_grid = grid
                self._state.mode = ElevationSourceMode.IMAGE_PUSH
                rows, cols = grid.shape
                self.logger.info(
                    f"Initialized map with size {grid.length[0]:.2f} x {grid.length[1]:.2f} m "
                    f"({rows} x {cols} cells)."
                )
            # The engine may still hold the previous grid, so never mutate it in place.
            grid = self._state.image_grid.copy()
            grid.add_layer_from_image(image, "elevation", min_height, max_height)
            grid.timestamp = time.time_ns()
            self._state.image_grid = grid
            self._state.last_elevation_grid = grid
            self.engine.set_elevation_map(grid)
        return grid

    def run_update_cycle(self) -> bool:
        """Run one update, or join the one already running and share its outcome."""
        with self._cycle_cond:
            if self._cycle_in_flight:
                self.logger.debug("Update already in flight, waiting for it.")
                while self._cycle_in_flight:
                    self._cycle_cond.wait()
                return self._last_cycle_ok
            self._cycle_in_flight = True

        ok = False
        try:
            ok = self._update_traversability()
        finally:
            with self._cycle_cond:
                self._cycle_in_flight = False
                self._last_cycle_ok = ok
                self.cycle_count += 1
                self._cycle_cond.notify_all()
        return ok

    def _update_traversability(self) -> bool:
        try:
            if self.mode is ElevationSourceMode.IMAGE_PUSH:
                with self.engine_lock:
                    self._compute()
                return True

            if self.source is None:
                raise SourceUnreachable("No remote elevation source configured.")
            self.logger.debug(f"Sending request to {self.param.submap_service}.")
            if not self.source.is_reachable(self.param.source_wait_timeout):
                raise SourceUnreachable(
                    f"Elevation source '{self.param.submap_service}' not reachable "
                    f"within {self.param.source_wait_timeout} s."
                )
            grid = self.request_submap()
            with self.engine_lock:
                if self.mode is ElevationSourceMode.IMAGE_PUSH:
                    self.logger.info("Image elevation took over during the update, dropping the remote submap.")
                    self._compute()
                else:
                    self._commit_elevation_map(grid)
            return True
        except TraversabilityError as exc:
            self.logger.warning(f"Traversability update failed: {exc}")
            return False

    def _compute(self) -> None:
        if not self.engine.compute_traversability():
            raise RecomputeFailed("Engine could not compute traversability.")
        self._mark_ready()

    def _commit_elevation_map(self, grid: GridMap) -> None:
        """Set ``grid`` on the engine and compute; restore the previous input on failure."""
        with self.engine_lock:
            self.engine.set_elevation_map(grid)
            try:
                self._compute()
            except RecomputeFailed:
                previous = self._state.last_elevation_grid
                if previous is not None:
                    self.engine.set_elevation_map(previous)
                raise
            self._state.last_elevation_grid = grid

    def request_submap(self) -> GridMap:
        """Fetch the elevation submap around the configured anchor point.

        Raises:
            TransformUnavailable: the anchor cannot be expressed in the map frame.
            SourceCallFailed: the source call failed.
        """
        if self.source is None:
            raise SourceCallFailed("No remote elevation source configured.")
        if self.transformer is None:
            raise TransformUnavailable("No frame transformer configured.")

        map_frame_id = self.engine.get_map_frame_id()
        anchor = self.transformer.transform(
            self.param.submap_anchor, self.param.robot_frame_id, map_frame_id
        )
        request = SubmapRequest(
            anchor_point=anchor,
            length=self.param.submap_length,
            layers=list(ELEVATION_LAYERS),
            frame_id=map_frame_id,
        )
        grid = self.source.fetch_submap(
            (request.anchor_point[0], request.anchor_point[1]),
            request.length[0],
            request.length[1],
            request.layers,
        )
        if grid is None:
            raise SourceCallFailed("Elevation source returned no map.")
        if not grid.exists("elevation"):
            raise SourceCallFailed(f"Map from '{self.param.submap_service}' has no 'elevation' layer.")
        self._add_missing_bound_layers(grid)
        return grid

    def _add_missing_bound_layers(self, grid: GridMap) -> None:
        for layer in ELEVATION_LAYERS:
            if not grid.exists(layer):
                grid.add(layer, 0.0)
                self.logger.info(f"Added missing layer '{layer}' to the elevation map.")

    def update_filter_configuration(self) -> bool:
        """Reload filter and footprint parameters and apply them to the engine."""
        try:
            config = load_filter_config(self.param.config_directory, self.param.robot)
            with self.engine_lock:
                if not self.engine.reload_filter_config(config):
                    raise ConfigReloadFailed("Engine rejected the filter configuration.")
        except ConfigReloadFailed as exc:
            self.logger.error(f"Can't update parameter: {exc}")
            return False
        self.logger.info("Filter configuration updated.")
        return True

    def load_elevation_map(self, grid: GridMap) -> bool:
        """Replace the engine input with a stored elevation map and recompute."""
        if not grid.exists("elevation"):
            self.logger.warning("loadElevationMap: map has no 'elevation' layer.")
            return False
        self._add_missing_bound_layers(grid)
        self.logger.debug(
            f"Map frame id: {grid.frame_id}, layers: {grid.layers}, length: {grid.length}, "
            f"position: {grid.position}, resolution: {grid.resolution}"
        )
        grid.timestamp = time.time_ns()
        try:
            self._commit_elevation_map(grid)
        except RecomputeFailed as exc:
            self.logger.warning(f"loadElevationMap: cannot compute traversability: {exc}")
            return False
        return True
