import threading
import time
from pathlib import Path

import numpy as np
import pytest

from traversability_estimation import parameter
from traversability_estimation.errors import SourceCallFailed, TransformUnavailable
from traversability_estimation.filter_config import FilterConfig
from traversability_estimation.grid_map import ELEVATION_LAYERS, GridMap
from traversability_estimation.interfaces import (
    ElevationSource,
    FrameTransformer,
    MapStore,
    TraversabilityEngine,
    TraversabilityResult,
)
from traversability_estimation.orchestrator import UpdateOrchestrator
from traversability_estimation.query import QueryDispatcher

CONFIG_DIR = Path(__file__).resolve().parents[2] / "config"


def make_grid(length=(2.0, 2.0), resolution=0.1, position=(0.0, 0.0), value=0.0, frame_id="map"):
    grid = GridMap(frame_id, resolution, length, position)
    for layer in ELEVATION_LAYERS:
        grid.add(layer, value)
    return grid


class FakeEngine(TraversabilityEngine):
    """Records calls and flags overlapping computations."""

    def __init__(self, compute_ok=True, compute_delay=0.0):
        self.compute_ok = compute_ok
        self.compute_delay = compute_delay
        self.elevation_history = []
        self.compute_calls = 0
        self.max_parallel_computes = 0
        self._active = 0
        self._counter_lock = threading.Lock()
        self.ready = False
        self.traversability_map = make_grid(length=(4.0, 4.0))
        self.traversability_map.add("traversability", 1.0)
        self.path_results = {}
        self.footprint_yaws = []
        self.config = FilterConfig()
        self.reload_ok = True

    @property
    def elevation_map(self):
        return self.elevation_history[-1] if self.elevation_history else None

    def set_elevation_map(self, grid):
        self.elevation_history.append(grid)

    def compute_traversability(self):
        with self._counter_lock:
            self._active += 1
            self.compute_calls += 1
            self.max_parallel_computes = max(self.max_parallel_computes, self._active)
        try:
            if self.compute_delay:
                time.sleep(self.compute_delay)
            if self.compute_ok:
                self.ready = True
            return self.compute_ok
        finally:
            with self._counter_lock:
                self._active -= 1

    def is_ready(self):
        return self.ready

    def get_traversability_map(self):
        return self.traversability_map.copy()

    def get_map_frame_id(self):
        return "map"

    def check_footprint_path(self, path):
        key = float(path.poses[0][0])
        return self.path_results.get(key, TraversabilityResult(True, 1.0, 0.5))

    def compute_footprint_polygon(self, yaw):
        self.footprint_yaws.append(yaw)
        return True

    def reload_filter_config(self, config):
        if not self.reload_ok:
            return False
        self.config = config
        return True

    @property
    def filter_config(self):
        return self.config


class FakeSource(ElevationSource):
    def __init__(self, reachable=True, grid=None, fail=False):
        self.reachable = reachable
        self.grid = grid if grid is not None else make_grid(value=0.2)
        self.fail = fail
        self.fetch_calls = []
        self.reachable_calls = []

    def is_reachable(self, timeout):
        self.reachable_calls.append(timeout)
        return self.reachable

    def fetch_submap(self, position, length_x, length_y, layers):
        self.fetch_calls.append((tuple(position), length_x, length_y, list(layers)))
        if self.fail:
            raise SourceCallFailed("service call failed")
        return self.grid


class FakeTransformer(FrameTransformer):
    def __init__(self, offset=(1.0, 2.0, 0.0), fail=False):
        self.offset = offset
        self.fail = fail
        self.calls = []

    def transform(self, point, source_frame, target_frame):
        self.calls.append((tuple(point), source_frame, target_frame))
        if self.fail:
            raise TransformUnavailable(f"No transform from '{source_frame}' to '{target_frame}'.")
        return tuple(p + o for p, o in zip(point, self.offset))


class FakeStore(MapStore):
    def __init__(self, grid=None):
        self.grid = grid
        self.saved = []

    def save(self, grid):
        self.saved.append(grid)

    def load(self):
        return self.grid


@pytest.fixture
def param():
    p = parameter.Parameter(config_directory=str(CONFIG_DIR), min_update_rate=0.0)
    p.update()
    return p


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def transformer():
    return FakeTransformer()


@pytest.fixture
def orchestrator(param, engine, source, transformer):
    return UpdateOrchestrator(param, engine, source=source, transformer=transformer)


@pytest.fixture
def dispatcher(orchestrator):
    return QueryDispatcher(orchestrator)


@pytest.fixture
def elevation_image():
    """8 x 6 mono8 ramp image."""
    return np.tile(np.linspace(0, 255, 6, dtype=np.uint8), (8, 1))
