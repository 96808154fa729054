#
# Copyright (c) 2022, Takahiro Miki. All rights reserved.
# Licensed under the MIT license. See LICENSE file in the project root for details.
#
import logging
import math
import threading
import warnings
from typing import Optional, Tuple

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from traversability_estimation.filter_config import FilterConfig
from traversability_estimation.grid_map import GridMap
from traversability_estimation.interfaces import (
    FootprintPath,
    TraversabilityEngine,
    TraversabilityResult,
)

_LOGGER = logging.getLogger(__name__)

TRAVERSABILITY_LAYER = "traversability"
SLOPE_LAYER = "traversability_slope"
STEP_LAYER = "traversability_step"
ROUGHNESS_LAYER = "traversability_roughness"
FOOTPRINT_LAYER = "traversability_footprint"


def points_in_polygon(xs: np.ndarray, ys: np.ndarray, polygon: np.ndarray) -> np.ndarray:
    """Even-odd test of every (xs, ys) point against ``polygon`` (N x 2)."""
    inside = np.zeros(xs.shape, dtype=bool)
    n = len(polygon)
    for i in range(n):
        x1, y1 = polygon[i]
        x2, y2 = polygon[(i + 1) % n]
        crosses = (y1 > ys) != (y2 > ys)
        with np.errstate(divide="ignore", invalid="ignore"):
            x_intersect = (x2 - x1) * (ys - y1) / (y2 - y1) + x1
        inside ^= crosses & (xs < x_intersect)
    return inside


def transform_polygon(polygon: np.ndarray, x: float, y: float, yaw: float) -> np.ndarray:
    c, s = math.cos(yaw), math.sin(yaw)
    rot = np.array([[c, -s], [s, c]])
    return polygon @ rot.T + np.array([x, y])


def calculate_area(polygon: np.ndarray) -> float:
    x = polygon[:, 0]
    y = polygon[:, 1]
    return 0.5 * abs(float(np.dot(x, np.roll(y, 1)) - np.dot(y, np.roll(x, 1))))


def is_traversable(values: np.ndarray, safe_thresh: float, safe_min_thresh: float, max_unsafe_n: int) -> Tuple[bool, int]:
    """A footprint is safe with at most ``max_unsafe_n`` cells under ``safe_thresh``
    and none under ``safe_min_thresh``."""
    unsafe = values < safe_thresh
    un_n = int(unsafe.sum())
    if un_n > max_unsafe_n:
        return False, un_n
    if np.any(values < safe_min_thresh):
        return False, un_n
    return True, un_n


def _window_reduce(array: np.ndarray, size: int, reducer) -> np.ndarray:
    radius = size // 2
    padded = np.pad(array, radius, mode="constant", constant_values=np.nan)
    windows = sliding_window_view(padded, (size, size))
    with warnings.catch_warnings():
        # All-NaN windows stay NaN.
        warnings.simplefilter("ignore", RuntimeWarning)
        return reducer(windows, axis=(-2, -1))


def _shifted(array: np.ndarray, dr: int, dc: int) -> np.ndarray:
    """Return ``out`` with out[r, c] = array[r + dr, c + dc], NaN outside."""
    rows, cols = array.shape
    out = np.full_like(array, np.nan)
    if abs(dr) >= rows or abs(dc) >= cols:
        return out
    dst_r = slice(max(-dr, 0), rows - max(dr, 0))
    src_r = slice(max(dr, 0), rows - max(-dr, 0))
    dst_c = slice(max(-dc, 0), cols - max(dc, 0))
    src_c = slice(max(dc, 0), cols - max(-dc, 0))
    out[dst_r, dst_c] = array[src_r, src_c]
    return out


class TraversabilityMap(TraversabilityEngine):
    """Reference engine: weighted slope, step and roughness filters on the elevation layer."""

    def __init__(self, map_frame_id: str = "map", config: Optional[FilterConfig] = None):
        self._map_frame_id = map_frame_id
        self._config = config if config is not None else FilterConfig()
        self._config.validate()
        self._elevation_map: Optional[GridMap] = None
        self._traversability_map: Optional[GridMap] = None
        self._initialized = False
        self.map_lock = threading.Lock()

    @property
    def filter_config(self) -> FilterConfig:
        return self._config

    def get_map_frame_id(self) -> str:
        return self._map_frame_id

    def is_ready(self) -> bool:
        return self._initialized

    def set_elevation_map(self, grid: GridMap) -> None:
        if not grid.exists("elevation"):
            raise ValueError("Elevation map has no 'elevation' layer.")
        if grid.frame_id and grid.frame_id != self._map_frame_id:
            _LOGGER.warning(
                "Elevation map frame '%s' differs from traversability map frame '%s'.",
                grid.frame_id,
                self._map_frame_id,
            )
        with self.map_lock:
            self._elevation_map = grid

    def get_traversability_map(self) -> GridMap:
        with self.map_lock:
            if self._traversability_map is None:
                return GridMap(self._map_frame_id, 1.0, (0.0, 0.0))
            return self._traversability_map.copy()

    def compute_traversability(self) -> bool:
        with self.map_lock:
            source = self._elevation_map
        if source is None:
            _LOGGER.warning("No elevation map set, cannot compute traversability.")
            return False

        elevation = source.get("elevation").astype(np.float64)
        valid = np.isfinite(elevation)
        if not np.any(valid):
            _LOGGER.warning("Elevation map has no valid cells.")
            return False

        cfg = self._config
        res = source.resolution
        if min(elevation.shape) < 2:
            slope = np.zeros_like(elevation)
        else:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", RuntimeWarning)
                grad_y, grad_x = np.gradient(elevation, res)
            slope = np.arctan(np.hypot(grad_x, grad_y))
        step = _window_reduce(elevation, cfg.window_size, np.nanmax) - _window_reduce(
            elevation, cfg.window_size, np.nanmin
        )
        roughness = _window_reduce(elevation, cfg.window_size, np.nanstd)

        slope_t = np.clip(1.0 - slope / cfg.slope.critical_value, 0.0, 1.0)
        step_t = np.clip(1.0 - step / cfg.step.critical_value, 0.0, 1.0)
        rough_t = np.clip(1.0 - roughness / cfg.roughness.critical_value, 0.0, 1.0)
        # Border cells of a valid patch have no gradient, fall back to the window filters.
        slope_t = np.where(valid & ~np.isfinite(slope_t), 1.0, slope_t)

        weights = np.array([cfg.slope.weight, cfg.step.weight, cfg.roughness.weight])
        traversability = (weights[0] * slope_t + weights[1] * step_t + weights[2] * rough_t) / weights.sum()
        traversability[~valid] = np.nan

        result = source.copy()
        result.frame_id = self._map_frame_id
        result.add(SLOPE_LAYER, np.where(valid, slope_t, np.nan))
        result.add(STEP_LAYER, np.where(valid, step_t, np.nan))
        result.add(ROUGHNESS_LAYER, np.where(valid, rough_t, np.nan))
        result.add(TRAVERSABILITY_LAYER, traversability)
        if "elevation" not in result.basic_layers:
            result.basic_layers = ["elevation"] + result.basic_layers

        with self.map_lock:
            self._traversability_map = result
            self._initialized = True
        return True

    def _footprint_polygon(self, path: Optional[FootprintPath] = None) -> Optional[np.ndarray]:
        if path is not None and path.footprint is not None and len(path.footprint) >= 3:
            return path.footprint
        if path is not None and path.radius > 0.0:
            return None
        if len(self._config.footprint_polygon) >= 3:
            return np.asarray(self._config.footprint_polygon, dtype=np.float64)
        return None

    def _footprint_radius(self, path: Optional[FootprintPath] = None) -> float:
        if path is not None and path.radius > 0.0:
            return path.radius
        return self._config.footprint_radius

    def _interpolate_poses(self, poses: np.ndarray, step: float) -> np.ndarray:
        if len(poses) < 2:
            return poses
        samples = [poses[0]]
        for start, end in zip(poses[:-1], poses[1:]):
            distance = float(np.hypot(*(end[:2] - start[:2])))
            n = max(1, int(math.ceil(distance / step)))
            for k in range(1, n + 1):
                ratio = k / n
                xy = start[:2] + ratio * (end[:2] - start[:2])
                yaw = start[2] + ratio * math.atan2(math.sin(end[2] - start[2]), math.cos(end[2] - start[2]))
                samples.append(np.array([xy[0], xy[1], yaw]))
        return np.asarray(samples)

    def check_footprint_path(self, path: FootprintPath) -> Optional[TraversabilityResult]:
        with self.map_lock:
            grid = self._traversability_map
        if grid is None:
            _LOGGER.warning("Traversability map not yet computed, cannot check footprint path.")
            return None
        if len(path.poses) == 0:
            _LOGGER.warning("Footprint path has no poses.")
            return None

        xs, ys = grid.cell_centers()
        polygon = self._footprint_polygon(path)
        radius = self._footprint_radius(path)
        if polygon is None and radius <= 0.0:
            _LOGGER.warning("Footprint path has neither a polygon nor a radius.")
            return None

        mask = np.zeros(xs.shape, dtype=bool)
        footprint_area = 0.0
        for x, y, yaw in self._interpolate_poses(path.poses, grid.resolution):
            if polygon is not None:
                placed = transform_polygon(polygon, x, y, yaw)
                mask |= points_in_polygon(xs, ys, placed)
                footprint_area = calculate_area(polygon)
            else:
                mask |= (xs - x) ** 2 + (ys - y) ** 2 <= radius ** 2
                footprint_area = math.pi * radius ** 2

        if not np.any(mask):
            _LOGGER.warning("Requested footprint path is outside of the map.")
            return TraversabilityResult(is_safe=False, traversability=0.0, area=footprint_area)

        values = grid.get(TRAVERSABILITY_LAYER)[mask]
        known = np.isfinite(values)
        mean = float(values[known].mean()) if np.any(known) else 0.0
        cfg = self._config
        checked = np.where(known, values, 0.0) if path.conservative else values[known]
        is_safe, un_n = is_traversable(checked, cfg.safe_thresh, cfg.safe_min_thresh, cfg.max_unsafe_n)
        if not np.any(known):
            is_safe = False
        return TraversabilityResult(is_safe=is_safe, traversability=mean, area=footprint_area, untraversable_cells=un_n)

    def compute_footprint_polygon(self, yaw: float) -> bool:
        """Add a layer holding the worst traversability under the footprint at ``yaw``."""
        with self.map_lock:
            grid = self._traversability_map
        if grid is None:
            _LOGGER.warning("Traversability map not yet computed, cannot compute footprint.")
            return False

        res = grid.resolution
        polygon = self._footprint_polygon()
        if polygon is not None:
            placed = transform_polygon(polygon, 0.0, 0.0, yaw)
            extent = float(np.abs(placed).max())
        else:
            extent = self._config.footprint_radius
        n = int(math.ceil(extent / res))
        offsets = np.arange(-n, n + 1)
        dc, dr = np.meshgrid(offsets, offsets)
        ox, oy = dc * res, dr * res
        if polygon is not None:
            inside = points_in_polygon(ox, oy, placed)
        else:
            inside = ox ** 2 + oy ** 2 <= extent ** 2
        inside[n, n] = True

        traversability = grid.get(TRAVERSABILITY_LAYER)
        footprint = np.full_like(traversability, np.nan)
        for r, c in zip(dr[inside], dc[inside]):
            footprint = np.fmin(footprint, _shifted(traversability, int(r), int(c)))
        footprint[~np.isfinite(traversability)] = np.nan

        result = grid.copy()
        result.add(FOOTPRINT_LAYER, footprint)
        with self.map_lock:
            self._traversability_map = result
        return True

    def reload_filter_config(self, config: FilterConfig) -> bool:
        try:
            config.validate()
        except ValueError as exc:
            _LOGGER.error("Rejected filter configuration: %s", exc)
            return False
        self._config = config
        return True
