#
# Copyright (c) 2022, Takahiro Miki. All rights reserved.
# Licensed under the MIT license. See LICENSE file in the project root for details.
#
import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from traversability_estimation.errors import PartialOverlapFailure, UnknownLayer

ELEVATION_LAYERS = ["elevation", "upper_bound", "lower_bound"]

_EPS = 1e-6


@dataclass
class GridGeometry:
    """Lightweight holder describing a GridMap's geometry."""

    length_x: float
    length_y: float
    resolution: float
    center: np.ndarray
    orientation: np.ndarray = field(default_factory=lambda: np.array([0.0, 0.0, 0.0, 1.0], dtype=np.float32))

    @property
    def bounds_x(self) -> Tuple[float, float]:
        half = self.length_x / 2.0
        return float(self.center[0]) - half, float(self.center[0]) + half

    @property
    def bounds_y(self) -> Tuple[float, float]:
        half = self.length_y / 2.0
        return float(self.center[1]) - half, float(self.center[1]) + half

    @property
    def shape(self) -> Tuple[int, int]:
        cols = int(round(self.length_x / self.resolution))
        rows = int(round(self.length_y / self.resolution))
        return rows, cols


def to_grid_map_convention(m: np.ndarray) -> np.ndarray:
    """Reorder a Row=Y, Col=X array to grid_map's buffer order.

    grid_map uses Row→-X, Col→-Y (transformBufferOrderToMapFrame returns
    {-index[0], -index[1]}), so transpose and flip both axes.
    """
    return np.flip(np.flip(m.T, 0), 1)


def from_grid_map_convention(m: np.ndarray) -> np.ndarray:
    """Inverse of :func:`to_grid_map_convention`."""
    return np.flip(np.flip(m, 0), 1).T


def decode_image_layer(image: np.ndarray, min_value: float, max_value: float) -> np.ndarray:
    """Scale image intensities into [min_value, max_value].

    Integer images are normalized by the maximum of their dtype, float images
    are expected in [0, 1]. For 2 or 4 channel images the last channel is
    alpha and fully transparent pixels become NaN. The image's top row is the
    grid's maximum y, so the result is flipped to the grid's row order.
    """
    img = np.asarray(image)
    if img.ndim not in (2, 3):
        raise ValueError(f"Expected a 2D or 3D image, got shape {img.shape}.")
    if np.issubdtype(img.dtype, np.integer):
        scale = float(np.iinfo(img.dtype).max)
    else:
        scale = 1.0
    channels = img.astype(np.float64) / scale

    alpha = None
    if channels.ndim == 3:
        n_channels = channels.shape[2]
        if n_channels in (2, 4):
            alpha = channels[..., -1]
            channels = channels[..., :-1]
        intensity = channels.mean(axis=2)
    else:
        intensity = channels

    values = min_value + intensity * (max_value - min_value)
    if alpha is not None:
        values[alpha <= 0.0] = np.nan
    return np.flipud(values).astype(np.float32)


class GridMap:
    """Multi-layer 2D grid anchored at a center position.

    Rows grow with y and columns grow with x, starting at the minimum corner.
    """

    def __init__(
        self,
        frame_id: str,
        resolution: float,
        length: Tuple[float, float],
        position: Tuple[float, float] = (0.0, 0.0),
        basic_layers: Optional[List[str]] = None,
        timestamp: int = 0,
    ):
        if resolution <= 0.0:
            raise ValueError(f"Resolution must be positive, got {resolution}.")
        self.frame_id = frame_id
        self.resolution = float(resolution)
        self.length = (float(length[0]), float(length[1]))
        self.position = (float(position[0]), float(position[1]))
        self.basic_layers: List[str] = list(basic_layers or [])
        self.timestamp = timestamp
        self._layers: Dict[str, np.ndarray] = {}

    @classmethod
    def from_geometry(cls, frame_id: str, geometry: GridGeometry, **kwargs) -> "GridMap":
        return cls(
            frame_id,
            geometry.resolution,
            (geometry.length_x, geometry.length_y),
            (float(geometry.center[0]), float(geometry.center[1])),
            **kwargs,
        )

    @classmethod
    def from_image(
        cls,
        image: np.ndarray,
        resolution: float,
        position: Tuple[float, float] = (0.0, 0.0),
        frame_id: str = "map",
    ) -> "GridMap":
        """Create an empty grid whose cells match the image pixels."""
        rows, cols = np.asarray(image).shape[:2]
        return cls(frame_id, resolution, (cols * resolution, rows * resolution), position)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.geometry.shape

    @property
    def geometry(self) -> GridGeometry:
        return GridGeometry(
            length_x=self.length[0],
            length_y=self.length[1],
            resolution=self.resolution,
            center=np.array([self.position[0], self.position[1], 0.0], dtype=np.float64),
        )

    @property
    def layers(self) -> List[str]:
        return list(self._layers.keys())

    def exists(self, name: str) -> bool:
        return name in self._layers

    def add(self, name: str, value=np.nan) -> None:
        """Add or overwrite a layer from a scalar or an array of the grid's shape."""
        if np.isscalar(value):
            data = np.full(self.shape, value, dtype=np.float32)
        else:
            data = np.asarray(value, dtype=np.float32)
            if data.shape != self.shape:
                raise ValueError(
                    f"Layer '{name}' has shape {data.shape}, grid expects {self.shape}."
                )
            data = data.copy()
        self._layers[name] = data

    def get(self, name: str) -> np.ndarray:
        try:
            return self._layers[name]
        except KeyError:
            raise UnknownLayer(f"Layer '{name}' does not exist in the map.") from None

    def erase(self, name: str) -> None:
        self._layers.pop(name, None)

    def add_layer_from_image(self, image: np.ndarray, name: str, min_value: float, max_value: float) -> None:
        self.add(name, decode_image_layer(image, min_value, max_value))

    def copy(self, layers: Optional[Iterable[str]] = None) -> "GridMap":
        names = self.layers if layers is None else list(layers)
        out = GridMap(self.frame_id, self.resolution, self.length, self.position, self.basic_layers, self.timestamp)
        for name in names:
            out._layers[name] = self.get(name).copy()
        if layers is not None:
            out.basic_layers = [b for b in self.basic_layers if b in out._layers]
        return out

    def cell_centers(self) -> Tuple[np.ndarray, np.ndarray]:
        """Return (x, y) arrays with the position of every cell center."""
        rows, cols = self.shape
        min_x, _ = self.geometry.bounds_x
        min_y, _ = self.geometry.bounds_y
        xs = min_x + (np.arange(cols) + 0.5) * self.resolution
        ys = min_y + (np.arange(rows) + 0.5) * self.resolution
        return np.meshgrid(xs, ys)

    def position_to_index(self, x: float, y: float) -> Optional[Tuple[int, int]]:
        rows, cols = self.shape
        min_x, _ = self.geometry.bounds_x
        min_y, _ = self.geometry.bounds_y
        col = int(math.floor((x - min_x) / self.resolution))
        row = int(math.floor((y - min_y) / self.resolution))
        if 0 <= row < rows and 0 <= col < cols:
            return row, col
        return None

    def get_submap(self, position: Tuple[float, float], length: Tuple[float, float]) -> "GridMap":
        """Cut the cells inside the requested rectangle.

        The rectangle must lie fully inside the grid. The returned grid covers
        whole cells only, so its length never exceeds the requested one.
        """
        length_x, length_y = float(length[0]), float(length[1])
        if length_x <= 0.0 or length_y <= 0.0:
            raise ValueError(f"Submap length must be positive, got ({length_x}, {length_y}).")

        map_min_x, map_max_x = self.geometry.bounds_x
        map_min_y, map_max_y = self.geometry.bounds_y
        req_min_x = float(position[0]) - length_x / 2.0
        req_max_x = float(position[0]) + length_x / 2.0
        req_min_y = float(position[1]) - length_y / 2.0
        req_max_y = float(position[1]) + length_y / 2.0

        if (
            req_min_x < map_min_x - _EPS
            or req_max_x > map_max_x + _EPS
            or req_min_y < map_min_y - _EPS
            or req_max_y > map_max_y + _EPS
        ):
            raise PartialOverlapFailure(
                f"Requested submap X∈[{req_min_x:.2f},{req_max_x:.2f}], Y∈[{req_min_y:.2f},{req_max_y:.2f}] "
                f"exceeds map X∈[{map_min_x:.2f},{map_max_x:.2f}], Y∈[{map_min_y:.2f},{map_max_y:.2f}]."
            )

        col_start = int(math.ceil((req_min_x - map_min_x) / self.resolution - _EPS))
        col_end = int(math.floor((req_max_x - map_min_x) / self.resolution + _EPS))
        row_start = int(math.ceil((req_min_y - map_min_y) / self.resolution - _EPS))
        row_end = int(math.floor((req_max_y - map_min_y) / self.resolution + _EPS))
        if col_end <= col_start or row_end <= row_start:
            raise PartialOverlapFailure("Requested submap is smaller than one cell.")

        cols = col_end - col_start
        rows = row_end - row_start
        center = (
            map_min_x + (col_start + cols / 2.0) * self.resolution,
            map_min_y + (row_start + rows / 2.0) * self.resolution,
        )
        sub = GridMap(
            self.frame_id,
            self.resolution,
            (cols * self.resolution, rows * self.resolution),
            center,
            self.basic_layers,
            self.timestamp,
        )
        for name, data in self._layers.items():
            sub._layers[name] = data[row_start:row_end, col_start:col_end].copy()
        return sub
