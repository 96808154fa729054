#
# Copyright (c) 2022, Takahiro Miki. All rights reserved.
# Licensed under the MIT license. See LICENSE file in the project root for details.
#
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np

from traversability_estimation.grid_map import GridMap

Point = Tuple[float, float, float]


@dataclass
class SubmapRequest:
    """Submap request anchored at a point in ``frame_id``."""

    anchor_point: Point
    length: Tuple[float, float]
    layers: List[str]
    frame_id: str

    def __post_init__(self):
        if self.length[0] <= 0.0 or self.length[1] <= 0.0:
            raise ValueError(f"Submap length must be positive, got {self.length}.")


@dataclass
class GridMapInfo:
    frame_id: str
    resolution: float
    length_x: float
    length_y: float
    position: Tuple[float, float]

    @classmethod
    def from_grid(cls, grid: GridMap, frame_id: str) -> "GridMapInfo":
        return cls(
            frame_id=frame_id,
            resolution=grid.resolution,
            length_x=grid.length[0],
            length_y=grid.length[1],
            position=grid.position,
        )


@dataclass
class FootprintPath:
    """Candidate path as (x, y, yaw) poses in the map frame.

    The footprint is a circle of ``radius`` unless ``footprint`` holds polygon
    vertices in the robot frame.
    """

    poses: np.ndarray
    radius: float = 0.0
    footprint: Optional[np.ndarray] = None
    conservative: bool = False

    def __post_init__(self):
        self.poses = np.asarray(self.poses, dtype=np.float64).reshape(-1, 3)
        if self.footprint is not None:
            self.footprint = np.asarray(self.footprint, dtype=np.float64).reshape(-1, 2)


@dataclass
class TraversabilityResult:
    is_safe: bool
    traversability: float
    area: float
    untraversable_cells: int = 0


class ElevationSource(ABC):
    """Remote provider of elevation submaps."""

    @abstractmethod
    def is_reachable(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for the source to come up."""

    @abstractmethod
    def fetch_submap(
        self, position: Tuple[float, float], length_x: float, length_y: float, layers: Sequence[str]
    ) -> GridMap:
        """Request a submap centered at ``position`` in the map frame.

        Raises:
            SourceCallFailed: the call did not return a map.
        """


class FrameTransformer(ABC):
    @abstractmethod
    def transform(self, point: Point, source_frame: str, target_frame: str) -> Point:
        """Express ``point`` given in ``source_frame`` in ``target_frame``.

        Raises:
            TransformUnavailable: no valid transform between the frames.
        """


class MapStore(ABC):
    """Persistence collaborator for whole grids."""

    @abstractmethod
    def save(self, grid: GridMap) -> None:
        pass

    @abstractmethod
    def load(self) -> GridMap:
        pass


class TraversabilityEngine(ABC):
    """Computes a traversability grid from an elevation grid.

    Implementations are not required to be thread safe; callers serialize
    access.
    """

    @abstractmethod
    def set_elevation_map(self, grid: GridMap) -> None:
        pass

    @abstractmethod
    def compute_traversability(self) -> bool:
        pass

    @abstractmethod
    def is_ready(self) -> bool:
        pass

    @abstractmethod
    def get_traversability_map(self) -> GridMap:
        """Return a copy of the current traversability grid."""

    @abstractmethod
    def get_map_frame_id(self) -> str:
        pass

    @abstractmethod
    def check_footprint_path(self, path: FootprintPath) -> Optional[TraversabilityResult]:
        """Return None if the path cannot be evaluated."""

    @abstractmethod
    def compute_footprint_polygon(self, yaw: float) -> bool:
        pass

    @abstractmethod
    def reload_filter_config(self, config) -> bool:
        """Apply a FilterConfig as a whole, or keep the current one and return False."""

    @property
    @abstractmethod
    def filter_config(self):
        pass
