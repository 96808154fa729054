#
# Copyright (c) 2022, Takahiro Miki. All rights reserved.
# Licensed under the MIT license. See LICENSE file in the project root for details.
#
import math
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional, Tuple


@dataclass
class Parameter:
    # Remote elevation source
    submap_service: str = "/elevation_mapping/get_submap"
    source_wait_timeout: float = 2.0  # seconds to wait for the submap service to come up
    source_call_timeout: float = 5.0  # seconds to wait for one submap call

    # Update timing. 0 disables periodic updates.
    min_update_rate: float = 1.0
    # 0 waits forever for the first traversability computation.
    readiness_timeout: float = 0.0

    # Image elevation source
    image_topic: str = "/image_elevation"
    resolution: float = 0.03
    min_height: float = 0.0
    max_height: float = 1.0
    image_position_x: float = 0.0
    image_position_y: float = 0.0

    # Frames and submap request
    robot_frame_id: str = "robot"
    map_frame_id: str = "map"
    map_center_x: float = 0.0
    map_center_y: float = 0.0
    map_length_x: float = 5.0
    map_length_y: float = 5.0

    footprint_yaw: float = math.pi / 2.0

    # Filter configuration files: <config_directory>/<robot>_filter_parameter.yaml
    robot: str = "robot"
    config_directory: str = ""

    # Storage
    elevation_map_topic: str = "grid_map"
    load_bag_path: str = "elevation_map"
    save_bag_path: str = "traversability_map"
    bag_storage_id: str = "mcap"

    def update(self) -> None:
        """Validate the values after they were overwritten."""
        if self.min_update_rate < 0.0:
            raise ValueError(f"min_update_rate must be >= 0, got {self.min_update_rate}.")
        if self.map_length_x <= 0.0 or self.map_length_y <= 0.0:
            raise ValueError(
                f"Submap length must be positive, got ({self.map_length_x}, {self.map_length_y})."
            )
        if self.resolution <= 0.0:
            raise ValueError(f"resolution must be positive, got {self.resolution}.")
        if self.max_height <= self.min_height:
            raise ValueError(
                f"max_height ({self.max_height}) must be greater than min_height ({self.min_height})."
            )
        if self.source_wait_timeout < 0.0 or self.source_call_timeout <= 0.0:
            raise ValueError("Source timeouts must be positive.")
        if self.readiness_timeout < 0.0:
            raise ValueError(f"readiness_timeout must be >= 0, got {self.readiness_timeout}.")

    @property
    def update_period(self) -> Optional[float]:
        if self.min_update_rate == 0.0:
            return None
        return 1.0 / self.min_update_rate

    @property
    def periodic_updates(self) -> bool:
        return self.update_period is not None

    @property
    def height_range(self) -> Tuple[float, float]:
        return self.min_height, self.max_height

    @property
    def image_position(self) -> Tuple[float, float]:
        return self.image_position_x, self.image_position_y

    @property
    def submap_anchor(self) -> Tuple[float, float, float]:
        return self.map_center_x, self.map_center_y, 0.0

    @property
    def submap_length(self) -> Tuple[float, float]:
        return self.map_length_x, self.map_length_y

    def get_names(self):
        return [f.name for f in fields(self)]

    def get_types(self) -> Dict[str, Any]:
        return {f.name: f.type for f in fields(self)}

    def set_value(self, name: str, value: Any) -> None:
        if name not in self.get_names():
            raise KeyError(f"Unknown parameter '{name}'.")
        setattr(self, name, value)

    def get_value(self, name: str) -> Any:
        return getattr(self, name)
