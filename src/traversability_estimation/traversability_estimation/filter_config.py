#
# Copyright (c) 2022, Takahiro Miki. All rights reserved.
# Licensed under the MIT license. See LICENSE file in the project root for details.
#
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Tuple

import yaml

from traversability_estimation.errors import ConfigReloadFailed

_LOGGER = logging.getLogger(__name__)

FILTER_FILE_SUFFIX = "_filter_parameter.yaml"
FOOTPRINT_FILE_SUFFIX = "_footprint_parameter.yaml"


@dataclass(frozen=True)
class FilterSettings:
    weight: float
    critical_value: float


@dataclass(frozen=True)
class FilterConfig:
    """Snapshot of filter and footprint parameters. Equal files give equal configs."""

    slope: FilterSettings = FilterSettings(weight=0.2, critical_value=0.6)
    step: FilterSettings = FilterSettings(weight=0.2, critical_value=0.12)
    roughness: FilterSettings = FilterSettings(weight=0.6, critical_value=0.3)
    window_size: int = 3
    footprint_radius: float = 0.3
    footprint_polygon: Tuple[Tuple[float, float], ...] = field(default_factory=tuple)
    safe_thresh: float = 0.5
    safe_min_thresh: float = 0.4
    max_unsafe_n: int = 0

    def validate(self) -> None:
        for name in ("slope", "step", "roughness"):
            settings = getattr(self, name)
            if settings.weight < 0.0:
                raise ValueError(f"Filter '{name}' has a negative weight.")
            if settings.critical_value <= 0.0:
                raise ValueError(f"Filter '{name}' needs a positive critical value.")
        if self.slope.weight + self.step.weight + self.roughness.weight <= 0.0:
            raise ValueError("At least one filter weight must be positive.")
        if self.window_size < 3 or self.window_size % 2 == 0:
            raise ValueError(f"window_size must be odd and >= 3, got {self.window_size}.")
        if self.footprint_radius <= 0.0 and len(self.footprint_polygon) < 3:
            raise ValueError("Footprint needs a positive radius or a polygon with at least 3 vertices.")
        if not 0.0 <= self.safe_min_thresh <= self.safe_thresh <= 1.0:
            raise ValueError("Expected 0 <= safe_min_thresh <= safe_thresh <= 1.")
        if self.max_unsafe_n < 0:
            raise ValueError("max_unsafe_n must be >= 0.")


def _read_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r") as f:
            content = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigReloadFailed(f"Cannot read '{path}': {exc}") from exc
    if content is None:
        return {}
    if not isinstance(content, dict):
        raise ConfigReloadFailed(f"'{path}' must contain a mapping at top level.")
    return content


def _filter_settings(filters: Dict[str, Any], name: str, default: FilterSettings) -> FilterSettings:
    entry = filters.get(name, {}) or {}
    return FilterSettings(
        weight=float(entry.get("weight", default.weight)),
        critical_value=float(entry.get("critical_value", default.critical_value)),
    )


def parse_filter_config(filter_params: Dict[str, Any], footprint_params: Dict[str, Any]) -> FilterConfig:
    defaults = FilterConfig()
    filters = filter_params.get("filters", {}) or {}
    footprint = footprint_params.get("footprint", {}) or {}
    polygon = tuple(
        (float(vertex[0]), float(vertex[1])) for vertex in (footprint.get("polygon") or [])
    )
    config = FilterConfig(
        slope=_filter_settings(filters, "slope", defaults.slope),
        step=_filter_settings(filters, "step", defaults.step),
        roughness=_filter_settings(filters, "roughness", defaults.roughness),
        window_size=int(filter_params.get("window_size", defaults.window_size)),
        footprint_radius=float(footprint.get("radius", defaults.footprint_radius)),
        footprint_polygon=polygon,
        safe_thresh=float(footprint.get("safe_thresh", defaults.safe_thresh)),
        safe_min_thresh=float(footprint.get("safe_min_thresh", defaults.safe_min_thresh)),
        max_unsafe_n=int(footprint.get("max_unsafe_n", defaults.max_unsafe_n)),
    )
    config.validate()
    return config


def filter_config_paths(config_directory: str, robot: str) -> Tuple[str, str]:
    return (
        os.path.join(config_directory, robot + FILTER_FILE_SUFFIX),
        os.path.join(config_directory, robot + FOOTPRINT_FILE_SUFFIX),
    )


def load_filter_config(config_directory: str, robot: str) -> FilterConfig:
    """Read both parameter files and build one FilterConfig.

    Raises:
        ConfigReloadFailed: a file is missing, unreadable or invalid.
    """
    filter_path, footprint_path = filter_config_paths(config_directory, robot)
    filter_params = _read_yaml(filter_path)
    footprint_params = _read_yaml(footprint_path)
    try:
        config = parse_filter_config(filter_params, footprint_params)
    except (TypeError, ValueError, IndexError, AttributeError) as exc:
        raise ConfigReloadFailed(f"Invalid filter configuration for robot '{robot}': {exc}") from exc
    _LOGGER.debug("Loaded filter configuration from %s and %s.", filter_path, footprint_path)
    return config
