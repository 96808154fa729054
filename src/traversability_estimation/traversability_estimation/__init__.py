from .errors import *
from .parameter import Parameter
from .grid_map import GridMap, GridGeometry
from .interfaces import (
    ElevationSource,
    FootprintPath,
    FrameTransformer,
    GridMapInfo,
    MapStore,
    SubmapRequest,
    TraversabilityEngine,
    TraversabilityResult,
)
from .filter_config import FilterConfig, FilterSettings, load_filter_config
from .orchestrator import ElevationSourceMode, UpdateCycleState, UpdateOrchestrator
from .query import QueryDispatcher
from .traversability_map import TraversabilityMap
