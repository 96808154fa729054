import math
from typing import Iterable, Optional

import numpy as np
from grid_map_msgs.msg import GridMap as GridMapMsg
from std_msgs.msg import Float32MultiArray
from std_msgs.msg import MultiArrayLayout as MAL
from std_msgs.msg import MultiArrayDimension as MAD

from traversability_estimation.grid_map import GridMap, from_grid_map_convention, to_grid_map_convention


def encode_layer_to_multiarray(array: np.ndarray) -> Float32MultiArray:
    """Encode a (rows, cols) buffer column-major, the layout grid_map expects."""
    arr = np.asarray(array, dtype=np.float32)
    if arr.ndim != 2:
        raise ValueError(f"Expected a 2D layer, got shape {arr.shape}.")
    rows, cols = arr.shape
    msg = Float32MultiArray(layout=MAL())
    msg.layout.dim = [
        MAD(label="column_index", size=cols, stride=rows * cols),
        MAD(label="row_index", size=rows, stride=rows),
    ]
    msg.data = arr.ravel(order="F").tolist()
    return msg


def decode_multiarray_to_rows_cols(name: str, array_msg: Float32MultiArray) -> np.ndarray:
    """Decode Float32MultiArray into (rows, cols) row-major array."""
    data_np = np.asarray(array_msg.data, dtype=np.float32)
    dims = array_msg.layout.dim

    if len(dims) >= 2 and dims[0].label and dims[1].label:
        label0 = dims[0].label
        label1 = dims[1].label

        if label0 == "row_index" and label1 == "column_index":
            rows = dims[0].size or 1
            cols = dims[1].size or (len(data_np) // rows if rows else 0)
            if rows * cols != data_np.size:
                raise ValueError(f"Layer '{name}' has inconsistent layout metadata.")
            return data_np.reshape((rows, cols), order="C")

        if label0 == "column_index" and label1 == "row_index":
            cols = dims[0].size or 1
            rows = dims[1].size or (len(data_np) // cols if cols else 0)
            if rows * cols != data_np.size:
                raise ValueError(f"Layer '{name}' has inconsistent layout metadata.")
            return data_np.reshape((rows, cols), order="F")

    if dims:
        cols = dims[0].size or 1
        rows = dims[1].size if len(dims) > 1 else (len(data_np) // cols if cols else len(data_np))
    else:
        cols = int(math.sqrt(len(data_np))) if len(data_np) else 0
        rows = cols
    if rows * cols != data_np.size:
        raise ValueError(f"Layer '{name}' has inconsistent layout metadata.")
    return data_np.reshape((rows, cols), order="C")


def grid_map_to_message(grid: GridMap, layers: Optional[Iterable[str]] = None, stamp=None) -> GridMapMsg:
    """Build a grid_map_msgs/GridMap from a GridMap, optionally restricted to ``layers``."""
    names = grid.layers if layers is None else list(layers)
    gm = GridMapMsg()
    gm.header.frame_id = grid.frame_id
    if stamp is not None:
        gm.header.stamp = stamp
    gm.info.resolution = grid.resolution
    gm.info.length_x = grid.length[0]
    gm.info.length_y = grid.length[1]
    gm.info.pose.position.x = grid.position[0]
    gm.info.pose.position.y = grid.position[1]
    gm.info.pose.position.z = 0.0
    gm.info.pose.orientation.w = 1.0
    gm.layers = []
    gm.basic_layers = [name for name in grid.basic_layers if name in names]
    for name in names:
        gm.layers.append(name)
        gm.data.append(encode_layer_to_multiarray(to_grid_map_convention(grid.get(name))))
    gm.outer_start_index = 0
    gm.inner_start_index = 0
    return gm


def grid_map_from_message(grid_map_msg: GridMapMsg) -> GridMap:
    if len(grid_map_msg.layers) != len(grid_map_msg.data):
        raise ValueError("Mismatch between GridMap layers and data arrays.")

    grid = GridMap(
        grid_map_msg.header.frame_id,
        grid_map_msg.info.resolution,
        (grid_map_msg.info.length_x, grid_map_msg.info.length_y),
        (grid_map_msg.info.pose.position.x, grid_map_msg.info.pose.position.y),
        basic_layers=list(grid_map_msg.basic_layers),
    )
    for name, array_msg in zip(grid_map_msg.layers, grid_map_msg.data):
        data = decode_multiarray_to_rows_cols(name, array_msg)
        if grid_map_msg.outer_start_index or grid_map_msg.inner_start_index:
            # Circular buffer not yet unrolled by the sender.
            data = np.roll(data, (-grid_map_msg.outer_start_index, -grid_map_msg.inner_start_index), axis=(1, 0))
        grid.add(name, from_grid_map_convention(data))
    return grid
