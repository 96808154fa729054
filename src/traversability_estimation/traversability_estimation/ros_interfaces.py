"""ROS 2 implementations of the collaborator interfaces."""
import threading
from pathlib import Path
from typing import Sequence, Tuple

import numpy as np
import rosbag2_py
import tf2_py as tf2
import tf2_ros
from grid_map_msgs.msg import GridMap as GridMapMsg
from grid_map_msgs.srv import GetGridMap
from rclpy.node import Node
from rclpy.time import Time
from rclpy.serialization import deserialize_message, serialize_message
from tf_transformations import quaternion_matrix

from traversability_estimation.errors import MapStoreError, SourceCallFailed, TransformUnavailable
from traversability_estimation.grid_map import GridMap
from traversability_estimation.gridmap_utils import grid_map_from_message, grid_map_to_message
from traversability_estimation.interfaces import ElevationSource, FrameTransformer, MapStore, Point


class TfFrameTransformer(FrameTransformer):
    def __init__(self, tf_buffer: tf2_ros.Buffer):
        self._tf_buffer = tf_buffer

    def transform(self, point: Point, source_frame: str, target_frame: str) -> Point:
        try:
            transform = self._tf_buffer.lookup_transform(target_frame, source_frame, Time())
        except tf2.LookupException as e:
            raise TransformUnavailable(f"Frame '{target_frame}' or '{source_frame}' does not exist: {e}") from e
        except tf2.ConnectivityException as e:
            raise TransformUnavailable(f"No transform path from '{source_frame}' to '{target_frame}': {e}") from e
        except tf2.ExtrapolationException as e:
            raise TransformUnavailable(f"Transform from '{source_frame}' to '{target_frame}' is stale: {e}") from e
        t = transform.transform.translation
        q = transform.transform.rotation
        R = quaternion_matrix([q.x, q.y, q.z, q.w])[:3, :3]
        p = R @ np.asarray(point, dtype=np.float64) + np.array([t.x, t.y, t.z])
        return float(p[0]), float(p[1]), float(p[2])


class GridMapServiceSource(ElevationSource):
    """Fetch elevation submaps from a grid_map_msgs/GetGridMap service.

    The owning node must spin on a multi-threaded executor with the client in
    a reentrant callback group, otherwise the response is never processed.
    """

    def __init__(self, node: Node, service_name: str, call_timeout: float, callback_group=None):
        self._node = node
        self._service_name = service_name
        self._call_timeout = call_timeout
        self._client = node.create_client(GetGridMap, service_name, callback_group=callback_group)

    def is_reachable(self, timeout: float) -> bool:
        return self._client.wait_for_service(timeout_sec=timeout)

    def fetch_submap(
        self, position: Tuple[float, float], length_x: float, length_y: float, layers: Sequence[str]
    ) -> GridMap:
        req = GetGridMap.Request()
        req.position_x = float(position[0])
        req.position_y = float(position[1])
        req.length_x = float(length_x)
        req.length_y = float(length_y)
        req.layers = list(layers)

        done = threading.Event()
        future = self._client.call_async(req)
        future.add_done_callback(lambda _: done.set())
        if not done.wait(self._call_timeout):
            self._client.remove_pending_request(future)
            raise SourceCallFailed(f"Call to '{self._service_name}' timed out after {self._call_timeout} s.")
        if future.exception() is not None:
            raise SourceCallFailed(f"Call to '{self._service_name}' failed: {future.exception()}")
        response = future.result()
        if response is None:
            raise SourceCallFailed(f"Call to '{self._service_name}' returned no response.")
        try:
            return grid_map_from_message(response.map)
        except ValueError as exc:
            raise SourceCallFailed(f"Malformed map from '{self._service_name}': {exc}") from exc


class RosbagMapStore(MapStore):
    """Read and write single grid maps to a rosbag2 file."""

    def __init__(self, path: str, topic: str, storage_id: str = "mcap", clock=None):
        self.path = Path(path).expanduser().resolve()
        self.topic = topic
        self.storage_id = storage_id
        self._clock = clock

    def _make_topic_metadata(self) -> rosbag2_py.TopicMetadata:
        """Build TopicMetadata compatible with both legacy and new rosbag2 Python signatures."""
        msg_type = 'grid_map_msgs/msg/GridMap'
        serialization_format = 'cdr'
        try:
            metadata = rosbag2_py.TopicMetadata(self.topic, msg_type, serialization_format, '')
            if metadata.name == self.topic and metadata.type == msg_type:
                return metadata
        except TypeError:
            # Older rosbag2 versions expect the reader-count placeholder as the first argument
            pass
        return rosbag2_py.TopicMetadata(0, self.topic, msg_type, serialization_format)

    def save(self, grid: GridMap) -> None:
        if self.path.exists():
            raise MapStoreError(f"Bag path '{self.path}' already exists.")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        stamp = self._clock.now() if self._clock is not None else None
        msg = grid_map_to_message(grid, stamp=stamp.to_msg() if stamp is not None else None)
        try:
            writer = rosbag2_py.SequentialWriter()
            storage_options = rosbag2_py.StorageOptions(uri=str(self.path), storage_id=self.storage_id)
            converter_options = rosbag2_py.ConverterOptions('', '')
            writer.open(storage_options, converter_options)
            writer.create_topic(self._make_topic_metadata())
            writer.write(self.topic, serialize_message(msg), stamp.nanoseconds if stamp is not None else grid.timestamp)
        except RuntimeError as exc:
            raise MapStoreError(f"Writing bag '{self.path}' failed: {exc}") from exc

    def load(self) -> GridMap:
        if not self.path.exists():
            raise MapStoreError(f"Map bag '{self.path}' does not exist.")
        try:
            reader = rosbag2_py.SequentialReader()
            storage_options = rosbag2_py.StorageOptions(uri=str(self.path), storage_id=self.storage_id)
            converter_options = rosbag2_py.ConverterOptions('', '')
            reader.open(storage_options, converter_options)
            latest = None
            while reader.has_next():
                current_topic, data, _ = reader.read_next()
                if current_topic != self.topic:
                    continue
                latest = deserialize_message(data, GridMapMsg)
        except RuntimeError as exc:
            raise MapStoreError(f"Reading bag '{self.path}' failed: {exc}") from exc
        if latest is None:
            raise MapStoreError(f"No messages for topic '{self.topic}' in bag '{self.path}'.")
        try:
            return grid_map_from_message(latest)
        except ValueError as exc:
            raise MapStoreError(f"Malformed map in bag '{self.path}': {exc}") from exc
