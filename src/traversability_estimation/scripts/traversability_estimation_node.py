#!/usr/bin/env python3
import os
from typing import List

import numpy as np

import rclpy
from rclpy.node import Node
from rclpy.callback_groups import ReentrantCallbackGroup
from rclpy.executors import MultiThreadedExecutor
from rcl_interfaces.msg import ParameterDescriptor
from ament_index_python.packages import get_package_share_directory
import tf2_ros
from tf_transformations import euler_from_quaternion
from cv_bridge import CvBridge
from sensor_msgs.msg import Image
from grid_map_msgs.msg import GridMap
from grid_map_msgs.srv import GetGridMap, GetGridMapInfo
from std_srvs.srv import Trigger
from traversability_msgs.msg import TraversabilityResult as TraversabilityResultMsg
from traversability_msgs.srv import CheckFootprintPath

from traversability_estimation import (
    FootprintPath,
    Parameter,
    QueryDispatcher,
    TraversabilityError,
    TraversabilityMap,
    UpdateOrchestrator,
    load_filter_config,
)
from traversability_estimation.gridmap_utils import grid_map_to_message
from traversability_estimation.ros_interfaces import GridMapServiceSource, RosbagMapStore, TfFrameTransformer


class TraversabilityEstimationNode(Node):
    def __init__(self):
        super().__init__('traversability_estimation')

        self.root = get_package_share_directory("traversability_estimation")
        self.param = Parameter(config_directory=os.path.join(self.root, "config"))

        # Read ROS parameters (including YAML)
        self.set_param_values_from_ros()
        self.param.update()

        self._callback_group = ReentrantCallbackGroup()
        self.initialize_ros()
        self.initialize_traversability_estimation()
        self.register_subscribers()
        self.register_publishers()
        self.register_timers()
        self.register_services()

    def set_param_values_from_ros(self) -> None:
        descriptor = ParameterDescriptor(dynamic_typing=True)
        for name in self.param.get_names():
            default = self.param.get_value(name)
            self.declare_parameter(name, default, descriptor)
            value = self.get_parameter(name).value
            if value is None:
                continue
            # Allow integers for float parameters, e.g. min_update_rate: 0
            self.param.set_value(name, type(default)(value))

    def initialize_ros(self) -> None:
        self._tf_buffer = tf2_ros.Buffer()
        self._listener = tf2_ros.TransformListener(self._tf_buffer, self)
        self.cv_bridge = CvBridge()

    def initialize_traversability_estimation(self) -> None:
        try:
            filter_config = load_filter_config(self.param.config_directory, self.param.robot)
        except TraversabilityError as exc:
            self.get_logger().warning(f"Using default filter configuration: {exc}")
            filter_config = None
        self._engine = TraversabilityMap(self.param.map_frame_id, filter_config)
        source = GridMapServiceSource(
            self,
            self.param.submap_service,
            self.param.source_call_timeout,
            callback_group=self._callback_group,
        )
        self._orchestrator = UpdateOrchestrator(
            self.param,
            self._engine,
            source=source,
            transformer=TfFrameTransformer(self._tf_buffer),
            logger=self.get_logger(),
        )
        self._dispatcher = QueryDispatcher(self._orchestrator, logger=self.get_logger())

    def register_subscribers(self) -> None:
        self._image_sub = self.create_subscription(
            Image,
            self.param.image_topic,
            self.image_callback,
            1,
            callback_group=self._callback_group,
        )

    def register_publishers(self) -> None:
        self._traversability_pub = self.create_publisher(GridMap, f"/{self.get_name()}/traversability_map", 1)

    def register_timers(self) -> None:
        period = self.param.update_period
        if period is None:
            self.get_logger().warning("Update rate is zero. No traversability map will be published.")
            self._update_timer = None
            return
        self._update_timer = self.create_timer(
            period,
            self.update_timer_callback,
            callback_group=self._callback_group,
        )

    def register_services(self) -> None:
        cb = self._callback_group
        self._srv_load = self.create_service(Trigger, '~/load_elevation_map', self.handle_load_elevation_map, callback_group=cb)
        self._srv_update = self.create_service(GetGridMapInfo, '~/update_traversability', self.handle_update_traversability, callback_group=cb)
        self._srv_get = self.create_service(GetGridMap, '~/get_traversability', self.handle_get_traversability, callback_group=cb)
        self._srv_footprint_path = self.create_service(CheckFootprintPath, '~/check_footprint_path', self.handle_check_footprint_path, callback_group=cb)
        self._srv_parameters = self.create_service(Trigger, '~/update_parameters', self.handle_update_parameters, callback_group=cb)
        self._srv_footprint = self.create_service(Trigger, '~/traversability_footprint', self.handle_traversability_footprint, callback_group=cb)
        self._srv_save = self.create_service(Trigger, '~/save_to_bag', self.handle_save_to_bag, callback_group=cb)

    def image_callback(self, image_msg: Image) -> None:
        try:
            image = self.cv_bridge.imgmsg_to_cv2(image_msg, desired_encoding="passthrough")
            self._orchestrator.on_image_elevation(np.asarray(image))
        except Exception as exc:
            self.get_logger().warning(f"Dropping elevation image: {exc}", throttle_duration_sec=5.0)

    def update_timer_callback(self) -> None:
        if self._orchestrator.run_update_cycle():
            self.publish_traversability_map()

    def publish_traversability_map(self) -> None:
        if self._traversability_pub.get_subscription_count() == 0:
            return
        grid = self._engine.get_traversability_map()
        self._traversability_pub.publish(grid_map_to_message(grid, stamp=self.get_clock().now().to_msg()))

    def handle_load_elevation_map(self, request, response):
        self.get_logger().info("TraversabilityEstimation: loadElevationMap")
        store = self._make_store(self.param.load_bag_path)
        try:
            grid = store.load()
            response.success = self._orchestrator.load_elevation_map(grid)
            response.message = "" if response.success else "Cannot compute traversability."
        except Exception as exc:
            self.get_logger().error(f"load_elevation_map failed: {exc}")
            response.success = False
            response.message = str(exc)
        return response

    def handle_update_traversability(self, request, response):
        try:
            info = self._dispatcher.get_submap_info()
        except Exception as exc:
            self.get_logger().error(f"Traversability Estimation: Cannot update traversability! {exc}")
            return response
        response.info.header.frame_id = info.frame_id
        response.info.header.stamp = self.get_clock().now().to_msg()
        response.info.resolution = info.resolution
        response.info.length_x = info.length_x
        response.info.length_y = info.length_y
        response.info.pose.position.x = info.position[0]
        response.info.pose.position.y = info.position[1]
        response.info.pose.orientation.w = 1.0
        return response

    def handle_get_traversability(self, request, response):
        try:
            submap = self._dispatcher.get_submap(
                (request.position_x, request.position_y),
                (request.length_x, request.length_y),
                list(request.layers),
            )
        except Exception as exc:
            self.get_logger().error(f"get_traversability failed: {exc}")
            return response
        response.map = grid_map_to_message(submap, stamp=self.get_clock().now().to_msg())
        return response

    def handle_check_footprint_path(self, request, response):
        try:
            paths = [self._footprint_path_from_msg(path) for path in request.path]
            results = self._dispatcher.check_footprint_paths(paths)
        except Exception as exc:
            self.get_logger().warning(f"check_footprint_path failed: {exc}")
            response.result = []
            return response
        response.result = [
            TraversabilityResultMsg(is_safe=bool(r.is_safe), traversability=float(r.traversability), area=float(r.area))
            for r in results
        ]
        return response

    def handle_update_parameters(self, request, response):
        response.success = self._orchestrator.update_filter_configuration()
        response.message = "" if response.success else "Can't update parameter."
        return response

    def handle_traversability_footprint(self, request, response):
        response.success = self._dispatcher.compute_traversability_footprint()
        response.message = "" if response.success else "Cannot compute traversability footprint."
        return response

    def handle_save_to_bag(self, request, response):
        self.get_logger().info("Save to bag.")
        store = self._make_store(self.param.save_bag_path)
        response.success = self._dispatcher.persist_current_map(store)
        response.message = "" if response.success else f"Saving to '{store.path}' failed."
        return response

    def _make_store(self, path: str) -> RosbagMapStore:
        return RosbagMapStore(
            path,
            self._resolve_topic_name(self.param.elevation_map_topic),
            storage_id=self.param.bag_storage_id,
            clock=self.get_clock(),
        )

    def _resolve_topic_name(self, topic: str) -> str:
        topic = topic.strip('/') or 'grid_map'
        return f"/{topic}"

    def _footprint_path_from_msg(self, path_msg) -> FootprintPath:
        poses: List[List[float]] = []
        for pose in path_msg.poses.poses:
            q = pose.orientation
            _, _, yaw = euler_from_quaternion([q.x, q.y, q.z, q.w])
            poses.append([pose.position.x, pose.position.y, yaw])
        footprint = None
        points = path_msg.footprint.polygon.points
        if len(points) >= 3:
            footprint = np.array([[p.x, p.y] for p in points], dtype=np.float64)
        return FootprintPath(
            poses=np.array(poses, dtype=np.float64),
            radius=path_msg.radius,
            footprint=footprint,
            conservative=path_msg.conservative,
        )

    def destroy_node(self) -> None:
        if self._update_timer is not None:
            self._update_timer.cancel()
        super().destroy_node()


def main(args=None) -> None:
    rclpy.init(args=args)
    node = TraversabilityEstimationNode()
    executor = MultiThreadedExecutor()
    executor.add_node(node)
    try:
        executor.spin()
    except KeyboardInterrupt:
        pass
    finally:
        executor.shutdown()
        node.destroy_node()
        rclpy.shutdown()


if __name__ == '__main__':
    main()
