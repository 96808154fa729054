#!/usr/bin/env python3
import os

from ament_index_python.packages import get_package_share_directory
from launch import LaunchDescription
from launch.actions import DeclareLaunchArgument
from launch.substitutions import LaunchConfiguration
from launch_ros.actions import Node


def generate_launch_description():
    pkg_share = get_package_share_directory('traversability_estimation')
    default_config = os.path.join(pkg_share, 'config', 'traversability_estimation.yaml')

    return LaunchDescription([
        DeclareLaunchArgument(
            'config_file',
            default_value=default_config,
            description='Node parameter file'
        ),

        DeclareLaunchArgument(
            'min_update_rate',
            default_value='1.0',
            description='Traversability update rate in Hz, 0 updates on request only'
        ),

        Node(
            package='traversability_estimation',
            executable='traversability_estimation_node.py',
            name='traversability_estimation',
            output='screen',
            parameters=[
                LaunchConfiguration('config_file'),
                {'min_update_rate': LaunchConfiguration('min_update_rate')},
            ],
        )
    ])
