from launch import LaunchDescription
from launch_ros.actions import Node

def generate_launch_description():
    return LaunchDescription([
        Node(
            package='sq_fitting',
            executable='sq_fitting_node',
            name='sq_fitting_node',
            output='screen'
        )
    ])
