import rclpy
import tf2_ros
from rclpy.node import Node
from rclpy.duration import Duration
from rclpy.time import Time
from rclpy.callback_groups import MutuallyExclusiveCallbackGroup
from rclpy.executors import MultiThreadedExecutor
from sensor_msgs.msg import PointCloud2

from sq_fitting.data_types import Pose
from sq_fitting.exceptions import TransformUnavailableError
from sq_fitting.managers.config_manager import ConfigManager
from sq_fitting.managers.transform_manager import TransformService
from sq_fitting.sq_fitter import SQFitter
from sq_fitting.utils.ros_publisher import ROSPublisher, cloud_from_msg
from sq_fitting.utils.transform_utils import pose_to_matrix


class TfBufferTransformService(TransformService):
    """TransformService backed by a tf2 buffer fed from /tf and /tf_static"""

    def __init__(self, node: Node = None, tf_buffer: tf2_ros.Buffer = None):
        self.tf_buffer = tf_buffer if tf_buffer is not None else tf2_ros.Buffer()
        # Without a node the buffer is filled by the caller (set_transform / set_transform_static)
        self.tf_listener = tf2_ros.TransformListener(self.tf_buffer, node) if node is not None else None

    @staticmethod
    def _time(stamp):
        return Time() if stamp is None else Time(seconds=stamp)

    def wait_for_transform(self, target_frame, source_frame, stamp, timeout) -> bool:
        try:
            return self.tf_buffer.can_transform(
                target_frame, source_frame, self._time(stamp), timeout=Duration(seconds=timeout))
        except tf2_ros.TransformException:
            return False

    def lookup_transform(self, target_frame, source_frame, stamp):
        try:
            tf = self.tf_buffer.lookup_transform(target_frame, source_frame, self._time(stamp))
        except tf2_ros.TransformException as e:
            raise TransformUnavailableError(
                f"Could not transform {source_frame} to {target_frame}: {e}") from e

        t = tf.transform.translation
        r = tf.transform.rotation
        return pose_to_matrix(Pose((t.x, t.y, t.z), (r.x, r.y, r.z, r.w)))


class SQFittingNode(Node):
    """Fits superquadrics to the objects on a table and publishes them periodically"""

    def __init__(self, config_file: str = None):
        super().__init__('sq_fitting_node')

        self.config = ConfigManager(config_file, logger=self.get_logger())

        self._initialize_managers()
        self._setup_processing()

        self.get_logger().info("SQ Fitting Node initialized successfully")

    # --------------------------------------- INITIALIZATION --------------------------------------------

    def _initialize_managers(self):
        transform_service = TfBufferTransformService(self) if self.config.use_tf else None

        self.fitter = SQFitter.from_config(self.config, transform_service=transform_service,
                                           logger=self.get_logger())
        if not self.fitter.initialize():
            raise RuntimeError("Failed to initialize SQ fitting pipeline")

        self.ros_publisher = ROSPublisher(self)
        if not self.ros_publisher.initialize():
            raise RuntimeError("Failed to initialize ROSPublisher")

    def _setup_processing(self):
        """Cloud subscription and publish timer on separate callback groups"""
        self.cloud_group = MutuallyExclusiveCallbackGroup()
        self.publish_group = MutuallyExclusiveCallbackGroup()

        # Queue of one: a slow fit drops stale clouds instead of backing up
        self.cloud_subscription = self.create_subscription(
            PointCloud2, self.config.cloud_topic, self.cloud_callback, 1,
            callback_group=self.cloud_group)

        self.timer = self.create_timer(1.0 / self.config.publish_rate, self.publish_results,
                                       callback_group=self.publish_group)

        self.get_logger().info(f"Listening on {self.config.cloud_topic}, publishing at "
                               f"{self.config.publish_rate:.1f} Hz in {self.config.output_frame}")

    # --------------------------------------- MAIN PROCESSING --------------------------------------------

    def cloud_callback(self, msg: PointCloud2):
        try:
            cloud = cloud_from_msg(msg)
        except Exception as e:
            self.get_logger().error(f"Could not convert point cloud: {e}")
            return
        self.fitter.process_frame(cloud)

    def publish_results(self):
        try:
            self.fitter.publish(self.ros_publisher.publish_bundle)
        except Exception as e:
            self.get_logger().error(f"Error publishing results: {e}")

    # --------------------------------------- CLEANUP --------------------------------------------

    def cleanup(self):
        """Clean up resources"""
        try:
            self.fitter.cleanup()
            self.get_logger().info("SQ Fitting Node cleaned up")
        except Exception as e:
            self.get_logger().error(f"Error during cleanup: {e}")

    def destroy_node(self):
        """Clean shutdown"""
        self.cleanup()
        super().destroy_node()


def main(args=None):
    rclpy.init(args=args)

    node = None
    try:
        node = SQFittingNode()

        executor = MultiThreadedExecutor(num_threads=4)
        executor.add_node(node)

        try:
            executor.spin()
        finally:
            executor.shutdown()

    except KeyboardInterrupt:
        if node:
            node.get_logger().info("Shutting down due to keyboard interrupt")
    except Exception as e:
        if node:
            node.get_logger().error(f"Error in main: {e}")
        else:
            print(f"Error in main (node not initialized): {e}")

    finally:
        if node:
            node.destroy_node()
        rclpy.shutdown()


if __name__ == '__main__':
    main()
