# utils/ros_publisher.py
import numpy as np
from builtin_interfaces.msg import Time as TimeMsg
from geometry_msgs.msg import Pose as PoseMsg, PoseArray
from sensor_msgs.msg import PointCloud2, PointField
from std_msgs.msg import Float64MultiArray, Header, MultiArrayDimension
import sensor_msgs_py.point_cloud2 as pc2

from ..data_types import CLOUD_CHANNELS, FrameResult, PointCloud, Pose

SHAPE_RECORD_FIELDS = ['a1', 'a2', 'a3', 'e1', 'e2', 'px', 'py', 'pz', 'qx', 'qy', 'qz', 'qw']


def stamp_to_msg(stamp: float) -> TimeMsg:
    sec = int(np.floor(stamp))
    nanosec = int(round((stamp - sec) * 1e9))
    # rounding up to a full second carries into sec
    if nanosec >= 1000000000:
        sec += 1
        nanosec -= 1000000000
    return TimeMsg(sec=sec, nanosec=nanosec)


def stamp_from_msg(stamp_msg) -> float:
    return stamp_msg.sec + stamp_msg.nanosec * 1e-9


def cloud_from_msg(msg: PointCloud2) -> PointCloud:
    """Convert a PointCloud2 (xyz, optional packed rgb) into a PointCloud"""
    field_names = [f.name for f in msg.fields]
    structured = pc2.read_points(msg, field_names=('x', 'y', 'z'), skip_nans=False)
    points = np.column_stack([structured['x'], structured['y'], structured['z']]).astype(np.float64)

    colors = None
    if 'rgb' in field_names and len(points) > 0:
        rgb = pc2.read_points(msg, field_names=('rgb',), skip_nans=False)['rgb']
        packed = np.ascontiguousarray(rgb).view(np.uint32)
        colors = np.column_stack([
            (packed >> 16) & 0xFF,
            (packed >> 8) & 0xFF,
            packed & 0xFF,
        ]).astype(np.float64) / 255.0

    return PointCloud(points, colors, msg.header.frame_id, stamp_from_msg(msg.header.stamp))


def _pack_rgb(colors: np.ndarray) -> np.ndarray:
    """Pack RGB colors into uint32 format"""
    colors_uint8 = (np.clip(colors, 0.0, 1.0) * 255).astype(np.uint8)
    return (
        (colors_uint8[:, 0].astype(np.uint32) << 16) |  # R
        (colors_uint8[:, 1].astype(np.uint32) << 8) |   # G
        (colors_uint8[:, 2].astype(np.uint32))          # B
    )


def cloud_to_msg(cloud: PointCloud) -> PointCloud2:
    """Convert a PointCloud into PointCloud2 (xyz, plus rgb when the cloud has colors)"""
    header = Header()
    header.stamp = stamp_to_msg(cloud.stamp)
    header.frame_id = cloud.frame_id

    if not cloud.has_colors:
        return pc2.create_cloud_xyz32(header, cloud.points.astype(np.float32))

    fields = [
        PointField(name='x', offset=0, datatype=PointField.FLOAT32, count=1),
        PointField(name='y', offset=4, datatype=PointField.FLOAT32, count=1),
        PointField(name='z', offset=8, datatype=PointField.FLOAT32, count=1),
        PointField(name='rgb', offset=12, datatype=PointField.UINT32, count=1),
    ]
    cloud_data = np.zeros(len(cloud), dtype=[
        ('x', np.float32), ('y', np.float32), ('z', np.float32), ('rgb', np.uint32)
    ])
    cloud_data['x'] = cloud.points[:, 0]
    cloud_data['y'] = cloud.points[:, 1]
    cloud_data['z'] = cloud.points[:, 2]
    cloud_data['rgb'] = _pack_rgb(cloud.colors)
    return pc2.create_cloud(header, fields, cloud_data)


def pose_to_msg(pose: Pose) -> PoseMsg:
    msg = PoseMsg()
    msg.position.x, msg.position.y, msg.position.z = (float(v) for v in pose.position)
    (msg.orientation.x, msg.orientation.y,
     msg.orientation.z, msg.orientation.w) = (float(v) for v in pose.orientation)
    return msg


class ROSPublisher:
    """Publishes an output bundle: seven clouds, the pose array and the shape records"""

    def __init__(self, node, queue_size: int = 10):
        self.node = node
        self.logger = node.get_logger()
        self.queue_size = queue_size

        self.cloud_publishers = {}
        self.pose_publisher = None
        self.shape_publisher = None

    def initialize(self) -> bool:
        """Initialize ROS publishers"""
        try:
            for channel in CLOUD_CHANNELS:
                self.cloud_publishers[channel] = self.node.create_publisher(
                    PointCloud2, channel, self.queue_size)
            self.pose_publisher = self.node.create_publisher(PoseArray, 'sq_poses', self.queue_size)
            self.shape_publisher = self.node.create_publisher(Float64MultiArray, 'sqs', self.queue_size)

            self.logger.info("ROS publishers initialized successfully")
            return True
        except Exception as e:
            self.logger.error(f"Failed to initialize ROS publishers: {e}")
            return False

    def publish_bundle(self, bundle: FrameResult):
        for channel, cloud in bundle.clouds().items():
            self.cloud_publishers[channel].publish(cloud_to_msg(cloud))

        pose_array = PoseArray()
        pose_array.header.frame_id = bundle.output_frame
        pose_array.header.stamp = stamp_to_msg(bundle.stamp)
        pose_array.poses = [pose_to_msg(pose) for pose in bundle.poses]
        self.pose_publisher.publish(pose_array)

        self.shape_publisher.publish(self._shape_records_to_msg(bundle))

    def _shape_records_to_msg(self, bundle: FrameResult) -> Float64MultiArray:
        """One row per superquadric: a1 a2 a3 e1 e2 px py pz qx qy qz qw (output frame)"""
        msg = Float64MultiArray()
        rows = len(bundle.shape_records)
        cols = len(SHAPE_RECORD_FIELDS)
        msg.layout.dim = [
            MultiArrayDimension(label=f"sqs@{bundle.output_frame}", size=rows, stride=rows * cols),
            MultiArrayDimension(label=' '.join(SHAPE_RECORD_FIELDS), size=cols, stride=cols),
        ]
        msg.data = [float(v) for record in bundle.shape_records for v in record.as_row()]
        return msg
