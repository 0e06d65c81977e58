import logging
import unittest
import numpy as np
import pytest

pytest.importorskip('rclpy')
pytest.importorskip('sensor_msgs_py')

from sq_fitting.data_types import CLOUD_CHANNELS, FrameResult, PointCloud, Pose, ShapeRecord
from sq_fitting.utils.ros_publisher import (
    ROSPublisher, cloud_from_msg, cloud_to_msg, stamp_from_msg, stamp_to_msg,
)


class RecordingPublisher:
    def __init__(self):
        self.messages = []

    def publish(self, msg):
        self.messages.append(msg)


class FakeNode:
    """Just enough of rclpy.node.Node for ROSPublisher"""

    def __init__(self):
        self.publishers = {}

    def get_logger(self):
        return logging.getLogger('FakeNode')

    def create_publisher(self, msg_type, topic, qos):
        self.publishers[topic] = RecordingPublisher()
        return self.publishers[topic]


class TestMessageConversion(unittest.TestCase):
    def test_stamp_conversion(self):
        msg = stamp_to_msg(12.25)
        self.assertEqual((msg.sec, msg.nanosec), (12, 250000000))
        self.assertAlmostEqual(stamp_from_msg(msg), 12.25)

    def test_stamp_rounding_carries_into_seconds(self):
        msg = stamp_to_msg(12.9999999999)
        self.assertEqual((msg.sec, msg.nanosec), (13, 0))
        msg = stamp_to_msg(12.9999999994)
        self.assertEqual((msg.sec, msg.nanosec), (12, 999999999))

    def test_colored_cloud(self):
        points = np.array([[0.1, 0.2, 0.3], [-1.0, 0.5, 2.0]])
        colors = np.array([[1.0, 0.0, 0.0], [0.0, 0.5, 1.0]])
        msg = cloud_to_msg(PointCloud(points, colors, 'camera_link', 3.5))

        self.assertEqual(msg.header.frame_id, 'camera_link')
        self.assertEqual(msg.width * msg.height, 2)

        cloud = cloud_from_msg(msg)
        np.testing.assert_allclose(cloud.points, points, atol=1e-6)
        np.testing.assert_allclose(cloud.colors, colors, atol=1.0 / 255)
        self.assertEqual(cloud.frame_id, 'camera_link')
        self.assertAlmostEqual(cloud.stamp, 3.5)

    def test_plain_cloud(self):
        cloud = cloud_from_msg(cloud_to_msg(PointCloud(np.ones((4, 3)), None, 'camera_link')))
        self.assertEqual(len(cloud), 4)
        self.assertFalse(cloud.has_colors)

    def test_empty_cloud(self):
        self.assertTrue(cloud_from_msg(cloud_to_msg(PointCloud.empty('camera_link'))).is_empty)


class TestROSPublisher(unittest.TestCase):
    def setUp(self):
        self.node = FakeNode()
        self.publisher = ROSPublisher(self.node)
        self.assertTrue(self.publisher.initialize())

    def test_creates_all_topics(self):
        self.assertEqual(set(self.node.publishers), set(CLOUD_CHANNELS) | {'sq_poses', 'sqs'})

    def test_publish_bundle(self):
        pose = Pose((0.1, 0.2, 1.3), (0.0, 0.0, 0.0, 1.0))
        record = ShapeRecord(0.05, 0.04, 0.03, 0.5, 1.5, pose)
        bundle = FrameResult.empty(output_frame='base_link', cloud_frame='camera_link', stamp=7.0)
        bundle = FrameResult(**{**bundle.clouds(), 'poses': (pose, pose),
                                'shape_records': (record, record),
                                'output_frame': 'base_link', 'stamp': 7.0})

        self.publisher.publish_bundle(bundle)

        for channel in CLOUD_CHANNELS:
            msgs = self.node.publishers[channel].messages
            self.assertEqual(len(msgs), 1)
            self.assertEqual(msgs[0].header.frame_id, 'camera_link')

        pose_array = self.node.publishers['sq_poses'].messages[0]
        self.assertEqual(pose_array.header.frame_id, 'base_link')
        self.assertEqual(len(pose_array.poses), 2)
        self.assertAlmostEqual(pose_array.poses[0].position.z, 1.3)

        shapes = self.node.publishers['sqs'].messages[0]
        self.assertEqual([d.size for d in shapes.layout.dim], [2, 12])
        np.testing.assert_allclose(shapes.data[:12], record.as_row())


if __name__ == '__main__':
    unittest.main()
