import importlib.util
import threading
import unittest
import numpy as np

from sq_fitting.data_types import CLOUD_CHANNELS, FitResult, PointCloud, SegmentationResult, SuperquadricParams
from sq_fitting.managers.config_manager import ConfigManager
from sq_fitting.managers.estimators.base_estimator import BaseEstimator
from sq_fitting.managers.point_cloud_manager import PointCloudManager
from sq_fitting.managers.pose_estimation_manager import PoseEstimationManager
from sq_fitting.managers.sampling_manager import SamplingManager
from sq_fitting.managers.transform_manager import FrameTransformResolver, StaticTransformService
from sq_fitting.sq_fitter import PipelineState, PublishLoop, SQFitter
from sq_fitting.utils.superquadric_utils import compute_error
from sq_fitting.utils.transform_utils import parse_static_transforms

SPHERE = SuperquadricParams(1.0, 1.0, 1.0, 1.0, 1.0)
INF = float('inf')


class WholeCloudSegmenter:
    """Treats every filtered point as one object on an empty table"""

    def __init__(self):
        self.fail_next = False

    def segment(self, cloud):
        if self.fail_next:
            raise RuntimeError("segmentation backend crashed")
        if cloud.is_empty:
            return SegmentationResult.empty(cloud.frame_id, cloud.stamp)
        return SegmentationResult(
            table=PointCloud.empty(cloud.frame_id, cloud.stamp),
            above_table=cloud,
            objects_on_table=cloud,
            segmented_objects=cloud,
            cut=cloud,
            object_clouds=[cloud],
        )


class KnownShapeEstimator(BaseEstimator):
    """Returns fixed parameters and scores them with the real metric"""

    def __init__(self, params):
        super().__init__()
        self.params = params

    def fit(self, cloud, object_index=0):
        return FitResult(object_index, self.params, compute_error(cloud, self.params))


class TestSQFitter(unittest.TestCase):
    def make_fitter(self, output_frame='camera_link', transforms=None,
                    bounds=None, params=SPHERE):
        self.sleeps = []
        self.segmenter = WholeCloudSegmenter()
        fitter = SQFitter(
            point_cloud_manager=PointCloudManager(bounds or [-INF, INF] * 3),
            segmenter=self.segmenter,
            pose_estimation_manager=PoseEstimationManager(estimator=KnownShapeEstimator(params)),
            transform_resolver=FrameTransformResolver(StaticTransformService(transforms),
                                                      sleep=self.sleeps.append),
            sampling_manager=SamplingManager(n_samples=400),
            output_frame=output_frame,
            clock=lambda: 42.0,
        )
        self.assertTrue(fitter.initialize())
        self.addCleanup(fitter.cleanup)
        return fitter

    def sphere_cloud(self):
        return SamplingManager(n_samples=900).sample(SPHERE, 0, 'camera_link', 10.0)

    def test_empty_bundle_before_first_frame(self):
        fitter = self.make_fitter(output_frame='base_link')
        bundle = fitter.current_bundle()
        self.assertEqual(bundle.output_frame, 'base_link')
        self.assertEqual(bundle.poses, ())
        self.assertTrue(all(c.is_empty for c in bundle.clouds().values()))

    def test_empty_frame_publishes_empty_channels(self):
        """All points outside the workspace: nothing segmented, every channel still published"""
        fitter = self.make_fitter(bounds=[-0.1, 0.1, -0.1, 0.1, 0.5, 0.6])
        cloud = PointCloud(np.array([[1.0, 1.0, 1.0], [2.0, 0.0, 3.0]]), None, 'camera_link', 5.0)

        bundle = fitter.process_frame(cloud)

        self.assertIsNotNone(bundle)
        self.assertEqual(bundle.poses, ())
        self.assertEqual(bundle.shape_records, ())

        published = []
        fitter.publish(published.append)
        self.assertEqual(len(published), 1)
        clouds = published[0].clouds()
        self.assertEqual(list(clouds), list(CLOUD_CHANNELS))
        self.assertEqual(len(clouds), 7)
        for name in CLOUD_CHANNELS:
            self.assertTrue(clouds[name].is_empty, name)

    def test_sphere_end_to_end(self):
        fitter = self.make_fitter()
        bundle = fitter.process_frame(self.sphere_cloud())

        fits = fitter.pose_estimation_manager.fit_objects([self.sphere_cloud()])
        self.assertAlmostEqual(fits[0].error, 0.0, places=12)

        self.assertEqual(len(bundle.shape_records), 1)
        np.testing.assert_allclose(bundle.shape_records[0].as_row(),
                                   [1, 1, 1, 1, 1, 0, 0, 0, 0, 0, 0, 1], atol=1e-9)
        self.assertEqual(len(bundle.superquadrics), 400)
        self.assertTrue(bundle.superquadrics.has_colors)
        self.assertEqual(bundle.stamp, 42.0)
        for cloud in bundle.clouds().values():
            self.assertEqual(cloud.frame_id, 'camera_link')
            self.assertEqual(cloud.stamp, 42.0)
        self.assertEqual(fitter.frames_processed, 1)
        self.assertEqual(fitter.state, PipelineState.IDLE)

    def test_poses_transformed_to_output_frame(self):
        transforms = parse_static_transforms([
            {'parent': 'base_link', 'child': 'camera_link', 'translation': [0.0, 0.0, 1.0]},
        ])
        fitter = self.make_fitter(output_frame='base_link', transforms=transforms)
        bundle = fitter.process_frame(self.sphere_cloud())

        np.testing.assert_allclose(bundle.poses[0].position, (0.0, 0.0, 1.0), atol=1e-12)
        self.assertEqual(bundle.shape_records[0].pose, bundle.poses[0])
        self.assertEqual(bundle.output_frame, 'base_link')
        # clouds stay in the sensor frame
        self.assertEqual(bundle.superquadrics.frame_id, 'camera_link')
        np.testing.assert_allclose(bundle.superquadrics.points.mean(axis=0), 0.0, atol=0.1)

    def test_missing_transform_skips_pose_but_keeps_surface(self):
        fitter = self.make_fitter(output_frame='base_link')
        bundle = fitter.process_frame(self.sphere_cloud())

        self.assertIsNotNone(bundle)
        self.assertEqual(bundle.poses, ())
        self.assertEqual(bundle.shape_records, ())
        self.assertFalse(bundle.superquadrics.is_empty)
        self.assertEqual(self.sleeps, [1.0])

    def test_failed_frame_keeps_previous_bundle(self):
        fitter = self.make_fitter()
        first = fitter.process_frame(self.sphere_cloud())

        self.segmenter.fail_next = True
        self.assertIsNone(fitter.process_frame(self.sphere_cloud()))

        self.assertIs(fitter.current_bundle(), first)
        self.assertEqual(fitter.frames_failed, 1)
        self.assertEqual(fitter.frames_processed, 1)
        self.assertEqual(fitter.state, PipelineState.IDLE)

    def test_degenerate_fit_does_not_abort_frame(self):
        fitter = self.make_fitter(params=SuperquadricParams(1.0, 0.0, 1.0, 1.0, 1.0))
        bundle = fitter.process_frame(self.sphere_cloud())
        self.assertIsNotNone(bundle)
        self.assertEqual(bundle.shape_records, ())
        self.assertTrue(bundle.superquadrics.is_empty)


class TestPublishLoop(unittest.TestCase):
    def test_publishes_periodically(self):
        fitter = SQFitter(
            point_cloud_manager=PointCloudManager([-INF, INF] * 3),
            segmenter=WholeCloudSegmenter(),
            pose_estimation_manager=PoseEstimationManager(estimator=KnownShapeEstimator(SPHERE)),
            transform_resolver=FrameTransformResolver(StaticTransformService()),
            sampling_manager=SamplingManager(),
            output_frame='camera_link',
        )
        received = []
        two_ticks = threading.Event()

        def sink(bundle):
            received.append(bundle)
            if len(received) >= 2:
                two_ticks.set()

        loop = PublishLoop(fitter, sink, period=0.01)
        loop.start()
        try:
            self.assertTrue(two_ticks.wait(timeout=5.0))
            self.assertTrue(loop.running)
        finally:
            loop.stop()

        self.assertFalse(loop.running)
        self.assertGreaterEqual(loop.publish_count, 2)
        self.assertTrue(all(len(b.clouds()) == 7 for b in received))

    def test_sink_errors_do_not_stop_loop(self):
        fitter = SQFitter(PointCloudManager([-INF, INF] * 3), WholeCloudSegmenter(),
                          PoseEstimationManager(estimator=KnownShapeEstimator(SPHERE)),
                          FrameTransformResolver(StaticTransformService()), SamplingManager(), 'camera_link')
        calls = []
        done = threading.Event()

        def sink(bundle):
            calls.append(bundle)
            if len(calls) >= 3:
                done.set()
            raise RuntimeError("transport down")

        loop = PublishLoop(fitter, sink, period=0.01)
        loop.start()
        try:
            self.assertTrue(done.wait(timeout=5.0))
        finally:
            loop.stop()
        self.assertEqual(loop.publish_count, 0)


@unittest.skipIf(importlib.util.find_spec('open3d') is None, "open3d not installed")
class TestFromConfig(unittest.TestCase):
    def test_builds_static_pipeline(self):
        config = ConfigManager(config={'sq_fitting': {
            'output_frame': 'base_link',
            'transforms': {
                'use_tf': False,
                'static': [{'parent': 'base_link', 'child': 'camera_link', 'translation': [0, 0, 1]}],
            },
        }})
        fitter = SQFitter.from_config(config)
        self.assertTrue(fitter.initialize())
        try:
            self.assertTrue(fitter.transform_resolver.service.can_transform('base_link', 'camera_link'))
            self.assertEqual(fitter.sampling_manager.n_samples, 2500)
            bundle = fitter.process_frame(PointCloud.empty('camera_link'))
            self.assertEqual(bundle.shape_records, ())
        finally:
            fitter.cleanup()


if __name__ == '__main__':
    unittest.main()
