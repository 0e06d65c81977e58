import time
import logging
import threading
from enum import Enum
from typing import Callable, List, Optional

import numpy as np

from .data_types import FrameResult, PointCloud, ShapeRecord
from .managers.point_cloud_manager import PointCloudManager, concatenate_clouds
from .managers.pose_estimation_manager import PoseEstimationManager
from .managers.sampling_manager import SamplingManager
from .managers.transform_manager import FrameTransformResolver, StaticTransformService, TransformService
from .utils.transform_utils import load_static_transforms, parse_static_transforms


class PipelineState(Enum):
    IDLE = 'idle'
    FILTERING = 'filtering'
    SEGMENTING = 'segmenting'
    FITTING_OBJECTS = 'fitting_objects'
    TRANSFORMING_POSES = 'transforming_poses'
    SAMPLING = 'sampling'
    AGGREGATING = 'aggregating'


def _stamped(cloud: PointCloud, frame_id: str, stamp: float) -> PointCloud:
    colors = None if cloud.colors is None else np.array(cloud.colors)
    return PointCloud(np.array(cloud.points), colors, frame_id, stamp)


class SQFitter:
    """
    Per-frame superquadric fitting pipeline

    process_frame() runs filtering, segmentation, per-object fitting, pose
    transformation and surface sampling for one cloud, then swaps the
    resulting FrameResult into a single slot. current_bundle() always
    returns the last completed frame, so publishers never see a partial one.
    """

    def __init__(self, point_cloud_manager: PointCloudManager, segmenter,
                 pose_estimation_manager: PoseEstimationManager,
                 transform_resolver: FrameTransformResolver,
                 sampling_manager: SamplingManager, output_frame: str,
                 logger=None, clock: Callable[[], float] = time.time):
        self.logger = logger if logger is not None else logging.getLogger('SQFitter')

        self.point_cloud_manager = point_cloud_manager
        self.segmenter = segmenter
        self.pose_estimation_manager = pose_estimation_manager
        self.transform_resolver = transform_resolver
        self.sampling_manager = sampling_manager
        self.output_frame = output_frame
        self._clock = clock

        # At most one pipeline in flight; the bundle lock only guards the swap
        self._frame_lock = threading.Lock()
        self._bundle_lock = threading.Lock()
        self._bundle = FrameResult.empty(output_frame=output_frame, stamp=self._clock())

        self.state = PipelineState.IDLE
        self.frames_processed = 0
        self.frames_failed = 0

    # --------------------------------------- INITIALIZATION --------------------------------------------

    @classmethod
    def from_config(cls, config, transform_service: Optional[TransformService] = None,
                    logger=None) -> 'SQFitter':
        """Build the default manager stack from a ConfigManager"""
        from .managers.segmentation_manager import SegmentationManager

        if transform_service is None:
            transforms = {}
            if config.static_transforms_file:
                transforms.update(load_static_transforms(config.static_transforms_file))
            transforms.update(parse_static_transforms(config.static_transforms))
            transform_service = StaticTransformService(transforms)

        return cls(
            point_cloud_manager=PointCloudManager(logger=logger, **config.get_point_cloud_config()),
            segmenter=SegmentationManager(logger=logger, **config.get_segmentation_config()),
            pose_estimation_manager=PoseEstimationManager(max_workers=config.max_workers, logger=logger,
                                                          **config.get_fitting_config()),
            transform_resolver=FrameTransformResolver(transform_service, logger=logger,
                                                      **config.get_transform_config()),
            sampling_manager=SamplingManager(n_samples=config.n_samples, logger=logger),
            output_frame=config.output_frame,
            logger=logger,
        )

    def _managers(self) -> list:
        return [
            self.point_cloud_manager,
            self.segmenter,
            self.pose_estimation_manager,
            self.transform_resolver,
            self.sampling_manager,
        ]

    def initialize(self) -> bool:
        for manager in self._managers():
            if hasattr(manager, 'initialize') and not manager.initialize():
                self.logger.error(f"Failed to initialize {manager.__class__.__name__}")
                return False
        self.logger.info("All managers initialized successfully")
        return True

    # --------------------------------------- MAIN PROCESSING --------------------------------------------

    def process_frame(self, cloud: PointCloud) -> Optional[FrameResult]:
        """Run the pipeline on one cloud; returns the new bundle, or None if the frame failed"""
        with self._frame_lock:
            start_time = time.time()
            try:
                result = self._run_pipeline(cloud)
            except Exception as e:
                self.frames_failed += 1
                self.logger.error(f"Error processing frame, keeping previous results: {e}")
                return None
            finally:
                self.state = PipelineState.IDLE

            with self._bundle_lock:
                self._bundle = result
            self.frames_processed += 1

            self.logger.debug(f"Frame processed in {time.time() - start_time:.3f}s: "
                              f"{len(result.shape_records)} superquadrics")
            return result

    def _run_pipeline(self, cloud: PointCloud) -> FrameResult:
        sensor_frame = cloud.frame_id

        # Step 1: Workspace filter
        self.state = PipelineState.FILTERING
        filtered = self.point_cloud_manager.filter_cloud(cloud)

        # Step 2: Segmentation
        self.state = PipelineState.SEGMENTING
        segmentation = self.segmenter.segment(filtered)

        # Step 3: Fit every object
        self.state = PipelineState.FITTING_OBJECTS
        fits = self.pose_estimation_manager.fit_objects(segmentation.object_clouds)

        # Step 4: Poses into the output frame
        self.state = PipelineState.TRANSFORMING_POSES
        resolutions = self.transform_resolver.resolve_poses(
            [fit.params.pose for fit in fits], sensor_frame, self.output_frame)

        poses, shape_records = [], []
        for fit, resolution in zip(fits, resolutions):
            if not resolution.success:
                self.logger.warning(f"No {self.output_frame} pose for object[{fit.object_index + 1}] "
                                    f"this frame: {resolution.error}")
                continue
            poses.append(resolution.pose)
            shape_records.append(ShapeRecord.from_params(fit.params, resolution.pose))

        # Step 5: Sample reconstructed surfaces (sensor frame)
        self.state = PipelineState.SAMPLING
        stamp = self._clock()
        samples: List[PointCloud] = []
        for fit in fits:
            try:
                samples.append(self.sampling_manager.sample(fit.params, fit.object_index, sensor_frame, stamp))
            except Exception as e:
                self.logger.warning(f"Sampling failed for object[{fit.object_index + 1}]: {e}")
        superquadrics = concatenate_clouds(samples, sensor_frame, stamp)

        # Step 6: Aggregate
        self.state = PipelineState.AGGREGATING
        return FrameResult(
            filtered_cloud=_stamped(filtered, sensor_frame, stamp),
            table=_stamped(segmentation.table, sensor_frame, stamp),
            above_table=_stamped(segmentation.above_table, sensor_frame, stamp),
            tabletop_objects=_stamped(segmentation.objects_on_table, sensor_frame, stamp),
            segmented_objects=_stamped(segmentation.segmented_objects, sensor_frame, stamp),
            superquadrics=superquadrics,
            cut_cloud=_stamped(segmentation.cut, sensor_frame, stamp),
            poses=tuple(poses),
            shape_records=tuple(shape_records),
            output_frame=self.output_frame,
            stamp=stamp,
        )

    def current_bundle(self) -> FrameResult:
        """Last completed frame (the empty bundle before the first one)"""
        with self._bundle_lock:
            return self._bundle

    def publish(self, sink: Callable[[FrameResult], None]):
        sink(self.current_bundle())

    # --------------------------------------- CLEANUP --------------------------------------------

    def cleanup(self):
        for manager in self._managers():
            if hasattr(manager, 'cleanup'):
                try:
                    manager.cleanup()
                except Exception as e:
                    self.logger.error(f"Error cleaning up {manager.__class__.__name__}: {e}")


class PublishLoop:
    """Publishes the fitter's current bundle every period seconds on a background thread"""

    def __init__(self, fitter: SQFitter, sink: Callable[[FrameResult], None],
                 period: float = 1.0, logger=None):
        self.fitter = fitter
        self.sink = sink
        self.period = period
        self.logger = logger if logger is not None else logging.getLogger('PublishLoop')
        self.publish_count = 0
        self._stop_event = threading.Event()
        self._thread = None

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._worker, name='sq_publish', daemon=True)
        self._thread.start()
        self.logger.info(f"Publish loop started, period {self.period:.2f}s")

    def stop(self, timeout: float = 2.0):
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _worker(self):
        while not self._stop_event.is_set():
            try:
                self.fitter.publish(self.sink)
                self.publish_count += 1
            except Exception as e:
                self.logger.error(f"Error in publish loop: {e}")
            self._stop_event.wait(self.period)
