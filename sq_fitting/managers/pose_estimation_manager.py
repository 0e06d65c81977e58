from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence

from .base_manager import BaseManager
from .estimators.base_estimator import BaseEstimator
from .estimators.superquadric_estimator import SuperquadricEstimator
from ..data_types import FitResult, PointCloud


class PoseEstimationManager(BaseManager):
    """Fits every segmented object independently and collects the results"""

    def __init__(self, estimator: Optional[BaseEstimator] = None, max_workers: int = 4,
                 logger=None, **estimator_kwargs):
        super().__init__(logger)
        self.estimator = estimator if estimator is not None else \
            SuperquadricEstimator(logger=self.logger, **estimator_kwargs)
        self.max_workers = max(1, int(max_workers))
        self.executor = None

    def initialize(self) -> bool:
        try:
            if not self.estimator.initialize():
                self.logger.error(f"Failed to initialize {self.estimator.__class__.__name__}")
                return False
            self.executor = ThreadPoolExecutor(max_workers=self.max_workers,
                                               thread_name_prefix="sq_fit")
            self.is_initialized = True
            self.logger.info(f"Pose estimation manager initialized with {self.max_workers} workers")
            return True
        except Exception as e:
            self.logger.error(f"Failed to initialize pose estimation manager: {e}")
            return False

    def is_ready(self) -> bool:
        return self.is_initialized and self.estimator.is_ready()

    def fit_objects(self, object_clouds: Sequence[PointCloud]) -> List[FitResult]:
        """
        Fit each object cloud; a failing object is logged and left out

        Results keep the order of object_clouds (object_index is the input position).
        """
        if not object_clouds:
            return []

        if self.executor is None or len(object_clouds) == 1:
            outcomes = [self._fit_single_object(cloud, i) for i, cloud in enumerate(object_clouds)]
        else:
            outcomes = list(self.executor.map(self._fit_single_object,
                                              object_clouds, range(len(object_clouds))))

        return [result for result in outcomes if result is not None]

    def _fit_single_object(self, cloud: PointCloud, object_index: int) -> Optional[FitResult]:
        try:
            result = self.estimator.fit(cloud, object_index)
        except Exception as e:
            self.logger.error(f"Fitting failed for object[{object_index + 1}]: {e}")
            return None

        p = result.params
        self.logger.info(f"======Parameters for Object[{object_index + 1}]======")
        self.logger.info(f"a1: {p.a1:f}    a2: {p.a2:f}    a3: {p.a3:f}")
        self.logger.info(f"e1: {p.e1:f}    e2: {p.e2:f}")
        self.logger.info(f"tx: {p.pose.position[0]:f}    ty: {p.pose.position[1]:f}    tz: {p.pose.position[2]:f}")
        self.logger.info(f"rx: {p.pose.orientation[0]:f}    ry: {p.pose.orientation[1]:f}    "
                         f"rz: {p.pose.orientation[2]:f}    rw: {p.pose.orientation[3]:f}")
        self.logger.debug(f"Minimum error for object[{object_index + 1}]: {result.error:f}")
        return result

    def cleanup(self):
        try:
            if self.executor is not None:
                self.executor.shutdown(wait=True)
                self.executor = None
            self.estimator.cleanup()
            self.logger.info("Pose estimation manager cleaned up")
        except Exception as e:
            self.logger.error(f"Error during pose estimation manager cleanup: {e}")
        finally:
            self.is_initialized = False
