import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .base_manager import BaseManager
from ..data_types import Pose
from ..exceptions import TransformUnavailableError
from ..utils.transform_utils import matrix_to_pose, pose_to_matrix


class TransformService(ABC):
    """Frame lookup backend (tf2 buffer, static table, ...)"""

    @abstractmethod
    def wait_for_transform(self, target_frame: str, source_frame: str,
                           stamp: Optional[float], timeout: float) -> bool:
        """Block up to timeout seconds until target <- source is available"""

    @abstractmethod
    def lookup_transform(self, target_frame: str, source_frame: str,
                         stamp: Optional[float]) -> np.ndarray:
        """
        4x4 matrix mapping source frame coordinates into the target frame.
        stamp None means the latest available transform.

        Raises:
            TransformUnavailableError: if the transform is not known
        """


class StaticTransformService(TransformService):
    """Transforms from a fixed table of (parent, child) -> matrix edges, chained as needed"""

    def __init__(self, transforms: Optional[Dict[Tuple[str, str], np.ndarray]] = None):
        self._edges: Dict[str, List[Tuple[str, np.ndarray]]] = {}
        for (parent, child), matrix in (transforms or {}).items():
            self.add_transform(parent, child, matrix)

    def add_transform(self, parent: str, child: str, matrix: np.ndarray):
        matrix = np.asarray(matrix, dtype=float)
        # child -> parent maps child coordinates into the parent frame
        self._edges.setdefault(child, []).append((parent, matrix))
        self._edges.setdefault(parent, []).append((child, np.linalg.inv(matrix)))

    def can_transform(self, target_frame: str, source_frame: str) -> bool:
        return self._find_chain(target_frame, source_frame) is not None

    def wait_for_transform(self, target_frame, source_frame, stamp, timeout) -> bool:
        return self.can_transform(target_frame, source_frame)

    def lookup_transform(self, target_frame, source_frame, stamp) -> np.ndarray:
        chain = self._find_chain(target_frame, source_frame)
        if chain is None:
            raise TransformUnavailableError(
                f"No static transform from '{source_frame}' to '{target_frame}'")
        return chain

    def _find_chain(self, target_frame: str, source_frame: str) -> Optional[np.ndarray]:
        """Breadth-first search from source to target, composing edge matrices"""
        if source_frame == target_frame:
            return np.eye(4)

        queue = deque([(source_frame, np.eye(4))])
        visited = {source_frame}
        while queue:
            frame, to_frame = queue.popleft()
            for neighbour, matrix in self._edges.get(frame, []):
                if neighbour in visited:
                    continue
                composed = matrix @ to_frame
                if neighbour == target_frame:
                    return composed
                visited.add(neighbour)
                queue.append((neighbour, composed))
        return None


@dataclass(frozen=True)
class PoseResolution:
    success: bool
    pose: Optional[Pose] = None
    error: str = ''


class FrameTransformResolver(BaseManager):
    """Re-expresses model poses from the sensor frame in the output frame"""

    def __init__(self, service: TransformService, wait_timeout: float = 3.0,
                 failure_backoff: float = 1.0, logger=None, sleep=time.sleep):
        super().__init__(logger)
        self.service = service
        self.wait_timeout = wait_timeout
        self.failure_backoff = failure_backoff
        self._sleep = sleep

    def initialize(self) -> bool:
        self.is_initialized = self.service is not None
        if not self.is_initialized:
            self.logger.error("Frame transform resolver has no transform service")
        return self.is_initialized

    def resolve_pose(self, pose_in: Pose, source_frame: str, target_frame: str) -> PoseResolution:
        """Pose in target_frame, or an unsuccessful resolution if the transform is unavailable"""
        return self.resolve_poses([pose_in], source_frame, target_frame)[0]

    def resolve_poses(self, poses: Sequence[Pose], source_frame: str,
                      target_frame: str) -> List[PoseResolution]:
        """
        Resolve all poses of one frame with a single wait + lookup

        Same frame: every pose is returned untouched. A missing transform
        fails every pose of the call after one log entry and one backoff.
        A pose that cannot be composed (e.g. zero quaternion) fails alone.
        """
        if source_frame == target_frame:
            return [PoseResolution(True, pose) for pose in poses]
        if not poses:
            return []

        try:
            transform = self._lookup(target_frame, source_frame)
        except TransformUnavailableError as e:
            self.logger.error(f"{e}")
            self._sleep(self.failure_backoff)
            return [PoseResolution(False, None, str(e)) for _ in poses]

        resolutions = []
        for pose in poses:
            try:
                resolutions.append(PoseResolution(True, matrix_to_pose(transform @ pose_to_matrix(pose))))
            except ValueError as e:
                self.logger.error(f"Cannot transform pose {pose}: {e}")
                resolutions.append(PoseResolution(False, None, str(e)))
        return resolutions

    def _lookup(self, target_frame: str, source_frame: str) -> np.ndarray:
        if not self.service.wait_for_transform(target_frame, source_frame, None, self.wait_timeout):
            raise TransformUnavailableError(
                f"Transform {target_frame} <- {source_frame} not available after {self.wait_timeout:.1f}s")
        return self.service.lookup_transform(target_frame, source_frame, None)
