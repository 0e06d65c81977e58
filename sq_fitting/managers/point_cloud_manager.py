import numpy as np
from typing import List, Optional, Sequence

from .base_manager import BaseManager
from ..data_types import PointCloud


class PointCloudManager(BaseManager):
    """Crops incoming clouds to the workspace and drops non-finite points"""

    def __init__(self, workspace_bounds: Sequence[float], remove_nan: bool = True, logger=None):
        super().__init__(logger)

        if len(workspace_bounds) != 6:
            raise ValueError(
                f"workspace_bounds needs 6 values [xmin, xmax, ymin, ymax, zmin, zmax], got {len(workspace_bounds)}")

        self.workspace_bounds = [float(b) for b in workspace_bounds]
        self.remove_nan = remove_nan

    def initialize(self) -> bool:
        self.is_initialized = True
        self.logger.info(f"Point cloud manager initialized, workspace bounds: {self.workspace_bounds}")
        return True

    def filter_cloud(self, cloud: PointCloud) -> PointCloud:
        """
        Keep points strictly inside the workspace bounds, then remove
        points with a non-finite coordinate if remove_nan is set

        Always returns a new PointCloud in the input's frame.
        """
        points = cloud.points
        if len(points) == 0:
            return PointCloud.empty(cloud.frame_id, cloud.stamp)

        bounds = np.array(self.workspace_bounds).reshape(3, 2)  # [[x_min, x_max], [y_min, y_max], [z_min, z_max]]

        # The crop only judges finite coordinates; NaN and +-inf are left to remove_nan
        finite = np.isfinite(points)
        with np.errstate(invalid='ignore'):
            outside = finite & ((points <= bounds[:, 0]) | (points >= bounds[:, 1]))
        mask = ~np.any(outside, axis=1)

        if self.remove_nan:
            mask &= np.all(finite, axis=1)

        filtered = cloud.select(mask)

        if filtered.is_empty:
            self.logger.warning("Filtered cloud is empty after workspace cropping")
        else:
            self.logger.debug(f"Workspace filter kept {len(filtered)}/{len(cloud)} points")

        return filtered


def concatenate_clouds(clouds: List[PointCloud], frame_id: str = '',
                       stamp: float = 0.0) -> PointCloud:
    """Stack clouds into one; colors are kept only if every input has them"""
    non_empty = [c for c in clouds if not c.is_empty]
    if not non_empty:
        return PointCloud.empty(frame_id, stamp)

    points = np.vstack([c.points for c in non_empty])
    colors: Optional[np.ndarray] = None
    if all(c.has_colors for c in non_empty):
        colors = np.vstack([c.colors for c in non_empty])

    return PointCloud(points, colors, frame_id, stamp)
