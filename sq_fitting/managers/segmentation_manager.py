import numpy as np
import open3d as o3d
from scipy.spatial import Delaunay
from typing import List, Tuple

from .base_manager import BaseManager
from .point_cloud_manager import concatenate_clouds
from ..data_types import PointCloud, SegmentationResult


def to_open3d(cloud: PointCloud) -> o3d.geometry.PointCloud:
    pcd = o3d.geometry.PointCloud()
    pcd.points = o3d.utility.Vector3dVector(cloud.points)
    if cloud.has_colors:
        pcd.colors = o3d.utility.Vector3dVector(cloud.colors)
    return pcd


class SegmentationManager(BaseManager):
    """Splits a filtered cloud into a support plane and the object clusters on it"""

    def __init__(self, distance_threshold: float = 0.01, ransac_n: int = 3,
                 num_iterations: int = 1000, min_object_height: float = 0.005,
                 max_object_height: float = 0.5, restrict_to_table_hull: bool = True,
                 cluster_tolerance: float = 0.02, dbscan_min_points: int = 10,
                 min_cluster_size: int = 100, max_cluster_size: int = 25000,
                 cut_mean_k: int = 5, cut_std_ratio: float = 0.8, logger=None):
        super().__init__(logger)

        # Plane fit
        self.distance_threshold = distance_threshold
        self.ransac_n = ransac_n
        self.num_iterations = num_iterations

        # Objects above the plane
        self.min_object_height = min_object_height
        self.max_object_height = max_object_height
        self.restrict_to_table_hull = restrict_to_table_hull

        # Clustering
        self.cluster_tolerance = cluster_tolerance
        self.dbscan_min_points = dbscan_min_points
        self.min_cluster_size = min_cluster_size
        self.max_cluster_size = max_cluster_size

        # Statistical "cut" cloud
        self.cut_mean_k = cut_mean_k
        self.cut_std_ratio = cut_std_ratio

    def initialize(self) -> bool:
        self.is_initialized = True
        self.logger.info("Segmentation manager initialized")
        return True

    def segment(self, cloud: PointCloud) -> SegmentationResult:
        """Return table, above-table, objects-on-table, segmented-objects and cut clouds plus one cloud per object"""
        frame_id, stamp = cloud.frame_id, cloud.stamp

        if len(cloud) < max(self.ransac_n, 3):
            self.logger.debug(f"Too few points to segment ({len(cloud)}), no objects this frame")
            return SegmentationResult.empty(frame_id, stamp)

        pcd = to_open3d(cloud)
        plane_model, inliers = pcd.segment_plane(distance_threshold=self.distance_threshold,
                                                 ransac_n=self.ransac_n,
                                                 num_iterations=self.num_iterations)
        inliers = np.asarray(inliers, dtype=int)
        table = cloud.select(inliers)

        rest_mask = np.ones(len(cloud), dtype=bool)
        rest_mask[inliers] = False
        above_mask = rest_mask & self._above_plane_mask(cloud.points, plane_model)
        above_table = cloud.select(above_mask)

        if self.restrict_to_table_hull and np.any(above_mask):
            above_mask &= self._inside_table_hull(cloud.points, table.points, plane_model)

        objects_on_table = cloud.select(above_mask)

        object_clouds = self._cluster(objects_on_table)
        segmented_objects = concatenate_clouds(object_clouds, frame_id, stamp)
        cut = self._cut_cloud(segmented_objects)

        self.logger.debug(f"Segmented {len(object_clouds)} objects "
                          f"(table: {len(table)} pts, on table: {len(objects_on_table)} pts)")

        return SegmentationResult(
            table=table,
            above_table=above_table,
            objects_on_table=objects_on_table,
            segmented_objects=segmented_objects,
            cut=cut,
            object_clouds=object_clouds,
        )

    def _above_plane_mask(self, points: np.ndarray, plane_model) -> np.ndarray:
        """Points on the sensor's side of the plane, inside the height band"""
        a, b, c, d = plane_model
        normal_norm = np.linalg.norm([a, b, c])
        signed = (points @ np.array([a, b, c]) + d) / normal_norm
        # Sensor sits at the origin of its own frame
        side = 1.0 if d >= 0.0 else -1.0
        height = signed * side
        return (height > self.min_object_height) & (height < self.max_object_height)

    def _inside_table_hull(self, points: np.ndarray, table_points: np.ndarray,
                           plane_model) -> np.ndarray:
        """Points whose projection on the plane falls inside the table's convex hull"""
        if len(table_points) < 3:
            return np.zeros(len(points), dtype=bool)

        u, v = self._plane_basis(np.asarray(plane_model[:3], dtype=float))
        table_2d = np.column_stack([table_points @ u, table_points @ v])
        points_2d = np.column_stack([points @ u, points @ v])
        try:
            hull = Delaunay(table_2d)
        except Exception as e:
            self.logger.warning(f"Table hull could not be built, skipping hull test: {e}")
            return np.ones(len(points), dtype=bool)
        return hull.find_simplex(points_2d) >= 0

    @staticmethod
    def _plane_basis(normal: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        normal = normal / np.linalg.norm(normal)
        helper = np.array([1.0, 0.0, 0.0]) if abs(normal[0]) < 0.9 else np.array([0.0, 1.0, 0.0])
        u = np.cross(normal, helper)
        u /= np.linalg.norm(u)
        v = np.cross(normal, u)
        return u, v

    def _cluster(self, cloud: PointCloud) -> List[PointCloud]:
        if len(cloud) < self.min_cluster_size:
            return []

        labels = np.asarray(to_open3d(cloud).cluster_dbscan(eps=self.cluster_tolerance,
                                                            min_points=self.dbscan_min_points))
        object_clouds = []
        for label in np.unique(labels):
            if label < 0:  # noise
                continue
            indices = np.flatnonzero(labels == label)
            if self.min_cluster_size <= len(indices) <= self.max_cluster_size:
                object_clouds.append(cloud.select(indices))
            else:
                self.logger.debug(f"Cluster {label} with {len(indices)} points rejected by size limits")
        return object_clouds

    def _cut_cloud(self, cloud: PointCloud) -> PointCloud:
        if len(cloud) <= self.cut_mean_k:
            return cloud.select(np.arange(len(cloud)))

        _, kept = to_open3d(cloud).remove_statistical_outlier(nb_neighbors=self.cut_mean_k,
                                                              std_ratio=self.cut_std_ratio)
        return cloud.select(np.asarray(kept, dtype=int))
