import math
import numpy as np
from scipy.optimize import least_squares
from sklearn.cluster import KMeans
from typing import List, Tuple

from .base_estimator import BaseEstimator
from ...data_types import FitResult, PointCloud, Pose, SuperquadricParams
from ...exceptions import FittingError
from ...utils.superquadric_utils import (
    EXPONENT_MAX, EXPONENT_MIN, compute_error, fit_residuals,
)
from ...utils.transform_utils import params_from_pose, pose_from_params, rotation_matrix_to_quaternion

MIN_RADIUS = 1e-4
# Stand-in for non-finite residuals so the optimizer can keep going
RESIDUAL_CAP = 1e6


class SuperquadricEstimator(BaseEstimator):
    """Least-squares superquadric fit seeded from the cloud's inertia ellipsoid"""

    def __init__(self, min_points: int = 20, use_kmeans_clustering: bool = False,
                 max_iterations: int = 200, convergence_threshold: float = 1e-8,
                 min_cluster_points: int = 50, logger=None):
        super().__init__(logger)
        self.min_points = min_points
        self.use_kmeans_clustering = use_kmeans_clustering
        self.max_iterations = max_iterations
        self.convergence_threshold = convergence_threshold
        self.min_cluster_points = min_cluster_points

    def fit(self, cloud: PointCloud, object_index: int = 0) -> FitResult:
        points = cloud.points
        if len(points) < self.min_points:
            raise FittingError(f"Object {object_index} has {len(points)} points, need at least {self.min_points}")

        seeds = self._build_seeds(points)

        best_params, best_error = None, math.inf
        for seed in seeds:
            try:
                params = self._optimize(points, seed)
                error = compute_error(points, params)
            except (ValueError, FloatingPointError) as e:
                self.logger.warning(f"Seed fit failed for object {object_index}: {e}")
                continue

            if error < best_error:
                best_params, best_error = params, error

        if best_params is None:
            raise FittingError(f"No seed converged for object {object_index}")

        return FitResult(object_index=object_index, params=best_params, error=best_error)

    # ---------------------------------------SEEDS-------------------------------------------

    def _build_seeds(self, points: np.ndarray) -> List[SuperquadricParams]:
        seeds = [ellipsoid_seed(points)]

        if not self.use_kmeans_clustering:
            return seeds

        k = calculate_k_superquadrics(len(points), self.logger)
        if k < 2 or len(points) < k * self.min_cluster_points:
            return seeds

        labels = KMeans(n_clusters=k, random_state=42, n_init=10).fit_predict(points)
        for i in range(k):
            cluster_pts = points[labels == i]
            if len(cluster_pts) < self.min_cluster_points:
                self.logger.debug(f"Cluster {i} too small for a seed, skipped")
                continue
            seeds.append(ellipsoid_seed(cluster_pts))

        return seeds

    # ---------------------------------------OPTIMIZATION------------------------------------

    def _optimize(self, points: np.ndarray, seed: SuperquadricParams) -> SuperquadricParams:
        x0 = params_to_vector(seed)
        lower = [MIN_RADIUS] * 3 + [EXPONENT_MIN] * 2 + [-np.inf] * 6
        upper = [np.inf] * 3 + [EXPONENT_MAX] * 2 + [np.inf] * 6
        x0 = np.clip(x0, lower, upper)

        def residuals(x):
            r = fit_residuals(points, vector_to_params(x))
            return np.nan_to_num(r, nan=RESIDUAL_CAP, posinf=RESIDUAL_CAP, neginf=-RESIDUAL_CAP)

        result = least_squares(residuals, x0, bounds=(lower, upper),
                               max_nfev=self.max_iterations,
                               ftol=self.convergence_threshold,
                               xtol=self.convergence_threshold)
        return vector_to_params(result.x)


# ---------------------------------------UTILITIES-------------------------------------------

def params_to_vector(params: SuperquadricParams) -> np.ndarray:
    """[a1, a2, a3, e1, e2, roll, pitch, yaw, tx, ty, tz]"""
    tx, ty, tz, ax, ay, az = params_from_pose(params.pose)
    return np.array([params.a1, params.a2, params.a3, params.e1, params.e2,
                     ax, ay, az, tx, ty, tz])


def vector_to_params(x: np.ndarray) -> SuperquadricParams:
    a1, a2, a3, e1, e2, ax, ay, az, tx, ty, tz = (float(v) for v in x)
    return SuperquadricParams(a1, a2, a3, e1, e2, pose_from_params(tx, ty, tz, ax, ay, az))


def calculate_k_superquadrics(n_pts: int, logger=None) -> int:
    """Number of cluster seeds for a cloud of n_pts points, capped at 20"""
    if n_pts < 8000:
        k = max(1, int(np.log10(max(n_pts, 1))) - 2)
    else:
        k = 2
    k = min(k, 20)
    if logger:
        logger.debug(f"Calculated K={k} for {n_pts} points")
    return k


def calculate_moment_of_inertia(x: np.ndarray) -> np.ndarray:
    """Vectorised 3×3 MoI tensor of point set `x`."""
    centred = x - x.mean(0)
    return centred.T @ centred / x.shape[0]


def principal_axes(points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Right-handed principal axes (as columns) and centroid of a point set"""
    eigenvals, eigenvecs = np.linalg.eigh(calculate_moment_of_inertia(points))
    order = np.argsort(eigenvals)[::-1]
    axes = eigenvecs[:, order]
    if np.linalg.det(axes) < 0:
        axes[:, 2] = -axes[:, 2]
    return axes, points.mean(axis=0)


def ellipsoid_seed(points: np.ndarray) -> SuperquadricParams:
    """Ellipsoid (e1 = e2 = 1) aligned with the principal axes, radii from the projected extents"""
    axes, centroid = principal_axes(points)
    local = (points - centroid) @ axes
    radii = np.maximum((local.max(axis=0) - local.min(axis=0)) / 2.0, 1e-3)
    pose = Pose.from_arrays(centroid, rotation_matrix_to_quaternion(axes))
    return SuperquadricParams(float(radii[0]), float(radii[1]), float(radii[2]), 1.0, 1.0, pose)
