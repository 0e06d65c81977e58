import math
import numpy as np
from typing import Tuple, Union

from ..data_types import PointCloud, SuperquadricParams
from ..exceptions import DegenerateSuperquadricError
from .transform_utils import pose_to_matrix, inverse_transform_points

# Shape exponents are clamped to this range wherever they appear in a power
EXPONENT_MIN = 0.1
EXPONENT_MAX = 1.9

ArrayLike = Union[float, np.ndarray]


def clamp_exponents(e1: float, e2: float) -> Tuple[float, float]:
    """Clamp both shape exponents to [0.1, 1.9]. The inputs are not modified."""
    return (float(min(max(e1, EXPONENT_MIN), EXPONENT_MAX)),
            float(min(max(e2, EXPONENT_MIN), EXPONENT_MAX)))


def _check_radii(a1: float, a2: float, a3: float):
    if not (a1 > 0.0 and a2 > 0.0 and a3 > 0.0):
        raise DegenerateSuperquadricError(
            f"Superquadric radii must be positive, got ({a1}, {a2}, {a3})")


def _inside_outside(x, y, z, a1, a2, a3, e1, e2):
    """(|x/a1|^(2/e2) + |y/a2|^(2/e2))^(e2/e1) + |z/a3|^(2/e1) with already clamped e1, e2"""
    t1 = np.power(np.abs(x / a1), 2.0 / e2)
    t2 = np.power(np.abs(y / a2), 2.0 / e2)
    t3 = np.power(np.abs(z / a3), 2.0 / e1)
    return np.power(np.abs(t1 + t2), e2 / e1) + t3


def _split_points(points):
    pts = np.asarray(points, dtype=np.float64)
    single = pts.ndim == 1
    pts = pts.reshape(-1, 3)
    return pts[:, 0], pts[:, 1], pts[:, 2], single


def implicit_value(points, params: SuperquadricParams) -> ArrayLike:
    """
    Superquadric inside-outside function f^e1 - 1

    Negative inside the surface, zero on it, positive outside. Points must
    already be expressed in the superquadric's local frame.

    Args:
        points: single point (3,) or (N, 3) array in model coordinates
        params: superquadric parameters (exponents are clamped here)

    Returns:
        float for a single point, (N,) array otherwise
    """
    _check_radii(params.a1, params.a2, params.a3)
    e1, e2 = clamp_exponents(params.e1, params.e2)
    x, y, z, single = _split_points(points)

    f = _inside_outside(x, y, z, params.a1, params.a2, params.a3, e1, e2)
    value = np.power(f, e1) - 1.0
    return float(value[0]) if single else value


def scale_weighted_value(points, params: SuperquadricParams) -> ArrayLike:
    """
    Scale weighted inside-outside value (f^(e1/2) - 1) * (a1 a2 a3)^0.25

    This is the quantity the fit-quality metric is built on.
    """
    _check_radii(params.a1, params.a2, params.a3)
    x, y, z, single = _split_points(points)
    value = sq_function(x, y, z, params.a1, params.a2, params.a3, params.e1, params.e2)
    return float(value[0]) if single else value


def sq_function(x: ArrayLike, y: ArrayLike, z: ArrayLike,
                a: float, b: float, c: float, e1: float, e2: float) -> ArrayLike:
    """Scale weighted inside-outside value on raw coordinates and parameters"""
    _check_radii(a, b, c)
    e1, e2 = clamp_exponents(e1, e2)
    f = _inside_outside(np.asarray(x, dtype=np.float64), np.asarray(y, dtype=np.float64),
                        np.asarray(z, dtype=np.float64), a, b, c, e1, e2)
    value = (np.power(f, e1 / 2.0) - 1.0) * math.pow(a * b * c, 0.25)
    return float(value) if np.ndim(value) == 0 else value


def norm_point(point) -> ArrayLike:
    """Euclidean distance of point(s) from the origin"""
    pts = np.asarray(point, dtype=np.float64)
    if pts.ndim == 1:
        return float(np.linalg.norm(pts))
    return np.linalg.norm(pts, axis=1)


def to_local_frame(points: np.ndarray, params: SuperquadricParams) -> np.ndarray:
    """Map sensor frame points into the superquadric's model frame"""
    transform = pose_to_matrix(params.pose)
    return inverse_transform_points(np.asarray(points, dtype=np.float64).reshape(-1, 3), transform)


def fit_residuals(points: np.ndarray, params: SuperquadricParams) -> np.ndarray:
    """Per-point radially weighted residual |p_local| * scale_weighted_value(p_local)"""
    local = to_local_frame(points, params)
    return norm_point(local) * scale_weighted_value(local, params)


def compute_error(cloud, params: SuperquadricParams) -> float:
    """
    Mean squared radially weighted residual of a cloud against a superquadric

    Args:
        cloud: PointCloud or (N, 3) array in the sensor frame
        params: candidate superquadric, pose maps model frame -> sensor frame

    Returns:
        Fit error (lower is better); math.inf for an empty cloud

    Raises:
        DegenerateSuperquadricError: if any radius is zero or negative
    """
    _check_radii(params.a1, params.a2, params.a3)
    points = cloud.points if isinstance(cloud, PointCloud) else np.asarray(cloud, dtype=np.float64)
    points = points.reshape(-1, 3)
    if len(points) == 0:
        return math.inf

    residuals = fit_residuals(points, params)
    return float(np.mean(residuals * residuals))
