import numpy as np
import yaml
from typing import Dict, List, Tuple
from scipy.spatial.transform import Rotation as R_simple

from ..data_types import Pose


def pose_to_matrix(pose: Pose) -> np.ndarray:
    """
    Convert a pose into a 4x4 homogeneous transform

    The quaternion is normalized before use, so callers may pass
    non-unit quaternions. A zero quaternion raises ValueError.

    Args:
        pose: Pose with [x, y, z] position and [x, y, z, w] orientation

    Returns:
        4x4 transformation matrix
    """
    quat = np.asarray(pose.orientation, dtype=float)
    norm = np.linalg.norm(quat)
    if norm == 0.0 or not np.isfinite(norm):
        raise ValueError(f"Cannot build a rotation from quaternion {pose.orientation}")

    transform = np.eye(4)
    transform[:3, :3] = R_simple.from_quat(quat / norm).as_matrix()
    transform[:3, 3] = pose.position
    return transform


def matrix_to_pose(transformation_matrix: np.ndarray) -> Pose:
    """Convert a 4x4 transformation matrix to a Pose"""
    quat = R_simple.from_matrix(transformation_matrix[:3, :3]).as_quat()  # [x, y, z, w]
    return Pose.from_arrays(transformation_matrix[:3, 3], quat)


def transform_points(points: np.ndarray, transformation_matrix: np.ndarray) -> np.ndarray:
    """
    Apply a 4x4 transform to an Nx3 point array

    Args:
        points: Nx3 array of points
        transformation_matrix: 4x4 homogeneous transform

    Returns:
        Transformed Nx3 points
    """
    rotation = transformation_matrix[:3, :3]
    translation = transformation_matrix[:3, 3]
    return points @ rotation.T + translation


def inverse_transform_points(points: np.ndarray, transformation_matrix: np.ndarray) -> np.ndarray:
    """Map points through the inverse of a rigid 4x4 transform, R^T (p - t)"""
    rotation = transformation_matrix[:3, :3]
    translation = transformation_matrix[:3, 3]
    return (points - translation) @ rotation


def rotation_matrix_to_quaternion(rotation_matrix: np.ndarray) -> List[float]:
    """
    Convert rotation matrix to quaternion

    Args:
        rotation_matrix: 3x3 rotation matrix

    Returns:
        [x, y, z, w] quaternion
    """
    r = R_simple.from_matrix(rotation_matrix)
    return r.as_quat().tolist()


def euler_to_quaternion(roll: float, pitch: float, yaw: float) -> List[float]:
    """
    Convert Euler angles to quaternion (yaw * pitch * roll)

    Args:
        roll, pitch, yaw: Euler angles in radians

    Returns:
        [x, y, z, w] quaternion
    """
    r = R_simple.from_euler('xyz', [roll, pitch, yaw])
    return r.as_quat().tolist()


def quaternion_to_euler(quaternion: List[float]) -> Tuple[float, float, float]:
    """
    Convert quaternion to Euler angles

    Args:
        quaternion: [x, y, z, w] quaternion, need not be unit length

    Returns:
        (roll, pitch, yaw) in radians
    """
    q = np.asarray(quaternion, dtype=float)
    r = R_simple.from_quat(q / np.linalg.norm(q))
    return tuple(float(a) for a in r.as_euler('xyz'))


def params_from_pose(pose: Pose) -> Tuple[float, float, float, float, float, float]:
    """Split a pose into (tx, ty, tz, roll, pitch, yaw)"""
    tx, ty, tz = pose.position
    ax, ay, az = quaternion_to_euler(pose.orientation)
    return tx, ty, tz, ax, ay, az


def pose_from_params(tx: float, ty: float, tz: float,
                     ax: float, ay: float, az: float) -> Pose:
    """Inverse of params_from_pose"""
    return Pose.from_arrays((tx, ty, tz), euler_to_quaternion(ax, ay, az))


def load_static_transforms(transform_file_path: str) -> Dict[Tuple[str, str], np.ndarray]:
    """
    Load static frame transforms from a YAML file

    Expected layout::

        transforms:
          - parent: world
            child: camera_link
            translation: [x, y, z]
            rotation: [qx, qy, qz, qw]

    Args:
        transform_file_path: Path to transform YAML file

    Returns:
        Mapping (parent, child) -> 4x4 matrix taking child coordinates to parent
    """
    try:
        with open(transform_file_path, 'r') as file:
            data = yaml.safe_load(file) or {}
    except FileNotFoundError:
        return {}
    except Exception as e:
        raise RuntimeError(f"Failed to load static transforms: {e}")

    return parse_static_transforms(data.get('transforms', []))


def parse_static_transforms(entries) -> Dict[Tuple[str, str], np.ndarray]:
    """Build the (parent, child) -> matrix mapping from a list of transform entries"""
    transforms = {}
    for entry in entries or []:
        pose = Pose.from_arrays(entry.get('translation', [0.0, 0.0, 0.0]),
                                entry.get('rotation', [0.0, 0.0, 0.0, 1.0]))
        transforms[(entry['parent'], entry['child'])] = pose_to_matrix(pose)
    return transforms
