import numpy as np

from .base_manager import BaseManager
from ..data_types import PointCloud, SuperquadricParams
from ..exceptions import DegenerateSuperquadricError
from ..utils.superquadric_utils import clamp_exponents
from ..utils.transform_utils import pose_to_matrix, transform_points

# Per-object colors for the reconstructed surfaces
OBJECT_COLORS = [
    (1.0, 0.0, 0.0),
    (0.0, 1.0, 0.0),
    (0.0, 0.0, 1.0),
    (1.0, 1.0, 0.0),
    (1.0, 0.0, 1.0),
    (0.0, 1.0, 1.0),
    (1.0, 0.5, 0.0),
    (0.5, 0.0, 1.0),
]


def signed_power(base: np.ndarray, exponent: float) -> np.ndarray:
    return np.sign(base) * np.abs(base) ** exponent


class SamplingManager(BaseManager):
    """Turns fitted superquadrics back into colored surface point clouds"""

    def __init__(self, n_samples: int = 2500, logger=None):
        super().__init__(logger)
        self.n_samples = n_samples

    def initialize(self) -> bool:
        self.is_initialized = True
        return True

    def sample(self, params: SuperquadricParams, object_index: int = 0,
               frame_id: str = '', stamp: float = 0.0) -> PointCloud:
        """
        Sample the superquadric surface on a regular (eta, omega) grid
        and place it with the model pose

        Exponents are clamped the same way the fit metric clamps them, so
        every sample lies on the surface the fit was scored against.
        """
        if not (params.a1 > 0.0 and params.a2 > 0.0 and params.a3 > 0.0):
            raise DegenerateSuperquadricError(f"Cannot sample superquadric with radii {params.radii}")

        e1, e2 = clamp_exponents(params.e1, params.e2)
        n_side = max(int(np.sqrt(self.n_samples)), 2)

        eta = np.linspace(-np.pi / 2, np.pi / 2, n_side)
        omega = np.linspace(-np.pi, np.pi, n_side)
        eta, omega = np.meshgrid(eta, omega)
        eta, omega = eta.ravel(), omega.ravel()

        x = params.a1 * signed_power(np.cos(eta), e1) * signed_power(np.cos(omega), e2)
        y = params.a2 * signed_power(np.cos(eta), e1) * signed_power(np.sin(omega), e2)
        z = params.a3 * signed_power(np.sin(eta), e1)

        points_local = np.column_stack([x, y, z])
        points = transform_points(points_local, pose_to_matrix(params.pose))

        color = OBJECT_COLORS[object_index % len(OBJECT_COLORS)]
        colors = np.tile(np.asarray(color, dtype=np.float64), (len(points), 1))

        return PointCloud(points, colors, frame_id, stamp)
