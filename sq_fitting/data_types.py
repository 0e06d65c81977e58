from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

# Output cloud channels, in publish order
CLOUD_CHANNELS = (
    'filtered_cloud',
    'table',
    'above_table',
    'tabletop_objects',
    'segmented_objects',
    'superquadrics',
    'cut_cloud',
)


@dataclass(frozen=True)
class Pose:
    """Rigid pose: translation plus [x, y, z, w] quaternion"""
    position: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    orientation: Tuple[float, float, float, float] = (0.0, 0.0, 0.0, 1.0)

    @classmethod
    def from_arrays(cls, position, orientation) -> 'Pose':
        return cls(
            position=tuple(float(v) for v in position),
            orientation=tuple(float(v) for v in orientation),
        )


@dataclass(frozen=True)
class SuperquadricParams:
    """Radii a1..a3, shape exponents e1, e2 and pose (model frame -> sensor frame)"""
    a1: float
    a2: float
    a3: float
    e1: float
    e2: float
    pose: Pose = field(default_factory=Pose)

    @property
    def radii(self) -> Tuple[float, float, float]:
        return (self.a1, self.a2, self.a3)

    @property
    def exponents(self) -> Tuple[float, float]:
        return (self.e1, self.e2)


@dataclass(eq=False)
class PointCloud:
    """Nx3 points with optional Nx3 colors in [0, 1], tagged with a frame and stamp"""
    points: np.ndarray = field(default_factory=lambda: np.empty((0, 3)))
    colors: Optional[np.ndarray] = None
    frame_id: str = ''
    stamp: float = 0.0

    def __post_init__(self):
        self.points = np.asarray(self.points, dtype=np.float64).reshape(-1, 3)
        if self.colors is not None:
            self.colors = np.asarray(self.colors, dtype=np.float64).reshape(-1, 3)
            if len(self.colors) != len(self.points):
                raise ValueError(
                    f"Color count {len(self.colors)} does not match point count {len(self.points)}")

    def __len__(self) -> int:
        return len(self.points)

    @property
    def is_empty(self) -> bool:
        return len(self.points) == 0

    @property
    def has_colors(self) -> bool:
        return self.colors is not None

    def select(self, mask) -> 'PointCloud':
        """New cloud holding the points (and colors) selected by a mask or index array"""
        colors = self.colors[mask] if self.colors is not None else None
        return PointCloud(self.points[mask], colors, self.frame_id, self.stamp)

    @classmethod
    def empty(cls, frame_id: str = '', stamp: float = 0.0) -> 'PointCloud':
        return cls(np.empty((0, 3)), None, frame_id, stamp)


@dataclass(frozen=True)
class FitResult:
    object_index: int
    params: SuperquadricParams
    error: float


@dataclass(frozen=True)
class ShapeRecord:
    """Published shape parameters with the pose expressed in the output frame"""
    a1: float
    a2: float
    a3: float
    e1: float
    e2: float
    pose: Pose

    @classmethod
    def from_params(cls, params: SuperquadricParams, pose_out: Pose) -> 'ShapeRecord':
        return cls(params.a1, params.a2, params.a3, params.e1, params.e2, pose_out)

    def as_row(self) -> List[float]:
        return [self.a1, self.a2, self.a3, self.e1, self.e2,
                *self.pose.position, *self.pose.orientation]


@dataclass
class SegmentationResult:
    table: PointCloud
    above_table: PointCloud
    objects_on_table: PointCloud
    segmented_objects: PointCloud
    cut: PointCloud
    object_clouds: List[PointCloud] = field(default_factory=list)

    @classmethod
    def empty(cls, frame_id: str = '', stamp: float = 0.0) -> 'SegmentationResult':
        return cls(
            table=PointCloud.empty(frame_id, stamp),
            above_table=PointCloud.empty(frame_id, stamp),
            objects_on_table=PointCloud.empty(frame_id, stamp),
            segmented_objects=PointCloud.empty(frame_id, stamp),
            cut=PointCloud.empty(frame_id, stamp),
            object_clouds=[],
        )


@dataclass(frozen=True)
class FrameResult:
    """Output bundle of one completed frame; replaced as a whole, never mutated"""
    filtered_cloud: PointCloud
    table: PointCloud
    above_table: PointCloud
    tabletop_objects: PointCloud
    segmented_objects: PointCloud
    superquadrics: PointCloud
    cut_cloud: PointCloud
    poses: Tuple[Pose, ...] = ()
    shape_records: Tuple[ShapeRecord, ...] = ()
    output_frame: str = ''
    stamp: float = 0.0

    @classmethod
    def empty(cls, output_frame: str = '', cloud_frame: str = '', stamp: float = 0.0) -> 'FrameResult':
        clouds = {name: PointCloud.empty(cloud_frame, stamp) for name in CLOUD_CHANNELS}
        return cls(**clouds, poses=(), shape_records=(), output_frame=output_frame, stamp=stamp)

    def clouds(self) -> Dict[str, PointCloud]:
        return {name: getattr(self, name) for name in CLOUD_CHANNELS}
