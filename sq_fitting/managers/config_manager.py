import os
import logging
import yaml
from typing import Any, Dict, Optional

DEFAULT_WORKSPACE_BOUNDS = [-0.6, 0.6, -0.6, 0.6, 0.2, 1.6]


class ConfigManager:
    """Centralized configuration manager"""

    def __init__(self, config_file: str = None, config: Optional[Dict[str, Any]] = None, logger=None):
        self.logger = logger if logger is not None else logging.getLogger('ConfigManager')
        self._config = config if config is not None else self._load_config(config_file)
        self._flatten_config()

    def _load_config(self, config_file: str = None) -> Dict[str, Any]:
        """Load configuration from YAML file"""
        if config_file is None:
            try:
                from ament_index_python.packages import get_package_share_directory
                package_share_directory = get_package_share_directory('sq_fitting')
                config_file = os.path.join(package_share_directory, 'config', 'sq_fitting_config.yaml')
            except Exception:
                config_file = os.path.join(
                    os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))),
                    'config', 'sq_fitting_config.yaml')

        self.logger.info(f"Loading configuration from {config_file}")
        with open(config_file, 'r') as f:
            return yaml.safe_load(f) or {}

    def _flatten_config(self):
        """Flatten nested config for easy access"""
        base = self._config.get('sq_fitting', {}) or {}

        # Core settings
        self.cloud_topic = base.get('cloud_topic', '/camera/depth_registered/points')
        self.output_frame = base.get('output_frame', 'base_link')
        self.publish_rate = float(base.get('publish_rate', 1.0))
        if self.publish_rate <= 0.0:
            raise ValueError(f"publish_rate must be positive, got {self.publish_rate}")

        # Point cloud settings
        pc = base.get('point_cloud', {}) or {}
        self.workspace_bounds = [float(b) for b in pc.get('workspace_bounds', DEFAULT_WORKSPACE_BOUNDS)]
        if len(self.workspace_bounds) != 6:
            raise ValueError(f"workspace_bounds needs 6 values, got {self.workspace_bounds}")
        for low, high in zip(self.workspace_bounds[0::2], self.workspace_bounds[1::2]):
            if low >= high:
                raise ValueError(f"Empty workspace interval ({low}, {high}) in {self.workspace_bounds}")
        self.remove_nan = bool(pc.get('remove_nan', True))

        # Segmentation settings
        seg = base.get('segmentation', {}) or {}
        self.segmentation = {
            'distance_threshold': float(seg.get('distance_threshold', 0.01)),
            'ransac_n': int(seg.get('ransac_n', 3)),
            'num_iterations': int(seg.get('num_iterations', 1000)),
            'min_object_height': float(seg.get('min_object_height', 0.005)),
            'max_object_height': float(seg.get('max_object_height', 0.5)),
            'restrict_to_table_hull': bool(seg.get('restrict_to_table_hull', True)),
            'cluster_tolerance': float(seg.get('cluster_tolerance', 0.02)),
            'dbscan_min_points': int(seg.get('dbscan_min_points', 10)),
            'min_cluster_size': int(seg.get('min_cluster_size', 100)),
            'max_cluster_size': int(seg.get('max_cluster_size', 25000)),
            'cut_mean_k': int(seg.get('cut_mean_k', 5)),
            'cut_std_ratio': float(seg.get('cut_std_ratio', 0.8)),
        }

        # Fitting settings
        fit = base.get('fitting', {}) or {}
        self.min_points = int(fit.get('min_points', 20))
        self.use_kmeans_clustering = bool(fit.get('use_kmeans_clustering', False))
        self.sq_max_iterations = int(fit.get('max_iterations', 200))
        self.sq_convergence_threshold = float(fit.get('convergence_threshold', 1e-8))
        self.min_cluster_points = int(fit.get('min_cluster_points', 50))
        self.max_workers = int(fit.get('max_workers', 4))

        # Sampling settings
        sampling = base.get('sampling', {}) or {}
        self.n_samples = int(sampling.get('n_samples', 2500))

        # Transform settings
        tf = base.get('transforms', {}) or {}
        self.transform_wait_timeout = float(tf.get('wait_timeout', 3.0))
        self.transform_failure_backoff = float(tf.get('failure_backoff', 1.0))
        self.use_tf = bool(tf.get('use_tf', True))
        self.static_transforms_file = tf.get('static_transforms_file', '') or ''
        self.static_transforms = tf.get('static', []) or []

    # Helper methods for getting config subsets
    def get_point_cloud_config(self):
        """Get workspace filter config"""
        return {
            'workspace_bounds': self.workspace_bounds,
            'remove_nan': self.remove_nan,
        }

    def get_segmentation_config(self):
        """Get segmentation-specific config"""
        return dict(self.segmentation)

    def get_fitting_config(self):
        """Get fitting-specific config"""
        return {
            'min_points': self.min_points,
            'use_kmeans_clustering': self.use_kmeans_clustering,
            'max_iterations': self.sq_max_iterations,
            'convergence_threshold': self.sq_convergence_threshold,
            'min_cluster_points': self.min_cluster_points,
        }

    def get_transform_config(self):
        """Get frame transform config"""
        return {
            'wait_timeout': self.transform_wait_timeout,
            'failure_backoff': self.transform_failure_backoff,
        }

    def get(self, key: str, default=None):
        """Dictionary-like access"""
        return getattr(self, key, default)

    def __getitem__(self, key):
        """Allow dict-style access: config['key']"""
        return getattr(self, key)

    def __contains__(self, key):
        """Allow 'key in config' checks"""
        return hasattr(self, key)
