import logging
from abc import ABC, abstractmethod

from ...data_types import FitResult, PointCloud


class BaseEstimator(ABC):
    """Base class for shape estimation methods"""

    def __init__(self, logger=None):
        self.logger = logger if logger is not None else logging.getLogger(self.__class__.__name__)

    def initialize(self) -> bool:
        """Initialize method-specific components"""
        return True

    def is_ready(self) -> bool:
        """Check if estimator is ready"""
        return True

    @abstractmethod
    def fit(self, cloud: PointCloud, object_index: int = 0) -> FitResult:
        """Fit one object cloud and return the minimum-error parameters"""

    def cleanup(self):
        """Clean up resources"""
