import logging
from abc import ABC, abstractmethod


class BaseManager(ABC):
    """Base manager with standardized interface"""

    def __init__(self, logger=None):
        # rclpy loggers (node.get_logger()) and logging.Logger share the calls used here
        self.logger = logger if logger is not None else logging.getLogger(self.__class__.__name__)
        self.is_initialized = False

    @abstractmethod
    def initialize(self) -> bool:
        """Initialize manager resources"""

    def is_ready(self) -> bool:
        """Check if manager is ready for operation"""
        return self.is_initialized

    def cleanup(self) -> None:
        """Clean up manager resources"""
        self.is_initialized = False
