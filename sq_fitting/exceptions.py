class SQFittingError(Exception):
    """Base class for errors raised by the superquadric fitting pipeline"""


class DegenerateSuperquadricError(SQFittingError, ValueError):
    """Raised when a superquadric has a zero or negative radius"""


class TransformUnavailableError(SQFittingError):
    """Raised when a frame transform cannot be looked up"""


class FittingError(SQFittingError):
    """Raised when a single object cannot be fitted"""
