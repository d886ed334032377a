"""
Typed errors raised by the optimization core

Malformed camera models and corrupted map structure are reported to the
caller as exceptions so that one optimization request can be rejected
without taking the whole server down. Expected outcomes (too few inliers,
landmarks with too few observations) are never raised; they are reported
through return values.
"""


class OptimizationError(Exception):
    """Base class for all errors raised by the optimization core"""


class ConfigurationError(OptimizationError, ValueError):
    """Invalid optimization configuration"""


class CameraModelError(OptimizationError):
    """Unrecognized projection or distortion family"""

    def __init__(self, message: str, projection=None, distortion=None):
        super().__init__(message)
        self.projection = projection
        self.distortion = distortion


class MapStructureError(OptimizationError):
    """The map violates a structural invariant the optimizer relies on"""


class MissingPredecessorError(MapStructureError):
    """A non-root keyframe has no valid temporal predecessor"""

    def __init__(self, keyframe_id, reason: str = "no predecessor"):
        super().__init__(f"Keyframe {keyframe_id}: {reason}")
        self.keyframe_id = keyframe_id


class MissingParameterBlockError(MapStructureError):
    """A parameter block expected to be in the problem is missing"""

    def __init__(self, key):
        super().__init__(f"Parameter block missing from problem: {key}")
        self.key = key
