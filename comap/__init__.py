"""
Collaborative Mapping Optimization Package
Bundle adjustment and pose-graph optimization for multi-agent SLAM maps
"""

__version__ = "0.1.0"


# Lazy imports - only import when actually used
def __getattr__(name):
    """Lazy import for module attributes"""

    if name == "MapOptimizer":
        from .core.optimization.optimizer import MapOptimizer
        return MapOptimizer
    elif name == "OptimizationConfig":
        from .core.optimization.config import OptimizationConfig
        return OptimizationConfig
    elif name == "SlamMap":
        from .core.map_model import SlamMap
        return SlamMap
    elif name == "Keyframe":
        from .core.map_model import Keyframe
        return Keyframe
    elif name == "Landmark":
        from .core.map_model import Landmark
        return Landmark
    elif name == "CameraModel":
        from .core.camera_models import CameraModel
        return CameraModel
    elif name == "H5ResultSink":
        from .utils.io_utils import H5ResultSink
        return H5ResultSink

    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


__all__ = [
    "MapOptimizer",
    "OptimizationConfig",
    "SlamMap",
    "Keyframe",
    "Landmark",
    "CameraModel",
    "H5ResultSink",
]
