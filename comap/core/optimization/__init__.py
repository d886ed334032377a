"""
Map optimization module

Global/local bundle adjustment, two-view relative pose and 6-DoF/4-DoF
pose-graph optimization over a shared problem builder and solver driver.

Usage:
    from comap.core.optimization import MapOptimizer, OptimizationConfig

    optimizer = MapOptimizer(OptimizationConfig())
    optimizer.pose_graph_optimization(slam_map)
"""

_EXPORTS = {
    "MapOptimizer": ".optimizer",
    "OptimizationConfig": ".config",
    "SolverConfig": ".config",
    "GlobalBAConfig": ".config",
    "LocalBAConfig": ".config",
    "RelativePoseConfig": ".config",
    "PoseGraphConfig": ".config",
    "LoopWeightBuckets": ".config",
    "GlobalBundleAdjustment": ".global_ba",
    "LocalBundleAdjustment": ".local_ba",
    "RelativePoseOptimizer": ".relative_pose",
    "PoseGraphOptimizer": ".pose_graph",
    "OptimizationSummary": ".solver",
    "Problem": ".problem",
    "Solver": ".solver",
    "ResultSink": ".covariance",
    "OptimizationError": ".errors",
    "ConfigurationError": ".errors",
    "CameraModelError": ".errors",
    "MapStructureError": ".errors",
    "MissingPredecessorError": ".errors",
    "MissingParameterBlockError": ".errors",
}


# Submodules import the camera models, which import .errors from here,
# so nothing is imported eagerly
def __getattr__(name):
    """Lazy import for module attributes"""
    if name in _EXPORTS:
        import importlib
        module = importlib.import_module(_EXPORTS[name], __name__)
        return getattr(module, name)

    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


__all__ = list(_EXPORTS)
