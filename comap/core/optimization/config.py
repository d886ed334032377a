"""
Configuration management for the map optimization core

Uses dataclasses for type safety and validation.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional, Union

import psutil

from .errors import ConfigurationError

TRUST_REGION_METHODS = {
    "dogleg": "dogbox",
    "trust_region_reflective": "trf",
}

LINEAR_SOLVERS = ("sparse_schur", "sparse_normal_cholesky", "dense_qr")

LOOP_WEIGHT_POLICIES = ("fixed", "bucketed", "covariance")


def default_num_threads() -> int:
    """Worker threads for Jacobian assembly"""
    return min(psutil.cpu_count() or 1, 8)


@dataclass
class SolverConfig:
    """Configuration for the nonlinear least-squares solver driver"""

    # Trust region strategy: "dogleg" or "trust_region_reflective"
    trust_region: str = "dogleg"

    # Linear solver: "sparse_schur", "sparse_normal_cholesky" or "dense_qr"
    linear_solver: str = "sparse_schur"

    # Threads used to assemble Jacobians
    num_threads: int = field(default_factory=default_num_threads)

    # Convergence tolerances
    ftol: float = 1e-6
    xtol: float = 1e-8
    gtol: float = 1e-10

    # Parameter scaling: a float or "jac"
    x_scale: Union[float, str] = 1.0

    # scipy verbosity (0, 1 or 2)
    verbose: int = 0

    def __post_init__(self):
        if self.trust_region not in TRUST_REGION_METHODS:
            raise ConfigurationError(f"Invalid trust_region: {self.trust_region}")
        if self.linear_solver not in LINEAR_SOLVERS:
            raise ConfigurationError(f"Invalid linear_solver: {self.linear_solver}")
        if self.num_threads < 1:
            raise ConfigurationError(f"num_threads must be >= 1, got {self.num_threads}")
        if self.verbose not in (0, 1, 2):
            raise ConfigurationError(f"verbose must be 0, 1 or 2, got {self.verbose}")

    @property
    def scipy_method(self) -> str:
        return TRUST_REGION_METHODS[self.trust_region]

    @property
    def dense(self) -> bool:
        return self.linear_solver == "dense_qr"


@dataclass
class GlobalBAConfig:
    """Configuration for global bundle adjustment"""

    max_iterations: int = 150

    # Wall-clock budget in seconds for the main pass (None = unbounded)
    time_limit: Optional[float] = None

    visual_only: bool = False

    # Outlier pre-pass
    outlier_removal: bool = True
    outlier_iterations: int = 5
    outlier_threshold: float = 2.0

    # Landmarks need this many valid observing keyframes to be optimized
    min_observations: int = 2

    # Cauchy scale for reprojection factors (and loop edges in the main pass)
    loss_scale: float = 1.0

    # Loop constraints from the map as between-factors
    use_loop_constraints: bool = True
    loop_rotation_weight: float = 100.0
    loop_translation_weight: float = 1e4

    # Hold poses of keyframes loaded from disk constant
    fix_loaded_keyframes: bool = False

    def __post_init__(self):
        if self.max_iterations < 1:
            raise ConfigurationError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if self.outlier_iterations < 1:
            raise ConfigurationError(f"outlier_iterations must be >= 1, got {self.outlier_iterations}")
        if self.outlier_threshold <= 0:
            raise ConfigurationError(f"outlier_threshold must be positive, got {self.outlier_threshold}")
        if self.min_observations < 1:
            raise ConfigurationError(f"min_observations must be >= 1, got {self.min_observations}")
        if self.time_limit is not None and self.time_limit <= 0:
            raise ConfigurationError(f"time_limit must be positive, got {self.time_limit}")


@dataclass
class LocalBAConfig:
    """Configuration for local bundle adjustment between two submaps"""

    max_iterations: int = 10000
    loss_scale: float = 1.0

    # Star odometry edges inside each window
    odometry_rotation_weight: float = 100.0
    odometry_translation_weight: float = 1e4

    def __post_init__(self):
        if self.max_iterations < 1:
            raise ConfigurationError(f"max_iterations must be >= 1, got {self.max_iterations}")


@dataclass
class RelativePoseConfig:
    """Configuration for two-view relative pose refinement"""

    max_iterations: int = 5
    loss_scale: float = 1.0

    # Pixel threshold on either direction's residual norm
    outlier_threshold: float = 5.0

    min_inliers: int = 12

    def __post_init__(self):
        if self.outlier_threshold <= 0:
            raise ConfigurationError(f"outlier_threshold must be positive, got {self.outlier_threshold}")
        if self.min_inliers < 1:
            raise ConfigurationError(f"min_inliers must be >= 1, got {self.min_inliers}")


@dataclass
class LoopWeightBuckets:
    """Loop-edge weights keyed by the trace of the translational covariance"""

    tight_threshold: float = 0.2
    medium_threshold: float = 0.5

    tight_weight: float = 0.5
    medium_weight: float = 0.1
    loose_weight: float = 0.01

    def __post_init__(self):
        if not (0.0 < self.tight_threshold < self.medium_threshold):
            raise ConfigurationError(
                f"Bucket thresholds must satisfy 0 < tight < medium, got "
                f"{self.tight_threshold}, {self.medium_threshold}"
            )

    def weight(self, covariance_trace: float) -> float:
        if covariance_trace < self.tight_threshold:
            return self.tight_weight
        if covariance_trace < self.medium_threshold:
            return self.medium_weight
        return self.loose_weight


@dataclass
class PoseGraphConfig:
    """Configuration for 6-DoF and 4-DoF pose-graph optimization"""

    max_iterations: int = 150

    # Sequential and sliding-window edge weights
    sequential_rotation_weight: float = 1.0
    sequential_translation_weight: float = 1.0

    # Predecessors linked to each keyframe besides its successor
    window_size: int = 4

    # Loop-edge weighting: "fixed", "bucketed" or "covariance"
    loop_weight_policy_6dof: str = "fixed"
    loop_weight_policy_4dof: str = "bucketed"
    buckets: LoopWeightBuckets = field(default_factory=LoopWeightBuckets)

    # Huber scale on 4-DoF loop edges
    loop_loss_scale: float = 0.1

    # Linear solver for the 4-DoF variant
    linear_solver_4dof: str = "sparse_normal_cholesky"

    fix_gba_optimized_keyframes: bool = False
    fix_loaded_keyframes: bool = False

    def __post_init__(self):
        for policy in (self.loop_weight_policy_6dof, self.loop_weight_policy_4dof):
            if policy not in LOOP_WEIGHT_POLICIES:
                raise ConfigurationError(f"Invalid loop weight policy: {policy}")
        if self.linear_solver_4dof not in LINEAR_SOLVERS:
            raise ConfigurationError(f"Invalid linear_solver_4dof: {self.linear_solver_4dof}")
        if self.window_size < 0:
            raise ConfigurationError(f"window_size must be >= 0, got {self.window_size}")
        if self.max_iterations < 1:
            raise ConfigurationError(f"max_iterations must be >= 1, got {self.max_iterations}")


@dataclass
class OptimizationConfig:
    """Main configuration for the map optimization core"""

    solver: SolverConfig = field(default_factory=SolverConfig)
    gba: GlobalBAConfig = field(default_factory=GlobalBAConfig)
    lba: LocalBAConfig = field(default_factory=LocalBAConfig)
    relative_pose: RelativePoseConfig = field(default_factory=RelativePoseConfig)
    pose_graph: PoseGraphConfig = field(default_factory=PoseGraphConfig)

    # Logging level: "DEBUG", "INFO", "WARNING", "ERROR"
    log_level: str = "INFO"

    def __post_init__(self):
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigurationError(f"Invalid log_level: {self.log_level}")

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "OptimizationConfig":
        """Create config from dictionary (for JSON loading)"""
        config_dict = dict(config_dict)
        try:
            # Nested configs
            solver = SolverConfig(**config_dict.pop("solver", {}))
            gba = GlobalBAConfig(**config_dict.pop("gba", {}))
            lba = LocalBAConfig(**config_dict.pop("lba", {}))
            relative_pose = RelativePoseConfig(**config_dict.pop("relative_pose", {}))

            pose_graph_dict = dict(config_dict.pop("pose_graph", {}))
            buckets = LoopWeightBuckets(**pose_graph_dict.pop("buckets", {}))
            pose_graph = PoseGraphConfig(buckets=buckets, **pose_graph_dict)

            return cls(
                solver=solver,
                gba=gba,
                lba=lba,
                relative_pose=relative_pose,
                pose_graph=pose_graph,
                **config_dict
            )
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        """Export config to dictionary"""
        return asdict(self)
