"""
Camera projection models

A camera is a (projection family, distortion family) pair:
    projection: pinhole [fu, fv, cu, cv] or unified projection [xi, fu, fv, cu, cv]
    distortion: none [], radial-tangential [k1, k2, p1, p2],
                equidistant [k1, k2, k3, k4], fisheye/FOV [w]

The pair is resolved once through camera_variant(), which returns the
projection pipeline used by reprojection factors. Unknown tags raise
CameraModelError instead of aborting.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from itertools import product
from typing import Dict, Tuple, Union

import numpy as np

from .optimization.errors import CameraModelError

logger = logging.getLogger(__name__)

MIN_DEPTH = 1e-6


class ProjectionType(str, Enum):
    PINHOLE = "pinhole"
    UNIFIED = "unified"


class DistortionType(str, Enum):
    NONE = "none"
    RADTAN = "radtan"
    EQUIDISTANT = "equidistant"
    FISHEYE = "fisheye"


_PROJECTION_ALIASES = {
    "pinhole": ProjectionType.PINHOLE,
    "unified": ProjectionType.UNIFIED,
    "unified_projection": ProjectionType.UNIFIED,
    "omni": ProjectionType.UNIFIED,
}

_DISTORTION_ALIASES = {
    "none": DistortionType.NONE,
    "radtan": DistortionType.RADTAN,
    "radial_tangential": DistortionType.RADTAN,
    "equidistant": DistortionType.EQUIDISTANT,
    "equi": DistortionType.EQUIDISTANT,
    "fisheye": DistortionType.FISHEYE,
    "fov": DistortionType.FISHEYE,
}


def _resolve_tag(tag, enum_cls, aliases, kind: str):
    if isinstance(tag, enum_cls):
        return tag
    key = str(tag).strip().lower().replace("-", "_")
    if key not in aliases:
        raise CameraModelError(f"Unknown {kind} type: {tag!r}")
    return aliases[key]


# ---------------------------------------------------------------------------
# Distortion families: map normalized coordinates m -> distorted coordinates
# ---------------------------------------------------------------------------

class NoDistortion:
    param_size = 0

    def distort(self, m: np.ndarray, params: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        return m.copy(), np.eye(2)


class RadialTangentialDistortion:
    param_size = 4

    def distort(self, m, params):
        k1, k2, p1, p2 = params
        x, y = m
        mx2 = x * x
        my2 = y * y
        mxy = x * y
        rho2 = mx2 + my2
        rad = k1 * rho2 + k2 * rho2 * rho2
        dist = np.array([
            x + x * rad + 2.0 * p1 * mxy + p2 * (rho2 + 2.0 * mx2),
            y + y * rad + 2.0 * p2 * mxy + p1 * (rho2 + 2.0 * my2),
        ])
        drad = 2.0 * (k1 + 2.0 * k2 * rho2)
        J = np.array([
            [1.0 + rad + drad * mx2 + 2.0 * p1 * y + 6.0 * p2 * x,
             drad * mxy + 2.0 * p1 * x + 2.0 * p2 * y],
            [drad * mxy + 2.0 * p2 * y + 2.0 * p1 * x,
             1.0 + rad + drad * my2 + 2.0 * p2 * x + 6.0 * p1 * y],
        ])
        return dist, J


class EquidistantDistortion:
    param_size = 4

    def distort(self, m, params):
        k1, k2, k3, k4 = params
        r = float(np.linalg.norm(m))
        if r < 1e-8:
            return m.copy(), np.eye(2)
        theta = np.arctan(r)
        t2 = theta * theta
        theta_d = theta * (1.0 + k1 * t2 + k2 * t2**2 + k3 * t2**3 + k4 * t2**4)
        scale = theta_d / r

        dtheta_d = 1.0 + 3.0 * k1 * t2 + 5.0 * k2 * t2**2 + 7.0 * k3 * t2**3 + 9.0 * k4 * t2**4
        dtheta_dr = 1.0 / (1.0 + r * r)
        dscale_dr = (dtheta_d * dtheta_dr * r - theta_d) / (r * r)
        J = scale * np.eye(2) + dscale_dr * np.outer(m, m) / r
        return scale * m, J


class FovDistortion:
    """Field-of-view fisheye model with a single parameter w"""

    param_size = 1

    def distort(self, m, params):
        w = float(params[0])
        if w * w < 1e-5:
            return m.copy(), np.eye(2)
        tan_half = 2.0 * np.tan(w / 2.0)
        r2 = float(m @ m)
        if r2 < 1e-5:
            factor = tan_half / w
            return factor * m, factor * np.eye(2)
        r = np.sqrt(r2)
        atan_term = np.arctan(r * tan_half)
        factor = atan_term / (r * w)
        dfactor_dr = (tan_half * r / (1.0 + r2 * tan_half**2) - atan_term) / (w * r2)
        J = factor * np.eye(2) + dfactor_dr * np.outer(m, m) / r
        return factor * m, J


# ---------------------------------------------------------------------------
# Projection families: camera-frame point -> normalized coordinates, and
# distorted normalized coordinates -> pixels
# ---------------------------------------------------------------------------

class PinholeProjection:
    intrinsics_size = 4

    def normalize(self, p: np.ndarray, intrinsics: np.ndarray):
        z = p[2]
        if z < MIN_DEPTH:
            return None, None, False
        inv_z = 1.0 / z
        m = p[:2] * inv_z
        J = np.array([
            [inv_z, 0.0, -p[0] * inv_z * inv_z],
            [0.0, inv_z, -p[1] * inv_z * inv_z],
        ])
        return m, J, True

    def focal_center(self, intrinsics: np.ndarray):
        return intrinsics[0:2], intrinsics[2:4]


class UnifiedProjection:
    intrinsics_size = 5

    def normalize(self, p, intrinsics):
        xi = intrinsics[0]
        d = float(np.linalg.norm(p))
        denom = p[2] + xi * d
        if denom < MIN_DEPTH or d < MIN_DEPTH:
            return None, None, False
        m = p[:2] / denom
        ddenom = xi * p / d
        ddenom[2] += 1.0
        J = np.zeros((2, 3))
        J[0, 0] = 1.0 / denom
        J[1, 1] = 1.0 / denom
        J -= np.outer(m, ddenom) / denom
        return m, J, True

    def focal_center(self, intrinsics):
        return intrinsics[1:3], intrinsics[3:5]


@dataclass(frozen=True)
class CameraVariant:
    """One (projection, distortion) arm of the camera model"""

    projection_type: ProjectionType
    distortion_type: DistortionType
    projection: object
    distortion: object

    def check_parameters(self, intrinsics: np.ndarray, distortion_params: np.ndarray):
        if len(intrinsics) != self.projection.intrinsics_size:
            raise CameraModelError(
                f"{self.projection_type.value} projection expects "
                f"{self.projection.intrinsics_size} intrinsics, got {len(intrinsics)}",
                self.projection_type, self.distortion_type,
            )
        if len(distortion_params) != self.distortion.param_size:
            raise CameraModelError(
                f"{self.distortion_type.value} distortion expects "
                f"{self.distortion.param_size} parameters, got {len(distortion_params)}",
                self.projection_type, self.distortion_type,
            )

    def project(
        self,
        p_c: np.ndarray,
        intrinsics: np.ndarray,
        distortion_params: np.ndarray,
        with_jacobian: bool = False,
    ):
        """
        Project a camera-frame point to pixels

        Returns:
            (pixel, valid) or (pixel, jacobian 2x3, valid) when with_jacobian
        """
        m, J_m, valid = self.projection.normalize(p_c, intrinsics)
        if not valid:
            if with_jacobian:
                return np.zeros(2), np.zeros((2, 3)), False
            return np.zeros(2), False
        md, J_d = self.distortion.distort(m, distortion_params)
        focal, center = self.projection.focal_center(intrinsics)
        pixel = focal * md + center
        if not with_jacobian:
            return pixel, True
        J = (focal[:, None] * J_d) @ J_m
        return pixel, J, True


_PROJECTIONS = {
    ProjectionType.PINHOLE: PinholeProjection(),
    ProjectionType.UNIFIED: UnifiedProjection(),
}

_DISTORTIONS = {
    DistortionType.NONE: NoDistortion(),
    DistortionType.RADTAN: RadialTangentialDistortion(),
    DistortionType.EQUIDISTANT: EquidistantDistortion(),
    DistortionType.FISHEYE: FovDistortion(),
}

_VARIANTS: Dict[Tuple[ProjectionType, DistortionType], CameraVariant] = {
    (p, d): CameraVariant(p, d, _PROJECTIONS[p], _DISTORTIONS[d])
    for p, d in product(_PROJECTIONS, _DISTORTIONS)
}


@dataclass
class CameraModel:
    """Calibrated camera attached to a keyframe"""

    projection: Union[ProjectionType, str] = ProjectionType.PINHOLE
    distortion: Union[DistortionType, str] = DistortionType.NONE
    intrinsics: np.ndarray = field(default_factory=lambda: np.array([1.0, 1.0, 0.0, 0.0]))
    distortion_params: np.ndarray = field(default_factory=lambda: np.zeros(0))
    width: int = 0
    height: int = 0

    def __post_init__(self):
        self.intrinsics = np.asarray(self.intrinsics, dtype=np.float64).reshape(-1)
        self.distortion_params = np.asarray(self.distortion_params, dtype=np.float64).reshape(-1)

    def project(self, p_c: np.ndarray) -> Tuple[np.ndarray, bool]:
        return camera_variant(self).project(p_c, self.intrinsics, self.distortion_params)

    def projection_jacobian(self, p_c: np.ndarray) -> np.ndarray:
        _, J, _ = camera_variant(self).project(
            p_c, self.intrinsics, self.distortion_params, with_jacobian=True
        )
        return J


def camera_variant(camera: CameraModel) -> CameraVariant:
    """
    Resolve a camera's (projection, distortion) tags to its variant

    Raises:
        CameraModelError: unknown tag or parameter buffers of the wrong size
    """
    try:
        projection = _resolve_tag(camera.projection, ProjectionType, _PROJECTION_ALIASES, "projection")
        distortion = _resolve_tag(camera.distortion, DistortionType, _DISTORTION_ALIASES, "distortion")
    except CameraModelError as e:
        logger.error(f"Camera model rejected: {e}")
        raise CameraModelError(str(e), camera.projection, camera.distortion) from e

    variant = _VARIANTS.get((projection, distortion))
    if variant is None:
        raise CameraModelError(
            f"Unsupported camera combination: {projection.value}/{distortion.value}",
            projection, distortion,
        )
    variant.check_parameters(camera.intrinsics, camera.distortion_params)
    return variant
