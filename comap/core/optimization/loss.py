"""
Robust loss functions applied per residual block

A loss rho(s) acts on the squared norm s = ||r||^2 of one residual block.
The solver works on corrected residuals r~ with ||r~||^2 = rho(s), so that
the least-squares cost 0.5 * sum ||r~||^2 equals 0.5 * sum rho(s_i).
"""

from abc import ABC, abstractmethod
from typing import Optional, Tuple

import numpy as np

from .errors import ConfigurationError


class LossFunction(ABC):
    """Robust cost reweighting"""

    @abstractmethod
    def evaluate(self, s: float) -> Tuple[float, float]:
        """
        Args:
            s: Squared residual norm

        Returns:
            (rho(s), rho'(s))
        """
        pass

    def correct(
        self, residual: np.ndarray, jacobian: Optional[np.ndarray] = None
    ) -> Tuple[np.ndarray, Optional[np.ndarray]]:
        """
        Rescale a residual block (and its Jacobian) so that ||r~||^2 = rho(||r||^2)

        Args:
            residual: Raw residual (m,)
            jacobian: Raw Jacobian (m, n) or None

        Returns:
            Corrected (residual, jacobian)
        """
        norm = float(np.linalg.norm(residual))
        if norm < 1e-12:
            return residual, jacobian

        s = norm * norm
        rho0, rho1 = self.evaluate(s)
        sqrt_rho0 = np.sqrt(rho0)
        scale = sqrt_rho0 / norm
        corrected = residual * scale

        if jacobian is None:
            return corrected, None

        u = residual / norm
        radial = rho1 * norm / sqrt_rho0
        # d r~ / d r = radial * u u^T + scale * (I - u u^T)
        uuT_J = np.outer(u, u @ jacobian)
        corrected_jac = scale * jacobian + (radial - scale) * uuT_J
        return corrected, corrected_jac


class TrivialLoss(LossFunction):
    def evaluate(self, s: float) -> Tuple[float, float]:
        return s, 1.0

    def correct(self, residual, jacobian=None):
        return residual, jacobian


class CauchyLoss(LossFunction):
    """rho(s) = a^2 log(1 + s / a^2)"""

    def __init__(self, scale: float = 1.0):
        self.scale = float(scale)
        self._b = self.scale * self.scale

    def evaluate(self, s: float) -> Tuple[float, float]:
        ratio = 1.0 + s / self._b
        return self._b * np.log(ratio), 1.0 / ratio


class HuberLoss(LossFunction):
    """rho(s) = s for s <= a^2, 2 a sqrt(s) - a^2 otherwise"""

    def __init__(self, scale: float = 1.0):
        self.scale = float(scale)
        self._b = self.scale * self.scale

    def evaluate(self, s: float) -> Tuple[float, float]:
        if s > self._b:
            root = np.sqrt(s)
            return 2.0 * self.scale * root - self._b, self.scale / root
        return s, 1.0


def make_loss(name: Optional[str], scale: float = 1.0) -> LossFunction:
    """Build a loss from its configuration name ("trivial", "cauchy", "huber")"""
    key = (name or "trivial").lower()
    if key in ("trivial", "none", "linear"):
        return TrivialLoss()
    if key == "cauchy":
        return CauchyLoss(scale)
    if key == "huber":
        return HuberLoss(scale)
    raise ConfigurationError(f"Unknown loss function: {name}")
