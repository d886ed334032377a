"""
Covariance estimation from the problem Jacobian

The covariance of a parameter block is read off the pseudo-inverse of the
Gauss-Newton information J^T J evaluated at the solution, with the robust
loss applied to J. Intermediate matrices can be handed to an optional
result sink instead of being written to hard-coded locations.
"""

import logging
from typing import Optional, Protocol, Sequence, runtime_checkable

import numpy as np

from .problem import Problem, BlockKey

logger = logging.getLogger(__name__)


@runtime_checkable
class ResultSink(Protocol):
    """Receives intermediate optimization results"""

    def on_jacobian(self, name: str, jacobian: np.ndarray) -> None:
        ...

    def on_covariance(self, name: str, covariance: np.ndarray) -> None:
        ...


def estimate_covariance(
    problem: Problem,
    keys: Sequence[BlockKey],
    size: int = 6,
    sink: Optional[ResultSink] = None,
    name: str = "covariance",
) -> np.ndarray:
    """
    Covariance of the leading `size` tangent coordinates of `keys`

    Args:
        problem: Solved problem
        keys: Parameter blocks spanning the Jacobian columns; the block of
            interest must come first
        size: Size of the returned square block
        sink: Optional receiver of the dense Jacobian and the covariance
        name: Label passed to the sink

    Returns:
        (size, size) covariance
    """
    jacobian = problem.jacobian(keys, apply_loss=True).toarray()
    if sink is not None:
        sink.on_jacobian(name, jacobian)

    information = jacobian.T @ jacobian
    covariance = np.linalg.pinv(information)[:size, :size]
    logger.debug(f"Covariance from {jacobian.shape[0]}x{jacobian.shape[1]} Jacobian")

    if sink is not None:
        sink.on_covariance(name, covariance)
    return covariance
