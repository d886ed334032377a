"""
Nonlinear least-squares problem with keyed parameter blocks

Parameter blocks are addressed by hashable keys such as ("pose", kf_id) or
("landmark", lm_id). Residual blocks get stable integer ids so callers can
evaluate or remove them selectively.
"""

import itertools
import logging
from dataclasses import dataclass
from typing import Dict, Hashable, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from scipy.sparse import coo_matrix, csr_matrix

from .errors import MissingParameterBlockError
from .factors import CostFunction
from .loss import LossFunction, TrivialLoss
from .parameterization import Manifold, EuclideanManifold

logger = logging.getLogger(__name__)

BlockKey = Hashable


@dataclass
class ParameterBlock:
    key: BlockKey
    value: np.ndarray
    manifold: Manifold
    constant: bool = False


@dataclass
class ResidualBlock:
    id: int
    cost_function: CostFunction
    loss: LossFunction
    keys: Tuple[BlockKey, ...]


class Problem:
    """Keyed parameter blocks plus residual blocks referencing them"""

    def __init__(self):
        self._blocks: Dict[BlockKey, ParameterBlock] = {}
        self._residuals: Dict[int, ResidualBlock] = {}
        self._ids = itertools.count()

    # ------------------------------------------------------------------
    # Parameter blocks
    # ------------------------------------------------------------------

    def add_parameter_block(
        self,
        key: BlockKey,
        value: np.ndarray,
        manifold: Optional[Manifold] = None,
        constant: bool = False,
    ) -> np.ndarray:
        """
        Register a parameter block; re-adding an existing key keeps its value

        Returns:
            The stored value array
        """
        if key in self._blocks:
            if constant:
                self._blocks[key].constant = True
            return self._blocks[key].value
        value = np.array(value, dtype=np.float64).reshape(-1)
        if manifold is None:
            manifold = EuclideanManifold(value.size)
        self._blocks[key] = ParameterBlock(key, value, manifold, constant)
        return value

    def has_parameter_block(self, key: BlockKey) -> bool:
        return key in self._blocks

    def _block(self, key: BlockKey) -> ParameterBlock:
        try:
            return self._blocks[key]
        except KeyError:
            raise MissingParameterBlockError(key) from None

    def parameter_block(self, key: BlockKey) -> np.ndarray:
        return self._block(key).value

    def manifold(self, key: BlockKey) -> Manifold:
        return self._block(key).manifold

    def set_parameter_block(self, key: BlockKey, value: np.ndarray):
        self._block(key).value[:] = value

    def set_constant(self, key: BlockKey):
        self._block(key).constant = True

    def set_variable(self, key: BlockKey):
        self._block(key).constant = False

    def is_constant(self, key: BlockKey) -> bool:
        return self._block(key).constant

    @property
    def parameter_keys(self) -> List[BlockKey]:
        return list(self._blocks)

    def variable_keys(self) -> List[BlockKey]:
        """Non-constant blocks referenced by at least one residual, in insertion order"""
        used = set()
        for rb in self._residuals.values():
            used.update(rb.keys)
        return [k for k, b in self._blocks.items() if not b.constant and k in used]

    # ------------------------------------------------------------------
    # Residual blocks
    # ------------------------------------------------------------------

    def add_residual_block(
        self,
        cost_function: CostFunction,
        loss: Optional[LossFunction],
        keys: Sequence[BlockKey],
    ) -> int:
        """
        Attach a factor to existing parameter blocks

        Raises:
            MissingParameterBlockError: a key has not been added
        """
        for key in keys:
            if key not in self._blocks:
                raise MissingParameterBlockError(key)
        rid = next(self._ids)
        self._residuals[rid] = ResidualBlock(rid, cost_function, loss or TrivialLoss(), tuple(keys))
        return rid

    def remove_residual_block(self, residual_id: int):
        del self._residuals[residual_id]

    def residual_block(self, residual_id: int) -> ResidualBlock:
        return self._residuals[residual_id]

    @property
    def residual_block_ids(self) -> List[int]:
        return list(self._residuals)

    @property
    def num_residual_blocks(self) -> int:
        return len(self._residuals)

    @property
    def num_residuals(self) -> int:
        return sum(rb.cost_function.num_residuals for rb in self._residuals.values())

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _values(self, rb: ResidualBlock, values: Optional[Mapping[BlockKey, np.ndarray]]):
        if values is None:
            return [self._blocks[k].value for k in rb.keys]
        return [values[k] if k in values else self._blocks[k].value for k in rb.keys]

    def _selected(self, ids: Optional[Iterable[int]]) -> List[ResidualBlock]:
        if ids is None:
            return list(self._residuals.values())
        return [self._residuals[i] for i in ids]

    def evaluate_residual_blocks(
        self,
        ids: Optional[Iterable[int]] = None,
        apply_loss: bool = False,
        values: Optional[Mapping[BlockKey, np.ndarray]] = None,
    ) -> List[np.ndarray]:
        """Residual of each selected block, raw unless apply_loss"""
        out = []
        for rb in self._selected(ids):
            r = rb.cost_function.residual(self._values(rb, values))
            if apply_loss:
                r, _ = rb.loss.correct(r)
            out.append(r)
        return out

    def residual_vector(
        self,
        ids: Optional[Iterable[int]] = None,
        apply_loss: bool = True,
        values: Optional[Mapping[BlockKey, np.ndarray]] = None,
    ) -> np.ndarray:
        blocks = self.evaluate_residual_blocks(ids, apply_loss, values)
        if not blocks:
            return np.zeros(0)
        return np.concatenate(blocks)

    def total_cost(self, apply_loss: bool = True) -> float:
        r = self.residual_vector(apply_loss=apply_loss)
        return 0.5 * float(r @ r)

    def _block_jacobian(self, rb, columns, values, apply_loss, chain):
        block_values = self._values(rb, values)
        manifolds = [self._blocks[k].manifold for k in rb.keys]
        active = [k in columns for k in rb.keys]
        residual = rb.cost_function.residual(block_values)
        jacs = rb.cost_function.jacobians(block_values, manifolds, active)

        parts = []
        for key, J in zip(rb.keys, jacs):
            if J is None or key not in columns:
                continue
            if chain is not None and key in chain:
                J = J @ chain[key]
            parts.append((key, J))
        if apply_loss and parts:
            stacked = np.hstack([J for _, J in parts])
            _, stacked = rb.loss.correct(residual, stacked)
            split = []
            col = 0
            for key, J in parts:
                split.append((key, stacked[:, col:col + J.shape[1]]))
                col += J.shape[1]
            parts = split
        return parts

    def jacobian(
        self,
        keys: Sequence[BlockKey],
        apply_loss: bool = True,
        values: Optional[Mapping[BlockKey, np.ndarray]] = None,
        chain: Optional[Mapping[BlockKey, np.ndarray]] = None,
        ids: Optional[Iterable[int]] = None,
        executor=None,
    ) -> csr_matrix:
        """
        Sparse Jacobian of the selected residuals w.r.t. the given blocks

        Columns follow `keys` order in each block's tangent coordinates; rows
        follow residual-block order.

        Args:
            keys: Parameter blocks spanning the columns
            apply_loss: Apply each block's robust loss to the Jacobian
            values: Block values overriding the stored ones
            chain: Per-block matrix right-multiplied onto its Jacobian
            ids: Residual blocks spanning the rows (None = all)
            executor: Optional concurrent.futures executor for per-block work
        """
        columns: Dict[BlockKey, int] = {}
        offset = 0
        for key in keys:
            columns[key] = offset
            offset += self._block(key).manifold.tangent_size
        n_cols = offset

        selected = self._selected(ids)

        def work(rb):
            return self._block_jacobian(rb, columns, values, apply_loss, chain)

        if executor is not None and len(selected) > 1:
            results = list(executor.map(work, selected))
        else:
            results = [work(rb) for rb in selected]

        rows, cols, data = [], [], []
        row = 0
        for rb, parts in zip(selected, results):
            m = rb.cost_function.num_residuals
            for key, J in parts:
                r_idx, c_idx = (a.ravel() for a in np.indices(J.shape))
                rows.append(r_idx + row)
                cols.append(c_idx + columns[key])
                data.append(J.ravel())
            row += m

        if rows:
            jac = coo_matrix(
                (np.concatenate(data), (np.concatenate(rows), np.concatenate(cols))),
                shape=(row, n_cols),
            )
        else:
            jac = coo_matrix((row, n_cols))
        return jac.tocsr()
