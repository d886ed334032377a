"""
I/O utilities for optimization results

H5ResultSink is the file-backed result sink handed to MapOptimizer.
load_results and save_summary are debugging helpers for inspecting what a
sink wrote and for dumping an OptimizationSummary to JSON; the optimizer
itself never calls them.
"""

import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict

import numpy as np

logger = logging.getLogger(__name__)


class H5ResultSink:
    """
    Result sink writing intermediate Jacobians and covariances to an H5 file

    Each call appends a dataset "<name>_<n>" to the "jacobians" or
    "covariances" group, n counting calls per name.
    """

    def __init__(self, filepath: Path):
        self.filepath = Path(filepath)
        self._counters: Dict[str, int] = {}

    def _write(self, group: str, name: str, data: np.ndarray):
        import h5py

        index = self._counters.get(f"{group}/{name}", 0)
        self._counters[f"{group}/{name}"] = index + 1
        with h5py.File(self.filepath, 'a') as f:
            grp = f.require_group(group)
            dataset = grp.create_dataset(f"{name}_{index}", data=np.asarray(data, dtype=np.float64))
            dataset.attrs['name'] = name
        logger.debug(f"Wrote {group}/{name}_{index} {np.shape(data)} to {self.filepath}")

    def on_jacobian(self, name: str, jacobian: np.ndarray) -> None:
        self._write('jacobians', name, jacobian)

    def on_covariance(self, name: str, covariance: np.ndarray) -> None:
        self._write('covariances', name, covariance)


def load_results(filepath: Path) -> Dict[str, Dict[str, np.ndarray]]:
    """Load everything an H5ResultSink wrote, keyed by group then dataset"""
    import h5py

    results = {}
    with h5py.File(filepath, 'r') as f:
        for group_name in f.keys():
            grp = f[group_name]
            results[group_name] = {key: grp[key][:] for key in grp.keys()}
    return results


def convert_to_json_serializable(obj):
    """Convert numpy arrays and scalars to JSON-compatible types"""
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    elif isinstance(obj, dict):
        return {str(k): convert_to_json_serializable(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [convert_to_json_serializable(item) for item in obj]
    elif isinstance(obj, np.integer):
        return int(obj)
    elif isinstance(obj, np.floating):
        return float(obj)
    elif isinstance(obj, np.bool_):
        return bool(obj)
    return obj


def save_summary(summary, filepath: Path):
    """Save an OptimizationSummary in JSON format"""
    info: Dict[str, Any] = convert_to_json_serializable(asdict(summary))
    with open(filepath, 'w') as f:
        json.dump(info, f, indent=2)
    logger.info(f"Optimization summary saved to {filepath}")
