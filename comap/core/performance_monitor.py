"""
Performance monitoring for optimization requests

Every procedure call served by a MapOptimizer is recorded as a CallRecord
(wall time, resident memory delta, outcome). Records are aggregated per
procedure name, e.g. "GBA" or "PGO-4DoF".
"""

import json
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import psutil

logger = logging.getLogger(__name__)


def _rss() -> int:
    return psutil.Process().memory_info().rss


@dataclass
class CallRecord:
    """One optimization call"""
    procedure: str
    started: float
    duration: float
    rss_delta: int = 0
    error: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ProcedureStats:
    """Aggregate over all calls of one procedure"""
    name: str
    count: int = 0
    total_time: float = 0.0
    min_time: float = float('inf')
    max_time: float = 0.0
    total_rss_delta: int = 0
    failures: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def avg_time(self) -> float:
        return self.total_time / self.count if self.count else 0.0

    @property
    def success_rate(self) -> float:
        if self.count == 0:
            return 100.0
        return 100.0 * (self.count - self.failures) / self.count

    def add(self, record: CallRecord):
        self.count += 1
        self.total_time += record.duration
        self.min_time = min(self.min_time, record.duration)
        self.max_time = max(self.max_time, record.duration)
        self.total_rss_delta += record.rss_delta
        if not record.ok:
            self.failures += 1
            self.errors.append(record.error)


class PerformanceMonitor:
    """
    Per-procedure timing, memory and failure statistics

    One monitor may be shared by optimizers serving different maps from
    different threads.
    """

    def __init__(self):
        self.records: List[CallRecord] = []
        self.procedures: Dict[str, ProcedureStats] = {}
        self._lock = threading.RLock()

    @contextmanager
    def measure(self, procedure: str, context: Optional[Dict[str, Any]] = None):
        """Record one call of `procedure`; exceptions are counted and re-raised"""
        started = time.time()
        rss_before = _rss()
        record = CallRecord(procedure, started, 0.0, context=dict(context or {}))
        try:
            yield record
        except Exception as e:
            record.error = f"{type(e).__name__}: {e}"
            logger.error(f"{procedure} failed: {record.error}")
            raise
        finally:
            record.duration = time.time() - started
            record.rss_delta = _rss() - rss_before
            with self._lock:
                self.records.append(record)
                self.procedures.setdefault(procedure, ProcedureStats(procedure)).add(record)

    def get_procedure_stats(self, procedure: str) -> Optional[ProcedureStats]:
        with self._lock:
            return self.procedures.get(procedure)

    def get_summary(self) -> Dict[str, Any]:
        """Totals plus a per-procedure breakdown"""
        with self._lock:
            total_time = sum(r.duration for r in self.records)
            procedures = {
                name: {
                    'count': s.count,
                    'total_time': s.total_time,
                    'avg_time': s.avg_time,
                    'min_time': s.min_time,
                    'max_time': s.max_time,
                    'time_share': 100.0 * s.total_time / total_time if total_time > 0 else 0.0,
                    'avg_rss_delta_mb': s.total_rss_delta / s.count / 1024**2,
                    'success_rate': s.success_rate,
                }
                for name, s in self.procedures.items()
            }
            return {
                'summary': {
                    'total_time': total_time,
                    'total_procedures': len(self.procedures),
                    'total_calls': len(self.records),
                    'cpu_count': psutil.cpu_count(),
                    'memory_percent': psutil.virtual_memory().percent,
                },
                'procedures': procedures,
            }

    def export_results(self, filepath: Path):
        """Write the summary and every call record as JSON"""
        with self._lock:
            calls = [asdict(r) for r in self.records]
        with open(filepath, 'w') as f:
            json.dump({'summary': self.get_summary(), 'calls': calls}, f, indent=2, default=str)
        logger.info(f"Performance results exported to {filepath}")

    def log_summary(self):
        """Log one line per procedure, slowest share first"""
        procedures = self.get_summary()['procedures']
        for name, s in sorted(procedures.items(), key=lambda kv: kv[1]['time_share'], reverse=True):
            logger.info(f"{name:10} {s['count']:5d} calls  avg {s['avg_time']:.3f}s  "
                        f"{s['time_share']:5.1f}%  ok {s['success_rate']:.0f}%")

    def clear(self):
        with self._lock:
            self.records.clear()
            self.procedures.clear()
