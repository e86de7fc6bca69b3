import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Dict, List, Optional

from core.logger import get_logger
from core.utils import get_now

logger = get_logger(__name__)


class PerformanceMonitor:
    """Tracks stage durations and outcomes for one run."""

    def __init__(self):
        self.metrics: Dict[str, List[dict]] = defaultdict(list)
        self.success_counts: Dict[str, int] = defaultdict(int)
        self.failure_counts: Dict[str, int] = defaultdict(int)

    @contextmanager
    def measure(self, operation_name: str, context: Optional[Dict] = None):
        """
        Context manager to measure operation duration.

        Usage:
            with monitor.measure("stage 1: list assets"):
                assets = await api.list_assets()
        """
        start_time = time.monotonic()
        record = {"context": context or {}, "timestamp": get_now(), "success": True}

        try:
            yield record
            self.success_counts[operation_name] += 1
        except Exception:
            record["success"] = False
            self.failure_counts[operation_name] += 1
            raise
        finally:
            duration_ms = (time.monotonic() - start_time) * 1000
            record["duration_ms"] = duration_ms
            self.metrics[operation_name].append(record)

            if record["success"]:
                logger.info(f"{operation_name} completed", duration_ms=duration_ms, context=context or {})
            else:
                logger.error(f"{operation_name} failed", duration_ms=duration_ms, context=context or {})

    def last_duration_ms(self, operation_name: str) -> float:
        records = self.metrics.get(operation_name)
        return records[-1]["duration_ms"] if records else 0.0

    def get_stats(self, operation_name: str) -> Dict:
        """Get statistics for a specific operation"""
        durations = [m["duration_ms"] for m in self.metrics.get(operation_name, [])]
        if not durations:
            return {}

        return {
            "operation": operation_name,
            "count": len(durations),
            "success_count": self.success_counts[operation_name],
            "failure_count": self.failure_counts[operation_name],
            "avg_duration_ms": sum(durations) / len(durations),
            "max_duration_ms": max(durations),
            "total_duration_ms": sum(durations),
        }

    def get_all_stats(self) -> Dict[str, Dict]:
        return {op_name: self.get_stats(op_name) for op_name in self.metrics}

    def log_summary(self):
        """Log performance summary for all operations"""
        all_stats = self.get_all_stats()

        if not all_stats:
            logger.info("No performance metrics collected")
            return

        logger.info("=" * 60)
        logger.info("PERFORMANCE SUMMARY")
        logger.info("=" * 60)

        for op_name, stats in all_stats.items():
            status = "ok" if not stats["failure_count"] else "failed"
            logger.info(f"{op_name}: {status}, {stats['total_duration_ms']:.0f}ms")

        logger.info("=" * 60)
