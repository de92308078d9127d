"""
Performance monitoring utilities for the Skymmich service.
"""

import time
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field
from .logging import get_logger


@dataclass
class IntegrationMetrics:
    """Call counters for one external service."""

    calls: int = 0
    errors: int = 0
    response_times: List[float] = field(default_factory=list)

    def average_response_time(self) -> Optional[float]:
        if not self.response_times:
            return None
        return sum(self.response_times) / len(self.response_times)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "calls": self.calls,
            "errors": self.errors,
            "average_response_time": round(self.average_response_time() or 0, 3),
        }


@dataclass
class PerformanceMetrics:
    """Performance metrics tracking."""

    # Per-integration API call tracking ("immich", "astrometry")
    integrations: Dict[str, IntegrationMetrics] = field(default_factory=dict)

    # Plate solving
    plate_solve_submissions: int = 0
    plate_solve_successes: int = 0
    plate_solve_failures: int = 0

    # Immich sync
    sync_runs: int = 0
    images_imported: int = 0
    images_removed: int = 0
    total_sync_time: float = 0.0
    average_sync_time: Optional[float] = None

    def integration(self, name: str) -> IntegrationMetrics:
        return self.integrations.setdefault(name, IntegrationMetrics())

    def update_averages(self):
        """Update calculated averages."""
        if self.sync_runs > 0:
            self.average_sync_time = self.total_sync_time / self.sync_runs

    def get_success_rate(self) -> float:
        """Plate-solving success rate as a percentage of finished jobs."""
        finished = self.plate_solve_successes + self.plate_solve_failures
        if finished == 0:
            return 0.0
        return (self.plate_solve_successes / finished) * 100

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to dictionary for logging."""
        self.update_averages()
        return {
            "api": {name: m.to_dict() for name, m in self.integrations.items()},
            "plate_solve_submissions": self.plate_solve_submissions,
            "plate_solve_successes": self.plate_solve_successes,
            "plate_solve_failures": self.plate_solve_failures,
            "plate_solve_success_rate_percent": round(self.get_success_rate(), 2),
            "sync_runs": self.sync_runs,
            "images_imported": self.images_imported,
            "images_removed": self.images_removed,
            "average_sync_time": round(self.average_sync_time or 0, 3),
        }


class PerformanceMonitor:
    """Performance monitoring and metrics collection."""

    def __init__(self):
        self.logger = get_logger("performance")
        self.metrics = PerformanceMetrics()
        self.start_time = time.time()

    def record_api_call(self, integration: str, response_time: float):
        """Record a successful API call."""
        stats = self.metrics.integration(integration)
        stats.calls += 1
        stats.response_times.append(response_time)
        # Keep the sample window bounded
        if len(stats.response_times) > 1000:
            del stats.response_times[:-1000]

    def record_api_error(self, integration: str):
        self.metrics.integration(integration).errors += 1

    def record_submission(self):
        self.metrics.plate_solve_submissions += 1

    def record_solve_success(self):
        self.metrics.plate_solve_successes += 1

    def record_solve_failure(self):
        self.metrics.plate_solve_failures += 1

    def record_sync(self, sync_time: float, imported: int, removed: int):
        """Record a completed Immich sync run."""
        self.metrics.sync_runs += 1
        self.metrics.total_sync_time += sync_time
        self.metrics.images_imported += imported
        self.metrics.images_removed += removed

    def get_runtime_seconds(self) -> float:
        """Get total runtime in seconds."""
        return time.time() - self.start_time

    def log_performance_summary(self):
        """Log a summary of performance metrics."""
        runtime = self.get_runtime_seconds()
        metrics_dict = self.metrics.to_dict()
        api_calls = sum(m.calls for m in self.metrics.integrations.values())

        self.logger.info(
            f"📈 Performance Summary: Runtime {runtime:.1f}s, "
            f"API calls {api_calls}, "
            f"plate-solve success rate {metrics_dict['plate_solve_success_rate_percent']:.1f}%"
        )

    def get_metrics_dict(self) -> Dict[str, Any]:
        """Get all metrics as a dictionary."""
        runtime = self.get_runtime_seconds()
        metrics_dict = self.metrics.to_dict()
        metrics_dict["runtime_seconds"] = round(runtime, 2)
        return metrics_dict

    def reset(self):
        self.metrics = PerformanceMetrics()
        self.start_time = time.time()


# Global performance monitor instance
performance_monitor = PerformanceMonitor()
