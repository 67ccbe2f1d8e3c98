"""
Simple in-memory metrics for Prometheus exposition.
Thread-safe counters.
"""
import threading
from typing import Dict

COUNTER_HELP = {
    "requests_total": "Total HTTP requests",
    "builds_queued_total": "Total builds queued",
    "builds_succeeded_total": "Total builds finished successfully",
    "builds_failed_total": "Total builds failed after all retries",
    "builds_cancelled_total": "Total builds cancelled",
    "build_retries_total": "Total build attempts scheduled for retry",
    "cache_hits_total": "Dependency cache lanes restored",
    "cache_misses_total": "Dependency cache lanes not found",
    "artifacts_purged_total": "Builds removed by the retention sweep",
}


class Metrics:
    """Thread-safe metrics collection."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {name: 0 for name in COUNTER_HELP}
        self._counters.update({
            "requests_2xx": 0,
            "requests_4xx": 0,
            "requests_5xx": 0,
        })

    def inc(self, name: str, value: int = 1) -> None:
        """Increment a counter."""
        with self._lock:
            if name not in self._counters:
                self._counters[name] = 0
            self._counters[name] += value

    def get(self, name: str) -> int:
        """Get a counter value."""
        with self._lock:
            return self._counters.get(name, 0)

    def get_all(self) -> Dict[str, int]:
        """Get all counter values."""
        with self._lock:
            return self._counters.copy()

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []
        counters = self.get_all()

        for name, help_text in COUNTER_HELP.items():
            lines.append(f"# HELP buildforge_{name} {help_text}")
            lines.append(f"# TYPE buildforge_{name} counter")
            lines.append(f"buildforge_{name} {counters.get(name, 0)}")

        # Requests by status class
        lines.append("# HELP buildforge_requests_by_status HTTP requests by status class")
        lines.append("# TYPE buildforge_requests_by_status counter")
        for status_class in ("2xx", "4xx", "5xx"):
            value = counters.get(f"requests_{status_class}", 0)
            lines.append(f'buildforge_requests_by_status{{status="{status_class}"}} {value}')

        return "\n".join(lines) + "\n"


# Global metrics instance
metrics = Metrics()
