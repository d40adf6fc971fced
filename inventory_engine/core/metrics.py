from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock


@dataclass
class EndpointMetric:
    total_requests: int = 0
    total_duration_ms: float = 0.0
    error_count: int = 0


class EngineMetrics:
    """Process-local counters for requests and engine outcomes."""

    def __init__(self) -> None:
        self._endpoints: dict[tuple[str, str], EndpointMetric] = {}
        self._counters: defaultdict[str, int] = defaultdict(int)
        self._lock = Lock()

    def observe(self, endpoint: str, method: str, status_code: int, duration_ms: float) -> None:
        with self._lock:
            metric = self._endpoints.setdefault((endpoint, method), EndpointMetric())
            metric.total_requests += 1
            metric.total_duration_ms += duration_ms
            if status_code >= 400:
                metric.error_count += 1

    def incr(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] += amount

    def get(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def snapshot(self) -> dict[str, dict]:
        with self._lock:
            endpoints: dict[str, dict[str, float | int]] = {}
            for (endpoint, method), metric in self._endpoints.items():
                avg = metric.total_duration_ms / metric.total_requests if metric.total_requests else 0.0
                endpoints[f"{method} {endpoint}"] = {
                    "total_requests": metric.total_requests,
                    "avg_duration_ms": round(avg, 2),
                    "error_count": metric.error_count,
                }
            return {"endpoints": endpoints, "counters": dict(self._counters)}

    def reset(self) -> None:
        with self._lock:
            self._endpoints.clear()
            self._counters.clear()


engine_metrics = EngineMetrics()
