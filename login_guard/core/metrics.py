from __future__ import annotations

from dataclasses import dataclass
from threading import Lock


@dataclass
class EndpointMetric:
    total_requests: int = 0
    total_duration_ms: float = 0.0
    error_count: int = 0


class InMemoryRequestMetrics:
    def __init__(self) -> None:
        self._metrics: dict[tuple[str, str], EndpointMetric] = {}
        self._lock = Lock()

    def observe(
        self,
        endpoint: str,
        method: str,
        status_code: int,
        duration_ms: float,
    ) -> None:
        key = (endpoint, method)
        with self._lock:
            metric = self._metrics.setdefault(key, EndpointMetric())
            metric.total_requests += 1
            metric.total_duration_ms += duration_ms
            if status_code >= 400:
                metric.error_count += 1

    def snapshot(self) -> dict[str, dict[str, float | int]]:
        with self._lock:
            result: dict[str, dict[str, float | int]] = {}
            for (endpoint, method), metric in self._metrics.items():
                avg = metric.total_duration_ms / metric.total_requests if metric.total_requests else 0.0
                result[f"{method} {endpoint}"] = {
                    "total_requests": metric.total_requests,
                    "total_duration_ms": round(metric.total_duration_ms, 2),
                    "avg_duration_ms": round(avg, 2),
                    "error_count": metric.error_count,
                }
            return result


class InMemoryGuardMetrics:
    """Process-local counters of guard decisions."""

    def __init__(self) -> None:
        self._verdicts: dict[str, int] = {}
        self._lockouts_opened = 0
        self._ip_blocks_opened = 0
        self._degraded = 0
        self._lock = Lock()

    def observe_verdict(self, reason: str, *, degraded: bool = False) -> None:
        with self._lock:
            self._verdicts[reason] = self._verdicts.get(reason, 0) + 1
            if degraded:
                self._degraded += 1

    def observe_lockout(self) -> None:
        with self._lock:
            self._lockouts_opened += 1

    def observe_ip_block(self) -> None:
        with self._lock:
            self._ip_blocks_opened += 1

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            return {
                "verdicts": dict(self._verdicts),
                "lockouts_opened": self._lockouts_opened,
                "ip_blocks_opened": self._ip_blocks_opened,
                "degraded_decisions": self._degraded,
            }


request_metrics = InMemoryRequestMetrics()
