"""Counters and timers shared by the rate limiter and the query cache.

Exposes a summary dict for admin endpoints and Prometheus text output.
"""

import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Tuple

LabelSet = Tuple[Tuple[str, str], ...]


@dataclass
class TimerMetrics:
    """Aggregated observations for one timer series."""

    count: int = 0
    total: float = 0.0
    max: float = 0.0


def _labels(labels: Dict[str, Any]) -> LabelSet:
    return tuple(sorted((k, str(v)) for k, v in labels.items()))


def _format_labels(labels: LabelSet) -> str:
    if not labels:
        return "{}"
    inner = ",".join(f'{k}="{v}"' for k, v in labels)
    return "{" + inner + "}"


@dataclass
class MetricsCollector:
    """Collects counters and timers.

    Series are identified by name plus an optional label set, e.g.
    ``increment("ratelimit_decisions_total", outcome="allow", policy="global")``.
    Safe to share between coroutines.
    """

    prefix: str = "ratecache"

    _counters: Dict[str, Dict[LabelSet, float]] = field(
        default_factory=lambda: defaultdict(lambda: defaultdict(int))
    )
    _timers: Dict[str, Dict[LabelSet, TimerMetrics]] = field(
        default_factory=lambda: defaultdict(lambda: defaultdict(TimerMetrics))
    )

    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    _start_time: float = field(default_factory=time.time)

    async def increment(self, name: str, value: float = 1, **labels: Any) -> None:
        """Increment a counter series."""
        async with self._lock:
            self._counters[name][_labels(labels)] += value

    async def observe(self, name: str, seconds: float, **labels: Any) -> None:
        """Record a duration for a timer series."""
        async with self._lock:
            timer = self._timers[name][_labels(labels)]
            timer.count += 1
            timer.total += seconds
            timer.max = max(timer.max, seconds)

    async def get_counter(self, name: str, **labels: Any) -> float:
        async with self._lock:
            series = self._counters.get(name)
            if series is None:
                return 0
            wanted = set(_labels(labels))
            # Sum every series carrying at least the requested labels
            return sum(
                value for key, value in series.items() if wanted.issubset(key)
            )

    async def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics.

        Returns:
            Dictionary with counters (total and per label set) and timers
        """
        async with self._lock:
            counters = {}
            for name, series in self._counters.items():
                counters[name] = {
                    "total": sum(series.values()),
                    "series": [
                        {"labels": dict(labels), "value": value}
                        for labels, value in series.items()
                    ],
                }

            timers = {}
            for name, series in self._timers.items():
                count = sum(t.count for t in series.values())
                total = sum(t.total for t in series.values())
                timers[name] = {
                    "count": count,
                    "total_seconds": round(total, 6),
                    "avg_ms": round((total / count) * 1000, 2) if count else 0,
                    "max_ms": round(
                        max((t.max for t in series.values()), default=0) * 1000, 2
                    ),
                }

            return {
                "uptime_seconds": round(time.time() - self._start_time, 2),
                "counters": counters,
                "timers": timers,
            }

    async def get_prometheus_metrics(self) -> str:
        """Get metrics in Prometheus text format."""
        async with self._lock:
            lines = []

            for name, series in self._counters.items():
                metric = f"{self.prefix}_{name}"
                lines.append(f"# TYPE {metric} counter")
                for labels, value in series.items():
                    lines.append(f"{metric}{_format_labels(labels)} {value}")

            for name, series in self._timers.items():
                metric = f"{self.prefix}_{name}"
                lines.append(f"# TYPE {metric} summary")
                for labels, timer in series.items():
                    lines.append(f"{metric}_count{_format_labels(labels)} {timer.count}")
                    lines.append(f"{metric}_sum{_format_labels(labels)} {timer.total}")

            lines.append(f"# TYPE {self.prefix}_uptime_seconds gauge")
            lines.append(
                f"{self.prefix}_uptime_seconds{{}} {round(time.time() - self._start_time, 2)}"
            )

            return "\n".join(lines) + "\n"
