# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.

"""
Metrics — In-memory counters for control-plane observability.

Counters can carry a single `journal` label so per-tenant build and
revalidation activity shows up in /status without a metrics backend.
State is process-local, like the rest of the request-scoped state.
"""

from __future__ import annotations

import time
from collections import defaultdict
from typing import Any, Dict, Optional

_UNLABELLED = ""


class Metrics:
    """In-memory counters, gauges and duration summaries."""

    def __init__(self):
        self._counters: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: Dict[str, float] = {}
        self._durations: Dict[str, list] = defaultdict(list)
        self._start_time = time.time()

    def inc(self, name: str, amount: int = 1, journal: Optional[str] = None) -> None:
        """Increment a counter, optionally for one journal."""
        self._counters[name][journal or _UNLABELLED] += amount

    def get_counter(self, name: str, journal: Optional[str] = None) -> int:
        series = self._counters.get(name)
        if not series:
            return 0
        if journal is None:
            return sum(series.values())
        return series.get(journal, 0)

    def set_gauge(self, name: str, value: float) -> None:
        self._gauges[name] = value

    def get_gauge(self, name: str) -> float:
        return self._gauges.get(name, 0.0)

    def observe(self, name: str, value: float) -> None:
        """Record a duration in ms; keeps the last 1000 observations."""
        values = self._durations[name]
        values.append(value)
        if len(values) > 1000:
            del values[:-1000]

    @property
    def uptime_seconds(self) -> float:
        return time.time() - self._start_time

    def snapshot(self) -> Dict[str, Any]:
        """Export all metrics as a dict."""
        counters: Dict[str, Any] = {}
        by_journal: Dict[str, Dict[str, int]] = {}
        for name, series in self._counters.items():
            counters[name] = sum(series.values())
            labelled = {j: n for j, n in series.items() if j != _UNLABELLED}
            if labelled:
                by_journal[name] = labelled

        result: Dict[str, Any] = {
            "uptime_seconds": round(self.uptime_seconds, 1),
            "counters": counters,
            "by_journal": by_journal,
            "gauges": dict(self._gauges),
        }
        for name, values in self._durations.items():
            if values:
                result[f"duration_{name}"] = {
                    "count": len(values),
                    "avg_ms": round(sum(values) / len(values), 2),
                    "max_ms": round(max(values), 2),
                    "min_ms": round(min(values), 2),
                }
        return result

    def reset(self) -> None:
        self._counters.clear()
        self._gauges.clear()
        self._durations.clear()


# Global singleton
platform_metrics = Metrics()
