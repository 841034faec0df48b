"""
Thread-safe in-memory metrics collector for the worker.

Tracks:
  - Traffic: jobs submitted / duplicated, requests by endpoint
  - Errors: failure counters by error code, recent errors for RCA
  - Latency: job duration samples per kind
  - Saturation: active job slots

All data is ephemeral (resets on restart). Job history lives in the job
table; this only answers "what is the worker doing right now".
"""

import threading
import time
from collections import defaultdict
from typing import Callable, Dict, List

MAX_SAMPLES = 100
MAX_MINUTES = 60
MAX_ERRORS = 50


class Metrics:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._latency_samples: Dict[str, List[float]] = defaultdict(list)
        self._timeseries: Dict[str, Dict[int, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: Dict[str, float] = defaultdict(float)
        self._recent_errors: List[dict] = []
        self._started = clock()

    def _minute_bucket(self) -> int:
        return int(self._clock()) // 60 * 60

    def inc_counter(self, name: str, amount: int = 1):
        """Increment a counter (e.g. 'jobs.submitted', 'errors.TIMEOUT')."""
        with self._lock:
            self._counters[name] += amount
            self._timeseries[name][self._minute_bucket()] += amount

    def counter(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def record_latency(self, name: str, duration_ms: float):
        with self._lock:
            samples = self._latency_samples[name]
            samples.append(duration_ms)
            if len(samples) > MAX_SAMPLES:
                self._latency_samples[name] = samples[-MAX_SAMPLES:]

    def set_gauge(self, name: str, value: float):
        with self._lock:
            self._gauges[name] = value

    def record_error(self, source: str, error_code: str, message: str, job_id: str = ""):
        """Record an error for root-cause analysis."""
        with self._lock:
            self._recent_errors.append({
                "timestamp": self._clock(),
                "source": source,
                "error_code": error_code,
                "message": message[:300],
                "job_id": job_id,
            })
            if len(self._recent_errors) > MAX_ERRORS:
                self._recent_errors.pop(0)

    def snapshot(self) -> dict:
        """Complete metrics snapshot for the /metrics endpoint."""
        now = self._clock()
        minute_now = int(now) // 60 * 60

        with self._lock:
            latency_stats = {}
            for name, samples in self._latency_samples.items():
                if not samples:
                    continue
                sorted_s = sorted(samples)
                n = len(sorted_s)
                latency_stats[name] = {
                    "p50": sorted_s[n // 2],
                    "p95": sorted_s[int(n * 0.95)] if n >= 20 else sorted_s[-1],
                    "avg": sum(sorted_s) / n,
                    "count": n,
                }

            timeseries_out = {}
            cutoff = minute_now - MAX_MINUTES * 60
            for name, buckets in self._timeseries.items():
                for expired in [k for k in buckets if k < cutoff]:
                    del buckets[expired]
                timeseries_out[name] = [
                    {"t": t, "v": buckets.get(t, 0)}
                    for t in range(minute_now - (MAX_MINUTES - 1) * 60, minute_now + 1, 60)
                ]

            error_patterns: Dict[str, int] = defaultdict(int)
            for err in self._recent_errors:
                error_patterns[f"{err['source']}:{err['error_code']}"] += 1

            return {
                "timestamp": now,
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "latency": latency_stats,
                "timeseries": timeseries_out,
                "recent_errors": list(self._recent_errors[-10:]),
                "error_patterns": dict(error_patterns),
                "uptime_seconds": now - self._started,
            }
