"""In-process metrics for the Allay API.

What is tracked:
    - HTTP requests: total, by status code, 5xx errors, latency
    - Slack Web API calls: by method, failures by method, latency
    - Conversation updates: committed writes by live-update type
      (new_message, new_thread_reply, message_updated, reaction_update)

Everything lives in one process-global ``MetricsCollector`` and is exported
as a plain dict on ``/metrics`` next to the event bus snapshot. There is no
exporter: a scrape is a JSON GET.
"""

from __future__ import annotations

import asyncio
import bisect
import math
import time
from collections import Counter
from typing import Any


# Upper bounds in milliseconds; the last bucket catches everything else.
LATENCY_BUCKETS_MS: tuple[float, ...] = (
    1, 5, 10, 25, 50, 100, 250, 500, 1_000, 2_500, 5_000, 10_000, math.inf,
)


class LatencyHistogram:
    """Fixed-bucket latency histogram with min/max/mean and quantile estimates."""

    def __init__(self, bounds: tuple[float, ...] = LATENCY_BUCKETS_MS) -> None:
        self.bounds = bounds
        self.buckets = [0] * len(bounds)
        self.count = 0
        self.total_ms = 0.0
        self.min_ms = math.inf
        self.max_ms = 0.0

    def observe(self, ms: float) -> None:
        self.buckets[bisect.bisect_left(self.bounds, ms)] += 1
        self.count += 1
        self.total_ms += ms
        self.min_ms = min(self.min_ms, ms)
        self.max_ms = max(self.max_ms, ms)

    @property
    def mean_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0

    def quantile(self, q: float) -> float:
        """Estimate the q-quantile (0 < q <= 1) by linear interpolation
        inside the bucket that contains it. The open-ended last bucket is
        capped at the largest observed value."""
        if not self.count:
            return 0.0
        rank = math.ceil(q * self.count)
        seen = 0
        lower = 0.0
        for bound, n in zip(self.bounds, self.buckets):
            if n and seen + n >= rank:
                upper = self.max_ms if math.isinf(bound) else bound
                return lower + (rank - seen) / n * (upper - lower)
            seen += n
            lower = bound
        return self.max_ms

    def summary(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "min_ms": round(self.min_ms, 2) if self.count else 0.0,
            "max_ms": round(self.max_ms, 2),
            "mean_ms": round(self.mean_ms, 2),
            "p50_ms": round(self.quantile(0.50), 2),
            "p95_ms": round(self.quantile(0.95), 2),
            "p99_ms": round(self.quantile(0.99), 2),
        }


class MetricsCollector:
    """Process-global metrics registry.

    Counters:
        http_requests_total
        http_errors_total                    status >= 500
        conversation_updates_total
    Labeled counters:
        http_requests_by_status[code]
        slack_api_calls_by_method[method]
        slack_api_errors_by_method[method]
        conversation_updates_by_type[type]
    Histograms (ms):
        http_request_latency_ms
        slack_api_latency_ms
    """

    HISTOGRAMS = ("http_request_latency_ms", "slack_api_latency_ms")

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._started = time.monotonic()
        self._counters: Counter[str] = Counter()
        self._labeled: dict[str, Counter[str]] = {}
        self._latency = {name: LatencyHistogram() for name in self.HISTOGRAMS}

    def _bump(self, name: str, label: str | None = None) -> None:
        if label is None:
            self._counters[name] += 1
        else:
            self._labeled.setdefault(name, Counter())[label] += 1

    # ── Recording ─────────────────────────────────────────────────────────

    async def request_completed(self, status_code: int, elapsed_ms: float) -> None:
        async with self._lock:
            self._bump("http_requests_total")
            self._bump("http_requests_by_status", str(status_code))
            if status_code >= 500:
                self._bump("http_errors_total")
            self._latency["http_request_latency_ms"].observe(elapsed_ms)

    async def slack_api_called(self, method: str, elapsed_ms: float, ok: bool) -> None:
        async with self._lock:
            self._bump("slack_api_calls_by_method", method)
            if not ok:
                self._bump("slack_api_errors_by_method", method)
            self._latency["slack_api_latency_ms"].observe(elapsed_ms)

    async def conversation_updated(self, update_type: str) -> None:
        async with self._lock:
            self._bump("conversation_updates_total")
            self._bump("conversation_updates_by_type", update_type)

    # ── Export ────────────────────────────────────────────────────────────

    async def snapshot(self) -> dict[str, Any]:
        async with self._lock:
            return {
                "uptime_seconds": round(time.monotonic() - self._started, 1),
                "counters": dict(self._counters),
                "labeled_counters": {k: dict(v) for k, v in self._labeled.items()},
                "histograms": {k: h.summary() for k, h in self._latency.items()},
            }

    def reset(self) -> None:
        """Drop all recorded values (tests)."""
        self._counters.clear()
        self._labeled.clear()
        self._latency = {name: LatencyHistogram() for name in self.HISTOGRAMS}


_collector: MetricsCollector | None = None


def get_metrics() -> MetricsCollector:
    """Return (or lazily create) the process-global MetricsCollector."""
    global _collector
    if _collector is None:
        _collector = MetricsCollector()
    return _collector
