"""Outcome recording and latency statistics shared by all virtual users."""

from __future__ import annotations

import math
import threading
import time
from collections import Counter, deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, Iterable, List, Optional, Sequence, Tuple


class Channel(str, Enum):
    """Measurement category an outcome belongs to."""

    AUTH = "auth"
    API = "api"
    REALTIME_CONNECT = "realtime_connect"
    REALTIME_MESSAGE = "realtime_message"


@dataclass(frozen=True)
class Outcome:
    """One timed operation, recorded the moment it resolves."""

    channel: Channel
    success: bool
    latency_ms: float
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)
    user_id: Optional[str] = None
    target: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["channel"] = self.channel.value
        return data


@dataclass(frozen=True)
class MetricsSnapshot:
    """Statistics derived from the outcomes of one channel."""

    channel: Channel
    count: int = 0
    success_count: int = 0
    failure_count: int = 0
    success_rate: float = 0.0
    p50: float = 0.0
    p90: float = 0.0
    p95: float = 0.0
    p99: float = 0.0
    min_latency: float = 0.0
    max_latency: float = 0.0
    avg_latency: float = 0.0
    throughput_per_second: float = 0.0
    elapsed_seconds: float = 0.0
    errors: Tuple[Tuple[str, int], ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["channel"] = self.channel.value
        data["errors"] = [{"error": e, "count": c} for e, c in self.errors]
        return data


def percentile(sorted_values: Sequence[float], fraction: float) -> float:
    """Return ``sorted_values[floor(len * fraction)]`` without interpolation.

    The index under-shoots for small samples (a single value is every
    percentile). Reports produced by earlier runs used this exact formula, so
    it is kept as is.
    """
    if not sorted_values:
        return 0.0
    index = min(int(math.floor(len(sorted_values) * fraction)), len(sorted_values) - 1)
    return float(sorted_values[index])


class MetricsAggregator:
    """Thread-safe store of outcomes, one lock and one list per channel.

    Args:
        max_outcomes_per_channel: Keep only the most recent N outcomes per
            channel (ring buffer). ``None`` keeps everything for the run.
    """

    TOP_ERRORS = 5

    def __init__(self, max_outcomes_per_channel: Optional[int] = None):
        if max_outcomes_per_channel is not None and max_outcomes_per_channel <= 0:
            raise ValueError("max_outcomes_per_channel must be positive")
        self.max_outcomes_per_channel = max_outcomes_per_channel
        self.started_at = time.time()
        self._locks: Dict[Channel, threading.Lock] = {ch: threading.Lock() for ch in Channel}
        self._outcomes: Dict[Channel, Deque[Outcome]] = {
            ch: deque(maxlen=max_outcomes_per_channel) for ch in Channel
        }
        self._totals: Dict[Channel, int] = {ch: 0 for ch in Channel}

    def record(self, outcome: Outcome) -> None:
        """Append an outcome; safe to call from any task or thread."""
        channel = Channel(outcome.channel)
        with self._locks[channel]:
            self._outcomes[channel].append(outcome)
            self._totals[channel] += 1

    def outcomes(
        self,
        channel: Channel,
        since: Optional[float] = None,
        until: Optional[float] = None,
    ) -> List[Outcome]:
        """Copy of the retained outcomes of ``channel`` inside the window."""
        with self._locks[channel]:
            retained = list(self._outcomes[channel])
        return [o for o in retained if _in_window(o.timestamp, since, until)]

    def total_recorded(self, channel: Optional[Channel] = None) -> int:
        """Number of outcomes ever recorded, including ones evicted from the ring."""
        channels: Iterable[Channel] = [channel] if channel is not None else list(Channel)
        total = 0
        for ch in channels:
            with self._locks[ch]:
                total += self._totals[ch]
        return total

    def snapshot(
        self,
        channel: Channel,
        since: Optional[float] = None,
        until: Optional[float] = None,
    ) -> MetricsSnapshot:
        """Compute fresh statistics for ``channel`` from outcomes in ``[since, until]``.

        Percentiles and min/max/avg only rank successful latencies; failures
        still count towards ``count`` and ``success_rate``. Throughput is the
        count divided by the window length. Without ``until`` the window ends
        at the newest selected outcome, so repeated calls agree.
        """
        selected = self.outcomes(channel, since, until)
        start = since if since is not None else self.started_at
        if until is not None:
            end = until
        else:
            end = max((o.timestamp for o in selected), default=start)
        elapsed = max(0.0, end - start)

        count = len(selected)
        if count == 0:
            return MetricsSnapshot(channel=channel, elapsed_seconds=elapsed)

        latencies = sorted(o.latency_ms for o in selected if o.success)
        success_count = len(latencies)
        failure_count = count - success_count
        error_counts = Counter(o.error or "unknown error" for o in selected if not o.success)

        return MetricsSnapshot(
            channel=channel,
            count=count,
            success_count=success_count,
            failure_count=failure_count,
            success_rate=success_count / count * 100,
            p50=percentile(latencies, 0.50),
            p90=percentile(latencies, 0.90),
            p95=percentile(latencies, 0.95),
            p99=percentile(latencies, 0.99),
            min_latency=latencies[0] if latencies else 0.0,
            max_latency=latencies[-1] if latencies else 0.0,
            avg_latency=sum(latencies) / success_count if success_count else 0.0,
            throughput_per_second=count / elapsed if elapsed > 0 else 0.0,
            elapsed_seconds=elapsed,
            errors=tuple(error_counts.most_common(self.TOP_ERRORS)),
        )

    def snapshots(
        self,
        since: Optional[float] = None,
        until: Optional[float] = None,
    ) -> Dict[Channel, MetricsSnapshot]:
        """Snapshots for every channel over the same window."""
        return {ch: self.snapshot(ch, since, until) for ch in Channel}

    def reset(self) -> None:
        """Drop every recorded outcome and restart the clock."""
        for ch in Channel:
            with self._locks[ch]:
                self._outcomes[ch].clear()
                self._totals[ch] = 0
        self.started_at = time.time()


def _in_window(ts: float, since: Optional[float], until: Optional[float]) -> bool:
    if since is not None and ts < since:
        return False
    if until is not None and ts > until:
        return False
    return True
