"""Unit tests for outcome recording and snapshot statistics."""

import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from loadcheck.core.metrics import Channel, MetricsAggregator, Outcome, percentile


def make_outcome(latency, success=True, channel=Channel.API, ts=None, error=None):
    kwargs = {"channel": channel, "success": success, "latency_ms": latency, "error": error}
    if ts is not None:
        kwargs["timestamp"] = ts
    return Outcome(**kwargs)


@pytest.mark.unit
class TestPercentile:

    def test_empty_is_zero(self):
        assert percentile([], 0.95) == 0.0

    def test_single_value_is_every_percentile(self):
        values = [42.0]
        assert percentile(values, 0.5) == 42.0
        assert percentile(values, 0.9) == 42.0
        assert percentile(values, 0.99) == 42.0

    def test_floor_index_without_interpolation(self):
        values = [float(v) for v in range(1, 11)]  # 1..10
        assert percentile(values, 0.5) == 6.0  # index floor(10 * 0.5) = 5
        assert percentile(values, 0.95) == 10.0  # index 9
        assert percentile(values, 0.99) == 10.0  # clamped to the last index

    def test_small_sample_under_indexes(self):
        assert percentile([10.0, 20.0], 0.5) == 20.0
        assert percentile([10.0, 20.0], 0.4) == 10.0


@pytest.mark.unit
class TestMetricsAggregator:

    def test_empty_snapshot_is_all_zero(self):
        agg = MetricsAggregator()
        snap = agg.snapshot(Channel.API)
        assert snap.count == 0
        assert snap.success_rate == 0.0
        assert (snap.p50, snap.p90, snap.p95, snap.p99) == (0.0, 0.0, 0.0, 0.0)
        assert snap.throughput_per_second == 0.0

    @pytest.mark.parametrize("successes,failures", [(0, 0), (1, 0), (0, 3), (7, 3), (100, 25)])
    def test_counts_add_up(self, successes, failures):
        agg = MetricsAggregator()
        for i in range(successes):
            agg.record(make_outcome(10.0 + i))
        for _ in range(failures):
            agg.record(make_outcome(999.0, success=False, error="boom"))

        snap = agg.snapshot(Channel.API)
        assert snap.count == successes + failures
        assert snap.success_count + snap.failure_count == snap.count
        assert snap.success_count == successes

    def test_no_successes_gives_zero_percentiles(self):
        agg = MetricsAggregator()
        for _ in range(5):
            agg.record(make_outcome(300.0, success=False, error="timeout"))
        snap = agg.snapshot(Channel.API)
        assert snap.count == 5
        assert snap.success_rate == 0.0
        assert snap.p50 == snap.p90 == snap.p95 == snap.p99 == 0.0
        assert snap.avg_latency == 0.0

    def test_failed_latencies_excluded_from_percentiles(self):
        agg = MetricsAggregator()
        agg.record(make_outcome(10.0))
        agg.record(make_outcome(20.0))
        agg.record(make_outcome(5000.0, success=False, error="timeout"))
        snap = agg.snapshot(Channel.API)
        assert snap.max_latency == 20.0
        assert snap.p99 == 20.0
        assert snap.success_rate == pytest.approx(200 / 3)

    def test_percentiles_are_monotonic(self):
        agg = MetricsAggregator()
        for latency in [93, 5, 71, 12, 44, 8, 300, 150, 61, 2, 77, 19]:
            agg.record(make_outcome(float(latency)))
        snap = agg.snapshot(Channel.API)
        assert snap.min_latency <= snap.p50 <= snap.p90 <= snap.p95 <= snap.p99 <= snap.max_latency

    def test_single_outcome(self):
        agg = MetricsAggregator()
        agg.record(make_outcome(37.0))
        snap = agg.snapshot(Channel.API)
        assert snap.p50 == snap.p90 == snap.p95 == snap.p99 == 37.0
        assert snap.min_latency == snap.max_latency == snap.avg_latency == 37.0

    def test_snapshot_is_idempotent(self):
        agg = MetricsAggregator()
        now = time.time()
        for i in range(20):
            agg.record(make_outcome(float(i), ts=now))
        first = agg.snapshot(Channel.API, since=now - 1, until=now + 1)
        second = agg.snapshot(Channel.API, since=now - 1, until=now + 1)
        assert first == second

    def test_open_window_snapshot_is_idempotent(self):
        agg = MetricsAggregator()
        for i in range(5):
            agg.record(make_outcome(float(i + 1)))
        first = agg.snapshot(Channel.API)
        time.sleep(0.01)
        second = agg.snapshot(Channel.API)
        assert first == second

    def test_open_window_ends_at_newest_outcome(self):
        agg = MetricsAggregator()
        agg.record(make_outcome(5.0, ts=agg.started_at + 1.0))
        agg.record(make_outcome(5.0, ts=agg.started_at + 2.0))
        snap = agg.snapshot(Channel.API)
        assert snap.elapsed_seconds == pytest.approx(2.0)
        assert snap.throughput_per_second == pytest.approx(1.0)
        assert agg.snapshot(Channel.AUTH).elapsed_seconds == 0.0

    def test_channels_are_separate(self):
        agg = MetricsAggregator()
        agg.record(make_outcome(1.0, channel=Channel.AUTH))
        agg.record(make_outcome(2.0, channel=Channel.API))
        agg.record(make_outcome(3.0, channel=Channel.API))
        assert agg.snapshot(Channel.AUTH).count == 1
        assert agg.snapshot(Channel.API).count == 2
        assert agg.snapshot(Channel.REALTIME_MESSAGE).count == 0
        assert agg.total_recorded() == 3

    def test_since_filters_by_timestamp(self):
        agg = MetricsAggregator()
        agg.record(make_outcome(10.0, ts=100.0))
        agg.record(make_outcome(20.0, ts=200.0))
        agg.record(make_outcome(30.0, ts=300.0))
        snap = agg.snapshot(Channel.API, since=200.0)
        assert snap.count == 2
        assert snap.min_latency == 20.0

    def test_window_throughput(self):
        agg = MetricsAggregator()
        for i in range(10):
            agg.record(make_outcome(5.0, ts=1000.0 + i * 0.1))
        snap = agg.snapshot(Channel.API, since=1000.0, until=1002.0)
        assert snap.elapsed_seconds == pytest.approx(2.0)
        assert snap.throughput_per_second == pytest.approx(5.0)

    def test_top_errors(self):
        agg = MetricsAggregator()
        for _ in range(3):
            agg.record(make_outcome(1.0, success=False, error="HTTP 500"))
        agg.record(make_outcome(1.0, success=False, error="timeout"))
        snap = agg.snapshot(Channel.API)
        assert snap.errors[0] == ("HTTP 500", 3)
        assert ("timeout", 1) in snap.errors

    def test_ring_buffer_keeps_recent_outcomes(self):
        agg = MetricsAggregator(max_outcomes_per_channel=3)
        for i in range(10):
            agg.record(make_outcome(float(i)))
        assert agg.snapshot(Channel.API).count == 3
        assert agg.snapshot(Channel.API).min_latency == 7.0
        assert agg.total_recorded(Channel.API) == 10

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            MetricsAggregator(max_outcomes_per_channel=0)

    def test_reset(self):
        agg = MetricsAggregator()
        agg.record(make_outcome(1.0))
        agg.reset()
        assert agg.snapshot(Channel.API).count == 0
        assert agg.total_recorded() == 0

    def test_concurrent_record_loses_nothing(self):
        agg = MetricsAggregator()
        writers, per_writer = 8, 1000

        def write(worker):
            for i in range(per_writer):
                agg.record(make_outcome(float(i % 50), success=(i % 10 != 0)))

        with ThreadPoolExecutor(max_workers=writers) as pool:
            list(pool.map(write, range(writers)))

        snap = agg.snapshot(Channel.API)
        assert snap.count == writers * per_writer
        assert snap.success_count + snap.failure_count == writers * per_writer
        assert snap.failure_count == writers * per_writer // 10

    def test_outcome_to_dict(self):
        outcome = make_outcome(12.5, error=None)
        data = outcome.to_dict()
        assert data["channel"] == "api"
        assert data["latency_ms"] == 12.5
