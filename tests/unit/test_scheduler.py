"""Unit tests for LoadPlan level scheduling."""

import pytest

from loadcheck.core.config import Level
from loadcheck.core.metrics import Channel, MetricsAggregator
from loadcheck.core.observers import LoadObserver
from loadcheck.core.scheduler import LoadPlan
from loadcheck.utils.errors import HarnessFault

from fixtures.fake_target import FakeTarget


class RecordingObserver(LoadObserver):

    def __init__(self):
        self.events = []

    def on_run_start(self, mode, levels):
        self.events.append(("run_start", mode, len(levels)))

    def on_level_start(self, index, level):
        self.events.append(("level_start", index, level.name))

    def on_batch_start(self, index, level, batch, size):
        self.events.append(("batch", batch, size))

    def on_user_complete(self, index, result):
        self.events.append(("user", index, result.user_id))

    def on_level_complete(self, index, result):
        self.events.append(("level_complete", index, result.passed))

    def on_run_complete(self, results):
        self.events.append(("run_complete", len(results)))

    def of(self, kind):
        return [e for e in self.events if e[0] == kind]


def make_plan(settings, target, observer=None, sleep=None, **overrides):
    if overrides:
        settings = settings.model_copy(update=overrides)
    kwargs = {"client_factory": target.client, "observer": observer}
    if sleep is not None:
        kwargs["sleep"] = sleep
    return LoadPlan(settings, **kwargs)


@pytest.mark.unit
class TestRunLevel:

    @pytest.mark.asyncio
    async def test_all_users_run(self, fast_settings, fake_target):
        plan = make_plan(fast_settings, fake_target)
        result = await plan.run_level(Level("L", 5, 3, 0))

        assert result.population == 5
        assert result.authenticated_count == 5
        assert result.api_calls == 15
        assert result.successful_api_calls == 15
        assert result.success_rate == 100.0
        assert result.p95_latency == 50.0
        assert result.passed
        assert result.reasons == []
        assert result.abandoned_users == 0
        assert len(fake_target.logins) == 5
        assert fake_target.closed_clients == 5

    @pytest.mark.asyncio
    async def test_peak_concurrent_users(self, fast_settings):
        target = FakeTarget(call_delay=0.02)
        plan = make_plan(fast_settings, target)
        result = await plan.run_level(Level("L", 4, 1, 0))

        assert result.peak_concurrent_users == 4
        assert result.to_dict()["peak_concurrent_users"] == 4

        # the counter restarts for every level
        single = await plan.run_level(Level("ONE", 1, 1, 0))
        assert single.peak_concurrent_users == 1

    @pytest.mark.asyncio
    async def test_credentials_follow_template(self, fast_settings, fake_target):
        plan = make_plan(fast_settings, fake_target)
        await plan.run_level(Level("L", 3, 0, 0))
        assert sorted(fake_target.logins) == ["loadtest1@test.com", "loadtest2@test.com", "loadtest3@test.com"]

    @pytest.mark.asyncio
    async def test_empty_level_passes_vacuously(self, fast_settings, fake_target):
        plan = make_plan(fast_settings, fake_target)
        result = await plan.run_level(Level("EMPTY", 0, 3, 3))

        assert result.passed
        assert result.reasons == []
        assert result.api_calls == 0
        assert result.throughput == 0.0
        assert result.p95_latency == 0.0
        assert fake_target.logins == []

    @pytest.mark.asyncio
    async def test_failing_level_has_reasons(self, fast_settings):
        target = FakeTarget(call_ok=lambda endpoint: False)
        plan = make_plan(fast_settings, target)
        result = await plan.run_level(Level("L", 2, 3, 0))

        assert not result.passed
        assert len(result.reasons) == 1
        assert "success rate" in result.reasons[0]

    @pytest.mark.asyncio
    async def test_ramp_up_batches(self, fast_settings, fake_target, fake_sleep, recorded_sleeps):
        observer = RecordingObserver()
        plan = make_plan(
            fast_settings, fake_target, observer=observer, sleep=fake_sleep,
            ramp_up_batch_size=2, ramp_up_interval_ms=2000,
        )
        result = await plan.run_level(Level("L", 5, 1, 0))

        assert observer.of("batch") == [("batch", 1, 2), ("batch", 2, 2), ("batch", 3, 1)]
        assert recorded_sleeps == [2.0, 2.0]
        assert result.authenticated_count == 5

    @pytest.mark.asyncio
    async def test_deadline_abandons_stragglers(self, fast_settings):
        target = FakeTarget(hang_calls=True)
        plan = make_plan(fast_settings, target, level_timeout_seconds=0.2)
        result = await plan.run_level(Level("SLOW", 3, 2, 0))

        assert result.abandoned_users == 3
        assert result.authenticated_count == 3
        assert result.api_calls == 0
        assert result.elapsed_seconds < 5
        assert not result.passed
        assert target.closed_clients == 3

    @pytest.mark.asyncio
    async def test_level_windows_do_not_mix(self, fast_settings, fake_target):
        aggregator = MetricsAggregator()
        plan = LoadPlan(fast_settings, aggregator=aggregator, client_factory=fake_target.client)
        first = await plan.run_level(Level("A", 2, 2, 0))
        second = await plan.run_level(Level("B", 3, 1, 0))

        assert first.api_calls == 4
        assert second.api_calls == 3
        assert aggregator.total_recorded(Channel.API) == 7

    @pytest.mark.asyncio
    async def test_observer_sees_every_user(self, fast_settings, fake_target):
        observer = RecordingObserver()
        plan = make_plan(fast_settings, fake_target, observer=observer)
        await plan.run_level(Level("L", 4, 1, 0), index=0)

        assert observer.of("level_start") == [("level_start", 0, "L")]
        assert len(observer.of("user")) == 4
        assert observer.of("level_complete") == [("level_complete", 0, True)]


@pytest.mark.unit
class TestRun:

    @pytest.mark.asyncio
    async def test_progressive_stops_at_first_failure(self, fast_settings, fake_sleep, recorded_sleeps):
        # API calls fail only while L2 is running
        class LevelTracker(RecordingObserver):
            current = None

            def on_level_start(self, index, level):
                LevelTracker.current = level.name
                super().on_level_start(index, level)

        target = FakeTarget(call_ok=lambda endpoint: LevelTracker.current != "L2")
        levels = [Level("L1", 2, 1, 0), Level("L2", 5, 1, 0), Level("L3", 10, 1, 0)]

        alone = await make_plan(fast_settings, target, observer=LevelTracker()).run_level(levels[2])
        assert alone.passed

        observer = LevelTracker()
        plan = make_plan(fast_settings, target, observer=observer, sleep=fake_sleep, cooldown_seconds=5)
        report = await plan.run(levels, mode="progressive")

        assert [(r.name, r.passed) for r in report.levels] == [("L1", True), ("L2", False)]
        assert observer.of("level_start") == [("level_start", 0, "L1"), ("level_start", 1, "L2")]
        assert recorded_sleeps == [5]
        assert not report.all_claims_verified
        assert any(reason.startswith("L2:") for reason in report.verdict.reasons)

    @pytest.mark.asyncio
    async def test_burst_runs_every_level(self, fast_settings):
        target = FakeTarget(fail_auth_for=["loadtest1@test.com", "loadtest2@test.com"])
        plan = make_plan(fast_settings, target)
        report = await plan.run([Level("A", 2, 1, 0), Level("B", 2, 1, 0)], mode="burst")
        assert len(report.levels) == 2
        assert not any(level.passed for level in report.levels)

    @pytest.mark.asyncio
    async def test_run_report(self, fast_settings, fake_target):
        observer = RecordingObserver()
        plan = make_plan(fast_settings, fake_target, observer=observer)
        report = await plan.run([fast_settings.burst_level()])

        assert report.mode == "burst"
        assert report.all_claims_verified
        assert report.verdict.max_capacity["users"] == 5
        assert "credential_password" not in report.settings
        assert observer.events[0] == ("run_start", "burst", 1)
        assert observer.events[-1] == ("run_complete", 1)

    @pytest.mark.asyncio
    async def test_unknown_mode(self, fast_settings, fake_target):
        plan = make_plan(fast_settings, fake_target)
        with pytest.raises(HarnessFault):
            await plan.run([Level("L", 1, 1, 0)], mode="soak")

    @pytest.mark.asyncio
    async def test_requires_levels(self, fast_settings, fake_target):
        plan = make_plan(fast_settings, fake_target)
        with pytest.raises(HarnessFault):
            await plan.run([])
