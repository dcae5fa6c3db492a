import os

import pytest

from loadcheck.core.config import HarnessSettings
from loadcheck.core.metrics import MetricsAggregator

from fixtures.fake_target import FakeTarget


ENV_PREFIXES = ("LOADCHECK_", "TEST_", "THRESHOLD_", "SOCKET_")


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast isolated tests")
    config.addinivalue_line("markers", "integration: tests spanning several components")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Isolate settings from the developer's environment and .env file."""
    for name in list(os.environ):
        if name.upper().startswith(ENV_PREFIXES):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def fast_settings():
    """Settings with no stagger, ramp-up or cooldown delays."""
    return HarnessSettings.load(
        population=5,
        api_calls_per_actor=3,
        messages_per_actor=0,
        inter_call_delay_ms=0,
        inter_message_delay_ms=0,
        ramp_up_interval_ms=0,
        cooldown_seconds=0,
        retry_backoff_seconds=0,
    )


@pytest.fixture
def aggregator():
    return MetricsAggregator()


@pytest.fixture
def fake_target():
    return FakeTarget()


@pytest.fixture
def recorded_sleeps():
    return []


@pytest.fixture
def fake_sleep(recorded_sleeps):
    async def sleep(seconds):
        recorded_sleeps.append(seconds)

    return sleep
