"""Unit tests for the VirtualUser script."""

import asyncio

import pytest

from loadcheck.core.client import Credentials
from loadcheck.core.config import UserPlan
from loadcheck.core.metrics import Channel, MetricsAggregator
from loadcheck.core.virtual_user import UserState, VirtualUser
from loadcheck.utils.errors import HarnessFault

from fixtures.fake_target import FakeTarget


ENDPOINTS = ["/health", "/posts"]


def make_user(target, aggregator, user_id="user_1", endpoints=ENDPOINTS):
    creds = Credentials(f"{user_id}@test.com", "password123")
    return VirtualUser(user_id, creds, target.client(), aggregator, endpoints)


def plan(**kwargs):
    defaults = {"api_call_count": 4, "message_count": 0, "inter_call_delay_ms": 0, "inter_message_delay_ms": 0}
    defaults.update(kwargs)
    return UserPlan(**defaults)


@pytest.mark.unit
class TestVirtualUser:

    def test_requires_endpoints(self, fake_target, aggregator):
        with pytest.raises(HarnessFault):
            make_user(fake_target, aggregator, endpoints=[])

    @pytest.mark.asyncio
    async def test_auth_failure_stops_early(self, aggregator):
        target = FakeTarget(fail_auth_for=["user_1@test.com"])
        user = make_user(target, aggregator)
        result = await user.run(plan(message_count=3))

        assert result.state == UserState.AUTH_FAILED
        assert not result.authenticated
        assert result.api_outcomes == []
        assert result.message_outcomes == []
        assert not result.channel_opened
        assert sum(target.calls.values()) == 0
        auth = aggregator.snapshot(Channel.AUTH)
        assert auth.count == 1
        assert auth.failure_count == 1

    @pytest.mark.asyncio
    async def test_api_calls_rotate_endpoints(self, fake_target, aggregator):
        user = make_user(fake_target, aggregator)
        result = await user.run(plan(api_call_count=5))

        assert result.state == UserState.DONE
        assert result.authenticated
        assert len(result.api_outcomes) == 5
        assert result.successful_api_calls == 5
        assert fake_target.calls == {"/health": 3, "/posts": 2}
        assert aggregator.snapshot(Channel.API).count == 5

    @pytest.mark.asyncio
    async def test_failed_calls_do_not_stop_the_user(self, aggregator):
        target = FakeTarget(call_ok=lambda endpoint: endpoint != "/posts")
        user = make_user(target, aggregator)
        result = await user.run(plan(api_call_count=4))

        assert len(result.api_outcomes) == 4
        assert result.successful_api_calls == 2
        snap = aggregator.snapshot(Channel.API)
        assert snap.failure_count == 2
        assert snap.success_rate == 50.0

    @pytest.mark.asyncio
    async def test_calls_are_staggered(self, fake_target, aggregator):
        user = make_user(fake_target, aggregator)
        loop = asyncio.get_running_loop()
        start = loop.time()
        await user.run(plan(api_call_count=3, inter_call_delay_ms=50))
        assert loop.time() - start >= 0.09

    @pytest.mark.asyncio
    async def test_messages_are_delivered(self, fake_target, aggregator):
        user = make_user(fake_target, aggregator)
        result = await user.run(plan(api_call_count=1, message_count=3))

        assert result.channel_opened
        assert not result.channel_dropped
        assert len(result.message_outcomes) == 3
        assert result.messages_delivered == 3
        assert aggregator.snapshot(Channel.REALTIME_CONNECT).success_count == 1
        assert aggregator.snapshot(Channel.REALTIME_MESSAGE).success_count == 3

        socket = fake_target.sockets[0]
        events = [p.event for p in socket.events]
        assert events[0] == "join"
        assert events.count("send_message") == 3
        payload = next(p.args[0] for p in socket.events if p.event == "send_message")
        assert payload["sender"] == "user_1"
        assert payload["receiver"] == "user_1"
        assert payload["content"].startswith("Test message")
        assert socket.closed

    @pytest.mark.asyncio
    async def test_undelivered_messages_time_out(self, aggregator):
        target = FakeTarget(echo=False)
        user = make_user(target, aggregator)
        result = await user.run(plan(api_call_count=0, message_count=2, delivery_timeout_ms=50))

        assert len(result.message_outcomes) == 2
        assert result.messages_delivered == 0
        snap = aggregator.snapshot(Channel.REALTIME_MESSAGE)
        assert snap.failure_count == 2
        assert "acknowledgment" in snap.errors[0][0]

    @pytest.mark.asyncio
    async def test_untracked_messages_count_on_send(self, aggregator):
        target = FakeTarget(echo=False)
        user = make_user(target, aggregator)
        result = await user.run(plan(api_call_count=0, message_count=2, track_delivery=False))
        assert result.messages_delivered == 2

    @pytest.mark.asyncio
    async def test_channel_failure_keeps_api_calls(self, aggregator):
        target = FakeTarget(channel_ok=False)
        user = make_user(target, aggregator)
        result = await user.run(plan(api_call_count=3, message_count=5))

        assert result.state == UserState.DONE
        assert not result.channel_opened
        assert result.message_outcomes == []
        assert result.successful_api_calls == 3
        assert aggregator.snapshot(Channel.REALTIME_CONNECT).failure_count == 1

    @pytest.mark.asyncio
    async def test_partial_result_when_cancelled(self, aggregator):
        target = FakeTarget(hang_calls=True)
        user = make_user(target, aggregator)
        task = asyncio.create_task(user.run(plan(api_call_count=2)))
        await asyncio.sleep(0.02)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        partial = user.partial_result()
        assert partial.authenticated
        assert not partial.completed
        assert partial.api_outcomes == []
