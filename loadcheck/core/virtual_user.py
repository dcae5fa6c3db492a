"""A single simulated end-user and the script it executes."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

from .client import ChannelHandle, Credentials, Result, TargetClient
from .config import UserPlan
from .metrics import Channel, MetricsAggregator, Outcome
from ..utils.errors import ChannelFailure, HarnessFault

logger = logging.getLogger(__name__)


class UserState(str, Enum):
    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    AUTH_FAILED = "auth_failed"
    AUTHENTICATED = "authenticated"
    RUNNING = "running"
    DONE = "done"


@dataclass
class VirtualUserResult:
    """Per-actor summary consumed by the level scheduler."""

    user_id: str
    authenticated: bool = False
    channel_opened: bool = False
    channel_dropped: bool = False
    api_outcomes: List[Outcome] = field(default_factory=list)
    message_outcomes: List[Outcome] = field(default_factory=list)
    state: UserState = UserState.IDLE
    error: Optional[str] = None
    completed: bool = True

    @property
    def successful_api_calls(self) -> int:
        return sum(1 for o in self.api_outcomes if o.success)

    @property
    def messages_delivered(self) -> int:
        return sum(1 for o in self.message_outcomes if o.success)


class VirtualUser:
    """Authenticates, then runs its API calls and real-time messages concurrently.

    Every outcome is recorded into the shared aggregator as soon as it
    resolves so that snapshots taken mid-level see live data.
    """

    def __init__(
        self,
        user_id: str,
        credentials: Credentials,
        client: TargetClient,
        aggregator: MetricsAggregator,
        endpoints: Sequence[str],
    ):
        if not endpoints:
            raise HarnessFault("a virtual user needs at least one endpoint")
        self.user_id = user_id
        self.credentials = credentials
        self.client = client
        self.aggregator = aggregator
        self.endpoints = list(endpoints)
        self.state = UserState.IDLE
        self.authenticated = False
        self.channel_opened = False
        self.channel_dropped = False
        self.error: Optional[str] = None
        self._api_outcomes: List[Outcome] = []
        self._message_outcomes: List[Outcome] = []

    async def run(self, plan: UserPlan) -> VirtualUserResult:
        """Execute the full script and return the per-actor summary."""
        try:
            token = await self._authenticate()
            if token is None:
                return self.partial_result(completed=True)

            self.state = UserState.RUNNING
            started = asyncio.get_running_loop().time()
            calls = [self._api_call(i, token, started, plan) for i in range(plan.api_call_count)]
            results = await asyncio.gather(*calls, self._run_channel(plan), return_exceptions=True)
            for res in results:
                if isinstance(res, Exception):
                    logger.error(f"[{self.user_id}] unexpected error in scheduled operation: {res}")
                    self.error = self.error or str(res)
        except Exception as e:
            logger.exception(f"[{self.user_id}] virtual user crashed")
            self.error = str(e)
        if self.state != UserState.AUTH_FAILED:
            self.state = UserState.DONE
        return self.partial_result(completed=True)

    def partial_result(self, completed: bool = False) -> VirtualUserResult:
        """Whatever this user has achieved so far."""
        return VirtualUserResult(
            user_id=self.user_id,
            authenticated=self.authenticated,
            channel_opened=self.channel_opened,
            channel_dropped=self.channel_dropped,
            api_outcomes=list(self._api_outcomes),
            message_outcomes=list(self._message_outcomes),
            state=self.state,
            error=self.error,
            completed=completed,
        )

    async def _authenticate(self) -> Optional[str]:
        self.state = UserState.AUTHENTICATING
        result = await self.client.authenticate(self.credentials)
        self._record(Channel.AUTH, result, target=self.client.config.auth_path)
        if not result.ok:
            self.state = UserState.AUTH_FAILED
            self.error = result.error
            logger.warning(f"[{self.user_id}] authentication failed: {result.error}")
            return None
        self.state = UserState.AUTHENTICATED
        self.authenticated = True
        logger.debug(f"[{self.user_id}] authenticated in {result.latency_ms:.0f}ms")
        return result.value

    async def _api_call(self, index: int, token: str, started: float, plan: UserPlan) -> None:
        await _sleep_until(started + index * plan.inter_call_delay_ms / 1000)
        endpoint = self.endpoints[index % len(self.endpoints)]
        result = await self.client.call(endpoint, token)
        self._api_outcomes.append(self._record(Channel.API, result, target=endpoint))

    async def _run_channel(self, plan: UserPlan) -> None:
        result = await self.client.open_channel()
        self._record(Channel.REALTIME_CONNECT, result, target="connect")
        if not result.ok:
            logger.warning(f"[{self.user_id}] channel unavailable: {result.error}")
            return

        handle: ChannelHandle = result.value
        self.channel_opened = True
        try:
            try:
                await handle.join(self.user_id, event=plan.join_event)
            except ChannelFailure as e:
                logger.warning(f"[{self.user_id}] join failed: {e}")
            opened = asyncio.get_running_loop().time()
            sends = [self._send_message(handle, i, opened, plan) for i in range(plan.message_count)]
            await asyncio.gather(*sends)
        finally:
            self.channel_dropped = handle.dropped
            await handle.close()

    async def _send_message(self, handle: ChannelHandle, index: int, opened: float, plan: UserPlan) -> None:
        await _sleep_until(opened + index * plan.message_delay_ms / 1000)
        message_id = f"{self.user_id}-msg-{index}"
        payload = {
            "sender": self.user_id,
            "receiver": plan.message_receiver or self.user_id,
            "content": f"Test message {index + 1} from {self.user_id}",
            "timestamp": int(time.time() * 1000),
            "message_id": message_id,
        }
        start = time.perf_counter()
        tracker = None
        try:
            if plan.track_delivery:
                tracker = handle.track(message_id, plan.delivery_timeout_ms / 1000)
            await handle.send(plan.message_event, payload)
        except ChannelFailure as e:
            handle.discard(message_id)
            self._message_outcomes.append(self._outcome(Channel.REALTIME_MESSAGE, False, _ms_since(start), str(e), message_id))
            return

        if tracker is None:
            self._message_outcomes.append(self._outcome(Channel.REALTIME_MESSAGE, True, _ms_since(start), None, message_id))
            return
        try:
            latency = await tracker
            outcome = self._outcome(Channel.REALTIME_MESSAGE, True, latency, None, message_id)
        except asyncio.TimeoutError as e:
            outcome = self._outcome(Channel.REALTIME_MESSAGE, False, _ms_since(start), str(e), message_id)
        except ChannelFailure as e:
            outcome = self._outcome(Channel.REALTIME_MESSAGE, False, _ms_since(start), str(e), message_id)
        self._message_outcomes.append(outcome)

    def _record(self, channel: Channel, result: Result, target: Optional[str] = None) -> Outcome:
        return self._outcome(channel, result.ok, result.latency_ms, result.error, target)

    def _outcome(self, channel: Channel, success: bool, latency_ms: float, error: Optional[str], target: Optional[str]) -> Outcome:
        outcome = Outcome(
            channel=channel,
            success=success,
            latency_ms=latency_ms,
            error=error,
            user_id=self.user_id,
            target=target,
        )
        self.aggregator.record(outcome)
        return outcome


async def _sleep_until(deadline: float) -> None:
    delay = deadline - asyncio.get_running_loop().time()
    if delay > 0:
        await asyncio.sleep(delay)


def _ms_since(start: float) -> float:
    return (time.perf_counter() - start) * 1000
