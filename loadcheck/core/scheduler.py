"""Level scheduling: spawn virtual users, wait for them, evaluate the level."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from .client import Credentials, TargetClient
from .config import HarnessSettings, Level
from .metrics import Channel, MetricsAggregator, MetricsSnapshot
from .monitor import ResourceMonitor
from .observers import LoadObserver, NullLoadObserver
from .provision import credential_for
from .report import RunReport
from .verdict import VerdictEngine
from .virtual_user import VirtualUser, VirtualUserResult
from ..utils.errors import HarnessFault

logger = logging.getLogger(__name__)

ClientFactory = Callable[[], TargetClient]
CredentialsFactory = Callable[[int], Credentials]


class RunMode(str, Enum):
    BURST = "burst"
    PROGRESSIVE = "progressive"


@dataclass
class LevelResult:
    """One row of the final report."""

    name: str
    population: int
    api_calls_per_actor: int = 0
    messages_per_actor: int = 0
    authenticated_count: int = 0
    channels_opened: int = 0
    channels_dropped: int = 0
    api_calls: int = 0
    successful_api_calls: int = 0
    throughput: float = 0.0
    success_rate: float = 0.0
    avg_latency: float = 0.0
    p95_latency: float = 0.0
    messages_sent: int = 0
    messages_delivered: int = 0
    elapsed_seconds: float = 0.0
    abandoned_users: int = 0
    peak_concurrent_users: int = 0
    snapshots: Dict[Channel, MetricsSnapshot] = field(default_factory=dict)
    passed: bool = False
    reasons: List[str] = field(default_factory=list)

    @property
    def auth_rate(self) -> float:
        return self.authenticated_count / self.population * 100 if self.population else 0.0

    @property
    def delivery_rate(self) -> float:
        return self.messages_delivered / self.messages_sent * 100 if self.messages_sent else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "population": self.population,
            "api_calls_per_actor": self.api_calls_per_actor,
            "messages_per_actor": self.messages_per_actor,
            "authenticated_count": self.authenticated_count,
            "channels_opened": self.channels_opened,
            "channels_dropped": self.channels_dropped,
            "api_calls": self.api_calls,
            "successful_api_calls": self.successful_api_calls,
            "throughput": self.throughput,
            "success_rate": self.success_rate,
            "avg_latency": self.avg_latency,
            "p95_latency": self.p95_latency,
            "messages_sent": self.messages_sent,
            "messages_delivered": self.messages_delivered,
            "elapsed_seconds": self.elapsed_seconds,
            "abandoned_users": self.abandoned_users,
            "peak_concurrent_users": self.peak_concurrent_users,
            "auth_rate": self.auth_rate,
            "delivery_rate": self.delivery_rate,
            "passed": self.passed,
            "reasons": list(self.reasons),
            "snapshots": {ch.value: snap.to_dict() for ch, snap in self.snapshots.items()},
        }


class LoadPlan:
    """Runs one or more levels against the target.

    Args:
        settings: Harness settings (timeouts, ramp-up, cooldown, thresholds).
        aggregator: Shared outcome store. Levels read it through time windows,
            so one aggregator can serve a whole progressive run.
        client_factory: Builds one ``TargetClient`` per virtual user.
        credentials_factory: Maps a 1-based user number to its credentials.
        observer: Progress hooks.
        monitor: Optional resource sampler running for the whole run.
        sleep: Used for ramp-up intervals and cooldowns.
    """

    def __init__(
        self,
        settings: HarnessSettings,
        aggregator: Optional[MetricsAggregator] = None,
        client_factory: Optional[ClientFactory] = None,
        credentials_factory: Optional[CredentialsFactory] = None,
        observer: Optional[LoadObserver] = None,
        verdict_engine: Optional[VerdictEngine] = None,
        monitor: Optional[ResourceMonitor] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings
        self.aggregator = aggregator or MetricsAggregator(settings.max_outcomes_per_channel)
        self.client_config = settings.client_config()
        self.client_factory = client_factory or (lambda: TargetClient(self.client_config))
        self.credentials_factory = credentials_factory or (
            lambda n: credential_for(n, settings.credential_template, settings.credential_password)
        )
        self.observer = observer or NullLoadObserver()
        self.verdict_engine = verdict_engine or VerdictEngine(settings.thresholds())
        self.monitor = monitor
        self._sleep = sleep
        self._active_users = 0
        self._peak_users = 0

    async def run(self, levels: Sequence[Level], mode: str = RunMode.BURST) -> RunReport:
        """Run ``levels`` and build the final report.

        ``burst`` runs every level regardless of outcome; ``progressive``
        stops after the first failing level.
        """
        try:
            mode = RunMode(mode)
        except ValueError as e:
            raise HarnessFault(f"Unknown run mode {mode!r}; expected one of {[m.value for m in RunMode]}") from e
        if not levels:
            raise HarnessFault("at least one level is required")

        started_at = time.time()
        self.observer.on_run_start(mode.value, levels)
        if self.monitor is not None:
            self.monitor.start()
        try:
            if mode == RunMode.PROGRESSIVE:
                results = await self.run_progressive(levels)
            else:
                results = []
                for index, level in enumerate(levels):
                    results.append(await self.run_level(level, index))
        finally:
            if self.monitor is not None:
                await self.monitor.stop()

        self.observer.on_run_complete(results)
        return RunReport(
            mode=mode.value,
            levels=results,
            verdict=self.verdict_engine.summarize(results),
            settings=self.settings.model_dump(mode="json", exclude={"credential_password"}),
            started_at=started_at,
            ended_at=time.time(),
            resources=self.monitor.summary() if self.monitor is not None else None,
        )

    async def run_progressive(self, levels: Sequence[Level]) -> List[LevelResult]:
        results: List[LevelResult] = []
        for index, level in enumerate(levels):
            if index > 0 and self.settings.cooldown_seconds > 0:
                logger.info(f"Cooling down for {self.settings.cooldown_seconds:g}s before {level.name}")
                await self._sleep(self.settings.cooldown_seconds)
            result = await self.run_level(level, index)
            results.append(result)
            if not result.passed:
                logger.warning(f"Level {level.name} failed, stopping progressive run")
                break
        return results

    async def run_level(self, level: Level, index: int = 0) -> LevelResult:
        """Run one level to completion (or to its deadline) and evaluate it."""
        self.observer.on_level_start(index, level)
        loop = asyncio.get_running_loop()
        timeout = self.settings.level_timeout_seconds
        deadline = loop.time() + timeout if timeout else None
        started_at = time.time()

        self._active_users = 0
        self._peak_users = 0
        plan = self.settings.user_plan(level)
        users = [
            VirtualUser(
                user_id=f"user_{n}",
                credentials=self.credentials_factory(n),
                client=self.client_factory(),
                aggregator=self.aggregator,
                endpoints=self.settings.endpoints,
            )
            for n in range(1, level.population + 1)
        ]

        tasks: Dict[str, asyncio.Task] = {}
        batch_size = self.settings.ramp_up_batch_size or max(level.population, 1)
        interval = self.settings.ramp_up_interval_ms / 1000
        for batch, offset in enumerate(range(0, level.population, batch_size), 1):
            if offset and interval > 0:
                await self._sleep(_bounded(interval, deadline, loop))
            if deadline is not None and loop.time() >= deadline:
                logger.warning(f"Level {level.name}: deadline reached during ramp-up")
                break
            members = users[offset:offset + batch_size]
            self.observer.on_batch_start(index, level, batch, len(members))
            for user in members:
                tasks[user.user_id] = asyncio.create_task(self._run_user(index, user, plan))

        for user in users:
            if user.user_id not in tasks:
                await user.client.aclose()

        pending = set()
        if tasks:
            remaining = max(0.0, deadline - loop.time()) if deadline is not None else None
            _, pending = await asyncio.wait(tasks.values(), timeout=remaining)
            if pending:
                logger.warning(f"Level {level.name}: abandoning {len(pending)} users at the deadline")
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        user_results = []
        for user in users:
            task = tasks.get(user.user_id)
            if task is None or task in pending or task.cancelled():
                user_results.append(user.partial_result(completed=False))
            elif task.exception() is not None:
                logger.error(f"[{user.user_id}] task failed: {task.exception()}")
                user_results.append(user.partial_result(completed=False))
            else:
                user_results.append(task.result())

        ended_at = time.time()
        result = self._build_result(level, user_results, started_at, ended_at)
        verdict = self.verdict_engine.evaluate(result)
        result.passed = verdict.passed
        result.reasons = verdict.reasons
        self.observer.on_level_complete(index, result)
        return result

    async def _run_user(self, index: int, user: VirtualUser, plan) -> VirtualUserResult:
        self._active_users += 1
        self._peak_users = max(self._peak_users, self._active_users)
        try:
            async with user.client:
                result = await user.run(plan)
        finally:
            self._active_users -= 1
        self.observer.on_user_complete(index, result)
        return result

    def _build_result(
        self,
        level: Level,
        user_results: List[VirtualUserResult],
        started_at: float,
        ended_at: float,
    ) -> LevelResult:
        snapshots = self.aggregator.snapshots(since=started_at, until=ended_at)
        api = snapshots[Channel.API]
        elapsed = max(0.0, ended_at - started_at)
        return LevelResult(
            name=level.name,
            population=level.population,
            api_calls_per_actor=level.api_calls_per_actor,
            messages_per_actor=level.messages_per_actor,
            authenticated_count=sum(1 for r in user_results if r.authenticated),
            channels_opened=sum(1 for r in user_results if r.channel_opened),
            channels_dropped=sum(1 for r in user_results if r.channel_dropped),
            api_calls=api.count,
            successful_api_calls=api.success_count,
            throughput=api.count / elapsed if elapsed > 0 else 0.0,
            success_rate=api.success_rate,
            avg_latency=api.avg_latency,
            p95_latency=api.p95,
            messages_sent=sum(len(r.message_outcomes) for r in user_results),
            messages_delivered=sum(r.messages_delivered for r in user_results),
            elapsed_seconds=elapsed,
            abandoned_users=sum(1 for r in user_results if not r.completed),
            peak_concurrent_users=self._peak_users,
            snapshots=snapshots,
        )


def _bounded(delay: float, deadline: Optional[float], loop: asyncio.AbstractEventLoop) -> float:
    if deadline is None:
        return delay
    return max(0.0, min(delay, deadline - loop.time()))
