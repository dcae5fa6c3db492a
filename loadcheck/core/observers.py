"""Observer hooks for load-plan progress."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, List, Optional, Sequence

if TYPE_CHECKING:
    from .config import Level
    from .scheduler import LevelResult
    from .virtual_user import VirtualUserResult

logger = logging.getLogger(__name__)


class LoadObserver:
    """Base observer with no-op hooks for run lifecycle events."""

    def on_run_start(self, mode: str, levels: Sequence["Level"]) -> None:
        """Called once before the first level starts."""

    def on_level_start(self, index: int, level: "Level") -> None:
        """Called when a level begins spawning users."""

    def on_batch_start(self, index: int, level: "Level", batch: int, size: int) -> None:
        """Called when a ramp-up batch of users is started."""

    def on_user_complete(self, index: int, result: "VirtualUserResult") -> None:
        """Called when a virtual user finishes its script."""

    def on_level_complete(self, index: int, result: "LevelResult") -> None:
        """Called after a level has been evaluated."""

    def on_run_complete(self, results: Sequence["LevelResult"]) -> None:
        """Called after the last level ran (or the run stopped early)."""


class NullLoadObserver(LoadObserver):
    """Default observer that ignores all notifications."""

    pass


class CompositeLoadObserver(LoadObserver):
    """Fan-out observer; a failing observer never breaks the run."""

    def __init__(self, observers: Optional[List[LoadObserver]] = None):
        self.observers: List[LoadObserver] = [o for o in (observers or []) if o is not None]

    def add_observer(self, observer: Optional[LoadObserver]) -> None:
        if observer is not None:
            self.observers.append(observer)

    def _dispatch(self, method: str, *args: Any) -> None:
        for observer in self.observers:
            callback = getattr(observer, method, None)
            if not callable(callback):
                continue
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Observer callback {method} failed: {e}")

    def on_run_start(self, mode, levels):
        self._dispatch("on_run_start", mode, levels)

    def on_level_start(self, index, level):
        self._dispatch("on_level_start", index, level)

    def on_batch_start(self, index, level, batch, size):
        self._dispatch("on_batch_start", index, level, batch, size)

    def on_user_complete(self, index, result):
        self._dispatch("on_user_complete", index, result)

    def on_level_complete(self, index, result):
        self._dispatch("on_level_complete", index, result)

    def on_run_complete(self, results):
        self._dispatch("on_run_complete", results)


class LoggingLoadObserver(LoadObserver):
    """Writes level progress to the module logger."""

    def on_level_start(self, index, level):
        logger.info(
            f"Level {index + 1} {level.name}: {level.population} users, "
            f"{level.api_calls_per_actor} API calls and {level.messages_per_actor} messages each "
            f"({level.expected_api_calls} API calls expected)"
        )

    def on_batch_start(self, index, level, batch, size):
        logger.info(f"Level {level.name}: starting batch {batch} ({size} users)")

    def on_level_complete(self, index, result):
        status = "PASSED" if result.passed else "FAILED"
        logger.info(
            f"Level {result.name} {status}: auth {result.authenticated_count}/{result.population}, "
            f"API {result.successful_api_calls}/{result.api_calls} ({result.success_rate:.1f}%), "
            f"throughput {result.throughput:.1f} req/s, p95 {result.p95_latency:.0f}ms"
        )
        for reason in result.reasons:
            logger.warning(f"Level {result.name}: {reason}")
