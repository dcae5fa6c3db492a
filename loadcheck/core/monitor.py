"""Resource usage of the harness process while a run is in progress."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

import psutil

logger = logging.getLogger(__name__)

MB = 1024 * 1024


@dataclass(frozen=True)
class ResourceSample:
    timestamp: float
    cpu_percent: float
    rss_mb: float
    system_memory_percent: float


class ResourceMonitor:
    """Samples CPU, RSS and system memory on a background task.

    Args:
        interval: Seconds between samples.
        leak_threshold: Fractional RSS growth above which a warning is logged.
    """

    def __init__(self, interval: float = 1.0, leak_threshold: float = 0.5, process: Optional[psutil.Process] = None):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval
        self.leak_threshold = leak_threshold
        self.process = process or psutil.Process()
        self.samples: List[ResourceSample] = []
        self._initial_rss: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def sample(self) -> ResourceSample:
        """Take one sample now and keep it."""
        rss = self.process.memory_info().rss / MB
        if self._initial_rss is None:
            self._initial_rss = rss
        sample = ResourceSample(
            timestamp=time.time(),
            cpu_percent=self.process.cpu_percent(),
            rss_mb=rss,
            system_memory_percent=psutil.virtual_memory().percent,
        )
        self.samples.append(sample)
        return sample

    def start(self) -> None:
        if self.running:
            return
        self.process.cpu_percent()  # first call primes the counter
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self.sample()
        summary = self.summary()
        logger.info(
            f"Harness peak memory {summary['peak_rss_mb']:.1f}MB "
            f"(growth {summary['memory_growth_percent']:.1f}%), peak CPU {summary['peak_cpu_percent']:.1f}%"
        )
        if summary["leak_suspected"]:
            logger.warning(f"Potential memory leak: harness memory grew by {summary['memory_growth_percent']:.1f}%")

    async def _loop(self) -> None:
        while True:
            try:
                sample = self.sample()
                logger.debug(f"Resource usage - CPU: {sample.cpu_percent:.1f}%, Memory: {sample.rss_mb:.1f}MB")
            except psutil.Error as e:
                logger.error(f"Resource monitoring error: {e}")
                return
            await asyncio.sleep(self.interval)

    def summary(self) -> Dict[str, Any]:
        if not self.samples:
            return {
                "samples": 0,
                "peak_rss_mb": 0.0,
                "peak_cpu_percent": 0.0,
                "peak_system_memory_percent": 0.0,
                "memory_growth_percent": 0.0,
                "leak_suspected": False,
            }
        initial = self._initial_rss or self.samples[0].rss_mb
        peak = max(s.rss_mb for s in self.samples)
        growth = (peak - initial) / initial * 100 if initial else 0.0
        return {
            "samples": len(self.samples),
            "peak_rss_mb": peak,
            "peak_cpu_percent": max(s.cpu_percent for s in self.samples),
            "peak_system_memory_percent": max(s.system_memory_percent for s in self.samples),
            "memory_growth_percent": growth,
            "leak_suspected": growth > self.leak_threshold * 100,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {"summary": self.summary(), "samples": [asdict(s) for s in self.samples]}
