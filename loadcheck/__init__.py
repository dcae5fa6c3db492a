"""
loadcheck: concurrent load-test harness for HTTP + Socket.IO backends.

Run a fixed-load burst or a progressive ramp and gate CI on the verdict:
    plan = LoadPlan(HarnessSettings.load())
    report = await plan.run(get_preset("baseline"))
"""

__version__ = "0.1.0"

from .core.config import ClientConfig, HarnessSettings, Level, ThresholdConfig, UserPlan
from .core.metrics import Channel, MetricsAggregator, MetricsSnapshot, Outcome
from .core.presets import PRESETS, get_preset
from .core.report import RunReport
from .core.scheduler import LevelResult, LoadPlan, RunMode
from .core.verdict import RunVerdict, Verdict, VerdictEngine

__all__ = [
    "Channel",
    "ClientConfig",
    "HarnessSettings",
    "Level",
    "LevelResult",
    "LoadPlan",
    "MetricsAggregator",
    "MetricsSnapshot",
    "Outcome",
    "PRESETS",
    "RunMode",
    "RunReport",
    "RunVerdict",
    "ThresholdConfig",
    "UserPlan",
    "Verdict",
    "VerdictEngine",
    "get_preset",
]
