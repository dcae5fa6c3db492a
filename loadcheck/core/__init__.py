"""Core load-test components."""

from .client import ChannelHandle, Credentials, Result, TargetClient
from .metrics import MetricsAggregator
from .scheduler import LevelResult, LoadPlan
from .verdict import VerdictEngine
from .virtual_user import VirtualUser, VirtualUserResult

__all__ = [
    "ChannelHandle",
    "Credentials",
    "LevelResult",
    "LoadPlan",
    "MetricsAggregator",
    "Result",
    "TargetClient",
    "VerdictEngine",
    "VirtualUser",
    "VirtualUserResult",
]
