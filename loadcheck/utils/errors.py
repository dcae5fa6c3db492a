"""Custom exceptions for the load-test harness."""

from __future__ import annotations

from typing import Optional


class LoadCheckError(Exception):
    """Base exception for all loadcheck errors."""
    pass


class AuthFailure(LoadCheckError):
    """Raised when a virtual user cannot authenticate."""
    pass


class CallFailure(LoadCheckError):
    """Raised when a single request/response call fails."""

    def __init__(self, message: str, *, endpoint: str = "", status: Optional[int] = None):
        parts = [message]
        loc = []
        if endpoint:
            loc.append(f"endpoint={endpoint}")
        if status is not None:
            loc.append(f"status={status}")
        if loc:
            parts.append(f"({', '.join(loc)})")
        super().__init__(" ".join(parts))
        self.endpoint = endpoint
        self.status = status


class ChannelFailure(LoadCheckError):
    """Raised when the real-time channel cannot be opened or used."""
    pass


class HarnessFault(LoadCheckError):
    """Raised when the harness itself is misconfigured and the run cannot be trusted."""
    pass


class TargetUnavailableError(HarnessFault):
    """Raised when the system under test fails its health precheck."""
    pass
