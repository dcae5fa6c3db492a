"""Load-test accounts and the pre-run health check."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .client import Credentials, TargetClient
from ..utils.errors import HarnessFault, TargetUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE = "loadtest{n}@test.com"
DEFAULT_PASSWORD = "password123"


def credential_for(n: int, template: str = DEFAULT_TEMPLATE, password: str = DEFAULT_PASSWORD) -> Credentials:
    """Credentials of the ``n``-th (1-based) load-test account."""
    if "{n}" not in template:
        raise HarnessFault(f"credential template {template!r} must contain '{{n}}'")
    return Credentials(identifier=template.format(n=n), secret=password, name=f"LoadTest User {n}")


def generate_credentials(count: int, template: str = DEFAULT_TEMPLATE, password: str = DEFAULT_PASSWORD) -> List[Credentials]:
    if count < 0:
        raise HarnessFault("credential count must be >= 0")
    return [credential_for(n, template, password) for n in range(1, count + 1)]


@dataclass
class ProvisionSummary:
    created: List[str] = field(default_factory=list)
    existing: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def usable(self) -> int:
        return len(self.created) + len(self.existing)


async def provision_users(
    client: TargetClient,
    credentials: Sequence[Credentials],
    max_concurrency: int = 10,
) -> ProvisionSummary:
    """Register every account, falling back to a login when registration is
    refused (usually because the account already exists)."""
    summary = ProvisionSummary()
    semaphore = asyncio.Semaphore(max_concurrency)

    async def provision_one(cred: Credentials) -> None:
        async with semaphore:
            registered = await client.register(cred)
            if registered.ok:
                summary.created.append(cred.identifier)
                logger.debug(f"Registered {cred.identifier}")
                return
            login = await client.authenticate(cred)
            if login.ok:
                summary.existing.append(cred.identifier)
                logger.debug(f"{cred.identifier} already exists")
            else:
                summary.failed[cred.identifier] = f"register: {registered.error}; login: {login.error}"
                logger.warning(f"Could not provision {cred.identifier}: {login.error}")

    await asyncio.gather(*(provision_one(c) for c in credentials))
    logger.info(
        f"Provisioned {len(credentials)} accounts: {len(summary.created)} created, "
        f"{len(summary.existing)} existing, {len(summary.failed)} failed"
    )
    return summary


async def check_target_health(client: TargetClient, timeout: float = 5.0) -> float:
    """Probe the health endpoint; returns its latency in ms.

    Raises:
        TargetUnavailableError: If the target does not answer successfully.
    """
    result = await client.health_check(timeout=timeout)
    if not result.ok:
        raise TargetUnavailableError(
            f"Target {client.config.base_url} is not healthy: {result.error}. "
            f"Make sure the server is running."
        )
    logger.info(f"Target {client.config.base_url} is healthy ({result.latency_ms:.0f}ms)")
    return result.latency_ms
