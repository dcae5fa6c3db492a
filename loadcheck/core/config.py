"""Configuration models for a load-test run.

Settings come from (highest priority first) explicit overrides, environment
variables, a local ``.env`` file and the defaults below. Every option accepts a
``LOADCHECK_``-prefixed variable as well as the variable name used by the older
stress-test scripts (``TEST_CONCURRENT_USERS``, ``THRESHOLD_SUCCESS_RATE``...).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Any, List, Optional, Type, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from ..utils.errors import HarnessFault


DEFAULT_ENDPOINTS = [
    "/health",
    "/posts",
    "/api/chat/users",
    "/posts/category/technology",
    "/posts/categories?categories=technology,design",
]

M = TypeVar("M", bound=BaseModel)


def validated(model_cls: Type[M], **values: Any) -> M:
    """Build a pydantic model, turning validation errors into ``HarnessFault``."""
    try:
        return model_cls(**values)
    except ValidationError as e:
        raise HarnessFault(f"Invalid {model_cls.__name__}: {e}") from e


class ThresholdConfig(BaseModel):
    """Pass/fail thresholds applied to every level of a run."""
    model_config = ConfigDict(frozen=True)

    min_success_rate_percent: float = Field(default=85.0, ge=0, le=100)
    max_p95_latency_ms: Optional[float] = Field(default=500.0, gt=0)
    min_throughput_per_second: Optional[float] = Field(default=None, ge=0)
    auth_fraction: float = Field(default=0.8, ge=0, le=1)
    min_channel_fraction: Optional[float] = Field(default=None, ge=0, le=1)


class ClientConfig(BaseModel):
    """How a ``TargetClient`` reaches the system under test."""
    model_config = ConfigDict(frozen=True)

    base_url: str = "http://localhost:5000"
    socket_url: Optional[str] = None
    socket_path: str = "/socket.io/"
    auth_path: str = "/api/auth/login"
    register_path: str = "/api/auth/register"
    health_path: str = "/health"
    identifier_field: str = "email"
    secret_field: str = "password"
    token_fields: List[str] = Field(default_factory=lambda: ["token", "user._id"])
    auth_timeout_seconds: float = Field(default=10.0, gt=0)
    call_timeout_seconds: float = Field(default=10.0, gt=0)
    channel_timeout_seconds: float = Field(default=5.0, gt=0)
    channel_retries: int = Field(default=3, ge=0)
    retry_backoff_seconds: float = Field(default=1.0, ge=0)
    ack_event: str = "receive_message"

    @property
    def channel_url(self) -> str:
        """WebSocket URL of the Socket.IO endpoint."""
        base = (self.socket_url or self.base_url).rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        path = "/" + self.socket_path.strip("/") + "/"
        return f"{base}{path}?EIO=4&transport=websocket"


@dataclass(frozen=True)
class UserPlan:
    """Script executed by one virtual user."""

    api_call_count: int
    message_count: int
    inter_call_delay_ms: float = 50.0
    inter_message_delay_ms: Optional[float] = None
    track_delivery: bool = True
    delivery_timeout_ms: float = 5000.0
    message_event: str = "send_message"
    join_event: str = "join"
    message_receiver: Optional[str] = None

    def __post_init__(self) -> None:
        if self.api_call_count < 0 or self.message_count < 0:
            raise HarnessFault("api_call_count and message_count must be >= 0")
        if self.inter_call_delay_ms < 0 or (self.inter_message_delay_ms or 0) < 0:
            raise HarnessFault("stagger delays must be >= 0")
        if self.delivery_timeout_ms <= 0:
            raise HarnessFault("delivery_timeout_ms must be positive")

    @property
    def message_delay_ms(self) -> float:
        if self.inter_message_delay_ms is None:
            return self.inter_call_delay_ms
        return self.inter_message_delay_ms


@dataclass(frozen=True)
class Level:
    """One population size and per-actor workload."""

    name: str
    population: int
    api_calls_per_actor: int
    messages_per_actor: int

    def __post_init__(self) -> None:
        if self.population < 0:
            raise HarnessFault(f"Level {self.name!r}: population must be >= 0")
        if self.api_calls_per_actor < 0 or self.messages_per_actor < 0:
            raise HarnessFault(f"Level {self.name!r}: per-actor counts must be >= 0")

    @property
    def expected_api_calls(self) -> int:
        return self.population * self.api_calls_per_actor


def _env(name: str, legacy: Optional[str] = None) -> AliasChoices:
    choices = [f"LOADCHECK_{name.upper()}"]
    if legacy:
        choices.append(legacy)
    return AliasChoices(*choices)


class HarnessSettings(BaseSettings):
    """Environment-driven options for one harness invocation."""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Target system
    base_url: str = Field(default="http://localhost:5000", validation_alias=_env("base_url"))
    socket_url: Optional[str] = Field(default=None, validation_alias=_env("socket_url"))
    socket_path: str = Field(default="/socket.io/", validation_alias=_env("socket_path"))
    auth_path: str = Field(default="/api/auth/login", validation_alias=_env("auth_path"))
    register_path: str = Field(default="/api/auth/register", validation_alias=_env("register_path"))
    health_path: str = Field(default="/health", validation_alias=_env("health_path"))
    identifier_field: str = Field(default="email", validation_alias=_env("identifier_field"))
    secret_field: str = Field(default="password", validation_alias=_env("secret_field"))
    endpoints: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_ENDPOINTS),
        validation_alias=_env("endpoints"),
    )
    credential_template: str = Field(default="loadtest{n}@test.com", validation_alias=_env("credential_template"))
    credential_password: str = Field(default="password123", validation_alias=_env("credential_password"))

    # Workload
    population: int = Field(default=50, ge=0, validation_alias=_env("population", "TEST_CONCURRENT_USERS"))
    api_calls_per_actor: int = Field(default=100, ge=0, validation_alias=_env("api_calls_per_actor", "TEST_API_CALLS_PER_USER"))
    messages_per_actor: int = Field(default=50, ge=0, validation_alias=_env("messages_per_actor", "TEST_SOCKET_MESSAGES_PER_USER"))
    inter_call_delay_ms: float = Field(default=50.0, ge=0, validation_alias=_env("inter_call_delay_ms"))
    inter_message_delay_ms: float = Field(default=100.0, ge=0, validation_alias=_env("inter_message_delay_ms"))

    # Timeouts and retries (milliseconds)
    call_timeout_ms: float = Field(default=10000.0, gt=0, validation_alias=_env("call_timeout_ms", "TEST_TIMEOUT"))
    auth_timeout_ms: float = Field(default=10000.0, gt=0, validation_alias=_env("auth_timeout_ms"))
    channel_timeout_ms: float = Field(default=5000.0, gt=0, validation_alias=_env("channel_timeout_ms", "SOCKET_TIMEOUT"))
    channel_retries: int = Field(default=3, ge=0, validation_alias=_env("channel_retries", "SOCKET_RETRY_ATTEMPTS"))
    retry_backoff_seconds: float = Field(default=1.0, ge=0, validation_alias=_env("retry_backoff_seconds"))

    # Real-time messages
    track_delivery: bool = Field(default=True, validation_alias=_env("track_delivery"))
    delivery_timeout_ms: float = Field(default=5000.0, gt=0, validation_alias=_env("delivery_timeout_ms"))
    message_event: str = Field(default="send_message", validation_alias=_env("message_event"))
    ack_event: str = Field(default="receive_message", validation_alias=_env("ack_event"))
    join_event: str = Field(default="join", validation_alias=_env("join_event"))
    message_receiver: Optional[str] = Field(default=None, validation_alias=_env("message_receiver"))

    # Scheduling
    ramp_up_batch_size: Optional[int] = Field(default=None, ge=1, validation_alias=_env("ramp_up_batch_size"))
    ramp_up_interval_ms: float = Field(default=2000.0, ge=0, validation_alias=_env("ramp_up_interval_ms"))
    cooldown_seconds: float = Field(default=5.0, ge=0, validation_alias=_env("cooldown_seconds"))
    level_timeout_seconds: Optional[float] = Field(default=None, gt=0, validation_alias=_env("level_timeout_seconds", "TEST_DURATION"))
    max_outcomes_per_channel: Optional[int] = Field(default=None, ge=1, validation_alias=_env("max_outcomes_per_channel"))
    monitor_interval_seconds: float = Field(default=1.0, gt=0, validation_alias=_env("monitor_interval_seconds"))

    # Thresholds
    min_success_rate_percent: float = Field(default=85.0, ge=0, le=100, validation_alias=_env("min_success_rate_percent", "THRESHOLD_SUCCESS_RATE"))
    max_p95_latency_ms: Optional[float] = Field(default=500.0, gt=0, validation_alias=_env("max_p95_latency_ms", "THRESHOLD_RESPONSE_TIME"))
    min_throughput_per_second: Optional[float] = Field(default=None, ge=0, validation_alias=_env("min_throughput_per_second", "THRESHOLD_THROUGHPUT"))
    auth_fraction: float = Field(default=0.8, ge=0, le=1, validation_alias=_env("auth_fraction"))
    min_channel_fraction: Optional[float] = Field(default=None, ge=0, le=1, validation_alias=_env("min_channel_fraction"))

    @field_validator("endpoints", mode="before")
    @classmethod
    def split_endpoints(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [e.strip() for e in v.split(",") if e.strip()]
        return v

    @field_validator("endpoints")
    @classmethod
    def require_endpoints(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("at least one endpoint is required")
        return v

    @classmethod
    def load(cls, **overrides: Any) -> "HarnessSettings":
        """Read settings from the environment, then apply non-None overrides.

        Overrides are validated on top of the loaded values, so they win over
        any environment variable or ``.env`` entry.
        """
        values = {k: v for k, v in overrides.items() if v is not None}
        try:
            settings = cls()
            if values:
                settings = cls.model_validate({**settings.model_dump(), **values})
            return settings
        except ValidationError as e:
            raise HarnessFault(f"Invalid harness configuration: {e}") from e

    def thresholds(self) -> ThresholdConfig:
        return validated(
            ThresholdConfig,
            min_success_rate_percent=self.min_success_rate_percent,
            max_p95_latency_ms=self.max_p95_latency_ms,
            min_throughput_per_second=self.min_throughput_per_second,
            auth_fraction=self.auth_fraction,
            min_channel_fraction=self.min_channel_fraction,
        )

    def client_config(self) -> ClientConfig:
        return validated(
            ClientConfig,
            base_url=self.base_url,
            socket_url=self.socket_url,
            socket_path=self.socket_path,
            auth_path=self.auth_path,
            register_path=self.register_path,
            health_path=self.health_path,
            identifier_field=self.identifier_field,
            secret_field=self.secret_field,
            auth_timeout_seconds=self.auth_timeout_ms / 1000,
            call_timeout_seconds=self.call_timeout_ms / 1000,
            channel_timeout_seconds=self.channel_timeout_ms / 1000,
            channel_retries=self.channel_retries,
            retry_backoff_seconds=self.retry_backoff_seconds,
            ack_event=self.ack_event,
        )

    def user_plan(self, level: Level) -> UserPlan:
        return UserPlan(
            api_call_count=level.api_calls_per_actor,
            message_count=level.messages_per_actor,
            inter_call_delay_ms=self.inter_call_delay_ms,
            inter_message_delay_ms=self.inter_message_delay_ms,
            track_delivery=self.track_delivery,
            delivery_timeout_ms=self.delivery_timeout_ms,
            message_event=self.message_event,
            join_event=self.join_event,
            message_receiver=self.message_receiver,
        )

    def burst_level(self, name: str = "BURST") -> Level:
        """Single fixed-load level built from the workload settings."""
        return Level(
            name=name,
            population=self.population,
            api_calls_per_actor=self.api_calls_per_actor,
            messages_per_actor=self.messages_per_actor,
        )
