"""Coordinator configuration for tripcoord."""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping
from typing import Any

from tripcoord._constants import EXTENDED_WINDOW_SECONDS, RED_WINDOW_SECONDS, TICK_INTERVAL_SECONDS
from tripcoord.exceptions import ConfigError


def _env_number(env: Mapping[str, str], key: str, cast: type) -> Any:
    raw = env.get(key)
    if raw is None:
        return None
    try:
        return cast(raw.strip())
    except ValueError as exc:
        raise ConfigError(f"{key} must be a {cast.__name__}, got {raw!r}") from exc


@dataclasses.dataclass(frozen=True)
class CoordinatorConfig:
    """Runtime configuration.

    Parameters
    ----------
    red_window_seconds : int
        Standard wait window after arrival at a stop.
    extended_window_seconds : int
        Upper bound of the extended wait window.  Wait requests are
        accepted until this many seconds after arrival.
    tick_interval : float
        Seconds between countdown recomputations while a trip is at a stop.
    coalesce_delay : float
        Seconds the live view waits after the first change notification
        before recomputing, so that bursts collapse into one push.
    subscriber_queue_size : int
        Pending updates kept per subscriber; the oldest is dropped when full.
    retry_attempts : int
        Attempts made by :func:`tripcoord.retry.call_with_backoff`.
    retry_base_delay : float
        First backoff delay in seconds; doubled per attempt.
    retry_max_delay : float
        Cap on a single backoff delay.
    http_host : str
        Bind address of the HTTP adapter.
    http_port : int
        Bind port of the HTTP adapter.
    """

    red_window_seconds: int = RED_WINDOW_SECONDS
    extended_window_seconds: int = EXTENDED_WINDOW_SECONDS
    tick_interval: float = TICK_INTERVAL_SECONDS
    coalesce_delay: float = 0.05
    subscriber_queue_size: int = 32
    retry_attempts: int = 3
    retry_base_delay: float = 0.2
    retry_max_delay: float = 2.0
    http_host: str = "127.0.0.1"
    http_port: int = 8080

    def __post_init__(self) -> None:
        if self.red_window_seconds <= 0:
            raise ConfigError("red_window_seconds must be positive")
        if self.extended_window_seconds < self.red_window_seconds:
            raise ConfigError("extended_window_seconds must not be shorter than red_window_seconds")
        if self.tick_interval <= 0:
            raise ConfigError("tick_interval must be positive")
        if self.coalesce_delay < 0:
            raise ConfigError("coalesce_delay must not be negative")
        if self.subscriber_queue_size < 1:
            raise ConfigError("subscriber_queue_size must be at least 1")
        if self.retry_attempts < 1:
            raise ConfigError("retry_attempts must be at least 1")

    @classmethod
    def from_env(cls, **overrides: Any) -> CoordinatorConfig:
        """Create configuration from ``TRIPCOORD_*`` environment variables.

        Explicit keyword arguments override environment values.
        """
        env = os.environ

        _ENV_CONFIG_MAP: dict[str, tuple[str, type]] = {
            "TRIPCOORD_RED_WINDOW_SECONDS": ("red_window_seconds", int),
            "TRIPCOORD_EXTENDED_WINDOW_SECONDS": ("extended_window_seconds", int),
            "TRIPCOORD_TICK_INTERVAL": ("tick_interval", float),
            "TRIPCOORD_COALESCE_DELAY": ("coalesce_delay", float),
            "TRIPCOORD_SUBSCRIBER_QUEUE_SIZE": ("subscriber_queue_size", int),
            "TRIPCOORD_RETRY_ATTEMPTS": ("retry_attempts", int),
            "TRIPCOORD_RETRY_BASE_DELAY": ("retry_base_delay", float),
            "TRIPCOORD_RETRY_MAX_DELAY": ("retry_max_delay", float),
            "TRIPCOORD_HTTP_PORT": ("http_port", int),
        }
        config_kwargs: dict[str, Any] = {}
        for env_key, (field_name, cast) in _ENV_CONFIG_MAP.items():
            if field_name in overrides:
                continue
            value = _env_number(env, env_key, cast)
            if value is not None:
                config_kwargs[field_name] = value

        host = env.get("TRIPCOORD_HTTP_HOST")
        if host is not None and "http_host" not in overrides:
            config_kwargs["http_host"] = host

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
