"""Runtime configuration: dataclass defaults, overridable from the environment."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Final

from gym_proximity.backend import BackendConfig
from gym_proximity.geocode import DEFAULT_USER_AGENT, IpLookupConfig, NominatimConfig
from gym_proximity.models import (
    BEST_LOCATION_MAX_AGE_HOURS,
    ENTITY_TTL,
    SIGNIFICANT_DISTANCE_M,
    SMART_DETECTION_MAX_AGE_HOURS,
    SYNC_COOLDOWN,
    SYNC_POLL_INTERVAL,
)

ENV_PREFIX: Final[str] = "GYM_PROXIMITY_"
DEFAULT_STORAGE_PATH: Final[str] = "~/.gym_proximity/storage.json"


@dataclass(frozen=True, slots=True)
class SyncConfig:
    """Proximity sync tuning."""

    cooldown_minutes: float = SYNC_COOLDOWN.total_seconds() / 60.0
    poll_interval_minutes: float = SYNC_POLL_INTERVAL.total_seconds() / 60.0
    significant_distance_m: float = SIGNIFICANT_DISTANCE_M

    @property
    def cooldown(self) -> timedelta:
        return timedelta(minutes=self.cooldown_minutes)

    @property
    def poll_interval(self) -> timedelta:
        return timedelta(minutes=self.poll_interval_minutes)


@dataclass(frozen=True, slots=True)
class CacheConfig:
    """Entity cache tuning."""

    ttl_seconds: float = ENTITY_TTL.total_seconds()

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=self.ttl_seconds)


@dataclass(frozen=True, slots=True)
class AcquisitionConfig:
    """Location acquisition tuning."""

    gps_timeout_seconds: float = 10.0
    best_max_age_hours: float = BEST_LOCATION_MAX_AGE_HOURS
    smart_max_age_hours: float = SMART_DETECTION_MAX_AGE_HOURS


@dataclass(frozen=True, slots=True)
class Settings:
    """Aggregate settings for the CLI and dashboard."""

    storage_path: str = DEFAULT_STORAGE_PATH
    backend: BackendConfig = field(default_factory=BackendConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    acquisition: AcquisitionConfig = field(default_factory=AcquisitionConfig)
    nominatim: NominatimConfig = field(default_factory=NominatimConfig)
    ip_lookup: IpLookupConfig = field(default_factory=IpLookupConfig)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """Build settings from ``GYM_PROXIMITY_*`` variables.

        Raises:
            ValueError: If a numeric variable cannot be parsed.
        """

        env = os.environ if environ is None else environ
        base = cls()

        user_agent = _env_str(env, "USER_AGENT", DEFAULT_USER_AGENT)
        http_timeout = _env_float(env, "HTTP_TIMEOUT_SECONDS", base.backend.timeout_seconds)

        return cls(
            storage_path=_env_str(env, "STORAGE_PATH", base.storage_path),
            backend=replace(
                base.backend,
                base_url=_env_str(env, "BACKEND_URL", base.backend.base_url),
                auth_token=_env_str(env, "AUTH_TOKEN", base.backend.auth_token),
                timeout_seconds=http_timeout,
                user_agent=user_agent,
            ),
            sync=replace(
                base.sync,
                cooldown_minutes=_env_float(env, "SYNC_COOLDOWN_MINUTES", base.sync.cooldown_minutes),
                poll_interval_minutes=_env_float(env, "SYNC_POLL_MINUTES", base.sync.poll_interval_minutes),
                significant_distance_m=_env_float(env, "SYNC_THRESHOLD_METERS", base.sync.significant_distance_m),
            ),
            cache=replace(base.cache, ttl_seconds=_env_float(env, "CACHE_TTL_SECONDS", base.cache.ttl_seconds)),
            acquisition=base.acquisition,
            nominatim=replace(base.nominatim, user_agent=user_agent, timeout_seconds=http_timeout),
            ip_lookup=replace(base.ip_lookup, user_agent=user_agent),
        )


def _env_str(env: Mapping[str, str], name: str, default: str) -> str:
    value = env.get(ENV_PREFIX + name, "").strip()
    return value or default


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    value = env.get(ENV_PREFIX + name, "").strip()
    if not value:
        return default
    try:
        parsed = float(value)
    except ValueError as exc:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {value!r}") from exc
    if parsed < 0:
        raise ValueError(f"{ENV_PREFIX}{name} must not be negative, got {value!r}")
    return parsed
