"""Runtime settings, read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, default))


@dataclass
class Settings:
    """Engine configuration. Defaults match the production deployment."""

    proxy_base_url: str = "http://localhost:3000"

    verification_interval_seconds: float = 60.0
    request_timeout_seconds: float = 30.0
    probe_timeout_seconds: float = 10.0
    max_retries: int = 1
    retry_backoff_base: float = 2.0

    # Periodic cross-check
    time_window_minutes: float = 15.0
    max_distance_km: float = 500.0
    # Real-time path
    realtime_time_window_minutes: float = 10.0
    realtime_max_distance_km: float = 100.0

    required_agreement: float = 0.6
    min_confidence_threshold: float = 0.7

    history_limit: int = 100
    cache_ttl_seconds: float = 3600.0
    log_level: str = "INFO"

    @property
    def time_window(self) -> timedelta:
        return timedelta(minutes=self.time_window_minutes)

    @property
    def realtime_time_window(self) -> timedelta:
        return timedelta(minutes=self.realtime_time_window_minutes)

    @classmethod
    def from_env(cls) -> Settings:
        return cls(
            proxy_base_url=os.getenv("QUAKE_PROXY_BASE_URL", cls.proxy_base_url),
            verification_interval_seconds=_env_float(
                "QUAKE_VERIFY_INTERVAL", cls.verification_interval_seconds),
            request_timeout_seconds=_env_float(
                "QUAKE_REQUEST_TIMEOUT", cls.request_timeout_seconds),
            probe_timeout_seconds=_env_float("QUAKE_PROBE_TIMEOUT", cls.probe_timeout_seconds),
            max_retries=_env_int("QUAKE_MAX_RETRIES", cls.max_retries),
            time_window_minutes=_env_float("QUAKE_TIME_WINDOW_MIN", cls.time_window_minutes),
            realtime_time_window_minutes=_env_float(
                "QUAKE_REALTIME_WINDOW_MIN", cls.realtime_time_window_minutes),
            max_distance_km=_env_float("QUAKE_MAX_DISTANCE_KM", cls.max_distance_km),
            realtime_max_distance_km=_env_float(
                "QUAKE_REALTIME_DISTANCE_KM", cls.realtime_max_distance_km),
            required_agreement=_env_float("QUAKE_REQUIRED_AGREEMENT", cls.required_agreement),
            min_confidence_threshold=_env_float(
                "QUAKE_MIN_CONFIDENCE", cls.min_confidence_threshold),
            history_limit=_env_int("QUAKE_HISTORY_LIMIT", cls.history_limit),
            cache_ttl_seconds=_env_float("QUAKE_CACHE_TTL", cls.cache_ttl_seconds),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
        )
