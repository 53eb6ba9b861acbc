from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Any

CALL_TYPE_CATEGORIES = ("fire", "medical", "rescue", "traffic", "hazmat", "other")
FEED_TYPES = ("incidents", "weather")


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


@dataclass(frozen=True)
class EngineSettings:
    """Process-wide defaults; per-tenant values in TenantFeedConfig override them."""

    min_sync_interval_s: int = 120
    hard_min_interval_s: int = 15
    merge_window_minutes: int = 30
    stale_timeout_minutes: int = 120
    max_publish_attempts: int = 5
    publish_backoff_base_ms: int = 1000
    publish_backoff_max_ms: int = 300000
    publish_timeout_ms: int = 10000
    feed_timeout_s: int = 15
    incident_lookback_hours: int = 6
    incident_max_batch: int = 200
    alert_threat_threshold: int = 55
    alert_repost_interval_hours: int = 6

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EngineSettings":
        env = os.environ if environ is None else environ
        hard_min = _env_int(env, "FEEDSYNC_HARD_MIN_INTERVAL_S", default=15, minimum=1)
        return cls(
            min_sync_interval_s=_env_int(env, "FEEDSYNC_MIN_SYNC_INTERVAL_S", default=120, minimum=hard_min),
            hard_min_interval_s=hard_min,
            merge_window_minutes=_env_int(env, "FEEDSYNC_MERGE_WINDOW_MINUTES", default=30, minimum=1),
            stale_timeout_minutes=_env_int(env, "FEEDSYNC_STALE_TIMEOUT_MINUTES", default=120, minimum=1),
            max_publish_attempts=_env_int(env, "FEEDSYNC_MAX_PUBLISH_ATTEMPTS", default=5, minimum=1),
            publish_backoff_base_ms=_env_int(env, "FEEDSYNC_PUBLISH_BACKOFF_BASE_MS", default=1000, minimum=0),
            publish_backoff_max_ms=_env_int(env, "FEEDSYNC_PUBLISH_BACKOFF_MAX_MS", default=300000, minimum=0),
            publish_timeout_ms=_env_int(env, "FEEDSYNC_PUBLISH_TIMEOUT_MS", default=10000, minimum=1),
            feed_timeout_s=_env_int(env, "FEEDSYNC_FEED_TIMEOUT_S", default=15, minimum=1),
            incident_lookback_hours=_env_int(env, "FEEDSYNC_INCIDENT_LOOKBACK_HOURS", default=6, minimum=1),
            incident_max_batch=_env_int(env, "FEEDSYNC_INCIDENT_MAX_BATCH", default=200, minimum=1),
            alert_threat_threshold=_env_int(env, "FEEDSYNC_ALERT_THREAT_THRESHOLD", default=55, minimum=0),
            alert_repost_interval_hours=_env_int(env, "FEEDSYNC_ALERT_REPOST_INTERVAL_HOURS", default=6, minimum=1),
        )


@dataclass
class PublishRules:
    enabled: bool = True
    call_types: list[str] = field(default_factory=list)
    exclude_medical: bool = False
    min_units: int = 0
    delay_seconds: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "PublishRules":
        data = data or {}
        return cls(
            enabled=bool(data.get("enabled", True)),
            call_types=[str(x).strip() for x in data.get("call_types") or [] if str(x).strip()],
            exclude_medical=bool(data.get("exclude_medical", False)),
            min_units=max(0, int(data.get("min_units", 0) or 0)),
            delay_seconds=max(0, int(data.get("delay_seconds", 0) or 0)),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "call_types": list(self.call_types),
            "exclude_medical": self.exclude_medical,
            "min_units": self.min_units,
            "delay_seconds": self.delay_seconds,
        }


@dataclass
class AlertRules:
    enabled: bool = True
    threshold: int = 55

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None, *, default_threshold: int) -> "AlertRules":
        data = data or {}
        return cls(
            enabled=bool(data.get("enabled", True)),
            threshold=max(0, int(data.get("threshold", default_threshold) or 0)),
        )

    def as_dict(self) -> dict[str, Any]:
        return {"enabled": self.enabled, "threshold": self.threshold}


@dataclass
class TenantFeedConfig:
    tenant_id: str
    agency_ids: list[str] = field(default_factory=list)
    weather_zones: list[str] = field(default_factory=list)
    incidents_enabled: bool = True
    weather_enabled: bool = True
    min_sync_interval_s: int = 120
    merge_window_minutes: int = 30
    category_merge_windows: dict[str, int] = field(default_factory=dict)
    stale_timeout_minutes: int = 120
    max_publish_attempts: int = 5
    publish_rules: PublishRules = field(default_factory=PublishRules)
    alert_rules: AlertRules = field(default_factory=AlertRules)

    @classmethod
    def defaults(cls, tenant_id: str, settings: EngineSettings) -> "TenantFeedConfig":
        return cls(
            tenant_id=tenant_id,
            min_sync_interval_s=settings.min_sync_interval_s,
            merge_window_minutes=settings.merge_window_minutes,
            stale_timeout_minutes=settings.stale_timeout_minutes,
            max_publish_attempts=settings.max_publish_attempts,
            alert_rules=AlertRules(threshold=settings.alert_threat_threshold),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], *, settings: EngineSettings) -> "TenantFeedConfig":
        base = cls.defaults(str(data["tenant_id"]), settings)
        windows: dict[str, int] = {}
        for category, minutes in (data.get("category_merge_windows") or {}).items():
            if category not in CALL_TYPE_CATEGORIES:
                raise ValueError(f"unknown call type category: {category}")
            windows[str(category)] = max(1, int(minutes))
        return replace(
            base,
            agency_ids=[str(x).strip() for x in data.get("agency_ids") or [] if str(x).strip()],
            weather_zones=[str(x).strip().upper() for x in data.get("weather_zones") or [] if str(x).strip()],
            incidents_enabled=bool(data.get("incidents_enabled", True)),
            weather_enabled=bool(data.get("weather_enabled", True)),
            min_sync_interval_s=max(
                settings.hard_min_interval_s,
                int(data.get("min_sync_interval_s", base.min_sync_interval_s)),
            ),
            merge_window_minutes=max(1, int(data.get("merge_window_minutes", base.merge_window_minutes))),
            category_merge_windows=windows,
            stale_timeout_minutes=max(1, int(data.get("stale_timeout_minutes", base.stale_timeout_minutes))),
            max_publish_attempts=max(1, int(data.get("max_publish_attempts", base.max_publish_attempts))),
            publish_rules=PublishRules.from_dict(data.get("publish_rules")),
            alert_rules=AlertRules.from_dict(
                data.get("alert_rules"),
                default_threshold=settings.alert_threat_threshold,
            ),
        )

    def merge_window_for(self, category: str | None) -> timedelta:
        minutes = self.category_merge_windows.get(str(category or ""), self.merge_window_minutes)
        return timedelta(minutes=max(1, int(minutes)))

    def feed_enabled(self, feed_type: str) -> bool:
        if feed_type == "incidents":
            return self.incidents_enabled
        if feed_type == "weather":
            return self.weather_enabled
        return False

    def as_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "agency_ids": list(self.agency_ids),
            "weather_zones": list(self.weather_zones),
            "incidents_enabled": self.incidents_enabled,
            "weather_enabled": self.weather_enabled,
            "min_sync_interval_s": self.min_sync_interval_s,
            "merge_window_minutes": self.merge_window_minutes,
            "category_merge_windows": dict(self.category_merge_windows),
            "stale_timeout_minutes": self.stale_timeout_minutes,
            "max_publish_attempts": self.max_publish_attempts,
            "publish_rules": self.publish_rules.as_dict(),
            "alert_rules": self.alert_rules.as_dict(),
        }
