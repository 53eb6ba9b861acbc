from __future__ import annotations

from datetime import timedelta

import pytest

from feedsync.config import EngineSettings, TenantFeedConfig


def test_engine_settings_from_env_applies_minimums():
    settings = EngineSettings.from_env(
        {
            "FEEDSYNC_HARD_MIN_INTERVAL_S": "20",
            "FEEDSYNC_MIN_SYNC_INTERVAL_S": "5",
            "FEEDSYNC_MAX_PUBLISH_ATTEMPTS": "not-a-number",
            "FEEDSYNC_MERGE_WINDOW_MINUTES": "45",
        }
    )
    assert settings.hard_min_interval_s == 20
    assert settings.min_sync_interval_s == 20
    assert settings.max_publish_attempts == 5
    assert settings.merge_window_minutes == 45


def test_tenant_config_clamps_interval_to_hard_floor():
    settings = EngineSettings()
    config = TenantFeedConfig.from_dict(
        {"tenant_id": "tenant_a", "min_sync_interval_s": 3, "weather_zones": [" txz211 ", ""]},
        settings=settings,
    )
    assert config.min_sync_interval_s == settings.hard_min_interval_s
    assert config.weather_zones == ["TXZ211"]
    assert config.alert_rules.threshold == settings.alert_threat_threshold


def test_category_window_overrides_default():
    config = TenantFeedConfig.from_dict(
        {"tenant_id": "tenant_a", "merge_window_minutes": 30, "category_merge_windows": {"medical": 10}},
        settings=EngineSettings(),
    )
    assert config.merge_window_for("medical") == timedelta(minutes=10)
    assert config.merge_window_for("fire") == timedelta(minutes=30)
    assert config.merge_window_for(None) == timedelta(minutes=30)


def test_unknown_category_is_rejected():
    with pytest.raises(ValueError, match="unknown call type category"):
        TenantFeedConfig.from_dict(
            {"tenant_id": "tenant_a", "category_merge_windows": {"volcano": 5}},
            settings=EngineSettings(),
        )


def test_feed_enabled_flags():
    config = TenantFeedConfig(tenant_id="tenant_a", weather_enabled=False)
    assert config.feed_enabled("incidents") is True
    assert config.feed_enabled("weather") is False
    assert config.feed_enabled("traffic") is False
