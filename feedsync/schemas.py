from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class SyncRequest(BaseModel):
    force: bool = False


class PublishRulesBody(BaseModel):
    enabled: bool = True
    call_types: list[str] = Field(default_factory=list)
    exclude_medical: bool = False
    min_units: int = Field(default=0, ge=0)
    delay_seconds: int = Field(default=0, ge=0)


class AlertRulesBody(BaseModel):
    enabled: bool = True
    threshold: int | None = Field(default=None, ge=0, le=100)


class TenantConfigRequest(BaseModel):
    agency_ids: list[str] = Field(default_factory=list)
    weather_zones: list[str] = Field(default_factory=list)
    incidents_enabled: bool = True
    weather_enabled: bool = True
    min_sync_interval_s: int | None = Field(default=None, ge=1, le=3600)
    merge_window_minutes: int | None = Field(default=None, ge=1, le=1440)
    category_merge_windows: dict[str, int] = Field(default_factory=dict)
    stale_timeout_minutes: int | None = Field(default=None, ge=1)
    max_publish_attempts: int | None = Field(default=None, ge=1, le=50)
    publish_rules: PublishRulesBody = Field(default_factory=PublishRulesBody)
    alert_rules: AlertRulesBody = Field(default_factory=AlertRulesBody)
    confirm: bool = False

    def config_data(self) -> dict[str, Any]:
        # Unset numeric fields fall back to the engine defaults.
        return self.model_dump(exclude={"confirm"}, exclude_none=True)


class RepublishRequest(BaseModel):
    reset_attempts: bool = False


CallTypeCategory = Literal["fire", "medical", "rescue", "traffic", "hazmat", "other"]


class IncidentSubmissionRequest(BaseModel):
    call_type: str = Field(min_length=1)
    call_type_category: CallTypeCategory | None = None
    full_address: str = Field(min_length=1)
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    units: list[str] = Field(default_factory=list)
    description: str | None = None
    call_received_time: datetime | None = None

    def submission_data(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ManualIncidentUpdateRequest(BaseModel):
    call_type: str | None = Field(default=None, min_length=1)
    call_type_category: CallTypeCategory | None = None
    full_address: str | None = Field(default=None, min_length=1)
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    units: list[str] | None = None
    description: str | None = None
    status: Literal["active", "closed"] | None = None


class ModerationRequest(BaseModel):
    decision: Literal["approved", "rejected"]
    note: str | None = None


class IncidentLinkRequest(BaseModel):
    record_ids: list[str] = Field(min_length=2, max_length=2)


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
