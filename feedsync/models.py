from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from feedsync.clock import to_iso

ALERT_MESSAGE_TYPES = ("Alert", "Update", "Cancel")

# Record keys grouped for last-write-wins commits; a write only replaces the groups it touched.
INCIDENT_FIELD_GROUPS: dict[str, tuple[str, ...]] = {
    "content": (
        "external_id",
        "source",
        "call_type",
        "call_type_category",
        "call_type_description",
        "full_address",
        "normalized_address",
        "latitude",
        "longitude",
        "description",
        "call_received_time",
        "merge_key",
    ),
    "units": ("units",),
    "lifecycle": ("status", "call_closed_time", "superseded_by", "moderation_status"),
    "linkage": ("group_id",),
    "propagation": ("propagation",),
}

ALERT_FIELD_GROUPS: dict[str, tuple[str, ...]] = {
    "content": (
        "external_id",
        "event",
        "headline",
        "description",
        "instruction",
        "severity",
        "urgency",
        "certainty",
        "category",
        "effective",
        "onset",
        "expires",
        "ends",
        "affected_zones",
        "message_type",
    ),
    "lifecycle": ("status", "superseded_by"),
    "linkage": ("previous_ids",),
    "propagation": ("propagation",),
}


def field_groups_for(feed_type: str) -> dict[str, tuple[str, ...]]:
    return INCIDENT_FIELD_GROUPS if feed_type == "incidents" else ALERT_FIELD_GROUPS


def new_record_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


@dataclass
class UnitReport:
    unit_id: str
    status: str
    phase: str
    times: dict[str, str | None] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "unit_id": self.unit_id,
            "status": self.status,
            "phase": self.phase,
            "times": dict(self.times),
        }


@dataclass
class NormalizedIncident:
    tenant_id: str
    external_id: str | None
    call_type: str
    call_type_category: str
    call_type_description: str
    full_address: str
    normalized_address: str
    call_received_time: datetime
    status: str = "active"
    call_closed_time: datetime | None = None
    latitude: float | None = None
    longitude: float | None = None
    description: str | None = None
    source: str = "external_feed"
    units: list[UnitReport] = field(default_factory=list)

    def content_fields(self) -> dict[str, Any]:
        return {
            "external_id": self.external_id,
            "source": self.source,
            "call_type": self.call_type,
            "call_type_category": self.call_type_category,
            "call_type_description": self.call_type_description,
            "full_address": self.full_address,
            "normalized_address": self.normalized_address,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "description": self.description,
            "call_received_time": to_iso(self.call_received_time),
        }


@dataclass
class NormalizedAlert:
    tenant_id: str
    external_id: str
    event: str
    effective: datetime
    message_type: str = "Alert"
    headline: str | None = None
    description: str | None = None
    instruction: str | None = None
    severity: str = "Unknown"
    urgency: str = "Unknown"
    certainty: str = "Unknown"
    category: str | None = None
    onset: datetime | None = None
    expires: datetime | None = None
    ends: datetime | None = None
    affected_zones: list[str] = field(default_factory=list)
    previous_ids: list[str] = field(default_factory=list)

    def content_fields(self) -> dict[str, Any]:
        return {
            "external_id": self.external_id,
            "event": self.event,
            "headline": self.headline,
            "description": self.description,
            "instruction": self.instruction,
            "severity": self.severity,
            "urgency": self.urgency,
            "certainty": self.certainty,
            "category": self.category,
            "effective": to_iso(self.effective),
            "onset": to_iso(self.onset),
            "expires": to_iso(self.expires),
            "ends": to_iso(self.ends),
            "affected_zones": list(self.affected_zones),
            "message_type": self.message_type,
        }
