from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

from jsonschema import ValidationError, validate

from feedsync.call_types import category_for, describe
from feedsync.clock import parse_timestamp, to_iso
from feedsync.config import CALL_TYPE_CATEGORIES
from feedsync.errors import MalformedRecordError
from feedsync.models import ALERT_MESSAGE_TYPES, NormalizedAlert, NormalizedIncident, UnitReport
from feedsync.unit_tracker import STATUS_PHASES, phase_for_status

logger = logging.getLogger(__name__)

INCIDENT_ID_KEYS = ("PulsePointIncidentID", "ID", "id", "IncidentID", "external_id")
INCIDENT_CALL_TYPE_KEYS = ("PulsePointIncidentCallType", "CallType", "CallTypeDescription", "call_type")
INCIDENT_ADDRESS_KEYS = ("FullDisplayAddress", "Address", "DisplayAddress", "full_address")
INCIDENT_OPENED_KEYS = ("CallReceivedDateTime", "TimeCallOpened", "CallTime", "IncidentTime", "call_received_time")
INCIDENT_CLOSED_KEYS = ("TimeCallClosed", "CloseTime", "ClosedDateTime", "call_closed_time")

_NON_EMPTY_STRING = {"type": "string", "pattern": r"\S"}

INCIDENT_IDENTITY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "allOf": [
        {
            "anyOf": [
                {"required": [key], "properties": {key: _NON_EMPTY_STRING}}
                for key in INCIDENT_ADDRESS_KEYS
            ]
        },
        {
            "anyOf": [
                {"required": [key], "properties": {key: _NON_EMPTY_STRING}}
                for key in INCIDENT_CALL_TYPE_KEYS
            ]
        },
    ],
}

ALERT_IDENTITY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["id", "event"],
    "properties": {
        "id": _NON_EMPTY_STRING,
        "event": _NON_EMPTY_STRING,
        "effective": {"type": ["string", "null"]},
        "onset": {"type": ["string", "null"]},
        "sent": {"type": ["string", "null"]},
        "references": {"type": ["array", "null"]},
    },
    "anyOf": [
        {"required": ["effective"], "properties": {"effective": _NON_EMPTY_STRING}},
        {"required": ["onset"], "properties": {"onset": _NON_EMPTY_STRING}},
        {"required": ["sent"], "properties": {"sent": _NON_EMPTY_STRING}},
    ],
}

SEVERITIES = ("Extreme", "Severe", "Moderate", "Minor", "Unknown")
URGENCIES = ("Immediate", "Expected", "Future", "Past", "Unknown")
CERTAINTIES = ("Observed", "Likely", "Possible", "Unlikely", "Unknown")

_UNIT_SUFFIX_RE = re.compile(
    r"\b(?:APT|APARTMENT|UNIT|STE|SUITE|RM|ROOM|BLDG|BUILDING|SPC|SPACE|LOT|TRLR)\b\.?\s*#?\s*[A-Z0-9-]+"
)
_HASH_SUFFIX_RE = re.compile(r"#\s*[A-Z0-9-]+")

STREET_ABBREVIATIONS = {
    "STREET": "ST",
    "AVENUE": "AVE",
    "BOULEVARD": "BLVD",
    "DRIVE": "DR",
    "ROAD": "RD",
    "LANE": "LN",
    "COURT": "CT",
    "CIRCLE": "CIR",
    "PLACE": "PL",
    "HIGHWAY": "HWY",
    "PARKWAY": "PKWY",
    "NORTH": "N",
    "SOUTH": "S",
    "EAST": "E",
    "WEST": "W",
}

_UNIT_TIME_KEYS = {
    "dispatched": ("TimeDispatched", "DispatchDateTime", "UnitDispatchDateTime"),
    "acknowledged": ("TimeAcknowledged", "UnitAcknowledgedDateTime"),
    "en_route": ("TimeEnroute", "TimeEnRoute", "UnitEnrouteDateTime"),
    "on_scene": ("TimeOnScene", "TimeArrived", "UnitOnSceneDateTime"),
    "cleared": ("TimeCleared", "UnitClearedDateTime"),
}


def normalize_address(address: str) -> str:
    """Matching-only projection: lower-case, unit suffixes dropped, whitespace collapsed."""
    text = str(address or "").upper()
    text = _UNIT_SUFFIX_RE.sub(" ", text)
    text = _HASH_SUFFIX_RE.sub(" ", text)
    text = re.sub(r"[.,;]", " ", text)
    words = [STREET_ABBREVIATIONS.get(word, word) for word in text.split()]
    return " ".join(words).lower()


def _first(raw: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def _optional_timestamp(value: Any, *, field: str, external_id: str | None) -> datetime | None:
    try:
        return parse_timestamp(value)
    except ValueError:
        logger.warning("normalizer_optional_timestamp_dropped field=%s external_id=%s", field, external_id)
        return None


def _coordinate(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _enum(value: Any, allowed: tuple[str, ...]) -> str:
    text = str(value or "").strip().capitalize()
    return text if text in allowed else "Unknown"


def normalize_units(raw_units: Any, *, received_at: datetime) -> list[UnitReport]:
    if not isinstance(raw_units, list):
        return []
    observed = to_iso(received_at)
    reports: list[UnitReport] = []
    for item in raw_units:
        if isinstance(item, str):
            item = {"UnitID": item}
        if not isinstance(item, Mapping):
            continue
        unit_id = str(item.get("UnitID") or item.get("unit_id") or item.get("Unit") or "").strip()
        # VTAC entries are radio talk groups, not apparatus.
        if not unit_id or unit_id.upper().startswith("VTAC"):
            continue
        times: dict[str, str | None] = {}
        for phase, keys in _UNIT_TIME_KEYS.items():
            stamp = _optional_timestamp(_first(item, keys), field=f"unit.{phase}", external_id=unit_id)
            if stamp is not None:
                times[phase] = to_iso(stamp)
        status = str(item.get("PulsePointDispatchStatus") or item.get("status") or "").strip().upper()
        if times.get("cleared"):
            status = "CL"
        if not status:
            status = "DP"
        phase = phase_for_status(status)
        if status not in STATUS_PHASES:
            logger.info("normalizer_unknown_unit_status unit_id=%s status=%s", unit_id, status)
        times.setdefault(phase, observed)
        reports.append(UnitReport(unit_id=unit_id, status=status, phase=phase, times=times))
    return reports


def normalize_incident(
    raw: Mapping[str, Any],
    *,
    tenant_id: str,
    received_at: datetime,
) -> NormalizedIncident:
    external = _first(raw, INCIDENT_ID_KEYS) if isinstance(raw, Mapping) else None
    external_id = str(external).strip() if external is not None else None
    try:
        validate(instance=raw, schema=INCIDENT_IDENTITY_SCHEMA)
    except ValidationError as exc:
        raise MalformedRecordError(
            f"incident identity fields missing or invalid: {exc.message}",
            field="address/call_type",
            external_id=external_id,
        ) from exc

    full_address = str(_first(raw, INCIDENT_ADDRESS_KEYS)).strip()
    normalized_address = normalize_address(full_address)
    if not normalized_address:
        raise MalformedRecordError("address normalizes to empty", field="address", external_id=external_id)
    call_type = str(_first(raw, INCIDENT_CALL_TYPE_KEYS)).strip()

    try:
        call_received_time = parse_timestamp(_first(raw, INCIDENT_OPENED_KEYS))
    except ValueError as exc:
        raise MalformedRecordError(
            "call received time is not a timestamp",
            field="call_received_time",
            external_id=external_id,
        ) from exc
    if call_received_time is None:
        call_received_time = received_at
    call_closed_time = _optional_timestamp(
        _first(raw, INCIDENT_CLOSED_KEYS),
        field="call_closed_time",
        external_id=external_id,
    )

    latitude = _coordinate(raw.get("Latitude", raw.get("latitude")))
    longitude = _coordinate(raw.get("Longitude", raw.get("longitude")))
    if latitude == 0 and longitude == 0:
        latitude = longitude = None

    category = category_for(call_type)
    description = raw.get("Description") or raw.get("description")
    return NormalizedIncident(
        tenant_id=tenant_id,
        external_id=external_id or None,
        call_type=call_type,
        call_type_category=category,
        call_type_description=describe(call_type),
        full_address=full_address,
        normalized_address=normalized_address,
        call_received_time=call_received_time,
        status="closed" if call_closed_time is not None else "active",
        call_closed_time=call_closed_time,
        latitude=latitude,
        longitude=longitude,
        description=str(description).strip() if description else None,
        units=normalize_units(raw.get("Unit", raw.get("units")), received_at=received_at),
    )


SUBMISSION_SOURCES = ("user_submitted", "manual")


def normalize_submission(
    data: Mapping[str, Any],
    *,
    tenant_id: str,
    source: str,
    received_at: datetime,
) -> NormalizedIncident:
    """Normalize a report entered by a person; it carries no feed identifier."""
    if source not in SUBMISSION_SOURCES:
        raise ValueError(f"unsupported submission source: {source}")
    raw = {k: v for k, v in data.items() if k not in INCIDENT_ID_KEYS}
    incident = normalize_incident(raw, tenant_id=tenant_id, received_at=received_at)
    category = data.get("call_type_category")
    if category and category not in CALL_TYPE_CATEGORIES:
        raise MalformedRecordError(f"unknown call type category: {category}", field="call_type_category")
    return replace(
        incident,
        external_id=None,
        source=source,
        call_type_category=category or incident.call_type_category,
    )


def _reference_ids(props: Mapping[str, Any]) -> list[str]:
    found: list[str] = []
    for ref in props.get("references") or []:
        if isinstance(ref, Mapping):
            ident = ref.get("identifier") or ref.get("@id") or ref.get("id")
        else:
            ident = ref
        if ident:
            found.append(str(ident).strip())
    for key in ("previous_ids", "previousNwsIds"):
        for ident in props.get(key) or []:
            if ident:
                found.append(str(ident).strip())
    return found


def _zone_code(value: Any) -> str:
    text = str(value or "").strip().rstrip("/")
    return text.rsplit("/", 1)[-1].upper()


def normalize_alert(raw: Mapping[str, Any], *, tenant_id: str) -> NormalizedAlert:
    props: dict[str, Any] = {}
    if isinstance(raw, Mapping):
        nested = raw.get("properties")
        props = dict(nested) if isinstance(nested, Mapping) else dict(raw)
        if not props.get("id") and raw.get("id"):
            props["id"] = raw.get("id")
    try:
        validate(instance=props, schema=ALERT_IDENTITY_SCHEMA)
    except ValidationError as exc:
        raise MalformedRecordError(
            f"alert identity fields missing or invalid: {exc.message}",
            field="id/event/effective",
            external_id=str(props.get("id") or "") or None,
        ) from exc

    external_id = str(props["id"]).strip()
    try:
        effective = parse_timestamp(props.get("effective") or props.get("onset") or props.get("sent"))
    except ValueError as exc:
        raise MalformedRecordError(
            "alert effective time is not a timestamp",
            field="effective",
            external_id=external_id,
        ) from exc
    if effective is None:
        raise MalformedRecordError("alert effective time is missing", field="effective", external_id=external_id)

    previous_ids: list[str] = []
    for ident in _reference_ids(props):
        if ident and ident != external_id and ident not in previous_ids:
            previous_ids.append(ident)

    message_type = str(props.get("messageType") or props.get("message_type") or "Alert").strip().capitalize()
    if message_type not in ALERT_MESSAGE_TYPES:
        message_type = "Alert"

    zones = props.get("affectedZones") or props.get("affected_zones") or []
    return NormalizedAlert(
        tenant_id=tenant_id,
        external_id=external_id,
        event=str(props["event"]).strip(),
        effective=effective,
        message_type=message_type,
        headline=props.get("headline"),
        description=props.get("description"),
        instruction=props.get("instruction"),
        severity=_enum(props.get("severity"), SEVERITIES),
        urgency=_enum(props.get("urgency"), URGENCIES),
        certainty=_enum(props.get("certainty"), CERTAINTIES),
        category=props.get("category"),
        onset=_optional_timestamp(props.get("onset"), field="onset", external_id=external_id),
        expires=_optional_timestamp(props.get("expires"), field="expires", external_id=external_id),
        ends=_optional_timestamp(props.get("ends"), field="ends", external_id=external_id),
        affected_zones=[_zone_code(z) for z in zones if _zone_code(z)],
        previous_ids=previous_ids,
    )


def select_recent_incidents(
    incidents: list[NormalizedIncident],
    *,
    now: datetime,
    lookback: timedelta,
    limit: int,
) -> list[NormalizedIncident]:
    """Keep incidents received inside the lookback window, newest first, capped at ``limit``."""
    cutoff = now - lookback
    recent = [x for x in incidents if x.call_received_time >= cutoff]
    recent.sort(key=lambda x: x.call_received_time, reverse=True)
    return recent[: max(1, int(limit))]
