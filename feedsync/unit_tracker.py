"""Per-unit response timelines.

Units move through an ordered set of phases. Updates may arrive in any order, so the
reducer keeps the furthest phase as the displayed status and only backfills timestamps
for earlier phases. Every function here is pure.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from feedsync.clock import parse_timestamp, to_iso

PHASES = ("dispatched", "acknowledged", "en_route", "on_scene", "cleared")
PHASE_RANK = {name: idx for idx, name in enumerate(PHASES)}

STATUS_PHASES: dict[str, str] = {
    "DP": "dispatched",
    "AK": "acknowledged",
    "ER": "en_route",
    "SG": "en_route",
    "OS": "on_scene",
    "AE": "on_scene",
    "TR": "on_scene",
    "TA": "on_scene",
    "CL": "cleared",
    "AV": "cleared",
    "AQ": "cleared",
    "AR": "cleared",
}

_PHASE_ALIASES = {"available": "cleared", "enroute": "en_route", "onscene": "on_scene"}

PHASE_STATUS = {
    "dispatched": "DP",
    "acknowledged": "AK",
    "en_route": "ER",
    "on_scene": "OS",
    "cleared": "CL",
}

# camelCase keys used by the older array shape
_LEGACY_TIME_KEYS = {
    "timeDispatched": "dispatched",
    "timeAcknowledged": "acknowledged",
    "timeEnroute": "en_route",
    "timeOnScene": "on_scene",
    "timeCleared": "cleared",
}


def phase_for_status(status: str | None) -> str:
    code = str(status or "").strip().upper()
    if code in STATUS_PHASES:
        return STATUS_PHASES[code]
    lowered = code.lower().replace(" ", "_")
    if lowered in PHASE_RANK:
        return lowered
    return _PHASE_ALIASES.get(lowered, "dispatched")


def empty_times() -> dict[str, str | None]:
    return {phase: None for phase in PHASES}


def _earliest(current: str | None, incoming: str | None) -> str | None:
    if incoming is None:
        return current
    if current is None:
        return incoming
    current_dt = parse_timestamp(current)
    incoming_dt = parse_timestamp(incoming)
    if current_dt is None or incoming_dt is None:
        return current or incoming
    return current if current_dt <= incoming_dt else incoming


def apply_report(entry: Mapping[str, Any] | None, report: Mapping[str, Any]) -> dict[str, Any]:
    """Fold one unit report into its timeline entry and return the new entry."""
    report_phase = str(report.get("phase") or phase_for_status(report.get("status")))
    report_status = str(report.get("status") or PHASE_STATUS[report_phase]).upper()
    if entry is None:
        out = {
            "unit_id": str(report["unit_id"]),
            "status": report_status,
            "phase": report_phase,
            "times": empty_times(),
        }
    else:
        out = {
            "unit_id": str(entry["unit_id"]),
            "status": str(entry.get("status") or ""),
            "phase": str(entry.get("phase") or phase_for_status(entry.get("status"))),
            "times": {**empty_times(), **dict(entry.get("times") or {})},
        }
        if PHASE_RANK[report_phase] >= PHASE_RANK[out["phase"]]:
            out["status"] = report_status
            out["phase"] = report_phase

    for phase, stamp in dict(report.get("times") or {}).items():
        if phase in PHASE_RANK:
            out["times"][phase] = _earliest(out["times"].get(phase), stamp)
    return out


def merge_units(
    current: Iterable[Mapping[str, Any]],
    reports: Iterable[Mapping[str, Any]],
) -> tuple[list[dict[str, Any]], dict[str, bool]]:
    """Apply a poll's unit reports to the current list.

    Units missing from ``reports`` are kept as-is. Returns the merged list (existing
    order first, new units appended) and flags describing what changed.
    """
    merged: dict[str, dict[str, Any]] = {}
    order: list[str] = []
    for entry in current:
        unit_id = str(entry["unit_id"])
        merged[unit_id] = dict(entry)
        order.append(unit_id)

    changes = {"unit_set": False, "display": False, "timestamps": False}
    for report in reports:
        unit_id = str(report["unit_id"])
        previous = merged.get(unit_id)
        updated = apply_report(previous, report)
        if previous is None:
            order.append(unit_id)
            changes["unit_set"] = True
        else:
            if previous.get("status") != updated["status"] or previous.get("phase") != updated["phase"]:
                changes["display"] = True
            if dict(previous.get("times") or {}) != updated["times"]:
                changes["timestamps"] = True
        merged[unit_id] = updated
    return [merged[unit_id] for unit_id in order], changes


def active_units(units: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    return [dict(u) for u in units if u.get("phase") != "cleared"]


def _decode_entry(unit_id: str, raw: Mapping[str, Any]) -> dict[str, Any]:
    status = str(raw.get("status") or raw.get("PulsePointDispatchStatus") or "DP").upper()
    times = empty_times()
    nested = raw.get("times")
    if isinstance(nested, Mapping):
        for phase, stamp in nested.items():
            if phase in PHASE_RANK and stamp is not None:
                times[phase] = to_iso(parse_timestamp(stamp))
    for key, phase in _LEGACY_TIME_KEYS.items():
        if raw.get(key) is not None and times[phase] is None:
            times[phase] = to_iso(parse_timestamp(raw[key]))
    if raw.get("timestamp") is not None and times["dispatched"] is None:
        times["dispatched"] = to_iso(parse_timestamp(raw["timestamp"]))
    phase = str(raw.get("phase") or phase_for_status(status))
    if phase not in PHASE_RANK:
        phase = phase_for_status(status)
    return {"unit_id": unit_id, "status": status, "phase": phase, "times": times}


def decode_units(value: Any) -> list[dict[str, Any]]:
    """Decode persisted unit statuses into the canonical ordered list.

    Accepts the legacy map shape ``{unit_id: {"unit", "status", "timestamp"}}`` and
    the array shape (canonical or camelCase keys).
    """
    if not value:
        return []
    if isinstance(value, Mapping):
        out: list[dict[str, Any]] = []
        for key, raw in value.items():
            if not isinstance(raw, Mapping):
                continue
            unit_id = str(raw.get("unit") or key)
            out.append(_decode_entry(unit_id, raw))
        return out
    if isinstance(value, (list, tuple)):
        out = []
        for raw in value:
            if not isinstance(raw, Mapping):
                continue
            unit_id = raw.get("unit_id") or raw.get("unitId") or raw.get("UnitID") or raw.get("unit")
            if not unit_id:
                continue
            out.append(_decode_entry(str(unit_id), raw))
        return out
    raise ValueError(f"unsupported unit status shape: {type(value).__name__}")
