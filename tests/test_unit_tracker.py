from __future__ import annotations

import pytest

from feedsync.unit_tracker import active_units, apply_report, decode_units, merge_units, phase_for_status


def _report(unit_id: str, status: str, phase: str, **times) -> dict:
    return {"unit_id": unit_id, "status": status, "phase": phase, "times": times}


def test_phase_for_status_known_and_unknown_codes():
    assert phase_for_status("OS") == "on_scene"
    assert phase_for_status("av") == "cleared"
    assert phase_for_status("en route") == "en_route"
    assert phase_for_status("ZZ") == "dispatched"


def test_late_earlier_phase_backfills_without_regressing_status():
    entry = apply_report(None, _report("E1", "OS", "on_scene", on_scene="2026-03-14T12:10:00+00:00"))
    entry = apply_report(entry, _report("E1", "DP", "dispatched", dispatched="2026-03-14T12:01:00+00:00"))

    assert entry["status"] == "OS"
    assert entry["phase"] == "on_scene"
    assert entry["times"]["dispatched"] == "2026-03-14T12:01:00+00:00"
    assert entry["times"]["on_scene"] == "2026-03-14T12:10:00+00:00"


def test_earliest_timestamp_wins_per_phase():
    entry = apply_report(None, _report("E1", "DP", "dispatched", dispatched="2026-03-14T12:05:00+00:00"))
    entry = apply_report(entry, _report("E1", "DP", "dispatched", dispatched="2026-03-14T12:01:00+00:00"))
    entry = apply_report(entry, _report("E1", "DP", "dispatched", dispatched="2026-03-14T12:09:00+00:00"))
    assert entry["times"]["dispatched"] == "2026-03-14T12:01:00+00:00"


def test_merge_units_keeps_missing_units_and_flags_changes():
    current, _ = merge_units([], [_report("E1", "DP", "dispatched"), _report("M2", "ER", "en_route")])
    merged, changes = merge_units(current, [_report("E1", "OS", "on_scene", on_scene="2026-03-14T12:10:00+00:00")])

    assert [u["unit_id"] for u in merged] == ["E1", "M2"]
    assert merged[0]["status"] == "OS"
    assert changes == {"unit_set": False, "display": True, "timestamps": True}

    merged, changes = merge_units(merged, [_report("L7", "DP", "dispatched")])
    assert [u["unit_id"] for u in merged] == ["E1", "M2", "L7"]
    assert changes["unit_set"] is True


def test_merge_units_is_order_independent():
    reports = [
        _report("E1", "CL", "cleared", cleared="2026-03-14T12:40:00+00:00"),
        _report("E1", "DP", "dispatched", dispatched="2026-03-14T12:00:00+00:00"),
        _report("E1", "OS", "on_scene", on_scene="2026-03-14T12:12:00+00:00"),
    ]
    forward, _ = merge_units([], reports)
    backward, _ = merge_units([], list(reversed(reports)))
    assert forward == backward
    assert forward[0]["phase"] == "cleared"
    assert active_units(forward) == []


def test_decode_units_legacy_map_shape():
    units = decode_units(
        {
            "E1": {"unit": "E1", "status": "OS", "timestamp": "2026-03-14T12:00:00Z"},
            "M2": {"status": "AV"},
        }
    )
    assert [u["unit_id"] for u in units] == ["E1", "M2"]
    assert units[0]["phase"] == "on_scene"
    assert units[0]["times"]["dispatched"] == "2026-03-14T12:00:00+00:00"
    assert units[1]["phase"] == "cleared"


def test_decode_units_camel_case_array_shape():
    units = decode_units([{"unitId": "E1", "status": "ER", "timeDispatched": "2026-03-14T12:00:00Z"}])
    assert units[0]["unit_id"] == "E1"
    assert units[0]["phase"] == "en_route"
    assert units[0]["times"]["dispatched"] == "2026-03-14T12:00:00+00:00"


def test_decode_units_rejects_scalar():
    with pytest.raises(ValueError, match="unsupported unit status shape"):
        decode_units("E1,M2")
