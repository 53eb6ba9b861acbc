from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import T0
from feedsync.errors import ApiError


def _cad(external_id: str, *, units=("E1",), address: str = "100 Main St", call_type: str = "SF", minutes: int = 0):
    return {
        "ID": external_id,
        "PulsePointIncidentCallType": call_type,
        "FullDisplayAddress": address,
        "CallReceivedDateTime": (T0 + timedelta(minutes=minutes)).isoformat(),
        "Unit": [{"UnitID": unit, "PulsePointDispatchStatus": "DP"} for unit in units],
    }


def _nws(ident: str, *, message_type: str = "Alert", refs=(), expires_hours: int = 8) -> dict:
    return {
        "properties": {
            "id": ident,
            "event": "Flash Flood Warning",
            "messageType": message_type,
            "severity": "Severe",
            "urgency": "Immediate",
            "certainty": "Likely",
            "effective": T0.isoformat(),
            "expires": (T0 + timedelta(hours=expires_hours)).isoformat(),
            "references": [{"identifier": ref} for ref in refs],
        }
    }


def _active(engine, feed_type: str = "incidents") -> list[dict]:
    return engine.orchestrator.get_active_records(tenant_id="tenant_a", feed_type=feed_type)


def test_feed_correction_yields_one_active_record_with_both_units(engine):
    engine.configure(publish_rules={"enabled": False})
    engine.incidents.set_records("tenant_a", [_cad("A1", units=["E1"])])
    first = engine.sync()
    assert first["created"] == 1

    engine.incidents.set_records("tenant_a", [_cad("A2", units=["E1", "E2"])])
    second = engine.poll_later(minutes=5)
    assert second["merged"] == 1

    active = _active(engine)
    assert len(active) == 1
    record = active[0]
    assert record["external_id"] == "A2"
    assert sorted(u["unit_id"] for u in record["units"]) == ["E1", "E2"]
    assert record["propagation"]["needs_update"] is True
    groups = engine.store.list_groups(tenant_id="tenant_a")
    assert len(groups) == 1
    assert sorted(groups[0]["external_ids"]) == ["A1", "A2"]
    assert engine.store.list_audit_logs(tenant_id="tenant_a", action="incident_merged")


def test_repeated_poll_with_identical_feed_changes_nothing(engine):
    engine.configure()
    engine.incidents.set_records("tenant_a", [_cad("A1"), _cad("B1", address="9 Oak Ave", call_type="TC")])
    first = engine.sync()
    assert first["created"] == 2
    before = {k: dict(v) for k, v in engine.store.incidents.items()}

    second = engine.poll_later()
    assert (second["created"], second["updated"], second["merged"]) == (0, 0, 0)
    assert second["noop"] == 2
    after = engine.store.incidents
    for record_id, row in before.items():
        assert after[record_id]["version"] == row["version"]
        assert after[record_id]["updated_at"] == row["updated_at"]


def test_early_trigger_is_rate_limited_without_changes(engine):
    engine.configure()
    engine.incidents.set_records("tenant_a", [_cad("A1")])
    engine.sync()
    calls = engine.incidents.calls
    snapshot = {k: dict(v) for k, v in engine.store.incidents.items()}

    engine.incidents.set_records("tenant_a", [_cad("A1"), _cad("Z9", address="1 Elm St")])
    engine.clock.advance(seconds=30)
    result = engine.sync()

    assert result["skipped_rate_limited"] is True
    assert result["reason"] == "rate_limited"
    assert result["created"] == 0
    assert engine.incidents.calls == calls
    assert engine.store.incidents == snapshot


def test_force_bypasses_tenant_interval_but_not_hard_floor(engine):
    engine.configure()
    engine.incidents.set_records("tenant_a", [_cad("A1")])
    engine.sync()

    engine.clock.advance(seconds=5)
    assert engine.sync(force=True)["skipped_rate_limited"] is True

    engine.clock.advance(seconds=20)
    forced = engine.sync(force=True)
    assert forced["skipped_rate_limited"] is False
    assert forced["noop"] == 1


def test_trigger_while_pair_busy_reports_sync_in_progress(engine):
    engine.configure()
    assert engine.sync_states.backend.try_acquire(tenant_id="tenant_a", feed_type="incidents", ttl_s=60)
    result = engine.sync()
    assert result["skipped_rate_limited"] is True
    assert result["reason"] == "sync_in_progress"


def test_transient_feed_failure_persists_nothing(engine):
    engine.configure()
    engine.incidents.set_records("tenant_a", [_cad("A1")])
    engine.incidents.fail_next("tenant_a", "HTTP 502 from CAD")

    result = engine.sync()
    assert result["transient_failure"] is True
    assert result["reason"] == "feed_unavailable"
    assert engine.store.incidents == {}
    state = engine.sync_states.get(tenant_id="tenant_a", feed_type="incidents")
    assert state.phase == "idle"
    assert state.last_error == "HTTP 502 from CAD"

    retried = engine.poll_later()
    assert retried["created"] == 1
    assert engine.sync_states.get(tenant_id="tenant_a", feed_type="incidents").last_error is None


def test_malformed_records_are_counted_and_skipped(engine):
    engine.configure()
    broken = _cad("BAD")
    del broken["FullDisplayAddress"]
    engine.incidents.set_records("tenant_a", [broken, _cad("A1")])

    result = engine.sync()
    assert result["created"] == 1
    assert len(result["errors"]) == 1
    assert result["errors"][0]["external_id"] == "BAD"


def test_disabled_feed_is_not_polled(engine):
    engine.configure(incidents_enabled=False)
    result = engine.sync()
    assert result["reason"] == "feed_disabled"
    assert engine.incidents.calls == 0


def test_unsupported_feed_type_is_rejected(engine):
    with pytest.raises(ApiError) as exc_info:
        engine.sync("traffic")
    assert exc_info.value.code == "FEED_TYPE_UNSUPPORTED"


def test_publish_attempts_stop_at_cap_and_manual_reset(engine):
    engine.configure(max_publish_attempts=2)
    engine.publisher.fail_reason = "HTTP 503"
    engine.incidents.set_records("tenant_a", [_cad("A1")])
    engine.sync()
    engine.poll_later()
    engine.poll_later()

    record = _active(engine)[0]
    state = record["propagation"]
    assert state["attempt_count"] == 2
    assert state["failed_permanently"] is True
    assert state["needs_update"] is False
    assert state["error"] == "HTTP 503"

    with pytest.raises(ApiError) as exc_info:
        engine.orchestrator.republish(tenant_id="tenant_a", feed_type="incidents", record_id=record["record_id"])
    assert exc_info.value.code == "PUBLISH_ATTEMPTS_EXHAUSTED"
    assert exc_info.value.http_status == 409

    engine.publisher.fail_reason = None
    out = engine.orchestrator.republish(
        tenant_id="tenant_a",
        feed_type="incidents",
        record_id=record["record_id"],
        reset_attempts_requested=True,
    )
    assert out["published"] is True
    assert out["propagation"]["attempt_count"] == 0
    assert engine.store.list_audit_logs(tenant_id="tenant_a", action="publish_attempts_reset")


def test_republish_superseded_record_is_refused(engine):
    engine.configure()
    engine.incidents.set_records("tenant_a", [_cad("A1")])
    engine.sync()
    engine.incidents.set_records("tenant_a", [_cad("A2", minutes=2)])
    engine.poll_later()

    superseded = engine.store.get_by_external_id(tenant_id="tenant_a", feed_type="incidents", external_id="A1")
    assert superseded["status"] == "superseded"
    with pytest.raises(ApiError) as exc_info:
        engine.orchestrator.republish(tenant_id="tenant_a", feed_type="incidents", record_id=superseded["record_id"])
    assert exc_info.value.code == "RECORD_NOT_CANONICAL"


def test_agency_change_requires_confirmation_then_purges(engine):
    engine.configure(agency_ids=["EMS1"])
    engine.incidents.set_records("tenant_a", [_cad("A1")])
    engine.sync()

    with pytest.raises(ApiError) as exc_info:
        engine.orchestrator.update_tenant_config(tenant_id="tenant_a", data={"agency_ids": ["EMS2"]})
    assert exc_info.value.code == "CONFIRMATION_REQUIRED"
    assert exc_info.value.details["requested_agency_ids"] == ["EMS2"]
    assert len(engine.store.incidents) == 1

    out = engine.orchestrator.update_tenant_config(tenant_id="tenant_a", data={"agency_ids": ["EMS2"]}, confirm=True)
    assert out["purged"] == {"incidents_deleted": 1, "groups_deleted": 0}
    assert out["config"]["agency_ids"] == ["EMS2"]
    assert engine.store.incidents == {}
    assert engine.store.list_audit_logs(tenant_id="tenant_a", action="incident_data_purged")


def test_invalid_config_is_rejected(engine):
    with pytest.raises(ApiError) as exc_info:
        engine.orchestrator.update_tenant_config(
            tenant_id="tenant_a",
            data={"category_merge_windows": {"volcano": 10}},
        )
    assert exc_info.value.code == "TENANT_CONFIG_INVALID"


def test_weather_chain_across_polls_leaves_latest_active(engine):
    engine.configure()
    engine.weather.set_records("tenant_a", [_nws("urn:A")])
    assert engine.sync("weather")["created"] == 1
    engine.weather.set_records("tenant_a", [_nws("urn:B", message_type="Update", refs=["urn:A"])])
    assert engine.poll_later("weather")["updated"] == 1
    engine.weather.set_records("tenant_a", [_nws("urn:C", message_type="Cancel", refs=["urn:B"])])
    engine.poll_later("weather")

    active = _active(engine, "weather")
    assert [r["external_id"] for r in active] == ["urn:C"]
    assert active[0]["previous_ids"] == ["urn:A", "urn:B"]
    a = engine.store.get_by_external_id(tenant_id="tenant_a", feed_type="weather", external_id="urn:A")
    b = engine.store.get_by_external_id(tenant_id="tenant_a", feed_type="weather", external_id="urn:B")
    assert a["status"] == b["status"] == "superseded"
    assert b["superseded_by"] == active[0]["record_id"]


def test_maintenance_expires_alerts_and_closes_stale_incidents(engine):
    engine.configure()
    engine.weather.set_records("tenant_a", [_nws("urn:A", expires_hours=1)])
    engine.incidents.set_records("tenant_a", [_cad("A1", units=())])
    engine.sync("weather")
    engine.sync("incidents")

    engine.clock.advance(hours=3)
    out = engine.orchestrator.run_maintenance(tenant_id="tenant_a")
    assert out == {"closed_stale": 1, "expired_alerts": 1}

    closed = engine.store.get_by_external_id(tenant_id="tenant_a", feed_type="incidents", external_id="A1")
    assert closed["status"] == "closed"
    assert closed["propagation"]["needs_update"] is True
    assert _active(engine, "weather") == []


def test_tenants_are_isolated(engine):
    engine.configure("tenant_a")
    engine.configure("tenant_b")
    engine.incidents.set_records("tenant_a", [_cad("A1")])
    engine.incidents.set_records("tenant_b", [_cad("A1")])
    engine.sync(tenant_id="tenant_a")
    engine.sync(tenant_id="tenant_b")

    a = engine.orchestrator.get_active_records(tenant_id="tenant_a", feed_type="incidents")
    b = engine.orchestrator.get_active_records(tenant_id="tenant_b", feed_type="incidents")
    assert len(a) == len(b) == 1
    assert a[0]["record_id"] != b[0]["record_id"]
    assert a[0]["merge_key"] != b[0]["merge_key"]
    assert engine.store.verify_audit_integrity(tenant_id="tenant_a")["valid"] is True


def _report(address: str = "100 Main St", call_type: str = "SF", **extra) -> dict:
    return {"call_type": call_type, "full_address": address, "units": ["E1"], **extra}


def test_user_submission_is_held_until_approved(engine):
    engine.configure()
    out = engine.orchestrator.submit_incident(tenant_id="tenant_a", data=_report())
    assert out["created"] is True
    record = out["record"]
    assert record["source"] == "user_submitted"
    assert record["moderation_status"] == "pending"

    engine.sync()
    assert engine.publisher.published == []

    approved = engine.orchestrator.moderate_incident(
        tenant_id="tenant_a",
        record_id=record["record_id"],
        decision="approved",
    )
    assert approved["record"]["moderation_status"] == "approved"
    engine.poll_later()
    assert [r["record_id"] for r in engine.publisher.published] == [record["record_id"]]
    assert engine.store.list_audit_logs(tenant_id="tenant_a", action="incident_moderated")


def test_feed_poll_adopts_pending_submission(engine):
    engine.configure()
    submitted = engine.orchestrator.submit_incident(tenant_id="tenant_a", data=_report())["record"]

    engine.incidents.set_records("tenant_a", [_cad("A1", units=["E1", "E2"], minutes=2)])
    result = engine.sync()

    assert result["updated"] == 1
    assert result["created"] == 0
    active = _active(engine)
    assert len(active) == 1
    adopted = active[0]
    assert adopted["record_id"] == submitted["record_id"]
    assert adopted["external_id"] == "A1"
    assert adopted["source"] == "merged"
    assert adopted["moderation_status"] == "auto_approved"
    assert [r["record_id"] for r in engine.publisher.published] == [submitted["record_id"]]


def test_duplicate_submission_returns_existing_record(engine):
    engine.configure()
    first = engine.orchestrator.submit_incident(tenant_id="tenant_a", data=_report())
    engine.clock.advance(minutes=4)
    second = engine.orchestrator.submit_incident(tenant_id="tenant_a", data=_report(address="100 Main Street"))

    assert second["created"] is False
    assert second["record"]["record_id"] == first["record"]["record_id"]
    assert len(_active(engine)) == 1


def test_rejected_submission_is_archived_and_not_adopted(engine):
    engine.configure()
    record = engine.orchestrator.submit_incident(tenant_id="tenant_a", data=_report())["record"]

    rejected = engine.orchestrator.moderate_incident(
        tenant_id="tenant_a",
        record_id=record["record_id"],
        decision="rejected",
        note="prank",
    )
    assert rejected["record"]["status"] == "archived"
    assert rejected["record"]["propagation"]["needs_update"] is False

    with pytest.raises(ApiError) as exc_info:
        engine.orchestrator.moderate_incident(tenant_id="tenant_a", record_id=record["record_id"], decision="approved")
    assert exc_info.value.code == "MODERATION_NOT_PENDING"
    assert exc_info.value.http_status == 409

    engine.incidents.set_records("tenant_a", [_cad("A1", minutes=1)])
    assert engine.sync()["created"] == 1


def test_moderation_is_refused_for_feed_records(engine):
    engine.configure()
    engine.incidents.set_records("tenant_a", [_cad("A1")])
    engine.sync()
    record = _active(engine)[0]

    with pytest.raises(ApiError) as exc_info:
        engine.orchestrator.moderate_incident(tenant_id="tenant_a", record_id=record["record_id"], decision="approved")
    assert exc_info.value.code == "MODERATION_NOT_PENDING"


def test_manual_incident_can_be_edited_and_closed(engine):
    engine.configure()
    created = engine.orchestrator.submit_incident(
        tenant_id="tenant_a",
        data=_report(call_type="ME", call_type_category="rescue"),
        source="manual",
    )["record"]
    assert created["source"] == "manual"
    assert created["moderation_status"] is None
    assert created["call_type_category"] == "rescue"

    engine.clock.advance(minutes=5)
    out = engine.orchestrator.update_manual_incident(
        tenant_id="tenant_a",
        record_id=created["record_id"],
        data={"full_address": "200 Main St", "units": ["E1", "M7"], "status": "closed"},
    )

    assert out["updated"] is True
    record = out["record"]
    assert record["full_address"] == "200 Main St"
    assert record["normalized_address"] == "200 main st"
    assert record["merge_key"] != created["merge_key"]
    assert record["call_type_category"] == "rescue"
    assert sorted(u["unit_id"] for u in record["units"]) == ["E1", "M7"]
    assert record["status"] == "closed"
    assert record["call_closed_time"] == (T0 + timedelta(minutes=5)).isoformat()
    assert record["propagation"]["needs_update"] is True
    assert engine.store.list_audit_logs(tenant_id="tenant_a", action="incident_edited")

    with pytest.raises(ApiError) as exc_info:
        engine.orchestrator.update_manual_incident(
            tenant_id="tenant_a",
            record_id=created["record_id"],
            data={"description": "late note"},
        )
    assert exc_info.value.code == "RECORD_NOT_ACTIVE"


def test_only_manual_incidents_are_editable(engine):
    engine.configure()
    engine.incidents.set_records("tenant_a", [_cad("A1")])
    engine.sync()
    record = _active(engine)[0]

    with pytest.raises(ApiError) as exc_info:
        engine.orchestrator.update_manual_incident(
            tenant_id="tenant_a",
            record_id=record["record_id"],
            data={"full_address": "1 Elm St"},
        )
    assert exc_info.value.code == "RECORD_NOT_EDITABLE"
    assert exc_info.value.http_status == 409
    assert _active(engine)[0]["full_address"] == "100 Main St"


def test_manual_grouping_survives_later_polls(engine):
    engine.configure()
    engine.incidents.set_records("tenant_a", [_cad("A1"), _cad("B1", address="9 Oak Ave", minutes=1)])
    assert engine.sync()["created"] == 2
    by_external = {r["external_id"]: r for r in _active(engine)}

    out = engine.orchestrator.link_incidents(
        tenant_id="tenant_a",
        record_ids=[by_external["A1"]["record_id"], by_external["B1"]["record_id"]],
    )

    assert out["canonical_record_id"] == by_external["B1"]["record_id"]
    assert out["group"]["merge_reason"] == "manual"
    assert [r["external_id"] for r in _active(engine)] == ["B1"]
    assert engine.store.list_audit_logs(tenant_id="tenant_a", action="incidents_linked")

    engine.poll_later()
    assert [r["external_id"] for r in _active(engine)] == ["B1"]

    with pytest.raises(ApiError) as exc_info:
        engine.orchestrator.link_incidents(
            tenant_id="tenant_a",
            record_ids=[by_external["A1"]["record_id"], by_external["B1"]["record_id"]],
        )
    assert exc_info.value.code == "RECORD_NOT_ACTIVE"
