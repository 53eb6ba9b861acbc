from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pytest

from feedsync.config import TenantFeedConfig
from feedsync.merge_keys import follow_chain_head
from feedsync.models import NormalizedAlert
from feedsync.normalizer import normalize_incident
from feedsync.reconciler import ChangeSet, Reconciler, TenantSnapshot

NOW = datetime(2026, 3, 14, 12, 0, tzinfo=UTC)


def _reconciler() -> Reconciler:
    return Reconciler(tenant_id="tenant_a", config=TenantFeedConfig(tenant_id="tenant_a"), now=NOW)


def _incident(external_id: str | None, received: str, **extra):
    raw = {
        "PulsePointIncidentCallType": "ME",
        "FullDisplayAddress": "123 Main St",
        "CallReceivedDateTime": received,
        **extra,
    }
    if external_id is not None:
        raw["ID"] = external_id
    return normalize_incident(raw, tenant_id="tenant_a", received_at=NOW)


def _alert(external_id: str, *, previous_ids=(), message_type: str = "Alert", minutes: int = 0) -> NormalizedAlert:
    return NormalizedAlert(
        tenant_id="tenant_a",
        external_id=external_id,
        event="Flash Flood Warning",
        effective=NOW - timedelta(hours=2) + timedelta(minutes=minutes),
        message_type=message_type,
        severity="Severe",
        urgency="Immediate",
        certainty="Likely",
        expires=NOW + timedelta(hours=8),
        previous_ids=list(previous_ids),
    )


def _records(cs: ChangeSet) -> list[dict]:
    return [w.record for w in cs.writes.values()]


def _by_external(cs: ChangeSet, external_id: str) -> dict:
    return next(r for r in _records(cs) if r.get("external_id") == external_id)


def _snapshot_after(cs: ChangeSet) -> TenantSnapshot:
    return TenantSnapshot(records=_records(cs), groups=cs.groups.values())


def test_two_identifiers_for_one_event_are_merged_later_report_canonical():
    cs = _reconciler().reconcile_incidents(
        [_incident("100", "2026-03-14T11:50:00Z"), _incident("200", "2026-03-14T11:55:00Z")],
        TenantSnapshot(records=[]),
    )

    assert cs.summary()["created"] == 1
    assert cs.summary()["merged"] == 1
    older = _by_external(cs, "100")
    newer = _by_external(cs, "200")
    assert older["status"] == "superseded"
    assert older["superseded_by"] == newer["record_id"]
    assert newer["status"] == "active"
    group = cs.groups[newer["group_id"]]
    assert group["canonical_record_id"] == newer["record_id"]
    assert sorted(group["external_ids"]) == ["100", "200"]
    assert older["propagation"]["needs_update"] is False
    assert newer["propagation"]["needs_update"] is True


def test_merge_outcome_does_not_depend_on_batch_order():
    forward = _reconciler().reconcile_incidents(
        [_incident("100", "2026-03-14T11:50:00Z"), _incident("200", "2026-03-14T11:55:00Z")],
        TenantSnapshot(records=[]),
    )
    backward = _reconciler().reconcile_incidents(
        [_incident("200", "2026-03-14T11:55:00Z"), _incident("100", "2026-03-14T11:50:00Z")],
        TenantSnapshot(records=[]),
    )
    for cs in (forward, backward):
        active = [r for r in _records(cs) if r["status"] == "active"]
        assert [r["external_id"] for r in active] == ["200"]


def test_repeated_poll_of_same_batch_is_all_noop():
    batch = [_incident("100", "2026-03-14T11:50:00Z"), _incident("200", "2026-03-14T11:55:00Z")]
    first = _reconciler().reconcile_incidents(batch, TenantSnapshot(records=[]))

    second = _reconciler().reconcile_incidents(batch, _snapshot_after(first))
    summary = second.summary()
    assert summary["created"] == 0
    assert summary["updated"] == 0
    assert summary["merged"] == 0
    assert summary["noop"] == 2
    assert second.is_empty()


def test_feed_record_adopts_matching_user_submission():
    submitted = {
        "record_id": "inc_user",
        "tenant_id": "tenant_a",
        "external_id": None,
        "source": "user_submitted",
        "moderation_status": "approved",
        "call_type": "ME",
        "full_address": "123 main street",
        "normalized_address": "123 main st",
        "call_received_time": "2026-03-14T11:52:00+00:00",
        "status": "active",
        "units": [],
        "created_at": "2026-03-14T11:52:30+00:00",
    }
    cs = _reconciler().reconcile_incidents(
        [_incident("300", "2026-03-14T11:55:00Z")],
        TenantSnapshot(records=[submitted]),
    )

    assert cs.summary()["updated"] == 1
    record = cs.writes["inc_user"].record
    assert record["external_id"] == "300"
    assert record["source"] == "merged"
    assert record["full_address"] == "123 Main St"
    assert "content" in cs.writes["inc_user"].field_groups


def test_update_after_close_is_applied_and_flagged():
    closed = {
        "record_id": "inc_closed",
        "tenant_id": "tenant_a",
        "external_id": "400",
        "source": "external_feed",
        "call_type": "ME",
        "call_type_category": "medical",
        "call_type_description": "Medical Emergency",
        "full_address": "123 Main St",
        "normalized_address": "123 main st",
        "call_received_time": "2026-03-14T11:00:00+00:00",
        "status": "closed",
        "units": [],
    }
    cs = _reconciler().reconcile_incidents(
        [_incident("400", "2026-03-14T11:00:00Z", Unit=[{"UnitID": "E1", "PulsePointDispatchStatus": "OS"}])],
        TenantSnapshot(records=[closed]),
    )

    assert cs.summary()["updated"] == 1
    assert cs.anomalies[0]["kind"] == "update_after_close"
    assert "units" in cs.anomalies[0]["fields"]
    assert cs.writes["inc_closed"].record["status"] == "closed"


def test_alert_chain_in_one_batch_any_order_leaves_single_head():
    a = _alert("urn:A")
    b = _alert("urn:B", previous_ids=["urn:A"], message_type="Update", minutes=30)
    c = _alert("urn:C", previous_ids=["urn:A", "urn:B"], message_type="Update", minutes=60)

    cs = _reconciler().reconcile_alerts([c, a, b], TenantSnapshot(records=[]))

    assert cs.summary()["created"] == 1
    assert cs.summary()["updated"] == 2
    active = [r for r in _records(cs) if r["status"] == "active"]
    assert [r["external_id"] for r in active] == ["urn:C"]
    head = active[0]
    assert head["previous_ids"] == ["urn:A", "urn:B"]
    rows = {r["record_id"]: r for r in _records(cs)}
    first = _by_external(cs, "urn:A")
    assert follow_chain_head(first, lookup=rows.get)["record_id"] == head["record_id"]


def test_late_predecessor_arrives_already_superseded():
    successor = {
        "record_id": "wx_b",
        "tenant_id": "tenant_a",
        "external_id": "urn:B",
        "event": "Flash Flood Warning",
        "status": "active",
        "previous_ids": ["urn:A"],
        "superseded_by": None,
        "effective": "2026-03-14T10:30:00+00:00",
    }
    cs = _reconciler().reconcile_alerts([_alert("urn:A")], TenantSnapshot(records=[successor]))

    late = _by_external(cs, "urn:A")
    assert late["status"] == "superseded"
    assert late["superseded_by"] == "wx_b"
    assert cs.writes[late["record_id"]].is_new is True
    assert cs.anomalies[0]["kind"] == "alert_revision_after_successor"
    assert "wx_b" not in cs.writes


def test_cancel_message_for_same_identifier_cancels_alert():
    first = _reconciler().reconcile_alerts([_alert("urn:A")], TenantSnapshot(records=[]))

    cs = _reconciler().reconcile_alerts([_alert("urn:A", message_type="Cancel")], _snapshot_after(first))

    record = _by_external(cs, "urn:A")
    assert record["status"] == "cancelled"
    assert cs.summary()["updated"] == 1


def test_alert_reference_cycle_is_rejected_as_malformed():
    existing = {
        "record_id": "wx_y",
        "tenant_id": "tenant_a",
        "external_id": "urn:Y",
        "status": "active",
        "previous_ids": ["urn:X"],
        "superseded_by": None,
    }
    cs = _reconciler().reconcile_alerts(
        [_alert("urn:X", previous_ids=["urn:Y"])],
        TenantSnapshot(records=[existing]),
    )

    assert cs.summary()["created"] == 0
    assert cs.errors[0]["reason"] == "malformed_record"
    assert cs.errors[0]["external_id"] == "urn:X"


def _structure_fire(external_id: str, received: str):
    return _incident(external_id, received, PulsePointIncidentCallType="SF", FullDisplayAddress="100 Main St")


@pytest.mark.parametrize("order", [("100", "200"), ("200", "100")])
def test_reports_across_a_bucket_edge_merge_in_either_poll_order(order):
    received = {"100": "2026-03-14T10:29:00Z", "200": "2026-03-14T10:49:00Z"}
    first = _reconciler().reconcile_incidents(
        [_structure_fire(order[0], received[order[0]])],
        TenantSnapshot(records=[]),
    )
    second = _reconciler().reconcile_incidents(
        [_structure_fire(order[1], received[order[1]])],
        _snapshot_after(first),
    )

    assert second.summary()["merged"] == 1
    rows = {r["record_id"]: r for r in _records(first)}
    rows.update({r["record_id"]: r for r in _records(second)})
    active = [r for r in rows.values() if r["status"] == "active"]
    assert [r["external_id"] for r in active] == ["200"]


@pytest.mark.parametrize("order", [("100", "200"), ("200", "100")])
def test_reports_across_a_bucket_edge_merge_in_either_batch_order(order):
    received = {"100": "2026-03-14T10:29:00Z", "200": "2026-03-14T10:49:00Z"}
    cs = _reconciler().reconcile_incidents(
        [_structure_fire(ident, received[ident]) for ident in order],
        TenantSnapshot(records=[]),
    )

    assert cs.summary()["merged"] == 1
    active = [r for r in _records(cs) if r["status"] == "active"]
    assert [r["external_id"] for r in active] == ["200"]


def test_correction_under_superseded_identifier_reaches_canonical():
    first = _reconciler().reconcile_incidents(
        [_incident("100", "2026-03-14T11:50:00Z"), _incident("200", "2026-03-14T11:55:00Z")],
        TenantSnapshot(records=[]),
    )
    canonical_id = _by_external(first, "200")["record_id"]

    # The feed now reports only the older identifier, with a corrected address.
    cs = _reconciler().reconcile_incidents(
        [_incident("100", "2026-03-14T11:50:00Z", FullDisplayAddress="125 Main St")],
        _snapshot_after(first),
    )

    assert cs.summary()["updated"] == 1
    canonical = cs.writes[canonical_id].record
    assert canonical["external_id"] == "200"
    assert canonical["full_address"] == "125 Main St"
    assert canonical["normalized_address"] == "125 main st"
    assert "content" in cs.writes[canonical_id].field_groups
    assert canonical["propagation"]["needs_update"] is True


def test_superseded_identifier_does_not_override_live_canonical_content():
    first = _reconciler().reconcile_incidents(
        [_incident("100", "2026-03-14T11:50:00Z"), _incident("200", "2026-03-14T11:55:00Z")],
        TenantSnapshot(records=[]),
    )

    cs = _reconciler().reconcile_incidents(
        [
            _incident("100", "2026-03-14T11:50:00Z", FullDisplayAddress="125 Main St"),
            _incident("200", "2026-03-14T11:55:00Z"),
        ],
        _snapshot_after(first),
    )

    assert cs.summary()["updated"] == 0
    assert cs.is_empty()


def test_submission_creates_pending_record_and_duplicates_return_existing():
    submission = replace(_incident(None, "2026-03-14T11:50:00Z"), source="user_submitted")
    cs = _reconciler().submit_incident(submission, TenantSnapshot(records=[]))

    assert cs.summary()["created"] == 1
    record = _records(cs)[0]
    assert record["external_id"] is None
    assert record["source"] == "user_submitted"
    assert record["moderation_status"] == "pending"

    again = _reconciler().submit_incident(
        replace(_incident(None, "2026-03-14T11:58:00Z"), source="user_submitted"),
        _snapshot_after(cs),
    )
    assert again.is_empty()
    assert again.decisions[0]["record_id"] == record["record_id"]
    assert again.decisions[0]["duplicate"] is True


def test_feed_adoption_auto_approves_pending_submission():
    submission = replace(_incident(None, "2026-03-14T11:50:00Z"), source="user_submitted")
    submitted = _reconciler().submit_incident(submission, TenantSnapshot(records=[]))
    record_id = _records(submitted)[0]["record_id"]

    cs = _reconciler().reconcile_incidents([_incident("300", "2026-03-14T11:53:00Z")], _snapshot_after(submitted))

    adopted = cs.writes[record_id]
    assert adopted.record["source"] == "merged"
    assert adopted.record["moderation_status"] == "auto_approved"
    assert {"content", "lifecycle"} <= adopted.field_groups


def test_manual_link_groups_records_with_manual_reason():
    first = _reconciler().reconcile_incidents(
        [
            _incident("100", "2026-03-14T11:50:00Z"),
            _incident("500", "2026-03-14T11:52:00Z", FullDisplayAddress="9 Oak Ave"),
        ],
        TenantSnapshot(records=[]),
    )
    snapshot = _snapshot_after(first)
    left = snapshot.by_external_id("100")
    right = snapshot.by_external_id("500")

    cs = _reconciler().link_incidents(left, right, snapshot)

    assert cs.summary()["merged"] == 1
    group = next(iter(cs.groups.values()))
    assert group["merge_reason"] == "manual"
    assert group["canonical_record_id"] == right["record_id"]
    assert cs.writes[left["record_id"]].record["superseded_by"] == right["record_id"]
