"""Batch reconciliation of normalized feed records against a tenant snapshot.

The reconciler never touches storage. It reads a snapshot, works on an in-memory copy
while walking the batch, and returns a ChangeSet that the store commits atomically.
Later records in the batch see the effect of earlier ones, which is what makes two
reports of the same event in one poll land on one record whatever their order.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Collection, Iterable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from feedsync.call_types import normalize_code
from feedsync.clock import parse_timestamp, to_iso
from feedsync.config import TenantFeedConfig
from feedsync.errors import MalformedRecordError
from feedsync.merge_keys import (
    AlertChainCycleError,
    chain_contains,
    find_incident_match,
    follow_chain_head,
    incident_merge_key,
    time_bucket,
)
from feedsync.models import NormalizedAlert, NormalizedIncident, new_record_id
from feedsync.propagation import inherit_propagation, new_propagation_state, request_update, retire_propagation
from feedsync.unit_tracker import merge_units

logger = logging.getLogger(__name__)

COORDINATE_TOLERANCE = 0.0001

INCIDENT_PUBLIC_FIELDS = ("full_address", "call_type")
ALERT_PUBLIC_FIELDS = (
    "event",
    "headline",
    "description",
    "instruction",
    "severity",
    "urgency",
    "certainty",
    "expires",
    "ends",
    "message_type",
)


@dataclass
class RecordWrite:
    record: dict[str, Any]
    field_groups: set[str]
    is_new: bool = False


@dataclass
class ChangeSet:
    tenant_id: str
    feed_type: str
    writes: dict[str, RecordWrite] = field(default_factory=dict)
    groups: dict[str, dict[str, Any]] = field(default_factory=dict)
    decisions: list[dict[str, Any]] = field(default_factory=list)
    anomalies: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    def count(self, action: str) -> int:
        return sum(1 for d in self.decisions if d["action"] == action)

    def is_empty(self) -> bool:
        return not self.writes and not self.groups

    def summary(self) -> dict[str, Any]:
        return {
            "created": self.count("create"),
            "updated": self.count("update"),
            "merged": self.count("merge"),
            "noop": self.count("noop"),
            "anomalies": len(self.anomalies),
            "errors": list(self.errors),
        }


class TenantSnapshot:
    """Records and groups read for one batch, indexed the way reconciliation looks them up."""

    def __init__(
        self,
        *,
        records: Iterable[dict[str, Any]],
        groups: Iterable[dict[str, Any]] = (),
    ) -> None:
        self.records: dict[str, dict[str, Any]] = {}
        self.groups: dict[str, dict[str, Any]] = {}
        self._by_external: dict[str, str] = {}
        for record in records:
            self.put(copy.deepcopy(record))
        for group in groups:
            self.groups[str(group["group_id"])] = copy.deepcopy(group)

    def put(self, record: dict[str, Any]) -> None:
        record_id = str(record["record_id"])
        previous = self.records.get(record_id)
        if previous is not None and previous.get("external_id") and previous.get("external_id") != record.get(
            "external_id"
        ):
            self._by_external.pop(str(previous["external_id"]), None)
        self.records[record_id] = record
        if record.get("external_id"):
            self._by_external[str(record["external_id"])] = record_id

    def get(self, record_id: str | None) -> dict[str, Any] | None:
        if not record_id:
            return None
        return self.records.get(str(record_id))

    def by_external_id(self, external_id: str | None) -> dict[str, Any] | None:
        if not external_id:
            return None
        return self.get(self._by_external.get(str(external_id)))

    def incident_candidates(self, *, normalized_address: str, call_type: str) -> list[dict[str, Any]]:
        code = normalize_code(call_type)
        return [
            r
            for r in self.records.values()
            if r.get("normalized_address") == normalized_address
            and normalize_code(str(r.get("call_type") or "")) == code
        ]

    def alert_successor(self, external_id: str) -> dict[str, Any] | None:
        for record in self.records.values():
            if external_id in (record.get("previous_ids") or []):
                return record
        return None


def _changed_float(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is not right
    return abs(float(left) - float(right)) > COORDINATE_TOLERANCE


def _sort_key_time(record: dict[str, Any], name: str) -> datetime:
    value = parse_timestamp(record.get(name))
    return value if value is not None else datetime.min.replace(tzinfo=UTC)


class Reconciler:
    def __init__(self, *, tenant_id: str, config: TenantFeedConfig, now: datetime) -> None:
        self.tenant_id = tenant_id
        self.config = config
        self.now = now
        self.now_iso = to_iso(now)

    # -- shared helpers -----------------------------------------------------------------

    def _put(
        self,
        ws: TenantSnapshot,
        cs: ChangeSet,
        record: dict[str, Any],
        groups: set[str],
        *,
        is_new: bool = False,
    ) -> None:
        record["updated_at"] = self.now_iso
        ws.put(record)
        record_id = str(record["record_id"])
        existing = cs.writes.get(record_id)
        if existing is None:
            cs.writes[record_id] = RecordWrite(record=record, field_groups=set(groups), is_new=is_new)
        else:
            existing.record = record
            existing.field_groups |= set(groups)
            existing.is_new = existing.is_new or is_new

    def _decide(self, cs: ChangeSet, action: str, *, record_id: str | None, external_id: str | None, **extra: Any) -> None:
        cs.decisions.append({"action": action, "record_id": record_id, "external_id": external_id, **extra})

    def _anomaly(self, cs: ChangeSet, *, record: dict[str, Any], kind: str, fields: list[str]) -> None:
        item = {
            "kind": kind,
            "record_id": record.get("record_id"),
            "external_id": record.get("external_id"),
            "status": record.get("status"),
            "fields": sorted(fields),
        }
        cs.anomalies.append(item)
        logger.warning(
            "reconcile_out_of_order_update tenant_id=%s record_id=%s status=%s fields=%s",
            self.tenant_id,
            item["record_id"],
            item["status"],
            ",".join(item["fields"]),
        )

    # -- incidents ----------------------------------------------------------------------

    def reconcile_incidents(self, batch: list[NormalizedIncident], snapshot: TenantSnapshot) -> ChangeSet:
        cs = ChangeSet(tenant_id=self.tenant_id, feed_type="incidents")
        live_ids = {i.external_id for i in batch if i.external_id}
        for incident in batch:
            try:
                self._reconcile_incident(incident, snapshot, cs, live_ids=live_ids)
            except MalformedRecordError as exc:
                cs.errors.append(exc.as_dict())
                logger.warning(
                    "reconcile_record_skipped tenant_id=%s external_id=%s reason=%s",
                    self.tenant_id,
                    exc.external_id,
                    exc.message,
                )
        return cs

    def _incident_key(self, incident: NormalizedIncident) -> str:
        window = self.config.merge_window_for(incident.call_type_category)
        return incident_merge_key(
            tenant_id=self.tenant_id,
            normalized_address=incident.normalized_address,
            call_type=incident.call_type,
            bucket=time_bucket(incident.call_received_time, window),
        )

    def _reconcile_incident(
        self,
        incident: NormalizedIncident,
        ws: TenantSnapshot,
        cs: ChangeSet,
        *,
        live_ids: Collection[str] = (),
    ) -> None:
        by_external = ws.by_external_id(incident.external_id)
        if by_external is not None and by_external.get("status") == "superseded":
            canonical = self._canonical_for(by_external, ws)
            if canonical is not None:
                # Content follows the canonical's own feed identifier while the feed still reports it.
                canonical_external = canonical.get("external_id")
                content = bool(canonical_external) and canonical_external not in live_ids
                changed = self._apply_incident_update(canonical, incident, ws, cs, content=content)
                action = "update" if changed else "noop"
                self._decide(cs, action, record_id=canonical["record_id"], external_id=incident.external_id)
                return

        window = self.config.merge_window_for(incident.call_type_category)
        key_match = find_incident_match(
            ws.incident_candidates(
                normalized_address=incident.normalized_address,
                call_type=incident.call_type,
            ),
            normalized_address=incident.normalized_address,
            call_type=incident.call_type,
            call_received_time=incident.call_received_time,
            window=window,
        )

        if by_external is None:
            if key_match is None:
                record = self._create_incident(incident, ws, cs)
                self._decide(cs, "create", record_id=record["record_id"], external_id=incident.external_id)
                return
            if not key_match.get("external_id") or incident.external_id is None:
                changed = self._apply_incident_update(key_match, incident, ws, cs, content=True)
                self._decide(
                    cs,
                    "update" if changed else "noop",
                    record_id=key_match["record_id"],
                    external_id=incident.external_id,
                )
                return
            # Same event, new identifier: keep both records and link them.
            record = self._create_incident(incident, ws, cs)
            canonical = self._merge_incidents(ws.get(key_match["record_id"]), record, ws, cs)
            self._decide(
                cs,
                "merge",
                record_id=canonical["record_id"],
                external_id=incident.external_id,
                group_id=canonical.get("group_id"),
            )
            return

        changed = self._apply_incident_update(by_external, incident, ws, cs, content=True)
        current = ws.get(by_external["record_id"])
        if (
            key_match is not None
            and key_match["record_id"] != current["record_id"]
            and current.get("status") == "active"
        ):
            canonical = self._merge_incidents(ws.get(key_match["record_id"]), current, ws, cs)
            self._decide(
                cs,
                "merge",
                record_id=canonical["record_id"],
                external_id=incident.external_id,
                group_id=canonical.get("group_id"),
            )
            return
        self._decide(cs, "update" if changed else "noop", record_id=current["record_id"], external_id=incident.external_id)

    def _canonical_for(self, record: dict[str, Any], ws: TenantSnapshot) -> dict[str, Any] | None:
        try:
            head = follow_chain_head(record, lookup=ws.get)
        except AlertChainCycleError:
            logger.error("reconcile_supersede_loop tenant_id=%s record_id=%s", self.tenant_id, record.get("record_id"))
            return None
        if head.get("record_id") == record.get("record_id"):
            return None
        return ws.get(head["record_id"])

    def _create_incident(self, incident: NormalizedIncident, ws: TenantSnapshot, cs: ChangeSet) -> dict[str, Any]:
        units, _ = merge_units([], [u.as_dict() for u in incident.units])
        propagation = new_propagation_state()
        if incident.status == "active":
            propagation = request_update(propagation, max_attempts=self.config.max_publish_attempts)
        record = {
            "record_id": new_record_id("inc"),
            "tenant_id": self.tenant_id,
            **incident.content_fields(),
            "merge_key": self._incident_key(incident),
            "units": units,
            "status": incident.status,
            "call_closed_time": to_iso(incident.call_closed_time),
            "superseded_by": None,
            "group_id": None,
            "moderation_status": "pending" if incident.source == "user_submitted" else None,
            "propagation": propagation,
            "created_at": self.now_iso,
            "updated_at": self.now_iso,
        }
        self._put(ws, cs, record, {"content", "units", "lifecycle", "linkage", "propagation"}, is_new=True)
        return record

    def _apply_incident_update(
        self,
        existing: dict[str, Any],
        incident: NormalizedIncident,
        ws: TenantSnapshot,
        cs: ChangeSet,
        *,
        content: bool,
    ) -> bool:
        record = copy.deepcopy(existing)
        groups: set[str] = set()
        changed_fields: list[str] = []
        public = False

        if content:
            incoming = incident.content_fields()
            incoming.pop("call_received_time")
            incoming.pop("source")
            if incoming.get("external_id") is None:
                incoming.pop("external_id")
            elif not record.get("external_id"):
                if record.get("source") in {"user_submitted", "manual"}:
                    record["source"] = "merged"
                    if record.get("moderation_status") == "pending":
                        record["moderation_status"] = "auto_approved"
                        groups.add("lifecycle")
            elif incoming["external_id"] != record.get("external_id"):
                incoming.pop("external_id")
            for name, value in incoming.items():
                if name in {"latitude", "longitude"}:
                    if value is None or not _changed_float(record.get(name), value):
                        continue
                elif record.get(name) == value:
                    continue
                record[name] = value
                changed_fields.append(name)
                if name in INCIDENT_PUBLIC_FIELDS:
                    public = True
            if changed_fields:
                groups.add("content")
                record["merge_key"] = self._incident_key(incident)

        merged_units, unit_changes = merge_units(record.get("units") or [], [u.as_dict() for u in incident.units])
        if merged_units != (record.get("units") or []):
            record["units"] = merged_units
            groups.add("units")
            changed_fields.append("units")
            if unit_changes["unit_set"] or unit_changes["display"]:
                public = True

        if incident.status == "closed" and record.get("status") == "active":
            record["status"] = "closed"
            record["call_closed_time"] = to_iso(incident.call_closed_time) or self.now_iso
            groups.add("lifecycle")
            changed_fields.append("status")
            public = True

        if not groups:
            return False
        if existing.get("status") in {"closed", "archived"}:
            self._anomaly(cs, record=existing, kind="update_after_close", fields=changed_fields)
        if public:
            record["propagation"] = request_update(
                record.get("propagation"),
                max_attempts=self.config.max_publish_attempts,
            )
            groups.add("propagation")
        self._put(ws, cs, record, groups)
        return True

    def _merge_incidents(
        self,
        left: dict[str, Any],
        right: dict[str, Any],
        ws: TenantSnapshot,
        cs: ChangeSet,
        *,
        reason: str = "auto_address_time",
    ) -> dict[str, Any]:
        """Link two records of one event; the later report stays canonical, the other is superseded."""
        ranked = sorted(
            [left, right],
            key=lambda r: (
                _sort_key_time(r, "call_received_time"),
                str(r.get("created_at") or ""),
                str(r.get("external_id") or ""),
            ),
        )
        older, newer = copy.deepcopy(ranked[0]), copy.deepcopy(ranked[1])

        group = None
        for candidate in (newer.get("group_id"), older.get("group_id")):
            if candidate and candidate in ws.groups:
                group = ws.groups[candidate]
                break
        if group is None:
            group = {
                "group_id": new_record_id("grp"),
                "tenant_id": self.tenant_id,
                "merge_key": newer.get("merge_key"),
                "merge_reason": reason,
                "call_type": newer.get("call_type"),
                "normalized_address": newer.get("normalized_address"),
                "window_start": None,
                "window_end": None,
                "record_ids": [],
                "external_ids": [],
                "canonical_record_id": None,
                "created_at": self.now_iso,
            }
        for record in (older, newer):
            if record["record_id"] not in group["record_ids"]:
                group["record_ids"].append(record["record_id"])
            if record.get("external_id") and record["external_id"] not in group["external_ids"]:
                group["external_ids"].append(record["external_id"])
        times = [t for t in (older.get("call_received_time"), newer.get("call_received_time"), group["window_start"], group["window_end"]) if t]
        times.sort(key=lambda value: parse_timestamp(value))
        group["window_start"] = times[0] if times else None
        group["window_end"] = times[-1] if times else None
        if reason == "manual":
            group["merge_reason"] = reason
        group["canonical_record_id"] = newer["record_id"]
        group["merge_key"] = newer.get("merge_key")
        group["updated_at"] = self.now_iso
        ws.groups[group["group_id"]] = group
        cs.groups[group["group_id"]] = group

        newer["units"], _ = merge_units(newer.get("units") or [], older.get("units") or [])
        newer["group_id"] = group["group_id"]
        newer["propagation"] = inherit_propagation(
            newer.get("propagation"),
            older.get("propagation"),
            max_attempts=self.config.max_publish_attempts,
        )
        older["status"] = "superseded"
        older["superseded_by"] = newer["record_id"]
        older["group_id"] = group["group_id"]
        older["propagation"] = retire_propagation(older.get("propagation"))

        self._put(ws, cs, older, {"lifecycle", "linkage", "propagation"})
        self._put(ws, cs, newer, {"units", "linkage", "propagation"})
        for member_id in group["record_ids"]:
            member = ws.get(member_id)
            if member is None or member_id == newer["record_id"]:
                continue
            if member.get("superseded_by") and member["superseded_by"] != newer["record_id"]:
                repointed = copy.deepcopy(member)
                repointed["superseded_by"] = newer["record_id"]
                self._put(ws, cs, repointed, {"lifecycle"})
        logger.info(
            "reconcile_incidents_merged tenant_id=%s group_id=%s reason=%s canonical=%s superseded=%s",
            self.tenant_id,
            group["group_id"],
            reason,
            newer["record_id"],
            older["record_id"],
        )
        return ws.get(newer["record_id"])

    # -- reports entered by people ------------------------------------------------------

    def submit_incident(self, incident: NormalizedIncident, snapshot: TenantSnapshot) -> ChangeSet:
        """Create a user or dispatcher report unless an active record already covers the event."""
        cs = ChangeSet(tenant_id=self.tenant_id, feed_type="incidents")
        match = find_incident_match(
            snapshot.incident_candidates(
                normalized_address=incident.normalized_address,
                call_type=incident.call_type,
            ),
            normalized_address=incident.normalized_address,
            call_type=incident.call_type,
            call_received_time=incident.call_received_time,
            window=self.config.merge_window_for(incident.call_type_category),
        )
        if match is not None:
            self._decide(cs, "noop", record_id=match["record_id"], external_id=match.get("external_id"), duplicate=True)
            return cs
        record = self._create_incident(incident, snapshot, cs)
        self._decide(cs, "create", record_id=record["record_id"], external_id=None)
        return cs

    def edit_incident(
        self,
        existing: dict[str, Any],
        incident: NormalizedIncident,
        snapshot: TenantSnapshot,
    ) -> ChangeSet:
        """Apply an operator's edit of a manual record; units already on the record are left alone."""
        cs = ChangeSet(tenant_id=self.tenant_id, feed_type="incidents")
        known = {str(u.get("unit_id")) for u in existing.get("units") or []}
        incident = replace(incident, units=[u for u in incident.units if u.unit_id not in known])
        changed = self._apply_incident_update(existing, incident, snapshot, cs, content=True)
        self._decide(cs, "update" if changed else "noop", record_id=existing["record_id"], external_id=None)
        return cs

    def link_incidents(self, left: dict[str, Any], right: dict[str, Any], snapshot: TenantSnapshot) -> ChangeSet:
        """Group two active records an operator identified as the same event."""
        cs = ChangeSet(tenant_id=self.tenant_id, feed_type="incidents")
        canonical = self._merge_incidents(left, right, snapshot, cs, reason="manual")
        self._decide(
            cs,
            "merge",
            record_id=canonical["record_id"],
            external_id=canonical.get("external_id"),
            group_id=canonical.get("group_id"),
        )
        return cs

    # -- weather alerts -----------------------------------------------------------------

    def reconcile_alerts(self, batch: list[NormalizedAlert], snapshot: TenantSnapshot) -> ChangeSet:
        cs = ChangeSet(tenant_id=self.tenant_id, feed_type="weather")
        for alert in _chain_order(batch):
            try:
                self._reconcile_alert(alert, snapshot, cs)
            except MalformedRecordError as exc:
                cs.errors.append(exc.as_dict())
                logger.warning(
                    "reconcile_record_skipped tenant_id=%s external_id=%s reason=%s",
                    self.tenant_id,
                    exc.external_id,
                    exc.message,
                )
        return cs

    def _reconcile_alert(self, alert: NormalizedAlert, ws: TenantSnapshot, cs: ChangeSet) -> None:
        existing = ws.by_external_id(alert.external_id)
        if existing is not None:
            if existing.get("status") == "superseded":
                self._decide(cs, "noop", record_id=existing["record_id"], external_id=alert.external_id)
                return
            changed = self._apply_alert_update(existing, alert, ws, cs)
            self._decide(cs, "update" if changed else "noop", record_id=existing["record_id"], external_id=alert.external_id)
            return

        if chain_contains({"previous_ids": alert.previous_ids}, alert.external_id, lookup_external=ws.by_external_id):
            raise MalformedRecordError("alert update chain loops back to itself", field="references", external_id=alert.external_id)

        heads: list[dict[str, Any]] = []
        for previous_id in alert.previous_ids:
            prior = ws.by_external_id(previous_id)
            if prior is None:
                continue
            try:
                head = follow_chain_head(prior, lookup=ws.get)
            except AlertChainCycleError as exc:
                raise MalformedRecordError(str(exc), field="references", external_id=alert.external_id) from exc
            if head["record_id"] not in {h["record_id"] for h in heads}:
                heads.append(head)
        heads.sort(key=lambda r: (_sort_key_time(r, "effective"), str(r.get("external_id"))))

        previous_ids: list[str] = []
        for head in heads:
            for ident in list(head.get("previous_ids") or []) + [head.get("external_id")]:
                if ident and ident != alert.external_id and ident not in previous_ids:
                    previous_ids.append(ident)
        for ident in alert.previous_ids:
            if ident not in previous_ids:
                previous_ids.append(ident)

        record = self._create_alert(alert, previous_ids, heads, ws, cs)
        for head in heads:
            retired = copy.deepcopy(head)
            retired["status"] = "superseded"
            retired["superseded_by"] = record["record_id"]
            retired["propagation"] = retire_propagation(retired.get("propagation"))
            self._put(ws, cs, retired, {"lifecycle", "propagation"})

        successor = ws.alert_successor(alert.external_id)
        if successor is not None and successor["record_id"] != record["record_id"]:
            # A later revision was seen first; this one arrives already superseded.
            target = follow_chain_head(successor, lookup=ws.get)
            late = ws.get(record["record_id"])
            late["status"] = "superseded"
            late["superseded_by"] = target["record_id"]
            late["propagation"] = retire_propagation(late.get("propagation"))
            self._put(ws, cs, late, {"lifecycle", "propagation"}, is_new=True)
            self._anomaly(cs, record=late, kind="alert_revision_after_successor", fields=["status"])

        action = "update" if heads else "create"
        self._decide(cs, action, record_id=record["record_id"], external_id=alert.external_id, chain_length=len(previous_ids))

    def _create_alert(
        self,
        alert: NormalizedAlert,
        previous_ids: list[str],
        heads: list[dict[str, Any]],
        ws: TenantSnapshot,
        cs: ChangeSet,
    ) -> dict[str, Any]:
        status = "active"
        if alert.expires is not None and alert.expires <= self.now:
            status = "expired"
        propagation = new_propagation_state()
        for head in heads:
            propagation = inherit_propagation(
                propagation,
                head.get("propagation"),
                max_attempts=self.config.max_publish_attempts,
            )
        if status == "active":
            propagation = request_update(propagation, max_attempts=self.config.max_publish_attempts)
        else:
            propagation = retire_propagation(propagation)
        record = {
            "record_id": new_record_id("wx"),
            "tenant_id": self.tenant_id,
            **alert.content_fields(),
            "status": status,
            "previous_ids": previous_ids,
            "superseded_by": None,
            "propagation": propagation,
            "created_at": self.now_iso,
            "updated_at": self.now_iso,
        }
        self._put(ws, cs, record, {"content", "lifecycle", "linkage", "propagation"}, is_new=True)
        return record

    def _apply_alert_update(
        self,
        existing: dict[str, Any],
        alert: NormalizedAlert,
        ws: TenantSnapshot,
        cs: ChangeSet,
    ) -> bool:
        record = copy.deepcopy(existing)
        groups: set[str] = set()
        changed_fields: list[str] = []
        public = False
        for name, value in alert.content_fields().items():
            if record.get(name) == value:
                continue
            record[name] = value
            changed_fields.append(name)
            if name in ALERT_PUBLIC_FIELDS:
                public = True
        if changed_fields:
            groups.add("content")

        for ident in alert.previous_ids:
            if ident not in (record.get("previous_ids") or []) and ident != record.get("external_id"):
                record["previous_ids"] = list(record.get("previous_ids") or []) + [ident]
                groups.add("linkage")
                changed_fields.append("previous_ids")

        if alert.message_type == "Cancel" and record.get("status") == "active":
            record["status"] = "cancelled"
            groups.add("lifecycle")
            changed_fields.append("status")
            public = True

        if not groups:
            return False
        if existing.get("status") in {"expired", "cancelled"}:
            self._anomaly(cs, record=existing, kind="update_after_close", fields=changed_fields)
        if public and record.get("status") == "active":
            record["propagation"] = request_update(
                record.get("propagation"),
                max_attempts=self.config.max_publish_attempts,
            )
            groups.add("propagation")
        self._put(ws, cs, record, groups)
        return True


def _chain_order(batch: list[NormalizedAlert]) -> list[NormalizedAlert]:
    """Feed order, except that a revision waits for any batch record it references."""
    ids = {a.external_id for a in batch}
    placed: set[str] = set()
    remaining = list(batch)
    ordered: list[NormalizedAlert] = []
    while remaining:
        progressed = False
        for alert in list(remaining):
            deps = [p for p in alert.previous_ids if p in ids and p not in placed and p != alert.external_id]
            if deps:
                continue
            ordered.append(alert)
            placed.add(alert.external_id)
            remaining.remove(alert)
            progressed = True
        if not progressed:
            # Mutual references; let the cycle check reject them one by one.
            ordered.extend(remaining)
            break
    return ordered
