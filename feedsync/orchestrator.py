"""Per (tenant, feed) sync cycle: rate limit, fetch, normalize, reconcile, commit, publish.

A cycle walks idle -> polling -> reconciling -> publishing -> idle. A trigger that
arrives too early, or while the pair is busy, is reported as rate limited and dropped.
A feed that cannot be reached aborts the cycle before anything is written.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from feedsync.clock import parse_timestamp, to_iso, utcnow
from feedsync.config import FEED_TYPES, EngineSettings, TenantFeedConfig
from feedsync.errors import ApiError, FeedUnavailableError, MalformedRecordError, confirmation_required
from feedsync.feeds import FeedResult
from feedsync.models import NormalizedIncident
from feedsync.normalizer import normalize_alert, normalize_incident, normalize_submission, select_recent_incidents
from feedsync.propagation import (
    PropagationScheduler,
    is_exhausted,
    request_update,
    reset_attempts,
    retire_propagation,
)
from feedsync.reconciler import ChangeSet, Reconciler
from feedsync.sync_state import SyncStateRegistry

logger = logging.getLogger(__name__)

MODERATION_DECISIONS = ("approved", "rejected")


@dataclass
class SyncResult:
    tenant_id: str
    feed_type: str
    created: int = 0
    updated: int = 0
    merged: int = 0
    noop: int = 0
    skipped_rate_limited: bool = False
    reason: str | None = None
    transient_failure: bool = False
    errors: list[dict[str, Any]] = field(default_factory=list)
    anomalies: int = 0
    expired: int = 0
    propagation: dict[str, int] = field(default_factory=dict)

    def absorb(self, changeset: ChangeSet) -> None:
        summary = changeset.summary()
        self.created += summary["created"]
        self.updated += summary["updated"]
        self.merged += summary["merged"]
        self.noop += summary["noop"]
        self.anomalies += summary["anomalies"]
        self.errors.extend(summary["errors"])

    def as_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "feed_type": self.feed_type,
            "created": self.created,
            "updated": self.updated,
            "merged": self.merged,
            "noop": self.noop,
            "skipped_rate_limited": self.skipped_rate_limited,
            "reason": self.reason,
            "transient_failure": self.transient_failure,
            "errors": list(self.errors),
            "anomalies": self.anomalies,
            "expired": self.expired,
            "propagation": dict(self.propagation),
        }


def _feed_type_unsupported(feed_type: str) -> ApiError:
    return ApiError(
        code="FEED_TYPE_UNSUPPORTED",
        message=f"unsupported feed type: {feed_type}",
        error_class="validation",
        retryable=False,
        http_status=400,
    )


def _record_not_found() -> ApiError:
    return ApiError(
        code="RECORD_NOT_FOUND",
        message="record not found",
        error_class="validation",
        retryable=False,
        http_status=404,
    )


class SyncOrchestrator:
    def __init__(
        self,
        *,
        store: Any,
        feed_clients: Mapping[str, Any],
        publisher: Any,
        sync_states: SyncStateRegistry,
        settings: EngineSettings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.feed_clients = dict(feed_clients)
        self.publisher = publisher
        self.sync_states = sync_states
        self.settings = settings
        self.clock = clock
        self.scheduler = PropagationScheduler(store=store, publisher=publisher, settings=settings)

    @staticmethod
    def _check_feed_type(feed_type: str) -> None:
        if feed_type not in FEED_TYPES:
            raise _feed_type_unsupported(feed_type)

    def _audit(self, tenant_id: str, action: str, **payload: Any) -> None:
        # Fire-and-forget: the audit sink never fails a sync.
        try:
            self.store.append_audit_event(tenant_id=tenant_id, action=action, **payload)
        except Exception as exc:
            logger.warning("audit_append_failed tenant_id=%s action=%s error=%s", tenant_id, action, exc)

    def min_interval_for(self, config: TenantFeedConfig, *, force: bool) -> int:
        floor = self.settings.hard_min_interval_s
        if force:
            return floor
        return max(floor, config.min_sync_interval_s)

    # -- sync cycle ---------------------------------------------------------------------

    def run_sync(self, *, tenant_id: str, feed_type: str, force: bool = False) -> dict[str, Any]:
        self._check_feed_type(feed_type)
        result = SyncResult(tenant_id=tenant_id, feed_type=feed_type)
        config = self.store.tenant_config_or_default(tenant_id=tenant_id)
        if not config.feed_enabled(feed_type):
            result.reason = "feed_disabled"
            return result.as_dict()

        now = self.clock()
        started, reason, _ = self.sync_states.try_begin(
            tenant_id=tenant_id,
            feed_type=feed_type,
            now=now,
            min_interval_s=self.min_interval_for(config, force=force),
        )
        if not started:
            result.skipped_rate_limited = True
            result.reason = reason
            logger.info("sync_skipped tenant_id=%s feed_type=%s reason=%s", tenant_id, feed_type, reason)
            return result.as_dict()

        error: str | None = None
        try:
            feed_result = self._fetch(feed_type, config)
            if feed_result.error is not None:
                error = feed_result.error
                result.transient_failure = True
                result.reason = "feed_unavailable"
                result.errors.append({"reason": "feed_unavailable", "message": feed_result.error})
                logger.warning(
                    "sync_feed_unavailable tenant_id=%s feed_type=%s error=%s",
                    tenant_id,
                    feed_type,
                    feed_result.error,
                )
                return result.as_dict()
            for warning in feed_result.warnings:
                logger.warning("sync_feed_partial tenant_id=%s feed_type=%s warning=%s", tenant_id, feed_type, warning)

            self.sync_states.transition(tenant_id=tenant_id, feed_type=feed_type, phase="reconciling")
            if feed_type == "incidents":
                changeset = self._reconcile_incidents(config, feed_result, now, result)
            else:
                changeset = self._reconcile_alerts(config, feed_result, now, result)
            self.store.commit_changeset(changeset=changeset)
            result.absorb(changeset)
            self._audit_changeset(changeset)
            if feed_type == "weather":
                result.expired = self.expire_alerts(tenant_id=tenant_id, now=now)

            self.sync_states.transition(tenant_id=tenant_id, feed_type=feed_type, phase="publishing")
            if feed_type == "weather":
                self.scheduler.schedule_alert_reposts(tenant_id=tenant_id, config=config, now=now)
            result.propagation = self.scheduler.run_pending(
                tenant_id=tenant_id,
                feed_type=feed_type,
                config=config,
                now=now,
            )
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            logger.exception("sync_failed tenant_id=%s feed_type=%s", tenant_id, feed_type)
            raise
        finally:
            self.sync_states.finish(tenant_id=tenant_id, feed_type=feed_type, now=self.clock(), error=error)

        logger.info(
            "sync_completed tenant_id=%s feed_type=%s created=%s updated=%s merged=%s noop=%s errors=%s",
            tenant_id,
            feed_type,
            result.created,
            result.updated,
            result.merged,
            result.noop,
            len(result.errors),
        )
        return result.as_dict()

    def _fetch(self, feed_type: str, config: TenantFeedConfig) -> FeedResult:
        client = self.feed_clients.get(feed_type)
        if client is None:
            return FeedResult(error=f"no feed client configured for {feed_type}")
        try:
            return client.fetch(config)
        except FeedUnavailableError as exc:
            return FeedResult(error=exc.message)

    def _reconcile_incidents(
        self,
        config: TenantFeedConfig,
        feed_result: FeedResult,
        now: datetime,
        result: SyncResult,
    ) -> ChangeSet:
        batch = []
        for raw in feed_result.records:
            try:
                batch.append(normalize_incident(raw, tenant_id=config.tenant_id, received_at=feed_result.fetched_at))
            except MalformedRecordError as exc:
                result.errors.append(exc.as_dict())
                logger.warning(
                    "sync_record_malformed tenant_id=%s external_id=%s field=%s",
                    config.tenant_id,
                    exc.external_id,
                    exc.field,
                )
        batch = select_recent_incidents(
            batch,
            now=now,
            lookback=timedelta(hours=self.settings.incident_lookback_hours),
            limit=self.settings.incident_max_batch,
        )
        snapshot = self.store.load_incident_snapshot(tenant_id=config.tenant_id, batch=batch)
        reconciler = Reconciler(tenant_id=config.tenant_id, config=config, now=now)
        return reconciler.reconcile_incidents(batch, snapshot)

    def _reconcile_alerts(
        self,
        config: TenantFeedConfig,
        feed_result: FeedResult,
        now: datetime,
        result: SyncResult,
    ) -> ChangeSet:
        batch = []
        for raw in feed_result.records:
            try:
                batch.append(normalize_alert(raw, tenant_id=config.tenant_id))
            except MalformedRecordError as exc:
                result.errors.append(exc.as_dict())
                logger.warning(
                    "sync_record_malformed tenant_id=%s external_id=%s field=%s",
                    config.tenant_id,
                    exc.external_id,
                    exc.field,
                )
        snapshot = self.store.load_alert_snapshot(tenant_id=config.tenant_id, batch=batch)
        reconciler = Reconciler(tenant_id=config.tenant_id, config=config, now=now)
        return reconciler.reconcile_alerts(batch, snapshot)

    def _audit_changeset(self, changeset: ChangeSet) -> None:
        for decision in changeset.decisions:
            if decision["action"] == "merge":
                self._audit(
                    changeset.tenant_id,
                    "incident_merged",
                    feed_type=changeset.feed_type,
                    record_id=decision["record_id"],
                    external_id=decision["external_id"],
                    group_id=decision.get("group_id"),
                )
        for anomaly in changeset.anomalies:
            self._audit(changeset.tenant_id, "reconcile_anomaly", feed_type=changeset.feed_type, **anomaly)

    # -- reads --------------------------------------------------------------------------

    def get_active_records(self, *, tenant_id: str, feed_type: str) -> list[dict[str, Any]]:
        self._check_feed_type(feed_type)
        rows = self.store.list_by_status(tenant_id=tenant_id, feed_type=feed_type, statuses=["active"])
        sort_field = "call_received_time" if feed_type == "incidents" else "effective"
        rows.sort(key=lambda r: str(r.get(sort_field) or ""), reverse=True)
        return rows

    # -- configuration ------------------------------------------------------------------

    def update_tenant_config(
        self,
        *,
        tenant_id: str,
        data: Mapping[str, Any],
        confirm: bool = False,
    ) -> dict[str, Any]:
        try:
            requested = TenantFeedConfig.from_dict({**dict(data), "tenant_id": tenant_id}, settings=self.settings)
        except (TypeError, ValueError) as exc:
            raise ApiError(
                code="TENANT_CONFIG_INVALID",
                message=str(exc),
                error_class="validation",
                retryable=False,
                http_status=400,
            ) from exc

        current = self.store.get_tenant_config(tenant_id=tenant_id)
        purged: dict[str, int] | None = None
        if current is not None and current.agency_ids and set(current.agency_ids) != set(requested.agency_ids):
            if not confirm:
                logger.info(
                    "tenant_config_confirmation_required tenant_id=%s current=%s requested=%s",
                    tenant_id,
                    ",".join(current.agency_ids),
                    ",".join(requested.agency_ids),
                )
                raise confirmation_required(
                    "changing the agency removes this tenant's incident history; resend with confirm=true",
                    details={
                        "current_agency_ids": list(current.agency_ids),
                        "requested_agency_ids": list(requested.agency_ids),
                    },
                )
            purged = self.store.delete_incident_data(tenant_id=tenant_id)
            self._audit(
                tenant_id,
                "incident_data_purged",
                previous_agency_ids=list(current.agency_ids),
                agency_ids=list(requested.agency_ids),
                **purged,
            )
            logger.warning("tenant_incident_data_purged tenant_id=%s incidents=%s", tenant_id, purged["incidents_deleted"])

        saved = self.store.save_tenant_config(config=requested)
        self._audit(tenant_id, "tenant_config_updated", config=saved.as_dict())
        return {"config": saved.as_dict(), "purged": purged}

    # -- reports entered by people ------------------------------------------------------

    def _incident_or_404(self, tenant_id: str, record_id: str) -> dict[str, Any]:
        record = self.store.get_record(tenant_id=tenant_id, feed_type="incidents", record_id=record_id)
        if record is None:
            raise _record_not_found()
        return record

    @staticmethod
    def _normalize_submission(
        tenant_id: str,
        data: Mapping[str, Any],
        *,
        source: str,
        now: datetime,
    ) -> NormalizedIncident:
        try:
            return normalize_submission(data, tenant_id=tenant_id, source=source, received_at=now)
        except MalformedRecordError as exc:
            raise ApiError(
                code="INCIDENT_INVALID",
                message=exc.message,
                error_class="validation",
                retryable=False,
                http_status=400,
                details={"field": exc.field},
            ) from exc

    def submit_incident(
        self,
        *,
        tenant_id: str,
        data: Mapping[str, Any],
        source: str = "user_submitted",
    ) -> dict[str, Any]:
        """Record a report from the public or a dispatcher; a later feed record with the same event adopts it."""
        now = self.clock()
        config = self.store.tenant_config_or_default(tenant_id=tenant_id)
        incident = self._normalize_submission(tenant_id, data, source=source, now=now)
        snapshot = self.store.load_incident_snapshot(tenant_id=tenant_id, batch=[incident])
        changeset = Reconciler(tenant_id=tenant_id, config=config, now=now).submit_incident(incident, snapshot)
        self.store.commit_changeset(changeset=changeset)
        decision = changeset.decisions[0]
        created = decision["action"] == "create"
        self._audit(
            tenant_id,
            "incident_submitted",
            record_id=decision["record_id"],
            source=source,
            duplicate=not created,
        )
        logger.info(
            "incident_submitted tenant_id=%s record_id=%s source=%s duplicate=%s",
            tenant_id,
            decision["record_id"],
            source,
            not created,
        )
        record = self.store.get_record(tenant_id=tenant_id, feed_type="incidents", record_id=decision["record_id"])
        return {"record": record, "created": created}

    def moderate_incident(
        self,
        *,
        tenant_id: str,
        record_id: str,
        decision: str,
        note: str | None = None,
    ) -> dict[str, Any]:
        if decision not in MODERATION_DECISIONS:
            raise ApiError(
                code="MODERATION_DECISION_INVALID",
                message=f"decision must be one of: {', '.join(MODERATION_DECISIONS)}",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        record = self._incident_or_404(tenant_id, record_id)
        if record.get("source") != "user_submitted" or record.get("moderation_status") != "pending":
            raise ApiError(
                code="MODERATION_NOT_PENDING",
                message="only pending user submissions can be moderated",
                error_class="business_rule",
                retryable=False,
                http_status=409,
                details={"source": record.get("source"), "moderation_status": record.get("moderation_status")},
            )
        now = self.clock()
        config = self.store.tenant_config_or_default(tenant_id=tenant_id)
        record["moderation_status"] = decision
        if decision == "approved":
            record["propagation"] = request_update(record.get("propagation"), max_attempts=config.max_publish_attempts)
        else:
            record["status"] = "archived"
            record["propagation"] = retire_propagation(record.get("propagation"))
        record["updated_at"] = to_iso(now)
        self.store.commit_record_fields(
            tenant_id=tenant_id,
            feed_type="incidents",
            record=record,
            field_groups=["lifecycle", "propagation"],
        )
        self._audit(tenant_id, "incident_moderated", record_id=record_id, decision=decision, note=note)
        logger.info("incident_moderated tenant_id=%s record_id=%s decision=%s", tenant_id, record_id, decision)
        return {"record": self._incident_or_404(tenant_id, record_id)}

    def update_manual_incident(self, *, tenant_id: str, record_id: str, data: Mapping[str, Any]) -> dict[str, Any]:
        record = self._incident_or_404(tenant_id, record_id)
        if record.get("source") != "manual":
            raise ApiError(
                code="RECORD_NOT_EDITABLE",
                message="only manual incidents can be edited",
                error_class="business_rule",
                retryable=False,
                http_status=409,
                details={"source": record.get("source")},
            )
        if record.get("status") != "active":
            raise ApiError(
                code="RECORD_NOT_ACTIVE",
                message="incident is no longer active",
                error_class="business_rule",
                retryable=False,
                http_status=409,
                details={"status": record.get("status")},
            )
        now = self.clock()
        changes = {k: v for k, v in data.items() if v is not None}
        status = changes.pop("status", None)
        raw: dict[str, Any] = {
            "call_type": record.get("call_type"),
            "full_address": record.get("full_address"),
            "latitude": record.get("latitude"),
            "longitude": record.get("longitude"),
            "description": record.get("description"),
            "call_received_time": record.get("call_received_time"),
        }
        if "call_type" not in changes:
            raw["call_type_category"] = record.get("call_type_category")
        raw.update(changes)
        if status == "closed":
            raw["call_closed_time"] = to_iso(now)
        incident = self._normalize_submission(tenant_id, raw, source="manual", now=now)

        config = self.store.tenant_config_or_default(tenant_id=tenant_id)
        snapshot = self.store.load_incident_snapshot(tenant_id=tenant_id, batch=[incident], record_ids=[record_id])
        reconciler = Reconciler(tenant_id=tenant_id, config=config, now=now)
        changeset = reconciler.edit_incident(snapshot.get(record_id), incident, snapshot)
        self.store.commit_changeset(changeset=changeset)
        updated = changeset.count("update") > 0
        if updated:
            fields = sorted(set(changes) | ({"status"} if status == "closed" else set()))
            self._audit(tenant_id, "incident_edited", record_id=record_id, fields=fields)
        return {"record": self._incident_or_404(tenant_id, record_id), "updated": updated}

    def link_incidents(self, *, tenant_id: str, record_ids: list[str]) -> dict[str, Any]:
        """Group two active records by hand; the later report becomes canonical."""
        ids = list(dict.fromkeys(str(x) for x in record_ids))
        if len(ids) != 2:
            raise ApiError(
                code="LINK_REQUIRES_TWO_RECORDS",
                message="exactly two distinct record ids are required",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        now = self.clock()
        config = self.store.tenant_config_or_default(tenant_id=tenant_id)
        snapshot = self.store.load_incident_snapshot(tenant_id=tenant_id, batch=[], record_ids=ids)
        records = [snapshot.get(record_id) for record_id in ids]
        if any(r is None for r in records):
            raise _record_not_found()
        inactive = [r["record_id"] for r in records if r.get("status") != "active"]
        if inactive:
            raise ApiError(
                code="RECORD_NOT_ACTIVE",
                message="only active incidents can be grouped",
                error_class="business_rule",
                retryable=False,
                http_status=409,
                details={"record_ids": inactive},
            )
        changeset = Reconciler(tenant_id=tenant_id, config=config, now=now).link_incidents(
            records[0], records[1], snapshot
        )
        self.store.commit_changeset(changeset=changeset)
        decision = changeset.decisions[0]
        self._audit(
            tenant_id,
            "incidents_linked",
            record_ids=ids,
            group_id=decision["group_id"],
            canonical_record_id=decision["record_id"],
        )
        return {
            "group": changeset.groups[decision["group_id"]],
            "canonical_record_id": decision["record_id"],
        }

    # -- manual republish ---------------------------------------------------------------

    def republish(
        self,
        *,
        tenant_id: str,
        feed_type: str,
        record_id: str,
        reset_attempts_requested: bool = False,
    ) -> dict[str, Any]:
        self._check_feed_type(feed_type)
        record = self.store.get_record(tenant_id=tenant_id, feed_type=feed_type, record_id=record_id)
        if record is None:
            raise _record_not_found()
        if record.get("status") == "superseded" or record.get("superseded_by"):
            raise ApiError(
                code="RECORD_NOT_CANONICAL",
                message="record was superseded; republish its canonical record",
                error_class="business_rule",
                retryable=False,
                http_status=409,
                details={"superseded_by": record.get("superseded_by")},
            )
        config = self.store.tenant_config_or_default(tenant_id=tenant_id)
        state = dict(record.get("propagation") or {})
        if is_exhausted(state, max_attempts=config.max_publish_attempts):
            if not reset_attempts_requested:
                raise ApiError(
                    code="PUBLISH_ATTEMPTS_EXHAUSTED",
                    message="publish attempts exhausted; resend with reset_attempts=true",
                    error_class="business_rule",
                    retryable=False,
                    http_status=409,
                    details={"attempt_count": state.get("attempt_count"), "error": state.get("error")},
                )
        if reset_attempts_requested:
            previous = int(state.get("attempt_count", 0))
            state = reset_attempts(state)
            self._audit(
                tenant_id,
                "publish_attempts_reset",
                feed_type=feed_type,
                record_id=record_id,
                previous_attempt_count=previous,
            )
        state = request_update(state, max_attempts=config.max_publish_attempts)
        state["next_attempt_at"] = None
        record["propagation"] = state

        now = self.clock()
        new_state = self.scheduler.attempt(record, config=config, now=now)
        self.store.commit_propagation(
            tenant_id=tenant_id,
            feed_type=feed_type,
            record_id=record_id,
            propagation=new_state,
        )
        published = bool(new_state["synced"] and not new_state["needs_update"] and new_state["error"] is None)
        self._audit(
            tenant_id,
            "manual_republish",
            feed_type=feed_type,
            record_id=record_id,
            published=published,
            error=new_state.get("error"),
        )
        return {"record_id": record_id, "published": published, "propagation": new_state}

    # -- maintenance --------------------------------------------------------------------

    @staticmethod
    def _last_activity(record: dict[str, Any]) -> datetime | None:
        stamps = [record.get("call_received_time"), record.get("updated_at")]
        for unit in record.get("units") or []:
            stamps.extend((unit.get("times") or {}).values())
        parsed = []
        for stamp in stamps:
            try:
                value = parse_timestamp(stamp)
            except ValueError:
                continue
            if value is not None:
                parsed.append(value)
        return max(parsed) if parsed else None

    def close_stale_incidents(self, *, tenant_id: str, now: datetime | None = None) -> int:
        now = now or self.clock()
        config = self.store.tenant_config_or_default(tenant_id=tenant_id)
        cutoff = now - timedelta(minutes=config.stale_timeout_minutes)
        closed = 0
        for record in self.store.list_by_status(tenant_id=tenant_id, feed_type="incidents", statuses=["active"]):
            last = self._last_activity(record)
            if last is None or last > cutoff:
                continue
            record["status"] = "closed"
            record["call_closed_time"] = to_iso(now)
            record["propagation"] = request_update(record.get("propagation"), max_attempts=config.max_publish_attempts)
            record["updated_at"] = to_iso(now)
            self.store.commit_record_fields(
                tenant_id=tenant_id,
                feed_type="incidents",
                record=record,
                field_groups=["lifecycle", "propagation"],
            )
            self._audit(tenant_id, "incident_closed_stale", record_id=record["record_id"], last_activity=to_iso(last))
            closed += 1
        if closed:
            logger.info("maintenance_closed_stale tenant_id=%s closed=%s", tenant_id, closed)
        return closed

    def expire_alerts(self, *, tenant_id: str, now: datetime | None = None) -> int:
        now = now or self.clock()
        expired = 0
        for record in self.store.list_by_status(tenant_id=tenant_id, feed_type="weather", statuses=["active"]):
            try:
                expires = parse_timestamp(record.get("expires") or record.get("ends"))
            except ValueError:
                continue
            if expires is None or expires > now:
                continue
            record["status"] = "expired"
            record["propagation"] = retire_propagation(record.get("propagation"))
            record["updated_at"] = to_iso(now)
            self.store.commit_record_fields(
                tenant_id=tenant_id,
                feed_type="weather",
                record=record,
                field_groups=["lifecycle", "propagation"],
            )
            expired += 1
        if expired:
            logger.info("maintenance_alerts_expired tenant_id=%s expired=%s", tenant_id, expired)
        return expired

    def run_maintenance(self, *, tenant_id: str) -> dict[str, int]:
        now = self.clock()
        config = self.store.tenant_config_or_default(tenant_id=tenant_id)
        closed = self.close_stale_incidents(tenant_id=tenant_id, now=now) if config.incidents_enabled else 0
        expired = self.expire_alerts(tenant_id=tenant_id, now=now) if config.weather_enabled else 0
        return {"closed_stale": closed, "expired_alerts": expired}
