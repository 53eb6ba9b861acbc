from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import uuid
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from feedsync.call_types import normalize_code
from feedsync.config import EngineSettings, TenantFeedConfig
from feedsync.db.postgres import PostgresTxRunner
from feedsync.errors import ApiError
from feedsync.models import NormalizedAlert, NormalizedIncident, field_groups_for
from feedsync.reconciler import ChangeSet, TenantSnapshot
from feedsync.repositories.audit_logs import InMemoryAuditLogsRepository, PostgresAuditLogsRepository
from feedsync.repositories.incident_groups import (
    InMemoryIncidentGroupsRepository,
    PostgresIncidentGroupsRepository,
)
from feedsync.repositories.records import InMemoryRecordsRepository, PostgresRecordsRepository
from feedsync.repositories.tenant_configs import (
    InMemoryTenantConfigsRepository,
    PostgresTenantConfigsRepository,
)
from feedsync.unit_tracker import decode_units

logger = logging.getLogger(__name__)

# Upper bound on link-following rounds when assembling a snapshot.
SNAPSHOT_LINK_DEPTH = 8


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, datetime):
        return value.astimezone(UTC).isoformat()
    if isinstance(value, dict):
        return {str(key): _json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(item) for item in value]
    return str(value)


class InMemoryStore:
    """Persistence gateway. Every read and write is scoped to one tenant."""

    def __init__(self, *, settings: EngineSettings | None = None) -> None:
        self.settings = settings or EngineSettings.from_env()
        self.tenant_configs: dict[str, dict[str, Any]] = {}
        self.incidents: dict[str, dict[str, Any]] = {}
        self.alerts: dict[str, dict[str, Any]] = {}
        self.incident_groups: dict[str, dict[str, Any]] = {}
        self.audit_logs: list[dict[str, Any]] = []
        self._lock = threading.RLock()
        self._tenant_locks: dict[str, threading.RLock] = {}
        self._bind_repositories()

    def _bind_repositories(self) -> None:
        self.tenant_configs_repository = InMemoryTenantConfigsRepository(self.tenant_configs)
        self.incidents_repository = InMemoryRecordsRepository(self.incidents)
        self.alerts_repository = InMemoryRecordsRepository(self.alerts)
        self.groups_repository = InMemoryIncidentGroupsRepository(self.incident_groups)
        self.audit_repository = InMemoryAuditLogsRepository(self.audit_logs)

    def reset(self) -> None:
        with self._lock:
            self.tenant_configs.clear()
            self.incidents.clear()
            self.alerts.clear()
            self.incident_groups.clear()
            self.audit_logs.clear()
            self._tenant_locks.clear()

    @staticmethod
    def _assert_tenant_scope(entity_tenant_id: str, tenant_id: str) -> None:
        if entity_tenant_id != tenant_id:
            raise ApiError(
                code="TENANT_SCOPE_VIOLATION",
                message="tenant mismatch",
                error_class="security_sensitive",
                retryable=False,
                http_status=403,
            )

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).isoformat()

    def _tenant_lock(self, tenant_id: str) -> threading.RLock:
        with self._lock:
            lock = self._tenant_locks.get(tenant_id)
            if lock is None:
                lock = threading.RLock()
                self._tenant_locks[tenant_id] = lock
            return lock

    def _run_atomic(self, *, tenant_id: str, fn: Callable[[Any], Any]) -> Any:
        with self._tenant_lock(tenant_id):
            return fn(None)

    def _records_repository(self, feed_type: str) -> Any:
        if feed_type == "incidents":
            return self.incidents_repository
        if feed_type == "weather":
            return self.alerts_repository
        raise ValueError(f"unsupported feed type: {feed_type}")

    @staticmethod
    def _hydrate(feed_type: str, record: dict[str, Any] | None) -> dict[str, Any] | None:
        if record is None:
            return None
        item = dict(record)
        if feed_type == "incidents":
            item["units"] = decode_units(item.get("units"))
        return item

    def _hydrate_all(self, feed_type: str, rows: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
        return [self._hydrate(feed_type, row) for row in rows]

    # -- tenant configuration -----------------------------------------------------------

    def get_tenant_config(self, *, tenant_id: str) -> TenantFeedConfig | None:
        row = self.tenant_configs_repository.get(tenant_id=tenant_id)
        if row is None:
            return None
        return TenantFeedConfig.from_dict(row, settings=self.settings)

    def tenant_config_or_default(self, *, tenant_id: str) -> TenantFeedConfig:
        return self.get_tenant_config(tenant_id=tenant_id) or TenantFeedConfig.defaults(tenant_id, self.settings)

    def save_tenant_config(self, *, config: TenantFeedConfig) -> TenantFeedConfig:
        saved = self.tenant_configs_repository.upsert(config=_json_safe(config.as_dict()))
        return TenantFeedConfig.from_dict(saved, settings=self.settings)

    def list_tenant_configs(self) -> list[TenantFeedConfig]:
        return [TenantFeedConfig.from_dict(row, settings=self.settings) for row in self.tenant_configs_repository.list_all()]

    # -- indexed reads ------------------------------------------------------------------

    def get_record(self, *, tenant_id: str, feed_type: str, record_id: str) -> dict[str, Any] | None:
        repo = self._records_repository(feed_type)
        return self._hydrate(feed_type, repo.get(tenant_id=tenant_id, record_id=record_id))

    def get_by_external_id(self, *, tenant_id: str, feed_type: str, external_id: str) -> dict[str, Any] | None:
        repo = self._records_repository(feed_type)
        rows = repo.get_by_external_ids(tenant_id=tenant_id, external_ids=[external_id])
        return self._hydrate(feed_type, rows[0]) if rows else None

    def list_by_status(self, *, tenant_id: str, feed_type: str, statuses: Iterable[str]) -> list[dict[str, Any]]:
        repo = self._records_repository(feed_type)
        return self._hydrate_all(feed_type, repo.list_by_status(tenant_id=tenant_id, statuses=list(statuses)))

    def list_by_address_call_type(
        self,
        *,
        tenant_id: str,
        normalized_address: str,
        call_type: str,
    ) -> list[dict[str, Any]]:
        rows = self.incidents_repository.list_by_addresses(tenant_id=tenant_id, normalized_addresses=[normalized_address])
        code = normalize_code(call_type)
        return self._hydrate_all(
            "incidents",
            [r for r in rows if normalize_code(str(r.get("call_type") or "")) == code],
        )

    def list_pending_propagation(self, *, tenant_id: str, feed_type: str) -> list[dict[str, Any]]:
        repo = self._records_repository(feed_type)
        return self._hydrate_all(feed_type, repo.list_pending(tenant_id=tenant_id))

    def list_groups(self, *, tenant_id: str) -> list[dict[str, Any]]:
        return self.groups_repository.list_for_tenant(tenant_id=tenant_id)

    # -- snapshots ----------------------------------------------------------------------

    def load_incident_snapshot(
        self,
        *,
        tenant_id: str,
        batch: Iterable[NormalizedIncident],
        record_ids: Iterable[str] = (),
    ) -> TenantSnapshot:
        """Records the batch can touch: same external id, same address, and their group and canonical links.

        ``record_ids`` seeds the snapshot with records an operator named directly.
        """
        items = list(batch)
        repo = self.incidents_repository
        found: dict[str, dict[str, Any]] = {}
        for row in repo.list_by_ids(tenant_id=tenant_id, record_ids=sorted({str(x) for x in record_ids})):
            found[str(row["record_id"])] = row
        for row in repo.get_by_external_ids(
            tenant_id=tenant_id,
            external_ids=[i.external_id for i in items if i.external_id],
        ):
            found[str(row["record_id"])] = row
        for row in repo.list_by_addresses(
            tenant_id=tenant_id,
            normalized_addresses=[i.normalized_address for i in items],
        ):
            found[str(row["record_id"])] = row

        groups: dict[str, dict[str, Any]] = {}
        for _ in range(SNAPSHOT_LINK_DEPTH):
            group_ids = {str(r["group_id"]) for r in found.values() if r.get("group_id")} - set(groups)
            for group in self.groups_repository.list_by_ids(tenant_id=tenant_id, group_ids=group_ids):
                groups[str(group["group_id"])] = group
            wanted = {str(r["superseded_by"]) for r in found.values() if r.get("superseded_by")}
            for group in groups.values():
                wanted.update(str(x) for x in group.get("record_ids") or [])
            missing = wanted - set(found)
            if not missing and not group_ids:
                break
            for row in repo.list_by_ids(tenant_id=tenant_id, record_ids=sorted(missing)):
                found[str(row["record_id"])] = row
        return TenantSnapshot(records=self._hydrate_all("incidents", found.values()), groups=groups.values())

    def load_alert_snapshot(self, *, tenant_id: str, batch: Iterable[NormalizedAlert]) -> TenantSnapshot:
        """Records on the identifier chains the batch refers to, in both directions."""
        items = list(batch)
        repo = self.alerts_repository
        found: dict[str, dict[str, Any]] = {}
        external_ids: set[str] = set()
        for alert in items:
            external_ids.add(alert.external_id)
            external_ids.update(alert.previous_ids)
        seen_external: set[str] = set()
        for _ in range(SNAPSHOT_LINK_DEPTH):
            pending = external_ids - seen_external
            seen_external.update(pending)
            rows = repo.get_by_external_ids(tenant_id=tenant_id, external_ids=sorted(pending))
            rows += repo.list_referencing(tenant_id=tenant_id, external_ids=sorted(pending))
            for row in rows:
                found[str(row["record_id"])] = row
            wanted = {str(r["superseded_by"]) for r in found.values() if r.get("superseded_by")} - set(found)
            for row in repo.list_by_ids(tenant_id=tenant_id, record_ids=sorted(wanted)):
                found[str(row["record_id"])] = row
            for row in found.values():
                external_ids.update(str(x) for x in row.get("previous_ids") or [])
                if row.get("external_id"):
                    external_ids.add(str(row["external_id"]))
            if external_ids <= seen_external and not wanted:
                break
        return TenantSnapshot(records=self._hydrate_all("weather", found.values()))

    # -- writes -------------------------------------------------------------------------

    def _merge_groups(
        self,
        *,
        feed_type: str,
        current: dict[str, Any] | None,
        incoming: dict[str, Any],
        field_groups: Iterable[str],
    ) -> dict[str, Any]:
        if current is None:
            merged = dict(incoming)
            merged["version"] = 1
            return merged
        merged = dict(current)
        groups = field_groups_for(feed_type)
        touched = set(field_groups)
        for group in touched:
            for name in groups.get(group, ()):
                merged[name] = incoming.get(name)
        # Publish bookkeeping alone does not count as record activity.
        if touched - {"propagation"}:
            merged["updated_at"] = incoming.get("updated_at") or self._utcnow_iso()
        merged["version"] = int(current.get("version", 0)) + 1
        return merged

    def commit_changeset(self, *, changeset: ChangeSet) -> dict[str, Any]:
        """Apply every write of one reconciliation in a single tenant transaction."""
        tenant_id = changeset.tenant_id
        feed_type = changeset.feed_type
        repo = self._records_repository(feed_type)
        for write in changeset.writes.values():
            self._assert_tenant_scope(str(write.record.get("tenant_id")), tenant_id)
        for group in changeset.groups.values():
            self._assert_tenant_scope(str(group.get("tenant_id")), tenant_id)

        def _op(conn: Any) -> dict[str, Any]:
            staged: list[dict[str, Any]] = []
            for record_id, write in changeset.writes.items():
                current = None if write.is_new else repo.get(tenant_id=tenant_id, record_id=record_id, conn=conn)
                staged.append(
                    _json_safe(
                        self._merge_groups(
                            feed_type=feed_type,
                            current=current,
                            incoming=write.record,
                            field_groups=write.field_groups,
                        )
                    )
                )
            for row in staged:
                repo.upsert(tenant_id=tenant_id, record=row, conn=conn)
            for group in changeset.groups.values():
                self.groups_repository.upsert(tenant_id=tenant_id, group=_json_safe(group), conn=conn)
            return {"records_written": len(staged), "groups_written": len(changeset.groups)}

        if changeset.is_empty():
            return {"records_written": 0, "groups_written": 0}
        result = self._run_atomic(tenant_id=tenant_id, fn=_op)
        logger.debug(
            "store_changeset_committed tenant_id=%s feed_type=%s records=%s groups=%s",
            tenant_id,
            feed_type,
            result["records_written"],
            result["groups_written"],
        )
        return result

    def commit_record_fields(
        self,
        *,
        tenant_id: str,
        feed_type: str,
        record: dict[str, Any],
        field_groups: Iterable[str],
    ) -> dict[str, Any]:
        self._assert_tenant_scope(str(record.get("tenant_id")), tenant_id)
        repo = self._records_repository(feed_type)
        groups = list(field_groups)

        def _op(conn: Any) -> dict[str, Any]:
            current = repo.get(tenant_id=tenant_id, record_id=str(record["record_id"]), conn=conn)
            if current is None:
                raise ApiError(
                    code="RECORD_NOT_FOUND",
                    message="record not found",
                    error_class="validation",
                    retryable=False,
                    http_status=404,
                )
            merged = self._merge_groups(feed_type=feed_type, current=current, incoming=record, field_groups=groups)
            return repo.upsert(tenant_id=tenant_id, record=_json_safe(merged), conn=conn)

        return self._hydrate(feed_type, self._run_atomic(tenant_id=tenant_id, fn=_op))

    def commit_propagation(
        self,
        *,
        tenant_id: str,
        feed_type: str,
        record_id: str,
        propagation: dict[str, Any],
    ) -> dict[str, Any]:
        return self.commit_record_fields(
            tenant_id=tenant_id,
            feed_type=feed_type,
            record={
                "record_id": record_id,
                "tenant_id": tenant_id,
                "propagation": dict(propagation),
            },
            field_groups=["propagation"],
        )

    def delete_incident_data(self, *, tenant_id: str) -> dict[str, int]:
        def _op(conn: Any) -> dict[str, int]:
            incidents = self.incidents_repository.delete_for_tenant(tenant_id=tenant_id, conn=conn)
            groups = self.groups_repository.delete_for_tenant(tenant_id=tenant_id, conn=conn)
            return {"incidents_deleted": incidents, "groups_deleted": groups}

        return self._run_atomic(tenant_id=tenant_id, fn=_op)

    # -- audit sink ---------------------------------------------------------------------

    @staticmethod
    def _compute_audit_hash(*, log: dict[str, Any], prev_hash: str) -> str:
        material = {
            key: value
            for key, value in log.items()
            if key not in {"audit_hash", "prev_hash"}
        }
        material["prev_hash"] = prev_hash
        blob = json.dumps(material, sort_keys=True, ensure_ascii=True, separators=(",", ":"))
        return hashlib.sha256(blob.encode("utf-8")).hexdigest()

    def _append_audit_log(self, *, log: dict[str, Any]) -> dict[str, Any]:
        entry = _json_safe(dict(log))
        tenant_id = str(entry.get("tenant_id") or "")
        if not entry.get("audit_id"):
            entry["audit_id"] = f"audit_{uuid.uuid4().hex[:12]}"
        if not entry.get("occurred_at"):
            entry["occurred_at"] = self._utcnow_iso()
        with self._tenant_lock(tenant_id):
            last = self.audit_repository.last_for_tenant(tenant_id=tenant_id)
            prev_hash = str((last or {}).get("audit_hash") or "")
            entry["prev_hash"] = prev_hash
            entry["audit_hash"] = self._compute_audit_hash(log=entry, prev_hash=prev_hash)
            return self.audit_repository.append(log=entry)

    def append_audit_event(self, *, tenant_id: str, action: str, **payload: Any) -> dict[str, Any]:
        return self._append_audit_log(log={"tenant_id": tenant_id, "action": action, **payload})

    def list_audit_logs(
        self,
        *,
        tenant_id: str,
        action: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        rows = self.audit_repository.list_for_tenant(tenant_id=tenant_id, action=action)
        if limit is not None and limit >= 0:
            rows = rows[-limit:] if limit else []
        return rows

    def verify_audit_integrity(self, *, tenant_id: str) -> dict[str, Any]:
        rows = self.audit_repository.list_for_tenant(tenant_id=tenant_id)
        prev_hash = ""
        for idx, row in enumerate(rows):
            stored_prev = str(row.get("prev_hash") or "")
            if stored_prev != prev_hash:
                return {
                    "valid": False,
                    "checked_count": idx + 1,
                    "reason": "prev_hash_mismatch",
                    "audit_id": row.get("audit_id"),
                }
            expected = self._compute_audit_hash(log=row, prev_hash=stored_prev)
            actual = str(row.get("audit_hash") or "")
            if actual != expected:
                return {
                    "valid": False,
                    "checked_count": idx + 1,
                    "reason": "audit_hash_mismatch",
                    "audit_id": row.get("audit_id"),
                }
            prev_hash = actual
        return {"valid": True, "checked_count": len(rows), "reason": None, "audit_id": None}


class PostgresBackedStore(InMemoryStore):
    """Same gateway over PostgreSQL; one transaction per tenant commit."""

    def __init__(self, *, dsn: str, settings: EngineSettings | None = None) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must be provided for postgres store backend")
        self._tx_runner = PostgresTxRunner(dsn)
        super().__init__(settings=settings)
        self._initialize_database()

    def _bind_repositories(self) -> None:
        self.tenant_configs_repository = PostgresTenantConfigsRepository(
            tx_runner=self._tx_runner,
            table_name="tenant_feed_configs",
        )
        self.incidents_repository = PostgresRecordsRepository(tx_runner=self._tx_runner, table_name="incidents")
        self.alerts_repository = PostgresRecordsRepository(tx_runner=self._tx_runner, table_name="weather_alerts")
        self.groups_repository = PostgresIncidentGroupsRepository(
            tx_runner=self._tx_runner,
            table_name="incident_groups",
        )
        self.audit_repository = PostgresAuditLogsRepository(tx_runner=self._tx_runner, table_name="audit_logs")

    def _initialize_database(self) -> None:
        statements: list[str] = []
        for repo in (
            self.tenant_configs_repository,
            self.incidents_repository,
            self.alerts_repository,
            self.groups_repository,
            self.audit_repository,
        ):
            statements.extend(repo.create_table_sql())
        self._tx_runner.execute_script(statements)

    def _run_atomic(self, *, tenant_id: str, fn: Callable[[Any], Any]) -> Any:
        with self._tenant_lock(tenant_id):
            return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=fn, exclusive=True)

    def reset(self) -> None:
        with self._lock:
            self._tx_runner.execute_script(
                ["TRUNCATE TABLE tenant_feed_configs, incidents, weather_alerts, incident_groups, audit_logs"]
            )
        super().reset()


def create_store_from_env(environ: Mapping[str, str] | None = None) -> InMemoryStore:
    env = os.environ if environ is None else environ
    backend = env.get("FEEDSYNC_STORE_BACKEND", "memory").strip().lower()
    settings = EngineSettings.from_env(env)
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when FEEDSYNC_STORE_BACKEND=postgres")
        return PostgresBackedStore(dsn=dsn, settings=settings)
    if backend != "memory":
        raise RuntimeError(f"unsupported store backend: {backend}")
    return InMemoryStore(settings=settings)


store = create_store_from_env()

