from __future__ import annotations

import pytest

from feedsync.config import EngineSettings
from feedsync.db.postgres import SYSTEM_TENANT
from feedsync.errors import ApiError
from feedsync.reconciler import ChangeSet, RecordWrite
from feedsync.repositories import (
    InMemoryAuditLogsRepository,
    InMemoryRecordsRepository,
    PostgresRecordsRepository,
    PostgresTenantConfigsRepository,
)
from feedsync.store import InMemoryStore, create_store_from_env


class _Cursor:
    def __init__(self, conn: "_Conn") -> None:
        self._conn = conn
        self.rowcount = conn.rowcount

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, query: str, params=None):
        self._conn.statements.append((" ".join(query.split()), params))

    def fetchall(self):
        return self._conn.rows

    def fetchone(self):
        return self._conn.rows[0] if self._conn.rows else None


class _Conn:
    def __init__(self, rows=None, rowcount: int = 0) -> None:
        self.rows = rows or []
        self.rowcount = rowcount
        self.statements: list[tuple[str, object]] = []

    def cursor(self):
        return _Cursor(self)


class _Runner:
    def __init__(self, conn: _Conn) -> None:
        self.conn = conn
        self.tenants: list[str] = []

    def run_in_tx(self, *, tenant_id, fn):
        self.tenants.append(tenant_id)
        return fn(self.conn)

    def run_with(self, conn, *, tenant_id, fn):
        if conn is not None:
            return fn(conn)
        return self.run_in_tx(tenant_id=tenant_id, fn=fn)


def _row(record_id: str, tenant_id: str, **extra) -> dict:
    return {"record_id": record_id, "tenant_id": tenant_id, "status": "active", **extra}


def test_in_memory_records_are_filtered_by_tenant():
    repo = InMemoryRecordsRepository({})
    repo.upsert(tenant_id="tenant_a", record=_row("inc_1", "tenant_a", external_id="A1"))
    repo.upsert(tenant_id="tenant_b", record=_row("inc_2", "tenant_b", external_id="A1"))

    assert repo.get(tenant_id="tenant_b", record_id="inc_1") is None
    assert [r["record_id"] for r in repo.get_by_external_ids(tenant_id="tenant_a", external_ids=["A1"])] == ["inc_1"]
    assert repo.delete_for_tenant(tenant_id="tenant_a") == 1
    assert repo.get(tenant_id="tenant_b", record_id="inc_2") is not None


def test_in_memory_referencing_and_pending_queries():
    repo = InMemoryRecordsRepository({})
    repo.upsert(tenant_id="tenant_a", record=_row("alt_1", "tenant_a", previous_ids=["urn:A"]))
    repo.upsert(
        tenant_id="tenant_a",
        record=_row("alt_2", "tenant_a", updated_at="2026-03-14T12:05:00+00:00", propagation={"needs_update": True}),
    )
    repo.upsert(
        tenant_id="tenant_a",
        record=_row("alt_3", "tenant_a", updated_at="2026-03-14T12:01:00+00:00", propagation={"needs_update": True}),
    )

    assert [r["record_id"] for r in repo.list_referencing(tenant_id="tenant_a", external_ids=["urn:A"])] == ["alt_1"]
    assert [r["record_id"] for r in repo.list_pending(tenant_id="tenant_a")] == ["alt_3", "alt_2"]


def test_in_memory_audit_last_for_tenant():
    repo = InMemoryAuditLogsRepository([])
    repo.append(log={"tenant_id": "tenant_a", "audit_id": "a1"})
    repo.append(log={"tenant_id": "tenant_b", "audit_id": "b1"})
    assert repo.last_for_tenant(tenant_id="tenant_a")["audit_id"] == "a1"
    assert repo.last_for_tenant(tenant_id="tenant_c") is None


def test_postgres_records_repository_rejects_bad_table_name():
    with pytest.raises(ValueError, match="invalid SQL identifier"):
        PostgresRecordsRepository(tx_runner=_Runner(_Conn()), table_name="incidents; DROP")


def test_postgres_records_queries_are_tenant_scoped():
    conn = _Conn(rows=[({"record_id": "inc_1", "tenant_id": "tenant_a"},), ("garbage",)])
    runner = _Runner(conn)
    repo = PostgresRecordsRepository(tx_runner=runner, table_name="incidents")

    rows = repo.get_by_external_ids(tenant_id="tenant_a", external_ids=["A1", "A1", ""])
    assert rows == [{"record_id": "inc_1", "tenant_id": "tenant_a"}]
    sql, params = conn.statements[-1]
    assert "WHERE tenant_id = %s AND external_id = ANY(%s)" in sql
    assert params == ("tenant_a", ["A1"])
    assert runner.tenants == ["tenant_a"]

    assert repo.list_by_addresses(tenant_id="tenant_a", normalized_addresses=[]) == []
    assert len(conn.statements) == 1


def test_postgres_upsert_writes_payload_and_index_columns():
    conn = _Conn()
    repo = PostgresRecordsRepository(tx_runner=_Runner(conn), table_name="incidents")
    record = _row("inc_1", "spoofed", external_id="A1", propagation={"needs_update": True})
    out = repo.upsert(tenant_id="tenant_a", record=record, conn=conn)

    assert out["tenant_id"] == "tenant_a"
    sql, params = conn.statements[0]
    assert sql.startswith("INSERT INTO incidents")
    assert "WHERE incidents.tenant_id = EXCLUDED.tenant_id" in sql
    assert params[:6] == ("inc_1", "tenant_a", "A1", "active", None, True)
    assert '"tenant_id": "tenant_a"' in params[-1]


def test_postgres_delete_reports_row_count():
    conn = _Conn(rowcount=4)
    repo = PostgresRecordsRepository(tx_runner=_Runner(conn), table_name="incidents")
    assert repo.delete_for_tenant(tenant_id="tenant_a") == 4


def test_postgres_tenant_listing_runs_as_system_tenant():
    conn = _Conn(rows=[({"tenant_id": "tenant_a"},)])
    runner = _Runner(conn)
    repo = PostgresTenantConfigsRepository(tx_runner=runner)
    assert repo.list_all() == [{"tenant_id": "tenant_a"}]
    assert runner.tenants == [SYSTEM_TENANT]


def _store() -> InMemoryStore:
    return InMemoryStore(settings=EngineSettings())


def test_commit_replaces_only_touched_field_groups():
    store = _store()
    base = _row(
        "inc_1",
        "tenant_a",
        external_id="A1",
        call_type="SF",
        updated_at="2026-03-14T12:00:00+00:00",
        propagation={"needs_update": True},
    )
    created = ChangeSet(tenant_id="tenant_a", feed_type="incidents")
    created.writes["inc_1"] = RecordWrite(record=base, field_groups={"content"}, is_new=True)
    store.commit_changeset(changeset=created)

    stale = dict(base, status="closed", call_type="XX", propagation={"needs_update": False})
    change = ChangeSet(tenant_id="tenant_a", feed_type="incidents")
    change.writes["inc_1"] = RecordWrite(record=stale, field_groups={"propagation"})
    assert store.commit_changeset(changeset=change) == {"records_written": 1, "groups_written": 0}

    row = store.get_record(tenant_id="tenant_a", feed_type="incidents", record_id="inc_1")
    assert row["version"] == 2
    assert row["status"] == "active"
    assert row["call_type"] == "SF"
    assert row["propagation"] == {"needs_update": False}
    assert row["updated_at"] == "2026-03-14T12:00:00+00:00"


def test_commit_rejects_cross_tenant_rows():
    store = _store()
    change = ChangeSet(tenant_id="tenant_a", feed_type="incidents")
    change.writes["inc_1"] = RecordWrite(record=_row("inc_1", "tenant_b"), field_groups={"content"}, is_new=True)
    with pytest.raises(ApiError) as exc_info:
        store.commit_changeset(changeset=change)
    assert exc_info.value.code == "TENANT_SCOPE_VIOLATION"
    assert store.incidents == {}


def test_audit_chain_detects_tampering():
    store = _store()
    store.append_audit_event(tenant_id="tenant_a", action="tenant_config_updated")
    store.append_audit_event(tenant_id="tenant_b", action="tenant_config_updated")
    second = store.append_audit_event(tenant_id="tenant_a", action="incident_merged", record_id="inc_1")
    assert store.verify_audit_integrity(tenant_id="tenant_a") == {
        "valid": True,
        "checked_count": 2,
        "reason": None,
        "audit_id": None,
    }

    for row in store.audit_logs:
        if row["audit_id"] == second["audit_id"]:
            row["record_id"] = "inc_forged"
    result = store.verify_audit_integrity(tenant_id="tenant_a")
    assert result["valid"] is False
    assert result["reason"] == "audit_hash_mismatch"
    assert store.verify_audit_integrity(tenant_id="tenant_b")["valid"] is True


def test_store_factory():
    assert isinstance(create_store_from_env({}), InMemoryStore)
    with pytest.raises(ValueError, match="POSTGRES_DSN"):
        create_store_from_env({"FEEDSYNC_STORE_BACKEND": "postgres"})
    with pytest.raises(RuntimeError, match="unsupported store backend"):
        create_store_from_env({"FEEDSYNC_STORE_BACKEND": "mongo"})
