from __future__ import annotations

import json
import re
from collections.abc import Iterable
from typing import Any

from feedsync.db.postgres import PostgresTxRunner


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _needs_update(record: dict[str, Any]) -> bool:
    return bool((record.get("propagation") or {}).get("needs_update"))


class InMemoryRecordsRepository:
    """Incident or alert rows keyed by record_id; every read is filtered by tenant."""

    def __init__(self, records: dict[str, dict[str, Any]]) -> None:
        self._records = records

    def _rows(self, tenant_id: str) -> list[dict[str, Any]]:
        return [r for r in self._records.values() if r.get("tenant_id") == tenant_id]

    def upsert(self, *, tenant_id: str, record: dict[str, Any], conn: Any = None) -> dict[str, Any]:
        item = dict(record)
        item["tenant_id"] = tenant_id
        self._records[str(item["record_id"])] = item
        return dict(item)

    def get(self, *, tenant_id: str, record_id: str, conn: Any = None) -> dict[str, Any] | None:
        row = self._records.get(record_id)
        if row is None or row.get("tenant_id") != tenant_id:
            return None
        return dict(row)

    def list_by_ids(self, *, tenant_id: str, record_ids: Iterable[str]) -> list[dict[str, Any]]:
        out = []
        for record_id in dict.fromkeys(record_ids):
            row = self.get(tenant_id=tenant_id, record_id=record_id)
            if row is not None:
                out.append(row)
        return out

    def get_by_external_ids(self, *, tenant_id: str, external_ids: Iterable[str]) -> list[dict[str, Any]]:
        wanted = {x for x in external_ids if x}
        return [dict(r) for r in self._rows(tenant_id) if r.get("external_id") in wanted]

    def list_by_addresses(self, *, tenant_id: str, normalized_addresses: Iterable[str]) -> list[dict[str, Any]]:
        wanted = set(normalized_addresses)
        return [dict(r) for r in self._rows(tenant_id) if r.get("normalized_address") in wanted]

    def list_referencing(self, *, tenant_id: str, external_ids: Iterable[str]) -> list[dict[str, Any]]:
        wanted = {x for x in external_ids if x}
        return [
            dict(r)
            for r in self._rows(tenant_id)
            if wanted.intersection(r.get("previous_ids") or [])
        ]

    def list_by_status(self, *, tenant_id: str, statuses: Iterable[str]) -> list[dict[str, Any]]:
        wanted = set(statuses)
        rows = [dict(r) for r in self._rows(tenant_id) if r.get("status") in wanted]
        rows.sort(key=lambda r: str(r.get("created_at") or ""))
        return rows

    def list_pending(self, *, tenant_id: str) -> list[dict[str, Any]]:
        rows = [dict(r) for r in self._rows(tenant_id) if _needs_update(r)]
        rows.sort(key=lambda r: str(r.get("updated_at") or ""))
        return rows

    def delete_for_tenant(self, *, tenant_id: str, conn: Any = None) -> int:
        doomed = [key for key, row in self._records.items() if row.get("tenant_id") == tenant_id]
        for key in doomed:
            del self._records[key]
        return len(doomed)


class PostgresRecordsRepository:
    """Records table for the postgres backend; the full record lives in ``payload``."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str) -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def create_table_sql(self) -> list[str]:
        return [
            f"""
            CREATE TABLE IF NOT EXISTS {self._table_name} (
              record_id TEXT PRIMARY KEY,
              tenant_id TEXT NOT NULL,
              external_id TEXT,
              status TEXT NOT NULL,
              normalized_address TEXT,
              needs_update BOOLEAN NOT NULL DEFAULT FALSE,
              created_at TEXT,
              updated_at TEXT,
              payload JSONB NOT NULL
            )
            """,
            f"""
            CREATE INDEX IF NOT EXISTS {self._table_name}_tenant_external_idx
            ON {self._table_name} (tenant_id, external_id)
            """,
            f"""
            CREATE INDEX IF NOT EXISTS {self._table_name}_tenant_address_idx
            ON {self._table_name} (tenant_id, normalized_address)
            """,
            f"""
            CREATE INDEX IF NOT EXISTS {self._table_name}_tenant_status_idx
            ON {self._table_name} (tenant_id, status)
            """,
        ]

    def _select(self, where: str, params: tuple[Any, ...], *, tenant_id: str, order_by: str = "created_at") -> list[dict[str, Any]]:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE tenant_id = %s AND {where}
            ORDER BY {order_by} ASC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, *params))
                rows = cur.fetchall() or []
            return [row[0] for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def upsert(self, *, tenant_id: str, record: dict[str, Any], conn: Any = None) -> dict[str, Any]:
        item = dict(record)
        item["tenant_id"] = tenant_id
        sql = f"""
            INSERT INTO {self._table_name} (
                record_id, tenant_id, external_id, status, normalized_address,
                needs_update, created_at, updated_at, payload
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb)
            ON CONFLICT(record_id) DO UPDATE
            SET external_id = EXCLUDED.external_id,
                status = EXCLUDED.status,
                normalized_address = EXCLUDED.normalized_address,
                needs_update = EXCLUDED.needs_update,
                updated_at = EXCLUDED.updated_at,
                payload = EXCLUDED.payload
            WHERE {self._table_name}.tenant_id = EXCLUDED.tenant_id
        """

        def _op(active: Any) -> dict[str, Any]:
            with active.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["record_id"],
                        tenant_id,
                        item.get("external_id"),
                        item.get("status", "active"),
                        item.get("normalized_address"),
                        _needs_update(item),
                        item.get("created_at"),
                        item.get("updated_at"),
                        json.dumps(item, ensure_ascii=True, sort_keys=True),
                    ),
                )
            return item

        return self._tx_runner.run_with(conn, tenant_id=tenant_id, fn=_op)

    def get(self, *, tenant_id: str, record_id: str, conn: Any = None) -> dict[str, Any] | None:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE tenant_id = %s AND record_id = %s
            LIMIT 1
        """

        def _op(active: Any) -> dict[str, Any] | None:
            with active.cursor() as cur:
                cur.execute(sql, (tenant_id, record_id))
                row = cur.fetchone()
            if row is None or not isinstance(row[0], dict):
                return None
            return row[0]

        return self._tx_runner.run_with(conn, tenant_id=tenant_id, fn=_op)

    def list_by_ids(self, *, tenant_id: str, record_ids: Iterable[str]) -> list[dict[str, Any]]:
        ids = list(dict.fromkeys(record_ids))
        if not ids:
            return []
        return self._select("record_id = ANY(%s)", (ids,), tenant_id=tenant_id)

    def get_by_external_ids(self, *, tenant_id: str, external_ids: Iterable[str]) -> list[dict[str, Any]]:
        ids = [x for x in dict.fromkeys(external_ids) if x]
        if not ids:
            return []
        return self._select("external_id = ANY(%s)", (ids,), tenant_id=tenant_id)

    def list_by_addresses(self, *, tenant_id: str, normalized_addresses: Iterable[str]) -> list[dict[str, Any]]:
        addresses = list(dict.fromkeys(normalized_addresses))
        if not addresses:
            return []
        return self._select("normalized_address = ANY(%s)", (addresses,), tenant_id=tenant_id)

    def list_referencing(self, *, tenant_id: str, external_ids: Iterable[str]) -> list[dict[str, Any]]:
        ids = [x for x in dict.fromkeys(external_ids) if x]
        if not ids:
            return []
        return self._select("payload->'previous_ids' ?| %s", (ids,), tenant_id=tenant_id)

    def list_by_status(self, *, tenant_id: str, statuses: Iterable[str]) -> list[dict[str, Any]]:
        wanted = list(dict.fromkeys(statuses))
        if not wanted:
            return []
        return self._select("status = ANY(%s)", (wanted,), tenant_id=tenant_id)

    def list_pending(self, *, tenant_id: str) -> list[dict[str, Any]]:
        return self._select("needs_update = TRUE", (), tenant_id=tenant_id, order_by="updated_at")

    def delete_for_tenant(self, *, tenant_id: str, conn: Any = None) -> int:
        sql = f"DELETE FROM {self._table_name} WHERE tenant_id = %s"

        def _op(active: Any) -> int:
            with active.cursor() as cur:
                cur.execute(sql, (tenant_id,))
                return int(cur.rowcount or 0)

        return self._tx_runner.run_with(conn, tenant_id=tenant_id, fn=_op)
