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


class InMemoryIncidentGroupsRepository:
    def __init__(self, groups: dict[str, dict[str, Any]]) -> None:
        self._groups = groups

    def upsert(self, *, tenant_id: str, group: dict[str, Any], conn: Any = None) -> dict[str, Any]:
        item = dict(group)
        item["tenant_id"] = tenant_id
        self._groups[str(item["group_id"])] = item
        return dict(item)

    def list_by_ids(self, *, tenant_id: str, group_ids: Iterable[str]) -> list[dict[str, Any]]:
        out = []
        for group_id in dict.fromkeys(group_ids):
            row = self._groups.get(group_id)
            if row is not None and row.get("tenant_id") == tenant_id:
                out.append(dict(row))
        return out

    def list_for_tenant(self, *, tenant_id: str) -> list[dict[str, Any]]:
        return [dict(g) for g in self._groups.values() if g.get("tenant_id") == tenant_id]

    def delete_for_tenant(self, *, tenant_id: str, conn: Any = None) -> int:
        doomed = [key for key, row in self._groups.items() if row.get("tenant_id") == tenant_id]
        for key in doomed:
            del self._groups[key]
        return len(doomed)


class PostgresIncidentGroupsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "incident_groups") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def create_table_sql(self) -> list[str]:
        return [
            f"""
            CREATE TABLE IF NOT EXISTS {self._table_name} (
              group_id TEXT PRIMARY KEY,
              tenant_id TEXT NOT NULL,
              merge_key TEXT,
              canonical_record_id TEXT,
              payload JSONB NOT NULL
            )
            """
        ]

    def upsert(self, *, tenant_id: str, group: dict[str, Any], conn: Any = None) -> dict[str, Any]:
        item = dict(group)
        item["tenant_id"] = tenant_id
        sql = f"""
            INSERT INTO {self._table_name} (
                group_id, tenant_id, merge_key, canonical_record_id, payload
            ) VALUES (%s, %s, %s, %s, %s::jsonb)
            ON CONFLICT(group_id) DO UPDATE
            SET merge_key = EXCLUDED.merge_key,
                canonical_record_id = EXCLUDED.canonical_record_id,
                payload = EXCLUDED.payload
            WHERE {self._table_name}.tenant_id = EXCLUDED.tenant_id
        """

        def _op(active: Any) -> dict[str, Any]:
            with active.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["group_id"],
                        tenant_id,
                        item.get("merge_key"),
                        item.get("canonical_record_id"),
                        json.dumps(item, ensure_ascii=True, sort_keys=True),
                    ),
                )
            return item

        return self._tx_runner.run_with(conn, tenant_id=tenant_id, fn=_op)

    def list_by_ids(self, *, tenant_id: str, group_ids: Iterable[str]) -> list[dict[str, Any]]:
        ids = list(dict.fromkeys(group_ids))
        if not ids:
            return []
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE tenant_id = %s AND group_id = ANY(%s)
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, ids))
                rows = cur.fetchall() or []
            return [row[0] for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def list_for_tenant(self, *, tenant_id: str) -> list[dict[str, Any]]:
        sql = f"SELECT payload FROM {self._table_name} WHERE tenant_id = %s"

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id,))
                rows = cur.fetchall() or []
            return [row[0] for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def delete_for_tenant(self, *, tenant_id: str, conn: Any = None) -> int:
        sql = f"DELETE FROM {self._table_name} WHERE tenant_id = %s"

        def _op(active: Any) -> int:
            with active.cursor() as cur:
                cur.execute(sql, (tenant_id,))
                return int(cur.rowcount or 0)

        return self._tx_runner.run_with(conn, tenant_id=tenant_id, fn=_op)
