from __future__ import annotations

import json
import re
from typing import Any

from feedsync.db.postgres import SYSTEM_TENANT, PostgresTxRunner


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemoryTenantConfigsRepository:
    def __init__(self, configs: dict[str, dict[str, Any]]) -> None:
        self._configs = configs

    def upsert(self, *, config: dict[str, Any], conn: Any = None) -> dict[str, Any]:
        item = dict(config)
        self._configs[str(item["tenant_id"])] = item
        return dict(item)

    def get(self, *, tenant_id: str) -> dict[str, Any] | None:
        row = self._configs.get(tenant_id)
        return dict(row) if row is not None else None

    def list_all(self) -> list[dict[str, Any]]:
        return [dict(self._configs[key]) for key in sorted(self._configs)]


class PostgresTenantConfigsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "tenant_feed_configs") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def create_table_sql(self) -> list[str]:
        return [
            f"""
            CREATE TABLE IF NOT EXISTS {self._table_name} (
              tenant_id TEXT PRIMARY KEY,
              payload JSONB NOT NULL
            )
            """
        ]

    def upsert(self, *, config: dict[str, Any], conn: Any = None) -> dict[str, Any]:
        item = dict(config)
        tenant_id = str(item["tenant_id"])
        sql = f"""
            INSERT INTO {self._table_name} (tenant_id, payload)
            VALUES (%s, %s::jsonb)
            ON CONFLICT(tenant_id) DO UPDATE
            SET payload = EXCLUDED.payload
        """

        def _op(active: Any) -> dict[str, Any]:
            with active.cursor() as cur:
                cur.execute(sql, (tenant_id, json.dumps(item, ensure_ascii=True, sort_keys=True)))
            return item

        return self._tx_runner.run_with(conn, tenant_id=tenant_id, fn=_op)

    def get(self, *, tenant_id: str) -> dict[str, Any] | None:
        sql = f"SELECT payload FROM {self._table_name} WHERE tenant_id = %s LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id,))
                row = cur.fetchone()
            if row is None or not isinstance(row[0], dict):
                return None
            return row[0]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def list_all(self) -> list[dict[str, Any]]:
        sql = f"SELECT payload FROM {self._table_name} ORDER BY tenant_id ASC"

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql)
                rows = cur.fetchall() or []
            return [row[0] for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(tenant_id=SYSTEM_TENANT, fn=_op)
