from __future__ import annotations

import json
import re
from typing import Any

from feedsync.db.postgres import PostgresTxRunner


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemoryAuditLogsRepository:
    def __init__(self, audit_logs: list[dict[str, Any]]) -> None:
        self._audit_logs = audit_logs

    def append(self, *, log: dict[str, Any]) -> dict[str, Any]:
        item = dict(log)
        self._audit_logs.append(item)
        return item

    def last_for_tenant(self, *, tenant_id: str) -> dict[str, Any] | None:
        for row in reversed(self._audit_logs):
            if row.get("tenant_id") == tenant_id:
                return dict(row)
        return None

    def list_for_tenant(self, *, tenant_id: str, action: str | None = None) -> list[dict[str, Any]]:
        return [
            dict(x)
            for x in self._audit_logs
            if x.get("tenant_id") == tenant_id and (action is None or x.get("action") == action)
        ]


class PostgresAuditLogsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "audit_logs") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def create_table_sql(self) -> list[str]:
        return [
            f"""
            CREATE TABLE IF NOT EXISTS {self._table_name} (
              seq BIGSERIAL,
              audit_id TEXT PRIMARY KEY,
              tenant_id TEXT NOT NULL,
              action TEXT NOT NULL,
              occurred_at TEXT NOT NULL,
              payload JSONB NOT NULL
            )
            """
        ]

    def append(self, *, log: dict[str, Any]) -> dict[str, Any]:
        item = dict(log)
        tenant_id = str(item.get("tenant_id") or "")
        sql = f"""
            INSERT INTO {self._table_name} (
                audit_id, tenant_id, action, occurred_at, payload
            ) VALUES (%s, %s, %s, %s, %s::jsonb)
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["audit_id"],
                        tenant_id,
                        item.get("action"),
                        item.get("occurred_at"),
                        json.dumps(item, ensure_ascii=True, sort_keys=True),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def last_for_tenant(self, *, tenant_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE tenant_id = %s
            ORDER BY seq DESC
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id,))
                row = cur.fetchone()
            if row is None or not isinstance(row[0], dict):
                return None
            return row[0]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def list_for_tenant(self, *, tenant_id: str, action: str | None = None) -> list[dict[str, Any]]:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE tenant_id = %s AND (%s::text IS NULL OR action = %s)
            ORDER BY seq ASC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, action, action))
                rows = cur.fetchall() or []
            return [row[0] for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
