"""PostgreSQL transactions for the postgres store.

Each transaction pins the tenant in session config. Commits that change records also take
a transaction-scoped advisory lock on the tenant, so poller and API processes apply one
tenant's changesets one at a time, the way the in-memory store's tenant lock does.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any

# Session tenant used for cross-tenant reads such as listing configured tenants.
SYSTEM_TENANT = "__system__"

SET_TENANT_SQL = "SELECT set_config('feedsync.current_tenant', %s, true)"
TENANT_LOCK_SQL = "SELECT pg_advisory_xact_lock(hashtext('feedsync:' || %s))"


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for the postgres store; install psycopg[binary]") from exc
    return psycopg


class PostgresTxRunner:
    def __init__(self, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()

    def connect(self) -> Any:
        return _import_psycopg().connect(self._dsn)

    def run_in_tx(
        self,
        *,
        tenant_id: str,
        fn: Callable[[Any], Any],
        exclusive: bool = False,
    ) -> Any:
        """Run ``fn`` in a new transaction scoped to ``tenant_id``.

        With ``exclusive`` the transaction waits for any other exclusive transaction of
        the same tenant to finish first.
        """
        if not tenant_id.strip():
            raise ValueError("tenant_id must not be empty")
        if exclusive and tenant_id == SYSTEM_TENANT:
            raise ValueError("exclusive transactions need a concrete tenant_id")

        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(SET_TENANT_SQL, (tenant_id,))
                if exclusive:
                    cur.execute(TENANT_LOCK_SQL, (tenant_id,))
            result = fn(conn)
            conn.commit()
            return result

    def run_with(
        self,
        conn: Any | None,
        *,
        tenant_id: str,
        fn: Callable[[Any], Any],
    ) -> Any:
        """Run ``fn`` on an open transaction when one is given, otherwise in a new one."""
        if conn is not None:
            return fn(conn)
        return self.run_in_tx(tenant_id=tenant_id, fn=fn)

    def execute_script(self, statements: Iterable[str]) -> int:
        """Run DDL or maintenance statements outside any tenant scope; returns how many ran."""
        count = 0
        with self.connect() as conn:
            with conn.cursor() as cur:
                for sql in statements:
                    cur.execute(sql)
                    count += 1
            conn.commit()
        return count
