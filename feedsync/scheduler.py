from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from feedsync.config import FEED_TYPES, _env_int

logger = logging.getLogger(__name__)


@dataclass
class PollRunStats:
    triggered: int = 0
    synced: int = 0
    skipped: int = 0
    transient_failures: int = 0
    failed: int = 0
    created: int = 0
    updated: int = 0
    merged: int = 0
    maintenance_runs: int = 0

    def add(self, other: dict[str, int]) -> None:
        for key, value in other.items():
            setattr(self, key, getattr(self, key) + int(value))

    def as_dict(self) -> dict[str, int]:
        return {
            "triggered": self.triggered,
            "synced": self.synced,
            "skipped": self.skipped,
            "transient_failures": self.transient_failures,
            "failed": self.failed,
            "created": self.created,
            "updated": self.updated,
            "merged": self.merged,
            "maintenance_runs": self.maintenance_runs,
        }


class PollingRuntime:
    """Resident loop: one sync per enabled (tenant, feed) pair per tick, pairs in parallel."""

    def __init__(
        self,
        *,
        orchestrator: Any,
        max_workers: int = 4,
        poll_interval_ms: int = 15000,
        maintenance_interval_s: int = 900,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.orchestrator = orchestrator
        self.max_workers = max(1, int(max_workers))
        self.poll_interval_ms = max(1, int(poll_interval_ms))
        self.maintenance_interval_s = max(1, int(maintenance_interval_s))
        self._monotonic = monotonic
        self._last_maintenance: float | None = None

    @property
    def store(self) -> Any:
        return self.orchestrator.store

    @property
    def sync_states(self) -> Any:
        return self.orchestrator.sync_states

    def pairs(self) -> list[tuple[str, str]]:
        out: list[tuple[str, str]] = []
        for config in self.store.list_tenant_configs():
            for feed_type in FEED_TYPES:
                if not config.feed_enabled(feed_type):
                    continue
                if self.sync_states.is_cancelled(tenant_id=config.tenant_id, feed_type=feed_type):
                    continue
                out.append((config.tenant_id, feed_type))
        return out

    def cancel(self, *, tenant_id: str, feed_type: str | None = None) -> None:
        for name in [feed_type] if feed_type else list(FEED_TYPES):
            self.sync_states.cancel(tenant_id=tenant_id, feed_type=name)
        logger.info("poller_pair_cancelled tenant_id=%s feed_type=%s", tenant_id, feed_type or "*")

    def resume(self, *, tenant_id: str, feed_type: str | None = None) -> None:
        for name in [feed_type] if feed_type else list(FEED_TYPES):
            self.sync_states.resume(tenant_id=tenant_id, feed_type=name)

    def _run_pair(self, tenant_id: str, feed_type: str) -> dict[str, int]:
        try:
            result = self.orchestrator.run_sync(tenant_id=tenant_id, feed_type=feed_type, force=False)
        except Exception as exc:
            # Keep the loop alive; the pair is retried next tick.
            logger.error("poller_sync_failed tenant_id=%s feed_type=%s error=%s", tenant_id, feed_type, exc)
            return {"triggered": 1, "failed": 1}
        if result.get("skipped_rate_limited") or result.get("reason") == "feed_disabled":
            return {"triggered": 1, "skipped": 1}
        if result.get("transient_failure"):
            return {"triggered": 1, "transient_failures": 1}
        return {
            "triggered": 1,
            "synced": 1,
            "created": int(result.get("created", 0)),
            "updated": int(result.get("updated", 0)),
            "merged": int(result.get("merged", 0)),
        }

    def _maintenance_due(self) -> bool:
        now = self._monotonic()
        if self._last_maintenance is None or now - self._last_maintenance >= self.maintenance_interval_s:
            self._last_maintenance = now
            return True
        return False

    def run_maintenance(self) -> int:
        runs = 0
        for config in self.store.list_tenant_configs():
            try:
                self.orchestrator.run_maintenance(tenant_id=config.tenant_id)
            except Exception as exc:
                logger.error("poller_maintenance_failed tenant_id=%s error=%s", config.tenant_id, exc)
                continue
            runs += 1
        return runs

    def run_once(self) -> dict[str, int]:
        stats = PollRunStats()
        pairs = self.pairs()
        if pairs:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(pairs))) as executor:
                futures = [executor.submit(self._run_pair, tenant_id, feed_type) for tenant_id, feed_type in pairs]
                for future in futures:
                    stats.add(future.result())
        if self._maintenance_due():
            stats.maintenance_runs += self.run_maintenance()
        return stats.as_dict()

    def run_forever(self, *, stop_after_iterations: int | None = None) -> dict[str, int]:
        aggregate = PollRunStats()
        iterations = 0
        while True:
            aggregate.add(self.run_once())
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            time.sleep(self.poll_interval_ms / 1000.0)
        return aggregate.as_dict()


def create_polling_runtime_from_env(
    *,
    orchestrator: Any,
    environ: Mapping[str, str] | None = None,
) -> PollingRuntime:
    env = os.environ if environ is None else environ
    return PollingRuntime(
        orchestrator=orchestrator,
        max_workers=_env_int(env, "FEEDSYNC_POLLER_MAX_WORKERS", default=4, minimum=1),
        poll_interval_ms=_env_int(env, "FEEDSYNC_POLLER_INTERVAL_MS", default=15000, minimum=1),
        maintenance_interval_s=_env_int(env, "FEEDSYNC_MAINTENANCE_INTERVAL_S", default=900, minimum=1),
    )
