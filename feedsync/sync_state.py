from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from feedsync.clock import parse_timestamp, to_iso

logger = logging.getLogger(__name__)

PHASES = ("idle", "polling", "reconciling", "publishing")

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "idle": {"polling"},
    "polling": {"reconciling", "idle"},
    "reconciling": {"publishing", "idle"},
    "publishing": {"idle"},
}


@dataclass
class SyncState:
    tenant_id: str
    feed_type: str
    phase: str = "idle"
    last_poll_started_at: str | None = None
    last_success_at: str | None = None
    last_error: str | None = None
    cancelled: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SyncState":
        phase = str(data.get("phase") or "idle")
        return cls(
            tenant_id=str(data["tenant_id"]),
            feed_type=str(data["feed_type"]),
            phase=phase if phase in PHASES else "idle",
            last_poll_started_at=data.get("last_poll_started_at"),
            last_success_at=data.get("last_success_at"),
            last_error=data.get("last_error"),
            cancelled=bool(data.get("cancelled", False)),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "feed_type": self.feed_type,
            "phase": self.phase,
            "last_poll_started_at": self.last_poll_started_at,
            "last_success_at": self.last_success_at,
            "last_error": self.last_error,
            "cancelled": self.cancelled,
        }


class InMemorySyncStateBackend:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._states: dict[tuple[str, str], dict[str, Any]] = {}
        self._held: set[tuple[str, str]] = set()

    def load(self, *, tenant_id: str, feed_type: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._states.get((tenant_id, feed_type))
            return dict(row) if row is not None else None

    def save(self, *, state: dict[str, Any]) -> None:
        with self._lock:
            self._states[(str(state["tenant_id"]), str(state["feed_type"]))] = dict(state)

    def try_acquire(self, *, tenant_id: str, feed_type: str, ttl_s: int) -> bool:
        with self._lock:
            key = (tenant_id, feed_type)
            if key in self._held:
                return False
            self._held.add(key)
            return True

    def release(self, *, tenant_id: str, feed_type: str) -> None:
        with self._lock:
            self._held.discard((tenant_id, feed_type))

    def list_states(self) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(self._states[key]) for key in sorted(self._states)]

    def reset(self) -> None:
        with self._lock:
            self._states.clear()
            self._held.clear()


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for FEEDSYNC_SYNC_STATE_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisSyncStateBackend:
    """Sync state shared across poller processes; the per-pair lock is a SET NX key with a TTL."""

    def __init__(self, *, dsn: str, namespace: str = "feedsync") -> None:
        if not dsn.strip():
            raise ValueError("REDIS_DSN must be provided for redis sync state backend")
        self._dsn = dsn.strip()
        self._namespace = namespace.strip() or "feedsync"
        self._lock = threading.RLock()
        self._tokens: dict[tuple[str, str], str] = {}
        redis = _import_redis()
        self._client = redis.Redis.from_url(self._dsn, decode_responses=True)

    def _registry_key(self) -> str:
        return f"{self._namespace}:sync:keys"

    def _state_key(self, *, tenant_id: str, feed_type: str) -> str:
        return f"{self._namespace}:{tenant_id}:sync:{feed_type}:state"

    def _lock_key(self, *, tenant_id: str, feed_type: str) -> str:
        return f"{self._namespace}:{tenant_id}:sync:{feed_type}:lock"

    def load(self, *, tenant_id: str, feed_type: str) -> dict[str, Any] | None:
        raw = self._client.get(self._state_key(tenant_id=tenant_id, feed_type=feed_type))
        if not isinstance(raw, str) or not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("sync_state_corrupt tenant_id=%s feed_type=%s", tenant_id, feed_type)
            return None
        return data if isinstance(data, dict) else None

    def save(self, *, state: dict[str, Any]) -> None:
        key = self._state_key(tenant_id=str(state["tenant_id"]), feed_type=str(state["feed_type"]))
        with self._lock:
            self._client.set(key, json.dumps(state, sort_keys=True, ensure_ascii=True, separators=(",", ":")))
            self._client.sadd(self._registry_key(), key)

    def try_acquire(self, *, tenant_id: str, feed_type: str, ttl_s: int) -> bool:
        token = uuid.uuid4().hex
        key = self._lock_key(tenant_id=tenant_id, feed_type=feed_type)
        with self._lock:
            acquired = bool(self._client.set(key, token, nx=True, ex=max(1, int(ttl_s))))
            if acquired:
                self._tokens[(tenant_id, feed_type)] = token
                self._client.sadd(self._registry_key(), key)
            return acquired

    def release(self, *, tenant_id: str, feed_type: str) -> None:
        key = self._lock_key(tenant_id=tenant_id, feed_type=feed_type)
        with self._lock:
            token = self._tokens.pop((tenant_id, feed_type), None)
            if token is not None and self._client.get(key) == token:
                self._client.delete(key)

    def list_states(self) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for key in sorted(self._client.smembers(self._registry_key()) or []):
            if not isinstance(key, str) or not key.endswith(":state"):
                continue
            raw = self._client.get(key)
            if not isinstance(raw, str) or not raw:
                continue
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if isinstance(data, dict):
                out.append(data)
        return out

    def reset(self) -> None:
        with self._lock:
            registry = self._registry_key()
            keys = self._client.smembers(registry)
            if keys:
                self._client.delete(*list(keys))
            self._client.delete(registry)
            self._tokens.clear()


class SyncStateRegistry:
    """Per (tenant, feed) phase machine with single-flight locking and interval checks."""

    def __init__(self, backend: InMemorySyncStateBackend | RedisSyncStateBackend, *, lock_ttl_s: int = 600) -> None:
        self.backend = backend
        self.lock_ttl_s = max(1, int(lock_ttl_s))

    def get(self, *, tenant_id: str, feed_type: str) -> SyncState:
        row = self.backend.load(tenant_id=tenant_id, feed_type=feed_type)
        if row is None:
            return SyncState(tenant_id=tenant_id, feed_type=feed_type)
        return SyncState.from_dict(row)

    def _save(self, state: SyncState) -> SyncState:
        self.backend.save(state=state.as_dict())
        return state

    def try_begin(
        self,
        *,
        tenant_id: str,
        feed_type: str,
        now: datetime,
        min_interval_s: int,
    ) -> tuple[bool, str | None, SyncState]:
        """Claim the pair for one poll. Returns (started, reason_if_not, state)."""
        if not self.backend.try_acquire(tenant_id=tenant_id, feed_type=feed_type, ttl_s=self.lock_ttl_s):
            return False, "sync_in_progress", self.get(tenant_id=tenant_id, feed_type=feed_type)
        state = self.get(tenant_id=tenant_id, feed_type=feed_type)
        last_started = parse_timestamp(state.last_poll_started_at)
        if last_started is not None:
            elapsed = (now - last_started).total_seconds()
            if elapsed < min_interval_s:
                self.backend.release(tenant_id=tenant_id, feed_type=feed_type)
                return False, "rate_limited", state
        if state.phase != "idle":
            # Left over from a process that died mid-poll; the lock expired, so start over.
            logger.warning(
                "sync_state_recovered tenant_id=%s feed_type=%s phase=%s",
                tenant_id,
                feed_type,
                state.phase,
            )
            state.phase = "idle"
        self._check(state.phase, "polling")
        state.phase = "polling"
        state.last_poll_started_at = to_iso(now)
        return True, None, self._save(state)

    @staticmethod
    def _check(current: str, target: str) -> None:
        if target not in ALLOWED_TRANSITIONS.get(current, set()):
            raise ValueError(f"illegal sync phase transition: {current} -> {target}")

    def transition(self, *, tenant_id: str, feed_type: str, phase: str) -> SyncState:
        state = self.get(tenant_id=tenant_id, feed_type=feed_type)
        self._check(state.phase, phase)
        state.phase = phase
        return self._save(state)

    def finish(
        self,
        *,
        tenant_id: str,
        feed_type: str,
        now: datetime,
        error: str | None = None,
    ) -> SyncState:
        try:
            state = self.get(tenant_id=tenant_id, feed_type=feed_type)
            if state.phase != "idle":
                self._check(state.phase, "idle")
            state.phase = "idle"
            state.last_error = error
            if error is None:
                state.last_success_at = to_iso(now)
            return self._save(state)
        finally:
            self.backend.release(tenant_id=tenant_id, feed_type=feed_type)

    def cancel(self, *, tenant_id: str, feed_type: str) -> SyncState:
        state = self.get(tenant_id=tenant_id, feed_type=feed_type)
        state.cancelled = True
        return self._save(state)

    def resume(self, *, tenant_id: str, feed_type: str) -> SyncState:
        state = self.get(tenant_id=tenant_id, feed_type=feed_type)
        state.cancelled = False
        return self._save(state)

    def is_cancelled(self, *, tenant_id: str, feed_type: str) -> bool:
        return self.get(tenant_id=tenant_id, feed_type=feed_type).cancelled

    def list_states(self) -> list[SyncState]:
        return [SyncState.from_dict(row) for row in self.backend.list_states()]

    def reset(self) -> None:
        self.backend.reset()


def create_sync_state_backend_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemorySyncStateBackend | RedisSyncStateBackend:
    env = os.environ if environ is None else environ
    backend = env.get("FEEDSYNC_SYNC_STATE_BACKEND", "memory").strip().lower()
    if backend == "memory":
        return InMemorySyncStateBackend()
    if backend == "redis":
        dsn = env.get("REDIS_DSN", "").strip()
        if not dsn:
            raise ValueError("REDIS_DSN must be set when FEEDSYNC_SYNC_STATE_BACKEND=redis")
        namespace = env.get("FEEDSYNC_REDIS_KEY_PREFIX", "feedsync")
        return RedisSyncStateBackend(dsn=dsn, namespace=namespace)
    raise RuntimeError(f"unsupported sync state backend: {backend}")
