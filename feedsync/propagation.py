"""Downstream republishing: eligibility, attempt accounting and the publish loop.

``attempt_count`` is a lifetime counter of failed attempts. It is never reset by a
content change; once it reaches the tenant cap the record is marked permanently failed
and ``needs_update`` stays false until an operator resets it.
"""

from __future__ import annotations

import hashlib
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from feedsync.call_types import is_medical, matches_allow_list
from feedsync.clock import parse_timestamp, to_iso
from feedsync.config import EngineSettings, TenantFeedConfig
from feedsync.errors import PublishTimeoutError
from feedsync.publishers import PublishOutcome

logger = logging.getLogger(__name__)

SEVERITY_SCORES = {"Extreme": 40, "Severe": 30, "Moderate": 20, "Minor": 10, "Unknown": 5}
URGENCY_SCORES = {"Immediate": 30, "Expected": 20, "Future": 10, "Past": 5, "Unknown": 5}
CERTAINTY_SCORES = {"Observed": 30, "Likely": 25, "Possible": 15, "Unlikely": 5, "Unknown": 5}

ALWAYS_POST_EVENTS = frozenset(
    {
        "Tornado Warning",
        "Tornado Watch",
        "Severe Thunderstorm Warning",
        "Flash Flood Warning",
        "Hurricane Warning",
        "Extreme Wind Warning",
        "Storm Surge Warning",
        "Tsunami Warning",
    }
)


def new_propagation_state() -> dict[str, Any]:
    return {
        "synced": False,
        "needs_update": False,
        "last_attempt": None,
        "last_success": None,
        "error": None,
        "attempt_count": 0,
        "failed_permanently": False,
        "next_attempt_at": None,
        "post_id": None,
    }


def request_update(state: dict[str, Any] | None, *, max_attempts: int) -> dict[str, Any]:
    """Flag a content change for republishing unless the record is already capped."""
    out = {**new_propagation_state(), **dict(state or {})}
    if out["failed_permanently"] or int(out["attempt_count"]) >= max_attempts:
        out["needs_update"] = False
        out["failed_permanently"] = True
        return out
    out["needs_update"] = True
    return out


def inherit_propagation(
    canonical: dict[str, Any] | None,
    absorbed: dict[str, Any] | None,
    *,
    max_attempts: int,
) -> dict[str, Any]:
    """Combine the propagation state of two merged records onto the canonical one."""
    left = {**new_propagation_state(), **dict(canonical or {})}
    right = {**new_propagation_state(), **dict(absorbed or {})}
    merged = dict(left)
    merged["synced"] = bool(left["synced"] or right["synced"])
    merged["post_id"] = left["post_id"] or right["post_id"]
    merged["attempt_count"] = max(int(left["attempt_count"]), int(right["attempt_count"]))
    merged["failed_permanently"] = bool(left["failed_permanently"] or right["failed_permanently"])
    merged["last_success"] = left["last_success"] or right["last_success"]
    return request_update(merged, max_attempts=max_attempts)


def retire_propagation(state: dict[str, Any] | None) -> dict[str, Any]:
    out = {**new_propagation_state(), **dict(state or {})}
    out["needs_update"] = False
    return out


def is_exhausted(state: dict[str, Any] | None, *, max_attempts: int) -> bool:
    out = dict(state or {})
    return bool(out.get("failed_permanently")) or int(out.get("attempt_count", 0)) >= max_attempts


def reset_attempts(state: dict[str, Any] | None) -> dict[str, Any]:
    """Operator override: clear the failure counter so a capped record can publish again."""
    out = {**new_propagation_state(), **dict(state or {})}
    out["attempt_count"] = 0
    out["failed_permanently"] = False
    out["error"] = None
    out["next_attempt_at"] = None
    return out


def _backoff_jitter_ms(*, record_id: str, attempt: int) -> int:
    seed = f"{record_id}:{attempt}".encode("utf-8")
    digest = hashlib.sha256(seed).digest()
    return int.from_bytes(digest[:2], byteorder="big") % 301


def backoff_ms(*, record_id: str, attempt: int, base_ms: int, max_ms: int) -> int:
    normalized = max(1, int(attempt))
    base = max(0, int(base_ms))
    ceiling = max(base, int(max_ms))
    return min(ceiling, base * (2 ** (normalized - 1))) + _backoff_jitter_ms(record_id=record_id, attempt=normalized)


def record_attempt(
    state: dict[str, Any],
    *,
    outcome: PublishOutcome,
    now: datetime,
    max_attempts: int,
    next_attempt_at: datetime | None = None,
) -> dict[str, Any]:
    out = {**new_propagation_state(), **dict(state)}
    out["last_attempt"] = to_iso(now)
    if outcome.success:
        out["synced"] = True
        out["needs_update"] = False
        out["error"] = None
        out["next_attempt_at"] = None
        out["last_success"] = to_iso(now)
        if outcome.post_id:
            out["post_id"] = outcome.post_id
        return out
    out["attempt_count"] = int(out["attempt_count"]) + 1
    out["error"] = outcome.reason or "publish failed"
    if out["attempt_count"] >= max_attempts:
        out["failed_permanently"] = True
        out["needs_update"] = False
        out["next_attempt_at"] = None
        return out
    out["next_attempt_at"] = to_iso(next_attempt_at) if next_attempt_at is not None else None
    return out


def alert_threat_score(record: dict[str, Any]) -> int:
    return (
        SEVERITY_SCORES.get(str(record.get("severity") or "Unknown"), 5)
        + URGENCY_SCORES.get(str(record.get("urgency") or "Unknown"), 5)
        + CERTAINTY_SCORES.get(str(record.get("certainty") or "Unknown"), 5)
    )


def incident_eligibility(record: dict[str, Any], *, config: TenantFeedConfig, now: datetime) -> tuple[bool, str]:
    rules = config.publish_rules
    if not rules.enabled:
        return False, "publishing_disabled"
    if record.get("status") not in {"active", "closed"}:
        return False, "not_publishable_status"
    if record.get("source") == "user_submitted" and record.get("moderation_status") not in {
        "approved",
        "auto_approved",
    }:
        return False, "moderation_pending"
    call_type = str(record.get("call_type") or "")
    category = str(record.get("call_type_category") or "other")
    if not matches_allow_list(call_type, category, rules.call_types):
        return False, "call_type_filtered"
    if rules.exclude_medical and is_medical(call_type, category):
        return False, "medical_excluded"
    if len(record.get("units") or []) < rules.min_units:
        return False, "below_min_units"
    if rules.delay_seconds > 0:
        received = parse_timestamp(record.get("call_received_time"))
        if received is not None and now - received < timedelta(seconds=rules.delay_seconds):
            return False, "delay_pending"
    return True, "eligible"


def alert_eligibility(record: dict[str, Any], *, config: TenantFeedConfig, now: datetime) -> tuple[bool, str]:
    if not config.alert_rules.enabled:
        return False, "publishing_disabled"
    if record.get("status") != "active":
        return False, "not_publishable_status"
    expires = parse_timestamp(record.get("expires"))
    if expires is not None and expires <= now:
        return False, "expired"
    if record.get("event") in ALWAYS_POST_EVENTS:
        return True, "always_post_event"
    if record.get("severity") == "Extreme":
        return True, "extreme_severity"
    if alert_threat_score(record) >= config.alert_rules.threshold:
        return True, "threat_score"
    return False, "below_threshold"


@dataclass
class PropagationRunStats:
    considered: int = 0
    published: int = 0
    failed: int = 0
    exhausted: int = 0
    deferred: int = 0
    ineligible: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "considered": self.considered,
            "published": self.published,
            "failed": self.failed,
            "exhausted": self.exhausted,
            "deferred": self.deferred,
            "ineligible": self.ineligible,
        }


class PropagationScheduler:
    def __init__(self, *, store: Any, publisher: Any, settings: EngineSettings) -> None:
        self.store = store
        self.publisher = publisher
        self.settings = settings

    def _publish_with_timeout(self, record: dict[str, Any]) -> PublishOutcome:
        timeout_s = max(0.001, self.settings.publish_timeout_ms / 1000.0)
        executor = ThreadPoolExecutor(max_workers=1)
        try:
            future = executor.submit(self.publisher.publish, record)
            try:
                outcome = future.result(timeout=timeout_s)
            except FutureTimeoutError as exc:
                future.cancel()
                raise PublishTimeoutError("publish call timeout") from exc
        finally:
            executor.shutdown(wait=False)
        if not isinstance(outcome, PublishOutcome):
            return PublishOutcome(success=False, reason="publisher returned no outcome")
        return outcome

    def eligibility(
        self,
        record: dict[str, Any],
        *,
        feed_type: str,
        config: TenantFeedConfig,
        now: datetime,
    ) -> tuple[bool, str]:
        if record.get("superseded_by"):
            return False, "not_canonical"
        if feed_type == "incidents":
            return incident_eligibility(record, config=config, now=now)
        return alert_eligibility(record, config=config, now=now)

    def attempt(
        self,
        record: dict[str, Any],
        *,
        config: TenantFeedConfig,
        now: datetime,
    ) -> dict[str, Any]:
        """Publish once and return the resulting propagation state."""
        state = dict(record.get("propagation") or new_propagation_state())
        record_id = str(record["record_id"])
        try:
            outcome = self._publish_with_timeout(record)
        except PublishTimeoutError:
            outcome = PublishOutcome(success=False, reason="publish timed out")
        except Exception as exc:
            logger.warning("propagation_publisher_error record_id=%s error=%s", record_id, exc)
            outcome = PublishOutcome(success=False, reason=f"publisher error: {exc}")
        retry_at = None
        if not outcome.success:
            delay = backoff_ms(
                record_id=record_id,
                attempt=int(state.get("attempt_count", 0)) + 1,
                base_ms=self.settings.publish_backoff_base_ms,
                max_ms=self.settings.publish_backoff_max_ms,
            )
            retry_at = now + timedelta(milliseconds=delay)
        new_state = record_attempt(
            state,
            outcome=outcome,
            now=now,
            max_attempts=config.max_publish_attempts,
            next_attempt_at=retry_at,
        )
        if new_state["failed_permanently"] and not state.get("failed_permanently"):
            logger.warning(
                "propagation_attempts_exhausted record_id=%s attempts=%s error=%s",
                record_id,
                new_state["attempt_count"],
                new_state["error"],
            )
        return new_state

    def schedule_alert_reposts(self, *, tenant_id: str, config: TenantFeedConfig, now: datetime) -> int:
        """Re-flag synced, still-eligible alerts whose last successful post is older than the repost interval."""
        interval = timedelta(hours=self.settings.alert_repost_interval_hours)
        flagged = 0
        for record in self.store.list_by_status(tenant_id=tenant_id, feed_type="weather", statuses=["active"]):
            state = record.get("propagation") or {}
            if not state.get("synced") or state.get("needs_update") or state.get("failed_permanently"):
                continue
            last_success = parse_timestamp(state.get("last_success"))
            if last_success is None or now - last_success < interval:
                continue
            eligible, _ = alert_eligibility(record, config=config, now=now)
            if not eligible:
                continue
            self.store.commit_propagation(
                tenant_id=tenant_id,
                feed_type="weather",
                record_id=str(record["record_id"]),
                propagation=request_update(state, max_attempts=config.max_publish_attempts),
            )
            flagged += 1
        return flagged

    def run_pending(
        self,
        *,
        tenant_id: str,
        feed_type: str,
        config: TenantFeedConfig,
        now: datetime,
    ) -> dict[str, int]:
        stats = PropagationRunStats()
        for record in self.store.list_pending_propagation(tenant_id=tenant_id, feed_type=feed_type):
            stats.considered += 1
            record_id = str(record["record_id"])
            state = dict(record.get("propagation") or new_propagation_state())
            if state.get("failed_permanently") or int(state.get("attempt_count", 0)) >= config.max_publish_attempts:
                state["needs_update"] = False
                state["failed_permanently"] = True
                self.store.commit_propagation(
                    tenant_id=tenant_id,
                    feed_type=feed_type,
                    record_id=record_id,
                    propagation=state,
                )
                stats.exhausted += 1
                continue
            retry_at = parse_timestamp(state.get("next_attempt_at"))
            if retry_at is not None and retry_at > now:
                stats.deferred += 1
                continue
            eligible, reason = self.eligibility(record, feed_type=feed_type, config=config, now=now)
            if not eligible:
                if reason == "delay_pending":
                    stats.deferred += 1
                else:
                    stats.ineligible += 1
                continue
            new_state = self.attempt(record, config=config, now=now)
            self.store.commit_propagation(
                tenant_id=tenant_id,
                feed_type=feed_type,
                record_id=record_id,
                propagation=new_state,
            )
            if new_state["synced"] and not new_state["needs_update"] and new_state["error"] is None:
                stats.published += 1
            elif new_state["failed_permanently"]:
                stats.failed += 1
                stats.exhausted += 1
            else:
                stats.failed += 1
        return stats.as_dict()
