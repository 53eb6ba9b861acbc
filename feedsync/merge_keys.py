"""Merge keys that recognize the same real-world event across polls.

Incidents hash (tenant, normalized address, call type, time bucket) into a stored key.
Matching itself compares call times directly, so two reports within the merge window
meet regardless of bucket edges and regardless of which one arrives first.
Alerts resolve through their identifier chain instead.
"""

from __future__ import annotations

import hashlib
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timedelta
from typing import Any

from feedsync.call_types import normalize_code
from feedsync.clock import parse_timestamp


def time_bucket(call_received_time: datetime, window: timedelta) -> int:
    seconds = int(window.total_seconds())
    return int(call_received_time.timestamp()) // max(1, seconds)


def incident_merge_key(
    *,
    tenant_id: str,
    normalized_address: str,
    call_type: str,
    bucket: int,
) -> str:
    material = "|".join([tenant_id, normalized_address, normalize_code(call_type), str(bucket)])
    return "mk_" + hashlib.sha256(material.encode("utf-8")).hexdigest()[:32]


def _received_at(record: Mapping[str, Any]) -> datetime | None:
    try:
        return parse_timestamp(record.get("call_received_time"))
    except ValueError:
        return None


def find_incident_match(
    candidates: Iterable[Mapping[str, Any]],
    *,
    normalized_address: str,
    call_type: str,
    call_received_time: datetime,
    window: timedelta,
) -> dict[str, Any] | None:
    """Pick the active record for the same address and call type within ``window``.

    The distance test is symmetric, so the outcome does not depend on arrival order.
    Ties prefer the latest call time.
    """
    code = normalize_code(call_type)
    best: dict[str, Any] | None = None
    best_time: datetime | None = None
    for record in candidates:
        if record.get("status") != "active":
            continue
        if record.get("normalized_address") != normalized_address:
            continue
        if normalize_code(str(record.get("call_type") or "")) != code:
            continue
        received = _received_at(record)
        if received is None:
            continue
        if abs(received - call_received_time) > window:
            continue
        if best_time is None or received > best_time or (
            received == best_time and str(record.get("record_id")) > str(best.get("record_id"))
        ):
            best = dict(record)
            best_time = received
    return best


class AlertChainCycleError(ValueError):
    pass


def follow_chain_head(
    record: Mapping[str, Any],
    *,
    lookup: Callable[[str], Mapping[str, Any] | None],
) -> dict[str, Any]:
    """Follow ``superseded_by`` links forward to the live head of an alert chain."""
    current = dict(record)
    seen = {str(current.get("record_id"))}
    while current.get("superseded_by"):
        nxt = lookup(str(current["superseded_by"]))
        if nxt is None:
            break
        record_id = str(nxt.get("record_id"))
        if record_id in seen:
            raise AlertChainCycleError(f"alert chain loops at {record_id}")
        seen.add(record_id)
        current = dict(nxt)
    return current


def chain_contains(
    start: Mapping[str, Any],
    external_id: str,
    *,
    lookup_external: Callable[[str], Mapping[str, Any] | None],
) -> bool:
    """True when walking ``previous_ids`` backwards from ``start`` reaches ``external_id``."""
    stack = list(start.get("previous_ids") or [])
    seen: set[str] = set()
    while stack:
        ident = str(stack.pop())
        if ident == external_id:
            return True
        if ident in seen:
            continue
        seen.add(ident)
        prior = lookup_external(ident)
        if prior is not None:
            stack.extend(prior.get("previous_ids") or [])
    return False
