from __future__ import annotations

import logging
import os
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import requests

from feedsync.clock import utcnow
from feedsync.config import TenantFeedConfig
from feedsync.errors import FeedUnavailableError

logger = logging.getLogger(__name__)

NWS_API_BASE = "https://api.weather.gov"
DEFAULT_NWS_USER_AGENT = "feedsync/0.1 (ops@example.com)"


@dataclass
class FeedResult:
    records: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    fetched_at: datetime = field(default_factory=utcnow)
    warnings: list[str] = field(default_factory=list)


class FeedClient(Protocol):
    feed_type: str

    def fetch(self, config: TenantFeedConfig) -> FeedResult: ...


class StaticFeedClient:
    """Serves records set per tenant; used by tests and local runs."""

    def __init__(self, feed_type: str) -> None:
        self.feed_type = feed_type
        self._records: dict[str, list[dict[str, Any]]] = {}
        self._failures: dict[str, list[str]] = {}
        self._lock = threading.RLock()
        self.calls = 0

    def set_records(self, tenant_id: str, records: list[dict[str, Any]]) -> None:
        with self._lock:
            self._records[tenant_id] = [dict(r) for r in records]

    def fail_next(self, tenant_id: str, message: str = "feed unavailable") -> None:
        with self._lock:
            self._failures.setdefault(tenant_id, []).append(message)

    def reset(self) -> None:
        with self._lock:
            self._records.clear()
            self._failures.clear()
            self.calls = 0

    def fetch(self, config: TenantFeedConfig) -> FeedResult:
        with self._lock:
            self.calls += 1
            pending = self._failures.get(config.tenant_id) or []
            if pending:
                return FeedResult(error=pending.pop(0))
            return FeedResult(records=[dict(r) for r in self._records.get(config.tenant_id, [])])


def _extract_incidents(body: Any) -> list[dict[str, Any]]:
    if isinstance(body, list):
        return [x for x in body if isinstance(x, dict)]
    if not isinstance(body, dict):
        return []
    incidents = body.get("incidents", body)
    if isinstance(incidents, list):
        return [x for x in incidents if isinstance(x, dict)]
    if isinstance(incidents, dict):
        out: list[dict[str, Any]] = []
        for bucket in ("active", "recent", "closed"):
            out.extend(x for x in incidents.get(bucket) or [] if isinstance(x, dict))
        return out
    return []


class CadIncidentFeedClient:
    """Pulls incidents per agency from a CAD JSON endpoint, with an optional fallback URL."""

    feed_type = "incidents"

    def __init__(
        self,
        *,
        base_url: str,
        fallback_url: str = "",
        api_key: str = "",
        timeout_s: float = 15.0,
    ) -> None:
        if not base_url.strip():
            raise ValueError("FEEDSYNC_CAD_FEED_URL must not be empty")
        self._urls = [u.strip() for u in (base_url, fallback_url) if u.strip()]
        self._api_key = api_key.strip()
        self._timeout_s = max(0.1, float(timeout_s))

    def _get_json(self, url: str, *, agency_id: str) -> Any:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        try:
            response = requests.get(url, params={"agencyid": agency_id}, headers=headers, timeout=self._timeout_s)
        except requests.exceptions.Timeout as exc:
            raise FeedUnavailableError(f"CAD feed timed out: {exc}", feed_type=self.feed_type) from exc
        except requests.exceptions.RequestException as exc:
            raise FeedUnavailableError(f"CAD feed request failed: {exc}", feed_type=self.feed_type) from exc
        if response.status_code >= 400:
            raise FeedUnavailableError(
                f"CAD feed returned {response.status_code}: {response.text[:200]}",
                feed_type=self.feed_type,
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise FeedUnavailableError(f"CAD feed returned invalid JSON: {exc}", feed_type=self.feed_type) from exc

    def _fetch_agency(self, agency_id: str) -> list[dict[str, Any]]:
        last_error: FeedUnavailableError | None = None
        for url in self._urls:
            try:
                body = self._get_json(url, agency_id=agency_id)
            except FeedUnavailableError as exc:
                logger.warning("feed_cad_endpoint_failed agency_id=%s url=%s error=%s", agency_id, url, exc.message)
                last_error = exc
                continue
            records = _extract_incidents(body)
            for record in records:
                record.setdefault("agency_id", agency_id)
            return records
        raise last_error or FeedUnavailableError("no CAD endpoint configured", feed_type=self.feed_type)

    def fetch(self, config: TenantFeedConfig) -> FeedResult:
        if not config.agency_ids:
            return FeedResult()
        records: list[dict[str, Any]] = []
        warnings: list[str] = []
        for agency_id in config.agency_ids:
            try:
                records.extend(self._fetch_agency(agency_id))
            except FeedUnavailableError as exc:
                warnings.append(f"agency {agency_id}: {exc.message}")
        if warnings and len(warnings) == len(config.agency_ids):
            return FeedResult(error="; ".join(warnings), warnings=warnings)
        return FeedResult(records=records, warnings=warnings)


class NwsAlertFeedClient:
    """Active alerts for the tenant's forecast zones from the national weather GeoJSON API."""

    feed_type = "weather"

    def __init__(
        self,
        *,
        base_url: str = NWS_API_BASE,
        user_agent: str = DEFAULT_NWS_USER_AGENT,
        timeout_s: float = 15.0,
    ) -> None:
        self._base_url = (base_url.strip() or NWS_API_BASE).rstrip("/")
        self._user_agent = user_agent.strip() or DEFAULT_NWS_USER_AGENT
        self._timeout_s = max(0.1, float(timeout_s))

    def fetch(self, config: TenantFeedConfig) -> FeedResult:
        if not config.weather_zones:
            return FeedResult()
        url = f"{self._base_url}/alerts/active"
        headers = {"Accept": "application/geo+json", "User-Agent": self._user_agent}
        try:
            response = requests.get(
                url,
                params={"zone": ",".join(config.weather_zones)},
                headers=headers,
                timeout=self._timeout_s,
            )
        except requests.exceptions.Timeout as exc:
            return FeedResult(error=f"weather feed timed out: {exc}")
        except requests.exceptions.RequestException as exc:
            return FeedResult(error=f"weather feed request failed: {exc}")
        if response.status_code >= 400:
            return FeedResult(error=f"weather feed returned {response.status_code}: {response.text[:200]}")
        try:
            body = response.json()
        except ValueError as exc:
            return FeedResult(error=f"weather feed returned invalid JSON: {exc}")
        features = body.get("features") if isinstance(body, dict) else None
        return FeedResult(records=[x for x in features or [] if isinstance(x, dict)])


def create_feed_clients_from_env(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    env = os.environ if environ is None else environ
    backend = env.get("FEEDSYNC_FEED_BACKEND", "static").strip().lower()
    if backend == "static":
        return {"incidents": StaticFeedClient("incidents"), "weather": StaticFeedClient("weather")}
    if backend != "http":
        raise RuntimeError(f"unsupported feed backend: {backend}")
    timeout_s = float(env.get("FEEDSYNC_FEED_TIMEOUT_S", "15") or "15")
    cad_url = env.get("FEEDSYNC_CAD_FEED_URL", "").strip()
    if not cad_url:
        raise ValueError("FEEDSYNC_CAD_FEED_URL must be set when FEEDSYNC_FEED_BACKEND=http")
    return {
        "incidents": CadIncidentFeedClient(
            base_url=cad_url,
            fallback_url=env.get("FEEDSYNC_CAD_FEED_FALLBACK_URL", ""),
            api_key=env.get("FEEDSYNC_CAD_API_KEY", ""),
            timeout_s=timeout_s,
        ),
        "weather": NwsAlertFeedClient(
            base_url=env.get("FEEDSYNC_NWS_BASE_URL", NWS_API_BASE),
            user_agent=env.get("FEEDSYNC_NWS_USER_AGENT", DEFAULT_NWS_USER_AGENT),
            timeout_s=timeout_s,
        ),
    }
