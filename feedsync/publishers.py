from __future__ import annotations

import logging
import os
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

import requests

logger = logging.getLogger(__name__)


@dataclass
class PublishOutcome:
    success: bool
    reason: str | None = None
    post_id: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"success": self.success, "reason": self.reason, "post_id": self.post_id}


class Publisher(Protocol):
    def publish(self, record: dict[str, Any]) -> PublishOutcome: ...


class InMemoryPublisher:
    """Records publish calls; can be told to fail for tests and local runs."""

    def __init__(self, *, fail_reason: str | None = None) -> None:
        self.fail_reason = fail_reason
        self.published: list[dict[str, Any]] = []
        self._lock = threading.RLock()
        self._counter = 0

    def publish(self, record: dict[str, Any]) -> PublishOutcome:
        with self._lock:
            if self.fail_reason:
                return PublishOutcome(success=False, reason=self.fail_reason)
            self._counter += 1
            self.published.append(dict(record))
            post_id = str((record.get("propagation") or {}).get("post_id") or f"post_{self._counter}")
            return PublishOutcome(success=True, post_id=post_id)

    def reset(self) -> None:
        with self._lock:
            self.fail_reason = None
            self.published.clear()
            self._counter = 0


class WebhookPublisher:
    """POSTs the record to a downstream integration endpoint."""

    def __init__(self, *, url: str, token: str = "", timeout_s: float = 10.0) -> None:
        if not url.strip():
            raise ValueError("FEEDSYNC_PUBLISH_WEBHOOK_URL must not be empty")
        self._url = url.strip()
        self._token = token.strip()
        self._timeout_s = max(0.1, float(timeout_s))

    def publish(self, record: dict[str, Any]) -> PublishOutcome:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        post_id = (record.get("propagation") or {}).get("post_id")
        payload = {
            "record_id": record.get("record_id"),
            "tenant_id": record.get("tenant_id"),
            "post_id": post_id,
            "record": record,
        }
        try:
            response = requests.post(self._url, json=payload, headers=headers, timeout=self._timeout_s)
        except requests.exceptions.Timeout as exc:
            return PublishOutcome(success=False, reason=f"publish timed out: {exc}")
        except requests.exceptions.RequestException as exc:
            return PublishOutcome(success=False, reason=f"publish request failed: {exc}")
        if response.status_code >= 400:
            return PublishOutcome(
                success=False,
                reason=f"publisher returned {response.status_code}: {response.text[:200]}",
            )
        try:
            body = response.json()
        except ValueError:
            body = {}
        if isinstance(body, dict) and body.get("post_id"):
            post_id = str(body["post_id"])
        return PublishOutcome(success=True, post_id=str(post_id) if post_id else None)


def create_publisher_from_env(environ: Mapping[str, str] | None = None) -> InMemoryPublisher | WebhookPublisher:
    env = os.environ if environ is None else environ
    backend = env.get("FEEDSYNC_PUBLISHER", "memory").strip().lower()
    if backend == "memory":
        return InMemoryPublisher()
    if backend == "webhook":
        url = env.get("FEEDSYNC_PUBLISH_WEBHOOK_URL", "").strip()
        if not url:
            raise ValueError("FEEDSYNC_PUBLISH_WEBHOOK_URL must be set when FEEDSYNC_PUBLISHER=webhook")
        timeout_ms = int(env.get("FEEDSYNC_PUBLISH_TIMEOUT_MS", "10000") or "10000")
        return WebhookPublisher(
            url=url,
            token=env.get("FEEDSYNC_PUBLISH_WEBHOOK_TOKEN", ""),
            timeout_s=max(1, timeout_ms) / 1000.0,
        )
    raise RuntimeError(f"unsupported publisher: {backend}")
