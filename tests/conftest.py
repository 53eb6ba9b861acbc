import pathlib
import sys
from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from feedsync.config import EngineSettings
from feedsync.feeds import StaticFeedClient
from feedsync.main import create_app, orchestrator
from feedsync.orchestrator import SyncOrchestrator
from feedsync.publishers import InMemoryPublisher
from feedsync.store import InMemoryStore, store
from feedsync.sync_state import InMemorySyncStateBackend, SyncStateRegistry

T0 = datetime(2026, 3, 14, 12, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class Engine:
    """Orchestrator wired to in-memory collaborators and a controllable clock."""

    def __init__(self) -> None:
        self.settings = EngineSettings()
        self.clock = FakeClock()
        self.store = InMemoryStore(settings=self.settings)
        self.incidents = StaticFeedClient("incidents")
        self.weather = StaticFeedClient("weather")
        self.publisher = InMemoryPublisher()
        self.sync_states = SyncStateRegistry(InMemorySyncStateBackend())
        self.orchestrator = SyncOrchestrator(
            store=self.store,
            feed_clients={"incidents": self.incidents, "weather": self.weather},
            publisher=self.publisher,
            sync_states=self.sync_states,
            settings=self.settings,
            clock=self.clock,
        )

    def configure(self, tenant_id: str = "tenant_a", **overrides) -> None:
        data = {"agency_ids": ["EMS1"], "weather_zones": ["TXZ211"], **overrides}
        self.orchestrator.update_tenant_config(tenant_id=tenant_id, data=data)

    def sync(self, feed_type: str = "incidents", tenant_id: str = "tenant_a", **kwargs) -> dict:
        return self.orchestrator.run_sync(tenant_id=tenant_id, feed_type=feed_type, **kwargs)

    def poll_later(self, feed_type: str = "incidents", tenant_id: str = "tenant_a", minutes: int = 3) -> dict:
        self.clock.advance(minutes=minutes)
        return self.sync(feed_type, tenant_id)


@pytest.fixture(autouse=True)
def reset_store():
    store.reset()
    orchestrator.sync_states.reset()
    for client in orchestrator.feed_clients.values():
        if hasattr(client, "reset"):
            client.reset()
    if hasattr(orchestrator.publisher, "reset"):
        orchestrator.publisher.reset()
    yield


@pytest.fixture
def engine() -> Engine:
    return Engine()


@pytest.fixture
def client() -> TestClient:
    app = create_app()
    return TestClient(app)
