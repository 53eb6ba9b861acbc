from feedsync.repositories.audit_logs import InMemoryAuditLogsRepository, PostgresAuditLogsRepository
from feedsync.repositories.incident_groups import (
    InMemoryIncidentGroupsRepository,
    PostgresIncidentGroupsRepository,
)
from feedsync.repositories.records import InMemoryRecordsRepository, PostgresRecordsRepository
from feedsync.repositories.tenant_configs import InMemoryTenantConfigsRepository, PostgresTenantConfigsRepository

__all__ = [
    "InMemoryAuditLogsRepository",
    "PostgresAuditLogsRepository",
    "InMemoryIncidentGroupsRepository",
    "PostgresIncidentGroupsRepository",
    "InMemoryRecordsRepository",
    "PostgresRecordsRepository",
    "InMemoryTenantConfigsRepository",
    "PostgresTenantConfigsRepository",
]
