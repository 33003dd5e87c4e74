"""Notion sync engine -- keeps projects in Postgres and Notion pages in step.

Components:
- field_mapping: pure project <-> Notion property conversion
- NotionDocumentClient: rate-limited, classified-error wrapper over notion-client
- SyncStateStore: compare-and-set sync status transitions
- WebhookReceiver: verified, deduplicated inbound events -> PULL tasks
- SyncExecutor: PUSH/PULL execution with field-level conflict resolution
- RetryScheduler: Redis-backed backoff queue with dead-lettering
- ReconciliationScanner: periodic drift detection and healing
- SyncService: wiring and operator actions

Postgres is authoritative; Notion is an eventually consistent mirror that
users may also edit.
"""

from src.delivery_sync.sync.adapter import RecordStore, RemoteDocumentAPI
from src.delivery_sync.sync.executor import SyncExecutor, plan_merge
from src.delivery_sync.sync.field_mapping import (
    PROJECT_PROPERTY_MAP,
    from_remote_properties,
    to_remote_properties,
    verify_property_map,
)
from src.delivery_sync.sync.notion import NotionDocumentClient
from src.delivery_sync.sync.reconciliation import ReconciliationScanner
from src.delivery_sync.sync.scheduler import RetryScheduler
from src.delivery_sync.sync.service import SyncService
from src.delivery_sync.sync.state import SyncStateStore
from src.delivery_sync.sync.webhooks import EventDeduplicator, WebhookReceiver, WebhookVerifier

__all__ = [
    "RecordStore",
    "RemoteDocumentAPI",
    "NotionDocumentClient",
    "SyncStateStore",
    "SyncExecutor",
    "RetryScheduler",
    "ReconciliationScanner",
    "WebhookReceiver",
    "WebhookVerifier",
    "EventDeduplicator",
    "SyncService",
    "PROJECT_PROPERTY_MAP",
    "to_remote_properties",
    "from_remote_properties",
    "verify_property_map",
    "plan_merge",
]
