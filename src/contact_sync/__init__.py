"""
Contact Sync - cross-tab entity synchronization.

Keeps several tabs of one client application consistent while they edit the
same entities against a REST backend:

- Cross-tab bus with local synchronous dispatch and peer broadcast
- Shared-storage fallback transport with explicit self-origin filtering
- Replay of the last event per type for late subscribers
- ETag/If-Match optimistic concurrency with typed conflict errors
- Query-cache invalidation registries and staleness notices
- Correlation ID propagation and optional OpenTelemetry spans
- Metrics collection with pluggable backends

Basic Usage:
    from contact_sync import BroadcastHub, MemoryStorage, StorageArea, SyncSettings, open_tab
    from contact_sync.registry import register_contact_sync

    hub, area = BroadcastHub(), StorageArea(MemoryStorage())
    tab = open_tab(SyncSettings(), hub=hub, storage_area=area)
    register_contact_sync(tab.bus, tab.cache)

    contact = await tab.client.get("C1")
    await tab.client.update("C1", {"name": "Acme Ltd"})  # other tabs are notified

With Correlation Context:
    from contact_sync import CorrelationContext

    with CorrelationContext("save-contact-form"):
        await tab.client.update("C1", {"name": "Acme Ltd"})
"""

from .bus import ANY, DEFAULT_CHANNEL, CrossTabBus, Subscription, resolve_origin_id
from .cache import CachedView, InMemoryQueryCache, QueryCache
from .client import DeletionCheck, EntityClient, RetryPolicy
from .config import SyncSettings
from .correlation import (
    CORRELATION_ID_HEADER,
    CorrelationContext,
    clear_correlation_id,
    generate_correlation_id,
    get_correlation_id,
    set_correlation_id,
    with_correlation,
)
from .emitters import (
    CONTACT,
    CONTACT_CHANGED,
    CONTACT_CONFLICT,
    CONTACT_DELETED,
    EntityEvents,
    contact_events,
    emit_contact_changed,
    emit_contact_deleted,
)
from .errors import (
    ConcurrencyConflictError,
    DeletionBlockedError,
    EntityHTTPError,
    PreconditionRequiredError,
    SyncError,
)
from .etag import compute_etag, if_match_satisfied, normalize_etag
from .events import (
    BusEvent,
    DomainEvent,
    EntityChanged,
    EntityConflict,
    EntityDeleted,
    generate_origin_id,
    parse_domain_event,
)
from .last_event import LastEventStore
from .metrics import InMemoryMetrics, MetricsBackend, NoopMetrics, SyncMetrics
from .registry import (
    CONTACT_VIEWS,
    ViewKeys,
    register_contact_sync,
    register_entity_sync,
    register_once,
    register_workflow_sync,
)
from .staleness import NoticeKind, StalenessMonitor, StalenessNotice
from .storage import (
    FileStorage,
    MemoryStorage,
    StorageArea,
    StorageBackend,
    StorageQuotaExceeded,
    StorageView,
)
from .tab import Tab, open_tab
from .telemetry import inject_trace_context_to_headers, is_otel_available, traced
from .transport import (
    BroadcastHub,
    BroadcastTransport,
    StorageTransport,
    Transport,
    TransportUnavailableError,
    select_transport,
)
from .validation import EVENT_TYPE_PATTERN, EventValidator, ValidationError, ValidationResult
from .versions import VersionTokenStore

__version__ = "0.1.0"

__all__ = [
    # Bus
    "CrossTabBus",
    "BusEvent",
    "Subscription",
    "ANY",
    "DEFAULT_CHANNEL",
    "resolve_origin_id",
    "generate_origin_id",
    # Transports
    "Transport",
    "BroadcastHub",
    "BroadcastTransport",
    "StorageTransport",
    "TransportUnavailableError",
    "select_transport",
    # Storage
    "StorageBackend",
    "MemoryStorage",
    "FileStorage",
    "StorageArea",
    "StorageView",
    "StorageQuotaExceeded",
    "LastEventStore",
    # Domain events
    "DomainEvent",
    "EntityChanged",
    "EntityDeleted",
    "EntityConflict",
    "parse_domain_event",
    "EntityEvents",
    "contact_events",
    "emit_contact_changed",
    "emit_contact_deleted",
    "CONTACT",
    "CONTACT_CHANGED",
    "CONTACT_DELETED",
    "CONTACT_CONFLICT",
    # Entity client
    "EntityClient",
    "RetryPolicy",
    "DeletionCheck",
    "VersionTokenStore",
    "compute_etag",
    "normalize_etag",
    "if_match_satisfied",
    # Errors
    "SyncError",
    "EntityHTTPError",
    "PreconditionRequiredError",
    "ConcurrencyConflictError",
    "DeletionBlockedError",
    # Consumers
    "QueryCache",
    "InMemoryQueryCache",
    "CachedView",
    "ViewKeys",
    "CONTACT_VIEWS",
    "register_once",
    "register_entity_sync",
    "register_contact_sync",
    "register_workflow_sync",
    "StalenessMonitor",
    "StalenessNotice",
    "NoticeKind",
    # Wiring
    "SyncSettings",
    "Tab",
    "open_tab",
    # Correlation
    "CorrelationContext",
    "get_correlation_id",
    "set_correlation_id",
    "clear_correlation_id",
    "generate_correlation_id",
    "with_correlation",
    "CORRELATION_ID_HEADER",
    # Telemetry
    "is_otel_available",
    "traced",
    "inject_trace_context_to_headers",
    # Metrics
    "MetricsBackend",
    "NoopMetrics",
    "InMemoryMetrics",
    "SyncMetrics",
    # Validation
    "EventValidator",
    "ValidationError",
    "ValidationResult",
    "EVENT_TYPE_PATTERN",
]
