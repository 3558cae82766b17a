"""
Wiring of one tab from settings.

open_tab() builds the bus, the version-token cache, the entity client and a
query cache for one tab, ready to pass to registries and monitors:

    hub, area = BroadcastHub(), StorageArea(MemoryStorage())
    tab = open_tab(SyncSettings(), hub=hub, storage_area=area)
    register_contact_sync(tab.bus, tab.cache)
    ...
    await tab.aclose()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

import httpx

from .bus import CrossTabBus
from .cache import InMemoryQueryCache
from .client import EntityClient, RetryPolicy
from .config import SyncSettings
from .emitters import CONTACT, EntityEvents
from .last_event import LastEventStore
from .metrics import SyncMetrics
from .storage import FileStorage, MemoryStorage, StorageArea, StorageBackend, StorageView
from .transport import BroadcastHub, select_transport
from .versions import VersionTokenStore

logger = logging.getLogger(__name__)


def build_http_client(settings: SyncSettings) -> httpx.AsyncClient:
    """httpx client with the configured base URL and an explicit timeout."""
    return httpx.AsyncClient(
        base_url=settings.api_base_url,
        timeout=httpx.Timeout(settings.request_timeout),
        headers={"Accept": "application/json"},
    )


@dataclass
class Tab:
    """Everything one tab needs to edit entities and follow other tabs."""

    settings: SyncSettings
    bus: CrossTabBus
    tokens: VersionTokenStore
    client: EntityClient
    cache: InMemoryQueryCache
    events: EntityEvents
    _views: list[StorageView] = field(default_factory=list)
    _owned_area: StorageArea | None = None
    _closed: bool = False

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.bus.close()
        for view in self._views:
            view.close()
        if self._owned_area is not None:
            self._owned_area.stop_polling()
        await self.client.aclose()


def open_tab(
    settings: SyncSettings | None = None,
    *,
    entity: str = CONTACT,
    hub: BroadcastHub | None = None,
    storage_area: StorageArea | None = None,
    tab_storage: StorageBackend | None = None,
    http: httpx.AsyncClient | None = None,
    metrics: SyncMetrics | None = None,
    loop: asyncio.AbstractEventLoop | None = None,
) -> Tab:
    """
    Build one tab.

    Without a storage_area, settings.storage_dir (if set) is opened as a
    FileStorage area polled for writes from other processes; the tab owns it.

    Raises:
        ValueError: If settings are invalid
        TransportUnavailableError: If no transport fits settings.transport
    """
    settings = settings or SyncSettings()
    errors = settings.validate()
    if errors:
        raise ValueError("Invalid sync settings: " + " ".join(errors))

    owned_area = None
    if storage_area is None and settings.storage_dir is not None:
        storage_area = owned_area = StorageArea(FileStorage(settings.storage_dir))

    tab_storage = tab_storage if tab_storage is not None else MemoryStorage()
    transport = select_transport(
        settings.channel_name, hub=hub, storage_area=storage_area, mode=settings.transport
    )

    views = []
    last_event_store = None
    if storage_area is not None:
        store_view = storage_area.view()
        views.append(store_view)
        last_event_store = LastEventStore(
            store_view, settings.channel_name, per_type=settings.replay_per_type
        )

    bus = CrossTabBus(
        transport,
        last_event_store,
        channel_name=settings.channel_name,
        tab_storage=tab_storage,
        metrics=metrics,
        validate_events=settings.validate_events,
        loop=loop,
    )
    events = EntityEvents(bus, entity)
    tokens = VersionTokenStore(scope=entity, storage=tab_storage)
    client = EntityClient(
        http if http is not None else build_http_client(settings),
        entity=entity,
        base_path=settings.base_path,
        events=events,
        tokens=tokens,
        retry=RetryPolicy(
            max_attempts=settings.retry_attempts, backoff_seconds=settings.retry_backoff
        ),
        metrics=metrics,
    )

    if owned_area is not None:
        owned_area.start_polling(settings.poll_interval)

    logger.info(
        f"Opened tab {bus.origin_id} on '{settings.channel_name}' via {bus.transport_name}"
    )
    return Tab(
        settings=settings,
        bus=bus,
        tokens=tokens,
        client=client,
        cache=InMemoryQueryCache(),
        events=events,
        _views=views,
        _owned_area=owned_area,
    )
