"""
Application context for BeMore Core.

The context is built once at startup and handed to every consumer (local
service, CLI, tests) instead of module-level store singletons.
"""

import logging
from dataclasses import dataclass

import httpx

from .aggregator import MultimodalAggregator
from .api import ApiGateway
from .config import Settings
from .persistence import JsonFileStorage, KeyValueStorage, MemoryStorage
from .preferences import ColorSchemeSignal, PreferenceStore
from .service import AnalysisService
from .store import SessionStore

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    storage: KeyValueStorage
    color_scheme: ColorSchemeSignal
    sessions: SessionStore
    preferences: PreferenceStore
    aggregator: MultimodalAggregator
    gateway: ApiGateway
    service: AnalysisService

    async def aclose(self) -> None:
        """Stop timers and background tasks, then close the HTTP client."""
        await self.service.aclose()
        await self.aggregator.close()
        self.preferences.close()
        await self.gateway.aclose()


def create_context(
    settings: Settings | None = None,
    storage: KeyValueStorage | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AppContext:
    """
    Wire up stores, aggregator, gateway and service.

    Args:
        settings: Runtime settings; defaults are used when omitted
        storage: Persistence backend; a JSON file store in
            ``settings.storage_dir`` when omitted
        transport: Optional httpx transport for the gateway

    Returns:
        A ready context. The aggregator consumer is not started; call
        ``context.aggregator.start()`` from a running event loop.
    """
    settings = settings or Settings()
    if storage is None:
        storage = JsonFileStorage(settings.storage_dir)
    logger.debug("Creating context with %s", type(storage).__name__)

    color_scheme = ColorSchemeSignal()
    sessions = SessionStore(storage, trend_window=settings.trend_window)
    preferences = PreferenceStore(storage, color_scheme=color_scheme)
    aggregator = MultimodalAggregator()
    gateway = ApiGateway(
        base_url=settings.api_base_url,
        timeout=settings.api_timeout,
        token=settings.api_token,
        transport=transport,
    )
    service = AnalysisService(
        sessions,
        preferences,
        gateway,
        aggregator,
        profile=settings.classifier_profile,
        recording_interval=settings.recording_interval,
    )
    return AppContext(
        settings=settings,
        storage=storage,
        color_scheme=color_scheme,
        sessions=sessions,
        preferences=preferences,
        aggregator=aggregator,
        gateway=gateway,
        service=service,
    )


def create_memory_context(settings: Settings | None = None) -> AppContext:
    """Context backed by in-memory storage, for tests and dry runs."""
    return create_context(settings, storage=MemoryStorage())
