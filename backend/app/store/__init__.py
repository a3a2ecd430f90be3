import logging

from app.core.config import Settings, get_settings
from app.core.errors import RemoteUnavailable
from app.store.base import DocumentStore
from app.store.local_store import LocalDocumentStore
from app.store.memory import InMemoryDocumentStore
from app.store.redis_store import RedisDocumentStore

logger = logging.getLogger(__name__)


def build_store(settings: Settings | None = None) -> DocumentStore:
    settings = settings or get_settings()
    if settings.store_backend == "redis":
        return RedisDocumentStore(settings.redis_url, prefix=settings.redis_key_prefix)
    if settings.store_backend == "memory":
        return InMemoryDocumentStore()
    return LocalDocumentStore.from_url(settings.database_url)


async def connect_store(settings: Settings | None = None) -> DocumentStore:
    """Connect the configured store, dropping to the local cache if the remote is down."""
    settings = settings or get_settings()
    store = build_store(settings)
    try:
        await store.connect()
    except RemoteUnavailable:
        if store.name != "redis" or not settings.local_fallback_enabled:
            raise
        logger.warning(
            "Remote store unreachable at %s, running from the local cache",
            settings.redis_url,
        )
        store = LocalDocumentStore.from_url(settings.database_url)
        await store.connect()
    logger.info("Using %s document store", store.name)
    return store
