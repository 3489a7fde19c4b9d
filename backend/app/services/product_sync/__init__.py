"""Product sync module.

Entry point: ProductSyncModule. Creates and coordinates the wiki crawler,
firmware resolver, attachment store, reconciler and materializer.
"""
import logging

from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings, upload_dir
from services.product_sync.attachments import AttachmentStore
from services.product_sync.materializer import AttachmentMaterializer
from services.product_sync.reconciler import SyncReconciler
from services.product_sync.resolver import FirmwareLinkResolver
from services.product_sync.tracker import TrackerClient
from services.product_sync.wiki import WikiClient

logger = logging.getLogger("prodhub.sync")


class ProductSyncModule:
    """Main orchestrator, one per application."""

    def __init__(
        self,
        redis: Redis,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        self.redis = redis
        self.session_factory = session_factory

        self.wiki = WikiClient(
            settings.WIKI_BASE_URL,
            settings.WIKI_USER_EMAIL,
            settings.WIKI_API_TOKEN,
            timeout=settings.WIKI_TIMEOUT,
            retries=settings.WIKI_RETRIES,
            retry_delay=settings.WIKI_RETRY_DELAY,
            batch_size=settings.WIKI_BATCH_SIZE,
        )
        self.tracker = TrackerClient(
            settings.TRACKER_BASE_URL,
            settings.TRACKER_TOKEN,
            verify_tls=settings.TRACKER_VERIFY_TLS,
            timeout=settings.TRACKER_TIMEOUT,
        )
        self.resolver = FirmwareLinkResolver(
            self.tracker,
            settings.TRACKER_PROJECT_ID,
            settings.TRACKER_PROJECT_PATH,
        )
        self.store = AttachmentStore(
            session_factory,
            upload_dir(),
            self.tracker,
            promote_materialized_hash=settings.PROMOTE_MATERIALIZED_HASH,
        )
        self.materializer = AttachmentMaterializer(
            self.store,
            timeout=settings.MATERIALIZE_TIMEOUT,
            concurrency=settings.MATERIALIZE_CONCURRENCY,
        )
        self.reconciler = SyncReconciler(
            self.wiki,
            self.resolver,
            self.store,
            session_factory,
            settings.WIKI_ROOT_PAGE_ID,
            materializer=self.materializer,
            redis=redis,
        )

    async def start(self) -> None:
        try:
            await self.redis.ping()
        except RedisError as exc:
            logger.warning("Redis unavailable, sync status stays per-worker: %s", exc)
        if not settings.WIKI_BASE_URL:
            logger.warning("WIKI_BASE_URL not set, product sync will fail until configured")
        if not settings.TRACKER_BASE_URL:
            logger.warning("TRACKER_BASE_URL not set, firmware links stay unresolved")
        if not settings.TRACKER_VERIFY_TLS:
            logger.info("TLS verification disabled for the issue tracker client")
        logger.info("Product sync module started (blob storage: %s)", self.store.storage_root)

    async def stop(self) -> None:
        """Cancel background work and close HTTP clients."""
        await self.materializer.stop()
        await self.wiki.close()
        await self.tracker.close()
        logger.info("Product sync module stopped")
