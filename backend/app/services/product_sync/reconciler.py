"""SyncReconciler: one full wiki → products → attachments pass.

Steps, strictly ordered:
1. crawl product pages from the wiki (all-or-nothing)
2. resolve every firmware cell concurrently
3. build product rows
4. replace sync-owned product rows in one transaction
5. upsert firmware attachments for products with an upload URL
6. hand back the synced products
7. schedule background materialization of URL-backed attachments

Errors in steps 1-5 abort the pass as SyncError naming the stage.
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models.base import utcnow
from models.product import Product, ProductStatus
from services.product_sync.attachments import AttachmentStore
from services.product_sync.config import (
    REDIS_CHANNEL_SYNC,
    REDIS_SYNC_LAST,
    STAGE_ATTACHMENTS,
    STAGE_CRAWL,
    STAGE_RECONCILE,
    STAGE_RESOLVE,
    SYNC_STATUS_TTL,
    UPLOAD_MARKER,
)
from services.product_sync.materializer import AttachmentMaterializer
from services.product_sync.resolver import FirmwareLinkResolver
from services.product_sync.wiki import WikiClient, WikiError, WikiPage
from services.products import reconcile_products

logger = logging.getLogger("prodhub.sync.reconciler")


class SyncError(Exception):
    """A synchronous sync stage failed."""
    def __init__(self, stage: str, message: str):
        self.stage = stage
        super().__init__(f"[{stage}] {message}")


@dataclass
class SyncReport:
    products: list[Product] = field(default_factory=list)
    skipped_ids: list[str] = field(default_factory=list)
    attachments: int = 0
    finished_at: Optional[datetime] = None

    def summary(self) -> dict:
        return {
            "last_sync": self.finished_at.isoformat() if self.finished_at else None,
            "synced": len(self.products),
            "skipped": list(self.skipped_ids),
            "attachments": self.attachments,
        }


def is_upload_url(value: str) -> bool:
    return UPLOAD_MARKER in value


def build_product(page: WikiPage, firmware: str, now: datetime) -> Product:
    status = ProductStatus.APPROVED if is_upload_url(firmware) else ProductStatus.CRAWLER
    return Product(
        id=str(page.id),
        code=page.title.strip(),
        html=page.html.strip(),
        firmware=firmware,
        status=status.value,
        created_at=now,
        updated_at=now,
    )


class SyncReconciler:

    def __init__(
        self,
        wiki: WikiClient,
        resolver: FirmwareLinkResolver,
        store: AttachmentStore,
        session_factory: async_sessionmaker[AsyncSession],
        root_page_id: str,
        materializer: Optional[AttachmentMaterializer] = None,
        redis: Optional[Redis] = None,
    ):
        self.wiki = wiki
        self.resolver = resolver
        self.store = store
        self.session_factory = session_factory
        self.root_page_id = root_page_id
        self.materializer = materializer
        self.redis = redis
        self.last_report: Optional[SyncReport] = None
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def sync(self) -> list[Product]:
        """Run one pass and return the newly synced products."""
        report = await self.sync_report()
        return report.products

    async def sync_report(self) -> SyncReport:
        """Run one pass; one pass at a time."""
        async with self._lock:
            report = await self._run()
        self.last_report = report
        await self._publish(report)

        if self.materializer is not None:
            self.materializer.schedule()
        return report

    async def last_status(self) -> Optional[dict]:
        """Summary of the latest pass, from Redis when another worker ran it."""
        if self.redis is not None:
            try:
                raw = await self.redis.get(REDIS_SYNC_LAST)
            except RedisError as exc:
                logger.warning("Failed to read last sync summary from Redis: %s", exc)
                raw = None
            if raw:
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8")
                return json.loads(raw)
        return self.last_report.summary() if self.last_report else None

    async def _publish(self, report: SyncReport) -> None:
        if self.redis is None:
            return
        payload = json.dumps(report.summary())
        try:
            await self.redis.setex(REDIS_SYNC_LAST, SYNC_STATUS_TTL, payload)
            await self.redis.publish(REDIS_CHANNEL_SYNC, payload)
        except RedisError as exc:
            logger.warning("Failed to publish sync summary to Redis: %s", exc)

    async def _run(self) -> SyncReport:
        logger.info("Product sync: starting (root page %s)", self.root_page_id)

        # 1. Crawl
        try:
            pages = await self.wiki.fetch_products(self.root_page_id)
        except WikiError as exc:
            raise SyncError(STAGE_CRAWL, str(exc)) from exc

        # 2. Resolve
        raw_firmware = {page.id: (page.firmware or "").strip() for page in pages}
        try:
            resolved = await asyncio.gather(
                *(self.resolver.resolve(raw_firmware[page.id]) for page in pages)
            )
        except Exception as exc:
            raise SyncError(STAGE_RESOLVE, str(exc)) from exc

        # 3. Build rows
        now = utcnow()
        rows = [build_product(page, fw, now) for page, fw in zip(pages, resolved)]

        # 4. Reconcile
        report = SyncReport()
        try:
            async with self.session_factory() as session:
                result = await reconcile_products(session, rows)
        except SQLAlchemyError as exc:
            raise SyncError(STAGE_RECONCILE, str(exc)) from exc
        report.products = result.inserted
        report.skipped_ids = result.skipped_ids

        # 5. Firmware attachments
        try:
            async with self.session_factory() as session:
                for product in report.products:
                    if not is_upload_url(product.firmware):
                        continue
                    attachment = await self.store.upsert_firmware_attachment(
                        product, raw_firmware.get(product.id, ""), session=session,
                    )
                    if attachment is not None:
                        report.attachments += 1
                await session.commit()
        except SQLAlchemyError as exc:
            raise SyncError(STAGE_ATTACHMENTS, str(exc)) from exc

        report.finished_at = utcnow()
        logger.info(
            "Product sync: %d products, %d firmware attachments, %d skipped",
            len(report.products), report.attachments, len(report.skipped_ids),
        )
        return report
