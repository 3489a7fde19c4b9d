"""AttachmentStore: content-addressed file persistence.

Blobs live in a flat directory keyed by the literal hash string. Rows
whose hash carries the ``URL:`` placeholder point at bytes still hosted
on the issue tracker; they are fetched on first download.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models.attachment import Attachment, URL_HASH_PREFIX
from models.product import Product
from services.product_sync.config import FIRMWARE_ATTACHMENT_STATUS, FIRMWARE_TAG
from services.product_sync.tracker import TrackerClient, TrackerError

logger = logging.getLogger("prodhub.attachments")

UPDATABLE_FIELDS = ("name", "remark", "tag", "status", "download_count", "product_code")


class NotFoundError(Exception):
    """Lookup miss, reported to callers as 404."""


class AttachmentNotFoundError(NotFoundError):
    """No attachment row for the given id or hash."""


class BlobNotFoundError(NotFoundError):
    """Row exists but its bytes are missing or could not be fetched."""


@dataclass
class DownloadedFile:
    attachment_id: int
    hash: str
    name: str
    mimetype: str
    size: int
    content: bytes

    @property
    def filename(self) -> str:
        return f"{self.attachment_id}.{self.name}"


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def url_placeholder_hash(url: str) -> str:
    return URL_HASH_PREFIX + hashlib.sha256(url.encode("utf-8")).hexdigest()


def make_comment(email: str, content: str, action: str) -> dict:
    return {
        "email": email or "system",
        "content": content,
        "created_at": datetime.now(timezone.utc).isoformat(),
        "action": action,
    }


class AttachmentStore:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        storage_root: str | Path,
        tracker: Optional[TrackerClient] = None,
        *,
        promote_materialized_hash: bool = False,
    ):
        self.session_factory = session_factory
        self.storage_root = Path(storage_root)
        self.tracker = tracker
        self.promote_materialized_hash = promote_materialized_hash

    # ─── Blobs ────────────────────────────────────────────────────────

    def blob_path(self, hash_value: str) -> Path:
        if not hash_value or "/" in hash_value or "\\" in hash_value or hash_value.startswith("."):
            raise BlobNotFoundError(f"Invalid blob key: {hash_value!r}")
        return self.storage_root / hash_value

    async def write_blob(self, hash_value: str, data: bytes) -> Path:
        """Write bytes under their hash. Same hash, same bytes: rewrites are harmless."""
        path = self.blob_path(hash_value)

        def _write() -> None:
            self.storage_root.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        await asyncio.to_thread(_write)
        return path

    async def read_blob(self, hash_value: str) -> bytes:
        path = self.blob_path(hash_value)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as exc:
            raise BlobNotFoundError(f"Blob {hash_value} missing from storage") from exc

    def can_fetch_remote(self, attachment: Attachment) -> bool:
        return (
            attachment.hash.startswith(URL_HASH_PREFIX)
            and self.tracker is not None
            and self.tracker.is_upload_url(attachment.remark or "")
        )

    # ─── Writes ───────────────────────────────────────────────────────

    async def upload(
        self,
        data: bytes,
        *,
        name: str,
        mimetype: str = "",
        remark: str = "",
        tag: str = "",
        product_code: str = "",
        email: str = "system",
    ) -> Attachment:
        """Store bytes and insert a new draft attachment row."""
        hash_value = content_hash(data)
        await self.write_blob(hash_value, data)

        attachment = Attachment(
            hash=hash_value,
            name=name,
            size=len(data),
            mimetype=mimetype or "application/octet-stream",
            status="draft",
            download_count=0,
            remark=remark,
            tag=tag,
            product_code=product_code.strip(),
            comments=[make_comment(email, "File uploaded", "created")],
        )
        async with self.session_factory() as session:
            session.add(attachment)
            await session.commit()
            await session.refresh(attachment)
        logger.info("Stored attachment %d %s (%d bytes)", attachment.id, hash_value, len(data))
        return attachment

    async def upsert_firmware_attachment(
        self,
        product: Product,
        raw_firmware: str,
        session: Optional[AsyncSession] = None,
    ) -> Optional[Attachment]:
        """Insert or overwrite the firmware attachment derived from a product.

        The attachment id is the numeric product id; the hash is a
        placeholder over the firmware reference as found on the wiki.
        """
        if not product.id or not str(product.id).isdigit():
            logger.warning("Product %r has a non-numeric id, no firmware attachment", product.id)
            return None

        values: dict[str, Any] = {
            "hash": url_placeholder_hash(raw_firmware),
            "product_code": product.code,
            "remark": product.firmware,
            "status": FIRMWARE_ATTACHMENT_STATUS,
            "tag": FIRMWARE_TAG,
        }
        if session is None:
            async with self.session_factory() as own:
                attachment = await self._upsert(own, int(product.id), values)
                await own.commit()
            return attachment
        return await self._upsert(session, int(product.id), values)

    @staticmethod
    async def _upsert(session: AsyncSession, attachment_id: int, values: dict) -> Attachment:
        attachment = await session.get(Attachment, attachment_id)
        if attachment is None:
            attachment = Attachment(id=attachment_id, **values)
            session.add(attachment)
        else:
            for field, value in values.items():
                setattr(attachment, field, value)
        await session.flush()
        return attachment

    async def update(self, attachment_id: int, fields: dict, email: str = "system") -> Attachment:
        """Partial metadata update; records an ``updated`` comment."""
        async with self.session_factory() as session:
            attachment = await session.get(Attachment, attachment_id)
            if attachment is None:
                raise AttachmentNotFoundError(f"Attachment {attachment_id} not found")
            changed = []
            for field, value in fields.items():
                if field not in UPDATABLE_FIELDS:
                    continue
                setattr(attachment, field, value)
                changed.append(field)
            if changed:
                attachment.comments = [
                    *(attachment.comments or []),
                    make_comment(email, f"Updated {', '.join(changed)}", "updated"),
                ]
            await session.commit()
            await session.refresh(attachment)
            return attachment

    async def soft_delete(self, attachment_id: int, email: str = "system") -> Attachment:
        """Mark as deleted. Row and blob are kept."""
        async with self.session_factory() as session:
            attachment = await session.get(Attachment, attachment_id)
            if attachment is None:
                raise AttachmentNotFoundError(f"Attachment {attachment_id} not found")
            attachment.status = "deleted"
            attachment.comments = [
                *(attachment.comments or []),
                make_comment(email, "Attachment deleted", "deleted"),
            ]
            await session.commit()
            await session.refresh(attachment)
        logger.info("Attachment %d soft-deleted by %s", attachment_id, email)
        return attachment

    # ─── Reads ────────────────────────────────────────────────────────

    async def get(self, attachment_id: int) -> Attachment:
        async with self.session_factory() as session:
            attachment = await session.get(Attachment, attachment_id)
        if attachment is None:
            raise AttachmentNotFoundError(f"Attachment {attachment_id} not found")
        return attachment

    async def list_attachments(
        self,
        search: str = "",
        page: int = 1,
        limit: int = 100,
        product_code: str = "",
    ) -> tuple[int, list[Attachment]]:
        """Page of attachments, newest update first."""
        stmt = select(Attachment)
        if search:
            pattern = f"%{search}%"
            stmt = stmt.where(or_(
                Attachment.remark.ilike(pattern),
                Attachment.name.ilike(pattern),
                Attachment.product_code == search,
            ))
        if product_code:
            stmt = stmt.where(Attachment.product_code == product_code)

        async with self.session_factory() as session:
            total = (await session.execute(
                select(func.count()).select_from(stmt.subquery())
            )).scalar() or 0
            rows = (await session.execute(
                stmt.order_by(Attachment.updated_at.desc(), Attachment.id.desc())
                .offset((max(page, 1) - 1) * limit)
                .limit(limit)
            )).scalars().all()
        return total, list(rows)

    async def list_url_backed(self) -> list[Attachment]:
        """Attachments whose bytes have not been fetched into storage yet."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Attachment)
                .where(Attachment.hash.startswith(URL_HASH_PREFIX))
                .order_by(Attachment.id)
            )
            return list(result.scalars().all())

    # ─── Download ─────────────────────────────────────────────────────

    async def download(self, hash_value: str) -> DownloadedFile:
        """Bytes and metadata for a hash; bumps ``download_count`` by one.

        URL-backed rows are fetched from the tracker and the bytes cached
        under their real hash. The row keeps its placeholder hash unless
        ``promote_materialized_hash`` is set.

        No session is held while bytes are fetched or read.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(Attachment).where(Attachment.hash == hash_value).order_by(Attachment.id).limit(1)
            )
            attachment = result.scalar_one_or_none()
        if attachment is None:
            raise AttachmentNotFoundError(f"No attachment with hash {hash_value}")

        changes: dict[str, Any] = {}
        if self.can_fetch_remote(attachment):
            try:
                remote = await self.tracker.download_upload(attachment.remark)
            except TrackerError as exc:
                raise BlobNotFoundError(
                    f"Remote fetch failed for attachment {attachment.id}: {exc}"
                ) from exc
            await self.write_blob(remote.sha256, remote.content)
            served = DownloadedFile(
                attachment_id=attachment.id,
                hash=remote.sha256,
                name=remote.filename,
                mimetype=remote.mimetype,
                size=remote.size,
                content=remote.content,
            )
            if self.promote_materialized_hash:
                changes = {
                    "hash": remote.sha256,
                    "name": remote.filename,
                    "mimetype": remote.mimetype,
                    "size": remote.size,
                }
            logger.info(
                "Materialized attachment %d from %s -> %s",
                attachment.id, attachment.remark, remote.sha256,
            )
        else:
            content = await self.read_blob(attachment.hash)
            served = DownloadedFile(
                attachment_id=attachment.id,
                hash=attachment.hash,
                name=attachment.name,
                mimetype=attachment.mimetype or "application/octet-stream",
                size=attachment.size or len(content),
                content=content,
            )

        async with self.session_factory() as session:
            await session.execute(
                update(Attachment)
                .where(Attachment.id == attachment.id)
                .values(
                    download_count=func.coalesce(Attachment.download_count, 0) + 1,
                    **changes,
                )
            )
            await session.commit()
        return served
