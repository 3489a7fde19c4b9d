"""Attachment: content-addressed file metadata.

``hash`` is the sha256 hex digest of the stored bytes, or
``"URL:" + sha256(source url)`` while the bytes still live remotely
(``remark`` then carries the remote URL). Rows are soft-deleted only.
"""
from sqlalchemy import JSON, BigInteger, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, TimestampMixin

URL_HASH_PREFIX = "URL:"

ATTACHMENT_TAGS = ("manual", "firmware", "printing", "testing", "certificate")
ATTACHMENT_STATUSES = (
    "approved", "rejected", "wrong", "draft", "archived", "deleted", "deprecated",
)


class Attachment(TimestampMixin, Base):
    __tablename__ = "attachments"

    __table_args__ = (
        Index("ix_attachments_hash", "hash"),
        Index("ix_attachments_status", "status"),
        Index("ix_attachments_tag", "tag"),
        Index("ix_attachments_product_code", "product_code"),
    )

    # 64-bit so wiki page ids fit; sqlite only autoincrements INTEGER keys
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True,
    )
    hash: Mapped[str] = mapped_column(String(100))
    name: Mapped[str] = mapped_column(String(500), default="")
    size: Mapped[int] = mapped_column(BigInteger, default=0)
    mimetype: Mapped[str] = mapped_column(String(255), default="")
    status: Mapped[str] = mapped_column(String(20), default="draft")
    download_count: Mapped[int] = mapped_column(default=0)
    remark: Mapped[str] = mapped_column(String(2000), default="")
    tag: Mapped[str] = mapped_column(String(30), default="")
    product_code: Mapped[str] = mapped_column(String(255), default="")
    comments: Mapped[list] = mapped_column(JSON, default=list)  # [{email, content, created_at, action}]

    @property
    def is_materialized(self) -> bool:
        return not self.hash.startswith(URL_HASH_PREFIX)

    def __repr__(self) -> str:
        return f"<Attachment {self.id} {self.name!r} {self.hash[:16]}>"
