"""Product: one row per product page crawled from the wiki.

``id`` is the wiki page id and stays stable across syncs.
``code`` is the trimmed page title, the join key used by attachments.
"""
import enum

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, TimestampMixin


class ProductStatus(str, enum.Enum):
    CRAWLER = "crawler"     # fresh from sync, firmware unresolved
    APPROVED = "approved"   # fresh from sync, firmware resolved to an upload
    EDITED = "edited"       # manual edit, survives re-sync
    REJECTED = "rejected"   # manual, survives re-sync


# Rows with these statuses are superseded by every sync pass
SYNC_OWNED_STATUSES = (ProductStatus.CRAWLER.value, ProductStatus.APPROVED.value)


class Product(TimestampMixin, Base):
    __tablename__ = "products"

    __table_args__ = (
        Index("ix_products_code", "code"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    code: Mapped[str] = mapped_column(String(255), default="")
    html: Mapped[str] = mapped_column(Text, default="")
    firmware: Mapped[str] = mapped_column(String(1000), default="")
    status: Mapped[str] = mapped_column(String(20), default=ProductStatus.CRAWLER.value)

    def __repr__(self) -> str:
        return f"<Product {self.id} {self.code!r} ({self.status})>"
