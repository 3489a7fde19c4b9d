from models.base import Base, async_session, engine, get_session
from models.product import Product, ProductStatus, SYNC_OWNED_STATUSES
from models.attachment import (
    Attachment,
    ATTACHMENT_STATUSES,
    ATTACHMENT_TAGS,
    URL_HASH_PREFIX,
)

__all__ = [
    "Base",
    "async_session",
    "engine",
    "get_session",
    "Product",
    "ProductStatus",
    "SYNC_OWNED_STATUSES",
    "Attachment",
    "ATTACHMENT_STATUSES",
    "ATTACHMENT_TAGS",
    "URL_HASH_PREFIX",
]
