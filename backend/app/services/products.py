"""Products service: catalogue queries, manual changes and sync reconciliation."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from models.product import Product, ProductStatus, SYNC_OWNED_STATUSES

logger = logging.getLogger("prodhub.products")

PRODUCT_STATUSES = tuple(s.value for s in ProductStatus)


class ProductNotFoundError(Exception):
    """No product with the given id."""


class ProductExistsError(Exception):
    """A product with the given id already exists."""


@dataclass
class ReconcileResult:
    inserted: list[Product] = field(default_factory=list)
    skipped_ids: list[str] = field(default_factory=list)


async def reconcile_products(session: AsyncSession, rows: list[Product]) -> ReconcileResult:
    """Replace sync-owned rows with a freshly crawled generation.

    Rows currently ``crawler``/``approved`` for the incoming ids are
    deleted and the new generation inserted. Ids already held by an
    ``edited``/``rejected`` row are skipped and reported, the manual row
    stays as it is. Commits on success, rolls back on any error.
    """
    result = ReconcileResult()
    if not rows:
        return result

    ids = [str(r.id) for r in rows]
    try:
        protected = set((await session.execute(
            select(Product.id).where(
                Product.id.in_(ids),
                Product.status.not_in(SYNC_OWNED_STATUSES),
            )
        )).scalars().all())

        await session.execute(
            delete(Product).where(
                Product.id.in_(ids),
                Product.status.in_(SYNC_OWNED_STATUSES),
            )
        )

        for row in rows:
            if row.id in protected:
                result.skipped_ids.append(row.id)
                continue
            session.add(row)
            result.inserted.append(row)

        await session.commit()
    except Exception:
        await session.rollback()
        raise

    if result.skipped_ids:
        logger.warning(
            "Sync skipped %d manually maintained products: %s",
            len(result.skipped_ids), ", ".join(result.skipped_ids),
        )
    logger.info("Reconciled %d products", len(result.inserted))
    return result


async def list_products(
    session: AsyncSession,
    search: str = "",
    page: int = 1,
    limit: int = 100,
) -> tuple[int, list[Product]]:
    """Page of products, case-insensitive search on code."""
    stmt = select(Product)
    if search:
        stmt = stmt.where(Product.code.ilike(f"%{search}%"))

    total = (await session.execute(
        select(func.count()).select_from(stmt.subquery())
    )).scalar() or 0
    rows = (await session.execute(
        stmt.order_by(Product.status.asc(), Product.code.asc())
        .offset((max(page, 1) - 1) * limit)
        .limit(limit)
    )).scalars().all()
    return total, list(rows)


async def get_product(session: AsyncSession, product_id: str) -> Product:
    product = await session.get(Product, product_id)
    if product is None:
        raise ProductNotFoundError(f"Product {product_id} not found")
    return product


async def update_product(
    session: AsyncSession,
    product_id: str,
    *,
    code: Optional[str] = None,
    html: Optional[str] = None,
    firmware: Optional[str] = None,
    status: Optional[str] = None,
) -> Product:
    """Manual edit. Without an explicit status the row becomes ``edited``."""
    product = await get_product(session, product_id)
    if code is not None:
        product.code = code.strip()
    if html is not None:
        product.html = html
    if firmware is not None:
        product.firmware = firmware.strip()
    if status is not None:
        if status not in PRODUCT_STATUSES:
            raise ValueError(f"Invalid status {status!r}, allowed: {', '.join(PRODUCT_STATUSES)}")
        product.status = status
    else:
        product.status = ProductStatus.EDITED.value
    await session.commit()
    await session.refresh(product)
    return product


async def create_product(
    session: AsyncSession,
    *,
    code: str,
    html: str = "",
    firmware: str = "",
    status: Optional[str] = None,
    product_id: Optional[str] = None,
) -> Product:
    """Manually created product, ``edited`` unless a status is given.

    Without an id a random one is generated; wiki page ids are numeric so
    the two never collide.
    """
    code = (code or "").strip()
    if not code:
        raise ValueError("Product code is required")
    status = status or ProductStatus.EDITED.value
    if status not in PRODUCT_STATUSES:
        raise ValueError(f"Invalid status {status!r}, allowed: {', '.join(PRODUCT_STATUSES)}")

    product_id = (product_id or "").strip() or uuid.uuid4().hex
    product = Product(
        id=product_id,
        code=code,
        html=html or "",
        firmware=(firmware or "").strip(),
        status=status,
    )
    session.add(product)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ProductExistsError(f"Product {product_id} already exists") from exc
    await session.refresh(product)
    logger.info("Created product %s (%s)", product.id, product.code)
    return product


async def delete_product(session: AsyncSession, product_id: str) -> Product:
    """Hard delete; returns the removed row."""
    product = await get_product(session, product_id)
    await session.delete(product)
    await session.commit()
    logger.info("Deleted product %s (%s)", product.id, product.code)
    return product
