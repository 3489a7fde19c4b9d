"""Products REST API: catalogue listing, manual edits, wiki sync.

GET    /api/products             : list (search on code, pagination, fast mode)
POST   /api/products             : manual create
GET    /api/products/{id}        : detail with html
PATCH  /api/products/{id}        : manual edit
DELETE /api/products/{id}        : delete
POST   /api/products/sync        : full wiki sync
GET    /api/products/sync/status : last sync summary
"""
import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models import get_session
from services.product_sync.reconciler import SyncError
from services.product_sync.wiki import wiki_page_url
from services.products import (
    ProductExistsError,
    ProductNotFoundError,
    create_product,
    delete_product,
    get_product,
    list_products,
    update_product,
)

router = APIRouter(prefix="/api/products", tags=["products"])
logger = logging.getLogger("prodhub.api.products")


def _get_module(request: Request):
    """Get ProductSyncModule from app state."""
    module = getattr(request.app.state, "product_sync", None)
    if not module:
        raise HTTPException(503, "Product sync module is not running")
    return module


# --- Schemas ---

class ProductOut(BaseModel):
    id: str
    code: str
    status: str
    firmware: str = ""
    html: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class ProductFastOut(BaseModel):
    id: str
    code: str
    status: str

    model_config = {"from_attributes": True}


class ProductDetailOut(ProductOut):
    wiki_url: str = ""


class ProductCreate(BaseModel):
    id: str | None = None
    code: str
    html: str = ""
    firmware: str = ""
    status: str | None = None


class ProductUpdate(BaseModel):
    code: str | None = None
    html: str | None = None
    firmware: str | None = None
    status: str | None = None


class SyncResult(BaseModel):
    data: list[ProductOut]
    skipped: list[str]
    attachments: int


# --- Endpoints ---

@router.get("")
async def list_all(
    page: int = Query(1, ge=1),
    limit: int = Query(100, ge=1, le=1000),
    search: str = Query(""),
    fast: bool = Query(False),
    session: AsyncSession = Depends(get_session),
):
    total, rows = await list_products(session, search=search, page=page, limit=limit)
    if fast:
        items = [ProductFastOut.model_validate(r) for r in rows]
    else:
        # html is only served on the detail endpoint
        items = [ProductOut.model_validate(r).model_copy(update={"html": ""}) for r in rows]
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "rows": [item.model_dump(mode="json") for item in items],
    }


@router.post("", response_model=ProductOut, status_code=201)
async def create_one(data: ProductCreate, session: AsyncSession = Depends(get_session)):
    try:
        return await create_product(
            session,
            product_id=data.id,
            code=data.code,
            html=data.html,
            firmware=data.firmware,
            status=data.status,
        )
    except ProductExistsError as exc:
        raise HTTPException(409, str(exc))
    except ValueError as exc:
        raise HTTPException(400, str(exc))


@router.post("/sync", response_model=SyncResult)
async def sync_products(request: Request):
    """Crawl the wiki and reconcile products and firmware attachments."""
    module = _get_module(request)
    try:
        report = await module.reconciler.sync_report()
    except SyncError as exc:
        logger.error("Product sync failed at %s: %s", exc.stage, exc)
        return JSONResponse(
            status_code=502,
            content={"stage": exc.stage, "detail": str(exc)},
        )
    return SyncResult(
        data=[ProductOut.model_validate(p) for p in report.products],
        skipped=report.skipped_ids,
        attachments=report.attachments,
    )


@router.get("/sync/status")
async def sync_status(request: Request):
    """Last sync summary and background materialization state."""
    module = _get_module(request)
    summary = await module.reconciler.last_status() or {
        "last_sync": None, "synced": 0, "skipped": [], "attachments": 0,
    }
    materialized = module.materializer.last_report
    return {
        "running": module.reconciler.running,
        **summary,
        "materializing": module.materializer.pending,
        "last_materialization": (
            {
                "total": materialized.total,
                "succeeded": materialized.succeeded,
                "failed": materialized.failed,
            }
            if materialized else None
        ),
    }


@router.get("/{product_id}", response_model=ProductDetailOut)
async def get_one(product_id: str, session: AsyncSession = Depends(get_session)):
    try:
        product = await get_product(session, product_id)
    except ProductNotFoundError:
        raise HTTPException(404, "Product not found")
    out = ProductDetailOut.model_validate(product)
    if settings.WIKI_BASE_URL:
        out.wiki_url = wiki_page_url(settings.WIKI_BASE_URL, product.id)
    return out


@router.patch("/{product_id}", response_model=ProductOut)
async def update_one(
    product_id: str,
    data: ProductUpdate,
    session: AsyncSession = Depends(get_session),
):
    try:
        return await update_product(session, product_id, **data.model_dump(exclude_unset=True))
    except ProductNotFoundError:
        raise HTTPException(404, "Product not found")
    except ValueError as exc:
        raise HTTPException(400, str(exc))


@router.delete("/{product_id}", response_model=ProductOut)
async def delete_one(product_id: str, session: AsyncSession = Depends(get_session)):
    try:
        return await delete_product(session, product_id)
    except ProductNotFoundError:
        raise HTTPException(404, "Product not found")
