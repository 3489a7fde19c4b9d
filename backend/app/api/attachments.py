"""Attachments REST API: upload, metadata, soft delete, download.

GET    /api/attachments                 : list (search, product_code, pagination, fast)
POST   /api/attachments                 : multipart upload
GET    /api/attachments/{id}            : metadata
PATCH  /api/attachments/{id}            : metadata update
DELETE /api/attachments/{id}            : soft delete
GET    /api/attachments/download/{hash} : file bytes
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import Response
from pydantic import BaseModel, Field

from config import settings
from models import ATTACHMENT_STATUSES, ATTACHMENT_TAGS
from services.product_sync.attachments import (
    AttachmentNotFoundError,
    AttachmentStore,
    BlobNotFoundError,
)

router = APIRouter(prefix="/api/attachments", tags=["attachments"])
logger = logging.getLogger("prodhub.api.attachments")


def _get_store(request: Request) -> AttachmentStore:
    module = getattr(request.app.state, "product_sync", None)
    if not module:
        raise HTTPException(503, "Product sync module is not running")
    return module.store


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class AttachmentOut(BaseModel):
    id: int
    hash: str
    name: str
    size: int
    mimetype: str
    status: str
    download_count: int
    remark: str
    tag: str
    product_code: str
    comments: list[dict] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    download_url: str = ""

    model_config = {"from_attributes": True}


class AttachmentFastOut(BaseModel):
    id: int
    name: str
    product_code: str
    tag: str
    status: str

    model_config = {"from_attributes": True}


class AttachmentUpdate(BaseModel):
    name: Optional[str] = None
    remark: Optional[str] = None
    tag: Optional[str] = None
    status: Optional[str] = None
    download_count: Optional[int] = Field(None, ge=0)
    product_code: Optional[str] = None
    email: str = "system"


def _out(attachment) -> AttachmentOut:
    out = AttachmentOut.model_validate(attachment)
    out.download_url = f"{settings.APP_PUBLIC_URL.rstrip('/')}/api/attachments/download/{attachment.hash}"
    return out


def _check_tag(tag: Optional[str]) -> None:
    if tag and tag not in ATTACHMENT_TAGS:
        raise HTTPException(
            400, f"Invalid tag: {tag}. Allowed tags: {', '.join(ATTACHMENT_TAGS)}",
        )


def _content_disposition(filename: str) -> str:
    """Header value safe for any filename: latin-1 only on the wire."""
    fallback = filename.encode("ascii", "replace").decode("ascii")
    fallback = fallback.replace("\\", "\\\\").replace('"', '\\"')
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("")
async def list_all(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(100, ge=1, le=1000),
    search: str = Query(""),
    product_code: str = Query(""),
    fast: bool = Query(False),
):
    store = _get_store(request)
    total, rows = await store.list_attachments(
        search=search, page=page, limit=limit, product_code=product_code,
    )
    if fast:
        items = [AttachmentFastOut.model_validate(r).model_dump(mode="json") for r in rows]
    else:
        items = [_out(r).model_dump(mode="json") for r in rows]
    return {"page": page, "limit": limit, "total": total, "rows": items}


@router.post("", response_model=AttachmentOut, status_code=201)
async def upload(
    request: Request,
    file: UploadFile = File(...),
    name: str = Form(""),
    remark: str = Form(""),
    tag: str = Form(""),
    product_code: str = Form(""),
    email: str = Form("system"),
):
    """Store an uploaded file under its sha256 and create a draft attachment."""
    store = _get_store(request)
    _check_tag(tag)

    content = await file.read()
    if len(content) > settings.MAX_UPLOAD_SIZE:
        raise HTTPException(
            413, f"File too large (max {settings.MAX_UPLOAD_SIZE // (1024 * 1024)} MB)",
        )

    attachment = await store.upload(
        content,
        name=name or file.filename or "upload",
        mimetype=file.content_type or "",
        remark=remark,
        tag=tag,
        product_code=product_code,
        email=email,
    )
    return _out(attachment)


@router.get("/download/{hash_value}")
async def download(hash_value: str, request: Request):
    store = _get_store(request)
    try:
        served = await store.download(hash_value)
    except AttachmentNotFoundError:
        raise HTTPException(404, "Attachment not found")
    except BlobNotFoundError as exc:
        logger.error("Download of %s failed: %s", hash_value, exc)
        raise HTTPException(404, "File not found")

    return Response(
        content=served.content,
        media_type=served.mimetype,
        headers={
            "Content-Disposition": _content_disposition(served.filename),
            "Content-Length": str(len(served.content)),
        },
    )


@router.get("/{attachment_id}", response_model=AttachmentOut)
async def get_one(attachment_id: int, request: Request):
    store = _get_store(request)
    try:
        return _out(await store.get(attachment_id))
    except AttachmentNotFoundError:
        raise HTTPException(404, "Attachment not found")


@router.patch("/{attachment_id}", response_model=AttachmentOut)
async def update_one(attachment_id: int, data: AttachmentUpdate, request: Request):
    store = _get_store(request)
    _check_tag(data.tag)
    if data.status and data.status not in ATTACHMENT_STATUSES:
        raise HTTPException(
            400, f"Invalid status. Allowed values: {', '.join(ATTACHMENT_STATUSES)}",
        )
    fields = data.model_dump(exclude_unset=True, exclude={"email"})
    try:
        attachment = await store.update(attachment_id, fields, email=data.email)
    except AttachmentNotFoundError:
        raise HTTPException(404, "Attachment not found")
    return _out(attachment)


@router.delete("/{attachment_id}")
async def delete_one(attachment_id: int, request: Request, email: str = Query("system")):
    store = _get_store(request)
    try:
        await store.soft_delete(attachment_id, email=email)
    except AttachmentNotFoundError:
        raise HTTPException(404, "Attachment not found")
    return {"message": "Attachment deleted successfully"}
