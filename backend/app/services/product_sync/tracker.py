"""Issue tracker HTTP client.

Covers only what the sync needs: issue description markdown and the
bytes behind a project upload URL. TLS verification is configured on
this client instance only.
"""
import hashlib
import logging
from dataclasses import dataclass
from urllib.parse import quote

import httpx

from services.product_sync.config import (
    TRACKER_API_PREFIX,
    TRACKER_UPLOAD_NAMESPACE,
    UPLOAD_MARKER,
)

logger = logging.getLogger("prodhub.sync.tracker")


class TrackerError(Exception):
    """Issue tracker API error."""


@dataclass
class UploadedFile:
    filename: str
    sha256: str
    mimetype: str
    size: int
    content: bytes


class TrackerClient:

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        verify_tls: bool = True,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            headers={"PRIVATE-TOKEN": token},
            verify=verify_tls,
            timeout=timeout,
            transport=transport,
        )

    def is_upload_url(self, url: str) -> bool:
        """True for ``{base}/-/project/{id}/uploads/...`` style URLs."""
        return (
            bool(self.base_url)
            and url.startswith(self.base_url)
            and TRACKER_UPLOAD_NAMESPACE in url
            and UPLOAD_MARKER in url
        )

    async def issue_description(self, project_id: str, issue_iid: int) -> str:
        """Markdown description of an issue."""
        url = (
            f"{self.base_url}{TRACKER_API_PREFIX}/projects/"
            f"{quote(str(project_id), safe='')}/issues/{issue_iid}"
        )
        try:
            resp = await self._client.get(url)
        except httpx.HTTPError as exc:
            raise TrackerError(f"Failed to fetch issue {issue_iid}: {exc}") from exc
        if resp.is_error:
            raise TrackerError(
                f"Failed to fetch issue {issue_iid}: {resp.status_code} {resp.text}"
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise TrackerError(f"Malformed issue {issue_iid} response") from exc
        return data.get("description") or ""

    async def download_upload(self, url: str) -> UploadedFile:
        """Fetch the bytes behind a project upload URL."""
        if TRACKER_UPLOAD_NAMESPACE not in url or UPLOAD_MARKER not in url:
            raise TrackerError(
                f"Invalid upload URL {url!r}, expected "
                f"{self.base_url}/-/project/<id>/uploads/<hex>/<filename>"
            )
        api_url = url.replace(TRACKER_UPLOAD_NAMESPACE, f"{TRACKER_API_PREFIX}/projects/")
        try:
            resp = await self._client.get(api_url)
        except httpx.HTTPError as exc:
            raise TrackerError(f"Failed to download {url}: {exc}") from exc
        if resp.is_error:
            raise TrackerError(
                f"Failed to download {url}: {resp.status_code} {resp.reason_phrase}"
            )

        content = resp.content
        filename = api_url.rstrip("/").rsplit("/", 1)[-1] or "downloaded_file"
        try:
            size = int(resp.headers.get("Content-Length", ""))
        except ValueError:
            size = len(content)
        logger.debug("Downloaded %s (%d bytes)", filename, size)
        return UploadedFile(
            filename=filename,
            sha256=hashlib.sha256(content).hexdigest(),
            mimetype=resp.headers.get("Content-Type") or "application/octet-stream",
            size=size,
            content=content,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
