"""Wiki HTTP client and product tree crawler.

Responsibilities:
- HTTP Basic auth against the wiki REST API (v2)
- Timeout per attempt, retry on timeout only (linear backoff)
- Depth-first folder expansion under the configured root page
- Page HTML fetch in fixed-size concurrent batches
- Firmware cell extraction from the rendered page

Does NOT know about products, attachments or the database.
"""
import asyncio
import logging
from dataclasses import dataclass

import httpx
from bs4 import BeautifulSoup

from services.product_sync.config import (
    ITEM_STATUS_CURRENT,
    ITEM_TYPE_FOLDER,
    ITEM_TYPE_PAGE,
    WIKI_API_PREFIX,
    WIKI_BODY_FORMAT,
    WIKI_CHILDREN_LIMIT,
    WIKI_FIRMWARE_HEADER,
)

logger = logging.getLogger("prodhub.sync.wiki")


class WikiError(Exception):
    """Wiki API error. Fatal for a sync pass."""


class WikiTimeoutError(WikiError):
    """Request still timing out after all retries."""
    def __init__(self, kind: str, item_id: str, attempts: int):
        self.kind = kind
        self.item_id = item_id
        self.attempts = attempts
        super().__init__(
            f"Failed to fetch {kind} {item_id} after {attempts} attempts: request timeout"
        )


@dataclass
class WikiTreeItem:
    id: str
    title: str
    status: str
    type: str

    @classmethod
    def from_api(cls, data: dict) -> "WikiTreeItem":
        return cls(
            id=str(data.get("id", "")),
            title=data.get("title", "") or "",
            status=data.get("status", "") or "",
            type=data.get("type", "") or "",
        )

    @property
    def is_current(self) -> bool:
        return self.status == ITEM_STATUS_CURRENT


@dataclass
class WikiPage:
    id: str
    title: str
    html: str
    status: str
    firmware: str = ""


def parse_firmware(html: str) -> str:
    """Return the firmware cell of the first table row headed "Firmware".

    The link target wins over the cell text. Empty string when the page
    has no such row.
    """
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for row in soup.select("table tr"):
        header = row.find("th")
        if header is None or WIKI_FIRMWARE_HEADER not in header.get_text().strip():
            continue
        cell = row.select_one("td:nth-child(2)")
        if cell is None:
            return ""
        link = cell.find("a", href=True)
        if link is not None and link["href"]:
            return link["href"]
        return cell.get_text().strip()
    return ""


def wiki_page_url(base_url: str, page_id: str) -> str:
    """Human-facing URL of a product page."""
    return f"{base_url.rstrip('/')}/wiki/spaces/Production/pages/{page_id}/"


async def _gather_settled(*aws):
    """gather() that lets every sibling finish before raising the first failure."""
    results = await asyncio.gather(*aws, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return results


class WikiClient:

    def __init__(
        self,
        base_url: str,
        user_email: str,
        api_token: str,
        *,
        timeout: float = 60.0,
        retries: int = 3,
        retry_delay: float = 1.0,
        batch_size: int = 5,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retries = retries
        self.retry_delay = retry_delay
        self.batch_size = max(1, batch_size)
        self._client = httpx.AsyncClient(
            auth=httpx.BasicAuth(user_email, api_token),
            headers={"Content-Type": "application/json; charset=utf-8"},
            timeout=timeout,
            transport=transport,
        )

    async def _get_json(self, path: str, kind: str, item_id: str) -> dict:
        """GET with retry on timeout. Any other failure is raised at once."""
        url = f"{self.base_url}{WIKI_API_PREFIX}{path}"
        attempts = self.retries + 1

        for attempt in range(attempts):
            try:
                # Total limit per attempt, httpx only bounds each read
                resp = await asyncio.wait_for(self._client.get(url), self.timeout)
            except (httpx.TimeoutException, asyncio.TimeoutError):
                logger.warning(
                    "Wiki request timed out for %s %s, attempt %d/%d",
                    kind, item_id, attempt + 1, attempts,
                )
                if attempt == attempts - 1:
                    raise WikiTimeoutError(kind, item_id, attempts)
                await asyncio.sleep(self.retry_delay * (attempt + 1))
                continue
            except httpx.HTTPError as exc:
                raise WikiError(f"Failed to fetch {kind} {item_id}: {exc}") from exc

            if resp.is_error:
                raise WikiError(
                    f"Failed to fetch {kind} {item_id}: HTTP {resp.status_code} {resp.text}"
                )
            try:
                data = resp.json()
            except ValueError as exc:
                raise WikiError(f"Malformed response for {kind} {item_id}") from exc
            if not isinstance(data, dict):
                raise WikiError(f"Malformed response for {kind} {item_id}")
            return data

        raise WikiError(f"Failed to fetch {kind} {item_id}")

    async def get_page(self, page_id: str) -> WikiPage:
        """Fetch a page with its rendered HTML and firmware cell."""
        data = await self._get_json(
            f"/pages/{page_id}?body-format={WIKI_BODY_FORMAT}", "page", page_id,
        )
        body = data.get("body") or {}
        html = (body.get(WIKI_BODY_FORMAT) or {}).get("value") or ""
        return WikiPage(
            id=str(data.get("id", page_id)),
            title=data.get("title", "") or "",
            html=html,
            status=data.get("status", "") or "",
            firmware=parse_firmware(html),
        )

    async def get_page_children(self, page_id: str) -> list[WikiTreeItem]:
        data = await self._get_json(
            f"/pages/{page_id}/direct-children?limit={WIKI_CHILDREN_LIMIT}",
            "page", page_id,
        )
        return [WikiTreeItem.from_api(item) for item in data.get("results") or []]

    async def get_folder_children(self, folder_id: str) -> list[WikiTreeItem]:
        data = await self._get_json(
            f"/folders/{folder_id}/direct-children?limit={WIKI_CHILDREN_LIMIT}",
            "folder", folder_id,
        )
        return [WikiTreeItem.from_api(item) for item in data.get("results") or []]

    async def get_folder_pages(self, folder_id: str) -> list[WikiTreeItem]:
        """All current pages below a folder, recursing into current sub-folders."""
        children = await self.get_folder_children(folder_id)
        pages = [c for c in children if c.type == ITEM_TYPE_PAGE and c.is_current]
        sub_folders = [c for c in children if c.type == ITEM_TYPE_FOLDER and c.is_current]
        nested = await _gather_settled(
            *(self.get_folder_pages(folder.id) for folder in sub_folders)
        )
        for items in nested:
            pages.extend(items)
        return pages

    async def fetch_products(self, root_page_id: str) -> list[WikiPage]:
        """Crawl every current product page under the root's current folders."""
        root_children = await self.get_page_children(root_page_id)
        folder_ids = [
            c.id for c in root_children if c.type == ITEM_TYPE_FOLDER and c.is_current
        ]
        per_folder = await _gather_settled(
            *(self.get_folder_pages(folder_id) for folder_id in folder_ids)
        )
        items = [item for pages in per_folder for item in pages]
        logger.info(
            "Wiki crawl: %d folders, %d pages under root %s",
            len(folder_ids), len(items), root_page_id,
        )

        pages: list[WikiPage] = []
        for i in range(0, len(items), self.batch_size):
            batch = items[i:i + self.batch_size]
            pages.extend(await _gather_settled(*(self.get_page(item.id) for item in batch)))
        return pages

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
