"""
Pytest configuration and shared fixtures for the product admin backend.
"""

import os
from typing import Callable, Optional

# Set test environment variables before importing app modules
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["WIKI_BASE_URL"] = "https://wiki.example.com"
os.environ["WIKI_USER_EMAIL"] = "bot@example.com"
os.environ["WIKI_API_TOKEN"] = "test-token"
os.environ["TRACKER_BASE_URL"] = "https://gitlab.example.com"
os.environ["TRACKER_TOKEN"] = "test-token"
os.environ["APP_PUBLIC_URL"] = "http://testserver"

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from models import Base  # noqa: E402
from services.product_sync.attachments import AttachmentStore  # noqa: E402
from services.product_sync.tracker import TrackerClient  # noqa: E402
from services.product_sync.wiki import WikiClient  # noqa: E402

WIKI_BASE = "https://wiki.example.com"
TRACKER_BASE = "https://gitlab.example.com"
PROJECT_ID = "755"
PROJECT_PATH = "Shelly/fw/shelly-ng"


# ---------------------------------------------------------------------------
# Fake remote services
# ---------------------------------------------------------------------------

def tree_item(item_id: str, item_type: str, status: str = "current", title: str = "") -> dict:
    return {"id": item_id, "title": title or f"{item_type}-{item_id}", "status": status, "type": item_type}


def page_body(page_id: str, title: str, html: str = "", status: str = "current") -> dict:
    return {
        "id": page_id,
        "title": title,
        "status": status,
        "body": {"anonymous_export_view": {"value": html}},
    }


def firmware_html(cell: str) -> str:
    return (
        "<table><tbody>"
        "<tr><th>Model</th><td>X</td></tr>"
        f"<tr><th>Firmware</th><td>{cell}</td></tr>"
        "</tbody></table>"
    )


class FakeWiki:
    """In-memory wiki API: children per page/folder id and page bodies."""

    def __init__(
        self,
        page_children: Optional[dict] = None,
        folder_children: Optional[dict] = None,
        pages: Optional[dict] = None,
    ):
        self.page_children = page_children or {}
        self.folder_children = folder_children or {}
        self.pages = pages or {}
        self.requests: list[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request.url.path)
        parts = request.url.path.strip("/").split("/")
        # wiki / api / v2 / {pages|folders} / {id} [/ direct-children]
        kind, item_id = parts[3], parts[4]
        if len(parts) == 6 and parts[5] == "direct-children":
            source = self.page_children if kind == "pages" else self.folder_children
            if item_id not in source:
                return httpx.Response(404, text="not found")
            return httpx.Response(200, json={"results": source[item_id]})
        if kind == "pages" and item_id in self.pages:
            return httpx.Response(200, json=self.pages[item_id])
        return httpx.Response(404, text="not found")

    def client(self, **kwargs) -> WikiClient:
        kwargs.setdefault("retry_delay", 0)
        return WikiClient(
            WIKI_BASE, "bot@example.com", "test-token",
            transport=httpx.MockTransport(self.handler), **kwargs,
        )


class FakeTracker:
    """In-memory issue tracker: issue descriptions and upload bytes."""

    def __init__(self, issues: Optional[dict] = None, uploads: Optional[dict] = None):
        self.issues = issues or {}
        self.uploads = uploads or {}
        self.requests: list[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append(path)
        assert request.headers.get("PRIVATE-TOKEN") == "test-token"
        issue_prefix = f"/api/v4/projects/{PROJECT_ID}/issues/"
        upload_prefix = f"/api/v4/projects/{PROJECT_ID}/uploads/"
        if path.startswith(issue_prefix):
            iid = int(path[len(issue_prefix):])
            if iid not in self.issues:
                return httpx.Response(404, json={"message": "404 Not found"})
            return httpx.Response(200, json={"iid": iid, "description": self.issues[iid]})
        if path.startswith(upload_prefix):
            key = path[len(upload_prefix):]
            if key not in self.uploads:
                return httpx.Response(404, text="not found")
            content = self.uploads[key]
            return httpx.Response(
                200,
                content=content,
                headers={"Content-Type": "application/zip", "Content-Length": str(len(content))},
            )
        return httpx.Response(404, text="not found")

    def client(self, base_url: str = TRACKER_BASE) -> TrackerClient:
        return TrackerClient(
            base_url, "test-token", verify_tls=False,
            transport=httpx.MockTransport(self.handler),
        )


def upload_url(key: str, base_url: str = TRACKER_BASE) -> str:
    return f"{base_url}/-/project/{PROJECT_ID}/uploads/{key}"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def session_factory():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def storage_dir(tmp_path):
    return tmp_path / "uploads"


@pytest.fixture
def make_store(session_factory, storage_dir) -> Callable[..., AttachmentStore]:
    def _make(tracker: Optional[TrackerClient] = None, **kwargs) -> AttachmentStore:
        return AttachmentStore(session_factory, storage_dir, tracker, **kwargs)
    return _make
