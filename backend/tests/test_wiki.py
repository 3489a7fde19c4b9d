"""Tests for the wiki client: firmware cell parsing, tree crawl, retry policy."""

import asyncio
import base64

import httpx
import pytest

from conftest import FakeWiki, firmware_html, page_body, tree_item
from services.product_sync.wiki import (
    WikiClient,
    WikiError,
    WikiTimeoutError,
    parse_firmware,
    wiki_page_url,
)


class TestParseFirmware:
    def test_link_target_wins_over_text(self):
        html = firmware_html('<a href="https://gitlab.example.com/x/-/issues/1">Issue 1</a>')
        assert parse_firmware(html) == "https://gitlab.example.com/x/-/issues/1"

    def test_plain_text_when_no_link(self):
        assert parse_firmware(firmware_html("  v1.2.3 beta  ")) == "v1.2.3 beta"

    def test_header_substring_match(self):
        html = "<table><tr><th>Firmware version</th><td>2.0</td></tr></table>"
        assert parse_firmware(html) == "2.0"

    def test_first_firmware_row_wins(self):
        html = (
            "<table><tbody>"
            "<tr><th>Firmware</th><td>first</td></tr>"
            "<tr><th>Firmware</th><td>second</td></tr>"
            "</tbody></table>"
        )
        assert parse_firmware(html) == "first"

    def test_no_firmware_row(self):
        html = "<table><tr><th>Model</th><td>X</td></tr></table><p>Firmware: none</p>"
        assert parse_firmware(html) == ""

    def test_empty_html(self):
        assert parse_firmware("") == ""


def test_wiki_page_url():
    assert (
        wiki_page_url("https://wiki.example.com/", "123")
        == "https://wiki.example.com/wiki/spaces/Production/pages/123/"
    )


def _mixed_tree() -> FakeWiki:
    """root
    ├── folder 10 (current)
    │   ├── page 101 (current)
    │   ├── page 102 (archived)
    │   ├── folder 11 (current)
    │   │   └── page 111 (current)
    │   └── folder 12 (trashed)
    │       └── page 121 (current)
    ├── folder 20 (archived)
    │   └── page 201 (current)
    ├── page 30 (current, directly under root)
    └── folder 40 (current)
        └── page 401 (trashed)
    """
    return FakeWiki(
        page_children={
            "1": [
                tree_item("10", "folder"),
                tree_item("20", "folder", "archived"),
                tree_item("30", "page"),
                tree_item("40", "folder"),
            ],
        },
        folder_children={
            "10": [
                tree_item("101", "page"),
                tree_item("102", "page", "archived"),
                tree_item("11", "folder"),
                tree_item("12", "folder", "trashed"),
            ],
            "11": [tree_item("111", "page")],
            "12": [tree_item("121", "page")],
            "20": [tree_item("201", "page")],
            "40": [tree_item("401", "page", "trashed")],
        },
        pages={
            pid: page_body(pid, f"Product-{pid}", firmware_html(f"fw-{pid}"))
            for pid in ("101", "102", "111", "121", "201", "30", "401")
        },
    )


class TestFetchProducts:
    @pytest.mark.asyncio
    async def test_only_current_pages_under_current_folders(self):
        wiki = _mixed_tree()
        client = wiki.client()
        try:
            pages = await client.fetch_products("1")
        finally:
            await client.close()

        assert sorted(p.id for p in pages) == ["101", "111"]
        by_id = {p.id: p for p in pages}
        assert by_id["111"].title == "Product-111"
        assert by_id["111"].firmware == "fw-111"
        assert "<table>" in by_id["111"].html
        # Nothing reachable only through archived/trashed folders is requested
        assert not any("/folders/12/" in r or "/folders/20/" in r for r in wiki.requests)

    @pytest.mark.asyncio
    async def test_empty_root(self):
        wiki = FakeWiki(page_children={"1": []})
        client = wiki.client()
        try:
            assert await client.fetch_products("1") == []
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_page_fetches_are_batched(self):
        page_ids = [str(100 + i) for i in range(12)]
        wiki = FakeWiki(
            page_children={"1": [tree_item("10", "folder")]},
            folder_children={"10": [tree_item(pid, "page") for pid in page_ids]},
            pages={pid: page_body(pid, pid) for pid in page_ids},
        )
        in_flight = 0
        peak = 0

        async def handler(request: httpx.Request) -> httpx.Response:
            nonlocal in_flight, peak
            is_page = "direct-children" not in request.url.path
            if is_page:
                in_flight += 1
                peak = max(peak, in_flight)
                await asyncio.sleep(0.01)
                in_flight -= 1
            return wiki.handler(request)

        client = WikiClient(
            "https://wiki.example.com", "u", "t",
            batch_size=5, transport=httpx.MockTransport(handler),
        )
        try:
            pages = await client.fetch_products("1")
        finally:
            await client.close()

        assert len(pages) == 12
        assert peak == 5
        # Batches keep their order
        assert [p.id for p in pages] == page_ids


class TestRetry:
    @staticmethod
    def _flaky_client(timeouts: int, calls: list) -> WikiClient:
        body = page_body("7", "Widget")

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            if len(calls) <= timeouts:
                raise httpx.ReadTimeout("timed out", request=request)
            return httpx.Response(200, json=body)

        return WikiClient(
            "https://wiki.example.com", "u", "t",
            retries=3, retry_delay=0, transport=httpx.MockTransport(handler),
        )

    @pytest.mark.asyncio
    async def test_succeeds_on_fourth_attempt(self):
        calls: list = []
        client = self._flaky_client(3, calls)
        try:
            page = await client.get_page("7")
        finally:
            await client.close()
        assert page.title == "Widget"
        assert len(calls) == 4

    @pytest.mark.asyncio
    async def test_gives_up_after_four_timeouts(self):
        calls: list = []
        client = self._flaky_client(4, calls)
        try:
            with pytest.raises(WikiTimeoutError) as exc_info:
                await client.get_page("7")
        finally:
            await client.close()
        assert len(calls) == 4
        assert exc_info.value.item_id == "7"
        assert exc_info.value.attempts == 4
        assert "7" in str(exc_info.value) and "4 attempts" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_http_error_is_not_retried(self):
        calls: list = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            return httpx.Response(500, text="boom")

        client = WikiClient(
            "https://wiki.example.com", "u", "t",
            retry_delay=0, transport=httpx.MockTransport(handler),
        )
        try:
            with pytest.raises(WikiError) as exc_info:
                await client.get_folder_children("55")
        finally:
            await client.close()
        assert len(calls) == 1
        assert not isinstance(exc_info.value, WikiTimeoutError)
        assert "55" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_malformed_body_fails(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>login</html>")

        client = WikiClient("https://wiki.example.com", "u", "t", transport=httpx.MockTransport(handler))
        try:
            with pytest.raises(WikiError):
                await client.get_page("1")
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_crawl_aborts_on_page_failure(self):
        wiki = FakeWiki(
            page_children={"1": [tree_item("10", "folder")]},
            folder_children={"10": [tree_item("101", "page"), tree_item("102", "page")]},
            pages={"101": page_body("101", "A")},  # 102 -> 404
        )
        client = wiki.client()
        try:
            with pytest.raises(WikiError):
                await client.fetch_products("1")
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_sends_basic_auth(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"results": []})

        client = WikiClient(
            "https://wiki.example.com", "bot@example.com", "secret",
            transport=httpx.MockTransport(handler),
        )
        try:
            await client.get_page_children("1")
        finally:
            await client.close()
        expected = base64.b64encode(b"bot@example.com:secret").decode()
        assert seen["auth"] == f"Basic {expected}"

    @pytest.mark.asyncio
    async def test_stalled_attempt_is_cut_off_and_retried(self):
        calls: list = []
        body = page_body("7", "Widget")

        async def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            if len(calls) == 1:
                await asyncio.sleep(5)
            return httpx.Response(200, json=body)

        client = WikiClient(
            "https://wiki.example.com", "u", "t",
            timeout=0.1, retry_delay=0, transport=httpx.MockTransport(handler),
        )
        try:
            page = await asyncio.wait_for(client.get_page("7"), 2)
        finally:
            await client.close()
        assert page.title == "Widget"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_always_stalled_raises_timeout_error(self):
        calls: list = []

        async def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            await asyncio.sleep(5)
            return httpx.Response(200, json={"results": []})

        client = WikiClient(
            "https://wiki.example.com", "u", "t",
            timeout=0.05, retries=1, retry_delay=0, transport=httpx.MockTransport(handler),
        )
        try:
            with pytest.raises(WikiTimeoutError):
                await asyncio.wait_for(client.get_folder_children("55"), 2)
        finally:
            await client.close()
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_failed_folder_waits_for_sibling_folders(self):
        finished: list = []

        async def handler(request: httpx.Request) -> httpx.Response:
            path = request.url.path
            if path.endswith("/pages/1/direct-children"):
                return httpx.Response(200, json={"results": [
                    tree_item("10", "folder"), tree_item("20", "folder"),
                ]})
            if path.endswith("/folders/10/direct-children"):
                return httpx.Response(500, text="boom")
            await asyncio.sleep(0.1)
            finished.append(path)
            return httpx.Response(200, json={"results": []})

        client = WikiClient(
            "https://wiki.example.com", "u", "t",
            retry_delay=0, transport=httpx.MockTransport(handler),
        )
        try:
            with pytest.raises(WikiError) as exc_info:
                await client.fetch_products("1")
        finally:
            await client.close()
        assert "10" in str(exc_info.value)
        # The sibling crawl had settled by the time the error surfaced
        assert finished == ["/wiki/api/v2/folders/20/direct-children"]
