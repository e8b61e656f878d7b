"""Tests for evidence/ — ref factories, hashing, in-memory and HTTP stores."""

from __future__ import annotations

from datetime import timedelta

import httpx
import pytest

from cfmom.contracts import EvidenceUnreachable
from cfmom.evidence.http import HttpEvidenceStore
from cfmom.evidence.memory import InMemoryEvidenceStore
from cfmom.evidence.refs import (
    chunk,
    compute_content_hash,
    frame,
    hashes_match,
    normalize_hash,
    request,
    row,
    timestamp,
)

ABC_SHA256 = "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


class TestHashing:
    def test_known_digest(self):
        assert compute_content_hash("abc") == ABC_SHA256
        assert compute_content_hash(b"abc") == ABC_SHA256

    def test_match_ignores_case_and_prefix(self):
        assert hashes_match("sha256:" + ABC_SHA256.upper(), ABC_SHA256)

    def test_match_raw_bytes(self):
        assert hashes_match(ABC_SHA256, bytes.fromhex(ABC_SHA256))

    def test_match_ascii_hex_bytes(self):
        assert hashes_match(ABC_SHA256, ABC_SHA256.encode("ascii"))
        assert hashes_match(ABC_SHA256, ("SHA256:" + ABC_SHA256.upper()).encode("ascii"))

    def test_ascii_hex_bytes_not_double_encoded(self):
        assert normalize_hash(b"ab12") == "ab12"
        assert normalize_hash(b"\xab\x12") == "ab12"

    def test_mismatch(self):
        assert not hashes_match("deadbeef", ABC_SHA256)

    def test_normalize(self):
        assert normalize_hash("  SHA256:ABC ") == "abc"


class TestRefFactories:
    def test_chunk_with_span(self):
        ref = chunk("docs", "c1", start=10, end=20, content_hash="h")
        assert (ref.kind, ref.store, ref.id, ref.content_hash) == ("chunk", "docs", "c1", "h")
        assert ref.locator == {"start": 10, "end": 20}

    def test_chunk_without_span(self):
        assert chunk("docs", "c1").locator is None

    def test_frame_bbox(self):
        ref = frame("video", "frame-0042", x=1, y=2, w=3, h=4)
        assert ref.kind == "frame"
        assert ref.locator == {"x": 1, "y": 2, "w": 3, "h": 4}

    def test_timestamp_id(self):
        ref = timestamp("audio", timedelta(seconds=12.5), duration=timedelta(seconds=2))
        assert ref.id == "t=12.500"
        assert ref.locator == {"position": 12.5, "duration": 2.0}

    def test_request_and_row(self):
        assert request("logs", "req-9").kind == "request"
        assert row("db", "r1", first=1, last=5).locator == {"first": 1, "last": 5}


class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_exists_and_hash(self):
        store = InMemoryEvidenceStore("docs")
        digest = store.put("chunk", "c1", "abc")
        assert digest == ABC_SHA256
        assert await store.exists("chunk", "c1") is True
        assert await store.exists("chunk", "nope") is False
        assert await store.content_hash("chunk", "c1") == ABC_SHA256
        assert store.calls == 3

    @pytest.mark.asyncio
    async def test_missing_hash_raises_key_error(self):
        with pytest.raises(KeyError):
            await InMemoryEvidenceStore().content_hash("chunk", "c1")

    @pytest.mark.asyncio
    async def test_unavailable_raises(self):
        store = InMemoryEvidenceStore()
        store.available = False
        with pytest.raises(EvidenceUnreachable):
            await store.exists("chunk", "c1")

    def test_remove(self):
        store = InMemoryEvidenceStore()
        store.put("chunk", "c1", "x")
        store.remove("chunk", "c1")
        assert len(store) == 0


def _handler(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/ev/chunk/c1":
        return httpx.Response(200)
    if path == "/ev/chunk/c1/hash":
        return httpx.Response(200, json={"content_hash": ABC_SHA256})
    if path == "/ev/chunk/nohash/hash":
        return httpx.Response(200, json={})
    if path.startswith("/ev/chunk/busy"):
        return httpx.Response(503)
    if path.startswith("/ev/chunk/limited"):
        return httpx.Response(429)
    if path.startswith("/ev/chunk/down"):
        raise httpx.ConnectError("connection refused", request=request)
    if path.startswith("/ev/chunk/forbidden"):
        return httpx.Response(403)
    return httpx.Response(404)


@pytest.fixture
def http_store() -> HttpEvidenceStore:
    client = httpx.AsyncClient(transport=httpx.MockTransport(_handler))
    return HttpEvidenceStore("http://evidence.test/ev/", client=client)


class TestHttpStore:
    @pytest.mark.asyncio
    async def test_exists(self, http_store):
        assert await http_store.exists("chunk", "c1") is True
        assert await http_store.exists("chunk", "missing") is False

    @pytest.mark.asyncio
    async def test_content_hash(self, http_store):
        assert await http_store.content_hash("chunk", "c1") == ABC_SHA256

    @pytest.mark.asyncio
    async def test_missing_hash_field_raises_value_error(self, http_store):
        with pytest.raises(ValueError, match="content_hash"):
            await http_store.content_hash("chunk", "nohash")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("unit", ["busy", "limited", "down"])
    async def test_retryable_failures_raise_unreachable(self, http_store, unit):
        with pytest.raises(EvidenceUnreachable):
            await http_store.exists("chunk", unit)

    @pytest.mark.asyncio
    async def test_client_error_is_not_unreachable(self, http_store):
        with pytest.raises(httpx.HTTPStatusError):
            await http_store.exists("chunk", "forbidden")

    @pytest.mark.asyncio
    async def test_ids_are_url_quoted(self):
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.raw_path.decode())
            return httpx.Response(200)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        store = HttpEvidenceStore("http://evidence.test", client=client)
        await store.exists("timestamp", "t=1.000/x")
        assert seen == ["/timestamp/t%3D1.000%2Fx"]

    @pytest.mark.asyncio
    async def test_aclose_leaves_injected_client_open(self, http_store):
        client = http_store._client
        await http_store.aclose()
        assert client.is_closed is False
        assert http_store._get_client() is client
        await client.aclose()

    @pytest.mark.asyncio
    async def test_context_manager_closes_owned_client(self):
        async with HttpEvidenceStore("http://evidence.test") as store:
            client = store._get_client()
        assert client.is_closed is True

    def test_from_settings_uses_http_timeout(self, settings):
        store = HttpEvidenceStore.from_settings(settings, "http://evidence.test/")
        assert store.base_url == "http://evidence.test"
        assert store._timeout == settings.evidence_http_timeout
