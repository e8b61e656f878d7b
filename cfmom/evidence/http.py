"""REST-backed evidence store.

Endpoints, relative to base_url:
  GET {kind}/{id}       -> 200 if the unit exists, 404 if not
  GET {kind}/{id}/hash  -> {"content_hash": "<hex>"}

Transport errors, 429 and 5xx responses raise EvidenceUnreachable so the
constrainer can retry them. Everything else is a definitive answer.
"""

from __future__ import annotations

from urllib.parse import quote

import httpx

from cfmom.config import Settings
from cfmom.contracts import EvidenceUnreachable

_TIMEOUT = 5.0


class HttpEvidenceStore:
    """Evidence store client for a single REST namespace.

    Pass ``client`` to share a connection pool (or to inject a mock
    transport in tests); otherwise one is created lazily and closed by
    aclose().
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = _TIMEOUT,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._headers = {"User-Agent": "cfmom/0.1", **(headers or {})}
        self._client = client
        self._owns_client = client is None

    @classmethod
    def from_settings(cls, settings: Settings, base_url: str, **kwargs) -> HttpEvidenceStore:
        return cls(base_url, timeout=settings.evidence_http_timeout, **kwargs)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, headers=self._headers)
        return self._client

    def _url(self, kind: str, id: str, suffix: str = "") -> str:
        return f"{self.base_url}/{quote(kind, safe='')}/{quote(id, safe='')}{suffix}"

    async def _get(self, url: str) -> httpx.Response:
        try:
            resp = await self._get_client().get(url)
        except httpx.HTTPError as e:
            raise EvidenceUnreachable(f"GET {url} failed: {e}") from e
        if resp.status_code == 429 or resp.status_code >= 500:
            raise EvidenceUnreachable(f"GET {url} returned {resp.status_code}")
        return resp

    async def exists(self, kind: str, id: str) -> bool:
        resp = await self._get(self._url(kind, id))
        if resp.status_code == 404:
            return False
        resp.raise_for_status()
        return True

    async def content_hash(self, kind: str, id: str) -> str:
        resp = await self._get(self._url(kind, id, "/hash"))
        resp.raise_for_status()
        data = resp.json()
        digest = data.get("content_hash") if isinstance(data, dict) else None
        if not digest:
            raise ValueError(f"No content_hash in response for {kind}/{id}")
        return str(digest)

    async def aclose(self) -> None:
        # An injected client belongs to the caller and stays attached
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> HttpEvidenceStore:
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()
