"""Dict-backed evidence store."""

from __future__ import annotations

from cfmom.contracts import EvidenceUnreachable
from cfmom.evidence.refs import compute_content_hash


class InMemoryEvidenceStore:
    """Evidence store holding content in memory, keyed on (kind, id).

    Hashes are computed once at put() time. Setting ``available=False``
    makes every verification call raise EvidenceUnreachable.
    """

    def __init__(self, name: str = "memory") -> None:
        self.name = name
        self.available = True
        self._hashes: dict[tuple[str, str], str] = {}
        self.calls = 0

    def put(self, kind: str, id: str, content: bytes | str) -> str:
        """Store content and return its content hash."""
        digest = compute_content_hash(content)
        self._hashes[(kind, id)] = digest
        return digest

    def remove(self, kind: str, id: str) -> None:
        self._hashes.pop((kind, id), None)

    def __len__(self) -> int:
        return len(self._hashes)

    def _check_available(self) -> None:
        self.calls += 1
        if not self.available:
            raise EvidenceUnreachable(f"store {self.name!r} is unavailable")

    async def exists(self, kind: str, id: str) -> bool:
        self._check_available()
        return (kind, id) in self._hashes

    async def content_hash(self, kind: str, id: str) -> str:
        self._check_available()
        try:
            return self._hashes[(kind, id)]
        except KeyError:
            raise KeyError(f"{kind}/{id} not found in store {self.name!r}") from None
