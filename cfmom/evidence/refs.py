"""EvidenceRef factories and content-hash helpers."""

from __future__ import annotations

import hashlib
import string
from datetime import timedelta

from cfmom.contracts import EvidenceRef

_HASH_PREFIX = "sha256:"


def compute_content_hash(data: bytes | str) -> str:
    """SHA-256 hex digest of evidence content (str is UTF-8 encoded)."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def _decode_hash_bytes(value: bytes) -> str:
    try:
        text = value.decode("ascii").strip()
    except UnicodeDecodeError:
        return value.hex()
    body = text.lower()
    if body.startswith(_HASH_PREFIX):
        body = body[len(_HASH_PREFIX) :]
    if body and all(c in string.hexdigits for c in body):
        return text
    return value.hex()


def normalize_hash(value: str | bytes) -> str:
    """Canonical form for comparison: lowercase hex, no "sha256:" prefix.

    Bytes holding an ASCII hex digest are decoded; other bytes are taken
    as a raw digest and rendered as hex.
    """
    if isinstance(value, bytes):
        value = _decode_hash_bytes(value)
    value = value.strip().lower()
    if value.startswith(_HASH_PREFIX):
        value = value[len(_HASH_PREFIX) :]
    return value


def hashes_match(expected: str, actual: str | bytes) -> bool:
    return normalize_hash(expected) == normalize_hash(actual)


def chunk(
    store: str,
    chunk_id: str,
    *,
    start: int | None = None,
    end: int | None = None,
    content_hash: str | None = None,
) -> EvidenceRef:
    """Reference to a document chunk, optionally narrowed to a byte span."""
    locator = None
    if start is not None or end is not None:
        locator = {"start": start, "end": end}
    return EvidenceRef("chunk", store, chunk_id, locator, content_hash)


def frame(
    store: str,
    frame_id: str,
    *,
    x: int | None = None,
    y: int | None = None,
    w: int | None = None,
    h: int | None = None,
    content_hash: str | None = None,
) -> EvidenceRef:
    """Reference to a video frame, optionally narrowed to a bounding box."""
    locator = None
    if x is not None or y is not None:
        locator = {"x": x, "y": y, "w": w, "h": h}
    return EvidenceRef("frame", store, frame_id, locator, content_hash)


def timestamp(
    store: str,
    position: timedelta,
    *,
    duration: timedelta | None = None,
    content_hash: str | None = None,
) -> EvidenceRef:
    """Reference to a time position in an audio/video store. id is "t=<seconds>"."""
    seconds = position.total_seconds()
    locator = {
        "position": seconds,
        "duration": duration.total_seconds() if duration is not None else None,
    }
    return EvidenceRef("timestamp", store, f"t={seconds:.3f}", locator, content_hash)


def request(store: str, request_id: str, *, content_hash: str | None = None) -> EvidenceRef:
    return EvidenceRef("request", store, request_id, None, content_hash)


def row(
    store: str,
    row_id: str,
    *,
    first: int | None = None,
    last: int | None = None,
    content_hash: str | None = None,
) -> EvidenceRef:
    """Reference to a database row, or a row range when first/last are given."""
    locator = None
    if first is not None or last is not None:
        locator = {"first": first, "last": last}
    return EvidenceRef("row", store, row_id, locator, content_hash)
