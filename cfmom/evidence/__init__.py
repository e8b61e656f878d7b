"""Evidence references and verification stores.

Stores implement the EvidenceStore protocol from contracts.py:
  InMemoryEvidenceStore — dict-backed, for tests and embedded use
  HttpEvidenceStore     — REST-backed via httpx
"""

from cfmom.evidence.http import HttpEvidenceStore
from cfmom.evidence.memory import InMemoryEvidenceStore
from cfmom.evidence.refs import (
    chunk,
    compute_content_hash,
    frame,
    hashes_match,
    request,
    row,
    timestamp,
)

__all__ = [
    "HttpEvidenceStore",
    "InMemoryEvidenceStore",
    "chunk",
    "compute_content_hash",
    "frame",
    "hashes_match",
    "request",
    "row",
    "timestamp",
]
