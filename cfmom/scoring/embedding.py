"""Embedding similarity over EmbeddingRef values.

Vectors from different embedding models live in different spaces; comparing
them is an error, not a zero.
"""

from __future__ import annotations

import math

from cfmom.contracts import EmbeddingRef, Signal


Vector = list[float] | tuple[float, ...]


def cosine_similarity(a: Vector, b: Vector) -> float:
    """Cosine similarity between two equal-length vectors (0.0 for empty or zero vectors)."""
    if len(a) != len(b) or not a:
        return 0.0
    dot = math.fsum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(math.fsum(x * x for x in a))
    norm_b = math.sqrt(math.fsum(x * x for x in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


def comparable(a: EmbeddingRef, b: EmbeddingRef) -> bool:
    return a.model_id == b.model_id and len(a.vector) == len(b.vector)


def embedding_similarity(a: EmbeddingRef, b: EmbeddingRef) -> float:
    """Cosine similarity between two embeddings from the same model."""
    if a.model_id != b.model_id:
        raise ValueError(f"Embeddings from different models: {a.model_id!r} vs {b.model_id!r}")
    if len(a.vector) != len(b.vector):
        raise ValueError(
            f"Embedding length mismatch for {a.model_id!r}: {len(a.vector)} vs {len(b.vector)}"
        )
    return cosine_similarity(a.vector, b.vector)


def signal_similarity(s1: Signal, s2: Signal) -> float | None:
    """Best similarity across comparable embedding pairs, or None if none share a model."""
    best: float | None = None
    for e1 in s1.embeddings:
        for e2 in s2.embeddings:
            if not comparable(e1, e2):
                continue
            sim = cosine_similarity(e1.vector, e2.vector)
            if best is None or sim > best:
                best = sim
    return best
