"""Semantic deduplication of queries and questions.

Exact duplicates (after case and whitespace folding) are always dropped.
Near-duplicates are then dropped by cosine similarity of embeddings from
the configured embedding provider. If embeddings are unavailable the
exact-dedup result is returned unchanged.
"""

import asyncio
import logging
from typing import List, Optional, Sequence

import numpy as np

from .config import get_config
from .models import TokenUsage
from .providers import get_provider
from .tracking import TokenTracker

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.86


def _norm(text: str) -> str:
    return " ".join((text or "").lower().split())


def cosine_similarity_matrix(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    a_norm = a / np.clip(np.linalg.norm(a, axis=1, keepdims=True), 1e-12, None)
    b_norm = b / np.clip(np.linalg.norm(b, axis=1, keepdims=True), 1e-12, None)
    return a_norm @ b_norm.T


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    va, vb = np.asarray(a, dtype=float), np.asarray(b, dtype=float)
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    return float(va @ vb / denom) if denom else 0.0


def _embed_sync(texts: List[str]) -> List[List[float]]:
    cfg = get_config()
    return get_provider(cfg.embedding_provider).embed(cfg.embedding_model, texts)


async def get_embeddings(texts: List[str], tracker: Optional[TokenTracker] = None) -> List[List[float]]:
    """Embed *texts*; usage is charged as ``embeddings`` on *tracker*."""
    if not texts:
        return []
    vectors = await asyncio.to_thread(_embed_sync, texts)
    if tracker is not None:
        tokens = sum(len(t) for t in texts) // 4
        tracker.track_usage("embeddings", TokenUsage(prompt_tokens=tokens, total_tokens=tokens))
    return vectors


def exact_dedup(new: Sequence[str], existing: Sequence[str] = ()) -> List[str]:
    seen = {_norm(q) for q in existing}
    unique = []
    for q in new:
        key = _norm(q)
        if not key or key in seen:
            continue
        seen.add(key)
        unique.append(q)
    return unique


async def dedup_queries(
    new: Sequence[str],
    existing: Sequence[str] = (),
    tracker: Optional[TokenTracker] = None,
    threshold: float = SIMILARITY_THRESHOLD,
) -> List[str]:
    """Items of *new* that are neither in *existing* nor near-copies of an earlier item."""
    unique = exact_dedup(new, existing)
    if len(unique) + len(existing) < 2 or not unique:
        return unique

    try:
        vectors = await get_embeddings(list(unique) + list(existing), tracker)
    except Exception as exc:
        logger.warning("Embedding dedup unavailable, using exact dedup: %s", exc)
        return unique

    new_vecs = np.asarray(vectors[: len(unique)], dtype=float)
    old_vecs = np.asarray(vectors[len(unique):], dtype=float)
    old_sims = cosine_similarity_matrix(new_vecs, old_vecs) if len(existing) else None
    new_sims = cosine_similarity_matrix(new_vecs, new_vecs)

    kept: List[int] = []
    for i in range(len(unique)):
        if old_sims is not None and (old_sims[i] >= threshold).any():
            continue
        if any(new_sims[i, j] >= threshold for j in kept):
            continue
        kept.append(i)
    logger.debug("Dedup kept %d of %d", len(kept), len(new))
    return [unique[i] for i in kept]
