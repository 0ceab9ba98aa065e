"""Reference building for final answers.

Answer paragraphs are matched to chunks of the pages read during the
session by embedding similarity; the best matches become ``[^n]``
footnotes. Image references use the same matching on image alt text.
"""

import asyncio
import logging
import re
from typing import Dict, List, Optional, Sequence, Tuple, TypeVar

import numpy as np

from . import search
from .dedup import SIMILARITY_THRESHOLD, cosine_similarity_matrix, get_embeddings
from .models import AnswerAction, ImageObject, ImageReference, Reference, SearchSnippet, WebContent
from .text_tools import chunk_text
from .tracking import TokenTracker
from .url_tools import get_hostname, normalize_url

logger = logging.getLogger(__name__)

MAX_WEB_CHUNKS = 500
MAX_QUOTE_LENGTH = 300
MIN_IMAGE_REL_SCORE = 0.35
MAX_IMAGE_REFS = 10

_FOOTNOTE_RE = re.compile(r"\[\^\d+\]")
_SKIP_CHUNK_RE = re.compile(r"^\s*(```|\||<table|#)", re.IGNORECASE)

T = TypeVar("T")


def _web_chunks(
    web_contents: Dict[str, WebContent],
    only_hostnames: Sequence[str],
) -> List[Tuple[str, str, str]]:
    only = {h.lower() for h in only_hostnames}
    chunks = []
    for url, content in web_contents.items():
        if only and get_hostname(url) not in only:
            continue
        for chunk in content.chunks:
            if chunk and chunk.strip():
                chunks.append((url, content.title, chunk.strip()))
    return chunks[:MAX_WEB_CHUNKS]


async def build_references(
    answer: str,
    web_contents: Dict[str, WebContent],
    tracker: Optional[TokenTracker] = None,
    min_chunk_length: int = 80,
    max_ref: int = 10,
    min_rel_score: float = 0.8,
    only_hostnames: Sequence[str] = (),
) -> Tuple[str, List[Reference]]:
    """Attach up to *max_ref* footnotes to *answer*.

    Returns the answer with ``[^n]`` markers inserted (numbered by position)
    and the matching references. Existing markers are dropped first. On
    embedding failure the answer comes back unmarked with no references.
    """
    answer = _FOOTNOTE_RE.sub("", answer or "")
    answer_chunks = [c for c in chunk_text(answer, min_chunk_length) if not _SKIP_CHUNK_RE.match(c)]
    sources = _web_chunks(web_contents, only_hostnames)
    if not answer_chunks or not sources:
        return answer, []

    try:
        vectors = await get_embeddings(answer_chunks + [s[2] for s in sources], tracker)
    except Exception as exc:
        logger.warning("Reference embeddings unavailable: %s", exc)
        return answer, []

    answer_vecs = np.asarray(vectors[: len(answer_chunks)], dtype=float)
    source_vecs = np.asarray(vectors[len(answer_chunks):], dtype=float)
    sims = cosine_similarity_matrix(answer_vecs, source_vecs)

    candidates = []
    for i in range(len(answer_chunks)):
        j = int(np.argmax(sims[i]))
        score = float(sims[i, j])
        if score >= min_rel_score:
            candidates.append((score, i, j))
    candidates.sort(reverse=True)

    used_urls = set()
    picked = []
    for score, i, j in candidates:
        url = sources[j][0]
        if url in used_urls:
            continue
        used_urls.add(url)
        picked.append((score, i, j))
        if len(picked) >= max_ref:
            break

    # number footnotes in reading order
    picked.sort(key=lambda p: p[1])
    references: List[Reference] = []
    marked = answer
    for score, i, j in picked:
        chunk = answer_chunks[i]
        url, title, quote = sources[j]
        start = marked.find(chunk)
        if start == -1:
            continue
        n = len(references) + 1
        end = start + len(chunk)
        marked = f"{marked[:end]}[^{n}]{marked[end:]}"
        references.append(Reference(
            url=url,
            title=title,
            exact_quote=quote[:MAX_QUOTE_LENGTH],
            relevance_score=score,
            answer_chunk=chunk,
            answer_chunk_position=[start, end],
        ))
    logger.info("Built %d references (min score %.2f)", len(references), min_rel_score)
    return marked, references


async def update_references(action: AnswerAction, registry: Dict[str, SearchSnippet]) -> None:
    """Normalize reference URLs and fill title, quote and date from the registry.

    References without a date get one from the page's Last-Modified header.
    """
    updated: List[Reference] = []
    for ref in action.references or []:
        if not ref.url:
            continue
        url = normalize_url(ref.url)
        if not url:
            continue
        entry = registry.get(url)
        quote = ref.exact_quote or (entry.description if entry else "") or (entry.title if entry else "")
        quote = re.sub(r"\s+", " ", re.sub(r"[^\w\s]", " ", quote)).strip()
        updated.append(ref.model_copy(update={
            "url": url,
            "exact_quote": quote,
            "title": (entry.title if entry else "") or ref.title,
            "date_time": ref.date_time or (entry.date if entry and entry.date else ""),
        }))

    missing = [r for r in updated if not r.date_time]
    if missing:
        dates = await asyncio.gather(*[asyncio.to_thread(search.get_last_modified, r.url) for r in missing])
        for ref, date in zip(missing, dates):
            ref.date_time = date or ""
    action.references = updated


async def build_image_references(
    answer: str,
    images: Sequence[ImageObject],
    tracker: Optional[TokenTracker] = None,
    min_rel_score: float = MIN_IMAGE_REL_SCORE,
    max_images: int = MAX_IMAGE_REFS,
) -> List[ImageReference]:
    """Match images to answer chunks by the similarity of their alt text."""
    answer_chunks = chunk_text(answer)
    images = [img for img in images if img.alt or img.embedding]
    if not answer_chunks or not images:
        return []

    to_embed = [img for img in images if not img.embedding]
    if to_embed:
        vectors = await get_embeddings([img.alt for img in to_embed], tracker)
        for img, vec in zip(to_embed, vectors):
            img.embedding = vec
    chunk_vecs = np.asarray(await get_embeddings(answer_chunks, tracker), dtype=float)
    image_vecs = np.asarray([img.embedding for img in images], dtype=float)
    sims = cosine_similarity_matrix(image_vecs, chunk_vecs)

    refs = []
    for k, img in enumerate(images):
        j = int(np.argmax(sims[k]))
        score = float(sims[k, j])
        if score >= min_rel_score:
            refs.append(ImageReference(url=img.url, alt=img.alt, relevance_score=score, answer_chunk=answer_chunks[j]))
    refs.sort(key=lambda r: r.relevance_score or 0, reverse=True)
    return (await dedup_images(refs, tracker))[:max_images]


async def dedup_images(
    images: Sequence[T],
    tracker: Optional[TokenTracker] = None,
    threshold: float = SIMILARITY_THRESHOLD,
) -> List[T]:
    """Drop repeated image URLs, then near-identical images by alt-text embedding.

    Order is preserved, so callers sort by relevance first.
    """
    seen = set()
    unique = []
    for img in images:
        if img.url in seen:
            continue
        seen.add(img.url)
        unique.append(img)
    if len(unique) < 2:
        return unique

    try:
        vectors = await get_embeddings([img.alt or img.url for img in unique], tracker)
    except Exception as exc:
        logger.warning("Image dedup embeddings unavailable, using URL dedup: %s", exc)
        return unique

    sims = cosine_similarity_matrix(np.asarray(vectors, dtype=float), np.asarray(vectors, dtype=float))
    kept: List[int] = []
    for i in range(len(unique)):
        if any(sims[i, j] >= threshold for j in kept):
            continue
        kept.append(i)
    return [unique[i] for i in kept]
