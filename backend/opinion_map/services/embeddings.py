"""Embedding cache and vectorization for sampled posts.

Vectors are cached per post and model in ``post_embeddings`` and shared across
sessions, so overlapping analyses only pay for posts they have not seen.

Classes:
    CacheStats: Cached versus missing counts for a sample.
    VectorizationResult: Outcome of ensuring every sampled post has a vector.
    EmbeddingService: Computes missing vectors in bounded, concurrent batches and loads matrices.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Sequence
from uuid import UUID

import numpy as np
from sqlalchemy import select

from opinion_map.core.config import get_settings
from opinion_map.core.errors import ExternalServiceError
from opinion_map.models import Post, PostEmbedding
from opinion_map.services.openai_client import EmbeddingBatch, OpenAIService
from opinion_map.utils.text import enrich_post_content

_LOGGER = logging.getLogger(__name__)

# keeps IN (...) clauses well below driver parameter limits
_LOOKUP_CHUNK = 500

BatchCallback = Callable[[int, int], Awaitable[None]]


@dataclass(slots=True)
class CacheStats:
    total: int
    cached: int
    needs_embedding: int

    @property
    def cache_hit_rate(self) -> float:
        if self.total <= 0:
            return 0.0
        return self.cached / self.total


@dataclass(slots=True)
class VectorizationResult:
    post_ids: list[UUID]
    vectors: np.ndarray
    cached: int
    computed: int
    failed_post_ids: list[UUID] = field(default_factory=list)
    model_id: str = ""

    @property
    def total(self) -> int:
        return self.cached + self.computed + len(self.failed_post_ids)

    @property
    def vectorized(self) -> int:
        return len(self.post_ids)

    @property
    def cache_hit_rate(self) -> float:
        return self.cached / self.total if self.total else 0.0


def _chunks(items: Sequence, size: int):
    for start in range(0, len(items), size):
        yield items[start : start + size]


def deserialize_vector(record: PostEmbedding) -> np.ndarray | None:
    dtype = (record.vector_dtype or "float16").lower()
    if not record.vector:
        return None
    if dtype == "float32":
        arr = np.frombuffer(record.vector, dtype=np.float32)
    else:
        arr = np.frombuffer(record.vector, dtype=np.float16).astype(np.float32)
    if record.dim and arr.size != record.dim:
        if arr.size < record.dim:
            return None
        arr = arr[: record.dim]
    return arr.astype(np.float32, copy=False)


class EmbeddingService:
    def __init__(
        self,
        openai_service: OpenAIService | None = None,
        *,
        model_id: Optional[str] = None,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        min_vectorized_ratio: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self._openai = openai_service or OpenAIService()
        self.model_id = model_id or settings.openai_embedding_model
        self.batch_size = max(1, batch_size or settings.embedding_batch_size)
        self.concurrency = max(1, concurrency or settings.embedding_concurrency)
        self.min_vectorized_ratio = (
            min_vectorized_ratio if min_vectorized_ratio is not None else settings.min_vectorized_ratio
        )
        self.max_tokens = settings.embedding_max_tokens

    async def _cached_ids(self, session, post_ids: Sequence[UUID], model_id: Optional[str] = None) -> set[UUID]:
        model_id = model_id or self.model_id
        cached: set[UUID] = set()
        for chunk in _chunks(list(post_ids), _LOOKUP_CHUNK):
            stmt = select(PostEmbedding.post_id).where(
                PostEmbedding.post_id.in_(chunk),
                PostEmbedding.model_id == model_id,
            )
            result = await session.exec(stmt)
            cached.update(result.scalars().all())
        return cached

    async def get_stats(self, session, post_ids: Sequence[UUID]) -> CacheStats:
        unique_ids = list(dict.fromkeys(post_ids))
        cached = len(await self._cached_ids(session, unique_ids))
        total = len(unique_ids)
        return CacheStats(total=total, cached=cached, needs_embedding=total - cached)

    async def _load_posts(self, session, post_ids: Sequence[UUID]) -> list[Post]:
        posts: list[Post] = []
        for chunk in _chunks(list(post_ids), _LOOKUP_CHUNK):
            result = await session.exec(select(Post).where(Post.id.in_(chunk)))
            posts.extend(result.scalars().all())
        order = {post_id: idx for idx, post_id in enumerate(post_ids)}
        posts.sort(key=lambda post: order.get(post.id, len(order)))
        return posts

    def _document_for(self, post: Post) -> str:
        return enrich_post_content(
            post.text,
            author_name=post.author_name,
            author_username=post.author_username,
            hashtags=post.hashtags or [],
            max_tokens=self.max_tokens,
        )

    async def _embed_batch(
        self,
        semaphore: asyncio.Semaphore,
        index: int,
        batch: list[Post],
    ) -> tuple[list[Post], EmbeddingBatch | None]:
        async with semaphore:
            try:
                embedded = await self._openai.embed_texts(
                    [self._document_for(post) for post in batch],
                    model=self.model_id,
                )
            except ExternalServiceError as exc:
                _LOGGER.warning(
                    "Embedding batch %d (%d posts) failed: %s",
                    index,
                    len(batch),
                    exc,
                )
                return batch, None
        if len(embedded.vectors) != len(batch):
            _LOGGER.warning(
                "Embedding batch %d returned %d vectors for %d posts",
                index,
                len(embedded.vectors),
                len(batch),
            )
            return batch, None
        return batch, embedded

    def _build_record(self, post_id: UUID, vector: Sequence[float], embedded: EmbeddingBatch) -> PostEmbedding:
        arr = np.asarray(vector, dtype=np.float32)
        dim = int(arr.size)
        return PostEmbedding(
            post_id=post_id,
            model_id=embedded.model,
            provider=embedded.provider,
            model_revision=embedded.model_revision,
            vector=arr.astype(np.float16).tobytes(),
            vector_dtype="float16",
            vector_norm=float(np.linalg.norm(arr)) if dim else 0.0,
            dim=dim,
        )

    async def ensure_embeddings(
        self,
        session,
        post_ids: Sequence[UUID],
        *,
        on_batch: BatchCallback | None = None,
    ) -> VectorizationResult:
        """Embed every sampled post that is not cached yet and return the full matrix.

        Failed batches only drop their own posts. The call raises
        ``ExternalServiceError`` when fewer than ``min_vectorized_ratio`` of the
        sample ends up with a vector.
        """

        unique_ids = list(dict.fromkeys(post_ids))
        cached_ids = await self._cached_ids(session, unique_ids)
        missing_ids = [post_id for post_id in unique_ids if post_id not in cached_ids]

        _LOGGER.info(
            "Vectorizing %d posts: %d cached, %d to embed with %s",
            len(unique_ids),
            len(cached_ids),
            len(missing_ids),
            self.model_id,
        )

        failed_ids: list[UUID] = []
        computed = 0
        if missing_ids:
            posts = await self._load_posts(session, missing_ids)
            found = {post.id for post in posts}
            failed_ids.extend(post_id for post_id in missing_ids if post_id not in found)

            batches = list(_chunks(posts, self.batch_size))
            semaphore = asyncio.Semaphore(self.concurrency)
            outcomes = await asyncio.gather(
                *(self._embed_batch(semaphore, idx, batch) for idx, batch in enumerate(batches))
            )

            for done, (batch, embedded) in enumerate(outcomes, start=1):
                if embedded is None:
                    failed_ids.extend(post.id for post in batch)
                else:
                    already = set()
                    if embedded.model != self.model_id:
                        already = await self._cached_ids(session, [post.id for post in batch], embedded.model)
                    for post, vector in zip(batch, embedded.vectors):
                        if post.id in already:
                            continue
                        session.add(self._build_record(post.id, vector, embedded))
                    await session.commit()
                    if embedded.model == self.model_id:
                        computed += len(batch)
                    else:
                        # cached under the serving model; a different vector space from this session's matrix
                        _LOGGER.warning(
                            "Embedding batch %d was served by %s instead of %s",
                            done - 1,
                            embedded.model,
                            self.model_id,
                        )
                        failed_ids.extend(post.id for post in batch)
                if on_batch is not None:
                    await on_batch(done, len(batches))

        vectorized = len(cached_ids) + computed
        if unique_ids and vectorized < len(unique_ids) * self.min_vectorized_ratio:
            raise ExternalServiceError(
                f"Only {vectorized} of {len(unique_ids)} posts could be vectorized",
                vectorized=vectorized,
                total=len(unique_ids),
                minimum_ratio=self.min_vectorized_ratio,
            )
        if failed_ids:
            _LOGGER.warning("Excluding %d posts without embeddings", len(failed_ids))

        failed = set(failed_ids)
        kept_ids, matrix = await self.load_vectors(
            session, [post_id for post_id in unique_ids if post_id not in failed]
        )
        return VectorizationResult(
            post_ids=kept_ids,
            vectors=matrix,
            cached=len(cached_ids),
            computed=computed,
            failed_post_ids=failed_ids,
            model_id=self.model_id,
        )

    async def load_vectors(self, session, post_ids: Sequence[UUID]) -> tuple[list[UUID], np.ndarray]:
        """Return ``(ids, matrix)`` in the order of ``post_ids``, skipping posts without a usable vector."""

        records: dict[UUID, np.ndarray] = {}
        for chunk in _chunks(list(post_ids), _LOOKUP_CHUNK):
            stmt = select(PostEmbedding).where(
                PostEmbedding.post_id.in_(chunk),
                PostEmbedding.model_id == self.model_id,
            )
            result = await session.exec(stmt)
            for record in result.scalars().all():
                arr = deserialize_vector(record)
                if arr is not None:
                    records[record.post_id] = arr

        expected_dim: int | None = None
        ids: list[UUID] = []
        rows: list[np.ndarray] = []
        for post_id in post_ids:
            arr = records.get(post_id)
            if arr is None:
                continue
            if expected_dim is None:
                expected_dim = arr.size
            elif arr.size != expected_dim:
                _LOGGER.warning("Skipping post %s: embedding dim %d != %d", post_id, arr.size, expected_dim)
                continue
            ids.append(post_id)
            rows.append(arr)

        if not rows:
            return [], np.zeros((0, 0), dtype=np.float32)
        return ids, np.vstack(rows).astype(np.float32, copy=False)
