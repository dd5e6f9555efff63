"""Time-stratified sampling of posts for an opinion session.

Classes:
    SampleResult: Sampled post identifiers plus the statistics reported to callers.
    PostSampler: Loads candidate posts for a zone and period and draws a stratified sample.

Functions:
    choose_bucket_width(start, end): Pick the bucket granularity for a date range.
    allocate_quotas(counts, target): Split a target sample size across buckets.
"""

from __future__ import annotations

import logging
import math
import random
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Sequence
from uuid import UUID

from sqlalchemy import func, select

from opinion_map.core.config import get_settings
from opinion_map.core.errors import InsufficientDataError, NoDataError, ValidationError
from opinion_map.models import Post

_LOGGER = logging.getLogger(__name__)

STRATEGY_ALL = "all"
STRATEGY_STRATIFIED = "stratified"
STRATEGY_STRATIFIED_ENGAGEMENT = "stratified_engagement"

_RETWEET_PATTERN = "RT @%"


@dataclass(slots=True)
class SampleResult:
    post_ids: list[UUID]
    total_available: int
    strategy: str
    bucket_count: int
    bucket_width: timedelta | None = None
    bucket_sizes: dict[int, int] = field(default_factory=dict)

    @property
    def actual_size(self) -> int:
        return len(self.post_ids)


@dataclass(slots=True)
class _Candidate:
    id: UUID
    posted_at: datetime
    engagement: int


def choose_bucket_width(start: datetime, end: datetime) -> timedelta:
    """Hourly buckets for short ranges, six-hour buckets up to two weeks, daily beyond."""

    span = end - start
    if span <= timedelta(days=2):
        return timedelta(hours=1)
    if span <= timedelta(days=14):
        return timedelta(hours=6)
    return timedelta(days=1)


def allocate_quotas(counts: Sequence[int], target: int) -> list[int]:
    """Distribute ``target`` across buckets proportionally to their sizes.

    Uses largest remainders and never assigns a bucket more than it holds; the
    quotas always sum to ``min(target, sum(counts))``.
    """

    total = sum(counts)
    target = min(max(target, 0), total)
    if target == 0:
        return [0 for _ in counts]

    raw = [count * target / total for count in counts]
    quotas = [min(int(math.floor(value)), count) for value, count in zip(raw, counts)]
    remaining = target - sum(quotas)

    order = sorted(
        range(len(counts)),
        key=lambda idx: (raw[idx] - math.floor(raw[idx]), counts[idx] - quotas[idx]),
        reverse=True,
    )
    while remaining > 0:
        progressed = False
        for idx in order:
            if remaining == 0:
                break
            if quotas[idx] < counts[idx]:
                quotas[idx] += 1
                remaining -= 1
                progressed = True
        if not progressed:
            break
    return quotas


class PostSampler:
    def __init__(
        self,
        *,
        min_posts: int | None = None,
        max_sample_size: int | None = None,
        prioritize_engagement: bool | None = None,
        seed: int | None = None,
    ) -> None:
        settings = get_settings()
        self.min_posts = min_posts if min_posts is not None else settings.sampler_min_posts
        self.max_sample_size = (
            max_sample_size if max_sample_size is not None else settings.sampler_max_sample_size
        )
        self.prioritize_engagement = (
            prioritize_engagement
            if prioritize_engagement is not None
            else settings.sampler_prioritize_engagement
        )
        self.seed = seed if seed is not None else settings.sampler_seed

    def _filters(self, zone_id: UUID, start: datetime, end: datetime) -> tuple:
        return (
            Post.zone_id == zone_id,
            Post.posted_at >= start,
            Post.posted_at <= end,
            Post.text.not_like(_RETWEET_PATTERN),
        )

    async def count_available(self, session, zone_id: UUID, start: datetime, end: datetime) -> int:
        stmt = select(func.count()).select_from(Post).where(*self._filters(zone_id, start, end))
        result = await session.exec(stmt)
        return int(result.scalar_one())

    async def _load_candidates(
        self, session, zone_id: UUID, start: datetime, end: datetime
    ) -> list[_Candidate]:
        stmt = (
            select(Post.id, Post.posted_at, Post.engagement)
            .where(*self._filters(zone_id, start, end))
            .order_by(Post.posted_at, Post.id)
        )
        result = await session.exec(stmt)
        return [
            _Candidate(id=row[0], posted_at=row[1], engagement=int(row[2] or 0))
            for row in result.all()
        ]

    def ensure_sufficient(self, total_available: int) -> None:
        if total_available == 0:
            raise NoDataError()
        if total_available < self.min_posts:
            raise InsufficientDataError(found=total_available, minimum=self.min_posts)

    def _order_bucket(self, members: list[_Candidate], rng: random.Random) -> list[_Candidate]:
        if self.prioritize_engagement:
            return sorted(members, key=lambda item: (-item.engagement, item.posted_at, str(item.id)))
        shuffled = list(members)
        rng.shuffle(shuffled)
        return shuffled

    async def sample(
        self,
        session,
        *,
        zone_id: UUID,
        start: datetime,
        end: datetime,
        sample_size: int,
    ) -> SampleResult:
        if sample_size < 1:
            raise ValidationError("sample_size must be at least 1", sample_size=sample_size)
        if sample_size > self.max_sample_size:
            raise ValidationError(
                f"sample_size cannot exceed {self.max_sample_size}",
                sample_size=sample_size,
                maximum=self.max_sample_size,
            )

        candidates = await self._load_candidates(session, zone_id, start, end)
        total_available = len(candidates)
        self.ensure_sufficient(total_available)

        _LOGGER.info(
            "Sampling zone %s: %d posts available between %s and %s, target %d",
            zone_id,
            total_available,
            start.isoformat(),
            end.isoformat(),
            sample_size,
        )

        if total_available <= sample_size:
            ordered = sorted(candidates, key=lambda item: (item.posted_at, str(item.id)))
            return SampleResult(
                post_ids=[item.id for item in ordered],
                total_available=total_available,
                strategy=STRATEGY_ALL,
                bucket_count=1,
            )

        width = choose_bucket_width(start, end)
        buckets: dict[int, list[_Candidate]] = defaultdict(list)
        for item in candidates:
            index = int((item.posted_at - start) / width)
            buckets[index].append(item)

        keys = sorted(buckets)
        quotas = allocate_quotas([len(buckets[key]) for key in keys], sample_size)
        rng = random.Random(self.seed)

        chosen: list[_Candidate] = []
        bucket_sizes: dict[int, int] = {}
        for key, quota in zip(keys, quotas):
            if quota <= 0:
                continue
            picked = self._order_bucket(buckets[key], rng)[:quota]
            chosen.extend(picked)
            bucket_sizes[key] = len(picked)

        chosen.sort(key=lambda item: (item.posted_at, str(item.id)))
        strategy = STRATEGY_STRATIFIED_ENGAGEMENT if self.prioritize_engagement else STRATEGY_STRATIFIED
        _LOGGER.info(
            "Sampled %d of %d posts across %d buckets (%s, width=%s)",
            len(chosen),
            total_available,
            len(keys),
            strategy,
            width,
        )
        return SampleResult(
            post_ids=[item.id for item in chosen],
            total_available=total_available,
            strategy=strategy,
            bucket_count=len(keys),
            bucket_width=width,
            bucket_sizes=bucket_sizes,
        )
