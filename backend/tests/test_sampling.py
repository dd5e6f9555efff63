from datetime import datetime, timedelta
from uuid import uuid4

import pytest

from opinion_map.core.errors import InsufficientDataError, NoDataError, ValidationError
from opinion_map.services.sampling import (
    STRATEGY_ALL,
    STRATEGY_STRATIFIED,
    STRATEGY_STRATIFIED_ENGAGEMENT,
    PostSampler,
    allocate_quotas,
    choose_bucket_width,
)

START = datetime(2026, 3, 1)


def test_choose_bucket_width_scales_with_range():
    assert choose_bucket_width(START, START + timedelta(days=1)) == timedelta(hours=1)
    assert choose_bucket_width(START, START + timedelta(days=2)) == timedelta(hours=1)
    assert choose_bucket_width(START, START + timedelta(days=7)) == timedelta(hours=6)
    assert choose_bucket_width(START, START + timedelta(days=30)) == timedelta(days=1)


def test_allocate_quotas_is_proportional_and_exact():
    quotas = allocate_quotas([10, 5, 0, 3], 9)
    assert sum(quotas) == 9
    assert quotas[2] == 0
    assert all(quota <= count for quota, count in zip(quotas, [10, 5, 0, 3]))
    assert quotas[0] >= quotas[1] >= quotas[3]


def test_allocate_quotas_caps_at_available_posts():
    assert allocate_quotas([2, 2], 10) == [2, 2]
    assert allocate_quotas([4, 1], 0) == [0, 0]
    assert sum(allocate_quotas([1, 1, 1, 1, 1, 1, 1], 3)) == 3


@pytest.mark.asyncio
async def test_sample_stratifies_a_week_of_posts(session, zone, seed_posts):
    await seed_posts(zone, count=500, start=START, days=7)

    result = await PostSampler(seed=7).sample(
        session, zone_id=zone.id, start=START, end=START + timedelta(days=7), sample_size=200
    )

    assert result.actual_size == 200
    assert len(set(result.post_ids)) == 200
    assert result.total_available == 500
    assert result.strategy == STRATEGY_STRATIFIED_ENGAGEMENT
    assert result.bucket_width == timedelta(hours=6)
    assert result.bucket_count == 28
    assert sum(result.bucket_sizes.values()) == 200


@pytest.mark.asyncio
async def test_sample_returns_everything_when_target_exceeds_available(session, zone, seed_posts):
    posts = await seed_posts(zone, count=40, start=START, days=3)

    result = await PostSampler().sample(
        session, zone_id=zone.id, start=START, end=START + timedelta(days=3), sample_size=100
    )

    assert result.strategy == STRATEGY_ALL
    assert result.actual_size == 40 == min(100, result.total_available)
    assert result.post_ids == [post.id for post in sorted(posts, key=lambda post: post.posted_at)]


@pytest.mark.asyncio
async def test_sample_prefers_engaged_posts_within_a_bucket(session, zone, seed_posts):
    posts = await seed_posts(zone, count=20, start=START, days=1 / 24)

    result = await PostSampler().sample(
        session, zone_id=zone.id, start=START, end=START + timedelta(days=1), sample_size=5
    )

    expected = sorted(posts, key=lambda post: -post.engagement)[:5]
    assert set(result.post_ids) == {post.id for post in expected}
    assert result.bucket_count == 1


@pytest.mark.asyncio
async def test_sample_without_engagement_priority_is_seeded(session, zone, seed_posts):
    await seed_posts(zone, count=60, start=START, days=2)
    end = START + timedelta(days=2)

    first = await PostSampler(prioritize_engagement=False, seed=3).sample(
        session, zone_id=zone.id, start=START, end=end, sample_size=25
    )
    second = await PostSampler(prioritize_engagement=False, seed=3).sample(
        session, zone_id=zone.id, start=START, end=end, sample_size=25
    )

    assert first.strategy == STRATEGY_STRATIFIED
    assert first.actual_size == 25
    assert first.post_ids == second.post_ids


@pytest.mark.asyncio
async def test_sample_excludes_retweets(session, zone, seed_posts):
    await seed_posts(zone, count=12, start=START, days=1, retweets=5)

    sampler = PostSampler()
    total = await sampler.count_available(session, zone.id, START, START + timedelta(days=1))
    result = await sampler.sample(
        session, zone_id=zone.id, start=START, end=START + timedelta(days=1), sample_size=100
    )

    assert total == 12
    assert result.total_available == 12
    assert result.actual_size == 12


@pytest.mark.asyncio
async def test_sample_reports_found_and_minimum_when_too_few_posts(session, zone, seed_posts):
    await seed_posts(zone, count=9, start=START, days=1)

    with pytest.raises(InsufficientDataError) as excinfo:
        await PostSampler().sample(
            session, zone_id=zone.id, start=START, end=START + timedelta(days=1), sample_size=50
        )

    assert excinfo.value.found == 9
    assert excinfo.value.minimum == 10
    assert excinfo.value.to_detail()["found"] == 9


@pytest.mark.asyncio
async def test_sample_raises_no_data_for_an_empty_period(session, zone):
    with pytest.raises(NoDataError):
        await PostSampler().sample(
            session, zone_id=zone.id, start=START, end=START + timedelta(days=1), sample_size=50
        )


@pytest.mark.asyncio
async def test_sample_ignores_other_zones(session, zone, seed_posts):
    await seed_posts(zone, count=30, start=START, days=1)

    with pytest.raises(NoDataError):
        await PostSampler().sample(
            session, zone_id=uuid4(), start=START, end=START + timedelta(days=1), sample_size=10
        )


@pytest.mark.asyncio
async def test_sample_rejects_out_of_range_sizes(session, zone):
    sampler = PostSampler(max_sample_size=100)
    with pytest.raises(ValidationError):
        await sampler.sample(session, zone_id=zone.id, start=START, end=START + timedelta(days=1), sample_size=0)
    with pytest.raises(ValidationError):
        await sampler.sample(session, zone_id=zone.id, start=START, end=START + timedelta(days=1), sample_size=101)
