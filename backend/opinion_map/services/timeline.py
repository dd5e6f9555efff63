"""Cluster evolution time series for a completed session.

Functions:
    choose_granularity(start, end): Bucket size for the chart.
    build_cluster_timeline(rows, cluster_ids, start, end): Per-bucket post counts per cluster.
    load_cluster_timeline(db, record): Query a session's projections and build its series.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Sequence
from uuid import UUID

import pandas as pd
from sqlalchemy import select

from opinion_map.models import OUTLIER_CLUSTER_ID, OpinionCluster, OpinionSession, Post, PostProjection
from opinion_map.schemas import TimelineResponse
from opinion_map.services.sessions import load_session_config

_GRANULARITY_FREQ = {"hour": "h", "6hours": "6h", "day": "D"}


def choose_granularity(start: datetime, end: datetime) -> str:
    span = end - start
    if span <= timedelta(days=1):
        return "hour"
    if span <= timedelta(days=7):
        return "6hours"
    return "day"


def build_cluster_timeline(
    rows: Sequence[tuple[datetime, int]],
    cluster_ids: Sequence[int],
    start: datetime,
    end: datetime,
) -> tuple[str, list[dict[str, Any]]]:
    """Count posts per cluster per bucket; empty buckets are kept so the series is continuous.

    Outliers are left out of the per-cluster columns.
    """

    granularity = choose_granularity(start, end)
    freq = _GRANULARITY_FREQ[granularity]
    columns = [f"cluster_{cluster_id}" for cluster_id in sorted(cluster_ids)]
    buckets = pd.date_range(pd.Timestamp(start).floor(freq), pd.Timestamp(end), freq=freq)

    frame = pd.DataFrame(list(rows), columns=["posted_at", "cluster_id"])
    frame = frame[frame["cluster_id"] != OUTLIER_CLUSTER_ID].copy()
    if frame.empty:
        counts = pd.DataFrame(0, index=buckets, columns=columns)
    else:
        frame["bucket"] = pd.to_datetime(frame["posted_at"]).dt.floor(freq)
        frame["column"] = "cluster_" + frame["cluster_id"].astype(int).astype(str)
        counts = (
            frame.groupby(["bucket", "column"])
            .size()
            .unstack(fill_value=0)
            .reindex(index=buckets, columns=columns, fill_value=0)
            .fillna(0)
        )

    points: list[dict[str, Any]] = []
    for bucket, row in counts.iterrows():
        point: dict[str, Any] = {"date": bucket.isoformat()}
        point.update({column: int(row[column]) for column in columns})
        points.append(point)
    return granularity, points


async def load_cluster_timeline(db, record: OpinionSession) -> TimelineResponse:
    config = load_session_config(record)
    session_id: UUID = record.id

    cluster_rows = await db.exec(
        select(OpinionCluster.cluster_id).where(OpinionCluster.session_id == session_id)
    )
    cluster_ids = sorted(cluster_rows.scalars().all())

    projection_rows = await db.exec(
        select(Post.posted_at, PostProjection.cluster_id)
        .join(Post, Post.id == PostProjection.post_id)
        .where(PostProjection.session_id == session_id)
    )
    rows = [(row[0], int(row[1])) for row in projection_rows.all()]

    granularity, points = build_cluster_timeline(rows, cluster_ids, config.start_date, config.end_date)
    return TimelineResponse(
        session_id=session_id,
        granularity=granularity,
        clusters=cluster_ids,
        points=points,
    )
