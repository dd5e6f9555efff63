"""Opinion session lifecycle.

Every state change is a conditional UPDATE filtered on the statuses it may
leave, so concurrent writers (the worker and a cancel request) never overwrite
each other and nothing leaves a terminal state.

Classes:
    CreateOutcome: Session returned by create-or-reuse and whether it already existed.
    StageTimer: Records per-phase timings for a run.
    CancellationToken: Cooperative cancellation flag checked between phases.
    SessionService: Creates, advances, completes, fails, cancels and deletes sessions.

Functions:
    can_transition(current, target): Whether the state machine allows an edge.
    estimate_processing_time(sample_size, needs_embedding, progress): Rough duration in seconds.
"""

from __future__ import annotations

import json
import logging
import math
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Iterable, Optional
from uuid import UUID

from sqlalchemy import case, delete, select, update
from sqlalchemy.exc import IntegrityError

from opinion_map.core.errors import (
    InvalidTransitionError,
    NotFoundError,
    SessionCancelled,
    ValidationError,
)
from opinion_map.models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    OpinionCluster,
    OpinionSession,
    PostProjection,
    SessionStatus,
)
from opinion_map.schemas import SessionConfig
from opinion_map.utils.timeutils import isoformat_z, utcnow

_LOGGER = logging.getLogger(__name__)

_FORWARD = {
    SessionStatus.PENDING: SessionStatus.VECTORIZING,
    SessionStatus.VECTORIZING: SessionStatus.REDUCING,
    SessionStatus.REDUCING: SessionStatus.CLUSTERING,
    SessionStatus.CLUSTERING: SessionStatus.LABELING,
    SessionStatus.LABELING: SessionStatus.COMPLETED,
}

TRANSITIONS: dict[str, frozenset[str]] = {
    status: frozenset({_FORWARD[status], SessionStatus.FAILED, SessionStatus.CANCELLED})
    for status in ACTIVE_STATUSES
}

_RUNNING_STATUSES = [status for status in ACTIVE_STATUSES if status != SessionStatus.PENDING]


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def _sources_for(target: str) -> list[str]:
    return [status for status, targets in TRANSITIONS.items() if target in targets]


def estimate_processing_time(sample_size: int, needs_embedding: int, progress: int = 0) -> int:
    """Estimate the remaining seconds for a run.

    Embedding cost grows with uncached posts, clustering cost with the sample
    size; reduction, persistence and labeling are treated as fixed costs. For a
    run already in progress the estimate is scaled by the remaining share.
    """

    vectorization = math.ceil(max(needs_embedding, 0) / 100) * 0.5
    reduction = 10
    if sample_size < 1000:
        clustering = 30
    elif sample_size < 5000:
        clustering = 60
    else:
        clustering = 120
    persistence = 10
    labeling = 40
    total = vectorization + reduction + clustering + persistence + labeling
    remaining = max(0, min(100, 100 - progress)) / 100.0
    return int(math.ceil(total * remaining))


@dataclass(slots=True)
class CreateOutcome:
    session: OpinionSession
    reused: bool


class StageTimer:
    """Capture stage-level timings for a pipeline run."""

    def __init__(self) -> None:
        self._origin = time.perf_counter()
        self._wall_start = utcnow()
        self._stages: list[dict[str, Any]] = []

    @asynccontextmanager
    async def track(self, name: str):
        start_counter = time.perf_counter()
        start_wall = utcnow()
        try:
            yield
        finally:
            end_counter = time.perf_counter()
            self._stages.append(
                {
                    "name": name,
                    "duration_ms": round((end_counter - start_counter) * 1000.0, 3),
                    "offset_ms": round((start_counter - self._origin) * 1000.0, 3),
                    "started_at": isoformat_z(start_wall),
                    "finished_at": isoformat_z(utcnow()),
                }
            )

    @property
    def stages(self) -> list[dict[str, Any]]:
        return list(self._stages)

    def snapshot(self) -> dict[str, Any]:
        return {
            "total_duration_ms": round((time.perf_counter() - self._origin) * 1000.0, 3),
            "stages": list(self._stages),
            "started_at": isoformat_z(self._wall_start),
            "finished_at": isoformat_z(utcnow()),
        }


class CancellationToken:
    """Reads the persisted status; a phase already running is never interrupted."""

    def __init__(self, db_session, session_id: UUID) -> None:
        self._db = db_session
        self.session_id = session_id
        self._cancelled = False

    async def is_cancelled(self) -> bool:
        if self._cancelled:
            return True
        result = await self._db.exec(
            select(OpinionSession.status).where(OpinionSession.id == self.session_id)
        )
        status = result.scalar_one_or_none()
        self._cancelled = status == SessionStatus.CANCELLED
        return self._cancelled

    async def raise_if_cancelled(self) -> None:
        if await self.is_cancelled():
            raise SessionCancelled(str(self.session_id))


class SessionService:
    async def get(self, db_session, session_id: UUID) -> OpinionSession:
        record = await db_session.get(OpinionSession, session_id, populate_existing=True)
        if record is None:
            raise NotFoundError("Session not found", session_id=str(session_id))
        return record

    async def get_active_for_zone(self, db_session, zone_id: UUID) -> Optional[OpinionSession]:
        stmt = (
            select(OpinionSession)
            .where(OpinionSession.zone_id == zone_id, OpinionSession.status.in_(ACTIVE_STATUSES))
            .order_by(OpinionSession.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await db_session.exec(stmt)
        return result.scalars().first()

    async def latest_for_zone(
        self,
        db_session,
        zone_id: UUID,
        *,
        statuses: Optional[Iterable[str]] = None,
    ) -> Optional[OpinionSession]:
        stmt = select(OpinionSession).where(OpinionSession.zone_id == zone_id)
        if statuses:
            stmt = stmt.where(OpinionSession.status.in_(list(statuses)))
        stmt = (
            stmt.order_by(OpinionSession.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await db_session.exec(stmt)
        return result.scalars().first()

    async def create_or_reuse(
        self,
        db_session,
        *,
        zone_id: UUID,
        config: SessionConfig,
        created_by: Optional[str] = None,
    ) -> CreateOutcome:
        """Insert a pending session unless the zone already has an active one.

        The partial unique index on active sessions settles concurrent
        requests: the loser's insert fails and it returns the winner's row.
        """

        existing = await self.get_active_for_zone(db_session, zone_id)
        if existing is not None:
            _LOGGER.info("Reusing active session %s for zone %s", existing.id, zone_id)
            return CreateOutcome(session=existing, reused=True)

        record = OpinionSession(
            zone_id=zone_id,
            status=SessionStatus.PENDING,
            progress=0,
            current_phase=SessionStatus.PENDING,
            phase_message=f"Queued analysis of {config.actual_sample_size} posts",
            config_version=config.version,
            config_json=config.model_dump(mode="json"),
            total_posts=config.actual_sample_size,
            created_by=created_by,
        )
        db_session.add(record)
        try:
            await db_session.commit()
        except IntegrityError:
            await db_session.rollback()
            winner = await self.get_active_for_zone(db_session, zone_id)
            if winner is None:
                raise
            _LOGGER.info("Lost creation race for zone %s; reusing session %s", zone_id, winner.id)
            return CreateOutcome(session=winner, reused=True)
        await db_session.refresh(record)
        _LOGGER.info("Created session %s for zone %s", record.id, zone_id)
        return CreateOutcome(session=record, reused=False)

    async def _conditional_update(
        self,
        db_session,
        session_id: UUID,
        allowed: Iterable[str],
        values: dict[str, Any],
    ) -> bool:
        stmt = (
            update(OpinionSession)
            .where(OpinionSession.id == session_id, OpinionSession.status.in_(list(allowed)))
            .values(**values, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await db_session.execute(stmt)
        await db_session.commit()
        return bool(result.rowcount)

    async def _current_status(self, db_session, session_id: UUID) -> Optional[str]:
        result = await db_session.exec(
            select(OpinionSession.status).where(OpinionSession.id == session_id)
        )
        return result.scalar_one_or_none()

    async def claim(self, db_session, session_id: UUID, *, stale_after: Optional[float] = None) -> bool:
        """Move a pending session to ``vectorizing``; only one worker invocation can win.

        With ``stale_after`` set, a running session whose last update is older
        than that many seconds is also claimed and restarted from scratch.
        """

        claimed = await self._conditional_update(
            db_session,
            session_id,
            [SessionStatus.PENDING],
            {
                "status": SessionStatus.VECTORIZING,
                "current_phase": SessionStatus.VECTORIZING,
                "phase_message": "Starting vectorization",
                "started_at": utcnow(),
            },
        )
        if claimed:
            _LOGGER.info("Session %s claimed by worker", session_id)
            return True
        if not stale_after or stale_after <= 0:
            return False
        return await self._reclaim_stale(db_session, session_id, stale_after)

    async def _reclaim_stale(self, db_session, session_id: UUID, stale_after: float) -> bool:
        now = utcnow()
        stmt = (
            update(OpinionSession)
            .where(
                OpinionSession.id == session_id,
                OpinionSession.status.in_(_RUNNING_STATUSES),
                OpinionSession.updated_at < now - timedelta(seconds=stale_after),
            )
            .values(
                status=SessionStatus.VECTORIZING,
                current_phase=SessionStatus.VECTORIZING,
                phase_message="Restarting stalled analysis",
                started_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await db_session.execute(stmt)
        if not result.rowcount:
            await db_session.commit()
            return False
        # partial results of the stalled run
        await db_session.execute(delete(PostProjection).where(PostProjection.session_id == session_id))
        await db_session.execute(delete(OpinionCluster).where(OpinionCluster.session_id == session_id))
        await db_session.commit()
        _LOGGER.warning("Reclaimed session %s after %ss without progress", session_id, stale_after)
        return True

    async def transition(
        self,
        db_session,
        session_id: UUID,
        target: str,
        *,
        progress: Optional[int] = None,
        message: Optional[str] = None,
        **fields: Any,
    ) -> bool:
        """Advance to ``target``. Returns False when the session was cancelled meanwhile."""

        sources = _sources_for(target)
        if not sources:
            raise InvalidTransitionError("unknown", target)
        values: dict[str, Any] = {"status": target, "current_phase": target, **fields}
        if message is not None:
            values["phase_message"] = message
        if progress is not None:
            values["progress"] = self._monotonic(progress)

        if await self._conditional_update(db_session, session_id, sources, values):
            return True
        current = await self._current_status(db_session, session_id)
        if current is None:
            raise NotFoundError("Session not found", session_id=str(session_id))
        if current == SessionStatus.CANCELLED:
            return False
        raise InvalidTransitionError(current, target)

    @staticmethod
    def _monotonic(progress: int):
        value = max(0, min(100, int(progress)))
        return case((OpinionSession.progress < value, value), else_=OpinionSession.progress)

    async def update_progress(
        self,
        db_session,
        session_id: UUID,
        progress: int,
        message: Optional[str] = None,
        **fields: Any,
    ) -> bool:
        """Record progress within the current phase; a no-op once the session is terminal."""

        values: dict[str, Any] = {"progress": self._monotonic(progress), **fields}
        if message is not None:
            values["phase_message"] = message
        updated = await self._conditional_update(db_session, session_id, ACTIVE_STATUSES, values)
        _LOGGER.debug("Session %s progress %s%% (%s)", session_id, progress, message or "")
        return updated

    async def complete(
        self,
        db_session,
        session_id: UUID,
        *,
        cluster_count: int,
        outlier_count: int,
        timings: Optional[dict[str, Any]] = None,
    ) -> bool:
        record = await self.get(db_session, session_id)
        finished = utcnow()
        execution_ms = None
        if record.started_at is not None:
            execution_ms = int((finished - record.started_at).total_seconds() * 1000)
        return await self.transition(
            db_session,
            session_id,
            SessionStatus.COMPLETED,
            progress=100,
            message="Analysis complete",
            cluster_count=cluster_count,
            outlier_count=outlier_count,
            completed_at=finished,
            execution_time_ms=execution_ms,
            timings_json=json.dumps(timings) if timings else None,
        )

    async def mark_failed(
        self,
        db_session,
        session_id: UUID,
        message: str,
        trace: Optional[str] = None,
        *,
        timings: Optional[dict[str, Any]] = None,
    ) -> bool:
        values: dict[str, Any] = {
            "status": SessionStatus.FAILED,
            "phase_message": "Analysis failed",
            "error_message": message[:2000],
            "error_trace": trace,
            "completed_at": utcnow(),
        }
        if timings:
            values["timings_json"] = json.dumps(timings)
        failed = await self._conditional_update(db_session, session_id, ACTIVE_STATUSES, values)
        if failed:
            _LOGGER.error("Session %s failed: %s", session_id, message)
        return failed

    async def cancel(self, db_session, session_id: UUID) -> tuple[OpinionSession, bool]:
        """Flip an active session to ``cancelled``; terminal sessions are returned unchanged."""

        await self.get(db_session, session_id)
        changed = await self._conditional_update(
            db_session,
            session_id,
            ACTIVE_STATUSES,
            {
                "status": SessionStatus.CANCELLED,
                "phase_message": "Cancelled by user",
                "completed_at": utcnow(),
            },
        )
        if changed:
            _LOGGER.info("Session %s cancelled", session_id)
        return await self.get(db_session, session_id), changed

    async def delete_session(self, db_session, session_id: UUID) -> None:
        record = await self.get(db_session, session_id)
        if record.status not in TERMINAL_STATUSES:
            raise ValidationError(
                "Only finished sessions can be deleted; cancel it first",
                session_id=str(session_id),
                status=record.status,
            )
        await self._delete_rows(db_session, session_id)
        _LOGGER.info("Deleted session %s", session_id)

    async def discard_unscheduled(self, db_session, session_id: UUID) -> None:
        """Remove a session whose worker could not be enqueued."""

        await self._delete_rows(db_session, session_id)
        _LOGGER.warning("Rolled back unscheduled session %s", session_id)

    async def _delete_rows(self, db_session, session_id: UUID) -> None:
        await db_session.execute(delete(PostProjection).where(PostProjection.session_id == session_id))
        await db_session.execute(delete(OpinionCluster).where(OpinionCluster.session_id == session_id))
        await db_session.execute(delete(OpinionSession).where(OpinionSession.id == session_id))
        await db_session.commit()

    async def clear_results(self, db_session, session_id: UUID) -> None:
        await db_session.execute(delete(PostProjection).where(PostProjection.session_id == session_id))
        await db_session.execute(delete(OpinionCluster).where(OpinionCluster.session_id == session_id))
        await db_session.commit()


def load_session_config(record: OpinionSession) -> SessionConfig:
    return SessionConfig.model_validate(record.config_json)
