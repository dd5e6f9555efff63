"""Scheduler-facing worker webhook.

Endpoints:
    run_worker(payload, ...): Execute one session; always answers 200 once authenticated.
    worker_health(): Liveness probe for the scheduler.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlmodel.ext.asyncio.session import AsyncSession

from opinion_map.core.security import require_worker_auth
from opinion_map.db.session import get_session
from opinion_map.schemas import WorkerRequest, WorkerResponse
from opinion_map.services.pipeline import OpinionPipeline

_LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["worker"])


def get_pipeline() -> OpinionPipeline:
    return OpinionPipeline()


@router.post("/opinion-map-worker", response_model=WorkerResponse)
async def run_worker(
    payload: WorkerRequest,
    auth_method: str = Depends(require_worker_auth),
    db: AsyncSession = Depends(get_session),
    pipeline: OpinionPipeline = Depends(get_pipeline),
) -> WorkerResponse:
    # failures are reported in the body; a non-2xx answer would make the scheduler retry
    _LOGGER.info("Worker invoked for session %s (auth=%s)", payload.session_id, auth_method)
    try:
        return await pipeline.run(db, payload.session_id)
    except Exception as exc:
        _LOGGER.exception("Worker run for session %s failed outside the pipeline", payload.session_id)
        await db.rollback()
        return WorkerResponse(
            success=False,
            session_id=payload.session_id,
            reason="worker_error",
            error=f"{type(exc).__name__}: {exc}",
        )


@router.get("/opinion-map-worker")
async def worker_health() -> dict[str, str]:
    return {"status": "ok", "worker": "opinion-map"}
