"""Admin endpoints for inspecting the delivery pipeline."""

from fastapi import APIRouter, Depends, Query

from courier.dependencies import get_batcher, get_delivery_queue, require_admin_token
from courier.logging_config import get_logger

logger = get_logger("admin")

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_token)])


@router.get("/queue")
async def queue_stats(queue=Depends(get_delivery_queue), batcher=Depends(get_batcher)):
    stats = await queue.stats()
    return {"queue": stats, "activeBatchTimers": batcher.active_timers}


@router.get("/queue/dead")
async def dead_letters(limit: int = Query(50, ge=1, le=500), queue=Depends(get_delivery_queue)):
    jobs = await queue.dead_letters(limit)
    return {
        "count": len(jobs),
        "jobs": [
            {
                "id": job.id,
                "name": job.name,
                "attempts": job.attempts_made,
                "lastError": job.last_error,
                "createdAt": job.created_at,
                "failedAt": job.failed_at,
                "payload": job.payload,
            }
            for job in jobs
        ],
    }


@router.post("/batches/sweep")
async def sweep_batches(batcher=Depends(get_batcher)):
    flushed = await batcher.sweep_overdue()
    logger.info("Manual batch sweep", extra={"context": {"flushed": flushed}})
    return {"status": "ok", "flushed": flushed}
