"""Durable delivery queue on Redis.

Jobs live at `{ns}:job:{id}` as JSON. Ids move between lists:

    waiting  -> active     (reserve, BLMOVE)
    active   -> deleted    (ack)
    active   -> delayed    (fail with attempts left, score = due time)
    active   -> dead       (fail with no attempts left)
    delayed  -> waiting    (promote_due, one Lua script per batch)
    active   -> waiting    (recover_stalled, on process start)
"""

from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from courier.config import settings
from courier.logging_config import get_logger

logger = get_logger("delivery_queue")

DEFAULT_NAMESPACE = "courier:queue"

RETRY_SCHEDULED = "retry_scheduled"
DEAD_LETTERED = "dead_lettered"

PROMOTE_BATCH_SIZE = 100

# KEYS[1] delayed zset, KEYS[2] waiting list; ARGV[1] now, ARGV[2] batch size.
# Runs server-side so an id is never out of both structures.
PROMOTE_DUE_SCRIPT = """
local due = redis.call("ZRANGEBYSCORE", KEYS[1], "-inf", ARGV[1], "LIMIT", 0, tonumber(ARGV[2]))
for _, job_id in ipairs(due) do
    redis.call("ZREM", KEYS[1], job_id)
    redis.call("RPUSH", KEYS[2], job_id)
end
return #due
"""


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class DeliveryJob(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    payload: dict[str, Any]
    attempts_made: int = 0
    max_attempts: int = 3
    backoff_seconds: float = 2.0
    created_at: str = Field(default_factory=_utc_now_iso)
    last_error: str | None = None
    failed_at: str | None = None

    @property
    def attempts_left(self) -> int:
        return max(self.max_attempts - self.attempts_made, 0)

    def next_delay(self) -> float:
        """Exponential delay after the attempt just made: base, 2*base, 4*base..."""
        return self.backoff_seconds * (2 ** max(self.attempts_made - 1, 0))


class DeliveryQueue:
    def __init__(
        self,
        redis,
        *,
        namespace: str = DEFAULT_NAMESPACE,
        default_max_attempts: int | None = None,
        default_backoff_seconds: float | None = None,
        dead_letter_max: int | None = None,
    ):
        self.redis = redis
        self.namespace = namespace
        self.default_max_attempts = (
            default_max_attempts if default_max_attempts is not None else settings.queue_max_attempts
        )
        self.default_backoff_seconds = (
            default_backoff_seconds if default_backoff_seconds is not None else settings.queue_backoff_seconds
        )
        self.dead_letter_max = dead_letter_max if dead_letter_max is not None else settings.queue_dead_letter_max
        self._promote_due_script = redis.register_script(PROMOTE_DUE_SCRIPT)

    @property
    def waiting_key(self) -> str:
        return f"{self.namespace}:waiting"

    @property
    def active_key(self) -> str:
        return f"{self.namespace}:active"

    @property
    def delayed_key(self) -> str:
        return f"{self.namespace}:delayed"

    @property
    def dead_key(self) -> str:
        return f"{self.namespace}:dead"

    def job_key(self, job_id: str) -> str:
        return f"{self.namespace}:job:{job_id}"

    async def enqueue(
        self,
        name: str,
        payload: dict[str, Any],
        *,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
    ) -> DeliveryJob:
        job = DeliveryJob(
            name=name,
            payload=payload,
            max_attempts=max_attempts if max_attempts is not None else self.default_max_attempts,
            backoff_seconds=backoff_seconds if backoff_seconds is not None else self.default_backoff_seconds,
        )
        pipe = self.redis.pipeline(transaction=True)
        pipe.set(self.job_key(job.id), job.model_dump_json())
        pipe.rpush(self.waiting_key, job.id)
        await pipe.execute()
        logger.info(
            "Job enqueued",
            extra={"context": {"job_id": job.id, "job_name": name, "max_attempts": job.max_attempts}},
        )
        return job

    async def _load(self, job_id: str) -> DeliveryJob | None:
        raw = await self.redis.get(self.job_key(job_id))
        if raw is None:
            return None
        return DeliveryJob.model_validate_json(raw)

    async def reserve(self, timeout: float = 1.0) -> DeliveryJob | None:
        """Move the oldest waiting job to active and return it."""
        job_id = await self.redis.blmove(self.waiting_key, self.active_key, timeout, "LEFT", "RIGHT")
        if job_id is None:
            return None
        job = await self._load(job_id)
        if job is None:
            logger.warning("Reserved job has no body, dropping", extra={"context": {"job_id": job_id}})
            await self.redis.lrem(self.active_key, 1, job_id)
            return None
        return job

    async def ack(self, job: DeliveryJob) -> None:
        pipe = self.redis.pipeline(transaction=True)
        pipe.lrem(self.active_key, 1, job.id)
        pipe.delete(self.job_key(job.id))
        await pipe.execute()

    async def fail(self, job: DeliveryJob, error: str, *, now: float | None = None) -> str:
        """Record a failed attempt. Schedules a retry or moves the job to dead letters."""
        now = time.time() if now is None else now
        job.attempts_made += 1
        job.last_error = error

        pipe = self.redis.pipeline(transaction=True)
        pipe.lrem(self.active_key, 1, job.id)
        if job.attempts_made < job.max_attempts:
            delay = job.next_delay()
            pipe.set(self.job_key(job.id), job.model_dump_json())
            pipe.zadd(self.delayed_key, {job.id: now + delay})
            await pipe.execute()
            logger.warning(
                "Job failed, retry scheduled",
                extra={
                    "context": {
                        "job_id": job.id,
                        "job_name": job.name,
                        "attempt": job.attempts_made,
                        "max_attempts": job.max_attempts,
                        "delay_seconds": delay,
                        "error": error,
                    }
                },
            )
            return RETRY_SCHEDULED

        job.failed_at = _utc_now_iso()
        pipe.delete(self.job_key(job.id))
        pipe.lpush(self.dead_key, job.model_dump_json())
        if self.dead_letter_max > 0:
            pipe.ltrim(self.dead_key, 0, self.dead_letter_max - 1)
        await pipe.execute()
        logger.error(
            "Job exhausted retries, moved to dead letters",
            extra={
                "context": {
                    "job_id": job.id,
                    "job_name": job.name,
                    "attempts": job.attempts_made,
                    "error": error,
                }
            },
        )
        return DEAD_LETTERED

    async def promote_due(self, now: float | None = None) -> int:
        """Move delayed jobs whose due time has passed back to waiting."""
        now = time.time() if now is None else now
        promoted = 0
        while True:
            moved = int(
                await self._promote_due_script(
                    keys=[self.delayed_key, self.waiting_key],
                    args=[now, PROMOTE_BATCH_SIZE],
                )
            )
            promoted += moved
            if moved < PROMOTE_BATCH_SIZE:
                return promoted

    async def recover_stalled(self) -> int:
        """Return jobs left in active by a dead process to waiting."""
        recovered = 0
        while True:
            job_id = await self.redis.lmove(self.active_key, self.waiting_key, "RIGHT", "LEFT")
            if job_id is None:
                break
            recovered += 1
        if recovered:
            logger.warning("Recovered stalled jobs", extra={"context": {"count": recovered}})
        return recovered

    async def stats(self) -> dict[str, int]:
        return {
            "waiting": int(await self.redis.llen(self.waiting_key)),
            "active": int(await self.redis.llen(self.active_key)),
            "delayed": int(await self.redis.zcard(self.delayed_key)),
            "dead": int(await self.redis.llen(self.dead_key)),
        }

    async def dead_letters(self, limit: int = 50) -> list[DeliveryJob]:
        if limit <= 0:
            return []
        raw = await self.redis.lrange(self.dead_key, 0, limit - 1)
        return [DeliveryJob.model_validate_json(item) for item in raw]
