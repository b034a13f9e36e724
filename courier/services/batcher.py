"""Per-conversation message batching with a debounce window.

Messages for one (bot, participant) pair are buffered in a Redis list. Each
new message restarts an in-memory timer; when it fires the whole buffer is
drained in one transaction and enqueued as a single `forward_batch` job.

Every pending buffer also has its flush deadline in a sorted set, so a
process that restarts without its timers can still find and flush buffers
that are overdue (see `sweep_overdue`).
"""

import asyncio
import contextlib
import json
import math
import time
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.orm import Session

from courier.config import settings
from courier.database import SessionLocal
from courier.logging_config import get_logger
from courier.schemas.delivery import BatchDeliveryPayload, BatchMessage, SingleDeliveryPayload
from courier.services.forward_service import FORWARD_BATCH
from courier.services.message_service import mark_messages_forwarded

logger = get_logger("batcher")

KEY_PREFIX = "courier:batch"
DEADLINES_KEY = f"{KEY_PREFIX}:deadlines"


def buffer_key(bot_id: str, participant_id: str) -> str:
    return f"{KEY_PREFIX}:{bot_id}:{participant_id}"


def meta_key(bot_id: str, participant_id: str) -> str:
    return f"{KEY_PREFIX}:meta:{bot_id}:{participant_id}"


def first_seen_key(bot_id: str, participant_id: str) -> str:
    return f"{KEY_PREFIX}:first:{bot_id}:{participant_id}"


def deadline_member(bot_id: str, participant_id: str) -> str:
    return f"{bot_id}|{participant_id}"


def split_deadline_member(member: str) -> tuple[str, str]:
    bot_id, _, participant_id = member.partition("|")
    return bot_id, participant_id


class MessageBatcher:
    def __init__(
        self,
        redis,
        queue,
        *,
        session_factory: Callable[[], Session] = SessionLocal,
        min_ttl_seconds: int | None = None,
        max_wait_seconds: float | None = None,
        sweep_grace_seconds: float | None = None,
    ):
        self.redis = redis
        self.queue = queue
        self.session_factory = session_factory
        self.min_ttl_seconds = min_ttl_seconds if min_ttl_seconds is not None else settings.batch_min_ttl_seconds
        self.max_wait_seconds = max_wait_seconds if max_wait_seconds is not None else settings.batch_max_wait_seconds
        self.sweep_grace_seconds = (
            sweep_grace_seconds if sweep_grace_seconds is not None else settings.batch_sweep_grace_seconds
        )
        self._timers: dict[str, asyncio.Task] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._flushing: set[asyncio.Task] = set()

    @property
    def active_timers(self) -> int:
        return len(self._timers)

    def has_timer(self, bot_id: str, participant_id: str) -> bool:
        return deadline_member(bot_id, participant_id) in self._timers

    def ttl_for(self, delay_seconds: float) -> int:
        return max(int(math.ceil(delay_seconds * 3)), self.min_ttl_seconds)

    async def add(self, payload: SingleDeliveryPayload, delay_seconds: float) -> int:
        """Buffer a message and restart the debounce timer. Returns buffer size."""
        bot_id = payload.botId
        participant_id = payload.sender
        member = deadline_member(bot_id, participant_id)
        now = time.time()
        ttl = self.ttl_for(delay_seconds)

        message = payload.to_batch_message().model_dump_json(exclude_none=True)
        meta = json.dumps(
            {
                "botName": payload.botName,
                "sessionId": payload.sessionId,
                "apiKey": payload.apiKey,
                "isNewContact": payload.isNewContact,
            }
        )

        pipe = self.redis.pipeline(transaction=True)
        pipe.rpush(buffer_key(bot_id, participant_id), message)
        pipe.set(meta_key(bot_id, participant_id), meta)
        pipe.expire(buffer_key(bot_id, participant_id), ttl)
        pipe.expire(meta_key(bot_id, participant_id), ttl)
        pipe.zadd(DEADLINES_KEY, {member: now + delay_seconds})
        if self.max_wait_seconds > 0:
            pipe.set(first_seen_key(bot_id, participant_id), str(now), ex=ttl, nx=True)
            pipe.get(first_seen_key(bot_id, participant_id))
        results = await pipe.execute()
        buffered = int(results[0])

        timer_delay = delay_seconds
        if self.max_wait_seconds > 0:
            first_seen = float(results[-1] or now)
            timer_delay = max(0.0, min(delay_seconds, first_seen + self.max_wait_seconds - now))
            if timer_delay < delay_seconds:
                await self.redis.zadd(DEADLINES_KEY, {member: now + timer_delay})

        self._restart_timer(bot_id, participant_id, timer_delay)
        logger.info(
            "Message buffered",
            extra={
                "context": {
                    "bot_id": bot_id,
                    "participant_id": participant_id,
                    "buffered": buffered,
                    "delay_seconds": timer_delay,
                }
            },
        )
        return buffered

    def _restart_timer(self, bot_id: str, participant_id: str, delay_seconds: float) -> None:
        member = deadline_member(bot_id, participant_id)
        pending = self._timers.pop(member, None)
        if pending is not None:
            pending.cancel()
        self._timers[member] = asyncio.create_task(self._fire_after(bot_id, participant_id, delay_seconds))

    async def _fire_after(self, bot_id: str, participant_id: str, delay_seconds: float) -> None:
        member = deadline_member(bot_id, participant_id)
        await asyncio.sleep(delay_seconds)
        # Leave the timer map before flushing so a concurrent add starts a new
        # timer instead of cancelling this flush.
        task = asyncio.current_task()
        if self._timers.get(member) is task:
            del self._timers[member]
        self._flushing.add(task)
        try:
            await self.flush(bot_id, participant_id)
        except Exception as exc:
            logger.error(
                "Batch flush failed",
                extra={"context": {"bot_id": bot_id, "participant_id": participant_id, "error": str(exc)}},
            )
        finally:
            self._flushing.discard(task)

    @contextlib.asynccontextmanager
    async def _key_lock(self, member: str):
        """Per-key lock, dropped from the map once nobody holds or waits on it."""
        lock = self._locks.get(member)
        if lock is None:
            lock = self._locks[member] = asyncio.Lock()
        self._lock_users[member] = self._lock_users.get(member, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[member] -= 1
            if not self._lock_users[member]:
                del self._lock_users[member]
                del self._locks[member]

    async def flush(self, bot_id: str, participant_id: str) -> int:
        """Drain the buffer and enqueue one batch job. Returns messages flushed."""
        member = deadline_member(bot_id, participant_id)
        async with self._key_lock(member):
            pipe = self.redis.pipeline(transaction=True)
            pipe.lrange(buffer_key(bot_id, participant_id), 0, -1)
            pipe.delete(buffer_key(bot_id, participant_id))
            pipe.get(meta_key(bot_id, participant_id))
            pipe.delete(meta_key(bot_id, participant_id))
            pipe.delete(first_seen_key(bot_id, participant_id))
            pipe.zrem(DEADLINES_KEY, member)
            raw_messages, _, raw_meta, _, _, _ = await pipe.execute()

            if not raw_messages:
                logger.info(
                    "Flush found no buffered messages",
                    extra={"context": {"bot_id": bot_id, "participant_id": participant_id}},
                )
                return 0

            meta = json.loads(raw_meta) if raw_meta else {}
            messages = [BatchMessage.model_validate_json(raw) for raw in raw_messages]
            batch = BatchDeliveryPayload(
                botId=bot_id,
                botName=meta.get("botName") or "Unknown",
                apiKey=meta.get("apiKey") or "",
                sender=participant_id,
                sessionId=meta.get("sessionId") or "",
                messageCount=len(messages),
                messages=messages,
                timestamp=datetime.now(timezone.utc).isoformat(),
                isNewContact=meta.get("isNewContact"),
            )

            try:
                await self.queue.enqueue(FORWARD_BATCH, batch.to_wire())
            except BaseException:
                # Cancellation included: drained messages must go back before unwinding.
                await asyncio.shield(self._restore(bot_id, participant_id, raw_messages, raw_meta))
                logger.error(
                    "Batch enqueue failed, buffer restored",
                    extra={"context": {"bot_id": bot_id, "participant_id": participant_id, "messages": len(messages)}},
                )
                raise

        logger.info(
            "Batch flushed",
            extra={"context": {"bot_id": bot_id, "participant_id": participant_id, "messages": len(messages)}},
        )
        self._mark_forwarded([m.messageId for m in messages])
        return len(messages)

    async def _restore(self, bot_id: str, participant_id: str, raw_messages: list[str], raw_meta: str | None) -> None:
        # Drained messages are older than anything added since, so they go in front.
        pipe = self.redis.pipeline(transaction=True)
        pipe.lpush(buffer_key(bot_id, participant_id), *reversed(raw_messages))
        pipe.expire(buffer_key(bot_id, participant_id), self.min_ttl_seconds)
        if raw_meta:
            pipe.set(meta_key(bot_id, participant_id), raw_meta, ex=self.min_ttl_seconds, nx=True)
        pipe.zadd(DEADLINES_KEY, {deadline_member(bot_id, participant_id): time.time()}, nx=True)
        await pipe.execute()

    def _mark_forwarded(self, message_ids: list[str]) -> None:
        db = self.session_factory()
        try:
            mark_messages_forwarded(db, message_ids)
        except Exception as exc:
            db.rollback()
            logger.error(
                "Failed to mark batched messages forwarded",
                extra={"context": {"messages": len(message_ids), "error": str(exc)}},
            )
        finally:
            db.close()

    async def sweep_overdue(self, now: float | None = None) -> int:
        """Flush buffers whose deadline passed and that have no live timer."""
        now = time.time() if now is None else now
        overdue = await self.redis.zrangebyscore(DEADLINES_KEY, "-inf", now - self.sweep_grace_seconds)
        flushed = 0
        for member in overdue:
            if member in self._timers:
                continue
            bot_id, participant_id = split_deadline_member(member)
            try:
                count = await self.flush(bot_id, participant_id)
            except Exception as exc:
                logger.error(
                    "Sweep flush failed",
                    extra={"context": {"bot_id": bot_id, "participant_id": participant_id, "error": str(exc)}},
                )
                continue
            if count:
                flushed += 1
        if flushed:
            logger.warning("Swept overdue batches", extra={"context": {"batches": flushed}})
        return flushed

    async def run_sweep_loop(self, interval_seconds: float | None = None) -> None:
        interval_seconds = interval_seconds if interval_seconds is not None else settings.batch_sweep_interval_seconds
        interval_seconds = max(interval_seconds, 0.1)
        while True:
            try:
                await self.sweep_overdue()
                await asyncio.sleep(interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Batch sweep loop failed", extra={"context": {"error": str(exc)}})
                await asyncio.sleep(interval_seconds)

    async def close(self) -> None:
        """Cancel pending timers and wait for flushes already running.

        Buffers of cancelled timers stay in Redis for the next sweep.
        """
        timers = list(self._timers.values())
        self._timers.clear()
        for task in timers:
            task.cancel()
        for task in timers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._flushing:
            await asyncio.gather(*list(self._flushing), return_exceptions=True)
