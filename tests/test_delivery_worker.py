import asyncio
import time
from unittest.mock import AsyncMock

import httpx

from courier.services.delivery_queue import DeliveryQueue
from courier.services.delivery_worker import DeliveryWorkerPool
from courier.services.forward_service import DeliveryError
from courier.services.webhook_poster import DeliveryStatus, WebhookPoster


def _queue(redis, max_attempts=3):
    return DeliveryQueue(
        redis,
        namespace="test:queue",
        default_max_attempts=max_attempts,
        default_backoff_seconds=2.0,
        dead_letter_max=100,
    )


async def _run_until_settled(queue, pool, rounds=10):
    """Process jobs, fast-forwarding retry delays, until the queue is empty."""
    outcomes = []
    for _ in range(rounds):
        await queue.promote_due(now=time.time() + 3600)
        job = await queue.reserve(timeout=0)
        if job is None:
            break
        outcomes.append(await pool.process_job(job))
    return outcomes


class TestProcessJob:
    def test_success_acks_job(self, fake_redis):
        queue = _queue(fake_redis)
        handler = AsyncMock(return_value="delivered")
        pool = DeliveryWorkerPool(queue, {"forward_single": handler}, concurrency=1)

        async def run():
            await queue.enqueue("forward_single", {"messageId": "m1"})
            outcomes = await _run_until_settled(queue, pool)
            return outcomes, await queue.stats()

        outcomes, stats = asyncio.run(run())

        assert outcomes == ["completed"]
        handler.assert_awaited_once_with({"messageId": "m1"})
        assert stats == {"waiting": 0, "active": 0, "delayed": 0, "dead": 0}

    def test_handler_failure_schedules_retry(self, fake_redis):
        queue = _queue(fake_redis)
        handler = AsyncMock(side_effect=DeliveryError("HTTP 500"))
        pool = DeliveryWorkerPool(queue, {"forward_single": handler}, concurrency=1)

        async def run():
            await queue.enqueue("forward_single", {})
            job = await queue.reserve(timeout=0)
            return await pool.process_job(job), await queue.stats()

        outcome, stats = asyncio.run(run())

        assert outcome == "retry_scheduled"
        assert stats["delayed"] == 1

    def test_retry_ceiling_then_dead_letter(self, fake_redis):
        queue = _queue(fake_redis, max_attempts=3)
        handler = AsyncMock(side_effect=DeliveryError("HTTP 500"))
        pool = DeliveryWorkerPool(queue, {"forward_single": handler}, concurrency=1)

        async def run():
            await queue.enqueue("forward_single", {"messageId": "m1"})
            outcomes = await _run_until_settled(queue, pool)
            return outcomes, await queue.dead_letters()

        outcomes, dead = asyncio.run(run())

        assert outcomes == ["retry_scheduled", "retry_scheduled", "dead_lettered"]
        assert handler.await_count == 3
        assert len(dead) == 1
        assert "DeliveryError: HTTP 500" in dead[0].last_error

    def test_unknown_job_name_is_discarded(self, fake_redis):
        queue = _queue(fake_redis)
        pool = DeliveryWorkerPool(queue, {}, concurrency=1)

        async def run():
            await queue.enqueue("mystery", {})
            outcomes = await _run_until_settled(queue, pool)
            return outcomes, await queue.stats()

        outcomes, stats = asyncio.run(run())

        assert outcomes == ["discarded"]
        assert stats == {"waiting": 0, "active": 0, "delayed": 0, "dead": 0}

    def test_always_500_callback_attempt_budget(self, fake_redis):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        async def no_sleep(_seconds):
            return None

        poster = WebhookPoster(
            max_attempts=3,
            backoff_seconds=1.0,
            sleep_func=no_sleep,
            transport=httpx.MockTransport(handler),
        )

        async def forward(payload):
            result = await poster.post("https://flows.example.com/hook", payload)
            if result.status == DeliveryStatus.RETRYABLE_FAILURE:
                raise DeliveryError(result.error)

        queue = _queue(fake_redis, max_attempts=3)
        pool = DeliveryWorkerPool(queue, {"forward_single": forward}, concurrency=1)

        async def run():
            await queue.enqueue("forward_single", {})
            return await _run_until_settled(queue, pool)

        outcomes = asyncio.run(run())

        assert outcomes[-1] == "dead_lettered"
        # Poster retries inside each queue attempt.
        assert len(calls) == 9


class TestPoolLifecycle:
    def test_started_pool_drains_queue(self, fake_redis):
        queue = _queue(fake_redis)
        seen = []

        async def handler(payload):
            seen.append(payload["n"])

        async def run():
            pool = DeliveryWorkerPool(
                queue, {"forward_single": handler}, concurrency=3, reserve_timeout=0.01, promote_interval=0.01
            )
            for n in range(5):
                await queue.enqueue("forward_single", {"n": n})
            pool.start()
            assert pool.running
            for _ in range(100):
                if len(seen) == 5:
                    break
                await asyncio.sleep(0.01)
            await asyncio.sleep(0.05)
            await pool.stop()
            return pool, await queue.stats()

        pool, stats = asyncio.run(run())

        assert sorted(seen) == [0, 1, 2, 3, 4]
        assert not pool.running
        assert stats["waiting"] == 0
        assert stats["active"] == 0

    def test_scheduler_promotes_retries(self, fake_redis):
        queue = _queue(fake_redis)
        attempts = []

        async def flaky(payload):
            attempts.append(time.time())
            if len(attempts) == 1:
                raise DeliveryError("HTTP 502")

        async def run():
            await queue.enqueue("forward_single", {}, backoff_seconds=0.05)
            pool = DeliveryWorkerPool(
                queue, {"forward_single": flaky}, concurrency=1, reserve_timeout=0.01, promote_interval=0.01
            )
            pool.start()
            for _ in range(200):
                if len(attempts) == 2:
                    break
                await asyncio.sleep(0.01)
            await asyncio.sleep(0.05)
            await pool.stop()
            return await queue.stats()

        stats = asyncio.run(run())

        assert len(attempts) == 2
        assert stats == {"waiting": 0, "active": 0, "delayed": 0, "dead": 0}
